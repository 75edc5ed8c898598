"""VanderHub gateway package.

Protected delivery of Lua scripts to executor clients:

- Ordered admission gates (declared identity, device id, shared key, entitlement)
- Per-device entitlement registry with one-time access credentials
- Self-decoding obfuscation layers (XOR, shift, device salt, AES-CTR)
- Local mirror snapshot with a write-back safety guard

Convenience imports
------------------
The package intentionally avoids heavy import-time side effects. For convenience,
these are available as top-level imports:

    from vh_gateway import VHGateway, create_app

Pipeline and store types are also re-exported:

    from vh_gateway import TransformPipeline, EntitlementStore, reveal

All of the above are loaded lazily.
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in
    `pyproject.toml`, so a regex parse is enough.
    """

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


__version__ = (
    _read_version_from_pyproject()
    or "2.6.0"
)

__all__ = [
    "__version__",
    "VHGateway",
    "create_app",
    "GatewayConfig",
    "EntitlementStore",
    "RepositoryStore",
    "TransformPipeline",
    "reveal",
    "VHError",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "VHGateway": ("vh_gateway.server", "VHGateway"),
    "create_app": ("vh_gateway.server", "create_app"),
    "GatewayConfig": ("vh_gateway.config", "GatewayConfig"),
    "EntitlementStore": ("vh_gateway.entitlements", "EntitlementStore"),
    "RepositoryStore": ("vh_gateway.repos", "RepositoryStore"),
    "TransformPipeline": ("vh_gateway.transform", "TransformPipeline"),
    "reveal": ("vh_gateway.transform", "reveal"),
    "VHError": ("vh_gateway.errors", "VHError"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        # Cache the resolved attribute on the module for faster future access.
        globals()[name] = value
        return value
    raise AttributeError(f"module 'vh_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
