"""Stable error taxonomy for the VanderHub gateway.

This module defines machine-readable error codes and a single exception type
used across the stores, the serving endpoint, and the admin CLI.

Design goals:
- Stable `code` string suitable for programmatic handling.
- Optional `retryable` flag and `http_status` for transport layers.
- Structured `details` for debugging without parsing messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Credentials / entitlements
VH_E_CREDENTIAL_NOT_FOUND = "VH_E_CREDENTIAL_NOT_FOUND"
VH_E_CREDENTIAL_CONFLICT = "VH_E_CREDENTIAL_CONFLICT"
VH_E_ENTITLEMENT_EXPIRED = "VH_E_ENTITLEMENT_EXPIRED"
VH_E_ENTITLEMENT_NOT_FOUND = "VH_E_ENTITLEMENT_NOT_FOUND"
VH_E_TRIAL_ALREADY_CLAIMED = "VH_E_TRIAL_ALREADY_CLAIMED"
VH_E_TRIAL_EXPIRED = "VH_E_TRIAL_EXPIRED"

# Storage
VH_E_STORE_UNAVAILABLE = "VH_E_STORE_UNAVAILABLE"
VH_E_WRITE_BACK_REFUSED = "VH_E_WRITE_BACK_REFUSED"

# Content
VH_E_NOT_FOUND = "VH_E_NOT_FOUND"

# Generic
VH_E_BAD_REQUEST = "VH_E_BAD_REQUEST"


@dataclass
class VHError(Exception):
    """Base gateway exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


def vh_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> VHError:
    return VHError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)


def store_unavailable(message: str, **details: Any) -> VHError:
    # Not retryable: replaying a half-applied entitlement write could double-apply it.
    return vh_error(VH_E_STORE_UNAVAILABLE, message, retryable=False, http_status=503, **details)
