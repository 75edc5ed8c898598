"""Declared-identity classification.

The caller's User-Agent is matched case-insensitively against substring
lists. This is a compatibility heuristic: anyone can send any User-Agent.
The classifier is a strategy object so the policy can be replaced without
touching the admission gates.
"""

from __future__ import annotations

import abc
from enum import Enum
from typing import Iterable, Tuple


class IdentityClass(str, Enum):
    DENYLISTED = "denylisted"
    ALLOWLISTED = "allowlisted"
    UNKNOWN = "unknown"


# Known automation / scraping clients.
DEFAULT_DENYLIST: Tuple[str, ...] = (
    "curl",
    "wget",
    "python-requests",
    "python-urllib",
    "httpx",
    "aiohttp",
    "headless",
    "selenium",
    "puppeteer",
    "playwright",
    "phantomjs",
    "postman",
    "insomnia",
    "go-http-client",
    "scrapy",
    "libwww",
    "java/",
)

# Executors and mobile runtimes allowed to fetch scripts.
DEFAULT_ALLOWLIST: Tuple[str, ...] = (
    "roblox",
    "delta",
    "fluxus",
    "codex",
    "arceus",
    "hydrogen",
    "vegax",
    "android",
    "iphone",
    "ipad",
    "cfnetwork",
)

# Interception proxies; requests carrying these get the decoy payload.
DEFAULT_DEBUG_TOOL_MARKERS: Tuple[str, ...] = (
    "fiddler",
    "charles",
    "burp",
    "mitmproxy",
    "httpdebugger",
    "httptoolkit",
    "proxyman",
    "wireshark",
)


class IdentityClassifier(abc.ABC):
    """Strategy interface for declared-identity policy."""

    @abc.abstractmethod
    def classify(self, identity: str) -> IdentityClass:
        raise NotImplementedError

    def is_debug_tool(self, identity: str) -> bool:
        return False


def _normalize(values: Iterable[str]) -> Tuple[str, ...]:
    return tuple(v.strip().lower() for v in values if v and v.strip())


class SignatureListClassifier(IdentityClassifier):
    """Substring matching against deny/allow/debug-tool signature lists.

    The denylist wins over the allowlist; anything on neither list is UNKNOWN.
    """

    def __init__(
        self,
        denylist: Iterable[str] = DEFAULT_DENYLIST,
        allowlist: Iterable[str] = DEFAULT_ALLOWLIST,
        debug_markers: Iterable[str] = DEFAULT_DEBUG_TOOL_MARKERS,
    ):
        self.denylist = _normalize(denylist)
        self.allowlist = _normalize(allowlist)
        self.debug_markers = _normalize(debug_markers)

    def classify(self, identity: str) -> IdentityClass:
        ua = (identity or "").lower()
        if any(sig in ua for sig in self.denylist):
            return IdentityClass.DENYLISTED
        if any(sig in ua for sig in self.allowlist):
            return IdentityClass.ALLOWLISTED
        return IdentityClass.UNKNOWN

    def is_debug_tool(self, identity: str) -> bool:
        ua = (identity or "").lower()
        return any(m in ua for m in self.debug_markers)
