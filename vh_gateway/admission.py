"""Admission filter for script fetches.

Gates run strictly in order and the first terminal outcome wins:

  1. declared identity   denylisted or not allowlisted  -> 403
  2. debug-tool markers                                 -> 200 decoy
  3. device id present                                  -> 401
  4. shared static credential                           -> 403
  5. entitlement on record (or admin override)          -> 403
  6. entitlement not expired                            -> 403

A denial is a decision, not an exception: the serving endpoint maps it to a
status and a Lua-comment body the executor prints. None of these gates is a
security boundary; every input is caller-controlled.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, FrozenSet, Iterable, Optional

from . import metrics
from .entitlements import EntitlementRecord, EntitlementStore
from .identity import IdentityClass, IdentityClassifier
from .ops_stats import OPS_STATS
from .transform import decoy_program

logger = logging.getLogger("vh_gateway")

MSG_UNTRUSTED = "-- VANDERHUB: ACCESS DENIED (untrusted environment)"
MSG_IDENTIFICATION = "-- IDENTIFICATION REQUIRED: this script must be loaded with your device id (hwid)"
MSG_HANDSHAKE = "-- ACCESS DENIED: handshake mismatch"
MSG_UNAUTHORIZED = "-- ACCESS DENIED: unauthorized device"
MSG_EXPIRED = "-- ACCESS EXPIRED: renew at {url}"


class AdmissionOutcome(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    DECOY = "decoy"


@dataclass(frozen=True)
class CallerContext:
    identity: str = ""
    device_id: Optional[str] = None
    shared_key: Optional[str] = None
    client_ip: Optional[str] = None


@dataclass(frozen=True)
class AdmissionDecision:
    outcome: AdmissionOutcome
    status: int = 200
    body: str = ""
    reason: str = ""
    entitlement: Optional[EntitlementRecord] = None

    @property
    def allowed(self) -> bool:
        return self.outcome is AdmissionOutcome.ALLOW


def _deny(status: int, body: str, reason: str) -> AdmissionDecision:
    return AdmissionDecision(outcome=AdmissionOutcome.DENY, status=status, body=body, reason=reason)


class AdmissionFilter:
    def __init__(
        self,
        classifier: IdentityClassifier,
        store: EntitlementStore,
        raw_key: Optional[str],
        admin_device_ids: Iterable[str] = (),
        renew_url: str = "/api/verify-key",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.classifier = classifier
        self.store = store
        self.raw_key = raw_key
        self.admin_device_ids: FrozenSet[str] = frozenset(admin_device_ids)
        self.renew_url = renew_url
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def evaluate(self, caller: CallerContext) -> AdmissionDecision:
        decision = self._evaluate(caller)
        OPS_STATS.record_admission(decision.outcome.value, decision.reason)
        metrics.record_admission(decision.outcome.value, decision.reason)
        if decision.outcome is not AdmissionOutcome.ALLOW:
            logger.info(
                "Admission %s (%s) ip=%s",
                decision.outcome.value, decision.reason, caller.client_ip or "-",
            )
        return decision

    def _shared_key_ok(self, presented: Optional[str]) -> bool:
        if not self.raw_key or presented is None:
            return False
        return hmac.compare_digest(presented.encode("utf-8"), self.raw_key.encode("utf-8"))

    def _evaluate(self, caller: CallerContext) -> AdmissionDecision:
        identity = caller.identity or ""
        cls = self.classifier.classify(identity)
        if cls is IdentityClass.DENYLISTED:
            return _deny(403, MSG_UNTRUSTED, "identity_denylisted")
        if cls is not IdentityClass.ALLOWLISTED:
            return _deny(403, MSG_UNTRUSTED, "identity_unknown")

        if self.classifier.is_debug_tool(identity):
            return AdmissionDecision(
                outcome=AdmissionOutcome.DECOY, status=200, body=decoy_program(), reason="debug_tool"
            )

        device_id = (caller.device_id or "").strip()
        if not device_id:
            return _deny(401, MSG_IDENTIFICATION, "device_missing")

        if not self._shared_key_ok(caller.shared_key):
            return _deny(403, MSG_HANDSHAKE, "handshake_mismatch")

        if device_id in self.admin_device_ids:
            return AdmissionDecision(outcome=AdmissionOutcome.ALLOW, reason="admin_override")

        record = self.store.lookup(device_id)
        if record is None or record.revoked:
            return _deny(403, MSG_UNAUTHORIZED, "not_entitled")

        if record.is_expired(self.clock()):
            return _deny(403, MSG_EXPIRED.format(url=self.renew_url), "expired")

        return AdmissionDecision(outcome=AdmissionOutcome.ALLOW, reason="entitled", entitlement=record)
