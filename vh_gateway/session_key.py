"""Rotating session key.

A short shared value derived from a fixed secret and the current time bucket:

    sha256(secret || str(floor(now / W))).hexdigest()[:16]

Any two computations inside the same bucket agree; the value changes when the
bucket rolls over. Nothing is persisted. The key feeds the optional final
cipher stage of the transform pipeline and the handshake endpoint, as a
freshness marker only.
"""

from __future__ import annotations

import hashlib
import time
from typing import Callable, Optional

KEY_LENGTH = 16
DEFAULT_BUCKET_SECONDS = 60


class RotatingSessionKey:
    def __init__(
        self,
        secret: str,
        bucket_seconds: int = DEFAULT_BUCKET_SECONDS,
        clock: Optional[Callable[[], float]] = None,
    ):
        if not secret:
            raise ValueError("session key secret must be non-empty")
        if int(bucket_seconds) <= 0:
            raise ValueError("bucket_seconds must be positive")
        self._secret = secret
        self.bucket_seconds = int(bucket_seconds)
        self._clock = clock or time.time

    def bucket(self, now: Optional[float] = None) -> int:
        t = self._clock() if now is None else now
        return int(t // self.bucket_seconds)

    def key_for_bucket(self, bucket: int) -> str:
        digest = hashlib.sha256((self._secret + str(bucket)).encode("utf-8")).hexdigest()
        return digest[:KEY_LENGTH]

    def current_key(self, now: Optional[float] = None) -> str:
        return self.key_for_bucket(self.bucket(now))

    def seconds_remaining(self, now: Optional[float] = None) -> float:
        t = self._clock() if now is None else now
        return self.bucket_seconds - (t % self.bucket_seconds)
