"""
Execution Session Manager Module

Owns the rotating remote identity (egress zone + session token) used to open
browser/API connections, and decides when that identity must be replaced.
"""

import logging
import random
import secrets
import time
from dataclasses import replace
from typing import Callable

from auction_scraper.config import config
from auction_scraper.models import ExecutionSession
from auction_scraper.stealth.fingerprints import FingerprintProfile, RotatingFingerprint, StaticFingerprint


logger = logging.getLogger(__name__)


def generate_session_token(now: float, random_bytes: int = 8) -> str:
    """Build a high-entropy token from the current time and random bytes."""
    return f"{int(now * 1000):x}{secrets.token_hex(random_bytes)}"


class ExecutionSessionManager:
    """
    Holds the current ExecutionSession as a single swappable reference.

    Features:
    - Rotation after N requests or a maximum lifetime
    - Uniformly random egress zone per rotation
    - Fresh time+random session token per rotation
    - Pluggable fingerprint strategy

    Example:
        manager = ExecutionSessionManager()
        session = manager.acquire()  # counted use, rotates if needed
        # open a remote connection with session.egress_zone / session.token
    """

    def __init__(
        self,
        egress_zones: list[str] | None = None,
        max_requests: int | None = None,
        max_lifetime: float | None = None,
        fingerprint: FingerprintProfile | None = None,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ):
        """
        Initialize the session manager.

        Args:
            egress_zones: Zone pool (default from config, at least 3 zones)
            max_requests: Requests per session (default from config)
            max_lifetime: Session lifetime in seconds (default from config)
            fingerprint: Fingerprint strategy (rotating or static per config)
            clock: Time source, seconds since epoch
            rng: Random source for zone selection
        """
        self._zones = list(egress_zones or config.session.egress_zones)
        if len(set(self._zones)) < 3:
            raise ValueError("At least 3 distinct egress zones are required")

        self._max_requests = max_requests or config.session.max_requests
        self._max_lifetime = max_lifetime or config.session.max_lifetime

        if fingerprint is None:
            fingerprint = RotatingFingerprint() if config.session.fingerprint_rotation else StaticFingerprint()
        self._fingerprint = fingerprint

        self._clock = clock
        self._rng = rng or random.Random()
        self._rotations = 0
        self._current = self._new_session()

    def _new_session(self) -> ExecutionSession:
        now = self._clock()
        return ExecutionSession(
            egress_zone=self._rng.choice(self._zones),
            token=generate_session_token(now),
            created_at=now,
            request_count=0,
            max_requests=self._max_requests,
            max_lifetime=self._max_lifetime,
            fingerprint=self._fingerprint.next_profile(),
        )

    def current_session(self) -> ExecutionSession:
        """The session new operations would use (not counted)."""
        return self._current

    def should_rotate(self, session: ExecutionSession) -> bool:
        return session.should_rotate(self._clock())

    def rotate(self) -> ExecutionSession:
        """Discard the current identity and issue a new one."""
        old = self._current
        self._current = self._new_session()
        self._rotations += 1
        logger.info(
            f"Session rotated after {old.request_count} requests, "
            f"{old.age(self._clock()) / 60:.1f}min (zone {self._current.egress_zone})"
        )
        return self._current

    def acquire(self) -> ExecutionSession:
        """
        Reserve the current session for one operation.

        Rotates first when a threshold has been reached, then counts the
        request exactly once by swapping in an incremented copy. The returned
        value is the snapshot the operation must use until it finishes.
        """
        if self.should_rotate(self._current):
            self.rotate()
        self._current = replace(self._current, request_count=self._current.request_count + 1)
        return self._current

    @property
    def rotations(self) -> int:
        """Number of rotations since creation."""
        return self._rotations

    def get_stats(self) -> dict:
        """Get session statistics."""
        session = self._current
        return {
            "egress_zone": session.egress_zone,
            "request_count": session.request_count,
            "age_seconds": round(session.age(self._clock()), 1),
            "rotations": self._rotations,
            "zones": len(self._zones),
        }
