"""
Fingerprint Profile Module

Pluggable browser fingerprint strategies injected into the session manager.
A fingerprint pairs a real browser User-Agent with matching Client Hints and a
jittered viewport, so consecutive sessions do not look alike.
"""

import random
from dataclasses import dataclass
from typing import Dict, Optional, Protocol


@dataclass(frozen=True)
class BrowserProfile:
    """A complete browser fingerprint with matching headers."""

    user_agent: str
    sec_ch_ua: str
    sec_ch_ua_mobile: str
    sec_ch_ua_platform: str
    viewport_width: int = 1920
    viewport_height: int = 1080
    accept_language: str = "en-US,en;q=0.9"

    @property
    def viewport(self) -> Dict[str, int]:
        return {"width": self.viewport_width, "height": self.viewport_height}

    def headers(self) -> Dict[str, str]:
        """HTTP headers consistent with this fingerprint."""
        headers = {
            "User-Agent": self.user_agent,
            "Accept-Language": self.accept_language,
        }
        # Client Hints are only sent by Chromium browsers
        if self.sec_ch_ua:
            headers["Sec-Ch-Ua"] = self.sec_ch_ua
            headers["Sec-Ch-Ua-Mobile"] = self.sec_ch_ua_mobile
            headers["Sec-Ch-Ua-Platform"] = self.sec_ch_ua_platform
        return headers


# Desktop profiles only: auction result pages render differently on mobile
BROWSER_PROFILES = [
    # Chrome on Windows
    BrowserProfile(
        user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        sec_ch_ua='"Chromium";v="124", "Google Chrome";v="124", "Not-A.Brand";v="99"',
        sec_ch_ua_mobile="?0",
        sec_ch_ua_platform='"Windows"',
    ),
    BrowserProfile(
        user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36",
        sec_ch_ua='"Google Chrome";v="123", "Not:A-Brand";v="8", "Chromium";v="123"',
        sec_ch_ua_mobile="?0",
        sec_ch_ua_platform='"Windows"',
        viewport_width=1536,
        viewport_height=864,
    ),
    # Chrome on macOS
    BrowserProfile(
        user_agent="Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        sec_ch_ua='"Chromium";v="124", "Google Chrome";v="124", "Not-A.Brand";v="99"',
        sec_ch_ua_mobile="?0",
        sec_ch_ua_platform='"macOS"',
        viewport_width=1440,
        viewport_height=900,
    ),
    # Edge on Windows
    BrowserProfile(
        user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36 Edg/124.0.0.0",
        sec_ch_ua='"Chromium";v="124", "Microsoft Edge";v="124", "Not-A.Brand";v="99"',
        sec_ch_ua_mobile="?0",
        sec_ch_ua_platform='"Windows"',
        viewport_width=1366,
        viewport_height=768,
    ),
    # Firefox on Windows
    BrowserProfile(
        user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0",
        sec_ch_ua="",  # Firefox doesn't send Client Hints
        sec_ch_ua_mobile="",
        sec_ch_ua_platform="",
    ),
    # Safari on macOS
    BrowserProfile(
        user_agent="Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15",
        sec_ch_ua="",
        sec_ch_ua_mobile="",
        sec_ch_ua_platform="",
        viewport_width=1680,
        viewport_height=1050,
    ),
]


class FingerprintProfile(Protocol):
    """Strategy that supplies the fingerprint for a freshly rotated session."""

    def next_profile(self) -> Optional[BrowserProfile]:
        ...


class RotatingFingerprint:
    """
    Picks a random browser profile per session and jitters its viewport.

    Example:
        fingerprints = RotatingFingerprint()
        profile = fingerprints.next_profile()
        headers = profile.headers()
    """

    def __init__(
        self,
        profiles: list[BrowserProfile] | None = None,
        viewport_jitter: int = 40,
        rng: random.Random | None = None,
    ):
        """
        Initialize the rotator.

        Args:
            profiles: Custom browser profiles (uses defaults if None)
            viewport_jitter: Max pixels added/removed from each viewport dimension
            rng: Random source (module RNG if None)
        """
        self._profiles = list(profiles) if profiles is not None else BROWSER_PROFILES.copy()
        self._viewport_jitter = viewport_jitter
        self._rng = rng or random.Random()

    def next_profile(self) -> BrowserProfile:
        base = self._rng.choice(self._profiles)
        if not self._viewport_jitter:
            return base

        jitter = self._viewport_jitter
        return BrowserProfile(
            user_agent=base.user_agent,
            sec_ch_ua=base.sec_ch_ua,
            sec_ch_ua_mobile=base.sec_ch_ua_mobile,
            sec_ch_ua_platform=base.sec_ch_ua_platform,
            viewport_width=base.viewport_width + self._rng.randint(-jitter, jitter),
            viewport_height=base.viewport_height + self._rng.randint(-jitter, jitter),
            accept_language=base.accept_language,
        )

    @property
    def profile_count(self) -> int:
        """Number of available profiles."""
        return len(self._profiles)


class StaticFingerprint:
    """Always returns the same profile (or none at all)."""

    def __init__(self, profile: BrowserProfile | None = None):
        self._profile = profile

    def next_profile(self) -> Optional[BrowserProfile]:
        return self._profile
