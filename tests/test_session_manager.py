"""
Tests for the execution session manager.
"""

import random

import pytest

from auction_scraper.models import ExecutionSession
from auction_scraper.stealth import BrowserProfile, ExecutionSessionManager, RotatingFingerprint, StaticFingerprint
from auction_scraper.stealth.session_manager import generate_session_token

from conftest import ZONES


class TestExecutionSession:
    """Tests for ExecutionSession thresholds."""

    def test_rotates_on_request_count(self):
        """Test that the request threshold triggers rotation."""
        session = ExecutionSession(egress_zone="a", token="t", created_at=0.0, request_count=30)
        assert session.should_rotate(now=1.0) is True

    def test_rotates_on_lifetime(self):
        """Test that the lifetime threshold triggers rotation."""
        session = ExecutionSession(egress_zone="a", token="t", created_at=0.0, request_count=1)
        assert session.should_rotate(now=599.0) is False
        assert session.should_rotate(now=600.0) is True


class TestExecutionSessionManager:
    """Tests for ExecutionSessionManager class."""

    def test_requires_three_zones(self, clock):
        """Test that fewer than three distinct zones is rejected."""
        with pytest.raises(ValueError):
            ExecutionSessionManager(egress_zones=["a", "b", "b"], clock=clock, fingerprint=StaticFingerprint())

    def test_acquire_counts_requests(self, sessions):
        """Test that each acquire counts exactly one request."""
        first = sessions.acquire()
        second = sessions.acquire()

        assert first.request_count == 1
        assert second.request_count == 2
        assert first.token == second.token

    def test_acquired_snapshot_is_stable(self, sessions):
        """Test that a rotation does not change a session already handed out."""
        held = sessions.acquire()
        sessions.rotate()

        assert held.request_count == 1
        assert sessions.current_session().token != held.token

    def test_thirty_first_request_rotates(self, sessions):
        """Test rotation after 30 requests: the 31st request gets a fresh identity."""
        tokens = {sessions.acquire().token for _ in range(30)}
        assert len(tokens) == 1

        fresh = sessions.acquire()
        assert fresh.token not in tokens
        assert fresh.request_count == 1
        assert sessions.rotations == 1

    def test_lifetime_rotates(self, sessions, clock):
        """Test rotation once the session is ten minutes old."""
        first = sessions.acquire()
        clock.advance(601)

        second = sessions.acquire()
        assert second.token != first.token
        assert second.created_at == clock.now

    def test_rotate_picks_configured_zone(self, sessions):
        """Test that rotated sessions always use a zone from the pool."""
        for _ in range(20):
            assert sessions.rotate().egress_zone in ZONES

    def test_rotate_issues_new_token(self, sessions):
        """Test that every rotation yields a distinct token."""
        tokens = {sessions.rotate().token for _ in range(50)}
        assert len(tokens) == 50

    def test_fingerprint_per_session(self, clock):
        """Test that each new session gets a profile from the strategy."""
        profile = BrowserProfile(
            user_agent="Mozilla/5.0 Test",
            sec_ch_ua="",
            sec_ch_ua_mobile="?0",
            sec_ch_ua_platform='"Linux"',
        )
        manager = ExecutionSessionManager(
            egress_zones=ZONES,
            fingerprint=StaticFingerprint(profile),
            clock=clock,
        )
        assert manager.acquire().fingerprint is profile
        assert manager.rotate().fingerprint is profile

    def test_stats(self, sessions):
        """Test statistics reporting."""
        sessions.acquire()
        stats = sessions.get_stats()

        assert stats["request_count"] == 1
        assert stats["rotations"] == 0
        assert stats["zones"] == 3


class TestFingerprints:
    """Tests for fingerprint strategies."""

    def test_rotating_jitters_viewport(self):
        """Test that viewport jitter stays within bounds."""
        base = BrowserProfile(
            user_agent="Mozilla/5.0 Test",
            sec_ch_ua='"Chromium";v="124"',
            sec_ch_ua_mobile="?0",
            sec_ch_ua_platform='"Windows"',
        )
        rotator = RotatingFingerprint(profiles=[base], viewport_jitter=40, rng=random.Random(3))
        for _ in range(20):
            profile = rotator.next_profile()
            assert 1880 <= profile.viewport_width <= 1960
            assert 1040 <= profile.viewport_height <= 1120
            assert profile.user_agent == base.user_agent

    def test_headers_include_client_hints(self):
        """Test that Chromium profiles send Client Hints and Firefox ones do not."""
        chrome = BrowserProfile(
            user_agent="Mozilla/5.0 Chrome",
            sec_ch_ua='"Chromium";v="124"',
            sec_ch_ua_mobile="?0",
            sec_ch_ua_platform='"Windows"',
        )
        firefox = BrowserProfile(
            user_agent="Mozilla/5.0 Firefox",
            sec_ch_ua="",
            sec_ch_ua_mobile="",
            sec_ch_ua_platform="",
        )

        assert chrome.headers()["Sec-Ch-Ua"] == '"Chromium";v="124"'
        assert "Sec-Ch-Ua" not in firefox.headers()

    def test_static_none(self):
        """Test the no-fingerprint strategy."""
        assert StaticFingerprint().next_profile() is None


def test_session_token_is_hex():
    """Test that tokens are time-prefixed hex strings."""
    token = generate_session_token(1_700_000_000.0)
    int(token, 16)
    assert token.startswith(f"{1_700_000_000_000:x}")
