"""Stealth module - execution sessions and fingerprint rotation."""

from .fingerprints import BrowserProfile, RotatingFingerprint, StaticFingerprint
from .session_manager import ExecutionSessionManager

__all__ = ["BrowserProfile", "RotatingFingerprint", "StaticFingerprint", "ExecutionSessionManager"]
