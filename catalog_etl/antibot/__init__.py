"""Anti-bot toolkit for the catalog portal.

- Device profile and stealth Playwright contexts
- Request pacing and rate limiting
- Session bootstrap (cookies and device fingerprint)
"""

from .profile import DEFAULT_PROFILE, DeviceProfile, create_stealth_context
from .pacing import RateLimiter, pause
from .session import SessionProvider, resolve_fingerprint

__all__ = [
    "DEFAULT_PROFILE",
    "DeviceProfile",
    "create_stealth_context",
    "RateLimiter",
    "pause",
    "SessionProvider",
    "resolve_fingerprint",
]
