"""
LumiNUS API Layer.

This package handles logging in through the university's identity provider
and all communication with the LumiNUS API.
"""

from .auth import LoginFlow, LoginState
from .client import LumiNUSClient
from .rate_limiter import AdaptiveRateLimiter
from .session import Session, SessionManager

__all__ = [
    "AdaptiveRateLimiter",
    "LoginFlow",
    "LoginState",
    "LumiNUSClient",
    "Session",
    "SessionManager",
]
