from .session import (
    ProxySession,
    SessionRegistry,
    try_get_session_token,
    sign_session_id,
    unsign_session_token,
)
from .cookies import CookieRecord, CookieRelay, parse_set_cookie
from .auth_state import AuthState, AuthStateTracker

__all__ = [
    "ProxySession",
    "SessionRegistry",
    "try_get_session_token",
    "sign_session_id",
    "unsign_session_token",
    "CookieRecord",
    "CookieRelay",
    "parse_set_cookie",
    "AuthState",
    "AuthStateTracker",
]
