import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from rewrite_proxy.store import KeyValueStore, build_store
from rewrite_proxy.utils import mask_token

logger = logging.getLogger("uvicorn.error")


@dataclass
class AuthState:
    authenticated: bool = False
    user: Any = None
    login_time: Optional[float] = None
    last_activity: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "authenticated": self.authenticated,
            "user": self.user,
            "login_time": self.login_time,
            "last_activity": self.last_activity,
        }


class AuthStateTracker:
    """
    Authentication state per proxy session.

    Login itself happens elsewhere; whatever performs it calls
    ``set_authenticated``. Every request ``touch``-es the tracker so
    ``last_activity`` moves regardless of the authentication outcome.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store if store is not None else build_store()
        self.clock = clock

    def touch(self, session_id: str) -> AuthState:
        state = self.store.create(
            session_id, lambda: AuthState(last_activity=self.clock())
        )
        state.last_activity = self.clock()
        return state

    def set_authenticated(self, session_id: str, user: Any) -> AuthState:
        state = self.store.create(
            session_id, lambda: AuthState(last_activity=self.clock())
        )
        state.authenticated = True
        state.user = user
        state.login_time = self.clock()
        logger.info(
            mask_token(
                f"[Auth State] User authenticated for session {session_id}", session_id
            )
        )
        return state

    def get_state(self, session_id: str) -> AuthState:
        state = self.store.get(session_id)
        if state is None:
            return AuthState(last_activity=self.clock())
        return state

    def clear_state(self, session_id: str) -> None:
        self.store.delete(session_id)
        logger.info(
            mask_token(
                f"[Auth State] Auth state cleared for session {session_id}", session_id
            )
        )

    def stats(self) -> dict:
        states = self.store.values()
        return {
            "active_sessions": len(states),
            "authenticated_users": sum(1 for s in states if s and s.authenticated),
        }
