import asyncio
import contextlib
import hashlib
import hmac
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from rewrite_proxy.store import KeyValueStore, build_store
from rewrite_proxy.utils import mask_token
from rewrite_proxy.utils.exception_logging import log_exception_with_details
from rewrite_proxy.vars import SESSION_IDLE_TIMEOUT, SESSION_PURGE_INTERVAL, SESSION_SECRET

logger = logging.getLogger("uvicorn.error")

ExpiryListener = Callable[[str], None]


def try_get_session_token(
    session_cookie: Optional[str],
    session_header: Optional[str] = None,
) -> Optional[str]:
    if session_cookie:
        return session_cookie
    if session_header:
        return session_header
    return None


def _signature(session_id: str, secret: str) -> str:
    return hmac.new(
        secret.encode("utf-8"), session_id.encode("utf-8"), hashlib.sha256
    ).hexdigest()[:32]


def sign_session_id(session_id: str, secret: str = SESSION_SECRET) -> str:
    return f"{session_id}.{_signature(session_id, secret)}"


def unsign_session_token(
    token: Optional[str], secret: str = SESSION_SECRET
) -> Optional[str]:
    """Return the session id carried by a signed token, or None if it was tampered with."""
    if not token or "." not in token:
        return None
    session_id, signature = token.rsplit(".", 1)
    if not session_id or not hmac.compare_digest(
        signature, _signature(session_id, secret)
    ):
        return None
    return session_id


@dataclass
class ProxySession:
    id: str
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)


class SessionRegistry:
    """
    Binds an opaque, signed token to each client.

    Sessions are created lazily on the first request without a known token.
    With ``idle_timeout`` of 0 (the default) sessions never expire; otherwise
    an idle session is dropped on its next use or by the background purge
    (``start_purging``), and the expiry listeners clear whatever state hangs
    off its id.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        secret: str = SESSION_SECRET,
        idle_timeout: float = SESSION_IDLE_TIMEOUT,
        clock: Callable[[], float] = time.time,
        purge_interval: float = SESSION_PURGE_INTERVAL,
    ):
        self.store = store if store is not None else build_store()
        self.secret = secret
        self.idle_timeout = idle_timeout
        self.clock = clock
        self.purge_interval = purge_interval
        self._expiry_listeners: list[ExpiryListener] = []
        self._purge_task: Optional[asyncio.Task] = None

    def on_expire(self, listener: ExpiryListener) -> None:
        self._expiry_listeners.append(listener)

    def token_for(self, session: ProxySession) -> str:
        return sign_session_id(session.id, self.secret)

    def get(self, session_id: str) -> Optional[ProxySession]:
        return self.store.get(session_id)

    def is_expired(self, session: ProxySession) -> bool:
        if not self.idle_timeout or self.idle_timeout <= 0:
            return False
        return self.clock() - session.last_activity > self.idle_timeout

    def create(self) -> ProxySession:
        now = self.clock()
        session = ProxySession(
            id=secrets.token_urlsafe(24), created_at=now, last_activity=now
        )
        self.store.set(session.id, session)
        logger.debug(
            mask_token(f"[Session] New session {session.id}", session.id)
        )
        return session

    def bind(self, token: Optional[str]) -> tuple[ProxySession, bool]:
        """Return ``(session, created)`` for the token presented by a client."""
        session_id = unsign_session_token(token, self.secret)
        session = self.store.get(session_id) if session_id else None

        if session is not None and self.is_expired(session):
            logger.info(
                mask_token(f"[Session] Session {session.id} expired", session.id)
            )
            self.expire(session.id)
            session = None

        if session is None:
            return self.create(), True

        session.last_activity = self.clock()
        return session, False

    def expire(self, session_id: str) -> None:
        self.store.delete(session_id)
        for listener in self._expiry_listeners:
            listener(session_id)

    def purge_expired(self) -> int:
        expired = [s.id for s in self.store.values() if s and self.is_expired(s)]
        for session_id in expired:
            self.expire(session_id)
        if expired:
            logger.info(f"[Session] Purged {len(expired)} idle session(s)")
        return len(expired)

    async def _purge_loop(self) -> None:
        while True:
            await asyncio.sleep(self.purge_interval)
            try:
                self.purge_expired()
            except Exception as e:
                log_exception_with_details(logger, "[Session] Purge failed:", e)

    def start_purging(self) -> bool:
        """Schedule ``purge_expired`` every ``purge_interval`` seconds while sessions can expire."""
        if not self.idle_timeout or self.idle_timeout <= 0:
            return False
        if self._purge_task and not self._purge_task.done():
            return True
        self._purge_task = asyncio.create_task(self._purge_loop(), name="session-purge")
        logger.info(
            f"[Session] Purging sessions idle for {self.idle_timeout}s every {self.purge_interval}s"
        )
        return True

    async def stop_purging(self) -> None:
        task, self._purge_task = self._purge_task, None
        if not task:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def __len__(self) -> int:
        return len(self.store)
