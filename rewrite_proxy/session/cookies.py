import logging
from dataclasses import dataclass, field
from http.cookies import CookieError, SimpleCookie
from typing import Any, Mapping, Optional
from urllib.parse import urlparse

from rewrite_proxy.errors import CookieRelayFailure
from rewrite_proxy.metrics import COOKIE_RELAY_FAILURES, COOKIES_DROPPED_BY_POLICY
from rewrite_proxy.store import KeyValueStore, build_store
from rewrite_proxy.utils import mask_token
from rewrite_proxy.utils.exception_logging import log_exception_with_details
from rewrite_proxy.vars import (
    COOKIE_BLACKLIST,
    COOKIE_WHITELIST,
    SESSION_COOKIE_NAME,
    STRIP_HTTPONLY,
    STRIP_SECURE,
)

logger = logging.getLogger("uvicorn.error")


def _host_and_path(url: Optional[str]) -> tuple[Optional[str], str]:
    if not url:
        return None, "/"
    parsed = urlparse(url)
    return (parsed.hostname or None), (parsed.path or "/")


def domain_matches(host: str, domain: str) -> bool:
    domain = domain.lstrip(".").lower()
    host = host.lower()
    return host == domain or host.endswith(f".{domain}")


def path_matches(request_path: str, cookie_path: str) -> bool:
    cookie_path = cookie_path.rstrip("/")
    if not cookie_path:
        return True
    return request_path == cookie_path or request_path.startswith(f"{cookie_path}/")


@dataclass
class CookieRecord:
    name: str
    value: str
    attributes: dict[str, Any] = field(default_factory=dict)
    # Host that set the cookie; host-only cookies are replayed to it alone
    origin: Optional[str] = None

    @property
    def secure(self) -> bool:
        return bool(self.attributes.get("secure", False))

    @property
    def http_only(self) -> bool:
        return bool(self.attributes.get("httponly", False))

    def applies_to(self, host: str, path: str) -> bool:
        domain = self.attributes.get("domain")
        if isinstance(domain, str) and domain.strip("."):
            if not domain_matches(host, domain):
                return False
        elif self.origin is not None and host.lower() != self.origin:
            return False

        cookie_path = self.attributes.get("path")
        if isinstance(cookie_path, str) and cookie_path.startswith("/"):
            return path_matches(path, cookie_path)
        return True


def parse_set_cookie(raw: str) -> CookieRecord:
    """
    Parse ``name=value; attr[=val]; ...`` into a CookieRecord.

    Attribute names are lower-cased; valueless attributes (``Secure``,
    ``HttpOnly``) map to True. Raises CookieRelayFailure on malformed input.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise CookieRelayFailure(str(raw), "Empty Set-Cookie header")

    name_value = raw.split(";", 1)[0].strip()
    if "=" not in name_value:
        raise CookieRelayFailure(raw, f"Missing '=' in cookie pair: {name_value!r}")
    if not name_value.split("=", 1)[0].strip():
        raise CookieRelayFailure(raw, "Empty cookie name")

    cookie = SimpleCookie()
    try:
        cookie.load(raw)
    except CookieError as e:
        raise CookieRelayFailure(raw, f"Invalid Set-Cookie header: {e}") from e
    if not cookie:
        raise CookieRelayFailure(raw, f"Unparseable Set-Cookie header: {name_value!r}")

    morsel = next(iter(cookie.values()))
    attributes: dict[str, Any] = {key: value for key, value in morsel.items() if value}
    return CookieRecord(name=morsel.key, value=morsel.value, attributes=attributes)


class CookieRelay:
    """
    Per-session cookie jar fed by the client's request cookies and the
    upstream's Set-Cookie headers, replayed on upstream requests.

    Policy for upstream cookies is applied in a fixed order: allow-list, then
    deny-list, then attribute overrides. A name on both lists is dropped.

    Replay is scoped like a browser jar: a record goes only to hosts its
    ``Domain`` covers (or the host that set it, when it has none) and to paths
    under its ``Path``.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        whitelist: Optional[list[str]] = None,
        blacklist: Optional[list[str]] = None,
        strip_secure: bool = STRIP_SECURE,
        strip_httponly: bool = STRIP_HTTPONLY,
        session_cookie_name: str = SESSION_COOKIE_NAME,
    ):
        self.store = store if store is not None else build_store()
        self.whitelist = list(COOKIE_WHITELIST if whitelist is None else whitelist)
        self.blacklist = list(COOKIE_BLACKLIST if blacklist is None else blacklist)
        self.strip_secure = strip_secure
        self.strip_httponly = strip_httponly
        self.session_cookie_name = session_cookie_name

    def _jar(self, session_id: str) -> dict[str, CookieRecord]:
        return self.store.create(session_id, dict)

    def ingest(
        self,
        session_id: str,
        request_cookies: Mapping[str, str],
        origin: Optional[str] = None,
    ) -> None:
        """Merge the cookies a client sent into its jar, overwriting by name."""
        if not request_cookies:
            return
        jar = self._jar(session_id)
        host = origin.lower() if origin else None
        for name, value in request_cookies.items():
            if name == self.session_cookie_name:
                continue
            jar[name] = CookieRecord(name=name, value=value, origin=host)

    def allowed(self, name: str) -> bool:
        if self.whitelist and name not in self.whitelist:
            COOKIES_DROPPED_BY_POLICY.labels(reason="not_whitelisted").inc()
            return False
        if name in self.blacklist:
            COOKIES_DROPPED_BY_POLICY.labels(reason="blacklisted").inc()
            return False
        return True

    def relay(
        self, session_id: str, set_cookie: str, source_url: Optional[str] = None
    ) -> Optional[CookieRecord]:
        """Store an upstream Set-Cookie in the session jar, or drop it."""
        try:
            record = parse_set_cookie(set_cookie)
        except CookieRelayFailure as e:
            COOKIE_RELAY_FAILURES.inc()
            log_exception_with_details(
                logger, "[Cookie Relay] Error relaying cookie:", e, logging.WARNING
            )
            return None

        if not self.allowed(record.name):
            logger.debug(f"[Cookie Relay] Dropped cookie by policy: {record.name}")
            return None

        host, _ = _host_and_path(source_url)
        if host is not None:
            domain = record.attributes.get("domain")
            if isinstance(domain, str) and domain.strip(".") and not domain_matches(
                host, domain
            ):
                COOKIES_DROPPED_BY_POLICY.labels(reason="foreign_domain").inc()
                logger.debug(
                    f"[Cookie Relay] Dropped cookie {record.name}: "
                    f"{host} cannot set cookies for {domain}"
                )
                return None
            record.origin = host.lower()

        if self.strip_secure:
            record.attributes["secure"] = False
        if self.strip_httponly:
            record.attributes["httponly"] = False

        self._jar(session_id)[record.name] = record
        logger.info(
            mask_token(
                f"[Cookie Relay] Stored cookie: {record.name} for session {session_id}",
                session_id,
            )
        )
        return record

    def read(self, session_id: str) -> dict[str, CookieRecord]:
        return dict(self.store.get(session_id) or {})

    def clear(self, session_id: str) -> None:
        self.store.delete(session_id)

    def cookie_header(self, session_id: str, target_url: Optional[str] = None) -> str:
        """
        Cookie header value replaying the jar upstream. With a target URL only
        the records scoped to its host and path are included.
        """
        records = self.read(session_id).values()
        host, path = _host_and_path(target_url)
        if host is not None:
            records = [r for r in records if r.applies_to(host, path)]
        return "; ".join(f"{r.name}={r.value}" for r in records)
