import logging
from typing import Dict, Optional
from urllib.parse import urlparse

import httpx
from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse, Response
from opentelemetry import trace

from rewrite_proxy.errors import UpstreamRequestFailure
from rewrite_proxy.rewriter import RewriteContext, resolve_url, rewrite_content
from rewrite_proxy.session import (
    AuthStateTracker,
    CookieRelay,
    ProxySession,
    SessionRegistry,
    try_get_session_token,
)
from rewrite_proxy.utils import error_envelope
from rewrite_proxy.utils.exception_logging import (
    format_exception_message,
    log_exception_with_details,
    upstream_status_code,
)
from rewrite_proxy.utils.traced_requests import traced_request
from rewrite_proxy.vars import (
    HTTPS_ENABLED,
    PROXY_BASE_URL,
    PROXY_TIMEOUT,
    SESSION_COOKIE_NAME,
    SESSION_HEADER_NAME,
    TARGET_URL,
)

router = APIRouter()
tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

sessions = SessionRegistry()
cookie_relay = CookieRelay()
auth_tracker = AuthStateTracker()
sessions.on_expire(cookie_relay.clear)
sessions.on_expire(auth_tracker.clear_state)

# Hop-by-hop headers that should NOT be forwarded (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# The jar replaces the client's cookie header; host and length belong to the upstream hop
STRIPPED_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {
    "host",
    "content-length",
    "cookie",
    "accept-encoding",
}

# Bodies are rewritten and re-sent uncompressed, so only ask for codings httpx decodes
UPSTREAM_ACCEPT_ENCODING = "gzip, deflate"

# httpx hands back decoded bodies, rewriting changes their length, and upstream
# cookies live in the session jar
STRIPPED_RESPONSE_HEADERS = HOP_BY_HOP_HEADERS | {
    "content-length",
    "content-encoding",
    "set-cookie",
}


def get_target_url(path: str, query: str = "") -> str:
    """Construct the upstream URL for an ``/api/{path}`` request."""
    url = f"{TARGET_URL}/{path.lstrip('/')}"
    if query:
        url = f"{url}?{query}"
    return url


def prepare_headers(
    request: Request,
    session_id: Optional[str] = None,
    target_url: Optional[str] = None,
) -> Dict[str, str]:
    """
    Prepare headers for forwarding to the upstream.
    Removes hop-by-hop headers, adds forwarding headers and replays the session
    cookies scoped to ``target_url``.
    """
    headers = {}
    for name, value in request.headers.items():
        if name.lower() not in STRIPPED_REQUEST_HEADERS:
            headers[name.lower()] = value
    headers["accept-encoding"] = UPSTREAM_ACCEPT_ENCODING

    client_ip = request.client.host if request.client else "unknown"
    existing_xff = headers.get("x-forwarded-for", "")
    headers["x-forwarded-for"] = f"{existing_xff}, {client_ip}".strip(", ")
    headers["x-forwarded-host"] = request.headers.get("host", "")
    headers["x-forwarded-proto"] = request.url.scheme
    headers["x-real-ip"] = client_ip

    original_url = request.url.path
    if request.url.query:
        original_url = f"{original_url}?{request.url.query}"
    headers["x-original-url"] = original_url

    if session_id:
        cookie = cookie_relay.cookie_header(session_id, target_url)
        if cookie:
            headers["cookie"] = cookie

    return headers


def rewrite_location_header(location: str, context: RewriteContext) -> str:
    """Point an upstream redirect back through the proxy."""
    if not location:
        return location
    return resolve_url(location, context) or location


def prepare_response_headers(
    response: httpx.Response, context: Optional[RewriteContext] = None
) -> Dict[str, str]:
    headers = {}
    for name, value in response.headers.items():
        name_lower = name.lower()
        if name_lower in STRIPPED_RESPONSE_HEADERS:
            continue
        if name_lower == "location" and context is not None:
            value = rewrite_location_header(value, context)
        headers[name_lower] = value
    return headers


def bind_session(request: Request) -> tuple[ProxySession, bool]:
    """Resolve the client's proxy session and bring its jar and auth state up to date."""
    token = try_get_session_token(
        request.cookies.get(SESSION_COOKIE_NAME),
        request.headers.get(SESSION_HEADER_NAME),
    )
    session, created = sessions.bind(token)
    auth_tracker.touch(session.id)
    cookie_relay.ingest(session.id, request.cookies, urlparse(TARGET_URL).hostname)
    return session, created


def attach_session_cookie(
    response: Response, session: ProxySession, created: bool
) -> Response:
    if created:
        response.set_cookie(
            key=SESSION_COOKIE_NAME,
            value=sessions.token_for(session),
            httponly=True,
            samesite="lax",
            secure=HTTPS_ENABLED,
        )
    return response


def relay_set_cookies(
    response: httpx.Response, session_id: str, source_url: Optional[str] = None
) -> int:
    stored = 0
    for set_cookie in response.headers.get_list("set-cookie"):
        if cookie_relay.relay(session_id, set_cookie, source_url) is not None:
            stored += 1
    return stored


def error_response(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_envelope(error, message))


async def send_upstream(
    request: Request,
    target_url: str,
    session_id: str,
    follow_redirects: bool = False,
) -> httpx.Response:
    """
    Issue the upstream request. Transport failures are raised as
    UpstreamRequestFailure carrying the status the client should see.
    """
    headers = prepare_headers(request, session_id, target_url)
    body = await request.body()
    try:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(PROXY_TIMEOUT),
            follow_redirects=follow_redirects,
        ) as client:
            return await client.request(
                method=request.method,
                url=target_url,
                headers=headers,
                content=body,
            )
    except httpx.TimeoutException as e:
        raise UpstreamRequestFailure(f"Gateway timeout: {e}", 504) from e
    except httpx.ConnectError as e:
        raise UpstreamRequestFailure(f"Cannot connect to upstream: {e}", 502) from e
    except httpx.HTTPError as e:
        raise UpstreamRequestFailure(str(e) or type(e).__name__) from e


def _failure_response(span, failure: UpstreamRequestFailure) -> JSONResponse:
    message = format_exception_message(failure)
    span.set_attribute("proxy.error", message)
    log_exception_with_details(logger, "[Proxy] Proxy error:", failure)
    return error_response(
        upstream_status_code(failure) or 500, "Proxy request failed", message
    )


@router.api_route("/api/{path:path}", methods=["GET", "POST"])
async def proxy_api(request: Request, path: str):
    """Forward ``/api/{path}`` to the configured upstream origin."""
    session, created = bind_session(request)
    target_url = get_target_url(path, str(request.url.query))

    with traced_request(
        tracer=tracer,
        operation="proxy_api",
        session_value=session.id,
        target_url=target_url,
        start_message=f"[Proxy] {request.method} {request.url.path} -> {target_url}",
        extra_attrs={"proxy.method": request.method},
    ) as span:
        try:
            upstream = await send_upstream(
                request, target_url, session.id, follow_redirects=True
            )
        except UpstreamRequestFailure as e:
            return attach_session_cookie(_failure_response(span, e), session, created)

        span.set_attribute("proxy.status_code", upstream.status_code)
        relay_set_cookies(upstream, session.id, target_url)

        if upstream.status_code >= 400:
            response = _failure_response(
                span,
                UpstreamRequestFailure(
                    f"Request failed with status code {upstream.status_code}",
                    upstream.status_code,
                ),
            )
        else:
            response = Response(
                content=upstream.content,
                status_code=upstream.status_code,
                headers=prepare_response_headers(upstream),
            )
        return attach_session_cookie(response, session, created)


@router.api_route("/proxy", methods=["GET", "POST"])
async def proxy_url(request: Request, url: Optional[str] = Query(None)):
    """Fetch an arbitrary upstream URL and rewrite the payload to keep links on the proxy."""
    if not url or urlparse(url).scheme not in ("http", "https"):
        return error_response(
            400,
            "Bad Request",
            "Query parameter 'url' must be an absolute http(s) URL",
        )

    session, created = bind_session(request)
    context = RewriteContext(PROXY_BASE_URL, url)

    with traced_request(
        tracer=tracer,
        operation="proxy_url",
        session_value=session.id,
        target_url=url,
        start_message=f"[Proxy] {request.method} /proxy -> {url}",
        extra_attrs={"proxy.method": request.method},
    ) as span:
        try:
            upstream = await send_upstream(request, url, session.id)
        except UpstreamRequestFailure as e:
            return attach_session_cookie(_failure_response(span, e), session, created)

        span.set_attribute("proxy.status_code", upstream.status_code)
        relay_set_cookies(upstream, session.id, url)

        headers = prepare_response_headers(upstream, context)
        if "location" in headers:
            span.set_attribute("proxy.rewritten_location", headers["location"])

        content = rewrite_content(
            upstream.content, upstream.headers.get("content-type"), context
        )
        response = Response(
            content=content, status_code=upstream.status_code, headers=headers
        )
        return attach_session_cookie(response, session, created)
