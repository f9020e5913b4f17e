"""
Rewrite URLs embedded in HTML, CSS and JavaScript payloads so that follow-up
navigation and sub-resource fetches go through the proxy again.

Every entry point is a pure function of (content, RewriteContext) and never
raises: a payload that cannot be processed is logged, counted and returned
unchanged.
"""

import logging
import re
from typing import Optional

from bs4 import BeautifulSoup

from rewrite_proxy.errors import RewriteFailure
from rewrite_proxy.metrics import REWRITE_FAILURES
from rewrite_proxy.rewriter.service_worker import inject_service_worker
from rewrite_proxy.rewriter.url_resolver import RewriteContext, resolve_url
from rewrite_proxy.utils.exception_logging import log_exception_with_details
from rewrite_proxy.vars import (
    INJECT_SERVICE_WORKER,
    REWRITE_CSS_URLS,
    REWRITE_HTML_URLS,
    REWRITE_JS_URLS,
)

logger = logging.getLogger("uvicorn.error")

URL_ATTRIBUTES = ("src", "href", "action", "data-url", "data-src", "data-href")

# Quoted values end at their closing quote, so they may contain parentheses
CSS_URL_PATTERN = re.compile(
    r"""url\(\s*(['"])(.*?)\1\s*\)|url\(\s*([^)'"\s]+)\s*\)""", re.IGNORECASE
)

# Single or double quoted literal on one line, honouring backslash escapes
JS_STRING_PATTERN = re.compile(r"""(['"])((?:\\.|(?!\1)[^\\\n])*)\1""")
JS_ABSOLUTE_PATTERN = re.compile(r"(?:https?:)?//\S", re.IGNORECASE)
JS_API_PATTERN = re.compile(r"api|endpoint", re.IGNORECASE)


def _record_failure(kind: str, exc: Exception) -> None:
    failure = RewriteFailure(kind, f"Error rewriting {kind}: {exc}")
    failure.__cause__ = exc
    REWRITE_FAILURES.labels(content_kind=kind).inc()
    log_exception_with_details(logger, "[Rewriter]", failure, level=logging.WARNING)


def rewrite_html(html: str, context: RewriteContext) -> str:
    try:
        soup = BeautifulSoup(html, "html.parser")
        for attr in URL_ATTRIBUTES:
            for element in soup.find_all(attrs={attr: True}):
                value = element.get(attr)
                if isinstance(value, list):
                    # multi-valued attributes come back as token lists
                    value = " ".join(value)
                if not value or value.startswith("javascript:"):
                    continue
                element[attr] = resolve_url(value, context)
        return str(soup)
    except Exception as e:
        _record_failure("html", e)
        return html


def _css_url(match: re.Match, context: RewriteContext) -> str:
    value = match.group(2) if match.group(1) else match.group(3)
    # Emitted single-quoted, so a quote inside the link must not close it
    link = resolve_url(value, context).replace("'", "%27")
    return f"url('{link}')"


def rewrite_css(css: str, context: RewriteContext) -> str:
    try:
        return CSS_URL_PATTERN.sub(lambda m: _css_url(m, context), css)
    except Exception as e:
        _record_failure("css", e)
        return css


def looks_like_url(literal: str) -> bool:
    """Absolute or protocol-relative URL, root-relative path, or an api/endpoint mention."""
    if not literal:
        return False
    if JS_ABSOLUTE_PATTERN.match(literal):
        return True
    if literal.startswith("/"):
        return len(literal) > 1
    return bool(JS_API_PATTERN.search(literal))


def rewrite_javascript(js: str, context: RewriteContext) -> str:
    """
    Best-effort rewrite of URL-looking string literals.

    This is a textual heuristic, not a parser: literals inside comments are
    rewritten too, quotes inside regex literals can throw the scan off, and
    URLs assembled at runtime are missed.
    """

    def replacer(match: re.Match) -> str:
        quote, literal = match.group(1), match.group(2)
        if not looks_like_url(literal):
            return match.group(0)
        return f"{quote}{resolve_url(literal, context)}{quote}"

    try:
        return JS_STRING_PATTERN.sub(replacer, js)
    except Exception as e:
        _record_failure("javascript", e)
        return js


def content_kind(content_type: Optional[str]) -> Optional[str]:
    content_type = (content_type or "").lower()
    if "text/html" in content_type or "application/xhtml" in content_type:
        return "html"
    if "text/css" in content_type:
        return "css"
    if "javascript" in content_type or "ecmascript" in content_type:
        return "javascript"
    return None


def _charset(content_type: str) -> str:
    match = re.search(r"charset=([\w.-]+)", content_type or "", re.IGNORECASE)
    return match.group(1) if match else "utf-8"


def should_rewrite(content_type: Optional[str]) -> bool:
    kind = content_kind(content_type)
    return (
        (kind == "html" and REWRITE_HTML_URLS)
        or (kind == "css" and REWRITE_CSS_URLS)
        or (kind == "javascript" and REWRITE_JS_URLS)
    )


def rewrite_content(
    content: bytes, content_type: Optional[str], context: RewriteContext
) -> bytes:
    """Rewrite a response body according to its content type."""
    if not content or not should_rewrite(content_type):
        return content

    charset = _charset(content_type)
    try:
        text = content.decode(charset)
    except (UnicodeDecodeError, LookupError):
        logger.debug(f"[Rewriter] Undecodable {content_type} body, passing through")
        return content

    kind = content_kind(content_type)
    if kind == "html":
        text = rewrite_html(text, context)
        if INJECT_SERVICE_WORKER:
            text = inject_service_worker(text, context.proxy_base_url)
    elif kind == "css":
        text = rewrite_css(text, context)
    else:
        text = rewrite_javascript(text, context)

    return text.encode(charset, errors="replace")
