from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qs, quote, urljoin, urlparse

PROXY_PATH = "/proxy"

# Same unreserved set as encodeURIComponent so links match what browsers build
_ENCODE_SAFE = "!~*'()"


@dataclass(frozen=True)
class RewriteContext:
    """Where rewritten links point to (``proxy_base_url``) and what relative
    references resolve against (``target_url``, the document's upstream URL)."""

    proxy_base_url: str
    target_url: str

    def __post_init__(self):
        object.__setattr__(self, "proxy_base_url", self.proxy_base_url.rstrip("/"))


def encode_proxy_url(absolute_url: str, proxy_base_url: str) -> str:
    return (
        f"{proxy_base_url.rstrip('/')}{PROXY_PATH}"
        f"?url={quote(absolute_url, safe=_ENCODE_SAFE)}"
    )


def decode_proxy_url(proxy_link: str) -> Optional[str]:
    """Return the absolute upstream URL carried by a proxy link, if any."""
    parsed = urlparse(proxy_link)
    if parsed.path != PROXY_PATH:
        return None
    values = parse_qs(parsed.query, keep_blank_values=True).get("url")
    return values[0] if values else None


def is_rewritable(url: Optional[str], proxy_base_url: str) -> bool:
    if not url:
        return False
    if url.startswith("#") or url.startswith("javascript:"):
        return False
    if url.startswith(proxy_base_url):
        return False
    return True


def to_absolute(url: str, target_url: str) -> str:
    """
    Resolve ``url`` to an absolute upstream URL.

    Absolute http(s) URLs are kept, protocol-relative ones are assumed https,
    root-relative ones keep the target's scheme and host, and anything else is
    resolved against the full target URL like a browser anchor would.
    """
    if url.startswith("http://") or url.startswith("https://"):
        return url
    if url.startswith("//"):
        return "https:" + url
    if url.startswith("/"):
        base = urlparse(target_url)
        return f"{base.scheme}://{base.netloc}{url}"
    return urljoin(target_url, url)


def resolve_url(url: Optional[str], context: RewriteContext) -> Optional[str]:
    """
    Turn ``url`` into a link that routes through the proxy.

    Empty values, fragments, ``javascript:`` URIs and links that already point
    at the proxy are returned unchanged, which makes the operation idempotent.
    """
    if not is_rewritable(url, context.proxy_base_url):
        return url
    return encode_proxy_url(to_absolute(url, context.target_url), context.proxy_base_url)
