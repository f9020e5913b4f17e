from .url_resolver import (
    RewriteContext,
    resolve_url,
    encode_proxy_url,
    decode_proxy_url,
)
from .content import (
    rewrite_html,
    rewrite_css,
    rewrite_javascript,
    rewrite_content,
)

__all__ = [
    "RewriteContext",
    "resolve_url",
    "encode_proxy_url",
    "decode_proxy_url",
    "rewrite_html",
    "rewrite_css",
    "rewrite_javascript",
    "rewrite_content",
]
