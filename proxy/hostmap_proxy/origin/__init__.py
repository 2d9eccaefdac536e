"""Origin-facing side of the proxy: forwarding, headers, HTML rewriting."""

from .client import OriginClient
from .headers import RequestPreprocessor, filter_response_headers, normalize_accept_encoding
from .transformer import ResponseRewriter, RewriteResult, decode_body, is_html

__all__ = [
    "OriginClient",
    "RequestPreprocessor",
    "ResponseRewriter",
    "RewriteResult",
    "decode_body",
    "filter_response_headers",
    "is_html",
    "normalize_accept_encoding",
]
