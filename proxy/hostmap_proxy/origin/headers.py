"""Header normalisation for requests and responses crossing the proxy."""

from typing import Iterable, List, Tuple

from ..router import UpstreamTarget

Headers = List[Tuple[str, str]]

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

# Codings the response rewriter can undo before scanning HTML
SUPPORTED_ENCODINGS = ("gzip", "deflate", "br")
DEFAULT_ACCEPT_ENCODING = "gzip, deflate, br"


def normalize_accept_encoding(value: str) -> str:
    """Drop content codings the rewriter has no decoder for.

    ``"gzip, deflate, br, zstd"`` becomes ``"gzip, deflate, br"``. Quality
    parameters on kept codings are preserved. If nothing usable remains
    the default is returned.
    """
    kept = []
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        coding = item.split(";", 1)[0].strip().lower()
        if coding in SUPPORTED_ENCODINGS or coding in ("identity", "x-gzip"):
            kept.append(item)
    return ", ".join(kept) if kept else DEFAULT_ACCEPT_ENCODING


class RequestPreprocessor:
    """Prepare client request headers for the origin."""

    def normalize(self, headers: Iterable[Tuple[str, str]], target: UpstreamTarget) -> Headers:
        """Return the header list to send upstream.

        Host is replaced with the origin host, Accept-Encoding is limited
        to codings we can decode, hop-by-hop and length headers are
        dropped. Everything else is forwarded in order.
        """
        result: Headers = []
        accept_encoding = None
        for name, value in headers:
            name_lower = name.lower()
            if name_lower in HOP_BY_HOP_HEADERS or name_lower in ("host", "content-length"):
                continue
            if name_lower == "accept-encoding":
                # Collapse repeats into one normalized value
                if accept_encoding is None:
                    accept_encoding = value
                else:
                    accept_encoding = f"{accept_encoding}, {value}"
                continue
            result.append((name, value))

        result.insert(0, ("Host", target.host))
        if accept_encoding is None:
            result.append(("Accept-Encoding", DEFAULT_ACCEPT_ENCODING))
        else:
            result.append(("Accept-Encoding", normalize_accept_encoding(accept_encoding)))
        return result


def filter_response_headers(headers: Iterable[Tuple[str, str]], drop: Iterable[str] = ()) -> Headers:
    """Copy origin response headers minus hop-by-hop, framing and ``drop``."""
    skip = HOP_BY_HOP_HEADERS | {"content-length"} | {d.lower() for d in drop}
    return [(name, value) for name, value in headers if name.lower() not in skip]
