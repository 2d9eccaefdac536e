"""Rewrite absolute URLs in HTML so they route back through the proxy.

This is a tag/attribute scoped regex scanner, not an HTML parser. It
matches ``<tag ... attribute="https://host/path"`` and nothing else;
attributes split across malformed markup are left alone.
"""

import functools
import re
import zlib
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

import brotli

from ..codec import HostnameCodec
from ..config import RewriteRule
from ..errors import BodyTooLarge, UnsupportedEncoding


_RE_ABSOLUTE_URL = re.compile(
    rb"https?://(?P<host>[A-Za-z0-9.-]+)(?P<rest>[/?#].*)?\Z",
    re.IGNORECASE | re.DOTALL,
)
_RE_QUERY_START = re.compile(rb"[?#]")
_RE_SLASH_RUN = re.compile(rb"/{2,}")


@functools.lru_cache(maxsize=64)
def _rule_pattern(rule: RewriteRule) -> "re.Pattern[bytes]":
    """Compile the scanner for one element/attribute pair."""
    tag = re.escape(rule.tag.encode("ascii"))
    attribute = re.escape(rule.attribute.encode("ascii"))
    return re.compile(
        rb"<" + tag + rb"\s+(?:[^>]*?\s+)?" + attribute
        + rb"\s*=\s*(?P<quote>[\"'])(?P<url>[^\"'<>]*)(?P=quote)",
        re.IGNORECASE,
    )


def is_html(content_type: Optional[str]) -> bool:
    """True for ``text/html`` regardless of case and parameters."""
    return bool(content_type) and content_type.strip().lower().startswith("text/html")


def collapse_slashes(rest: bytes) -> bytes:
    """Collapse runs of ``/`` in the path part, leaving query/fragment alone."""
    match = _RE_QUERY_START.search(rest)
    split = match.start() if match else len(rest)
    return _RE_SLASH_RUN.sub(b"/", rest[:split]) + rest[split:]


@dataclass
class RewriteResult:
    """Rewritten body plus per-call counters for logging."""
    content: bytes
    rewritten: int = 0
    skipped: int = 0


class ResponseRewriter:
    """Transform HTML bodies fetched from an origin."""

    def __init__(
        self,
        codec: HostnameCodec,
        domain_suffix: str = ".self.com",
        rules: Sequence[RewriteRule] = (),
        verbose: bool = False,
    ):
        self.codec = codec
        self.domain_suffix = domain_suffix
        self.rules = tuple(rules)
        self.verbose = verbose

    def rewrite(
        self,
        body: bytes,
        content_type: str,
        rules: Optional[Iterable[RewriteRule]] = None,
    ) -> bytes:
        """
        Rewrite absolute URLs in HTML content.

        Args:
            body: Identity-encoded response body
            content_type: Response Content-Type header value
            rules: Element/attribute pairs, applied in order
                   (defaults to the rules given at construction)

        Returns:
            The rewritten body, or ``body`` itself for non-HTML content
        """
        if not is_html(content_type):
            return body
        return self.rewrite_html(body, rules).content

    def rewrite_html(
        self, body: bytes, rules: Optional[Iterable[RewriteRule]] = None
    ) -> RewriteResult:
        """Run one full pass over ``body`` per rule."""
        result = RewriteResult(content=body)
        for rule in self.rules if rules is None else rules:
            result.content = _rule_pattern(rule).sub(
                lambda m, rule=rule: self._rewrite_match(m, rule, result),
                result.content,
            )
        return result

    def _rewrite_match(self, match: "re.Match[bytes]", rule: RewriteRule, result: RewriteResult) -> bytes:
        url = match.group("url")
        proxied = self.proxy_url(url)
        if proxied is None:
            result.skipped += 1
            if self.verbose:
                print(f"[REWRITE] Skipping {rule}: {url.decode('latin-1')!r}")
            return match.group(0)

        result.rewritten += 1
        if self.verbose:
            print(
                f"[REWRITE] {rule}: {url.decode('latin-1')} -> "
                f"{proxied.decode('latin-1')}"
            )
        # Splice the new URL in, keeping everything else in the tag as-is
        start = match.start("url") - match.start()
        end = match.end("url") - match.start()
        whole = match.group(0)
        return whole[:start] + proxied + whole[end:]

    def proxy_url(self, url: bytes) -> Optional[bytes]:
        """Map ``https://host/path`` to ``https://<encoded-host><suffix>/path``.

        Returns None for anything that is not a plain absolute http(s)
        URL: relative links, missing scheme, ports, userinfo, empty labels.
        """
        match = _RE_ABSOLUTE_URL.match(url)
        if not match:
            return None
        host = match.group("host").decode("ascii")
        if "" in host.split("."):
            return None
        rest = collapse_slashes(match.group("rest") or b"")
        encoded = self.codec.encode(host) + self.domain_suffix
        return b"https://" + encoded.encode("ascii") + rest


def decode_body(body: bytes, content_encoding: Optional[str], max_size: int = 0) -> bytes:
    """Undo Content-Encoding so the body can be scanned.

    Codings are removed in reverse order of application. Raises
    UnsupportedEncoding for unknown or corrupt data and BodyTooLarge when
    the decoded size passes ``max_size`` (0 = unlimited).
    """
    codings = [
        c.strip().lower() for c in (content_encoding or "").split(",") if c.strip()
    ]
    for coding in reversed(codings):
        if coding == "identity":
            continue
        if coding in ("gzip", "x-gzip"):
            body = _zlib_decode(body, 16 + zlib.MAX_WBITS, max_size, multi_member=True)
        elif coding == "deflate":
            try:
                body = _zlib_decode(body, zlib.MAX_WBITS, max_size)
            except UnsupportedEncoding:
                # Some servers send raw deflate without the zlib wrapper
                body = _zlib_decode(body, -zlib.MAX_WBITS, max_size)
        elif coding == "br":
            body = _brotli_decode(body, max_size)
        else:
            raise UnsupportedEncoding(f"no decoder for {coding!r}")

        if max_size and len(body) > max_size:
            raise BodyTooLarge(f"decoded body exceeds {max_size} bytes")
    return body


def _zlib_decode(data: bytes, wbits: int, max_size: int, multi_member: bool = False) -> bytes:
    out = bytearray()
    while data:
        decoder = zlib.decompressobj(wbits)
        limit = max_size + 1 - len(out) if max_size else 0
        try:
            out += decoder.decompress(data, limit)
        except zlib.error as e:
            raise UnsupportedEncoding(f"corrupt compressed body: {e}") from e
        if max_size and len(out) > max_size:
            raise BodyTooLarge(f"decoded body exceeds {max_size} bytes")
        if not decoder.eof:
            raise UnsupportedEncoding("truncated compressed body")
        data = decoder.unused_data if multi_member else b""
    return bytes(out)


def _brotli_decode(data: bytes, max_size: int) -> bytes:
    decoder = brotli.Decompressor()
    out = bytearray()
    while True:
        kwargs = {"output_buffer_limit": max_size + 1 - len(out)} if max_size else {}
        try:
            out += decoder.process(data, **kwargs)
        except brotli.error as e:
            raise UnsupportedEncoding(f"corrupt br body: {e}") from e
        data = b""
        if max_size and len(out) > max_size:
            raise BodyTooLarge(f"decoded body exceeds {max_size} bytes")
        if decoder.is_finished():
            return bytes(out)
        # Still wants input but there is none left
        if decoder.can_accept_more_data():
            raise UnsupportedEncoding("truncated br body")
