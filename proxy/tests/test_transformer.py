import gzip
import zlib

import brotli
import pytest

from hostmap_proxy.codec import HostnameCodec
from hostmap_proxy.config import DEFAULT_REWRITE_RULES, RewriteRule
from hostmap_proxy.errors import BodyTooLarge, UnsupportedEncoding
from hostmap_proxy.origin.transformer import (
    ResponseRewriter,
    collapse_slashes,
    decode_body,
    is_html,
)


@pytest.fixture
def rewriter():
    return ResponseRewriter(HostnameCodec(), ".self.com", DEFAULT_REWRITE_RULES)


def test_rewrites_anchor(rewriter):
    body = b'<a href="https://example.com/foo">x</a>'
    assert rewriter.rewrite(body, "text/html") == (
        b'<a href="https://example-com.self.com/foo">x</a>'
    )


def test_collapses_doubled_slashes(rewriter):
    body = b'<a href="https://example.com//foo//bar">x</a>'
    assert rewriter.rewrite(body, "text/html") == (
        b'<a href="https://example-com.self.com/foo/bar">x</a>'
    )


def test_query_string_slashes_untouched():
    assert collapse_slashes(b"//a//b?next=https://x//y#f//g") == b"/a/b?next=https://x//y#f//g"


def test_non_html_is_returned_unchanged(rewriter):
    body = b'<a href="https://example.com/foo">x</a>'
    assert rewriter.rewrite(body, "text/plain") is body
    assert rewriter.rewrite(body, "application/json") is body
    assert rewriter.rewrite(body, "") is body


@pytest.mark.parametrize(
    "content_type",
    ["text/html", "TEXT/HTML", "text/html; charset=utf-8", " text/html;charset=ISO-8859-1"],
)
def test_html_detection(content_type):
    assert is_html(content_type)


def test_script_rule_does_not_touch_other_elements():
    rewriter = ResponseRewriter(
        HostnameCodec(), ".self.com", [RewriteRule("script", "src")]
    )
    body = (
        b'<a href="https://example.com/page">p</a>\n'
        b'<script src="https://cdn.example.com/a.js"></script>'
    )
    assert rewriter.rewrite(body, "text/html") == (
        b'<a href="https://example.com/page">p</a>\n'
        b'<script src="https://cdn-example-com.self.com/a.js"></script>'
    )


def test_all_default_rules(rewriter):
    body = (
        b"<html><head>"
        b"<link rel='stylesheet' href='https://static.example.com/s.css'>"
        b'<script type="text/javascript" src="http://cdn.example.com/a.js"></script>'
        b'</head><body><a class="nav" href="https://www.example.org/">home</a>'
        b"</body></html>"
    )
    result = rewriter.rewrite_html(body)
    assert result.rewritten == 3
    assert result.content == (
        b"<html><head>"
        b"<link rel='stylesheet' href='https://static-example-com.self.com/s.css'>"
        b'<script type="text/javascript" src="https://cdn-example-com.self.com/a.js"></script>'
        b'</head><body><a class="nav" href="https://www-example-org.self.com/">home</a>'
        b"</body></html>"
    )


def test_malformed_url_left_untouched_rest_rewritten(rewriter):
    body = (
        b'<a href="example.com/no-scheme">1</a>'
        b'<a href="https://example.com:8443/port">2</a>'
        b'<a href="https://user@example.com/">3</a>'
        b'<a href="https://bad..host/">4</a>'
        b'<a href="/relative">5</a>'
        b'<a href="https://example.com/ok">6</a>'
    )
    result = rewriter.rewrite_html(body)
    assert result.rewritten == 1
    assert result.skipped == 5
    assert result.content == body.replace(
        b"https://example.com/ok", b"https://example-com.self.com/ok"
    )


def test_only_attribute_value_changes(rewriter):
    body = b'<A  data-x="1"\n  HREF = "https://Example.com/Path"  >T</A>'
    assert rewriter.rewrite(body, "text/html") == (
        b'<A  data-x="1"\n  HREF = "https://Example-com.self.com/Path"  >T</A>'
    )


def test_tag_and_attribute_match_whole_names(rewriter):
    body = (
        b'<abbr href="https://example.com/">a</abbr>'
        b'<a data-href="https://example.com/">b</a>'
    )
    assert rewriter.rewrite(body, "text/html") == body


def test_non_utf8_bytes_preserved(rewriter):
    body = b'<p>caf\xe9</p><a href="https://example.com/x">\xff</a>'
    assert rewriter.rewrite(body, "text/html") == (
        b'<p>caf\xe9</p><a href="https://example-com.self.com/x">\xff</a>'
    )


def test_bare_host_without_path(rewriter):
    body = b'<a href="https://example.com">x</a><a href="https://example.com?q=1">y</a>'
    assert rewriter.rewrite(body, "text/html") == (
        b'<a href="https://example-com.self.com">x</a>'
        b'<a href="https://example-com.self.com?q=1">y</a>'
    )


def test_multiple_matches_left_to_right(rewriter):
    body = b'<a href="https://a.com/1"></a><a href="https://b.com/2"></a>'
    assert rewriter.rewrite(body, "text/html") == (
        b'<a href="https://a-com.self.com/1"></a><a href="https://b-com.self.com/2"></a>'
    )


def test_rules_argument_overrides_defaults(rewriter):
    body = b'<img src="https://example.com/i.png"><a href="https://example.com/">'
    out = rewriter.rewrite(body, "text/html", rules=[RewriteRule("img", "src")])
    assert out == b'<img src="https://example-com.self.com/i.png"><a href="https://example.com/">'


HTML = b'<a href="https://example.com/">x</a>'


def test_decode_identity():
    assert decode_body(HTML, None) == HTML
    assert decode_body(HTML, "identity") == HTML


def test_decode_gzip():
    assert decode_body(gzip.compress(HTML), "gzip") == HTML


def test_decode_deflate_zlib_and_raw():
    assert decode_body(zlib.compress(HTML), "deflate") == HTML
    raw = zlib.compressobj(wbits=-zlib.MAX_WBITS)
    assert decode_body(raw.compress(HTML) + raw.flush(), "deflate") == HTML


def test_decode_brotli():
    assert decode_body(brotli.compress(HTML), "br") == HTML


def test_decode_stacked_codings():
    body = brotli.compress(gzip.compress(HTML))
    assert decode_body(body, "gzip, br") == HTML


def test_decode_unsupported_coding():
    with pytest.raises(UnsupportedEncoding):
        decode_body(HTML, "zstd")


def test_decode_corrupt_body():
    with pytest.raises(UnsupportedEncoding):
        decode_body(b"definitely not gzip", "gzip")


def test_decode_respects_size_cap():
    bomb = gzip.compress(b"a" * 100_000)
    with pytest.raises(BodyTooLarge):
        decode_body(bomb, "gzip", max_size=1000)
    assert len(decode_body(bomb, "gzip", max_size=100_000)) == 100_000


def test_decode_brotli_respects_size_cap():
    bomb = brotli.compress(b"a" * 10_000_000)
    assert len(bomb) < 1000
    with pytest.raises(BodyTooLarge):
        decode_body(bomb, "br", max_size=1000)
    small = brotli.compress(b"a" * 5000)
    assert decode_body(small, "br", max_size=5000) == b"a" * 5000


def test_decode_truncated_brotli():
    body = brotli.compress(b"<p>" + bytes(range(256)) * 50 + b"</p>")
    with pytest.raises(UnsupportedEncoding):
        decode_body(body[: len(body) // 2], "br", max_size=100_000)
