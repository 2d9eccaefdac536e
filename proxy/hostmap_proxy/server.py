"""Reverse proxy server that routes on hostnames encoding the origin."""

import asyncio
import itertools
import os
import ssl
from dataclasses import dataclass, field
from pathlib import Path
from string import Template
from typing import List, Optional, Tuple
from urllib.parse import urlsplit

import httpx

from .codec import HostnameCodec
from .config import Config
from .errors import (
    BadRequest,
    BodyTooLarge,
    ProxyError,
    RequestTooLarge,
    UnsupportedEncoding,
    UpstreamTimeout,
)
from .origin import (
    OriginClient,
    RequestPreprocessor,
    ResponseRewriter,
    decode_body,
    filter_response_headers,
    is_html,
)
from .router import Router, UpstreamTarget

Headers = List[Tuple[str, str]]

# Default error descriptions per code
ERROR_DESCRIPTIONS = {
    400: "The proxy could not work out which site this hostname refers to.",
    413: "The request body is larger than this proxy accepts.",
    500: "An unexpected error occurred in the proxy.",
    501: "Websocket upgrades and CONNECT tunnels are not supported by this proxy.",
    502: "The origin server could not be reached or sent a response the proxy cannot relay.",
    504: "The origin server did not respond in time.",
}

# Minimal fallback template when no template files are available
FALLBACK_TEMPLATE = Template(
    "<html><body><h1>$code $message</h1><p>$description</p>"
    "<hr><small>$url</small></body></html>"
)

MAX_HEADER_LINES = 200

# Per-request lifecycle, in order
RECEIVED = "RECEIVED"
ROUTED = "ROUTED"
FORWARDED = "FORWARDED"
RESPONSE_BUFFERED = "RESPONSE_BUFFERED"
RESPONSE_STREAMED = "RESPONSE_STREAMED"
REWRITTEN = "REWRITTEN"
SENT = "SENT"
FAILED = "FAILED"


@dataclass
class ClientRequest:
    """A parsed inbound request."""
    method: str
    target: str
    headers: Headers
    body: bytes = b""

    def header(self, name: str, default: str = "") -> str:
        name = name.lower()
        for key, value in self.headers:
            if key.lower() == name:
                return value
        return default

    @property
    def host(self) -> str:
        host = self.header("host")
        if not host and "://" in self.target:
            host = urlsplit(self.target).netloc
        return host

    @property
    def path(self) -> str:
        """Origin-form path and query, also for absolute-form targets."""
        if "://" not in self.target:
            return self.target
        parts = urlsplit(self.target)
        path = parts.path or "/"
        return f"{path}?{parts.query}" if parts.query else path


@dataclass
class RequestContext:
    """Bookkeeping for one request/response cycle."""
    request_id: int
    verbose: bool = False
    state: str = RECEIVED
    url: str = ""
    headers_sent: bool = False
    history: List[str] = field(default_factory=lambda: [RECEIVED])

    def advance(self, state: str) -> None:
        self.state = state
        self.history.append(state)
        if self.verbose:
            print(f"[PROXY] #{self.request_id} -> {state}")


class ClientDisconnected(Exception):
    """The client went away while the upstream exchange was in flight."""


class ProxyServer:
    """HTTP(S) reverse proxy for encoded-hostname origins."""

    def __init__(self, config: Config, origin: Optional[OriginClient] = None):
        self.config = config
        self.codec = HostnameCodec()
        self.router = Router(
            self.codec,
            domain_suffix=config.routing.domain_suffix,
            scheme=config.routing.upstream_scheme,
            fallback_origin=config.routing.fallback_origin,
            strict_suffix=config.routing.strict_suffix,
        )
        self.preprocessor = RequestPreprocessor()
        self.rewriter = ResponseRewriter(
            self.codec,
            domain_suffix=config.routing.domain_suffix,
            rules=config.rewrite_rules,
            verbose=config.logging.verbose,
        )
        self.origin = origin or OriginClient(
            connect_timeout=config.upstream.connect_timeout,
            read_timeout=config.upstream.read_timeout,
            verify_tls=config.upstream.verify_tls,
            max_connections=config.upstream.max_connections,
        )
        self._server: Optional[asyncio.AbstractServer] = None
        self._ids = itertools.count(1)

        # Load error page templates
        self._error_templates: dict[int, Template] = {}
        self._default_error_template: Optional[Template] = None
        self._load_error_templates()

    def _load_error_templates(self):
        """Load error page templates from disk."""
        error_dir = self.config.proxy.error_pages_dir
        if not error_dir:
            # Try default location relative to the proxy package
            pkg_dir = Path(__file__).resolve().parent.parent
            candidate = pkg_dir / "error_pages"
            if candidate.is_dir():
                error_dir = str(candidate)

        if not error_dir or not os.path.isdir(error_dir):
            print("[PROXY] No error_pages directory found, using fallback template")
            return

        print(f"[PROXY] Loading error templates from {error_dir}")

        # Load default template (error.html)
        default_path = os.path.join(error_dir, "error.html")
        if os.path.isfile(default_path):
            with open(default_path, "r", encoding="utf-8") as f:
                self._default_error_template = Template(f.read())
            print(f"[PROXY]   Loaded default: error.html")

        # Load per-code templates (400.html, 502.html, etc.)
        for entry in os.listdir(error_dir):
            if entry == "error.html":
                continue
            name, ext = os.path.splitext(entry)
            if ext == ".html" and name.isdigit():
                path = os.path.join(error_dir, entry)
                with open(path, "r", encoding="utf-8") as f:
                    self._error_templates[int(name)] = Template(f.read())
                print(f"[PROXY]   Loaded template: {entry}")

    def _render_error_page(
        self, code: int, message: str, url: str = "", description: str = ""
    ) -> bytes:
        """Render an error page from template."""
        if not description:
            description = ERROR_DESCRIPTIONS.get(code, message)

        template_vars = {
            "code": str(code),
            "message": message,
            "description": description,
            "url": url,
            "domain_suffix": self.config.routing.domain_suffix,
        }

        # Try per-code template first, then default, then fallback
        template = self._error_templates.get(code)
        if not template:
            template = self._default_error_template
        if not template:
            template = FALLBACK_TEMPLATE

        return template.safe_substitute(template_vars).encode("utf-8")

    def _ssl_context(self) -> Optional[ssl.SSLContext]:
        """Server-side TLS context from the configured certificate, if any."""
        tls = self.config.tls
        if not tls.enabled:
            return None
        context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
        context.load_cert_chain(tls.cert_file, tls.key_file)
        return context

    @property
    def port(self) -> int:
        """Bound port (useful when configured with port 0)."""
        return self._server.sockets[0].getsockname()[1]

    async def listen(self):
        """Bind the listening socket without blocking."""
        self._server = await asyncio.start_server(
            self._handle_client,
            self.config.proxy.host,
            self.config.proxy.port,
            ssl=self._ssl_context(),
        )
        addr = self._server.sockets[0].getsockname()
        scheme = "https" if self.config.tls.enabled else "http"
        print(f"[PROXY] Listening on {scheme}://{addr[0]}:{addr[1]}")
        print(f"[PROXY] Domain suffix: {self.config.routing.domain_suffix}")
        if self.router.fallback:
            print(f"[PROXY] Fallback origin: {self.router.fallback.base_url}")

    async def start(self):
        """Start the proxy server and serve until cancelled."""
        await self.listen()
        async with self._server:
            await self._server.serve_forever()

    async def stop(self):
        """Stop the proxy server."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
        await self.origin.close()

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ):
        """Handle one client connection (one request, then close)."""
        ctx = RequestContext(next(self._ids), verbose=self.config.logging.verbose)
        try:
            request = await self._read_request(reader)
            if request is None:
                return

            if request.method == "CONNECT" or request.header("upgrade"):
                print(f"[PROXY] #{ctx.request_id} Refusing {request.method} upgrade/tunnel")
                await self._send_error(writer, ctx, 501, "Not Implemented")
                return

            target = self.router.resolve(request.host)
            ctx.url = target.url_for(request.path)
            ctx.advance(ROUTED)
            print(f"[PROXY] #{ctx.request_id} {request.method} {request.host}{request.path} -> {ctx.url}")

            await self._forward_watching_client(reader, writer, ctx, request, target)

        except ClientDisconnected:
            ctx.advance(FAILED)
            print(f"[PROXY] #{ctx.request_id} Client disconnected, abandoned {ctx.url}")
        except ProxyError as e:
            ctx.advance(FAILED)
            print(f"[PROXY] #{ctx.request_id} {e.status} {type(e).__name__}: {e}")
            await self._send_error(writer, ctx, e.status, e.message, url=ctx.url)
        except (ConnectionError, asyncio.IncompleteReadError) as e:
            ctx.advance(FAILED)
            print(f"[PROXY] #{ctx.request_id} Connection lost: {e!r}")
        except Exception as e:
            ctx.advance(FAILED)
            print(f"[PROXY] #{ctx.request_id} Error: {e!r}")
            await self._send_error(writer, ctx, 500, "Internal Server Error", url=ctx.url)
        finally:
            try:
                writer.close()
                await writer.wait_closed()
            except (ConnectionError, ssl.SSLError) as e:
                if self.config.logging.verbose:
                    print(f"[PROXY] #{ctx.request_id} Close failed: {e!r}")

    async def _read_request(self, reader: asyncio.StreamReader) -> Optional[ClientRequest]:
        """Parse request line, headers and body. None on an idle close."""
        try:
            request_line = await reader.readline()
            if not request_line:
                return None

            parts = request_line.decode("latin-1").strip().split(" ")
            if len(parts) != 3 or not parts[2].startswith("HTTP/"):
                raise BadRequest(f"malformed request line {request_line[:100]!r}")
            method, target = parts[0].upper(), parts[1]

            headers: Headers = []
            while True:
                line = await reader.readline()
                if line in (b"\r\n", b"\n", b""):
                    break
                if len(headers) >= MAX_HEADER_LINES:
                    raise BadRequest("too many header lines")
                name, sep, value = line.decode("latin-1").partition(":")
                if not sep or not name.strip():
                    continue
                headers.append((name.strip(), value.strip()))

            request = ClientRequest(method=method, target=target, headers=headers)
            request.body = await self._read_body(reader, request)
            return request
        except ValueError as e:
            # StreamReader raises ValueError when a line exceeds its limit
            raise BadRequest(str(e)) from e
        except asyncio.IncompleteReadError as e:
            raise BadRequest("request body ended early") from e

    async def _read_body(self, reader: asyncio.StreamReader, request: ClientRequest) -> bytes:
        limit = self.config.proxy.max_request_bytes
        if "chunked" in request.header("transfer-encoding").lower():
            return await self._read_chunked(reader, limit)
        length = request.header("content-length")
        if not length:
            return b""
        if not length.isdigit():
            raise BadRequest(f"invalid Content-Length {length!r}")
        if limit and int(length) > limit:
            raise RequestTooLarge(f"Content-Length {length} exceeds {limit} bytes")
        return await reader.readexactly(int(length))

    @staticmethod
    async def _read_chunked(reader: asyncio.StreamReader, limit: int = 0) -> bytes:
        """Decode a chunked request body (trailers are discarded)."""
        body = bytearray()
        while True:
            size_line = await reader.readline()
            size_text = size_line.split(b";", 1)[0].strip()
            try:
                size = int(size_text, 16)
            except ValueError:
                raise BadRequest(f"invalid chunk size {size_text[:20]!r}")
            if size == 0:
                break
            if limit and len(body) + size > limit:
                raise RequestTooLarge(f"chunked body exceeds {limit} bytes")
            body += await reader.readexactly(size)
            await reader.readexactly(2)  # CRLF after chunk data
        while True:
            line = await reader.readline()
            if line in (b"\r\n", b"\n", b""):
                break
        return bytes(body)

    async def _forward_watching_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        ctx: RequestContext,
        request: ClientRequest,
        target: UpstreamTarget,
    ):
        """Run the upstream exchange, cancelling it if the client hangs up."""
        exchange = asyncio.create_task(self._forward(writer, ctx, request, target))
        watcher = asyncio.create_task(reader.read(1))
        try:
            done, _ = await asyncio.wait(
                {exchange, watcher}, return_when=asyncio.FIRST_COMPLETED
            )
            if exchange not in done:
                gone = watcher.exception() is not None or watcher.result() == b""
                if gone:
                    exchange.cancel()
                    await asyncio.gather(exchange, return_exceptions=True)
                    raise ClientDisconnected()
                # Stray bytes after the request are ignored; we close anyway
            await exchange
        finally:
            watcher.cancel()
            if not exchange.done():
                exchange.cancel()

    async def _forward(
        self,
        writer: asyncio.StreamWriter,
        ctx: RequestContext,
        request: ClientRequest,
        target: UpstreamTarget,
    ):
        """Send the request upstream and relay the response."""
        headers = self.preprocessor.normalize(request.headers, target)
        async with self.origin.stream(
            request.method, ctx.url, headers, request.body
        ) as response:
            ctx.advance(FORWARDED)
            content_type = response.headers.get("content-type", "")
            body_allowed = _has_body(request.method, response.status_code)

            if self.config.rewrite.enabled and body_allowed and is_html(content_type):
                ctx.advance(RESPONSE_BUFFERED)
                try:
                    raw = await asyncio.wait_for(
                        self._read_bounded(response),
                        timeout=self.config.upstream.response_timeout,
                    )
                except asyncio.TimeoutError as e:
                    raise UpstreamTimeout(f"{ctx.url} did not complete in time") from e
                out_headers, body = self._rewrite_response(ctx, response, raw)
                out_headers.append(("Content-Length", str(len(body))))
                self._write_head(writer, ctx, response, out_headers)
                writer.write(body)
                await writer.drain()
            else:
                ctx.advance(RESPONSE_STREAMED)
                await self._send_streamed(writer, ctx, response, body_allowed)
        ctx.advance(SENT)

    async def _read_bounded(self, response: httpx.Response) -> bytes:
        """Read the raw body, failing once it passes the buffer cap."""
        limit = self.config.rewrite.max_body_bytes
        declared = response.headers.get("content-length", "")
        if limit and declared.isdigit() and int(declared) > limit:
            raise BodyTooLarge(f"Content-Length {declared} exceeds {limit} bytes")

        buffer = bytearray()
        async for chunk in response.aiter_raw():
            buffer += chunk
            if limit and len(buffer) > limit:
                raise BodyTooLarge(f"body exceeds {limit} bytes")
        return bytes(buffer)

    def _rewrite_response(
        self, ctx: RequestContext, response: httpx.Response, raw: bytes
    ) -> Tuple[Headers, bytes]:
        """Decode, rewrite and re-frame a buffered HTML body.

        Falls back to the untouched body when the encoding can't be undone.
        """
        headers = _raw_headers(response)
        encoding = response.headers.get("content-encoding", "")
        try:
            decoded = decode_body(raw, encoding, max_size=self.config.rewrite.max_body_bytes)
        except UnsupportedEncoding as e:
            print(f"[REWRITE] #{ctx.request_id} Skipped {ctx.url}: {e}")
            out_headers = filter_response_headers(headers)
            out_headers.append(("X-Hostmap-Rewrite", "skipped"))
            return out_headers, raw

        result = self.rewriter.rewrite_html(decoded)
        ctx.advance(REWRITTEN)
        print(
            f"[REWRITE] #{ctx.request_id} {ctx.url}: {result.rewritten} rewritten, "
            f"{result.skipped} skipped"
        )
        # The body now goes out identity-encoded
        return filter_response_headers(headers, drop=("content-encoding",)), result.content

    async def _send_streamed(
        self,
        writer: asyncio.StreamWriter,
        ctx: RequestContext,
        response: httpx.Response,
        body_allowed: bool,
    ):
        """Relay headers then raw body chunks without buffering."""
        out_headers = filter_response_headers(_raw_headers(response))
        length = response.headers.get("content-length", "")
        if length.isdigit() and (body_allowed or response.status_code not in (204, 304)):
            # Without a length the response is delimited by closing the connection
            out_headers.append(("Content-Length", length))
        self._write_head(writer, ctx, response, out_headers)
        await writer.drain()

        if not body_allowed:
            return
        async for chunk in response.aiter_raw():
            writer.write(chunk)
            await writer.drain()

    def _write_head(
        self,
        writer: asyncio.StreamWriter,
        ctx: RequestContext,
        response: httpx.Response,
        headers: Headers,
    ):
        reason = response.reason_phrase or self.HTTP_REASONS.get(response.status_code, "")
        lines = [f"HTTP/1.1 {response.status_code} {reason}\r\n"]
        lines.extend(f"{name}: {value}\r\n" for name, value in headers)
        lines.append("Connection: close\r\n\r\n")
        writer.write("".join(lines).encode("latin-1"))
        ctx.headers_sent = True

    # Standard HTTP reason phrases
    HTTP_REASONS = {
        200: "OK", 201: "Created", 204: "No Content",
        301: "Moved Permanently", 302: "Found", 304: "Not Modified",
        400: "Bad Request", 403: "Forbidden", 404: "Not Found", 413: "Payload Too Large",
        500: "Internal Server Error", 501: "Not Implemented",
        502: "Bad Gateway", 503: "Service Unavailable", 504: "Gateway Timeout",
    }

    async def _send_error(
        self,
        writer: asyncio.StreamWriter,
        ctx: RequestContext,
        code: int,
        message: str,
        url: str = "",
        description: str = "",
    ):
        """Send error response using template, unless a response already started."""
        if ctx.headers_sent:
            print(f"[PROXY] #{ctx.request_id} Response already started, dropping connection")
            return

        reason = self.HTTP_REASONS.get(code, message)
        body_bytes = self._render_error_page(code, message, url=url, description=description)

        try:
            writer.write(f"HTTP/1.1 {code} {reason}\r\n".encode())
            writer.write(b"Content-Type: text/html; charset=utf-8\r\n")
            writer.write(f"Content-Length: {len(body_bytes)}\r\n".encode())
            writer.write(b"Connection: close\r\n")
            writer.write(b"\r\n")
            writer.write(body_bytes)
            await writer.drain()
            ctx.headers_sent = True
        except ConnectionError as e:
            print(f"[PROXY] #{ctx.request_id} Could not send {code}: {e!r}")


def _has_body(method: str, status: int) -> bool:
    return method != "HEAD" and status >= 200 and status not in (204, 304)


def _raw_headers(response: httpx.Response) -> Headers:
    """Origin headers as received, decoded losslessly."""
    return [
        (name.decode("latin-1"), value.decode("latin-1"))
        for name, value in response.headers.raw
    ]


async def run_proxy(config: Config):
    """Run the proxy server."""
    server = ProxyServer(config)
    try:
        await server.start()
    except KeyboardInterrupt:
        print("\n[PROXY] Shutting down...")
    finally:
        await server.stop()
