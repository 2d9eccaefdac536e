"""Error types raised while proxying a request."""


class ProxyError(Exception):
    """Base class for errors that end a request with an HTTP status."""

    status = 500
    message = "Internal Server Error"

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.message)
        self.detail = detail


class BadRequest(ProxyError):
    """The client sent something that is not a parseable HTTP/1.x request."""

    status = 400
    message = "Bad Request"


class RequestTooLarge(ProxyError):
    """The client request body is over the configured limit."""

    status = 413
    message = "Payload Too Large"


class RoutingFailure(ProxyError):
    """The request hostname could not be turned into an origin."""

    status = 400
    message = "Bad Request"


class InvalidHost(RoutingFailure):
    """The Host header has no label boundary to route on."""


class MalformedHostLabel(ValueError):
    """An encoded host label contains characters outside [A-Za-z0-9-]."""


class UpstreamUnreachable(ProxyError):
    status = 502
    message = "Bad Gateway"


class UpstreamTimeout(ProxyError):
    status = 504
    message = "Gateway Timeout"


class BodyTooLarge(ProxyError):
    """Buffered HTML body exceeded the configured cap."""

    status = 502
    message = "Bad Gateway"


class UnsupportedEncoding(ProxyError):
    """Response content-encoding has no decoder; rewriting is skipped.

    Always handled by passing the body through untouched, so it never
    becomes an error response and keeps the base status.
    """
