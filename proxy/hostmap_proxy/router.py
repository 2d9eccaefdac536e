"""Resolve an inbound Host header to the origin it encodes."""

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

from .codec import HostnameCodec
from .errors import InvalidHost, MalformedHostLabel, RoutingFailure


@dataclass(frozen=True)
class UpstreamTarget:
    """Origin a single request is forwarded to."""
    host: str
    scheme: str = "https"

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}"

    def url_for(self, path: str) -> str:
        if not path.startswith("/"):
            path = "/" + path
        return self.base_url + path


class Router:
    """Maps ``<encoded-label>.<suffix>`` hostnames to upstream targets."""

    def __init__(
        self,
        codec: HostnameCodec,
        domain_suffix: str = ".self.com",
        scheme: str = "https",
        fallback_origin: str = "",
        strict_suffix: bool = False,
    ):
        self.codec = codec
        self.domain_suffix = domain_suffix
        self.scheme = scheme
        self.strict_suffix = strict_suffix
        self.fallback: Optional[UpstreamTarget] = None
        if fallback_origin:
            self.fallback = self._parse_fallback(fallback_origin, scheme)

    @staticmethod
    def _parse_fallback(origin: str, scheme: str) -> UpstreamTarget:
        """Accept either a bare hostname or a URL for the fallback origin."""
        if "://" in origin:
            parsed = urlparse(origin)
            if not parsed.hostname:
                raise ValueError(f"fallback origin has no host: {origin!r}")
            return UpstreamTarget(host=parsed.netloc, scheme=parsed.scheme or scheme)
        return UpstreamTarget(host=origin.strip("/"), scheme=scheme)

    def resolve(self, request_host: str) -> UpstreamTarget:
        """Decode the first label of ``request_host`` into an UpstreamTarget.

        Raises:
            InvalidHost: the host has no ``.`` (or fails the suffix check).
            RoutingFailure: the first label is not a valid encoded host.

        When a fallback origin is configured, both failures resolve to it
        instead of raising.
        """
        try:
            return self._resolve(request_host)
        except RoutingFailure as e:
            if self.fallback is None:
                raise
            print(f"[ROUTER] {e}; using fallback {self.fallback.base_url}")
            return self.fallback

    def _resolve(self, request_host: str) -> UpstreamTarget:
        hostname = _strip_port(request_host or "")

        dot = hostname.find(".")
        if dot < 0:
            raise InvalidHost(f"no label boundary in host {request_host!r}")

        label, remainder = hostname[:dot], hostname[dot:]
        if self.strict_suffix and remainder.lower() != self.domain_suffix.lower():
            raise InvalidHost(
                f"host {request_host!r} is not under {self.domain_suffix}"
            )

        try:
            origin = self.codec.decode(label)
        except MalformedHostLabel as e:
            raise RoutingFailure(str(e)) from e

        return UpstreamTarget(host=origin, scheme=self.scheme)


def _strip_port(host: str) -> str:
    """Drop a trailing ``:port`` from a Host header value."""
    host = host.strip()
    if host.startswith("["):
        # IPv6 literal; keep it intact so it fails the label check
        return host
    name, sep, port = host.rpartition(":")
    if sep and port.isdigit():
        return name
    return host
