"""Configuration management for Hostmap Proxy."""

from dataclasses import dataclass, field, fields
from typing import List, Tuple
import os


@dataclass(frozen=True)
class RewriteRule:
    """An HTML element/attribute pair whose absolute URLs get rewritten."""
    tag: str
    attribute: str

    def __str__(self) -> str:
        return f"{self.tag}[{self.attribute}]"

    @classmethod
    def parse(cls, value) -> "RewriteRule":
        """Build a rule from ``{"tag": .., "attribute": ..}``, ``"tag:attr"``
        or a ``(tag, attr)`` pair."""
        if isinstance(value, RewriteRule):
            return value
        if isinstance(value, dict):
            tag, attribute = value.get("tag", ""), value.get("attribute", "")
        elif isinstance(value, str):
            tag, _, attribute = value.partition(":")
        else:
            tag, attribute = value
        tag, attribute = str(tag).strip(), str(attribute).strip()
        if not tag or not attribute:
            raise ValueError(f"Invalid rewrite rule: {value!r}")
        return cls(tag=tag, attribute=attribute)


DEFAULT_REWRITE_RULES: Tuple[RewriteRule, ...] = (
    RewriteRule("a", "href"),       # anchor links
    RewriteRule("link", "href"),    # stylesheets, favicons
    RewriteRule("script", "src"),   # javascript
)


@dataclass
class ProxyConfig:
    """Listener configuration."""
    host: str = "0.0.0.0"
    port: int = 8443
    error_pages_dir: str = ""  # Path to custom error page templates
    max_request_bytes: int = 10 * 1024 * 1024  # Largest client request body accepted


@dataclass
class TlsConfig:
    """Certificate used to terminate inbound TLS (both empty = plain HTTP)."""
    cert_file: str = ""
    key_file: str = ""

    @property
    def enabled(self) -> bool:
        return bool(self.cert_file and self.key_file)


@dataclass
class RoutingConfig:
    """Hostname routing configuration."""
    domain_suffix: str = ".self.com"
    upstream_scheme: str = "https"
    fallback_origin: str = ""     # empty = reject unroutable hosts
    strict_suffix: bool = False   # require <label> + domain_suffix exactly


@dataclass
class RewriteConfig:
    """HTML link rewriting configuration."""
    enabled: bool = True
    rules: List[RewriteRule] = field(
        default_factory=lambda: list(DEFAULT_REWRITE_RULES)
    )
    max_body_bytes: int = 10 * 1024 * 1024


@dataclass
class UpstreamConfig:
    """Origin connection configuration."""
    connect_timeout: float = 10.0
    read_timeout: float = 20.0
    response_timeout: float = 30.0  # whole buffered HTML exchange
    verify_tls: bool = True
    max_connections: int = 100


@dataclass
class LoggingConfig:
    verbose: bool = False


@dataclass
class Config:
    """Main configuration."""
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    tls: TlsConfig = field(default_factory=TlsConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    rewrite: RewriteConfig = field(default_factory=RewriteConfig)
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def rewrite_rules(self) -> Tuple[RewriteRule, ...]:
        return tuple(self.rewrite.rules)

    @classmethod
    def from_yaml(cls, path: str) -> "Config":
        """Load config from a YAML file, then apply environment overrides.

        YAML structure mirrors the dataclass hierarchy:
            proxy:
              port: 443
            routing:
              domain_suffix: ".self.com"
            rewrite:
              rules:
                - {tag: a, attribute: href}
                - {tag: img, attribute: src}
            ...
        """
        import yaml
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        config = cls()

        # Map each top-level YAML section to its dataclass
        for section in fields(cls):
            section_data = data.get(section.name)
            if not section_data or not isinstance(section_data, dict):
                continue
            sub_obj = getattr(config, section.name)
            for key, value in section_data.items():
                if not hasattr(sub_obj, key):
                    print(f"[CONFIG] Ignoring unknown key {section.name}.{key}")
                    continue
                setattr(sub_obj, key, _coerce(getattr(sub_obj, key), value))

        return config.apply_env()

    @classmethod
    def from_env(cls) -> "Config":
        """Load config from environment variables."""
        return cls().apply_env()

    def apply_env(self) -> "Config":
        """Override fields from environment variables, in place."""
        # Proxy
        if host := os.getenv("PROXY_HOST"):
            self.proxy.host = host
        if port := os.getenv("PROXY_PORT"):
            self.proxy.port = int(port)
        if error_pages := os.getenv("ERROR_PAGES_DIR"):
            self.proxy.error_pages_dir = error_pages
        if max_request := os.getenv("MAX_REQUEST_BYTES"):
            self.proxy.max_request_bytes = int(max_request)

        # TLS
        if cert := os.getenv("TLS_CERT_FILE"):
            self.tls.cert_file = cert
        if key := os.getenv("TLS_KEY_FILE"):
            self.tls.key_file = key

        # Routing
        if suffix := os.getenv("DOMAIN_SUFFIX"):
            self.routing.domain_suffix = suffix
        if fallback := os.getenv("FALLBACK_ORIGIN"):
            self.routing.fallback_origin = fallback
        if strict := os.getenv("STRICT_SUFFIX"):
            self.routing.strict_suffix = _truthy(strict)

        # Rewrite
        if enabled := os.getenv("REWRITE_ENABLED"):
            self.rewrite.enabled = _truthy(enabled)
        if rules := os.getenv("REWRITE_RULES"):
            self.rewrite.rules = _coerce(self.rewrite.rules, rules)
        if max_body := os.getenv("MAX_BODY_BYTES"):
            self.rewrite.max_body_bytes = int(max_body)

        # Upstream
        if connect := os.getenv("UPSTREAM_CONNECT_TIMEOUT"):
            self.upstream.connect_timeout = float(connect)
        if read := os.getenv("UPSTREAM_READ_TIMEOUT"):
            self.upstream.read_timeout = float(read)
        if response := os.getenv("UPSTREAM_RESPONSE_TIMEOUT"):
            self.upstream.response_timeout = float(response)
        if verify := os.getenv("UPSTREAM_VERIFY_TLS"):
            self.upstream.verify_tls = _truthy(verify)

        # Logging
        if verbose := os.getenv("PROXY_VERBOSE"):
            self.logging.verbose = _truthy(verbose)

        return self


def _truthy(value) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _coerce(current, value):
    """Coerce a YAML/env value to the type of the field's current value."""
    expected = type(current)
    if expected is bool and not isinstance(value, bool):
        return _truthy(value)
    if expected is int and not isinstance(value, int):
        return int(value)
    if expected is float and not isinstance(value, float):
        return float(value)
    if expected is str and not isinstance(value, str):
        return str(value)
    if expected is list:
        # Rules: list of mappings/strings, or "a:href,link:href"
        if isinstance(value, str):
            value = [item for item in value.split(",") if item.strip()]
        return [RewriteRule.parse(item) for item in value]
    return value
