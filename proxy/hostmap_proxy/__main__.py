"""CLI entry point for Hostmap Proxy."""

import asyncio
import argparse

from .config import Config
from .server import run_proxy


def main():
    parser = argparse.ArgumentParser(
        description="Reverse proxy routing on hostnames that encode the origin"
    )
    parser.add_argument(
        "--config", default=None, help="Path to YAML config file"
    )
    parser.add_argument(
        "--host", default=None, help="Host to bind to (default: 0.0.0.0)"
    )
    parser.add_argument(
        "--port", type=int, default=None, help="Port to listen on (default: 8443)"
    )
    parser.add_argument(
        "--max-request-bytes", type=int, default=None,
        help="Largest client request body accepted (default: 10 MiB)",
    )
    parser.add_argument(
        "--domain-suffix", default=None,
        help="Domain the encoded hostnames live under (default: .self.com)",
    )

    parser.add_argument(
        "--max-request-bytes", type=int, default=None,
        help="Largest client request body accepted (default: 10 MiB)",
    )

    # TLS
    parser.add_argument("--cert", default=None, help="TLS certificate chain (PEM)")
    parser.add_argument("--key", default=None, help="TLS private key (PEM)")

    # Routing
    parser.add_argument(
        "--fallback-origin", default=None,
        help="Origin for hostnames that cannot be decoded (default: reject)",
    )
    parser.add_argument(
        "--strict-suffix", action="store_true",
        help="Only route hostnames directly under --domain-suffix",
    )

    # Rewriting
    parser.add_argument(
        "--no-rewrite", action="store_true", help="Pass HTML through unmodified"
    )
    parser.add_argument(
        "--max-body-bytes", type=int, default=None,
        help="Largest HTML body buffered for rewriting (default: 10 MiB)",
    )
    parser.add_argument(
        "--verbose", action="store_true",
        help="Log request state transitions and each rewritten URL",
    )

    args = parser.parse_args()

    # Build config: YAML file → env vars → CLI args (highest priority)
    if args.config:
        config = Config.from_yaml(args.config)
    else:
        config = Config.from_env()

    if args.host is not None:
        config.proxy.host = args.host
    if args.port is not None:
        config.proxy.port = args.port
    if args.max_request_bytes is not None:
        config.proxy.max_request_bytes = args.max_request_bytes
    if args.domain_suffix is not None:
        config.routing.domain_suffix = args.domain_suffix
    if args.cert is not None:
        config.tls.cert_file = args.cert
    if args.key is not None:
        config.tls.key_file = args.key
    if args.fallback_origin is not None:
        config.routing.fallback_origin = args.fallback_origin
    if args.strict_suffix:
        config.routing.strict_suffix = True
    if args.no_rewrite:
        config.rewrite.enabled = False
    if args.max_body_bytes is not None:
        config.rewrite.max_body_bytes = args.max_body_bytes
    if args.verbose:
        config.logging.verbose = True

    print("=" * 50)
    print("Hostmap Proxy")
    print("=" * 50)
    print(f"Host: {config.proxy.host}")
    print(f"Port: {config.proxy.port}")
    print(f"TLS: {'enabled' if config.tls.enabled else 'disabled'}")
    print(f"Domain Suffix: {config.routing.domain_suffix}")
    if config.routing.fallback_origin:
        print(f"Fallback Origin: {config.routing.fallback_origin}")
    if config.rewrite.enabled:
        rules = ", ".join(str(rule) for rule in config.rewrite_rules)
        print(f"Rewriting URLs in: {rules}")
        print(f"Max Body: {config.rewrite.max_body_bytes} bytes")
    else:
        print("Rewriting: disabled")
    print("=" * 50)

    asyncio.run(run_proxy(config))


if __name__ == "__main__":
    main()
