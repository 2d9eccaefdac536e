import pytest

from hostmap_proxy.config import Config, DEFAULT_REWRITE_RULES, RewriteRule

ENV_VARS = [
    "PROXY_HOST", "PROXY_PORT", "DOMAIN_SUFFIX", "FALLBACK_ORIGIN", "STRICT_SUFFIX",
    "REWRITE_ENABLED", "REWRITE_RULES", "MAX_BODY_BYTES", "UPSTREAM_READ_TIMEOUT",
    "UPSTREAM_VERIFY_TLS", "TLS_CERT_FILE", "TLS_KEY_FILE", "PROXY_VERBOSE", "MAX_REQUEST_BYTES",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    config = Config()
    assert config.routing.domain_suffix == ".self.com"
    assert config.rewrite_rules == DEFAULT_REWRITE_RULES
    assert [str(r) for r in config.rewrite_rules] == ["a[href]", "link[href]", "script[src]"]
    assert not config.tls.enabled


def test_from_env(monkeypatch):
    monkeypatch.setenv("PROXY_PORT", "443")
    monkeypatch.setenv("DOMAIN_SUFFIX", ".proxy.test")
    monkeypatch.setenv("STRICT_SUFFIX", "yes")
    monkeypatch.setenv("REWRITE_RULES", "a:href, img:src")
    monkeypatch.setenv("MAX_BODY_BYTES", "2048")
    monkeypatch.setenv("MAX_REQUEST_BYTES", "4096")
    monkeypatch.setenv("UPSTREAM_READ_TIMEOUT", "3.5")
    monkeypatch.setenv("UPSTREAM_VERIFY_TLS", "false")

    config = Config.from_env()
    assert config.proxy.port == 443
    assert config.routing.domain_suffix == ".proxy.test"
    assert config.routing.strict_suffix is True
    assert config.rewrite_rules == (RewriteRule("a", "href"), RewriteRule("img", "src"))
    assert config.rewrite.max_body_bytes == 2048
    assert config.proxy.max_request_bytes == 4096
    assert config.upstream.read_timeout == 3.5
    assert config.upstream.verify_tls is False


def test_from_yaml(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text(
        "proxy:\n"
        "  port: '9443'\n"
        "  max_request_bytes: 2048\n"
        "tls:\n"
        "  cert_file: /certs/fullchain.pem\n"
        "  key_file: /certs/privkey.pem\n"
        "routing:\n"
        "  fallback_origin: https://www.example.com\n"
        "rewrite:\n"
        "  enabled: 'no'\n"
        "  rules:\n"
        "    - {tag: script, attribute: src}\n"
        "    - iframe:src\n"
        "upstream:\n"
        "  connect_timeout: 2\n"
        "  unknown_key: 1\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("PROXY_HOST", "127.0.0.1")

    config = Config.from_yaml(str(path))
    assert config.proxy.port == 9443
    assert config.proxy.host == "127.0.0.1"
    assert config.proxy.max_request_bytes == 2048
    assert config.tls.enabled
    assert config.routing.fallback_origin == "https://www.example.com"
    assert config.rewrite.enabled is False
    assert config.rewrite_rules == (RewriteRule("script", "src"), RewriteRule("iframe", "src"))
    assert config.upstream.connect_timeout == 2.0
    assert isinstance(config.upstream.connect_timeout, float)


@pytest.mark.parametrize("value", ["", "a:", ":href", {"tag": "a"}])
def test_invalid_rule(value):
    with pytest.raises(ValueError):
        RewriteRule.parse(value)


def test_rules_are_immutable():
    rule = RewriteRule("a", "href")
    with pytest.raises(AttributeError):
        rule.tag = "script"
