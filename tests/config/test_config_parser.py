"""
Brief: Tests for beacon.config.config_parser (variables, template, model).

Inputs:
  - None

Outputs:
  - None
"""

import textwrap

import pydantic
import pytest

from beacon.config.config_parser import (
    ResolverConfig,
    build_resolver_config,
    load_config,
    normalize_upstream_config,
    parse_config_variables,
)
from beacon.errors import ConfigError

ENV = {
    "DNS_SUFFIX": "Internal.Example.",
    "DNS_PORT": "5353",
    "DNS_TTL": "120",
    "DATABASE_URL": "sqlite:///var/lib/beacon/records.db",
    "UPSTREAM_DNS1_IP": "192.0.2.1",
    "UPSTREAM_DNS1_PORT": "53",
    "UPSTREAM_DNS2_IP": "192.0.2.2",
    "UPSTREAM_DNS2_PORT": "5353",
}


def _write(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(textwrap.dedent(text))
    return str(path)


def test_parse_config_variables_precedence():
    """Brief: CLI overrides environment overrides config vars."""
    cfg = {"vars": {"DNS_TTL": 100, "KEEP": "yes"}}
    merged = parse_config_variables(
        cfg, cli_vars=["DNS_TTL=300"], environ={"DNS_TTL": "200", "lower": "x"}
    )
    assert merged == {"DNS_TTL": 300, "KEEP": "yes"}
    assert cfg["vars"] is merged


@pytest.mark.parametrize("bad", ["NOEQUALS", "lower=1", "1ABC=2"])
def test_parse_config_variables_rejects_bad_cli(bad):
    """Brief: Malformed -v assignments raise ConfigError."""
    with pytest.raises(ConfigError):
        parse_config_variables({}, cli_vars=[bad], environ={})


def test_environment_template():
    """Brief: Without a file, the environment drives the configuration."""
    config = load_config(None, environ=ENV)
    assert config.suffix == "internal.example"
    assert config.ttl == 120
    assert config.listen.port == 5353
    assert config.store.url == "sqlite:///var/lib/beacon/records.db"
    assert [str(e) for e in config.endpoints] == [
        "udp:192.0.2.1:53",
        "tcp:192.0.2.1:53",
        "udp:192.0.2.2:5353",
        "tcp:192.0.2.2:5353",
    ]


def test_environment_template_defaults_and_single_upstream():
    """Brief: Ports and TTL default; a missing secondary upstream is omitted."""
    env = {k: v for k, v in ENV.items() if k in ("DNS_SUFFIX", "DATABASE_URL", "UPSTREAM_DNS1_IP")}
    config = load_config(None, environ=env)
    assert config.listen.port == 53
    assert config.ttl == 300
    assert [str(e) for e in config.endpoints] == ["udp:192.0.2.1:53", "tcp:192.0.2.1:53"]


def test_environment_template_missing_suffix():
    """Brief: An unset required variable is reported by name."""
    env = dict(ENV)
    del env["DNS_SUFFIX"]
    with pytest.raises(ConfigError, match="DNS_SUFFIX"):
        load_config(None, environ=env)


def test_yaml_config_with_vars_and_cli_override(tmp_path):
    """Brief: YAML vars expand in place and -v overrides them."""
    path = _write(
        tmp_path,
        """
        vars:
          ZONE: lan.example
          PORT: 5300
        server:
          host: 127.0.0.1
          port: ${PORT}
          tcp: false
          timeout_ms: 750
        zone:
          suffix: ${ZONE}
        store:
          url: memory://
        upstreams:
          - host: 192.0.2.53
            transport: tcp
        logging:
          level: debug
        """,
    )
    config = load_config(path, cli_vars=["PORT=5400"], environ={})
    assert config.suffix == "lan.example"
    assert config.listen.host == "127.0.0.1"
    assert config.listen.port == 5400
    assert config.listen.tcp is False
    assert config.timeout_ms == 750
    assert [str(e) for e in config.endpoints] == ["tcp:192.0.2.53:53"]
    assert config.logging == {"level": "debug"}


def test_yaml_config_schema_error(tmp_path):
    """Brief: Wrong value types are rejected by the JSON Schema."""
    path = _write(
        tmp_path,
        """
        zone: {suffix: lan.example}
        store: {url: "memory://"}
        server: {port: "not-a-port"}
        """,
    )
    with pytest.raises(ConfigError, match="server/port"):
        load_config(path, environ={})


def test_yaml_config_missing_file(tmp_path):
    """Brief: Unreadable config files raise ConfigError."""
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "missing.yaml"), environ={})


def test_yaml_config_root_must_be_mapping(tmp_path):
    """Brief: A YAML list at the root is rejected."""
    with pytest.raises(ConfigError):
        load_config(_write(tmp_path, "- 1\n- 2\n"), environ={})


def test_normalize_upstream_config_expands_transports():
    """Brief: Entries without a transport expand to UDP then TCP."""
    out = normalize_upstream_config([{"host": "10.0.0.1"}, {"host": "10.0.0.2", "port": 5353, "transport": "UDP"}])
    assert out == [
        {"transport": "udp", "host": "10.0.0.1", "port": 53},
        {"transport": "tcp", "host": "10.0.0.1", "port": 53},
        {"transport": "udp", "host": "10.0.0.2", "port": 5353},
    ]
    with pytest.raises(ConfigError):
        normalize_upstream_config([{"port": 53}])


def test_resolver_config_is_frozen():
    """Brief: ResolverConfig cannot be modified after construction."""
    config = build_resolver_config({"zone": {"suffix": "lan.example"}, "store": {"url": "memory://"}})
    with pytest.raises(pydantic.ValidationError):
        config.ttl = 5


@pytest.mark.parametrize("suffix", ["", ".", "a..b", "x" * 64 + ".example"])
def test_resolver_config_rejects_bad_suffix(suffix):
    """Brief: Empty suffixes and bad labels are ConfigErrors."""
    with pytest.raises(ConfigError):
        build_resolver_config({"zone": {"suffix": suffix}, "store": {"url": "memory://"}})


def test_resolver_config_defaults():
    """Brief: Unset fields take documented defaults."""
    config = ResolverConfig(suffix="lan.example", store={"url": "memory://"})
    assert (config.ttl, config.timeout_ms, config.listen.host, config.listen.port) == (300, 2000, "::", 53)
    assert config.endpoints == ()
