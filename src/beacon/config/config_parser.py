"""Configuration parsing and normalization helpers for beacon.

Brief:
  This module contains the configuration-parsing utilities used by the CLI
  entrypoint. It centralizes:
    - reading YAML config files (or the built-in environment template)
    - merging variables from config/env/CLI
    - variable expansion and JSON Schema validation (config_schema)
    - building the immutable ResolverConfig handed to the resolver

Inputs:
  - YAML config paths, CLI `KEY=VALUE` assignments, environment mappings

Outputs:
  - ResolverConfig instances
"""

from __future__ import annotations

import os
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import ConfigError
from ..forwarder import expand_upstreams
from ..models import UpstreamEndpoint, normalize_name
from .config_schema import expand_variables, find_unresolved, is_var_key, validate_config

# Defaults for the environment-driven template used when no config file is
# given. DNS_SUFFIX, DATABASE_URL and UPSTREAM_DNS1_IP have no default.
TEMPLATE_DEFAULTS: Dict[str, Any] = {
    "DNS_PORT": 53,
    "DNS_TTL": 300,
    "UPSTREAM_DNS1_PORT": 53,
    "UPSTREAM_DNS2_PORT": 53,
}


def _parse_yaml_value(text: str) -> Any:
    """Brief: Parse a CLI/environment variable value as YAML.

    Inputs:
      - text: String containing a YAML scalar/list/dict.

    Outputs:
      - Any: Parsed value (falls back to the original string on parse errors).
    """

    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def parse_config_variables(
    cfg: Dict[str, Any],
    *,
    cli_vars: Optional[Sequence[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Merge config/environment/CLI variables into cfg['vars'].

    Inputs:
      - cfg: Parsed YAML configuration mapping (mutated in-place).
      - cli_vars: Optional list of CLI `KEY=YAML` assignments.
      - environ: Optional environment mapping (defaults to os.environ).

    Outputs:
      - dict: The merged variables mapping stored back onto cfg['vars'].

    Precedence:
      - CLI (-v/--var) overrides environment overrides config-file variables.

    Notes:
      - Only ALL_UPPERCASE keys matching [A-Z_][A-Z0-9_]* are considered.
      - Values are parsed as YAML so `DNS_PORT=5353` becomes an int.

    Example:
      >>> cfg = {'vars': {'DNS_TTL': 100}}
      >>> parse_config_variables(cfg, cli_vars=['DNS_TTL=300'], environ={})['DNS_TTL']
      300
    """

    base = cfg.get("vars")
    if base is None:
        merged: Dict[str, Any] = {}
    elif isinstance(base, dict):
        merged = dict(base)
    else:
        raise ConfigError("config.vars must be a mapping when present")

    env = os.environ if environ is None else environ
    for k, v in env.items():
        if is_var_key(k):
            merged[k] = _parse_yaml_value(str(v))

    for assignment in cli_vars or []:
        if "=" not in assignment:
            raise ConfigError(
                f"Invalid -v/--var value (expected KEY=VALUE), got: {assignment!r}"
            )
        k, raw = assignment.split("=", 1)
        k = k.strip()
        if not is_var_key(k):
            raise ConfigError(
                f"Invalid variable name {k!r} (must be ALL_UPPERCASE and match [A-Z_][A-Z0-9_]*)"
            )
        merged[k] = _parse_yaml_value(raw)

    cfg["vars"] = merged
    return merged


def default_config_template(variables: Mapping[str, Any]) -> Dict[str, Any]:
    """Brief: Config mapping for the environment-driven deployment.

    Inputs:
      - variables: Merged variables; UPSTREAM_DNS2_IP decides whether a
        secondary upstream host is configured.

    Outputs:
      - dict: unexpanded config referencing DNS_SUFFIX, DNS_PORT, DNS_TTL,
        DATABASE_URL and the UPSTREAM_DNS{1,2}_{IP,PORT} variables.
    """

    upstreams: List[Dict[str, Any]] = [
        {"host": "${UPSTREAM_DNS1_IP}", "port": "${UPSTREAM_DNS1_PORT}"}
    ]
    if variables.get("UPSTREAM_DNS2_IP"):
        upstreams.append(
            {"host": "${UPSTREAM_DNS2_IP}", "port": "${UPSTREAM_DNS2_PORT}"}
        )
    return {
        "server": {"host": "::", "port": "${DNS_PORT}"},
        "zone": {"suffix": "${DNS_SUFFIX}", "ttl": "${DNS_TTL}"},
        "store": {"url": "${DATABASE_URL}"},
        "upstreams": upstreams,
    }


class ListenConfig(BaseModel):
    """Listener settings shared by the UDP and TCP servers."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    host: str = "::"
    port: int = Field(default=53, ge=0, le=65535)
    udp: bool = True
    tcp: bool = True
    tcp_idle_timeout: float = Field(default=15.0, gt=0)


class StoreConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    url: str = Field(min_length=1)
    timeout_ms: int = Field(default=2000, ge=1)


class UpstreamConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    transport: Literal["udp", "tcp"] = "udp"
    host: str = Field(min_length=1)
    port: int = Field(default=53, ge=1, le=65535)

    def to_endpoint(self) -> UpstreamEndpoint:
        return UpstreamEndpoint(self.transport, self.host, self.port)


class ResolverConfig(BaseModel):
    """
    Brief: Immutable resolver configuration built once at startup.

    Inputs:
      - suffix: Local zone suffix (normalized to lowercase, no trailing dot).
      - ttl: TTL applied to every locally answered record.
      - listen: ListenConfig.
      - upstreams: Ordered upstream endpoints (failover order).
      - timeout_ms: Per-attempt upstream timeout.
      - pool_tcp: Reuse TCP connections to upstreams.
      - store: StoreConfig (URL selects the backend).
      - logging: Mapping passed to init_logging.

    Outputs:
      - Frozen model; assigning to any field raises a ValidationError.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    suffix: str
    ttl: int = Field(default=300, ge=0, le=2**31 - 1)
    listen: ListenConfig = ListenConfig()
    upstreams: Tuple[UpstreamConfig, ...] = ()
    timeout_ms: int = Field(default=2000, ge=1)
    pool_tcp: bool = True
    store: StoreConfig
    logging: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("suffix")
    @classmethod
    def _normalize_suffix(cls, v: str) -> str:
        suffix = normalize_name(v).lstrip(".")
        if not suffix:
            raise ValueError("zone suffix must not be empty")
        for label in suffix.split("."):
            if not label or len(label) > 63:
                raise ValueError(f"invalid label {label!r} in zone suffix {v!r}")
        return suffix

    @property
    def endpoints(self) -> Tuple[UpstreamEndpoint, ...]:
        return tuple(u.to_endpoint() for u in self.upstreams)


def normalize_upstream_config(raw: Any) -> List[Dict[str, Any]]:
    """Brief: Expand `upstreams` entries into one mapping per endpoint.

    Inputs:
      - raw: cfg['upstreams']; a list of {host, port?, transport?} mappings.

    Outputs:
      - list[dict]: {transport, host, port} in failover order. An entry with
        no transport expands to UDP then TCP for that host.

    Example:
      >>> normalize_upstream_config([{'host': '10.0.0.1'}, {'host': '10.0.0.2'}])
      ... # doctest: +NORMALIZE_WHITESPACE
      [{'transport': 'udp', 'host': '10.0.0.1', 'port': 53},
       {'transport': 'tcp', 'host': '10.0.0.1', 'port': 53},
       {'transport': 'udp', 'host': '10.0.0.2', 'port': 53},
       {'transport': 'tcp', 'host': '10.0.0.2', 'port': 53}]
    """

    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError("config.upstreams must be a list of upstream definitions")

    out: List[Dict[str, Any]] = []
    for entry in raw:
        if not isinstance(entry, dict) or "host" not in entry:
            raise ConfigError("each upstream entry must be a mapping with 'host'")
        host = str(entry["host"])
        port = entry.get("port", 53)
        transport = entry.get("transport")
        transports = (str(transport).lower(),) if transport else ("udp", "tcp")
        for ep in expand_upstreams([(host, port)], transports):
            out.append({"transport": ep.transport, "host": ep.host, "port": ep.port})
    return out


def build_resolver_config(cfg: Mapping[str, Any]) -> ResolverConfig:
    """Brief: Convert an expanded, validated config mapping to ResolverConfig.

    Inputs:
      - cfg: Mapping with zone/server/store/upstreams/logging sections.

    Outputs:
      - ResolverConfig.

    Raises:
      - ConfigError: when a value fails model validation.
    """

    zone = cfg.get("zone") or {}
    server = dict(cfg.get("server") or {})
    store = cfg.get("store") or {}
    timeout_ms = server.pop("timeout_ms", 2000)
    pool_tcp = server.pop("pool_tcp", True)

    try:
        return ResolverConfig(
            suffix=zone.get("suffix", ""),
            ttl=zone.get("ttl", 300),
            listen=server,
            upstreams=normalize_upstream_config(cfg.get("upstreams")),
            timeout_ms=timeout_ms,
            pool_tcp=pool_tcp,
            store=store,
            logging=cfg.get("logging") or {},
        )
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def load_config(
    config_path: Optional[str] = None,
    *,
    cli_vars: Optional[Sequence[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ResolverConfig:
    """Brief: Read, variable-merge, validate and freeze the configuration.

    Inputs:
      - config_path: YAML config file; None selects the built-in template
        driven by DNS_SUFFIX, DNS_PORT, DNS_TTL, DATABASE_URL and
        UPSTREAM_DNS{1,2}_{IP,PORT}.
      - cli_vars: CLI `KEY=VALUE` assignments (highest precedence).
      - environ: Environment mapping (defaults to os.environ).

    Outputs:
      - ResolverConfig.

    Raises:
      - ConfigError: unreadable file, bad YAML, undefined variables, schema
        violations or invalid values.
    """

    if config_path:
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                cfg = yaml.safe_load(f) or {}
        except OSError as e:
            raise ConfigError(f"Cannot read config file {config_path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
        if not isinstance(cfg, dict):
            raise ConfigError("Configuration root must be a mapping")
    else:
        cfg = {"vars": dict(TEMPLATE_DEFAULTS)}

    variables = parse_config_variables(cfg, cli_vars=cli_vars, environ=environ)
    if not config_path:
        cfg.update(default_config_template(variables))

    expand_variables(cfg)
    unresolved = find_unresolved(cfg)
    if unresolved:
        raise ConfigError("Undefined configuration variables: " + ", ".join(unresolved))

    validate_config(cfg, config_path=config_path or "<environment>")
    return build_resolver_config(cfg)
