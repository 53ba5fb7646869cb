"""JSON Schema-based validation for beacon YAML configuration.

This module centralizes variable expansion and validation of the main
``config.yaml`` using an external JSON Schema document stored under
``assets/config-schema.json``.
"""

from __future__ import annotations

import copy
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from jsonschema import Draft202012Validator, ValidationError
from jsonschema.exceptions import SchemaError

from ..errors import ConfigError

logger = logging.getLogger(__name__)

VAR_NAME = re.compile(r"[A-Z_][A-Z0-9_]*")
_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)\}")


def is_var_key(key: Any) -> bool:
    """Brief: True when key is an ALL_UPPERCASE name matching [A-Z_][A-Z0-9_]*."""
    return isinstance(key, str) and bool(VAR_NAME.fullmatch(key))


def _scalar_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (int, float, str)):
        return str(value)
    return json.dumps(value)


def expand_variables(cfg: Dict[str, Any]) -> None:
    """Brief: Expand top-level `vars` into the config and remove the group.

    Inputs:
      - cfg: Parsed YAML configuration mapping (mutated in-place).

    Outputs:
      - None.

    Behavior:
      - A string value that is exactly `$KEY` or `${KEY}` is replaced with the
        variable's YAML value (int, list, mapping...), so `port: ${DNS_PORT}`
        stays an integer.
      - `${KEY}` occurrences inside longer strings are substituted as text.
      - References to undefined variables are left untouched; see
        find_unresolved().
      - Variables may reference other variables; cycles raise ConfigError.

    Example:
      >>> cfg = {'vars': {'P': 5353}, 'server': {'port': '${P}'}}
      >>> expand_variables(cfg); cfg
      {'server': {'port': 5353}}
    """

    variables = cfg.pop("vars", None)
    if variables is None:
        return
    if not isinstance(variables, dict):
        raise ConfigError("config.vars must be a mapping when present")
    for k in variables:
        if not is_var_key(k):
            raise ConfigError(
                f"config.vars key {k!r} must be ALL_UPPERCASE and match [A-Z_][A-Z0-9_]*"
            )

    resolved: Dict[str, Any] = {}

    def _resolve_var(key: str, stack: List[str]) -> Any:
        if key in resolved:
            return resolved[key]
        if key in stack:
            cycle = " -> ".join(stack + [key])
            raise ConfigError(f"config.vars contains a cycle: {cycle}")
        stack.append(key)
        value = _expand(variables[key], stack)
        stack.pop()
        resolved[key] = value
        return value

    def _whole_node(text: str) -> Optional[str]:
        if text.startswith("${") and text.endswith("}"):
            name = text[2:-1]
        elif text.startswith("$"):
            name = text[1:]
        else:
            return None
        return name if name in variables else None

    def _expand(obj: Any, stack: List[str]) -> Any:
        if isinstance(obj, str):
            name = _whole_node(obj)
            if name is not None:
                return copy.deepcopy(_resolve_var(name, stack))

            def _repl(match: "re.Match[str]") -> str:
                key = match.group(1)
                if key not in variables:
                    return match.group(0)
                return _scalar_text(_resolve_var(key, stack))

            return _VAR_PATTERN.sub(_repl, obj)
        if isinstance(obj, list):
            return [_expand(item, stack) for item in obj]
        if isinstance(obj, dict):
            return {k: _expand(v, stack) for k, v in obj.items()}
        return obj

    for key in list(variables):
        _resolve_var(key, [])
    for top_key in list(cfg):
        cfg[top_key] = _expand(cfg[top_key], [])


def find_unresolved(obj: Any, path: str = "") -> List[str]:
    """Brief: List `path: ${NAME}` for every variable reference left after expansion.

    Inputs:
      - obj: Expanded configuration (or any sub-node).
      - path: Prefix used when reporting nested locations.

    Outputs:
      - list[str]: e.g. ['zone/suffix: ${DNS_SUFFIX}'], empty when fully expanded.
    """

    found: List[str] = []
    if isinstance(obj, str):
        for name in _VAR_PATTERN.findall(obj):
            found.append(f"{path or '<root>'}: ${{{name}}}")
    elif isinstance(obj, list):
        for i, item in enumerate(obj):
            found.extend(find_unresolved(item, f"{path}/{i}" if path else str(i)))
    elif isinstance(obj, dict):
        for k, v in obj.items():
            found.extend(find_unresolved(v, f"{path}/{k}" if path else str(k)))
    return found


def get_default_schema_path() -> Path:
    """Brief: Resolve the default JSON Schema path for configuration.

    Inputs:
      - None.

    Outputs:
      - Path to ``assets/config-schema.json`` in the nearest ancestor of this
        module that has one (source checkout or editable install).
    """

    here = Path(__file__).resolve()
    for ancestor in here.parents:
        candidate = ancestor / "assets" / "config-schema.json"
        if candidate.is_file():
            return candidate
    return here.parents[3] / "assets" / "config-schema.json"


def _load_validator(schema_path: Path) -> Optional[Draft202012Validator]:
    """Brief: Compile the schema at schema_path, or None (with a warning) if unusable."""
    if not schema_path.is_file():
        logger.warning("Config schema %s not found; JSON Schema validation skipped", schema_path)
        return None
    try:
        with schema_path.open("r", encoding="utf-8") as f:
            schema = json.load(f)
        Draft202012Validator.check_schema(schema)
    except (OSError, json.JSONDecodeError, SchemaError) as exc:
        logger.warning("Config schema %s unusable (%s); JSON Schema validation skipped", schema_path, exc)
        return None
    return Draft202012Validator(schema)


def _describe(errors: List[ValidationError], source: str) -> str:
    lines = [f"Invalid configuration in {source}:"]
    lines.extend(f"- {'/'.join(map(str, e.path)) or '<root>'}: {e.message}" for e in errors)
    return "\n".join(lines)


_UNKNOWN_KEY_CHECKS: Set[str] = {"additionalProperties", "unevaluatedProperties"}
_POLICIES = ("ignore", "warn", "error")


def validate_config(
    cfg: Dict[str, Any],
    *,
    schema_path: Optional[Path] = None,
    config_path: Optional[str] = None,
    unknown_keys: str = "warn",
) -> None:
    """Brief: Check an expanded configuration mapping against the JSON Schema.

    Inputs:
      - cfg: Configuration mapping after expand_variables().
      - schema_path: Schema file; defaults to get_default_schema_path().
      - config_path: Config source named in error messages.
      - unknown_keys: Policy for keys the schema does not describe:
        'ignore', 'warn' (default) or 'error'.

    Outputs:
      - None when the mapping is acceptable.

    Raises:
      - ConfigError: listing every structural violation (and, under the
        'error' policy, every unknown key).
    """

    if unknown_keys not in _POLICIES:
        raise ConfigError(f"unknown_keys must be one of {', '.join(_POLICIES)}; got {unknown_keys!r}")

    validator = _load_validator(schema_path or get_default_schema_path())
    if validator is None:
        return

    source = config_path or "<config dict>"
    unknown: List[ValidationError] = []
    invalid: List[ValidationError] = []
    for err in sorted(validator.iter_errors(cfg), key=lambda e: [str(p) for p in e.path]):
        (unknown if err.validator in _UNKNOWN_KEY_CHECKS else invalid).append(err)

    if invalid or (unknown and unknown_keys == "error"):
        raise ConfigError(_describe(invalid + unknown, source))
    if unknown and unknown_keys == "warn":
        logger.warning(_describe(unknown, source))
