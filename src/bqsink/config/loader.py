"""Sink spec loader: YAML file → validated :class:`SinkConfig`.

String values may reference the environment as ``${VAR}`` or
``${VAR:-default}``. Keys left out of the file take the model defaults.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from bqsink.config.models import SinkConfig

# ${VAR} or ${VAR:-default}; "\}" escapes a brace inside the default
_ENV_REF = re.compile(r"\$\{([^}:]+)(?::-((?:[^}\\]|\\.)*))?}")


def _substitute(value: str, key: str) -> str:
    def _lookup(match: re.Match[str]) -> str:
        name, default = match.group(1), match.group(2)
        if name in os.environ:
            return os.environ[name]
        if default is not None:
            return default.replace("\\}", "}")
        msg = f"sink spec key '{key}' references ${{{name}}}, which is unset and has no default"
        raise ValueError(msg)

    return _ENV_REF.sub(_lookup, value)


def resolve_env_vars(data: Any, key: str = "") -> Any:
    """Substitute environment references throughout a parsed sink spec.

    *key* is the dotted path of *data* within the spec, used in error messages.
    """
    if isinstance(data, str):
        return _substitute(data, key or "<root>")
    if isinstance(data, dict):
        return {k: resolve_env_vars(v, f"{key}.{k}" if key else str(k)) for k, v in data.items()}
    if isinstance(data, list):
        return [resolve_env_vars(item, f"{key}[{i}]") for i, item in enumerate(data)]
    return data


def load_yaml(path: str | Path) -> dict[str, Any]:
    """Read a sink spec file into a dict with environment references resolved."""
    p = Path(path)
    if not p.exists():
        msg = f"Sink spec not found: {p}"
        raise FileNotFoundError(msg)
    try:
        data = yaml.safe_load(p.read_text())
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        where = f" at line {mark.line + 1}, column {mark.column + 1}" if mark else ""
        msg = f"Sink spec {p} is not valid YAML{where}: {exc}"
        raise ValueError(msg) from exc
    if not isinstance(data, dict):
        msg = f"Sink spec {p} must be a mapping with sink_id and bigquery keys, got {type(data).__name__}"
        raise TypeError(msg)
    return resolve_env_vars(data)  # type: ignore[no-any-return]


def load_sink_config(path: str | Path) -> SinkConfig:
    """Load and validate one sink spec file."""
    data = load_yaml(path)
    try:
        return SinkConfig.model_validate(data)
    except ValidationError as exc:
        msg = f"Sink spec {path} is invalid ({exc.error_count()} error(s)):\n{exc}"
        raise ValueError(msg) from exc
