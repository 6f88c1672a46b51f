"""YAML configuration loader with environment variable overrides.

# ─── CONFIGURATION HIERARCHY ──────────────────────────────────────────
#
# Configuration is loaded in layers (later layers override earlier):
#
#   1. Settings field defaults
#   2. config/config.yaml : static defaults checked into the repo
#   3. .env file          : local developer overrides (not committed)
#   4. Environment vars   : set at deploy time
#
# YAML sections are flattened onto the prefixed Settings fields:
#   {"queue": {"concurrency": 8}}  ->  {"queue_concurrency": 8}
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog
import yaml

from docrag.config.settings import Settings
from docrag.utils.errors import ConfigurationError

logger = structlog.get_logger(logger_name=__name__)

# YAML section/key pairs whose flattened name differs from the field name.
_ALIASES: dict[str, str] = {
    "log_json_output": "log_json",
}


def load_settings(path: str | Path = "config/config.yaml", **overrides: Any) -> Settings:
    """Build :class:`Settings` from a YAML file, .env and the environment.

    Args:
        path: Path to the YAML configuration file. A missing file is not an
              error; the Settings defaults apply.
        **overrides: Explicit field values layered over the YAML values
              (environment variables still win).

    Returns:
        A fully resolved Settings instance.

    Raises:
        ConfigurationError: If the file is not valid YAML or not a mapping.
    """
    config_path = Path(path)
    yaml_config: dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                yaml_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {exc}") from exc
        if not isinstance(yaml_config, dict):
            raise ConfigurationError(f"{config_path} must contain a mapping at top level")
    else:
        logger.debug("config_file_missing", path=str(config_path))

    values = flatten_config(yaml_config)
    _deep_merge(values, overrides)
    known = {k: v for k, v in values.items() if k in Settings.model_fields}
    unknown = sorted(set(values) - set(known))
    if unknown:
        logger.warning("config_unknown_keys", keys=unknown)

    return Settings(**known)


def flatten_config(config: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten nested YAML sections into ``section_key`` field names."""
    flat: dict[str, Any] = {}
    for key, value in config.items():
        name = f"{prefix}_{key}" if prefix else str(key)
        if isinstance(value, dict):
            flat.update(flatten_config(value, name))
        else:
            flat[_ALIASES.get(name, name)] = value
    return flat


def _deep_merge(base: dict, overrides: dict) -> None:
    """Recursively merge overrides into base dict, mutating base in place."""
    for key, value in overrides.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
