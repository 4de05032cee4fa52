# celine/pubsub/core/loader.py
"""
Helpers for configuration files and pluggable classes.

``import_attr`` resolves ``module:attr`` strings (the broker client class
setting uses it). ``load_yaml_file`` and ``substitute_env_vars`` back the
YAML manager configuration.
"""
from __future__ import annotations

import importlib
import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

# ${VAR} or ${VAR:-default}
ENV_VAR_PATTERN = re.compile(r"\$\{(?P<name>[^}:]+)(?::-(?P<default>[^}]*))?\}")


def import_attr(path: str) -> Any:
    """
    Resolve ``'package.module:Attribute'`` to the attribute itself.

    Raises:
        ValueError: If ``path`` has no ``:`` separator.
        ImportError: If the module cannot be imported.
        AttributeError: If the module lacks the attribute.
    """
    mod_name, sep, attr = path.partition(":")
    if not sep or not mod_name or not attr:
        raise ValueError(f"Invalid import path '{path}', expected 'module:attr'")

    try:
        module = importlib.import_module(mod_name)
    except ImportError as exc:
        logger.error("Failed to import module '%s': %s", mod_name, exc)
        raise ImportError(f"Cannot import module '{mod_name}'") from exc

    if not hasattr(module, attr):
        logger.error("Module '%s' has no attribute '%s'", mod_name, attr)
        raise AttributeError(f"Module '{mod_name}' has no attribute '{attr}'")
    return getattr(module, attr)


def _env_value(match: re.Match) -> str:
    name, default = match.group("name"), match.group("default")
    value = os.environ.get(name, default)
    if value is None:
        raise ValueError(
            f"Environment variable '{name}' is not set and no default provided"
        )
    return value


def substitute_env_vars(value: Any) -> Any:
    """
    Expand ``${VAR}`` and ``${VAR:-default}`` in every string of a nested
    dict/list structure. Non-string leaves are returned unchanged.

    Raises:
        ValueError: If a referenced variable is unset and has no default.
    """
    if isinstance(value, str):
        return ENV_VAR_PATTERN.sub(_env_value, value)
    if isinstance(value, dict):
        return {key: substitute_env_vars(item) for key, item in value.items()}
    if isinstance(value, list):
        return [substitute_env_vars(item) for item in value]
    return value


def load_yaml_file(path: str | Path) -> dict[str, Any]:
    """Load one YAML document. Empty files yield an empty dict."""
    path = Path(path)
    logger.info("Loading config file: %s", path)

    try:
        with path.open("r", encoding="utf-8") as fh:
            content = yaml.safe_load(fh) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.error("Failed to load YAML file '%s': %s", path, exc)
        raise

    if not isinstance(content, dict):
        raise ValueError(f"Config file '{path}' must contain a mapping")
    return content
