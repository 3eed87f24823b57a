#!/usr/bin/env python3
"""
Configuration loader for tissue-compartment extraction.

Handles:
- Loading YAML configuration files
- Merging study configs with the packaged defaults
- Environment variable substitution
- Configuration validation
"""

import copy
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'default.yaml'

TISSUE_KEYS = ('gray', 'white', 'csf')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required parameters."""
    pass


def load_yaml(file_path: Path) -> Dict[str, Any]:
    """Read a YAML mapping, raising ConfigurationError for anything else."""
    file_path = Path(file_path)
    if not file_path.is_file():
        raise ConfigurationError(f"Configuration file not found: {file_path}")

    try:
        config = yaml.safe_load(file_path.read_text())
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {file_path}: {e}") from e

    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ConfigurationError(
            f"Top level of {file_path} must be a mapping, got {type(config).__name__}"
        )
    return config


def merge_configs(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Overlay a study config on the defaults.

    Sections present in both are merged key by key; any other value in
    ``override`` replaces the default. Neither input is modified.
    """
    merged = copy.deepcopy(base)
    for key, value in override.items():
        default = merged.get(key)
        if isinstance(default, dict) and isinstance(value, dict):
            value = merge_configs(default, value)
        merged[key] = copy.deepcopy(value)
    return merged


_VARIABLE = re.compile(r'\$\{([^}]+)\}')

_MISSING = object()

# Longest chain of ${a} -> ${b} -> ... references followed
_MAX_REFERENCE_DEPTH = 5


def substitute_variables(config: Dict[str, Any],
                         environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    Expand ``${NAME}`` placeholders in every string of the config.

    ``NAME`` is looked up in the environment first, then as a dotted path
    into the config itself (``${masks.search_paths}``). Placeholders that
    resolve to neither are kept verbatim so that a missing variable shows
    up in the error about the path it was part of.

    Parameters
    ----------
    config : dict
        Merged configuration
    environ : dict, optional
        Variables to use instead of ``os.environ``

    Returns
    -------
    dict
        New configuration with placeholders expanded
    """
    environ = os.environ if environ is None else environ

    def expand(value: Any, root: Dict[str, Any]) -> Any:
        if isinstance(value, dict):
            return {k: expand(v, root) for k, v in value.items()}
        if isinstance(value, list):
            return [expand(v, root) for v in value]
        if not isinstance(value, str):
            return value

        def lookup(match):
            name = match.group(1)
            if name in environ:
                return environ[name]
            found = get_config_value(root, name, default=_MISSING)
            return match.group(0) if found is _MISSING else str(found)

        return _VARIABLE.sub(lookup, value)

    result = config
    for _ in range(_MAX_REFERENCE_DEPTH):
        expanded = expand(result, result)
        if expanded == result:
            break
        result = expanded
    return result


def validate_config(config: Dict[str, Any]) -> None:
    """
    Validate configuration values.

    Parameters
    ----------
    config : dict
        Configuration to validate

    Raises
    ------
    ConfigurationError
        If required parameters are missing or invalid
    """
    masks = config.get('masks', {})
    if not isinstance(masks, dict):
        raise ConfigurationError("'masks' must be a mapping")

    search_paths = masks.get('search_paths', [])
    if search_paths is None:
        search_paths = []
    if not isinstance(search_paths, list):
        raise ConfigurationError(
            f"masks.search_paths must be a list, got {type(search_paths).__name__}"
        )

    files = masks.get('files', {})
    if files:
        if not isinstance(files, dict):
            raise ConfigurationError("masks.files must be a mapping")
        unknown = set(files) - set(TISSUE_KEYS)
        if unknown:
            raise ConfigurationError(
                f"Unknown tissue in masks.files: {sorted(unknown)} "
                f"(expected {list(TISSUE_KEYS)})"
            )
        for tissue, name in files.items():
            if not isinstance(name, str) or not name:
                raise ConfigurationError(f"masks.files.{tissue} must be a non-empty string")

    for section in ('extraction', 'output'):
        if not isinstance(config.get(section, {}), dict):
            raise ConfigurationError(
                f"'{section}' must be a mapping, got {type(config[section]).__name__}"
            )

    extraction = config.get('extraction', {})
    if 'n_components' in extraction:
        n_components = extraction['n_components']
        # bool is an int subclass
        if isinstance(n_components, bool) or not isinstance(n_components, int) or n_components < 1:
            raise ConfigurationError(
                f"extraction.n_components must be positive integer, got {n_components}"
            )

    for section, key in (('extraction', 'reinsert_removed'),
                         ('output', 'save_full_data'),
                         ('output', 'plots')):
        value = config.get(section, {}).get(key)
        if value is not None and not isinstance(value, bool):
            raise ConfigurationError(f"{section}.{key} must be true or false, got {value!r}")


def load_config(config_path: Optional[Path] = None, validate: bool = True) -> Dict[str, Any]:
    """
    Load and process configuration file.

    This is the main entry point for loading configs. It:
    1. Loads the packaged default config
    2. Merges the study config on top (if given)
    3. Substitutes variables
    4. Validates the result

    Parameters
    ----------
    config_path : Path, optional
        Path to study-specific configuration file. If None, the
        packaged defaults are returned.
    validate : bool
        Whether to validate the configuration

    Returns
    -------
    dict
        Processed configuration

    Raises
    ------
    ConfigurationError
        If configuration is invalid
    """
    config = load_yaml(DEFAULT_CONFIG_PATH)

    if config_path is not None:
        config_path = Path(config_path)
        study_config = load_yaml(config_path)
        config = merge_configs(config, study_config)

    config = substitute_variables(config)

    if validate:
        validate_config(config)

    return config


def get_config_value(config: Dict[str, Any], key_path: str, default: Any = None) -> Any:
    """
    Get a value from config using dot notation.

    Examples
    --------
    >>> get_config_value(config, 'extraction.n_components')
    5
    >>> get_config_value(config, 'missing.key', default=3)
    3
    """
    try:
        value = config
        for part in key_path.split('.'):
            value = value[part]
        return value
    except (KeyError, TypeError):
        return default
