#!/usr/bin/env python3
"""
Configuration loading with optional local overrides.
"""

import os
from pathlib import Path

import yaml

from ..errors import ConfigurationError
from .validation import validate_config

DEFAULT_CONFIG_PATH = Path("config") / "deployment-config.yaml"


def load_yaml(file_path):
    try:
        with open(file_path, 'r') as f:
            return yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {file_path}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"YAML syntax error in {file_path}: {e}")


def deep_merge(base, override):
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def _local_override_path(base_path):
    return base_path.with_name(f"{base_path.stem}.local{base_path.suffix}")


def load_config(config_path=None, validate=True):
    """
    Load configuration with optional local overrides.
    - Path: explicit argument, else DEPLOYGUARD_CONFIG, else config/deployment-config.yaml
    - DEPLOYMENT_ENV=local: merges deployment-config.local.yaml overrides
    """
    base_path = Path(config_path or os.environ.get('DEPLOYGUARD_CONFIG') or DEFAULT_CONFIG_PATH)
    config = load_yaml(base_path)
    if not isinstance(config, dict):
        raise ConfigurationError(f"Configuration file is empty or not a mapping: {base_path}")

    env = os.environ.get('DEPLOYMENT_ENV', '').strip()
    if env == 'local':
        override_path = _local_override_path(base_path)
        if override_path.exists():
            override_config = load_yaml(override_path) or {}
            config = deep_merge(config, override_config)

    if validate:
        is_valid, errors = validate_config(config)
        if not is_valid:
            details = "\n".join(f"  - {error}" for error in errors)
            raise ConfigurationError(f"Configuration validation failed ({base_path}):\n{details}")

    return config
