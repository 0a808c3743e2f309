"""
Configuration package.

Loads the deployment configuration, validates it against the packaged
JSON schema, and builds the typed environment/component registry.
"""

from .loader import load_config, load_yaml, deep_merge
from .registry import (
    ComponentKind, ComponentSpec, Environment, HealthSettings,
    RollbackSettings, build_environment, select_components, list_environments,
)
from .validation import validate_config

__all__ = [
    'load_config', 'load_yaml', 'deep_merge', 'validate_config',
    'ComponentKind', 'ComponentSpec', 'Environment', 'HealthSettings',
    'RollbackSettings', 'build_environment', 'select_components', 'list_environments',
]
