#!/usr/bin/env python3
"""
Typed registry of environments and components built from configuration.

Descriptors are template-expanded once at load time with the environment's
name, namespace and base URLs. `{revision}` is left in place for rollback
actions to fill in.
"""

from dataclasses import dataclass, field
from enum import Enum

from ..errors import ConfigurationError, UnknownComponentError, UnknownEnvironmentError


class ComponentKind(str, Enum):
    BACKEND_SERVICE = "BackendService"
    INFRASTRUCTURE = "Infrastructure"
    STATIC_FRONTEND = "StaticFrontend"


BACKEND_KINDS = (ComponentKind.BACKEND_SERVICE, ComponentKind.INFRASTRUCTURE)
FRONTEND_KINDS = (ComponentKind.STATIC_FRONTEND,)
SCOPE_ALL = 'all'
SCOPE_BACKEND = 'backend'
SCOPE_FRONTEND = 'frontend'


@dataclass(frozen=True)
class ComponentSpec:
    name: str
    kind: ComponentKind
    probes: tuple = ()
    rollback: dict = None

    @property
    def can_rollback(self):
        return self.rollback is not None


@dataclass(frozen=True)
class Environment:
    name: str
    namespace: str
    base_urls: dict = field(default_factory=dict)
    ssh: dict = None
    components: tuple = ()

    def component(self, name):
        for component in self.components:
            if component.name == name:
                return component
        raise UnknownComponentError(name, self.name)


@dataclass(frozen=True)
class HealthSettings:
    overall_timeout: float = 300.0
    probe_timeout: float = 10.0
    retry_attempts: int = 3
    retry_interval: float = 1.0
    backoff_factor: float = 2.0
    max_concurrency: int = 20
    latency_warn_ms: float = 1000.0
    latency_sla_ms: float = 2000.0
    latency_samples: int = 3
    verify_tls: bool = True

    @classmethod
    def from_config(cls, config):
        return cls(**config.get('health', {}))


@dataclass(frozen=True)
class RollbackSettings:
    max_concurrency: int = 20
    rollout_timeout: float = 300.0
    post_verify_timeout: float = 60.0

    @classmethod
    def from_config(cls, config):
        return cls(**config.get('rollback', {}))


class _KeepMissing(dict):
    def __missing__(self, key):
        return '{' + key + '}'


def expand_templates(value, variables):
    """Recursively format strings, leaving unknown placeholders untouched."""
    if isinstance(value, str):
        return value.format_map(_KeepMissing(variables))
    if isinstance(value, dict):
        return {k: expand_templates(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_templates(v, variables) for v in value]
    return value


def list_environments(config):
    return list(config.get('environments', {}).keys())


def build_environment(config, name):
    """Resolve one environment and its component registry from config."""
    environments = config.get('environments', {})
    if name not in environments:
        raise UnknownEnvironmentError(name, environments.keys())

    env_config = environments[name]
    namespace = env_config['namespace']
    base_urls = dict(env_config.get('base_urls', {}))
    variables = dict(base_urls)
    variables.update({'environment': name, 'namespace': namespace})

    allowed = env_config.get('components')
    components = []
    for raw in config.get('components', []):
        if allowed is not None and raw['name'] not in allowed:
            continue
        expanded = expand_templates(raw, variables)
        components.append(ComponentSpec(
            name=expanded['name'],
            kind=ComponentKind(expanded['kind']),
            probes=tuple(expanded.get('probes', [])),
            rollback=expanded.get('rollback'),
        ))

    ssh = None
    if env_config.get('ssh_host'):
        ssh = {
            'ssh_host': env_config['ssh_host'],
            'ssh_port': env_config.get('ssh_port', 22),
            'ssh_env_vars': env_config.get('ssh_env_vars', {}),
        }

    return Environment(
        name=name,
        namespace=namespace,
        base_urls=base_urls,
        ssh=ssh,
        components=tuple(components),
    )


def select_components(environment, scope=None):
    """
    Resolve a scope (all | backend | frontend | component name) to components.
    An empty selection is a configuration error.
    """
    scope = scope or SCOPE_ALL
    if scope == SCOPE_ALL:
        selected = list(environment.components)
    elif scope == SCOPE_BACKEND:
        selected = [c for c in environment.components if c.kind in BACKEND_KINDS]
    elif scope == SCOPE_FRONTEND:
        selected = [c for c in environment.components if c.kind in FRONTEND_KINDS]
    else:
        selected = [environment.component(scope)]

    if not selected:
        raise ConfigurationError(f"Scope '{scope}' matches no components in '{environment.name}'")
    return tuple(selected)
