#!/usr/bin/env python3
"""
Executor factory and package exports.
"""

from .base import BaseExecutor, CommandResult
from .local import LocalExecutor
from .ssh import RemoteExecutor


def get_executor(environment):
    """
    Factory function to create appropriate executor.

    Args:
        environment: Environment from the registry

    Returns:
        RemoteExecutor when the environment declares an ssh_host, else LocalExecutor
    """
    if environment.ssh:
        return RemoteExecutor(environment.ssh)
    return LocalExecutor()


__all__ = ['BaseExecutor', 'CommandResult', 'LocalExecutor', 'RemoteExecutor', 'get_executor']
