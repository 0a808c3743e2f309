#!/usr/bin/env python3
"""
Base executor interface for cluster and cloud CLI commands.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class CommandResult:
    command: tuple
    stdout: str
    stderr: str
    returncode: int

    @property
    def ok(self):
        return self.returncode == 0


class BaseExecutor:
    """Interface for command executors (local subprocess or remote over SSH)."""

    def run(self, command, timeout=None):
        """
        Run a command and capture its output.

        Args:
            command: Argument list (e.g. ['kubectl', 'get', 'deployment', ...])
            timeout: Seconds before the command is abandoned

        Returns:
            CommandResult

        Raises:
            ExecutorError: the command could not be started or timed out
        """
        raise NotImplementedError("Subclasses must implement run()")
