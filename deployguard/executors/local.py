#!/usr/bin/env python3
"""
Local executor: runs commands on the operator machine or CI runner.
"""

import subprocess

import structlog

from ..errors import ExecutorError
from .base import BaseExecutor, CommandResult

logger = structlog.get_logger(__name__)


class LocalExecutor(BaseExecutor):
    """Runs commands with subprocess on the local host."""

    def run(self, command, timeout=None):
        command = tuple(str(part) for part in command)
        logger.debug("executor.run", command=" ".join(command), mode="local")
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=timeout)
        except FileNotFoundError:
            raise ExecutorError(f"Command not found: {command[0]}")
        except subprocess.TimeoutExpired:
            raise ExecutorError(f"Command timed out after {timeout}s: {' '.join(command)}")
        return CommandResult(command, result.stdout, result.stderr, result.returncode)
