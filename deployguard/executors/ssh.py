#!/usr/bin/env python3
"""
Remote executor for environments reachable only through a bastion host.
Wraps each command in sshpass + ssh.
"""

import os
import shlex
import subprocess

import structlog

from ..errors import ConfigurationError, ExecutorError
from .base import BaseExecutor, CommandResult

logger = structlog.get_logger(__name__)


class RemoteExecutor(BaseExecutor):
    """SSH remote executor using sshpass."""

    def __init__(self, ssh_config):
        self.ssh_config = ssh_config

    def _get_credentials(self):
        """Returns (username, password) resolved from the configured env var names."""
        ssh_vars = self.ssh_config.get('ssh_env_vars', {})
        username_env = ssh_vars.get('username')
        password_env = ssh_vars.get('password')

        if not username_env or not password_env:
            raise ConfigurationError(
                "Missing ssh_env_vars in environment config. "
                "Add: ssh_env_vars: {username: 'ENV_VAR', password: 'ENV_VAR'}"
            )

        username = os.environ.get(username_env)
        password = os.environ.get(password_env)
        if not username or not password:
            raise ConfigurationError(f"SSH credentials not found: {username_env} and {password_env} required")

        return username, password

    def build_ssh_cmd(self, username, remote_command):
        return [
            'sshpass', '-e',
            'ssh',
            '-o', 'StrictHostKeyChecking=no',
            '-o', 'UserKnownHostsFile=/dev/null',
            '-p', str(self.ssh_config.get('ssh_port', 22)),
            f"{username}@{self.ssh_config['ssh_host']}",
            remote_command
        ]

    def run(self, command, timeout=None):
        command = tuple(str(part) for part in command)
        username, password = self._get_credentials()
        env = os.environ.copy()
        env['SSHPASS'] = password

        ssh_cmd = self.build_ssh_cmd(username, shlex.join(command))
        logger.debug("executor.run", command=" ".join(command), mode="ssh",
                     host=self.ssh_config['ssh_host'])
        try:
            result = subprocess.run(ssh_cmd, env=env, capture_output=True, text=True, timeout=timeout)
        except FileNotFoundError:
            raise ExecutorError("sshpass is required for remote execution but is not installed")
        except subprocess.TimeoutExpired:
            raise ExecutorError(f"Remote command timed out after {timeout}s: {' '.join(command)}")
        return CommandResult(command, result.stdout, result.stderr, result.returncode)
