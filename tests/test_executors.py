"""Tests for local and SSH command executors."""

import subprocess
from types import SimpleNamespace

import pytest

from deployguard.config import build_environment
from deployguard.errors import ConfigurationError, ExecutorError
from deployguard.executors import LocalExecutor, RemoteExecutor, get_executor

SSH_CONFIG = {
    'ssh_host': 'bastion.test',
    'ssh_port': 2222,
    'ssh_env_vars': {'username': 'TEST_BASTION_USER', 'password': 'TEST_BASTION_PASS'},
}


@pytest.fixture
def fake_run(monkeypatch):
    calls = []

    def run(command, **kwargs):
        calls.append((command, kwargs))
        return SimpleNamespace(stdout='out', stderr='', returncode=0)

    monkeypatch.setattr(subprocess, 'run', run)
    return calls


class TestLocalExecutor:

    def test_run(self, fake_run):
        result = LocalExecutor().run(['kubectl', 'get', 'pods'], timeout=5)

        assert result.ok
        assert result.stdout == 'out'
        assert fake_run[0][0] == ('kubectl', 'get', 'pods')
        assert fake_run[0][1]['timeout'] == 5

    def test_missing_binary(self, monkeypatch):
        def run(command, **kwargs):
            raise FileNotFoundError(command[0])

        monkeypatch.setattr(subprocess, 'run', run)

        with pytest.raises(ExecutorError, match="Command not found: kubectl"):
            LocalExecutor().run(['kubectl', 'version'])

    def test_timeout(self, monkeypatch):
        def run(command, **kwargs):
            raise subprocess.TimeoutExpired(command, kwargs['timeout'])

        monkeypatch.setattr(subprocess, 'run', run)

        with pytest.raises(ExecutorError, match="timed out after 1s"):
            LocalExecutor().run(['sleep', '10'], timeout=1)


class TestRemoteExecutor:

    def test_wraps_command_in_ssh(self, fake_run, monkeypatch):
        monkeypatch.setenv('TEST_BASTION_USER', 'deploy')
        monkeypatch.setenv('TEST_BASTION_PASS', 'secret')

        RemoteExecutor(SSH_CONFIG).run(['kubectl', 'get', 'deployment', 'auth service'])

        command, kwargs = fake_run[0]
        assert command[:2] == ['sshpass', '-e']
        assert '2222' in command
        assert command[-2] == 'deploy@bastion.test'
        assert command[-1] == "kubectl get deployment 'auth service'"
        assert kwargs['env']['SSHPASS'] == 'secret'

    def test_missing_credentials(self, monkeypatch):
        monkeypatch.delenv('TEST_BASTION_USER', raising=False)
        monkeypatch.delenv('TEST_BASTION_PASS', raising=False)

        with pytest.raises(ConfigurationError, match="TEST_BASTION_USER"):
            RemoteExecutor(SSH_CONFIG).run(['kubectl', 'version'])

    def test_missing_env_var_names(self):
        with pytest.raises(ConfigurationError, match="ssh_env_vars"):
            RemoteExecutor({'ssh_host': 'bastion.test'}).run(['true'])


def test_factory_picks_executor(config):
    assert isinstance(get_executor(build_environment(config, 'staging')), LocalExecutor)

    config['environments']['staging'].update(SSH_CONFIG)
    assert isinstance(get_executor(build_environment(config, 'staging')), RemoteExecutor)
