"""Shared fixtures: sample configuration, scripted executor, fake clock and HTTP transport."""

import copy
import json
import threading

import httpx
import pytest

from deployguard.config import HealthSettings, RollbackSettings, build_environment
from deployguard.errors import ExecutorError
from deployguard.executors import BaseExecutor, CommandResult
from deployguard.health import HealthProbeEngine

SAMPLE_CONFIG = {
    'deployment': {'storage_backend': 'local'},
    'health': {
        'overall_timeout': 5,
        'probe_timeout': 1,
        'retry_attempts': 3,
        'retry_interval': 0.01,
        'backoff_factor': 2,
    },
    'rollback': {'rollout_timeout': 5, 'post_verify_timeout': 5},
    'environments': {
        'staging': {
            'namespace': 'adx-core-staging',
            'base_urls': {
                'gateway_url': 'http://gateway.test',
                'app_url': 'https://staging.test',
            },
        },
    },
    'components': [
        {
            'name': 'auth-service',
            'kind': 'BackendService',
            'probes': [
                {'check': 'readiness', 'deployment': 'auth-service'},
                {'check': 'endpoint', 'url': '{gateway_url}/auth/health'},
            ],
            'rollback': {'action': 'kubernetes', 'deployment': 'auth-service'},
        },
        {
            'name': 'file-service',
            'kind': 'BackendService',
            'probes': [
                {'check': 'readiness', 'deployment': 'file-service'},
                {'check': 'endpoint', 'url': '{gateway_url}/file/health'},
            ],
            'rollback': {'action': 'kubernetes', 'deployment': 'file-service'},
        },
        {
            'name': 'redis',
            'kind': 'Infrastructure',
            'probes': [
                {'check': 'dependency', 'command': ['redis-cli', '-h', 'redis.{namespace}.svc', 'ping'], 'expect': 'PONG'},
            ],
        },
        {
            'name': 'shell',
            'kind': 'StaticFrontend',
            'probes': [
                {'check': 'endpoint', 'url': '{app_url}/'},
                {'check': 'latency', 'url': '{app_url}/'},
            ],
            'rollback': {
                'action': 'static_assets',
                'bucket': 'adx-core-deployments-{environment}',
                'path': 'shell/',
            },
        },
    ],
}


def deployment_json(ready=2, desired=2, revision='7', image='registry.test/app:1.0', name='app'):
    return json.dumps({
        'metadata': {'name': name, 'annotations': {'deployment.kubernetes.io/revision': revision}},
        'spec': {
            'replicas': desired,
            'template': {'spec': {'containers': [{'name': name, 'image': image}]}},
        },
        'status': {'readyReplicas': ready},
    })


class FakeExecutor(BaseExecutor):
    """
    Scripted executor. Rules match when every needle appears in the command;
    the most recently added matching rule wins. A rule may carry a list of
    results consumed one per call (the last one repeats).
    """

    def __init__(self):
        self.calls = []
        self.rules = []
        self._lock = threading.Lock()

    def on(self, *needles, stdout='', stderr='', returncode=0, error=None, sequence=None):
        results = sequence or [(stdout, stderr, returncode, error)]
        self.rules.append((needles, list(results)))
        return self

    def commands_with(self, *needles):
        return [c for c in self.calls if all(n in c for n in needles)]

    def run(self, command, timeout=None):
        command = tuple(str(part) for part in command)
        with self._lock:
            self.calls.append(command)
            for needles, results in reversed(self.rules):
                if all(needle in command for needle in needles):
                    stdout, stderr, returncode, error = results[0] if len(results) == 1 else results.pop(0)
                    break
            else:
                stdout, stderr, returncode, error = '', '', 0, None
        if error is not None:
            raise ExecutorError(error)
        return CommandResult(command, stdout, stderr, returncode)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def advance(self, seconds):
        self.now += seconds

    def __call__(self):
        return self.now


async def no_sleep(delay):
    return None


@pytest.fixture
def config():
    return copy.deepcopy(SAMPLE_CONFIG)


@pytest.fixture
def environment(config):
    return build_environment(config, 'staging')


@pytest.fixture
def health_settings(config):
    return HealthSettings.from_config(config)


@pytest.fixture
def rollback_settings(config):
    return RollbackSettings.from_config(config)


@pytest.fixture
def executor():
    """Executor where every deployment is ready and redis answers PONG."""
    fake = FakeExecutor()
    fake.on('kubectl', 'get', 'deployment', stdout=deployment_json())
    fake.on('redis-cli', stdout='PONG\n')
    return fake


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def http_routes():
    """url -> (status, json body, simulated seconds); unknown URLs get 200."""
    return {}


@pytest.fixture
def transport(http_routes, clock):
    def handler(request):
        status, body, seconds = http_routes.get(str(request.url), (200, {'status': 'ok'}, 0.01))
        if isinstance(status, Exception):
            raise status
        clock.advance(seconds)
        return httpx.Response(status, json=body)

    return httpx.MockTransport(handler)


@pytest.fixture
def engine(executor, health_settings, transport, clock):
    return HealthProbeEngine(executor, settings=health_settings, transport=transport,
                             sleep=no_sleep, clock=clock)
