"""Tests for the rollback orchestrator state machine."""

import asyncio

import pytest

from conftest import deployment_json
from deployguard.config import build_environment
from deployguard.deployment import (
    BackupStore, EnvironmentLock, OutcomeStatus, RollbackOrchestrator, RollbackPlan, RollbackState,
    build_action,
)
from deployguard.errors import ConfigurationError, MalformedPlanError, RollbackInProgressError
from deployguard.health import HealthStatus
from deployguard.storage import LocalStorage

MUTATING = ('undo', 'set', 'sync', 'create-invalidation')


@pytest.fixture
def environment(config):
    for component in config['components']:
        if component.get('rollback', {}).get('action') == 'kubernetes':
            component['rollback']['image'] = f"registry.test/{component['name']}"
    return build_environment(config, 'staging')


@pytest.fixture
def storage(tmp_path):
    return LocalStorage({'state_dir': str(tmp_path / 'state')})


@pytest.fixture
def lock_dir(tmp_path):
    return tmp_path / 'locks'


@pytest.fixture
def orchestrator(environment, engine, executor, storage, rollback_settings, lock_dir):
    executor.on('aws', 's3', 'cp', stdout='{"commit": {"sha": "abc123"}}')

    def factory(component):
        return build_action(component, environment, executor, rollback_settings)

    return RollbackOrchestrator(environment, engine, BackupStore(storage, factory), factory,
                                settings=rollback_settings, lock_dir=lock_dir)


def mutating_calls(executor):
    return [c for c in executor.calls if any(word in c for word in MUTATING)]


def states(record):
    return [t['state'] for t in record.transitions]


class TestExecutePlan:

    @pytest.mark.asyncio
    async def test_completed(self, orchestrator, executor, storage):
        record = await orchestrator.execute_plan(RollbackPlan('staging', '5', requested_by='ops'))

        assert record.state == RollbackState.COMPLETED
        assert states(record) == [
            RollbackState.BACKUP_IN_PROGRESS, RollbackState.ROLLING_BACK,
            RollbackState.VERIFYING, RollbackState.COMPLETED,
        ]
        assert {o.component: o.status for o in record.outcomes} == {
            'auth-service': OutcomeStatus.SUCCEEDED,
            'file-service': OutcomeStatus.SUCCEEDED,
            'redis': OutcomeStatus.SKIPPED,
            'shell': OutcomeStatus.SUCCEEDED,
        }
        assert record.snapshot_persisted
        assert storage.exists(f"snapshots/staging/{record.snapshot_id}.yaml")
        assert record.final_report.overall_status == HealthStatus.HEALTHY
        assert record.issues == []
        assert storage.list_keys('records/staging/') == [f"records/staging/{record.id}.yaml"]

    @pytest.mark.asyncio
    async def test_backend_scope_with_one_failure_is_partial(self, orchestrator, executor):
        executor.on('set', 'image', 'deployment/file-service', returncode=1, stderr='ImagePullBackOff')
        executor.on('get', 'deployment', 'file-service', stdout=deployment_json(ready=0))

        record = await orchestrator.execute_plan(RollbackPlan('staging', 'v1.2.3', scope='backend'))

        assert record.state == RollbackState.PARTIALLY_FAILED
        assert record.outcome('file-service').status == OutcomeStatus.FAILED
        assert record.outcome('auth-service').status == OutcomeStatus.SUCCEEDED
        assert record.outcome('redis').status == OutcomeStatus.SKIPPED
        assert record.outcome('shell') is None
        assert record.final_report.failed_components() == ['file-service']
        assert record.issues[0]['type'] == 'ComponentRollbackFailure'
        assert record.issues[0]['component'] == 'file-service'
        assert executor.commands_with('set', 'image', 'deployment/auth-service',
                                      'auth-service=registry.test/auth-service:v1.2.3')

    @pytest.mark.asyncio
    async def test_dry_run_mutates_nothing(self, orchestrator, executor, storage, lock_dir):
        record = await orchestrator.execute_plan(RollbackPlan('staging', 'v1.2.3', dry_run=True))

        assert record.state == RollbackState.COMPLETED
        assert record.snapshot_id is not None
        assert not record.snapshot_persisted
        assert mutating_calls(executor) == []
        assert storage.list_keys('snapshots/') == []
        assert storage.list_keys('records/') == []
        assert not lock_dir.exists() or list(lock_dir.iterdir()) == []
        simulated = record.components_with(OutcomeStatus.SIMULATED)
        assert simulated == ['auth-service', 'file-service', 'shell']
        assert record.outcome('auth-service').detail.startswith("Would run: kubectl set image")
        assert record.to_dict()['plan']['dryRun'] is True

    @pytest.mark.asyncio
    async def test_backup_failure_blocks_rollback(self, orchestrator, executor, storage):
        executor.on('get', 'deployment', 'auth-service', returncode=1, stderr='Forbidden')

        record = await orchestrator.execute_plan(RollbackPlan('staging', '5'))

        assert record.state == RollbackState.FAILED
        assert states(record) == [RollbackState.BACKUP_IN_PROGRESS, RollbackState.FAILED]
        assert mutating_calls(executor) == []
        assert record.outcomes == []
        assert record.snapshot_id is None
        assert record.issues[0]['type'] == 'BackupFailure'
        assert len(storage.list_keys('records/staging/')) == 1

    @pytest.mark.asyncio
    async def test_malformed_version_manifest_fails_backup(self, orchestrator, executor, storage):
        executor.on('aws', 's3', 'cp', stdout='{"commit": "abc123", "version": "1.2.3"}')

        record = await orchestrator.execute_plan(RollbackPlan('staging', '5'))

        assert record.state == RollbackState.FAILED
        assert record.issues[0]['type'] == 'BackupFailure'
        assert "shell" in record.issues[0]['detail']
        assert mutating_calls(executor) == []
        assert storage.list_keys('snapshots/') == []

    @pytest.mark.asyncio
    async def test_unexpected_backup_error_fails_run(self, orchestrator, monkeypatch):
        def explode(*args):
            raise RuntimeError("index corrupted")

        monkeypatch.setattr(orchestrator.backup_store, 'create', explode)

        record = await orchestrator.execute_plan(RollbackPlan('staging', '5'))

        assert record.state == RollbackState.FAILED
        assert record.issues == [{'type': 'BackupFailure', 'component': None,
                                  'detail': "unexpected error during backup: index corrupted"}]

    @pytest.mark.asyncio
    async def test_every_component_failing_is_failed(self, orchestrator, executor):
        executor.on('rollout', 'undo', returncode=1, stderr='no rollout history')
        executor.on('sync', returncode=1, stderr='AccessDenied')

        record = await orchestrator.execute_plan(RollbackPlan('staging', '5'))

        assert record.state == RollbackState.FAILED
        assert record.components_with(OutcomeStatus.FAILED) == ['auth-service', 'file-service', 'shell']
        assert record.final_report is not None
        assert len(record.issues) == 3

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_siblings(self, orchestrator, executor):
        executor.on('undo', 'deployment/auth-service', returncode=1, stderr='boom')

        record = await orchestrator.execute_plan(RollbackPlan('staging', '5'))

        assert record.outcome('auth-service').status == OutcomeStatus.FAILED
        assert record.outcome('file-service').status == OutcomeStatus.SUCCEEDED
        assert record.outcome('shell').status == OutcomeStatus.SUCCEEDED
        assert executor.commands_with('undo', 'deployment/file-service')
        assert record.state == RollbackState.PARTIALLY_FAILED

    @pytest.mark.asyncio
    async def test_unhealthy_after_successful_rollback_is_regression(self, orchestrator, executor):
        executor.on('get', 'deployment', 'auth-service', stdout=deployment_json(ready=0))

        record = await orchestrator.execute_plan(RollbackPlan('staging', '5'))

        assert record.components_with(OutcomeStatus.FAILED) == []
        assert record.state == RollbackState.PARTIALLY_FAILED
        assert record.issues[-1]['type'] == 'VerificationRegression'
        assert "unhealthy" in record.issues[-1]['detail']

    @pytest.mark.asyncio
    async def test_backup_exists_before_any_rollback_command(self, orchestrator, executor, storage):
        seen = {}
        original_run = executor.run

        def run(command, timeout=None):
            if 'undo' in command and 'snapshots' not in seen:
                seen['snapshots'] = storage.list_keys('snapshots/staging/')
            return original_run(command, timeout)

        executor.run = run

        record = await orchestrator.execute_plan(RollbackPlan('staging', '5'))

        assert f"snapshots/staging/{record.snapshot_id}.yaml" in seen['snapshots']

    @pytest.mark.asyncio
    async def test_lock_released_after_run(self, orchestrator, lock_dir):
        await orchestrator.execute_plan(RollbackPlan('staging', '5'))

        assert not (lock_dir / 'staging.lock').exists()


class TestPreconditions:

    @pytest.mark.asyncio
    async def test_concurrent_rollback_rejected(self, orchestrator, executor, lock_dir):
        with EnvironmentLock(lock_dir, 'staging'):
            with pytest.raises(RollbackInProgressError):
                await orchestrator.execute_plan(RollbackPlan('staging', '5'))

        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_dry_run_ignores_lock(self, orchestrator, lock_dir):
        with EnvironmentLock(lock_dir, 'staging'):
            record = await orchestrator.execute_plan(RollbackPlan('staging', '5', dry_run=True))

        assert record.is_terminal

    @pytest.mark.asyncio
    async def test_malformed_revision(self, orchestrator, executor):
        with pytest.raises(MalformedPlanError):
            await orchestrator.execute_plan(RollbackPlan('staging', ''))
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_plan_for_other_environment(self, orchestrator):
        with pytest.raises(MalformedPlanError):
            await orchestrator.execute_plan(RollbackPlan('production', '5'))

    @pytest.mark.asyncio
    async def test_scope_without_rollback_actions(self, orchestrator):
        with pytest.raises(MalformedPlanError, match="no components with a rollback action"):
            await orchestrator.execute_plan(RollbackPlan('staging', '5', scope='redis'))

    @pytest.mark.asyncio
    async def test_unknown_component_scope(self, orchestrator):
        with pytest.raises(ConfigurationError):
            await orchestrator.execute_plan(RollbackPlan('staging', '5', scope='billing'))


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancelled_before_backup(self, orchestrator, executor):
        cancel = asyncio.Event()
        cancel.set()

        record = await orchestrator.execute_plan(RollbackPlan('staging', '5'), cancel_event=cancel)

        assert record.state == RollbackState.FAILED
        assert all(o.status == OutcomeStatus.CANCELLED for o in record.outcomes)
        assert mutating_calls(executor) == []

    @pytest.mark.asyncio
    async def test_cancel_during_backup_stops_new_rollbacks(self, orchestrator, executor):
        cancel = asyncio.Event()
        loop = asyncio.get_running_loop()
        original_run = executor.run

        def run(command, timeout=None):
            if 'cp' in command:
                loop.call_soon_threadsafe(cancel.set)
            return original_run(command, timeout)

        executor.run = run

        record = await orchestrator.execute_plan(RollbackPlan('staging', '5'), cancel_event=cancel)

        assert record.snapshot_persisted
        assert record.components_with(OutcomeStatus.CANCELLED) == ['auth-service', 'file-service', 'shell']
        assert mutating_calls(executor) == []
        assert record.state == RollbackState.PARTIALLY_FAILED
