#!/usr/bin/env python3
"""
Rollback orchestrator.

Drives one rollback plan through

    Idle -> BackupInProgress -> RollingBack -> Verifying -> Completed | Failed | PartiallyFailed

No component is touched before a backup of the current state succeeded.
Components roll back concurrently and independently; every outcome, issue
and state transition is captured on the returned RollbackRecord.
"""

import asyncio

import structlog

from ..config.registry import RollbackSettings, select_components
from ..errors import (
    BackupFailure, ComponentRollbackFailure, DeployGuardError, MalformedPlanError, StorageError,
    VerificationRegression,
)
from ..health.models import utcnow
from .lock import EnvironmentLock
from .models import ComponentOutcome, OutcomeStatus, RollbackRecord, RollbackState

logger = structlog.get_logger(__name__)

DEFAULT_LOCK_DIR = './state/locks'


class RollbackOrchestrator:

    def __init__(self, environment, engine, backup_store, action_factory, settings=None, lock_dir=None):
        """
        Args:
            environment: Environment from the registry
            engine: HealthProbeEngine used for post-rollback verification
            backup_store: BackupStore
            action_factory: callable(component) -> RollbackAction or None
            settings: RollbackSettings
            lock_dir: directory for per-environment lock files
        """
        self.environment = environment
        self.engine = engine
        self.backup_store = backup_store
        self.action_factory = action_factory
        self.settings = settings or RollbackSettings()
        self.lock_dir = lock_dir or DEFAULT_LOCK_DIR

    def _prepare(self, plan):
        plan.validate()
        if plan.environment != self.environment.name:
            raise MalformedPlanError(
                f"Plan targets '{plan.environment}' but orchestrator is bound to '{self.environment.name}'"
            )
        components = select_components(self.environment, plan.scope)
        actions = {component.name: self.action_factory(component) for component in components}
        if not any(actions.values()):
            raise MalformedPlanError(f"Scope '{plan.scope}' has no components with a rollback action")
        return components, actions

    async def execute_plan(self, plan, cancel_event=None):
        """
        Execute a rollback plan.

        Returns:
            RollbackRecord in a terminal state

        Raises:
            ConfigurationError: malformed plan, unknown component or empty scope
            RollbackInProgressError: another rollback holds the environment lock
        """
        components, actions = self._prepare(plan)

        lock = None
        if not plan.dry_run:
            lock = EnvironmentLock(self.lock_dir, self.environment.name).acquire()

        record = RollbackRecord(
            id=f"rollback-{self.environment.name}-{utcnow().strftime('%Y%m%d-%H%M%S-%f')}",
            plan=plan,
        )
        log = logger.bind(environment=self.environment.name, record=record.id,
                          target=plan.target_revision, dry_run=plan.dry_run)
        log.info("rollback.start", scope=plan.scope, components=len(components))

        try:
            await self._run(record, components, actions, cancel_event, log)
        finally:
            if lock is not None:
                lock.release()

        if not plan.dry_run:
            try:
                await asyncio.to_thread(self.backup_store.save_record, record)
            except StorageError as e:
                log.error("rollback.record_not_saved", error=str(e))

        log.info("rollback.done", status=record.state.value,
                 failed=record.components_with(OutcomeStatus.FAILED))
        return record

    async def _run(self, record, components, actions, cancel_event, log):
        plan = record.plan

        record.transition(RollbackState.BACKUP_IN_PROGRESS)
        if cancel_event is not None and cancel_event.is_set():
            record.add_issue(BackupFailure("cancelled before backup started"))
            record.outcomes = [
                ComponentOutcome(c.name, OutcomeStatus.CANCELLED, "cancelled before backup")
                for c in components
            ]
            record.transition(RollbackState.FAILED)
            return

        try:
            snapshot = await asyncio.to_thread(
                self.backup_store.create, self.environment, components, plan, plan.dry_run
            )
        except BackupFailure as e:
            log.error("rollback.backup_failed", error=str(e))
            record.add_issue(e)
            record.transition(RollbackState.FAILED)
            return
        except Exception as e:
            log.exception("rollback.backup_error")
            record.add_issue(BackupFailure(f"unexpected error during backup: {e}"))
            record.transition(RollbackState.FAILED)
            return
        record.snapshot_id = snapshot.id
        record.snapshot_persisted = not plan.dry_run
        log.info("rollback.backup_done", snapshot=snapshot.id, persisted=record.snapshot_persisted)

        record.transition(RollbackState.ROLLING_BACK)
        rollback_able = [c for c in components if actions[c.name] is not None]
        semaphore = asyncio.Semaphore(max(1, min(len(rollback_able), self.settings.max_concurrency)))
        record.outcomes = list(await asyncio.gather(*(
            self._rollback_component(record, component, actions[component.name], semaphore, cancel_event)
            for component in components
        )))

        record.transition(RollbackState.VERIFYING)
        try:
            record.final_report = await self.engine.verify(
                self.environment, scope=plan.scope,
                timeout=self.settings.post_verify_timeout, cancel_event=cancel_event,
            )
        except DeployGuardError as e:
            log.error("rollback.verify_failed", error=str(e))
            record.add_issue(e)

        record.transition(self._decide(record))

    async def _rollback_component(self, record, component, action, semaphore, cancel_event):
        plan = record.plan
        if action is None:
            return ComponentOutcome(component.name, OutcomeStatus.SKIPPED, "no rollback action configured")

        async with semaphore:
            if cancel_event is not None and cancel_event.is_set():
                return ComponentOutcome(component.name, OutcomeStatus.CANCELLED,
                                        "cancelled before rollback started")

            if plan.dry_run:
                detail = action.describe(plan.target_revision)
                logger.info("rollback.component_simulated", component=component.name, detail=detail)
                return ComponentOutcome(component.name, OutcomeStatus.SIMULATED, detail, plan.target_revision)

            try:
                detail = await asyncio.to_thread(action.rollback, plan.target_revision)
            except ComponentRollbackFailure as e:
                logger.error("rollback.component_failed", component=component.name, error=e.detail)
                record.add_issue(e)
                return ComponentOutcome(component.name, OutcomeStatus.FAILED, e.detail, plan.target_revision)
            except DeployGuardError as e:
                logger.error("rollback.component_failed", component=component.name, error=str(e))
                record.add_issue(ComponentRollbackFailure(component.name, str(e)))
                return ComponentOutcome(component.name, OutcomeStatus.FAILED, str(e), plan.target_revision)
            except Exception as e:
                logger.exception("rollback.component_error", component=component.name)
                record.add_issue(ComponentRollbackFailure(component.name, f"unexpected error: {e}"))
                return ComponentOutcome(component.name, OutcomeStatus.FAILED,
                                        f"unexpected error: {e}", plan.target_revision)

            logger.info("rollback.component_done", component=component.name, detail=detail)
            return ComponentOutcome(component.name, OutcomeStatus.SUCCEEDED, detail, plan.target_revision)

    def _decide(self, record):
        attempted = [o for o in record.outcomes if o.status != OutcomeStatus.SKIPPED]
        failed = record.components_with(OutcomeStatus.FAILED)
        cancelled = record.components_with(OutcomeStatus.CANCELLED)

        if attempted and len(failed) == len(attempted):
            return RollbackState.FAILED
        if failed or cancelled:
            return RollbackState.PARTIALLY_FAILED

        report = record.final_report
        if report is None or not report.is_healthy:
            status = report.overall_status.value if report else 'unavailable'
            unhealthy = report.failed_components() if report else []
            record.add_issue(VerificationRegression(
                f"all rollback actions succeeded but post-rollback health is {status}"
                + (f" ({', '.join(unhealthy)})" if unhealthy else "")
            ))
            return RollbackState.PARTIALLY_FAILED
        return RollbackState.COMPLETED
