#!/usr/bin/env python3
"""
Backup store: versioned, append-only snapshots of component revisions,
plus the persisted history of rollback records.

Layout (relative to the storage backend root):
    snapshots/<environment>/<snapshot-id>.yaml
    snapshots/<environment>/INDEX.yaml      (derived, rebuilt after each create)
    records/<environment>/<record-id>.yaml
"""

import getpass
import hashlib
import os
import subprocess

import structlog
import yaml

from ..errors import (
    BackupFailure, ComponentRollbackFailure, DeployGuardError, SnapshotNotFoundError, StorageError,
)
from ..health.models import utcnow
from .models import BackupSnapshot, ComponentOutcome, OutcomeStatus

logger = structlog.get_logger(__name__)

INDEX_NAME = 'INDEX.yaml'


def current_user():
    return os.environ.get('GITLAB_USER_LOGIN') or os.environ.get('GITHUB_ACTOR') or getpass.getuser()


def source_revision():
    """Git commit of the tooling checkout that took the snapshot."""
    for name in ('CI_COMMIT_SHA', 'GITHUB_SHA'):
        if os.environ.get(name):
            return os.environ[name]
    try:
        result = subprocess.run(['git', 'rev-parse', 'HEAD'], capture_output=True, text=True, timeout=5)
    except (OSError, subprocess.TimeoutExpired):
        return 'unknown'
    return result.stdout.strip() if result.returncode == 0 else 'unknown'


class BackupStore:

    def __init__(self, storage, action_factory):
        """
        Args:
            storage: StorageBackend
            action_factory: callable(component) -> RollbackAction or None
        """
        self.storage = storage
        self.action_factory = action_factory

    @staticmethod
    def _snapshot_prefix(environment_name):
        return f"snapshots/{environment_name}/"

    @staticmethod
    def _record_prefix(environment_name):
        return f"records/{environment_name}/"

    @staticmethod
    def _snapshot_id(environment_name, created_at, artifacts):
        payload = yaml.safe_dump({'environment': environment_name, 'artifacts': artifacts}, sort_keys=True)
        digest = hashlib.sha256(f"{created_at.isoformat()}|{payload}".encode('utf-8')).hexdigest()[:8]
        return f"{environment_name}-{created_at.strftime('%Y%m%d-%H%M%S-%f')}-{digest}"

    def create(self, environment, components, plan=None, dry_run=False):
        """
        Capture the current revision of every rollback-able component in scope.

        In dry-run the captures (read-only) still happen but nothing is written.

        Raises:
            BackupFailure: any capture or the write failed
        """
        artifacts = {}
        for component in components:
            action = self.action_factory(component)
            if action is None:
                continue
            try:
                artifacts[component.name] = action.capture_revision()
            except BackupFailure:
                raise
            except DeployGuardError as e:
                raise BackupFailure(f"{component.name}: {e}")
            except Exception as e:
                logger.exception("backup.capture_error", environment=environment.name, component=component.name)
                raise BackupFailure(f"{component.name}: unexpected error during capture: {e}") from e
            logger.info("backup.captured", environment=environment.name, component=component.name,
                        revision=artifacts[component.name].get('revision'))

        created_at = utcnow()
        snapshot = BackupSnapshot(
            id=self._snapshot_id(environment.name, created_at, artifacts),
            environment=environment.name,
            created_at=created_at,
            artifacts=artifacts,
            source_revision=source_revision(),
            scope=plan.scope if plan else 'all',
            created_by=(plan.requested_by if plan else None) or current_user(),
        )

        if dry_run:
            logger.info("backup.dry_run", environment=environment.name, snapshot=snapshot.id)
            return snapshot

        key = f"{self._snapshot_prefix(environment.name)}{snapshot.id}.yaml"
        try:
            location = self.storage.create(key, yaml.safe_dump(snapshot.to_dict(), sort_keys=False))
        except StorageError as e:
            raise BackupFailure(f"Could not persist snapshot {snapshot.id}: {e}")

        try:
            self._write_index(environment.name)
        except StorageError as e:
            logger.warning("backup.index_failed", environment=environment.name, error=str(e))

        logger.info("backup.created", environment=environment.name, snapshot=snapshot.id, location=location)
        return BackupSnapshot.from_dict(snapshot.to_dict(), location=location)

    def _load(self, key):
        data = yaml.safe_load(self.storage.read(key))
        return BackupSnapshot.from_dict(data, location=self.storage.describe(key))

    def list(self, environment_name):
        """Snapshots for an environment, newest first."""
        prefix = self._snapshot_prefix(environment_name)
        snapshots = [
            self._load(key) for key in self.storage.list_keys(prefix)
            if key.endswith('.yaml') and not key.endswith(INDEX_NAME)
        ]
        return sorted(snapshots, key=lambda s: (s.created_at, s.id), reverse=True)

    def get(self, environment_name, snapshot_id):
        key = f"{self._snapshot_prefix(environment_name)}{snapshot_id}.yaml"
        if not self.storage.exists(key):
            raise SnapshotNotFoundError(snapshot_id)
        return self._load(key)

    def _write_index(self, environment_name):
        index = [
            {
                'id': s.id,
                'created_at': s.created_at.isoformat(),
                'scope': s.scope,
                'components': sorted(s.artifacts),
            }
            for s in self.list(environment_name)
        ]
        self.storage.write(f"{self._snapshot_prefix(environment_name)}{INDEX_NAME}",
                           yaml.safe_dump({'environment': environment_name, 'snapshots': index}, sort_keys=False))

    def restore(self, environment, snapshot_id):
        """
        Re-apply every revision captured in a snapshot.

        A component that fails to restore is recorded as failed and the
        remaining components are still attempted.

        Returns:
            list of ComponentOutcome, one per captured component
        """
        snapshot = self.get(environment.name, snapshot_id)
        outcomes = []
        for name, artifact in snapshot.artifacts.items():
            revision = artifact.get('revision')
            try:
                component = environment.component(name)
            except DeployGuardError as e:
                outcomes.append(ComponentOutcome(name, OutcomeStatus.FAILED, str(e), revision))
                continue

            action = self.action_factory(component)
            if action is None or revision is None:
                outcomes.append(ComponentOutcome(name, OutcomeStatus.SKIPPED, "nothing to restore", revision))
                continue

            try:
                detail = action.restore(artifact)
            except ComponentRollbackFailure as e:
                logger.error("restore.component_failed", component=name, error=e.detail)
                outcomes.append(ComponentOutcome(name, OutcomeStatus.FAILED, e.detail, revision))
            except DeployGuardError as e:
                logger.error("restore.component_failed", component=name, error=str(e))
                outcomes.append(ComponentOutcome(name, OutcomeStatus.FAILED, str(e), revision))
            except Exception as e:
                logger.exception("restore.component_error", component=name)
                outcomes.append(ComponentOutcome(name, OutcomeStatus.FAILED, f"unexpected error: {e}", revision))
            else:
                logger.info("restore.component_done", component=name, revision=revision)
                outcomes.append(ComponentOutcome(name, OutcomeStatus.SUCCEEDED, detail, revision))
        return outcomes

    def save_record(self, record):
        key = f"{self._record_prefix(record.plan.environment)}{record.id}.yaml"
        location = self.storage.create(key, yaml.safe_dump(record.to_dict(), sort_keys=False))
        logger.info("record.saved", record=record.id, location=location)
        return location

    def list_records(self, environment_name):
        """Persisted rollback records (as dicts), newest first."""
        records = [
            yaml.safe_load(self.storage.read(key))
            for key in self.storage.list_keys(self._record_prefix(environment_name))
            if key.endswith('.yaml')
        ]
        return sorted(records, key=lambda r: r.get('startedAt', ''), reverse=True)
