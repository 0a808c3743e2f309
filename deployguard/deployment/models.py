#!/usr/bin/env python3
"""
Rollback plan, per-component outcomes, backup snapshots and run records.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from ..errors import MalformedPlanError
from ..health.models import utcnow


class RollbackState(str, Enum):
    IDLE = "idle"
    BACKUP_IN_PROGRESS = "backup_in_progress"
    ROLLING_BACK = "rolling_back"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIALLY_FAILED = "partially_failed"


TERMINAL_STATES = (RollbackState.COMPLETED, RollbackState.FAILED, RollbackState.PARTIALLY_FAILED)


class OutcomeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    SIMULATED = "simulated"


@dataclass(frozen=True)
class RollbackPlan:
    environment: str
    target_revision: str
    scope: str = 'all'
    requested_by: str = None
    dry_run: bool = False

    def validate(self):
        revision = (self.target_revision or '').strip()
        if not revision:
            raise MalformedPlanError("Rollback plan requires a target revision")
        if revision != self.target_revision or any(ch.isspace() for ch in revision):
            raise MalformedPlanError(f"Invalid target revision: {self.target_revision!r}")
        if not self.scope:
            raise MalformedPlanError("Rollback plan requires a component scope")

    def to_dict(self):
        return {
            'environment': self.environment,
            'targetRevision': self.target_revision,
            'scope': self.scope,
            'requestedBy': self.requested_by,
            'dryRun': self.dry_run,
        }


@dataclass(frozen=True)
class ComponentOutcome:
    component: str
    status: OutcomeStatus
    detail: str = ""
    revision: str = None
    finished_at: datetime = field(default_factory=utcnow)

    def to_dict(self):
        return {
            'component': self.component,
            'status': self.status.value,
            'detail': self.detail,
            'revision': self.revision,
            'finishedAt': self.finished_at.isoformat(),
        }


@dataclass(frozen=True)
class BackupSnapshot:
    """Pre-rollback state of every in-scope component; never mutated once written."""

    id: str
    environment: str
    created_at: datetime
    artifacts: dict
    source_revision: str = 'unknown'
    scope: str = 'all'
    created_by: str = None
    location: str = None

    def to_dict(self):
        return {
            'id': self.id,
            'environment': self.environment,
            'created_at': self.created_at.isoformat(),
            'scope': self.scope,
            'created_by': self.created_by,
            'source_revision': self.source_revision,
            'artifacts': self.artifacts,
        }

    @classmethod
    def from_dict(cls, data, location=None):
        return cls(
            id=data['id'],
            environment=data['environment'],
            created_at=datetime.fromisoformat(data['created_at']),
            artifacts=data.get('artifacts', {}),
            source_revision=data.get('source_revision', 'unknown'),
            scope=data.get('scope', 'all'),
            created_by=data.get('created_by'),
            location=location,
        )


@dataclass
class RollbackRecord:
    """Outcome of one plan execution; built up while the state machine runs."""

    id: str
    plan: RollbackPlan
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime = None
    snapshot_id: str = None
    snapshot_persisted: bool = False
    outcomes: list = field(default_factory=list)
    final_report: object = None
    issues: list = field(default_factory=list)
    transitions: list = field(default_factory=list)

    @property
    def state(self):
        return self.transitions[-1]['state'] if self.transitions else RollbackState.IDLE

    @property
    def is_terminal(self):
        return self.state in TERMINAL_STATES

    def transition(self, state):
        self.transitions.append({'state': state, 'at': utcnow()})
        if state in TERMINAL_STATES:
            self.finished_at = self.transitions[-1]['at']

    def add_issue(self, error, component=None):
        self.issues.append({
            'type': type(error).__name__,
            'component': component or getattr(error, 'component', None),
            'detail': getattr(error, 'detail', None) or str(error),
        })

    def outcome(self, component):
        for outcome in self.outcomes:
            if outcome.component == component:
                return outcome
        return None

    def components_with(self, status):
        return [o.component for o in self.outcomes if o.status == status]

    def to_dict(self):
        return {
            'id': self.id,
            'status': self.state.value,
            'plan': self.plan.to_dict(),
            'startedAt': self.started_at.isoformat(),
            'finishedAt': self.finished_at.isoformat() if self.finished_at else None,
            'backupSnapshotId': self.snapshot_id,
            'backupPersisted': self.snapshot_persisted,
            'components': [o.to_dict() for o in self.outcomes],
            'finalReport': self.final_report.to_dict() if self.final_report else None,
            'issues': list(self.issues),
            'transitions': [
                {'state': t['state'].value, 'at': t['at'].isoformat()} for t in self.transitions
            ],
        }
