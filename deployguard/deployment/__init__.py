"""
Rollback package: plan/record models, per-component actions, backup store,
environment lock and the orchestrator state machine.
"""

from .actions import build_action
from .backup import BackupStore
from .lock import EnvironmentLock
from .models import (
    BackupSnapshot, ComponentOutcome, OutcomeStatus, RollbackPlan, RollbackRecord, RollbackState,
)
from .orchestrator import RollbackOrchestrator

__all__ = [
    'BackupSnapshot', 'BackupStore', 'ComponentOutcome', 'EnvironmentLock', 'OutcomeStatus',
    'RollbackOrchestrator', 'RollbackPlan', 'RollbackRecord', 'RollbackState', 'build_action',
]
