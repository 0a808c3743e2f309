#!/usr/bin/env python3
"""
Exception taxonomy for health verification and rollback.

Probe- and component-level errors are captured into reports and records;
only configuration errors and lock contention escape to the caller.
"""


class DeployGuardError(Exception):
    """Base class for all deployguard errors."""


class ConfigurationError(DeployGuardError):
    """Configuration is missing, malformed or fails schema validation."""


class UnknownEnvironmentError(ConfigurationError):
    def __init__(self, name, known=()):
        self.name = name
        self.known = tuple(known)
        hint = f" (known: {', '.join(self.known)})" if self.known else ""
        super().__init__(f"Unknown environment '{name}'{hint}")


class UnknownComponentError(ConfigurationError):
    def __init__(self, name, environment):
        self.name = name
        self.environment = environment
        super().__init__(f"Component '{name}' is not defined for environment '{environment}'")


class MalformedPlanError(ConfigurationError):
    """A rollback plan failed validation before execution."""


class RollbackInProgressError(DeployGuardError):
    """Another rollback holds the advisory lock for this environment."""

    def __init__(self, environment, holder=None):
        self.environment = environment
        self.holder = holder or {}
        owner = self.holder.get('pid', 'unknown')
        super().__init__(f"A rollback is already running for '{environment}' (pid {owner})")


class ProbeError(DeployGuardError):
    """Base class for probe failures; carries measured latency when known."""

    def __init__(self, detail, latency_ms=None, critical=None):
        self.detail = detail
        self.latency_ms = latency_ms
        # None keeps the probe's own criticality
        self.critical = critical
        super().__init__(detail)


class TransientProbeError(ProbeError):
    """Network blip or not-yet-ready state; the engine retries these."""


class CriticalProbeFailure(ProbeError):
    """Definitive failure; recorded immediately without further retries."""


class BackupFailure(DeployGuardError):
    """Snapshot of current state could not be captured or persisted."""


class ComponentRollbackFailure(DeployGuardError):
    def __init__(self, component, detail):
        self.component = component
        self.detail = detail
        super().__init__(f"{component}: {detail}")


class VerificationRegression(DeployGuardError):
    """Rollback reported success but health did not recover."""


class NotificationFailure(DeployGuardError):
    def __init__(self, sink, detail):
        self.sink = sink
        self.detail = detail
        super().__init__(f"{sink}: {detail}")


class StorageError(DeployGuardError):
    """Storage backend operation failed."""


class ObjectExistsError(StorageError):
    """Atomic create refused because the key already exists."""


class SnapshotNotFoundError(StorageError):
    def __init__(self, snapshot_id):
        self.snapshot_id = snapshot_id
        super().__init__(f"Snapshot not found: {snapshot_id}")


class ExecutorError(DeployGuardError):
    """A command could not be started or timed out."""
