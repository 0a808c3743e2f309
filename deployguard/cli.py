#!/usr/bin/env python3
"""
deployguard command line: post-deploy health verification and rollback.

Exit codes:
    healthcheck   0 healthy, 1 degraded or unhealthy
    rollback      0 completed, 2 partially failed, 1 failed
    restore       0 all restored, 2 some restored, 1 none restored
    any command   1 on configuration error or lock contention
"""

import argparse
import asyncio
import signal
import sys
from functools import cached_property

import structlog

from . import __version__
from .config import (
    HealthSettings, RollbackSettings, build_environment, list_environments, load_config,
)
from .deployment import (
    BackupStore, OutcomeStatus, RollbackOrchestrator, RollbackPlan, RollbackState, build_action,
)
from .deployment.backup import current_user
from .errors import ComponentRollbackFailure, ConfigurationError, RollbackInProgressError, StorageError
from .executors import get_executor
from .health import HealthProbeEngine
from .logging_config import setup_logging
from .notifications import NotificationDispatcher, build_sinks
from .reports import render
from .storage import get_storage_backend

logger = structlog.get_logger(__name__)

SCOPE_HELP = "all | backend | frontend | <component name> (default: all)"

ROLLBACK_EXIT_CODES = {
    RollbackState.COMPLETED: 0,
    RollbackState.PARTIALLY_FAILED: 2,
    RollbackState.FAILED: 1,
}


class Runtime:
    """
    Collaborators wired for one environment.

    Storage is only opened for the commands that read or write snapshots,
    so a health check never needs state-bucket credentials.
    """

    def __init__(self, config, environment_name):
        self.config = config
        self.environment = build_environment(config, environment_name)
        self.executor = get_executor(self.environment)
        self.rollback_settings = RollbackSettings.from_config(config)
        self.engine = HealthProbeEngine(self.executor, settings=HealthSettings.from_config(config))
        self.deployment = config.get('deployment', {})
        self.report_dir = self.deployment.get('report_dir', './reports')

    def action_factory(self, component):
        return build_action(component, self.environment, self.executor, self.rollback_settings)

    @cached_property
    def backup_store(self):
        return BackupStore(get_storage_backend(self.config), self.action_factory)

    @cached_property
    def orchestrator(self):
        return RollbackOrchestrator(
            self.environment, self.engine, self.backup_store, self.action_factory,
            settings=self.rollback_settings, lock_dir=self.deployment.get('lock_dir'),
        )


def build_runtime(config, environment_name):
    return Runtime(config, environment_name)


def banner(title, quiet=False):
    if quiet:
        return
    print("=" * 60)
    print(title)
    print("=" * 60)


def run_with_cancellation(make_coro):
    """
    Run make_coro(cancel_event) on a fresh event loop. SIGINT/SIGTERM set
    the event so no new probes or rollback actions start.
    """
    async def runner():
        cancel_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        installed = []

        def on_signal(signum):
            if not cancel_event.is_set():
                print(f"\nReceived {signal.Signals(signum).name}; finishing in-flight work...",
                      file=sys.stderr)
                logger.warning("cli.cancelled", signal=signal.Signals(signum).name)
            cancel_event.set()

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, on_signal, signum)
                installed.append(signum)
            except (NotImplementedError, RuntimeError, ValueError):
                logger.debug("cli.signal_handler_unavailable", signal=signum)
        try:
            return await make_coro(cancel_event)
        finally:
            for signum in installed:
                loop.remove_signal_handler(signum)

    return asyncio.run(runner())


def confirm(prompt, assume_yes=False):
    if assume_yes or not sys.stdin.isatty():
        return True
    answer = input(f"{prompt} [y/N]: ").strip().lower()
    return answer in ('y', 'yes')


def print_failures(failures):
    for failure in failures:
        print(f"⚠ Notification via {failure.sink} failed: {failure.detail}", file=sys.stderr)


def healthcheck_command(args, config):
    runtime = build_runtime(config, args.environment)
    quiet = args.format == 'json'
    banner(f"HEALTH CHECK: {runtime.environment.name} (scope {args.scope})", quiet)

    async def run(cancel_event):
        report = await runtime.engine.verify(
            runtime.environment, scope=args.scope, timeout=args.timeout,
            probe_timeout=args.probe_timeout, interval=args.interval, cancel_event=cancel_event,
        )
        dispatcher = NotificationDispatcher(build_sinks(config, runtime.report_dir, external=args.notify))
        failures = await dispatcher.notify(report)
        return report, failures

    report, failures = run_with_cancellation(run)
    print(render(report, args.format))
    print_failures(failures)
    if not quiet:
        status = "✓ HEALTHY" if report.is_healthy else f"✗ {report.overall_status.value.upper()}"
        banner(f"{status}: {report.passed_checks}/{report.total_checks} checks passed")
    return 0 if report.is_healthy else 1


def rollback_command(args, config):
    runtime = build_runtime(config, args.environment)
    quiet = args.format == 'json'
    plan = RollbackPlan(
        environment=runtime.environment.name,
        target_revision=args.target_revision,
        scope=args.scope,
        requested_by=current_user(),
        dry_run=args.dry_run,
    )
    plan.validate()

    mode = "DRY RUN" if plan.dry_run else "ROLLBACK"
    banner(f"{mode}: {plan.environment} -> {plan.target_revision} (scope {plan.scope})", quiet)
    if not plan.dry_run and not confirm(
            f"Roll back '{plan.scope}' in {plan.environment} to {plan.target_revision}?", args.yes):
        print("Rollback cancelled by operator.")
        return 1

    async def run(cancel_event):
        record = await runtime.orchestrator.execute_plan(plan, cancel_event=cancel_event)
        sinks = build_sinks(config, runtime.report_dir, external=not plan.dry_run)
        failures = await NotificationDispatcher(sinks).notify(record)
        return record, failures

    record, failures = run_with_cancellation(run)
    print(render(record, args.format))
    print_failures(failures)
    if not quiet:
        banner(f"ROLLBACK {record.state.value.upper()}")
    return ROLLBACK_EXIT_CODES[record.state]


def restore_command(args, config):
    runtime = build_runtime(config, args.environment)
    snapshot = runtime.backup_store.get(runtime.environment.name, args.snapshot_id)

    banner(f"RESTORE: {snapshot.id}")
    print(f"Created: {snapshot.created_at.isoformat()} by {snapshot.created_by or 'unknown'}")
    for name, artifact in snapshot.artifacts.items():
        print(f"  - {name}: {artifact.get('revision')}")
    if not confirm(f"Restore {len(snapshot.artifacts)} component(s) in {runtime.environment.name}?", args.yes):
        print("Restore cancelled by operator.")
        return 1

    outcomes = runtime.backup_store.restore(runtime.environment, snapshot.id)
    for outcome in outcomes:
        mark = {OutcomeStatus.SUCCEEDED: '✓', OutcomeStatus.SKIPPED: '-'}.get(outcome.status, '✗')
        print(f"{mark} {outcome.component}: {outcome.status.value} {outcome.detail}")

    succeeded = [o for o in outcomes if o.status == OutcomeStatus.SUCCEEDED]
    failed = [o for o in outcomes if o.status == OutcomeStatus.FAILED]
    if not failed:
        return 0
    return 2 if succeeded else 1


def backups_command(args, config):
    runtime = build_runtime(config, args.environment)
    snapshots = runtime.backup_store.list(runtime.environment.name)
    banner(f"BACKUP SNAPSHOTS: {runtime.environment.name}")
    if not snapshots:
        print("No snapshots found.")
    for snapshot in snapshots:
        print(f"{snapshot.id}  scope={snapshot.scope}  by={snapshot.created_by or 'unknown'}  "
              f"components={len(snapshot.artifacts)}")
    return 0


def history_command(args, config):
    runtime = build_runtime(config, args.environment)
    records = runtime.backup_store.list_records(runtime.environment.name)
    banner(f"ROLLBACK HISTORY: {runtime.environment.name}")
    if not records:
        print("No rollback records found.")
    for record in records:
        plan = record.get('plan', {})
        print(f"{record.get('startedAt')}  {record.get('status', 'unknown'):<17} "
              f"{plan.get('targetRevision')}  scope={plan.get('scope')}  by={plan.get('requestedBy')}")

    if args.cluster:
        print_cluster_history(runtime)
    return 0


def print_cluster_history(runtime):
    """Revisions the cluster and the asset bucket still hold, per rollback-able component."""
    banner(f"CLUSTER REVISIONS: {runtime.environment.name}")
    for component in runtime.environment.components:
        action = runtime.action_factory(component)
        if action is None:
            continue
        try:
            history = action.history()
        except ComponentRollbackFailure as e:
            history = f"unavailable: {e.detail}"
        print(f"\n[{component.name}] ({action.action})")
        for line in (history or "no revision history available").splitlines():
            print(f"  {line}")


def validate_command(args, config):
    banner("CONFIGURATION VALID")
    for name in list_environments(config):
        environment = build_environment(config, name)
        print(f"✓ {name} (namespace {environment.namespace})")
        for component in environment.components:
            rollback = component.rollback['action'] if component.can_rollback else 'none'
            print(f"    - {component.name} [{component.kind.value}] "
                  f"probes={len(component.probes)} rollback={rollback}")
    return 0


COMMANDS = {
    'healthcheck': healthcheck_command,
    'rollback': rollback_command,
    'restore': restore_command,
    'backups': backups_command,
    'history': history_command,
    'validate': validate_command,
}


def build_parser():
    parser = argparse.ArgumentParser(
        prog='deployguard',
        description='Deployment health verification and rollback orchestrator',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Post-deploy gate in CI
  deployguard healthcheck staging --timeout 300 --interval 1

  # Only the frontends, JSON output, notify chat/email
  deployguard healthcheck production --scope frontend --format json --notify

  # Validate a rollback plan without touching anything
  deployguard rollback staging v1.2.3 --scope backend --dry-run

  # Roll back and restore
  deployguard rollback staging v1.2.3 --yes
  deployguard backups staging
  deployguard restore staging staging-20250101-120000-000000-1a2b3c4d --yes
        """
    )
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    parser.add_argument('--config', help='Config file (default: $DEPLOYGUARD_CONFIG or config/deployment-config.yaml)')
    parser.add_argument('--log-level', help='DEBUG, INFO, WARNING, ERROR (default: $DEPLOYGUARD_LOG_LEVEL or INFO)')
    parser.add_argument('--log-format', choices=['console', 'json'], help='Structured log format on stderr')
    subparsers = parser.add_subparsers(dest='command', required=True)

    health = subparsers.add_parser('healthcheck', help='Verify environment health')
    health.add_argument('environment')
    health.add_argument('--scope', default='all', help=SCOPE_HELP)
    health.add_argument('--timeout', type=float, help='Overall deadline in seconds (default from config)')
    health.add_argument('--probe-timeout', type=float, help='Per-probe attempt timeout in seconds')
    health.add_argument('--interval', type=float, help='Base back-off between probe retries in seconds')
    health.add_argument('--format', choices=['markdown', 'json'], default='markdown')
    health.add_argument('--notify', action='store_true', help='Also send webhook/email notifications')

    rollback = subparsers.add_parser('rollback', help='Back up, roll back and re-verify')
    rollback.add_argument('environment')
    rollback.add_argument('target_revision', help="Rollout number, image tag, commit or 'previous'")
    rollback.add_argument('--scope', default='all', help=SCOPE_HELP)
    rollback.add_argument('--dry-run', action='store_true', help='Simulate backup and rollback actions')
    rollback.add_argument('--yes', action='store_true', help='Skip the confirmation prompt')
    rollback.add_argument('--format', choices=['markdown', 'json'], default='markdown')

    restore = subparsers.add_parser('restore', help='Re-apply revisions from a backup snapshot')
    restore.add_argument('environment')
    restore.add_argument('snapshot_id')
    restore.add_argument('--yes', action='store_true', help='Skip the confirmation prompt')

    backups = subparsers.add_parser('backups', help='List backup snapshots, newest first')
    backups.add_argument('environment')

    history = subparsers.add_parser('history', help='List persisted rollback records')
    history.add_argument('environment')
    history.add_argument('--cluster', action='store_true',
                         help='Also list rollout history and deployment manifests from the cluster')

    subparsers.add_parser('validate', help='Validate configuration and list components')
    return parser


def run(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_format)

    try:
        config = load_config(args.config)
        return COMMANDS[args.command](args, config)
    except (ConfigurationError, RollbackInProgressError, StorageError) as e:
        logger.error("cli.error", command=args.command, error=str(e))
        print(f"ERROR: {e}", file=sys.stderr)
        return 1


def main(argv=None):
    """Main entry point - parse command line and run the command."""
    sys.exit(run(argv))


if __name__ == '__main__':
    main()
