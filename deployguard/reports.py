#!/usr/bin/env python3
"""
Report rendering for health reports and rollback records.

JSON for machines, Markdown for humans, and a short plain-text summary
for chat and email notifications.
"""

import json
from pathlib import Path

from .deployment.models import RollbackRecord, RollbackState
from .health.models import HealthReport, HealthStatus, ProbeStatus, utcnow

STATUS_ICONS = {
    HealthStatus.HEALTHY: '✅',
    HealthStatus.DEGRADED: '⚠️',
    HealthStatus.UNHEALTHY: '❌',
    RollbackState.COMPLETED: '✅',
    RollbackState.PARTIALLY_FAILED: '⚠️',
    RollbackState.FAILED: '❌',
}

CHECK_ICONS = {
    ProbeStatus.PASS: '✓',
    ProbeStatus.DEGRADED: '!',
    ProbeStatus.FAIL: '✗',
}


def _environment(outcome):
    return outcome.plan.environment if isinstance(outcome, RollbackRecord) else outcome.environment


def _status(outcome):
    return outcome.state if isinstance(outcome, RollbackRecord) else outcome.overall_status


def _cell(text):
    return (text or "").replace("|", "\\|")


def render_json(outcome):
    return json.dumps(outcome.to_dict(), indent=2, default=str)


def _health_markdown(report, heading='#'):
    icon = STATUS_ICONS.get(report.overall_status, '')
    lines = [
        f"{heading} Health Report: {report.environment}",
        "",
        f"- **Status:** {icon} {report.overall_status.value.upper()}",
        f"- **Scope:** {report.scope}",
        f"- **Generated:** {report.generated_at.strftime('%Y-%m-%d %H:%M:%S UTC')}",
        f"- **Checks:** {report.passed_checks} passed, {report.failed_checks} failed, "
        f"{report.degraded_checks} degraded ({report.total_checks} total)",
        "",
        "| Component | Check | Status | Latency | Detail |",
        "|-----------|-------|--------|---------|--------|",
    ]
    for component in report.components:
        for result in component.results:
            latency = f"{result.latency_ms:.0f}ms" if result.latency_ms is not None else "-"
            detail = _cell(result.error or result.detail)
            critical = "" if result.critical else " (advisory)"
            lines.append(
                f"| {component.name} | {result.name}{critical} | "
                f"{CHECK_ICONS[result.status]} {result.status.value} | {latency} | {detail} |"
            )
    failed = report.failed_components()
    if failed:
        lines.extend(["", f"**Failed components:** {', '.join(failed)}"])
    return "\n".join(lines)


def _rollback_markdown(record):
    plan = record.plan
    icon = STATUS_ICONS.get(record.state, '')
    title = "Rollback Dry Run" if plan.dry_run else "Rollback Report"
    lines = [
        f"# {title}: {plan.environment}",
        "",
        f"- **Status:** {icon} {record.state.value.upper()}",
        f"- **Target revision:** {plan.target_revision}",
        f"- **Scope:** {plan.scope}",
        f"- **Requested by:** {plan.requested_by or 'unknown'}",
        f"- **Started:** {record.started_at.strftime('%Y-%m-%d %H:%M:%S UTC')}",
        f"- **Backup snapshot:** {record.snapshot_id or 'none'}"
        + ("" if record.snapshot_persisted or not record.snapshot_id else " (not persisted)"),
        "",
        "## Components",
        "",
        "| Component | Outcome | Detail |",
        "|-----------|---------|--------|",
    ]
    for outcome in record.outcomes:
        lines.append(f"| {outcome.component} | {outcome.status.value} | "
                     f"{_cell(outcome.detail)} |")
    if not record.outcomes:
        lines.append("| - | not attempted | |")

    if record.issues:
        lines.extend(["", "## Issues", ""])
        for issue in record.issues:
            where = f" [{issue['component']}]" if issue.get('component') else ""
            lines.append(f"- **{issue['type']}**{where}: {issue['detail']}")

    if record.final_report is not None:
        lines.extend(["", _health_markdown(record.final_report, heading='##')])
    return "\n".join(lines)


def render_markdown(outcome):
    if isinstance(outcome, HealthReport):
        return _health_markdown(outcome)
    return _rollback_markdown(outcome)


def render(outcome, fmt='markdown'):
    return render_json(outcome) if fmt == 'json' else render_markdown(outcome)


def summary_text(outcome):
    """One-paragraph plain-text summary for webhook and email sinks."""
    status = _status(outcome)
    icon = STATUS_ICONS.get(status, '')
    if isinstance(outcome, HealthReport):
        text = (f"{icon} Health check {outcome.environment}: {status.value.upper()} "
                f"({outcome.passed_checks}/{outcome.total_checks} checks passed)")
        failed = outcome.failed_components()
        if failed:
            text += f"\nFailed: {', '.join(failed)}"
        return text

    plan = outcome.plan
    prefix = "[DRY RUN] " if plan.dry_run else ""
    text = (f"{icon} {prefix}Rollback {plan.environment} to {plan.target_revision} "
            f"(scope {plan.scope}): {status.value.upper()}")
    backup = outcome.snapshot_id or 'none'
    if outcome.snapshot_id and not outcome.snapshot_persisted:
        backup += " (not persisted)"
    text += f"\nBackup: {backup}"
    text += f"\nExecuted by: {plan.requested_by or 'unknown'}"
    counts = {}
    for component in outcome.outcomes:
        counts[component.status.value] = counts.get(component.status.value, 0) + 1
    if counts:
        text += "\n" + ", ".join(f"{n} {s}" for s, n in sorted(counts.items()))
    if outcome.final_report is not None:
        text += f"\nPost-rollback health: {outcome.final_report.overall_status.value}"
    for issue in outcome.issues:
        text += f"\n- {issue['type']}: {issue['detail']}"
    return text


def report_basename(outcome, timestamp=None):
    kind = 'health-report' if isinstance(outcome, HealthReport) else 'rollback-report'
    timestamp = timestamp or utcnow()
    return f"{kind}-{_environment(outcome)}-{timestamp.strftime('%Y%m%d-%H%M%S-%f')}"


def write_report(outcome, report_dir):
    """
    Write the outcome as <kind>-<env>-<timestamp>.json and .md under report_dir.

    The .json file is created exclusively; if the name is already taken a
    numeric suffix is added, so concurrent writers never overwrite each other.

    Returns:
        (json_path, markdown_path)
    """
    report_dir = Path(report_dir)
    report_dir.mkdir(parents=True, exist_ok=True)
    base = report_basename(outcome)
    suffix = 0
    while True:
        stem = f"{base}-{suffix}" if suffix else base
        json_path = report_dir / f"{stem}.json"
        try:
            with open(json_path, 'x', encoding='utf-8') as f:
                f.write(render_json(outcome) + "\n")
            break
        except FileExistsError:
            suffix += 1
    markdown_path = report_dir / f"{stem}.md"
    markdown_path.write_text(render_markdown(outcome) + "\n", encoding='utf-8')
    return json_path, markdown_path
