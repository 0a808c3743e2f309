#!/usr/bin/env python3
"""
Value types for health verification: probe results and the aggregated report.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class ProbeKind(str, Enum):
    READINESS = "readiness"
    ENDPOINT = "endpoint"
    DEPENDENCY = "dependency"
    LATENCY = "latency"


class ProbeStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    DEGRADED = "degraded"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


def utcnow():
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one probe invocation (all retries included)."""

    component: str
    check: ProbeKind
    name: str
    status: ProbeStatus
    critical: bool
    latency_ms: float = None
    error: str = None
    detail: str = ""
    attempts: int = 1
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def is_critical_failure(self):
        return self.critical and self.status == ProbeStatus.FAIL

    def to_dict(self):
        return {
            'component': self.component,
            'check': self.check.value,
            'name': self.name,
            'status': self.status.value,
            'critical': self.critical,
            'latency_ms': round(self.latency_ms, 1) if self.latency_ms is not None else None,
            'error': self.error,
            'detail': self.detail,
            'attempts': self.attempts,
            'timestamp': self.timestamp.isoformat(),
        }


def fold_component_status(results):
    """Fail on any critical failure, Degraded on any other non-pass, else Pass."""
    if any(r.is_critical_failure for r in results):
        return ProbeStatus.FAIL
    if any(r.status != ProbeStatus.PASS for r in results):
        return ProbeStatus.DEGRADED
    return ProbeStatus.PASS


@dataclass(frozen=True)
class ComponentHealth:
    name: str
    kind: str
    status: ProbeStatus
    results: tuple = ()

    def to_dict(self):
        return {
            'name': self.name,
            'kind': self.kind,
            'status': self.status.value,
            'checks': [r.to_dict() for r in self.results],
        }


@dataclass(frozen=True)
class HealthReport:
    """
    Aggregate of all probe results for one verification run.

    overall_status is Unhealthy iff at least one critical probe failed;
    non-critical failures only degrade it.
    """

    environment: str
    scope: str
    overall_status: HealthStatus
    components: tuple
    passed_checks: int
    failed_checks: int
    degraded_checks: int
    generated_at: datetime
    duration_ms: float = None

    @classmethod
    def build(cls, environment, scope, components, results, generated_at=None, duration_ms=None):
        """
        Fold probe results into a report.

        Components keep the given order and each component's results keep
        probe order, so the report does not depend on completion order.
        """
        by_component = {component.name: [] for component in components}
        for result in results:
            by_component.setdefault(result.component, []).append(result)

        component_health = []
        for component in components:
            component_results = tuple(by_component[component.name])
            component_health.append(ComponentHealth(
                name=component.name,
                kind=getattr(component.kind, 'value', component.kind),
                status=fold_component_status(component_results),
                results=component_results,
            ))

        statuses = [c.status for c in component_health]
        if ProbeStatus.FAIL in statuses:
            overall = HealthStatus.UNHEALTHY
        elif ProbeStatus.DEGRADED in statuses:
            overall = HealthStatus.DEGRADED
        else:
            overall = HealthStatus.HEALTHY

        flat = [r for c in component_health for r in c.results]
        return cls(
            environment=environment,
            scope=scope,
            overall_status=overall,
            components=tuple(component_health),
            passed_checks=sum(1 for r in flat if r.status == ProbeStatus.PASS),
            failed_checks=sum(1 for r in flat if r.status == ProbeStatus.FAIL),
            degraded_checks=sum(1 for r in flat if r.status == ProbeStatus.DEGRADED),
            generated_at=generated_at or utcnow(),
            duration_ms=duration_ms,
        )

    @property
    def results(self):
        return tuple(r for c in self.components for r in c.results)

    @property
    def total_checks(self):
        return len(self.results)

    @property
    def is_healthy(self):
        return self.overall_status == HealthStatus.HEALTHY

    def component(self, name):
        for component in self.components:
            if component.name == name:
                return component
        return None

    def failed_components(self):
        return [c.name for c in self.components if c.status == ProbeStatus.FAIL]

    def to_dict(self):
        return {
            'environment': self.environment,
            'scope': self.scope,
            'overallStatus': self.overall_status.value,
            'generatedAt': self.generated_at.isoformat(),
            'durationMs': round(self.duration_ms, 1) if self.duration_ms is not None else None,
            'summary': {
                'totalChecks': self.total_checks,
                'passedChecks': self.passed_checks,
                'failedChecks': self.failed_checks,
                'degradedChecks': self.degraded_checks,
            },
            'components': [c.to_dict() for c in self.components],
        }
