"""
Health verification package: data model, probes and the probe engine.
"""

from .engine import HealthProbeEngine
from .models import ComponentHealth, HealthReport, HealthStatus, ProbeKind, ProbeResult, ProbeStatus
from .probes import build_probe

__all__ = [
    'HealthProbeEngine', 'HealthReport', 'HealthStatus', 'ComponentHealth',
    'ProbeKind', 'ProbeResult', 'ProbeStatus', 'build_probe',
]
