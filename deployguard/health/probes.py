#!/usr/bin/env python3
"""
Health probes: readiness, HTTP endpoint, dependency connectivity and latency.

A probe either returns a ProbeOutcome or raises TransientProbeError (the
engine retries) or CriticalProbeFailure (recorded immediately).
"""

import asyncio
import json
import math
from dataclasses import dataclass

import httpx

from ..errors import ConfigurationError, CriticalProbeFailure, ExecutorError, TransientProbeError
from .models import ProbeKind, ProbeStatus


@dataclass
class ProbeContext:
    """Per-verification collaborators shared by all probes."""

    environment: object
    executor: object
    http: httpx.AsyncClient
    settings: object
    clock: object


@dataclass(frozen=True)
class ProbeOutcome:
    status: ProbeStatus
    detail: str = ""
    latency_ms: float = None


def percentile(samples, pct):
    """Nearest-rank percentile."""
    ordered = sorted(samples)
    rank = max(1, math.ceil(pct / 100.0 * len(ordered)))
    return ordered[rank - 1]


class Probe:
    check = None
    default_critical = True

    def __init__(self, descriptor, settings):
        self.descriptor = descriptor
        self.settings = settings
        self.critical = descriptor.get('critical', self.default_critical)
        self.name = descriptor.get('name') or self.default_name()

    def default_name(self):
        return self.check.value

    async def run(self, ctx):
        raise NotImplementedError("Subclasses must implement run()")

    async def _run_command(self, ctx, command):
        try:
            return await asyncio.to_thread(ctx.executor.run, command, self.settings.probe_timeout)
        except ExecutorError as e:
            raise TransientProbeError(str(e))


class ReadinessProbe(Probe):
    """Deployment is ready when readyReplicas == spec.replicas > 0."""

    check = ProbeKind.READINESS

    def default_name(self):
        return f"readiness {self.descriptor['deployment']}"

    async def run(self, ctx):
        deployment = self.descriptor['deployment']
        command = ['kubectl', 'get', 'deployment', deployment,
                   '-n', ctx.environment.namespace, '-o', 'json']
        result = await self._run_command(ctx, command)

        if not result.ok:
            if 'NotFound' in result.stderr or 'not found' in result.stderr:
                raise CriticalProbeFailure(f"Deployment {deployment} not found in {ctx.environment.namespace}")
            raise TransientProbeError(f"kubectl failed (exit {result.returncode}): {result.stderr.strip()}")

        try:
            manifest = json.loads(result.stdout)
        except ValueError:
            raise TransientProbeError("kubectl returned invalid JSON")

        desired = manifest.get('spec', {}).get('replicas', 1)
        ready = manifest.get('status', {}).get('readyReplicas') or 0
        detail = f"{ready}/{desired} replicas ready"
        if desired > 0 and ready == desired:
            return ProbeOutcome(ProbeStatus.PASS, detail)
        raise TransientProbeError(detail)


class EndpointProbe(Probe):
    """HTTP request that must return an expected status (default any 2xx)."""

    check = ProbeKind.ENDPOINT

    def default_name(self):
        return f"endpoint {self.descriptor['url']}"

    def _status_ok(self, status_code):
        expected = self.descriptor.get('expect_status')
        if expected:
            return status_code in expected
        return 200 <= status_code < 300

    async def run(self, ctx):
        method = self.descriptor.get('method', 'GET')
        url = self.descriptor['url']
        started = ctx.clock()
        try:
            response = await ctx.http.request(method, url, json=self.descriptor.get('body'))
        except httpx.TimeoutException:
            raise TransientProbeError(f"HTTP timeout after {self.settings.probe_timeout}s",
                                      latency_ms=(ctx.clock() - started) * 1000)
        except httpx.HTTPError as e:
            raise TransientProbeError(f"HTTP connection error: {e}",
                                      latency_ms=(ctx.clock() - started) * 1000)
        latency_ms = (ctx.clock() - started) * 1000

        if not self._status_ok(response.status_code):
            raise TransientProbeError(f"HTTP {response.status_code}", latency_ms=latency_ms)

        key = self.descriptor.get('expect_json_key')
        if key:
            try:
                payload = response.json()
            except ValueError:
                raise TransientProbeError("Response is not valid JSON", latency_ms=latency_ms)
            if not isinstance(payload, dict) or not payload.get(key):
                raise TransientProbeError(f"Response missing '{key}'", latency_ms=latency_ms)

        return ProbeOutcome(ProbeStatus.PASS, f"HTTP {response.status_code}", latency_ms)


class DependencyProbe(Probe):
    """TCP connectivity to host:port, or a command whose output must contain `expect`."""

    check = ProbeKind.DEPENDENCY

    def default_name(self):
        if 'command' in self.descriptor:
            return f"dependency {self.descriptor['command'][0]}"
        return f"dependency {self.descriptor['host']}:{self.descriptor['port']}"

    async def run(self, ctx):
        if 'command' in self.descriptor:
            return await self._check_command(ctx)
        return await self._check_tcp(ctx)

    async def _check_tcp(self, ctx):
        host, port = self.descriptor['host'], self.descriptor['port']
        started = ctx.clock()
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=self.settings.probe_timeout,
            )
        except asyncio.TimeoutError:
            raise TransientProbeError(f"Connection timeout after {self.settings.probe_timeout}s")
        except ConnectionRefusedError:
            raise TransientProbeError("Connection refused")
        except OSError as e:
            raise TransientProbeError(f"Connection error: {e}")
        writer.close()
        await writer.wait_closed()
        return ProbeOutcome(ProbeStatus.PASS, "TCP connection successful", (ctx.clock() - started) * 1000)

    async def _check_command(self, ctx):
        started = ctx.clock()
        result = await self._run_command(ctx, self.descriptor['command'])
        latency_ms = (ctx.clock() - started) * 1000
        if not result.ok:
            raise TransientProbeError(f"Command failed (exit {result.returncode}): {result.stderr.strip()}",
                                      latency_ms=latency_ms)
        expect = self.descriptor.get('expect')
        if expect and expect not in result.stdout:
            raise TransientProbeError(f"Expected '{expect}' in output", latency_ms=latency_ms)
        return ProbeOutcome(ProbeStatus.PASS, "Command succeeded", latency_ms)


class LatencyProbe(Probe):
    """
    Timed GETs; p95 above the SLA escalates to a critical failure, above the
    warning threshold the check is Degraded. Advisory by default.
    """

    check = ProbeKind.LATENCY
    default_critical = False

    def default_name(self):
        return f"latency {self.descriptor['url']}"

    async def run(self, ctx):
        url = self.descriptor['url']
        samples = self.descriptor.get('samples', self.settings.latency_samples)
        warn_ms = self.descriptor.get('warn_ms', self.settings.latency_warn_ms)
        sla_ms = self.descriptor.get('sla_ms', self.settings.latency_sla_ms)

        timings = []
        for _ in range(samples):
            started = ctx.clock()
            try:
                response = await ctx.http.get(url)
            except httpx.HTTPError as e:
                raise TransientProbeError(f"HTTP error during latency sampling: {e}")
            elapsed_ms = (ctx.clock() - started) * 1000
            if not 200 <= response.status_code < 300:
                raise TransientProbeError(f"HTTP {response.status_code}", latency_ms=elapsed_ms)
            timings.append(elapsed_ms)

        p95 = percentile(timings, 95)
        if p95 > sla_ms:
            raise CriticalProbeFailure(f"p95 {p95:.0f}ms exceeds SLA {sla_ms:.0f}ms",
                                       latency_ms=p95, critical=True)
        if p95 > warn_ms:
            return ProbeOutcome(ProbeStatus.DEGRADED, f"p95 {p95:.0f}ms above {warn_ms:.0f}ms", p95)
        return ProbeOutcome(ProbeStatus.PASS, f"p95 {p95:.0f}ms", p95)


PROBE_TYPES = {
    ProbeKind.READINESS.value: ReadinessProbe,
    ProbeKind.ENDPOINT.value: EndpointProbe,
    ProbeKind.DEPENDENCY.value: DependencyProbe,
    ProbeKind.LATENCY.value: LatencyProbe,
}


def build_probe(descriptor, settings):
    """Factory: create the probe declared by a component's descriptor."""
    probe_type = PROBE_TYPES.get(descriptor.get('check'))
    if probe_type is None:
        raise ConfigurationError(f"Unknown probe check: {descriptor.get('check')}")
    return probe_type(descriptor, settings)
