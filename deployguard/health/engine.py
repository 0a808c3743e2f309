#!/usr/bin/env python3
"""
Health probe engine.

Runs every in-scope component's probes concurrently on a bounded pool,
each with its own timeout and exponential-backoff retries, and folds the
results into a HealthReport. The engine keeps no state between calls and
never raises for probe-level problems: the caller always gets a complete
report, even when the overall deadline cuts probes short.
"""

import asyncio
import dataclasses
import time

import httpx
import structlog

from ..config.registry import HealthSettings, select_components
from ..errors import CriticalProbeFailure, TransientProbeError
from .models import HealthReport, ProbeResult, ProbeStatus, utcnow
from .probes import ProbeContext, build_probe

logger = structlog.get_logger(__name__)


class HealthProbeEngine:

    def __init__(self, executor, settings=None, transport=None, sleep=asyncio.sleep, clock=time.perf_counter):
        self.executor = executor
        self.settings = settings or HealthSettings()
        self.transport = transport
        self._sleep = sleep
        self._clock = clock

    def _effective_settings(self, probe_timeout, interval):
        overrides = {}
        if probe_timeout is not None:
            overrides['probe_timeout'] = probe_timeout
        if interval is not None:
            overrides['retry_interval'] = interval
        return dataclasses.replace(self.settings, **overrides) if overrides else self.settings

    async def verify(self, environment, scope=None, timeout=None, probe_timeout=None,
                     interval=None, cancel_event=None):
        """
        Verify the health of an environment.

        Args:
            environment: Environment from the registry
            scope: all | backend | frontend | component name (default all)
            timeout: overall deadline in seconds; pending probes become Fail
            probe_timeout: per-attempt timeout override
            interval: base retry back-off override
            cancel_event: asyncio.Event; once set no new probe attempts start

        Returns:
            HealthReport

        Raises:
            ConfigurationError: unknown component or empty scope
        """
        scope = scope or 'all'
        components = select_components(environment, scope)
        settings = self._effective_settings(probe_timeout, interval)
        overall_timeout = timeout or settings.overall_timeout

        jobs = [
            (component, build_probe(descriptor, settings))
            for component in components
            for descriptor in component.probes
        ]
        concurrency = max(1, min(len(components), settings.max_concurrency))
        semaphore = asyncio.Semaphore(concurrency)
        generated_at = utcnow()
        started = self._clock()

        logger.info("health.verify.start", environment=environment.name, scope=scope,
                    probes=len(jobs), concurrency=concurrency, timeout=overall_timeout)

        results = []
        async with httpx.AsyncClient(timeout=settings.probe_timeout, verify=settings.verify_tls,
                                     transport=self.transport, follow_redirects=True) as http:
            ctx = ProbeContext(environment=environment, executor=self.executor, http=http,
                               settings=settings, clock=self._clock)
            tasks = [
                asyncio.create_task(self._run_probe(component, probe, ctx, settings, semaphore, cancel_event))
                for component, probe in jobs
            ]
            done = set()
            if tasks:
                done, pending = await asyncio.wait(tasks, timeout=overall_timeout)
                for task in pending:
                    task.cancel()
                if pending:
                    await asyncio.gather(*pending, return_exceptions=True)
                    logger.warning("health.verify.deadline", environment=environment.name,
                                   pending=len(pending), timeout=overall_timeout)

            for task, (component, probe) in zip(tasks, jobs):
                if task in done and not task.cancelled():
                    results.append(task.result())
                else:
                    results.append(self._result(
                        component, probe, ProbeStatus.FAIL, probe.critical,
                        error=f"timeout: overall deadline of {overall_timeout}s exceeded", attempts=0,
                    ))

        report = HealthReport.build(
            environment.name, scope, components, results,
            generated_at=generated_at, duration_ms=(self._clock() - started) * 1000,
        )
        logger.info("health.verify.done", environment=environment.name,
                    status=report.overall_status.value, passed=report.passed_checks,
                    failed=report.failed_checks, degraded=report.degraded_checks)
        return report

    def _result(self, component, probe, status, critical, latency_ms=None, error=None, detail="", attempts=1):
        return ProbeResult(
            component=component.name,
            check=probe.check,
            name=probe.name,
            status=status,
            critical=critical,
            latency_ms=latency_ms,
            error=error,
            detail=detail,
            attempts=attempts,
        )

    async def _run_probe(self, component, probe, ctx, settings, semaphore, cancel_event):
        async with semaphore:
            delay = settings.retry_interval
            attempts = 0
            last_error = None
            last_latency = None
            log = logger.bind(environment=ctx.environment.name, component=component.name, check=probe.name)

            while True:
                if cancel_event is not None and cancel_event.is_set():
                    error = "cancelled before probe was issued" if attempts == 0 else f"cancelled: {last_error}"
                    return self._result(component, probe, ProbeStatus.FAIL, probe.critical,
                                        latency_ms=last_latency, error=error, attempts=attempts)

                attempts += 1
                try:
                    outcome = await asyncio.wait_for(probe.run(ctx), timeout=settings.probe_timeout)
                except CriticalProbeFailure as e:
                    critical = probe.critical if e.critical is None else e.critical
                    log.warning("probe.critical_failure", error=e.detail, attempt=attempts)
                    return self._result(component, probe, ProbeStatus.FAIL, critical,
                                        latency_ms=e.latency_ms, error=e.detail, attempts=attempts)
                except TransientProbeError as e:
                    last_error, last_latency = e.detail, e.latency_ms
                except asyncio.TimeoutError:
                    last_error, last_latency = f"probe timeout after {settings.probe_timeout}s", None
                except Exception as e:
                    log.exception("probe.unexpected_error", attempt=attempts)
                    last_error, last_latency = f"probe error: {e}", None
                else:
                    log.debug("probe.done", status=outcome.status.value, attempt=attempts)
                    return self._result(component, probe, outcome.status, probe.critical,
                                        latency_ms=outcome.latency_ms, detail=outcome.detail,
                                        attempts=attempts)

                if attempts >= settings.retry_attempts:
                    log.warning("probe.failed", error=last_error, attempts=attempts)
                    return self._result(component, probe, ProbeStatus.FAIL, probe.critical,
                                        latency_ms=last_latency, error=last_error, attempts=attempts)

                log.info("probe.retry", error=last_error, attempt=attempts, delay=delay)
                await self._sleep(delay)
                delay *= settings.backoff_factor
