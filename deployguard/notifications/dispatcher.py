#!/usr/bin/env python3
"""
Best-effort fan-out of outcomes to notification sinks.
"""

import asyncio

import structlog

from ..errors import NotificationFailure

logger = structlog.get_logger(__name__)


class NotificationDispatcher:

    def __init__(self, sinks=None):
        self.sinks = list(sinks or [])

    async def _deliver(self, sink, outcome):
        try:
            destination = await sink.send(outcome)
        except Exception as e:
            raise NotificationFailure(sink.name, str(e)) from e
        logger.info("notify.sent", sink=sink.name, destination=destination)
        return destination

    async def notify(self, outcome):
        """
        Send an outcome to every sink concurrently.

        Never raises: each failure is logged and returned as a
        NotificationFailure so callers can show it.
        """
        if not self.sinks:
            return []
        results = await asyncio.gather(
            *(self._deliver(sink, outcome) for sink in self.sinks),
            return_exceptions=True,
        )
        failures = []
        for result in results:
            if isinstance(result, NotificationFailure):
                logger.warning("notify.failed", sink=result.sink, error=result.detail)
                failures.append(result)
            elif isinstance(result, BaseException):
                raise result
        return failures
