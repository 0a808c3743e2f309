#!/usr/bin/env python3
"""
Per-environment advisory lock: at most one active rollback per environment.

The lock is a file created with O_EXCL holding the owner's pid, host and
start time. A lock left behind by a dead process on this host is reclaimed.
"""

import json
import os
import socket
from pathlib import Path

import structlog

from ..errors import RollbackInProgressError
from ..health.models import utcnow

logger = structlog.get_logger(__name__)


def _pid_alive(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class EnvironmentLock:

    def __init__(self, lock_dir, environment):
        self.path = Path(lock_dir) / f"{environment}.lock"
        self.environment = environment
        self.acquired = False

    def _holder(self):
        try:
            return json.loads(self.path.read_text())
        except (OSError, ValueError):
            return {}

    def _is_stale(self, holder):
        if holder.get('host') != socket.gethostname():
            return False
        pid = holder.get('pid')
        return isinstance(pid, int) and not _pid_alive(pid)

    def acquire(self):
        """
        Raises:
            RollbackInProgressError: another live process holds the lock
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        owner = {'pid': os.getpid(), 'host': socket.gethostname(), 'started_at': utcnow().isoformat()}

        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                holder = self._holder()
                if not self._is_stale(holder):
                    raise RollbackInProgressError(self.environment, holder)
                logger.warning("lock.stale_reclaimed", environment=self.environment, holder=holder)
                self.path.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, 'w') as f:
                json.dump(owner, f)
            self.acquired = True
            logger.debug("lock.acquired", environment=self.environment, path=str(self.path))
            return self

        raise RollbackInProgressError(self.environment, self._holder())

    def release(self):
        if self.acquired:
            self.path.unlink(missing_ok=True)
            self.acquired = False
            logger.debug("lock.released", environment=self.environment)

    def __enter__(self):
        return self.acquire()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
