#!/usr/bin/env python3
"""
Local filesystem storage backend.
"""

import os
from pathlib import Path

from ..errors import ObjectExistsError, StorageError
from .base import StorageBackend


class LocalStorage(StorageBackend):
    """Stores objects as files under the deployment state directory."""

    def __init__(self, config):
        self.root = Path(config.get('state_dir', './state'))

    def _path(self, storage_key):
        return self.root / storage_key

    def create(self, storage_key, content):
        path = self._path(storage_key)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            raise ObjectExistsError(f"Object already exists: {path}")
        except OSError as e:
            raise StorageError(f"Cannot create {path}: {e}")
        with os.fdopen(fd, 'w') as f:
            f.write(content)
        return str(path)

    def write(self, storage_key, content):
        path = self._path(storage_key)
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_name(f".{path.name}.tmp")
        try:
            with open(temp_path, 'w') as f:
                f.write(content)
            os.replace(temp_path, path)
        except OSError as e:
            raise StorageError(f"Cannot write {path}: {e}")
        return str(path)

    def read(self, storage_key):
        path = self._path(storage_key)
        try:
            with open(path, 'r') as f:
                return f.read()
        except FileNotFoundError:
            raise StorageError(f"Object not found: {path}")

    def exists(self, storage_key):
        return self._path(storage_key).exists()

    def list_keys(self, prefix):
        base = self._path(prefix)
        if not base.exists():
            return []
        return sorted(
            str(path.relative_to(self.root)).replace(os.sep, '/')
            for path in base.rglob('*')
            if path.is_file() and not path.name.startswith('.')
        )

    def describe(self, storage_key):
        return str(self._path(storage_key))
