#!/usr/bin/env python3
"""
Base storage backend interface for snapshots and rollback records.
"""


class StorageBackend:
    """Base interface for storage backends. Keys are '/'-separated paths."""

    def create(self, storage_key, content):
        """Write content only if the key does not exist yet (atomic create)."""
        raise NotImplementedError

    def write(self, storage_key, content):
        """Write or replace content (derived files such as indexes)."""
        raise NotImplementedError

    def read(self, storage_key):
        """Return stored text; raises StorageError if missing."""
        raise NotImplementedError

    def exists(self, storage_key):
        raise NotImplementedError

    def list_keys(self, prefix):
        """Return all keys under prefix, sorted."""
        raise NotImplementedError

    def describe(self, storage_key):
        """Human-readable location of a key (path or s3:// URL)."""
        raise NotImplementedError
