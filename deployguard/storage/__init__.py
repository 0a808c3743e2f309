"""
Object storage for backup snapshots and rollback records.

Backends share one key layout (snapshots/<env>/..., records/<env>/...) so
history written locally and in S3 reads back the same way.
"""

from ..errors import ConfigurationError
from .base import StorageBackend
from .local import LocalStorage
from .s3 import S3Storage


def get_storage_backend(config):
    """Factory function to get appropriate storage backend."""
    deployment = config.get('deployment', {})
    storage_mode = deployment.get('storage_backend', 'local')

    if storage_mode == 'local':
        return LocalStorage(deployment)
    elif storage_mode == 's3':
        return S3Storage(config.get('s3', {}))
    else:
        raise ConfigurationError(f"Unknown storage backend: {storage_mode}")


__all__ = ['StorageBackend', 'LocalStorage', 'S3Storage', 'get_storage_backend']
