"""
Artifact storage initialization.
"""
from typing import Any, Dict, Optional

from spokenkb.utils.config import get_storage_config
from .artifact_keys import ArtifactKeyBuilder, compute_checksum
from .local_storage import InMemoryArtifactStore, LocalArtifactStore
from .s3_utils import S3ArtifactStore, S3StorageConfig


def create_artifact_store(config: Optional[Dict[str, Any]] = None):
    """Create the artifact store selected by storage.backend ('s3', 'local' or 'memory')"""
    storage_config = get_storage_config(config)
    backend = storage_config.get('backend', 'local')

    if backend == 's3':
        return S3ArtifactStore(S3StorageConfig.from_dict(storage_config['s3']))
    if backend == 'local':
        return LocalArtifactStore(storage_config['local']['base_path'])
    if backend == 'memory':
        return InMemoryArtifactStore()
    raise ValueError(f"Unknown storage backend: {backend}")


__all__ = ['create_artifact_store', 'ArtifactKeyBuilder', 'compute_checksum',
           'S3ArtifactStore', 'S3StorageConfig', 'LocalArtifactStore',
           'InMemoryArtifactStore']
