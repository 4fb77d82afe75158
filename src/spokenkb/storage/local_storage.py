"""
Filesystem and in-memory artifact stores for single-node deployments and tests.
"""
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Union

from spokenkb.utils.error_codes import ArtifactMissing, ErrorCode, TransientIO
from spokenkb.utils.logger import setup_worker_logger
from .artifact_keys import compute_checksum

logger = setup_worker_logger('local_storage')


class LocalArtifactStore:
    """ArtifactStore on a local directory. Writes land via temp file + rename."""

    def __init__(self, base_path: Union[str, Path]):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if self.base_path.resolve() not in path.parents:
            raise ValueError(f"Key escapes the storage root: {key}")
        return path

    def put(self, key: str, data: bytes) -> str:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix='.upload-')
            try:
                with os.fdopen(fd, 'wb') as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.remove(tmp_name)
                raise
        except OSError as e:
            raise TransientIO(f"Local write failed for {key}: {e}", error_code=ErrorCode.STORAGE_ERROR)
        logger.debug(f"Stored {key} ({len(data)} bytes)")
        return compute_checksum(data)

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise ArtifactMissing(f"Artifact {key} not found under {self.base_path}")
        except OSError as e:
            raise TransientIO(f"Local read failed for {key}: {e}", error_code=ErrorCode.STORAGE_ERROR)

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()


class InMemoryArtifactStore:
    """ArtifactStore kept in a dict; `blobs` is exposed for inspection."""

    def __init__(self):
        self.blobs: Dict[str, bytes] = {}
        self.put_count = 0
        self._lock = threading.Lock()

    def put(self, key: str, data: bytes) -> str:
        with self._lock:
            self.blobs[key] = bytes(data)
            self.put_count += 1
        return compute_checksum(data)

    def get(self, key: str) -> bytes:
        with self._lock:
            if key not in self.blobs:
                raise ArtifactMissing(f"Artifact {key} not found")
            return self.blobs[key]

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self.blobs
