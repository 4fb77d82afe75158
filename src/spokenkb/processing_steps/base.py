"""
Shared plumbing for pipeline processing steps.

A step does its blocking I/O and CPU work with no database transaction open
and returns a StageOutput describing what to persist. The orchestrator applies
the output and the state advance in one transaction, so a half-applied stage
is never visible.
"""
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from spokenkb.database.models import Artifact, ArtifactKind, Video
from spokenkb.interfaces import ArtifactStore, AudioSource, Embedder, Transcriber
from spokenkb.prosody.extractor import ProsodyFeatureExtractor
from spokenkb.segmentation.segmenter import TranscriptSegmenter
from spokenkb.storage.artifact_keys import ArtifactKeyBuilder, compute_checksum
from spokenkb.utils.error_codes import ArtifactMissing, ErrorCode, IntegrityViolation, TransientIO
from spokenkb.utils.timeouts import call_with_timeout


@dataclass
class StageContext:
    """Everything a step needs for one video. `video` is a detached snapshot."""
    video: Video
    session_factory: sessionmaker
    store: ArtifactStore
    keys: ArtifactKeyBuilder
    audio_source: Optional[AudioSource]
    transcriber: Optional[Transcriber]
    embedder: Optional[Embedder]
    segmenter: TranscriptSegmenter
    extractor: ProsodyFeatureExtractor
    staging_dir: Path
    call_timeout: Optional[float]
    worker_id: str
    now: datetime
    logger: Any

    def call(self, func: Callable, *args, description: str = 'call'):
        """Run a blocking collaborator call under the configured timeout."""
        return call_with_timeout(func, self.call_timeout, *args,
                                 description=f"{description} for {self.video.video_id}")

    def artifact_key(self, kind: ArtifactKind) -> str:
        return self.keys.key_for(self.video, kind)

    def staging_path(self) -> Path:
        return self.staging_dir / self.video.video_id / 'audio.bin'

    def load_artifact(self, kind: ArtifactKind) -> Optional[Artifact]:
        """The video's verified artifact of this kind, if one was committed."""
        with self.session_factory() as session:
            return session.execute(
                select(Artifact).where(
                    Artifact.video_id == self.video.id,
                    Artifact.kind == ArtifactKind(kind).value,
                    Artifact.verified.is_(True),
                )
            ).scalar_one_or_none()


@dataclass
class StageOutput:
    """What a step wants persisted together with its state advance."""
    result: Dict[str, Any]
    rows: List[Any] = field(default_factory=list)
    video_updates: Dict[str, Any] = field(default_factory=dict)
    stale_artifact_ids: List[int] = field(default_factory=list)
    replace_derived: bool = False
    precommit_check: Optional[Callable] = None
    cleanup_paths: List[Path] = field(default_factory=list)


def read_verified(ctx: StageContext, artifact: Artifact, rewind_to: Optional[str] = None) -> bytes:
    """Fetch an artifact and re-check its sha256 before anyone reads it.

    Raises IntegrityViolation on mismatch or absence. `rewind_to` tells the
    orchestrator which resting state the retry should return to.
    """
    details = {'rewind_to': rewind_to} if rewind_to else {}
    try:
        data = ctx.call(ctx.store.get, artifact.storage_key, description=f"get {artifact.kind}")
    except ArtifactMissing as e:
        raise ArtifactMissing(str(e), details=details)
    actual = compute_checksum(data)
    if actual != artifact.checksum:
        raise IntegrityViolation(
            f"{artifact.kind} checksum mismatch for {artifact.storage_key}: "
            f"recorded {artifact.checksum[:12]}, found {actual[:12]}",
            error_code=ErrorCode.CHECKSUM_MISMATCH,
            details=details,
        )
    return data


def is_still_valid(ctx: StageContext, artifact: Optional[Artifact]) -> bool:
    """True when a committed artifact is still in the store with matching bytes."""
    if artifact is None:
        return False
    try:
        read_verified(ctx, artifact)
        return True
    except IntegrityViolation:
        ctx.logger.warning(f"Stored {artifact.kind} for {ctx.video.video_id} failed verification, "
                           f"it will be re-created")
        return False


def store_verified(ctx: StageContext, kind: ArtifactKind, data: bytes) -> Artifact:
    """Put a blob, read it back, and return an unsaved verified Artifact row.

    Raises IntegrityViolation when the store reports or returns different bytes.
    """
    key = ctx.artifact_key(kind)
    expected = compute_checksum(data)
    reported = ctx.call(ctx.store.put, key, data, description=f"put {kind.value}")
    if reported != expected:
        raise IntegrityViolation(
            f"Store reported checksum {str(reported)[:12]} for {key}, expected {expected[:12]}",
            error_code=ErrorCode.CHECKSUM_MISMATCH,
        )
    stored = ctx.call(ctx.store.get, key, description=f"verify {kind.value}")
    actual = compute_checksum(stored)
    if actual != expected:
        raise IntegrityViolation(
            f"Stored {kind.value} at {key} reads back as {actual[:12]}, expected {expected[:12]}",
            error_code=ErrorCode.CHECKSUM_MISMATCH,
        )
    return Artifact(
        video_id=ctx.video.id,
        kind=kind.value,
        checksum=expected,
        storage_key=key,
        byte_size=len(data),
        verified=True,
    )


def write_atomic(path: Path, data: bytes) -> None:
    """Write a local file via temp file + rename. OSError becomes TransientIO."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix='.staging-')
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.remove(tmp_name)
            raise
    except OSError as e:
        raise TransientIO(f"Could not write {path}: {e}", error_code=ErrorCode.STORAGE_ERROR)
