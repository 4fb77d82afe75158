"""
Upload step: move staged audio into the artifact store and record it.

audio_downloaded → uploading → uploaded

The staged file is re-hashed against the checksum recorded at download time,
stored, read back and hashed again. Only then is the audio Artifact row
written. A bad staged file rewinds the retry to `discovered` so the audio is
fetched again.
"""
from spokenkb.database.models import ArtifactKind
from spokenkb.processing.state.linear_state_model import VideoState
from spokenkb.storage.artifact_keys import compute_checksum
from spokenkb.utils.error_codes import (
    ArtifactMissing, ErrorCode, IntegrityViolation,
    create_skipped_result, create_success_result,
)
from .base import StageContext, StageOutput, is_still_valid, store_verified

REWIND = {'rewind_to': VideoState.DISCOVERED.value}


def run_upload(ctx: StageContext) -> StageOutput:
    video = ctx.video
    existing = ctx.load_artifact(ArtifactKind.AUDIO)
    if is_still_valid(ctx, existing):
        return StageOutput(
            result=create_skipped_result('verified audio artifact exists',
                                         data={'checksum': existing.checksum}),
            video_updates={'uploaded_at': ctx.now},
        )

    path = ctx.staging_path()
    if not path.is_file():
        raise ArtifactMissing(f"Staged audio {path} is missing", details=dict(REWIND))
    data = path.read_bytes()

    if not video.staged_audio_checksum or compute_checksum(data) != video.staged_audio_checksum:
        raise IntegrityViolation(
            f"Staged audio for {video.video_id} no longer matches its download checksum",
            error_code=ErrorCode.CHECKSUM_MISMATCH,
            details=dict(REWIND),
        )

    artifact = store_verified(ctx, ArtifactKind.AUDIO, data)
    ctx.logger.info(f"Uploaded audio for {video.video_id} to {artifact.storage_key}")

    return StageOutput(
        result=create_success_result({'storage_key': artifact.storage_key,
                                      'checksum': artifact.checksum}),
        rows=[artifact],
        stale_artifact_ids=[existing.id] if existing is not None else [],
        video_updates={'uploaded_at': ctx.now, 'staged_audio_checksum': None},
        cleanup_paths=[path],
    )
