"""
Download step: fetch source audio into the local staging area.

discovered → audio_downloading → audio_downloaded

When the video already has a verified audio artifact that still checks out
in the store (manual reset, forced reprocess), nothing is fetched again.
"""
from spokenkb.database.models import ArtifactKind
from spokenkb.storage.artifact_keys import compute_checksum
from spokenkb.utils.error_codes import (
    ErrorCode, IntegrityViolation, UnsupportedInput,
    create_skipped_result, create_success_result,
)
from .base import StageContext, StageOutput, is_still_valid, write_atomic


def run_download(ctx: StageContext) -> StageOutput:
    video = ctx.video

    existing = ctx.load_artifact(ArtifactKind.AUDIO)
    if is_still_valid(ctx, existing):
        ctx.logger.info(f"Audio for {video.video_id} already stored and verified, skipping fetch")
        return StageOutput(
            result=create_skipped_result('verified audio artifact exists',
                                         data={'checksum': existing.checksum}),
            video_updates={'staged_audio_checksum': existing.checksum, 'downloaded_at': ctx.now},
        )

    if ctx.audio_source is None:
        raise UnsupportedInput("No audio source configured", error_code=ErrorCode.UNSUPPORTED_MEDIA)

    data = ctx.call(ctx.audio_source.fetch, video, description='audio fetch')
    if not data:
        raise UnsupportedInput(f"Audio source returned no data for {video.video_id}",
                               error_code=ErrorCode.CORRUPT_MEDIA)

    checksum = compute_checksum(data)
    path = ctx.staging_path()
    write_atomic(path, data)

    # Integrity gate: what landed on disk must hash to what was fetched
    staged = path.read_bytes()
    if compute_checksum(staged) != checksum:
        raise IntegrityViolation(f"Staged audio for {video.video_id} does not match fetched bytes",
                                 error_code=ErrorCode.CHECKSUM_MISMATCH)

    ctx.logger.info(f"Downloaded audio for {video.video_id} ({len(data)} bytes, sha256 {checksum[:12]})")
    return StageOutput(
        result=create_success_result({'bytes': len(data), 'checksum': checksum}),
        video_updates={'staged_audio_checksum': checksum, 'downloaded_at': ctx.now},
    )
