"""
Transcribe step: word-level transcript of the stored audio.

uploaded → transcribing → transcribed

Transcript artifact layout (JSON, UTF-8):
    {"video_id": "...", "words": [["word", start, end], ...]}
"""
import json
from typing import List

from spokenkb.database.models import ArtifactKind
from spokenkb.interfaces import WordTiming
from spokenkb.processing.state.linear_state_model import VideoState
from spokenkb.segmentation.segmenter import validate_words
from spokenkb.utils.error_codes import (
    ArtifactMissing, ErrorCode, IntegrityViolation, UnsupportedInput,
    create_skipped_result, create_success_result,
)
from .base import StageContext, StageOutput, is_still_valid, read_verified, store_verified


def encode_transcript(video_id: str, words: List[WordTiming]) -> bytes:
    payload = {'video_id': video_id, 'words': [[w.word, w.start, w.end] for w in words]}
    return json.dumps(payload, ensure_ascii=False, sort_keys=True).encode('utf-8')


def decode_transcript(data: bytes) -> List[WordTiming]:
    """Parse a transcript artifact. Malformed payloads are IntegrityViolation."""
    try:
        payload = json.loads(data.decode('utf-8'))
        words = [WordTiming(str(w), float(s), float(e)) for w, s, e in payload['words']]
    except (ValueError, KeyError, TypeError) as e:
        raise IntegrityViolation(f"Malformed transcript artifact: {e}",
                                 error_code=ErrorCode.MALFORMED_TRANSCRIPT)
    return validate_words(words)


def load_audio(ctx: StageContext) -> bytes:
    """Verified audio bytes; any problem rewinds the video to re-fetch."""
    artifact = ctx.load_artifact(ArtifactKind.AUDIO)
    rewind = VideoState.DISCOVERED.value
    if artifact is None:
        raise ArtifactMissing(f"No audio artifact recorded for {ctx.video.video_id}",
                              details={'rewind_to': rewind})
    return read_verified(ctx, artifact, rewind_to=rewind)


def run_transcribe(ctx: StageContext) -> StageOutput:
    video = ctx.video

    existing = ctx.load_artifact(ArtifactKind.TRANSCRIPT)
    if is_still_valid(ctx, existing):
        return StageOutput(
            result=create_skipped_result('verified transcript artifact exists',
                                         data={'checksum': existing.checksum}),
            video_updates={'transcribed_at': ctx.now},
        )

    if ctx.transcriber is None:
        raise UnsupportedInput("No transcriber configured", error_code=ErrorCode.UNSUPPORTED_MEDIA)

    audio = load_audio(ctx)
    words = validate_words(ctx.call(ctx.transcriber.transcribe, audio, description='transcription'))
    if not words:
        raise UnsupportedInput(f"No speech transcribed for {video.video_id}",
                               error_code=ErrorCode.EMPTY_TRANSCRIPT)

    artifact = store_verified(ctx, ArtifactKind.TRANSCRIPT, encode_transcript(video.video_id, words))
    ctx.logger.info(f"Transcribed {video.video_id}: {len(words)} words")

    return StageOutput(
        result=create_success_result({'words': len(words), 'checksum': artifact.checksum}),
        rows=[artifact],
        stale_artifact_ids=[existing.id] if existing is not None else [],
        video_updates={'transcribed_at': ctx.now},
    )
