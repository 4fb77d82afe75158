"""
Score step: segment the transcript and attach prosodic features.

transcribed → extracting_prosody → segmented_and_scored

Writes one Segment + ProsodyFeatures pair per segment and a prosody artifact
(JSON snapshot of the same features) in the stage's single commit. Any
segments left over from an earlier run are replaced in that commit.
"""
import json

from spokenkb.database.models import ArtifactKind, ProsodyFeatures, Segment
from spokenkb.processing.state.linear_state_model import VideoState
from spokenkb.prosody.audio import decode_audio
from spokenkb.utils.error_codes import ArtifactMissing, ErrorCode, UnsupportedInput, create_success_result
from .base import StageContext, StageOutput, read_verified, store_verified
from .transcribe import decode_transcript, load_audio


def load_words(ctx: StageContext):
    artifact = ctx.load_artifact(ArtifactKind.TRANSCRIPT)
    rewind = VideoState.UPLOADED.value
    if artifact is None:
        raise ArtifactMissing(f"No transcript artifact recorded for {ctx.video.video_id}",
                              details={'rewind_to': rewind})
    return decode_transcript(read_verified(ctx, artifact, rewind_to=rewind))


def run_score(ctx: StageContext) -> StageOutput:
    video = ctx.video
    words = load_words(ctx)
    audio = load_audio(ctx)

    samples = decode_audio(audio, ctx.extractor.config.sample_rate)
    spans = ctx.segmenter.segment(words)
    if not spans:
        raise UnsupportedInput(f"Transcript for {video.video_id} produced no segments",
                               error_code=ErrorCode.EMPTY_TRANSCRIPT)

    features = ctx.extractor.extract_video(samples, words, spans)

    snapshot = {
        'video_id': video.video_id,
        'weights': ctx.extractor.weights.as_dict(),
        'segments': [
            {
                'segment_index': span.index,
                'start_time': span.start_time,
                'end_time': span.end_time,
                'features': vector.to_dict(),
            }
            for span, vector in zip(spans, features)
        ],
    }
    artifact = store_verified(
        ctx, ArtifactKind.PROSODY,
        json.dumps(snapshot, sort_keys=True, allow_nan=False).encode('utf-8'),
    )

    rows = [artifact]
    for span, vector in zip(spans, features):
        segment = Segment(
            video_id=video.id,
            segment_index=span.index,
            start_time=span.start_time,
            end_time=span.end_time,
            text=span.text,
            word_start=span.word_start,
            word_end=span.word_end,
        )
        segment.prosody = ProsodyFeatures(**vector.to_dict())
        rows.append(segment)

    low_confidence = sum(1 for f in features if f.low_confidence)
    ctx.logger.info(f"Scored {video.video_id}: {len(spans)} segments, {low_confidence} low confidence")

    return StageOutput(
        result=create_success_result({'segments': len(spans), 'low_confidence': low_confidence}),
        rows=rows,
        replace_derived=True,
        video_updates={'segment_count': len(spans), 'scored_at': ctx.now},
    )
