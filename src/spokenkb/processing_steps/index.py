"""
Index step: embed every segment with the current embedder version.

segmented_and_scored → indexing → indexed

The commit re-checks that every segment has features and an embedding of
this version before the video may become `indexed`.
"""
from typing import List

from sqlalchemy import func, select

from spokenkb.database.models import Embedding, ProsodyFeatures, Segment
from spokenkb.utils.error_codes import ErrorCode, IntegrityViolation, UnsupportedInput, create_success_result
from .base import StageContext, StageOutput


def _segments_missing_embedding(ctx: StageContext, model_version: str) -> List[Segment]:
    with ctx.session_factory() as session:
        embedded = select(Embedding.segment_id).where(Embedding.model_version == model_version)
        return list(session.execute(
            select(Segment)
            .where(Segment.video_id == ctx.video.id, Segment.id.not_in(embedded))
            .order_by(Segment.segment_index)
        ).scalars())


def _coverage_check(video_pk: int, model_version: str):
    def check(session):
        total = session.scalar(select(func.count(Segment.id)).where(Segment.video_id == video_pk))
        with_features = session.scalar(
            select(func.count(ProsodyFeatures.id))
            .join(Segment, ProsodyFeatures.segment_id == Segment.id)
            .where(Segment.video_id == video_pk)
        )
        embedded = session.scalar(
            select(func.count(func.distinct(Embedding.segment_id)))
            .join(Segment, Embedding.segment_id == Segment.id)
            .where(Segment.video_id == video_pk, Embedding.model_version == model_version)
        )
        if not total or with_features != total or embedded != total:
            raise IntegrityViolation(
                f"Index coverage incomplete: {total} segments, {with_features} with features, "
                f"{embedded} embedded with {model_version}",
                error_code=ErrorCode.MISSING_ARTIFACT,
            )
    return check


def run_index(ctx: StageContext) -> StageOutput:
    if ctx.embedder is None:
        raise UnsupportedInput("No embedder configured", error_code=ErrorCode.UNSUPPORTED_MEDIA)

    model_version = ctx.embedder.model_version
    dimension = int(ctx.embedder.dimension)
    pending = _segments_missing_embedding(ctx, model_version)

    rows = []
    for segment in pending:
        vector = ctx.call(ctx.embedder.embed, segment.text, description='embedding')
        vector = [float(v) for v in vector]
        if len(vector) != dimension:
            raise IntegrityViolation(
                f"Embedder {model_version} returned {len(vector)} dimensions, expected {dimension}",
                error_code=ErrorCode.DIMENSION_MISMATCH,
            )
        rows.append(Embedding(segment_id=segment.id, model_version=model_version,
                              dimension=dimension, vector=vector))

    ctx.logger.info(f"Embedded {len(rows)} segments of {ctx.video.video_id} with {model_version}")
    return StageOutput(
        result=create_success_result({'embedded': len(rows), 'model_version': model_version}),
        rows=rows,
        video_updates={'indexed_at': ctx.now},
        precommit_check=_coverage_check(ctx.video.id, model_version),
    )
