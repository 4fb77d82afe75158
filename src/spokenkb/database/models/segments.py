from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Boolean, ForeignKey, Text,
    Index, UniqueConstraint, JSON, func, literal_column
)
from sqlalchemy.orm import relationship

from .base import Base, utcnow, vector_column_type

TEXT_SEARCH_CONFIG = 'english'


def text_search_vector(column):
    """to_tsvector over a text column, the expression the full-text index is built on."""
    return func.to_tsvector(literal_column(f"'{TEXT_SEARCH_CONFIG}'"), column)


class Segment(Base):
    """
    A bounded span of verbatim transcript text, the unit of indexing and retrieval.

    Created by the score stage, never mutated, deleted only with derived data
    of its video. Offsets are monotonic and non-overlapping within a video.

    Attributes:
        video_id: Owning video (one-directional reference)
        segment_index: Order within the video
        start_time/end_time: Offsets in seconds
        text: Verbatim transcript text, never normalized
        word_start/word_end: Source word span in the transcript (end exclusive)
    """
    __tablename__ = 'segments'

    id = Column(Integer, primary_key=True)
    video_id = Column(Integer, ForeignKey('videos.id', ondelete='CASCADE'), nullable=False, index=True)
    segment_index = Column(Integer, nullable=False)
    start_time = Column(Float, nullable=False)
    end_time = Column(Float, nullable=False)
    text = Column(Text, nullable=False)
    word_start = Column(Integer, nullable=False)
    word_end = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    prosody = relationship("ProsodyFeatures", uselist=False, back_populates="segment",
                           cascade="all, delete-orphan")
    embeddings = relationship("Embedding", back_populates="segment", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint('video_id', 'segment_index', name='uq_segments_video_index'),
        Index('idx_segments_text_search', text_search_vector(text),
              postgresql_using='gin').ddl_if(dialect='postgresql'),
    )

    def __repr__(self):
        return f"<Segment video={self.video_id} #{self.segment_index} {self.start_time:.1f}-{self.end_time:.1f}>"


class ProsodyFeatures(Base):
    """
    Prosodic feature vector of one segment (1:1), written once by the score stage.

    Numeric fields are NULL rather than zero when they could not be measured
    (segment too short, no voiced frames); such rows carry low_confidence.
    emphasis_score is relative to the owning video's segment population and
    `weights` records the weights it was computed with.
    """
    __tablename__ = 'prosody_features'

    id = Column(Integer, primary_key=True)
    segment_id = Column(Integer, ForeignKey('segments.id', ondelete='CASCADE'), nullable=False, unique=True)

    # Pitch (Hz) over voiced frames
    pitch_mean = Column(Float, nullable=True)
    pitch_min = Column(Float, nullable=True)
    pitch_max = Column(Float, nullable=True)
    pitch_range = Column(Float, nullable=True)
    pitch_slope = Column(Float, nullable=True)  # Hz per second
    voiced_ratio = Column(Float, nullable=True)

    # Energy
    rms_mean = Column(Float, nullable=True)
    rms_max = Column(Float, nullable=True)
    energy_dynamic_range = Column(Float, nullable=True)  # dB

    # Pauses and timing
    pause_count = Column(Integer, nullable=True)
    pause_total = Column(Float, nullable=True)
    boundary_pause = Column(Boolean, nullable=True)
    pause_before = Column(Float, nullable=True)
    pause_after = Column(Float, nullable=True)
    speech_rate = Column(Float, nullable=True)  # words per second of speaking time
    final_lengthening = Column(Float, nullable=True)

    emphasis_score = Column(Float, nullable=True)
    low_confidence = Column(Boolean, nullable=False, default=False)
    weights = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    segment = relationship("Segment", back_populates="prosody")


class Embedding(Base):
    """
    Vector embedding of a segment's text for one embedder version.

    Rows for a superseded model_version are dropped by the orchestrator and
    regenerated by the index stage.
    """
    __tablename__ = 'embeddings'

    id = Column(Integer, primary_key=True)
    segment_id = Column(Integer, ForeignKey('segments.id', ondelete='CASCADE'), nullable=False, index=True)
    model_version = Column(String(64), nullable=False)
    dimension = Column(Integer, nullable=False)
    vector = Column(vector_column_type(), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    segment = relationship("Segment", back_populates="embeddings")

    __table_args__ = (
        UniqueConstraint('segment_id', 'model_version', name='uq_embeddings_segment_version'),
        Index('idx_embeddings_model_version', 'model_version'),
    )
