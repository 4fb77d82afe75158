from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Text, Index
)

from spokenkb.processing.state.linear_state_model import VideoState
from .base import Base, utcnow


class Video(Base):
    """
    A discovered video and its position in the ingestion pipeline.

    Videos are created on discovery, mutated only by the pipeline orchestrator
    (always through conditional updates on processing_state) and never deleted;
    removal upstream soft-retires them.

    Attributes:
        id: Primary key
        video_id: Stable external identifier (e.g. YouTube id)
        title: Video title
        description: Video description
        publish_date: Upstream publish time, used for recency tie-breaks
        duration: Duration in seconds
        source_url: Watch URL, used for deep links
        playlist_id: Playlist reference (nullable for unlisted uploads)
        channel_id: Channel reference
        processing_state: Current VideoState value
        resume_state: Resting state a 'retrying' video returns to
        failed_at_state: Resting state whose stage failed terminally
        attempt_count: Failed attempts since the last success or reset
        last_error: Message of the most recent failure
        last_error_code: ErrorCode value of the most recent failure
        next_eligible_at: Earliest time a retrying video may run again
        claimed_by: Worker holding the video while in-flight
        claimed_at: When the current claim was taken
        staged_audio_checksum: sha256 of the downloaded audio awaiting upload
        segment_count: Aggregate count of segments, no back-references kept
        downloaded_at/uploaded_at/transcribed_at/scored_at/indexed_at: Stage completion times
        retired_at: When the video was retired
    """
    __tablename__ = 'videos'

    id = Column(Integer, primary_key=True)
    video_id = Column(String(64), nullable=False, unique=True)
    title = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    publish_date = Column(DateTime(timezone=True), nullable=True)
    duration = Column(Float, nullable=True)
    source_url = Column(Text, nullable=True)
    playlist_id = Column(String(64), nullable=True, index=True)
    channel_id = Column(String(64), nullable=True)

    processing_state = Column(String(32), nullable=False, default=VideoState.DISCOVERED.value)
    resume_state = Column(String(32), nullable=True)
    failed_at_state = Column(String(32), nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    last_error_code = Column(String(32), nullable=True)
    next_eligible_at = Column(DateTime(timezone=True), nullable=True)
    claimed_by = Column(String(128), nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    staged_audio_checksum = Column(String(64), nullable=True)
    segment_count = Column(Integer, nullable=False, default=0)

    downloaded_at = Column(DateTime(timezone=True), nullable=True)
    uploaded_at = Column(DateTime(timezone=True), nullable=True)
    transcribed_at = Column(DateTime(timezone=True), nullable=True)
    scored_at = Column(DateTime(timezone=True), nullable=True)
    indexed_at = Column(DateTime(timezone=True), nullable=True)
    retired_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    last_updated = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_videos_processing_state', 'processing_state'),
        Index('idx_videos_state_eligible', 'processing_state', 'next_eligible_at'),
        Index('idx_videos_publish_date', 'publish_date'),
    )

    @property
    def state(self) -> VideoState:
        return VideoState(self.processing_state)

    def __repr__(self):
        return f"<Video {self.video_id} [{self.processing_state}]>"
