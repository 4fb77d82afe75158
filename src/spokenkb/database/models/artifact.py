from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, BigInteger, ForeignKey,
    UniqueConstraint, Text
)

from .base import Base, utcnow


class Artifact(Base):
    """
    A content-addressed blob (audio, transcript or prosody) owned by a video.

    One row per (video, kind). Rows are written only after the stored bytes
    were re-read and their sha256 matched, so verified rows are immutable; a
    failed verification writes nothing here.

    Attributes:
        video_id: Owning video (one-directional reference)
        kind: ArtifactKind value
        checksum: sha256 hex digest of the stored bytes
        storage_key: Deterministic artifact store key
        byte_size: Size of the stored blob
        verified: Checksum confirmed against the store
    """
    __tablename__ = 'artifacts'

    id = Column(Integer, primary_key=True)
    video_id = Column(Integer, ForeignKey('videos.id', ondelete='CASCADE'), nullable=False, index=True)
    kind = Column(String(16), nullable=False)
    checksum = Column(String(64), nullable=False)
    storage_key = Column(Text, nullable=False)
    byte_size = Column(BigInteger, nullable=False)
    verified = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint('video_id', 'kind', name='uq_artifacts_video_kind'),
    )

    def __repr__(self):
        return f"<Artifact {self.kind} video={self.video_id} {self.checksum[:12]}>"
