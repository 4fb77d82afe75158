"""
Database Models for the Spoken-Audio Knowledge Base
===================================================

## Core Processing Flow:

1. **Discovery**: a Video row is created in `discovered`
2. **Download / Upload**: audio is fetched, staged, stored and verified (Artifact kind=audio)
3. **Transcription**: word timings are stored as JSON (Artifact kind=transcript)
4. **Score**: transcript is segmented (Segment) and each segment gets
   prosodic features and a per-video emphasis score (ProsodyFeatures,
   Artifact kind=prosody)
5. **Index**: every segment is embedded (Embedding) and the video becomes `indexed`

## Model Relationships:

- **Video**: pipeline state, retry bookkeeping, citation metadata. Holds no
  relationship collections; children reference it one-directionally.
- **Artifact**: content-addressed blob reference, unique per (video, kind)
- **Segment**: verbatim text span owned by a video
  - Has one: ProsodyFeatures
  - Has many: Embedding (one per embedder version)
"""

from .base import Base, ArtifactKind
from .video import Video
from .artifact import Artifact
from .segments import Segment, ProsodyFeatures, Embedding

__all__ = [
    'Base',
    'ArtifactKind',
    'Video',
    'Artifact',
    'Segment',
    'ProsodyFeatures',
    'Embedding',
]
