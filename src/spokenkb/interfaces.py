"""
Collaborator Protocol Interfaces
================================

Protocol definitions for the backends the pipeline and the retrieval engine
depend on, using typing.Protocol (PEP 544).

The core never imports a concrete backend. Anything with the right methods
can be passed in: the S3/local/in-memory artifact stores in spokenkb.storage,
a Whisper service wrapper, a sentence-transformers embedder, an alerting
client, or the fakes used in tests.

Usage:
    from spokenkb.interfaces import Transcriber, WordTiming

    def run(transcriber: Transcriber, audio: bytes) -> List[WordTiming]:
        return transcriber.transcribe(audio)
"""

from typing import (
    Protocol, NamedTuple, List, Sequence, Optional, Any, runtime_checkable
)


class WordTiming(NamedTuple):
    """One transcribed word with offsets in seconds. `word` is verbatim."""
    word: str
    start: float
    end: float


class VideoInfo(NamedTuple):
    """Metadata handed to discovery."""
    video_id: str
    title: Optional[str] = None
    description: Optional[str] = None
    publish_date: Optional[Any] = None
    duration: Optional[float] = None
    source_url: Optional[str] = None
    playlist_id: Optional[str] = None
    channel_id: Optional[str] = None


@runtime_checkable
class ArtifactStore(Protocol):
    """Content-addressed blob storage."""

    def put(self, key: str, data: bytes) -> str:
        """Store bytes under key, returning the sha256 hex digest of what was stored."""
        ...

    def get(self, key: str) -> bytes:
        """Return the stored bytes. Raises ArtifactMissing when absent."""
        ...

    def exists(self, key: str) -> bool:
        ...


@runtime_checkable
class AudioSource(Protocol):
    """Audio acquisition (e.g. yt-dlp wrapper)."""

    def fetch(self, video: Any) -> bytes:
        """Return encoded audio bytes for the video.

        Raises UnsupportedInput for unavailable/unsupported media and
        TransientIO for network failures.
        """
        ...


@runtime_checkable
class Transcriber(Protocol):
    """Speech-to-text with word timestamps."""

    def transcribe(self, audio: bytes) -> Sequence[WordTiming]:
        """Ordered (word, start, end) tuples, text exactly as spoken."""
        ...


@runtime_checkable
class Embedder(Protocol):
    """Text embedding model. model_version tags every stored vector."""

    model_version: str
    dimension: int

    def embed(self, text: str) -> List[float]:
        ...


@runtime_checkable
class Monitor(Protocol):
    """Operational alerting for terminal pipeline failures."""

    def alert(self, video_id: str, error_code: str, message: str) -> None:
        ...
