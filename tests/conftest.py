"""
Shared fixtures: SQLite databases in tmp_path, in-memory artifact stores,
fake collaborators and synthetic audio.
"""
import io
import os
import tempfile
import zlib
from datetime import datetime, timezone

# Keep test runs away from the checked-in config and log directory
os.environ.setdefault('SPOKENKB_ROOT', tempfile.mkdtemp(prefix='spokenkb-test-'))

import numpy as np
import pytest
import soundfile as sf

from spokenkb.database.session import create_session_factory
from spokenkb.interfaces import VideoInfo, WordTiming
from spokenkb.processing.monitoring import LoggingMonitor
from spokenkb.processing.orchestrator import PipelineOrchestrator
from spokenkb.retrieval.lexical import tokenize
from spokenkb.storage.local_storage import InMemoryArtifactStore

SAMPLE_RATE = 16000
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

SAMPLE_WORDS = [
    WordTiming("Rates", 0.2, 0.8),
    WordTiming("rose.", 0.9, 1.6),
    WordTiming("Markets", 2.0, 2.6),
    WordTiming("fell!", 2.7, 3.5),
]


def make_tone(duration: float, freq: float = 220.0, amplitude: float = 0.3,
              sr: int = SAMPLE_RATE) -> np.ndarray:
    t = np.arange(int(duration * sr)) / sr
    return (amplitude * np.sin(2 * np.pi * freq * t)).astype(np.float32)


def make_chirp(duration: float, f_start: float, f_end: float, amplitude: float = 0.3,
               sr: int = SAMPLE_RATE) -> np.ndarray:
    n = int(duration * sr)
    freqs = np.linspace(f_start, f_end, n)
    phase = 2 * np.pi * np.cumsum(freqs) / sr
    return (amplitude * np.sin(phase)).astype(np.float32)


def to_wav(samples: np.ndarray, sr: int = SAMPLE_RATE) -> bytes:
    buffer = io.BytesIO()
    sf.write(buffer, samples, sr, format='WAV', subtype='PCM_16')
    return buffer.getvalue()


class FakeAudioSource:
    """Returns fixed bytes; `error` is raised instead when set."""

    def __init__(self, data: bytes, error: Exception = None, on_fetch=None):
        self.data = data
        self.error = error
        self.on_fetch = on_fetch
        self.calls = 0

    def fetch(self, video) -> bytes:
        self.calls += 1
        if self.on_fetch is not None:
            self.on_fetch(video)
        if self.error is not None:
            raise self.error
        return self.data


class FakeTranscriber:
    def __init__(self, words, error: Exception = None):
        self.words = list(words)
        self.error = error
        self.calls = 0

    def transcribe(self, audio: bytes):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.words)


class FakeEmbedder:
    """Hashed bag-of-words vectors, so texts sharing words are similar."""

    def __init__(self, model_version: str = 'hash-bow-v1', dimension: int = 16):
        self.model_version = model_version
        self.dimension = dimension
        self.calls = 0

    def embed(self, text: str):
        self.calls += 1
        vector = np.zeros(self.dimension)
        for token in tokenize(text):
            vector[zlib.crc32(token.encode('utf-8')) % self.dimension] += 1.0
        if not vector.any():
            vector[0] = 1.0
        return vector.tolist()


class FailingEmbedder(FakeEmbedder):
    def embed(self, text: str):
        raise ConnectionError("embedding service unreachable")


class CorruptingStore(InMemoryArtifactStore):
    """Reports the right checksum but keeps altered bytes."""

    def put(self, key: str, data: bytes) -> str:
        checksum = super().put(key, data)
        self.blobs[key] = data + b'\x00'
        return checksum


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'spokenkb.db'}"


@pytest.fixture
def session_factory(db_url):
    return create_session_factory(db_url)


@pytest.fixture
def test_config(tmp_path):
    return {
        'pipeline': {
            'max_attempts': 3,
            'backoff_base_seconds': 60,
            'backoff_max_seconds': 3600,
            'claim_timeout_seconds': 600,
            'call_timeout_seconds': 0,
            'staging_dir': str(tmp_path / 'staging'),
            'workers': 2,
            'poll_interval_seconds': 0.01,
        },
    }


@pytest.fixture
def sample_audio():
    return to_wav(make_tone(4.0))


@pytest.fixture
def orchestrator(session_factory, test_config, sample_audio):
    return PipelineOrchestrator(
        session_factory,
        InMemoryArtifactStore(),
        audio_source=FakeAudioSource(sample_audio),
        transcriber=FakeTranscriber(SAMPLE_WORDS),
        embedder=FakeEmbedder(),
        monitor=LoggingMonitor(),
        config=test_config,
        clock=lambda: T0,
    )


@pytest.fixture
def video_info():
    return VideoInfo(
        video_id='vid-001',
        title='Monetary policy briefing',
        publish_date=T0,
        duration=4.0,
        source_url='https://www.youtube.com/watch?v=vid-001',
        playlist_id='PL-econ',
        channel_id='UC-news',
    )
