"""
Prosody Feature Extractor
=========================

Turns audio samples plus word timestamps into one ProsodyFeatureVector per
segment. Extraction is a pure function of its inputs: no I/O, no randomness,
so identical input yields bit-identical output.

Per segment:
- Pitch: librosa.pyin over the segment, unvoiced frames dropped before
  mean/min/max/range; slope is the least-squares coefficient of Hz over seconds.
- Energy: librosa RMS over fixed frames; dynamic range is
  20*log10(max/min) with both ends floored at `energy_floor` and the result
  clamped to [0, max_dynamic_range_db].
- Pauses: inter-word gaps longer than `pause_threshold`. Gaps inside the
  segment are internal pauses (count + total); the gap before the first word
  and after the last word are boundary pauses, reported separately.
- Speech rate: words per second of segment span minus internal pause time.
- Phrase-final lengthening: last word duration / mean word duration.

Segments shorter than `min_segment_duration` get no acoustic measurements;
segments with zero voiced frames get no pitch measurements. Both are flagged
low_confidence and keep None instead of zero.

emphasis_score is filled in afterwards by spokenkb.prosody.emphasis, which
needs the whole video's segment population.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import librosa
import numpy as np

from spokenkb.interfaces import WordTiming
from spokenkb.segmentation.segmenter import SegmentSpan
from spokenkb.utils.logger import setup_worker_logger
from .audio import slice_samples
from .emphasis import EmphasisWeights, compute_emphasis_scores
from .features import ProsodyFeatureVector

logger = setup_worker_logger('prosody')


@dataclass(frozen=True)
class ProsodyConfig:
    """Extraction parameters"""
    sample_rate: int = 16000
    frame_length: int = 1024
    hop_length: int = 256
    fmin: float = 65.0
    fmax: float = 500.0
    pause_threshold: float = 0.3
    min_segment_duration: float = 1.0
    energy_floor: float = 1e-5
    max_dynamic_range_db: float = 120.0

    @classmethod
    def from_dict(cls, config: Optional[Dict[str, Any]]) -> 'ProsodyConfig':
        config = config or {}
        known = {k: v for k, v in config.items() if k in cls.__dataclass_fields__}
        return cls(**known)


def _f(value) -> float:
    return float(value)


def pitch_stats(y: np.ndarray, config: ProsodyConfig) -> Dict[str, Optional[float]]:
    """Pitch statistics over voiced frames. All None when nothing is voiced."""
    empty = {'pitch_mean': None, 'pitch_min': None, 'pitch_max': None,
             'pitch_range': None, 'pitch_slope': None}
    if y.size == 0:
        return {**empty, 'voiced_ratio': None}

    f0, voiced_flag, _ = librosa.pyin(
        y.astype(np.float64),
        fmin=config.fmin,
        fmax=config.fmax,
        sr=config.sample_rate,
        frame_length=config.frame_length,
        hop_length=config.hop_length,
    )
    voiced = np.asarray(voiced_flag, dtype=bool) & np.isfinite(f0)
    total_frames = len(f0)
    voiced_ratio = _f(voiced.sum() / total_frames) if total_frames else 0.0
    if not voiced.any():
        return {**empty, 'voiced_ratio': voiced_ratio}

    pitch = f0[voiced]
    times = librosa.frames_to_time(np.flatnonzero(voiced), sr=config.sample_rate,
                                   hop_length=config.hop_length)
    slope = None
    if len(pitch) >= 2:
        t_centered = times - times.mean()
        denominator = float(np.dot(t_centered, t_centered))
        if denominator > 0:
            slope = _f(np.dot(t_centered, pitch - pitch.mean()) / denominator)

    return {
        'pitch_mean': _f(pitch.mean()),
        'pitch_min': _f(pitch.min()),
        'pitch_max': _f(pitch.max()),
        'pitch_range': _f(pitch.max() - pitch.min()),
        'pitch_slope': slope,
        'voiced_ratio': voiced_ratio,
    }


def energy_stats(y: np.ndarray, config: ProsodyConfig) -> Dict[str, Optional[float]]:
    """RMS mean/max and clamped log dynamic range."""
    if y.size == 0:
        return {'rms_mean': None, 'rms_max': None, 'energy_dynamic_range': None}

    rms = librosa.feature.rms(y=y, frame_length=config.frame_length,
                              hop_length=config.hop_length)[0].astype(np.float64)
    rms_max = float(rms.max())
    rms_min = float(rms.min())
    floor = config.energy_floor
    dynamic_range = 20.0 * np.log10(max(rms_max, floor) / max(rms_min, floor))
    dynamic_range = float(np.clip(dynamic_range, 0.0, config.max_dynamic_range_db))
    return {
        'rms_mean': _f(rms.mean()),
        'rms_max': rms_max,
        'energy_dynamic_range': dynamic_range,
    }


def pause_stats(words: Sequence[WordTiming], previous_end: Optional[float],
                next_start: Optional[float], threshold: float) -> Dict[str, Any]:
    """Internal pause count/total and boundary gaps around the segment."""
    internal = []
    for left, right in zip(words, words[1:]):
        gap = right.start - left.end
        if gap > threshold:
            internal.append(gap)

    pause_before = max(0.0, words[0].start - previous_end) if previous_end is not None else 0.0
    pause_after = max(0.0, next_start - words[-1].end) if next_start is not None else 0.0
    return {
        'pause_count': len(internal),
        'pause_total': float(sum(internal)),
        'pause_before': float(pause_before),
        'pause_after': float(pause_after),
        'boundary_pause': bool(pause_before > threshold or pause_after > threshold),
    }


def speech_rate(words: Sequence[WordTiming], internal_pause_total: float) -> Optional[float]:
    """Words per second of speaking time (segment span minus internal pauses)."""
    speaking_time = (words[-1].end - words[0].start) - internal_pause_total
    if speaking_time <= 0:
        return None
    return float(len(words) / speaking_time)


def final_lengthening(words: Sequence[WordTiming]) -> Optional[float]:
    """Last word duration relative to the segment's mean word duration."""
    durations = [w.end - w.start for w in words]
    mean_duration = sum(durations) / len(durations)
    if mean_duration <= 0:
        return None
    return float(durations[-1] / mean_duration)


class ProsodyFeatureExtractor:
    """
    Computes per-segment prosodic features and per-video emphasis.

    Usage:
        extractor = ProsodyFeatureExtractor(ProsodyConfig(), EmphasisWeights())
        features = extractor.extract_video(samples, words, spans)
    """

    def __init__(self, config: Optional[ProsodyConfig] = None, weights: Optional[EmphasisWeights] = None):
        self.config = config or ProsodyConfig()
        self.weights = weights or EmphasisWeights()

    def extract_segment(
        self,
        samples: np.ndarray,
        words: Sequence[WordTiming],
        start_time: float,
        end_time: float,
        previous_end: Optional[float] = None,
        next_start: Optional[float] = None
    ) -> ProsodyFeatureVector:
        """Features of one segment, emphasis_score left unset."""
        if not words:
            return ProsodyFeatureVector(low_confidence=True)

        config = self.config
        timing = pause_stats(words, previous_end, next_start, config.pause_threshold)
        timing['speech_rate'] = speech_rate(words, timing['pause_total'])
        timing['final_lengthening'] = final_lengthening(words)

        low_confidence = False
        if end_time - start_time < config.min_segment_duration:
            return ProsodyFeatureVector(low_confidence=True, **timing)

        y = slice_samples(samples, config.sample_rate, start_time, end_time)
        pitch = pitch_stats(y, config)
        energy = energy_stats(y, config)
        if pitch['pitch_mean'] is None:
            low_confidence = True

        return ProsodyFeatureVector(low_confidence=low_confidence, **pitch, **energy, **timing)

    def extract_video(
        self,
        samples: np.ndarray,
        words: Sequence[WordTiming],
        spans: Sequence[SegmentSpan]
    ) -> List[ProsodyFeatureVector]:
        """Features for every segment of a video, with emphasis relative to that video."""
        audio_end = len(samples) / self.config.sample_rate
        raw = []
        for span in spans:
            segment_words = list(words[span.word_start:span.word_end])
            previous_end = words[span.word_start - 1].end if span.word_start > 0 else 0.0
            if span.word_end < len(words):
                next_start = words[span.word_end].start
            else:
                # Trailing silence up to the end of the audio
                next_start = max(audio_end, words[-1].end)
            raw.append(self.extract_segment(samples, segment_words, span.start_time,
                                            span.end_time, previous_end, next_start))

        scores = compute_emphasis_scores(raw, self.weights)
        weights = self.weights.as_dict()
        features = [vector.with_emphasis(score, weights) for vector, score in zip(raw, scores)]

        low = sum(1 for f in features if f.low_confidence)
        logger.info(f"Extracted prosody for {len(features)} segments ({low} low confidence)")
        return features
