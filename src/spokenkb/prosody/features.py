"""Prosodic feature vector shared by the extractor, the score stage and storage."""
from dataclasses import dataclass, asdict, field, fields, replace
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ProsodyFeatureVector:
    """Fixed-shape features of one segment. None means "not measurable", never zero."""
    # Pitch over voiced frames (Hz), slope in Hz/s
    pitch_mean: Optional[float] = None
    pitch_min: Optional[float] = None
    pitch_max: Optional[float] = None
    pitch_range: Optional[float] = None
    pitch_slope: Optional[float] = None
    voiced_ratio: Optional[float] = None

    # RMS energy and its log dynamic range (dB)
    rms_mean: Optional[float] = None
    rms_max: Optional[float] = None
    energy_dynamic_range: Optional[float] = None

    # Pauses and timing
    pause_count: Optional[int] = None
    pause_total: Optional[float] = None
    boundary_pause: Optional[bool] = None
    pause_before: Optional[float] = None
    pause_after: Optional[float] = None
    speech_rate: Optional[float] = None
    final_lengthening: Optional[float] = None

    emphasis_score: Optional[float] = None
    low_confidence: bool = False
    weights: Optional[Dict[str, float]] = field(default=None, compare=True)

    def with_emphasis(self, score: Optional[float], weights: Dict[str, float]) -> 'ProsodyFeatureVector':
        return replace(self, emphasis_score=score, weights=dict(weights))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def column_names(cls):
        """Field names that map 1:1 onto ProsodyFeatures columns."""
        return [f.name for f in fields(cls)]
