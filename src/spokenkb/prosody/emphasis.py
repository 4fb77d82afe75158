"""
Emphasis scoring
================

    emphasis = w_pitch  * z(pitch_range)
             + w_energy * z(energy_dynamic_range)
             + w_final  * z(final_lengthening)

Each z-score is taken against the same video's segment population (segments
where that component was measurable), so a segment is emphatic relative to
its speaker's own baseline. A component with zero spread contributes 0. A
segment missing any component gets no score.

Weights are configuration (`emphasis.weights`), normalized to sum to 1, logged
on every computation and stored with each feature record.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from spokenkb.utils.logger import setup_worker_logger
from .features import ProsodyFeatureVector

logger = setup_worker_logger('emphasis')

COMPONENTS = (
    ('pitch_range', 'pitch_range'),
    ('energy_range', 'energy_dynamic_range'),
    ('final_lengthening', 'final_lengthening'),
)


@dataclass
class EmphasisWeights:
    """Configurable weights for the emphasis components."""
    pitch_range: float = 0.4
    energy_range: float = 0.35
    final_lengthening: float = 0.25

    def __post_init__(self):
        """Normalize weights to sum to 1.0."""
        if min(self.pitch_range, self.energy_range, self.final_lengthening) < 0:
            raise ValueError("Emphasis weights must be non-negative")
        total = self.pitch_range + self.energy_range + self.final_lengthening
        if total <= 0:
            raise ValueError("At least one emphasis weight must be positive")
        self.pitch_range /= total
        self.energy_range /= total
        self.final_lengthening /= total

    @classmethod
    def from_config(cls, emphasis_config: Optional[Dict[str, Any]]) -> 'EmphasisWeights':
        weights = (emphasis_config or {}).get('weights', {})
        return cls(
            pitch_range=float(weights.get('pitch_range', 0.4)),
            energy_range=float(weights.get('energy_range', 0.35)),
            final_lengthening=float(weights.get('final_lengthening', 0.25)),
        )

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


def zscores(values: Sequence[Optional[float]]) -> List[Optional[float]]:
    """Population z-scores over the non-None values; None stays None."""
    present = np.array([v for v in values if v is not None], dtype=np.float64)
    if present.size == 0:
        return [None] * len(values)
    mean = float(present.mean())
    std = float(present.std())
    result = []
    for v in values:
        if v is None:
            result.append(None)
        elif std == 0.0:
            result.append(0.0)
        else:
            result.append((float(v) - mean) / std)
    return result


def compute_emphasis_scores(features: Sequence[ProsodyFeatureVector],
                            weights: EmphasisWeights) -> List[Optional[float]]:
    """Emphasis score of every segment of one video, in input order."""
    weight_map = weights.as_dict()
    logger.info(
        f"Computing emphasis for {len(features)} segments with weights: "
        f"pitch_range={weights.pitch_range:.3f}, energy_range={weights.energy_range:.3f}, "
        f"final_lengthening={weights.final_lengthening:.3f}"
    )

    per_component = {
        name: zscores([getattr(f, attribute) for f in features])
        for name, attribute in COMPONENTS
    }

    scores: List[Optional[float]] = []
    for position in range(len(features)):
        components = [per_component[name][position] for name, _ in COMPONENTS]
        if any(c is None for c in components):
            scores.append(None)
            continue
        score = sum(weight_map[name] * z for (name, _), z in zip(COMPONENTS, components))
        scores.append(float(score))
    return scores
