"""
Tests for emphasis scoring.
"""

import pytest

from spokenkb.prosody import EmphasisWeights, ProsodyFeatureVector, compute_emphasis_scores
from spokenkb.prosody.emphasis import zscores


def vector(pitch_range, energy, final):
    return ProsodyFeatureVector(pitch_range=pitch_range, energy_dynamic_range=energy,
                                final_lengthening=final)


class TestZScores:
    """Tests for zscores."""

    def test_population_zscores(self):
        """Population standard deviation, None preserved in place."""
        result = zscores([1.0, None, 2.0, 3.0])
        assert result[1] is None
        assert result[0] == pytest.approx(-1.2247, abs=1e-4)
        assert result[2] == pytest.approx(0.0)
        assert result[3] == pytest.approx(1.2247, abs=1e-4)

    def test_zero_spread(self):
        """Identical values all score zero."""
        assert zscores([4.0, 4.0, 4.0]) == [0.0, 0.0, 0.0]

    def test_all_missing(self):
        """Nothing measurable, nothing scored."""
        assert zscores([None, None]) == [None, None]


class TestEmphasisWeights:
    """Tests for EmphasisWeights."""

    def test_normalized(self):
        """Weights are rescaled to sum to one."""
        weights = EmphasisWeights(pitch_range=2, energy_range=1, final_lengthening=1)
        assert weights.pitch_range == pytest.approx(0.5)
        assert sum(weights.as_dict().values()) == pytest.approx(1.0)

    def test_negative_rejected(self):
        """Negative weights are a configuration error."""
        with pytest.raises(ValueError):
            EmphasisWeights(pitch_range=-0.1)

    def test_all_zero_rejected(self):
        """At least one weight must be positive."""
        with pytest.raises(ValueError):
            EmphasisWeights(0, 0, 0)

    def test_from_config(self):
        """Weights are read from the emphasis section."""
        weights = EmphasisWeights.from_config({'weights': {'pitch_range': 1, 'energy_range': 0,
                                                           'final_lengthening': 0}})
        assert weights.as_dict() == {'pitch_range': 1.0, 'energy_range': 0.0, 'final_lengthening': 0.0}


class TestComputeEmphasis:
    """Tests for compute_emphasis_scores."""

    def test_most_expressive_segment_scores_highest(self):
        """Wider pitch and energy ranges and longer final words score higher."""
        features = [vector(20, 6, 1.0), vector(40, 9, 1.2), vector(120, 25, 2.0)]
        scores = compute_emphasis_scores(features, EmphasisWeights())
        assert scores[2] > scores[1] > scores[0]
        assert sum(scores) == pytest.approx(0.0, abs=1e-9)

    def test_missing_component_gives_no_score(self):
        """Segments with an unmeasurable component get None."""
        features = [vector(20, 6, 1.0), vector(None, 9, 1.2), vector(120, 25, 2.0)]
        scores = compute_emphasis_scores(features, EmphasisWeights())
        assert scores[1] is None
        assert scores[0] is not None and scores[2] is not None

    def test_relative_to_video_baseline(self):
        """Scaling every segment of a video leaves the scores unchanged."""
        quiet = [vector(10, 3, 1.0), vector(20, 6, 1.5), vector(30, 9, 2.0)]
        loud = [vector(p * 3, e * 3, f) for p, e, f in [(10, 3, 1.0), (20, 6, 1.5), (30, 9, 2.0)]]
        weights = EmphasisWeights()
        assert compute_emphasis_scores(quiet, weights) == pytest.approx(compute_emphasis_scores(loud, weights))

    def test_single_component_weight(self):
        """With one non-zero weight the score is that component's z-score."""
        weights = EmphasisWeights(pitch_range=1, energy_range=0, final_lengthening=0)
        scores = compute_emphasis_scores([vector(1, 5, 1), vector(2, 1, 1), vector(3, 3, 1)], weights)
        assert scores == pytest.approx(zscores([1, 2, 3]))
