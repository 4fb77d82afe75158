"""
Tests for the hybrid reranker.
"""

from datetime import timedelta

import pytest

from conftest import T0
from spokenkb.retrieval import Candidate, HybridReranker, RerankerWeights
from spokenkb.retrieval.reranker import sigmoid


def candidate(segment_id, lexical=0.0, vector=0.0, emphasis=None, low_confidence=False,
              segment_index=0, publish_date=T0):
    return Candidate(segment_id=segment_id, segment_index=segment_index, video_id=f'vid-{segment_id}',
                     title=None, text='text', start_time=0.0, end_time=1.0,
                     publish_date=publish_date, emphasis_score=emphasis,
                     low_confidence=low_confidence, lexical_score=lexical, vector_score=vector)


class TestRerankerWeights:
    """Tests for RerankerWeights."""

    def test_default_weights(self):
        """Defaults already sum to one."""
        weights = RerankerWeights()
        assert weights.lexical + weights.vector + weights.emphasis == pytest.approx(1.0)

    def test_normalization(self):
        """Arbitrary positive weights are rescaled."""
        weights = RerankerWeights(lexical=2, vector=1, emphasis=1)
        assert weights.lexical == pytest.approx(0.5)
        assert weights.low_confidence_discount == 0.5

    @pytest.mark.parametrize('kwargs', [
        {'lexical': -1},
        {'lexical': 0, 'vector': 0, 'emphasis': 0},
        {'low_confidence_discount': 1.5},
    ])
    def test_invalid_weights(self, kwargs):
        """Negative, all-zero or out-of-range values are rejected."""
        with pytest.raises(ValueError):
            RerankerWeights(**kwargs)

    def test_from_config(self):
        """Weights come from the retrieval section."""
        weights = RerankerWeights.from_config({'weights': {'lexical': 1, 'vector': 1, 'emphasis': 0}})
        assert weights.vector == pytest.approx(0.5)
        assert weights.emphasis == 0.0

    def test_text_only_preset(self):
        """The text-only preset ignores emphasis."""
        assert RerankerWeights.text_only().emphasis == 0.0


class TestScoring:
    """Tests for HybridReranker scoring."""

    def setup_method(self):
        """Set up test fixtures."""
        self.reranker = HybridReranker()

    def test_sigmoid(self):
        """Sigmoid is centered at 0.5 and safe for large inputs."""
        assert sigmoid(0.0) == 0.5
        assert sigmoid(-1000.0) == pytest.approx(0.0)
        assert sigmoid(1000.0) == pytest.approx(1.0)

    def test_missing_emphasis_contributes_nothing(self):
        """No emphasis score means a zero emphasis term."""
        assert self.reranker.emphasis_term(candidate(1)) == 0.0

    def test_low_confidence_discounted(self):
        """Low-confidence emphasis is multiplied by the discount."""
        confident = self.reranker.emphasis_term(candidate(1, emphasis=1.0))
        discounted = self.reranker.emphasis_term(candidate(2, emphasis=1.0, low_confidence=True))
        assert discounted == pytest.approx(confident * 0.5)

    def test_weighted_sum(self):
        """The score is the weighted sum of the three terms."""
        w = self.reranker.weights
        c = candidate(1, lexical=0.8, vector=0.6, emphasis=0.0)
        assert self.reranker.score(c) == pytest.approx(w.lexical * 0.8 + w.vector * 0.6 + w.emphasis * 0.5)

    def test_emphasis_lifts_equal_text_matches(self):
        """With equal text scores the more emphatic segment ranks first."""
        flat = candidate(1, lexical=0.7, vector=0.7, emphasis=-1.0)
        emphatic = candidate(2, lexical=0.7, vector=0.7, emphasis=2.0)
        assert [c.segment_id for c in self.reranker.rerank([flat, emphatic])] == [2, 1]


class TestTieBreaks:
    """Tests for deterministic ordering of equal scores."""

    def setup_method(self):
        """Set up test fixtures."""
        self.reranker = HybridReranker()

    def test_newer_publish_first(self):
        """Equal scores prefer the newer video."""
        older = candidate(1, lexical=0.5, publish_date=T0)
        newer = candidate(2, lexical=0.5, publish_date=T0 + timedelta(days=1))
        assert [c.segment_id for c in self.reranker.rerank([older, newer])] == [2, 1]

    def test_undated_after_dated(self):
        """Videos without a publish date sort last among equals."""
        undated = candidate(1, lexical=0.5, publish_date=None)
        dated = candidate(2, lexical=0.5)
        assert [c.segment_id for c in self.reranker.rerank([undated, dated])] == [2, 1]

    def test_earlier_segment_then_id(self):
        """Same video and score: earlier segment first, then lower id."""
        late = candidate(1, lexical=0.5, segment_index=3)
        early_high_id = candidate(9, lexical=0.5, segment_index=1)
        early_low_id = candidate(5, lexical=0.5, segment_index=1)
        ranked = self.reranker.rerank([late, early_high_id, early_low_id])
        assert [c.segment_id for c in ranked] == [5, 9, 1]

    def test_order_independent_of_input(self):
        """Shuffled input produces the same ranking."""
        candidates = [candidate(i, lexical=0.5, segment_index=i % 2) for i in range(6)]
        forward = [c.segment_id for c in self.reranker.rerank(list(candidates))]
        backward = [c.segment_id for c in self.reranker.rerank(list(reversed(candidates)))]
        assert forward == backward
