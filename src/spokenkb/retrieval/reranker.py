"""
Hybrid Reranker
===============

Combines the three retrieval signals into one ranking key:

    score = w_lexical  * lexical_score            (BM25, best hit = 1.0)
          + w_vector   * vector_score             ((1 + cos) / 2)
          + w_emphasis * sigmoid(emphasis_score)  (0 when no emphasis score)

The emphasis term is multiplied by `low_confidence_discount` for segments whose
prosody was flagged low confidence. Weights are normalized to sum to 1.0 and
logged on every rerank.

Ties are broken by newer publish time, then lower segment index (earlier in
the video), then segment id, so equal inputs always produce the same order.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from spokenkb.utils.backoff import as_utc
from spokenkb.utils.logger import setup_worker_logger

logger = setup_worker_logger('reranker')


@dataclass
class RerankerWeights:
    """Configurable weights for the hybrid score."""
    lexical: float = 0.4
    vector: float = 0.45
    emphasis: float = 0.15
    low_confidence_discount: float = 0.5  # Multiplier on the emphasis term, not normalized

    def __post_init__(self):
        """Normalize weights to sum to 1.0 (excluding low_confidence_discount)."""
        if min(self.lexical, self.vector, self.emphasis) < 0:
            raise ValueError("Reranker weights must be non-negative")
        if not 0.0 <= self.low_confidence_discount <= 1.0:
            raise ValueError("low_confidence_discount must be within [0, 1]")
        total = self.lexical + self.vector + self.emphasis
        if total <= 0:
            raise ValueError("At least one reranker weight must be positive")
        self.lexical /= total
        self.vector /= total
        self.emphasis /= total

    @classmethod
    def from_config(cls, retrieval_config: Optional[Dict[str, Any]]) -> "RerankerWeights":
        weights = (retrieval_config or {}).get('weights', {})
        return cls(
            lexical=float(weights.get('lexical', 0.4)),
            vector=float(weights.get('vector', 0.45)),
            emphasis=float(weights.get('emphasis', 0.15)),
            low_confidence_discount=float(weights.get('low_confidence_discount', 0.5)),
        )

    @classmethod
    def text_only(cls) -> "RerankerWeights":
        """Preset ignoring prosody: lexical and vector only."""
        return cls(lexical=0.45, vector=0.55, emphasis=0.0)


@dataclass
class Candidate:
    """A segment surfaced by lexical and/or vector search, with its display fields."""
    segment_id: int
    segment_index: int
    video_id: str
    title: Optional[str]
    text: str
    start_time: float
    end_time: float
    source_url: Optional[str] = None
    publish_date: Optional[datetime] = None
    emphasis_score: Optional[float] = None
    low_confidence: bool = False
    lexical_score: float = 0.0
    vector_score: float = 0.0
    rerank_score: float = 0.0


def sigmoid(x: float) -> float:
    if x >= 0:
        return 1.0 / (1.0 + math.exp(-x))
    z = math.exp(x)
    return z / (1.0 + z)


class HybridReranker:
    """
    Scores and orders candidates.

    Usage:
        reranker = HybridReranker(RerankerWeights.from_config(retrieval_config))
        ranked = reranker.rerank(candidates)
    """

    def __init__(self, weights: Optional[RerankerWeights] = None):
        self.weights = weights or RerankerWeights()

    def emphasis_term(self, candidate: Candidate) -> float:
        if candidate.emphasis_score is None:
            return 0.0
        term = sigmoid(candidate.emphasis_score)
        if candidate.low_confidence:
            term *= self.weights.low_confidence_discount
        return term

    def score(self, candidate: Candidate) -> float:
        w = self.weights
        return (w.lexical * candidate.lexical_score
                + w.vector * candidate.vector_score
                + w.emphasis * self.emphasis_term(candidate))

    @staticmethod
    def sort_key(candidate: Candidate):
        published = as_utc(candidate.publish_date)
        # Undated videos sort after dated ones
        recency = -published.timestamp() if published else math.inf
        return (-candidate.rerank_score, recency, candidate.segment_index, candidate.segment_id)

    def rerank(self, candidates: List[Candidate]) -> List[Candidate]:
        """Score every candidate and return them best first."""
        w = self.weights
        logger.info(f"Reranking {len(candidates)} candidates with weights: "
                    f"lex={w.lexical:.2f}, vec={w.vector:.2f}, emph={w.emphasis:.2f}, "
                    f"low_conf_discount={w.low_confidence_discount:.2f}")
        for candidate in candidates:
            candidate.rerank_score = self.score(candidate)
        return sorted(candidates, key=self.sort_key)
