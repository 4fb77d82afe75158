"""
Hybrid Retrieval Engine
=======================

Read-only search over indexed segments:

1. Lexical BM25 (spokenkb.retrieval.lexical)
2. Vector similarity with the current embedder version (spokenkb.retrieval.vector)
3. Union by segment id, keeping the best score per axis
4. Hybrid rerank with emphasis (spokenkb.retrieval.reranker)
5. Truncation to the hard result cap

Only segments of `indexed` videos are visible. If the lexical or vector stage
fails, the other stage's results are returned and the response is flagged
degraded with the failing stage named; a query never fails outright because
one backend is down.

Result text is returned verbatim as data.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import Select

from spokenkb.database.models import ProsodyFeatures, Segment, Video
from spokenkb.interfaces import Embedder
from spokenkb.processing.state.linear_state_model import VideoState
from spokenkb.utils.config import get_retrieval_config
from spokenkb.utils.logger import setup_worker_logger
from spokenkb.utils.timeouts import call_with_timeout
from .lexical import LexicalSearcher
from .reranker import Candidate, HybridReranker, RerankerWeights
from .vector import VectorSearcher

logger = setup_worker_logger('retrieval')

LEXICAL_STAGE = 'lexical'
VECTOR_STAGE = 'vector'


def deep_link(source_url: Optional[str], start_time: float) -> Optional[str]:
    """Source URL with a `t=<seconds>s` offset, replacing any existing `t`."""
    if not source_url:
        return None
    parts = urlsplit(source_url)
    params = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != 't']
    params.append(('t', f"{int(max(0.0, start_time))}s"))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(params), parts.fragment))


@dataclass
class RetrievalResult:
    """One ranked segment."""
    segment_id: int
    video_id: str
    title: Optional[str]
    text: str
    start_time: float
    end_time: float
    emphasis_score: Optional[float]
    low_confidence: bool
    deep_link: Optional[str]
    score: float
    lexical_score: float
    vector_score: float

    @classmethod
    def from_candidate(cls, candidate: Candidate) -> "RetrievalResult":
        return cls(
            segment_id=candidate.segment_id,
            video_id=candidate.video_id,
            title=candidate.title,
            text=candidate.text,
            start_time=candidate.start_time,
            end_time=candidate.end_time,
            emphasis_score=candidate.emphasis_score,
            low_confidence=candidate.low_confidence,
            deep_link=deep_link(candidate.source_url, candidate.start_time),
            score=candidate.rerank_score,
            lexical_score=candidate.lexical_score,
            vector_score=candidate.vector_score,
        )


@dataclass
class RetrievalResponse:
    results: List[RetrievalResult] = field(default_factory=list)
    degraded_stages: List[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.degraded_stages)


class HybridRetrievalEngine:
    """
    Lexical + vector retrieval with prosody-aware reranking.

    Usage:
        engine = HybridRetrievalEngine(session_factory, embedder, config)
        response = engine.search("interest rates", max_results=10,
                                 playlist_id="PL123")
    """

    def __init__(self, session_factory: sessionmaker, embedder: Optional[Embedder] = None,
                 config: Optional[Dict[str, Any]] = None):
        self.session_factory = session_factory
        self.embedder = embedder
        self.retrieval_config = get_retrieval_config(config if config is not None else {})
        rc = self.retrieval_config
        self.max_results = int(rc['max_results'])
        self.default_results = int(rc['default_results'])
        self.min_lexical_score = float(rc['min_lexical_score'])
        self.embed_timeout = rc.get('embed_timeout_seconds')
        self.lexical = LexicalSearcher(k1=float(rc['bm25_k1']), b=float(rc['bm25_b']),
                                       top_k=int(rc['lexical_top_k']))
        self.vector = VectorSearcher(top_k=int(rc['vector_top_k']))
        self.reranker = HybridReranker(RerankerWeights.from_config(rc))

    @staticmethod
    def visible_segments(playlist_id: Optional[str] = None, date_from: Optional[datetime] = None,
                         date_to: Optional[datetime] = None) -> Select:
        """Segment ids of indexed videos matching the filters."""
        query = (
            select(Segment.id)
            .join(Video, Video.id == Segment.video_id)
            .where(Video.processing_state == VideoState.INDEXED.value, Video.retired_at.is_(None))
        )
        if playlist_id:
            query = query.where(Video.playlist_id == playlist_id)
        if date_from:
            query = query.where(Video.publish_date >= date_from)
        if date_to:
            query = query.where(Video.publish_date <= date_to)
        return query

    def search(self, query: str, max_results: Optional[int] = None, playlist_id: Optional[str] = None,
               date_from: Optional[datetime] = None, date_to: Optional[datetime] = None) -> RetrievalResponse:
        limit = min(max_results or self.default_results, self.max_results)
        visible = self.visible_segments(playlist_id, date_from, date_to)
        degraded: List[str] = []

        with self.session_factory() as session:
            try:
                lexical_scores = self.lexical.search(session, query, visible)
            except Exception as e:
                logger.warning(f"Lexical stage unavailable: {e}", exc_info=True)
                session.rollback()
                lexical_scores = {}
                degraded.append(LEXICAL_STAGE)

            try:
                vector_scores = self._vector_search(session, query, visible)
            except Exception as e:
                logger.warning(f"Vector stage unavailable: {e}", exc_info=True)
                session.rollback()
                vector_scores = {}
                degraded.append(VECTOR_STAGE)

            merged = self._merge(lexical_scores, vector_scores)
            candidates = self._load_candidates(session, merged) if merged else []

        ranked = self.reranker.rerank(candidates)[:limit]
        logger.info(f"Query returned {len(ranked)} of {len(candidates)} candidates "
                    f"(lexical={len(lexical_scores)}, vector={len(vector_scores)}"
                    f"{', degraded: ' + ','.join(degraded) if degraded else ''})")
        return RetrievalResponse(
            results=[RetrievalResult.from_candidate(c) for c in ranked],
            degraded_stages=degraded,
        )

    def _vector_search(self, session, query: str, visible: Select) -> Dict[int, float]:
        if self.embedder is None:
            raise RuntimeError("no embedder configured")
        query_vector = call_with_timeout(self.embedder.embed, self.embed_timeout, query,
                                         description='query embedding')
        return self.vector.search(session, query_vector, self.embedder.model_version, visible)

    def _merge(self, lexical_scores: Dict[int, float],
               vector_scores: Dict[int, float]) -> Dict[int, Dict[str, float]]:
        """Union by segment id, max score per axis; weak lexical-only hits are dropped."""
        merged: Dict[int, Dict[str, float]] = {}
        for segment_id, score in lexical_scores.items():
            if score < self.min_lexical_score and segment_id not in vector_scores:
                continue
            entry = merged.setdefault(segment_id, {'lexical': 0.0, 'vector': 0.0})
            entry['lexical'] = max(entry['lexical'], score)
        for segment_id, score in vector_scores.items():
            entry = merged.setdefault(segment_id, {'lexical': 0.0, 'vector': 0.0})
            entry['vector'] = max(entry['vector'], score)
        return merged

    def _load_candidates(self, session, merged: Dict[int, Dict[str, float]]) -> List[Candidate]:
        rows = session.execute(
            select(Segment, Video.video_id, Video.title, Video.source_url, Video.publish_date,
                   ProsodyFeatures.emphasis_score, ProsodyFeatures.low_confidence)
            .join(Video, Video.id == Segment.video_id)
            .outerjoin(ProsodyFeatures, ProsodyFeatures.segment_id == Segment.id)
            .where(Segment.id.in_(list(merged)))
        ).all()

        candidates = []
        for segment, video_id, title, source_url, publish_date, emphasis, low_confidence in rows:
            scores = merged[segment.id]
            candidates.append(Candidate(
                segment_id=segment.id,
                segment_index=segment.segment_index,
                video_id=video_id,
                title=title,
                text=segment.text,
                start_time=segment.start_time,
                end_time=segment.end_time,
                source_url=source_url,
                publish_date=publish_date,
                emphasis_score=emphasis,
                low_confidence=bool(low_confidence),
                lexical_score=scores['lexical'],
                vector_score=scores['vector'],
            ))
        return candidates
