"""
Lexical search over verbatim segment text.

On PostgreSQL segments are ranked in the database with ts_rank against the
GIN tsvector index, any query term matching. Elsewhere candidates are narrowed
with ILIKE on each query term and scored here with Okapi BM25. Matching
lower-cases tokens; the stored text is never rewritten. Scores are normalized
by the best hit so the top lexical match is 1.0.
"""
import math
import re
from collections import Counter
from typing import Dict, Iterable, List, Mapping, Sequence

from sqlalchemy import func, literal_column, or_, select
from sqlalchemy.sql import Select

from spokenkb.database.models import Segment
from spokenkb.database.models.segments import TEXT_SEARCH_CONFIG, text_search_vector

TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)


def tokenize(text: str) -> List[str]:
    """Lower-cased word tokens used for matching only."""
    return TOKEN_PATTERN.findall(text.lower())


def query_terms(query: str) -> List[str]:
    """Distinct query tokens, first-occurrence order."""
    return list(dict.fromkeys(tokenize(query)))


def _like_pattern(term: str) -> str:
    escaped = term.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
    return f"%{escaped}%"


class BM25Scorer:
    """BM25 over a fixed candidate set.

    `corpus_size` is the number of visible segments (not just candidates) so
    idf reflects the whole index.
    """

    def __init__(self, documents: Mapping[int, str], corpus_size: int,
                 k1: float = 1.5, b: float = 0.75):
        self.k1 = k1
        self.b = b
        self.term_counts = {doc_id: Counter(tokenize(text)) for doc_id, text in documents.items()}
        self.lengths = {doc_id: sum(counts.values()) for doc_id, counts in self.term_counts.items()}
        self.corpus_size = max(corpus_size, len(documents))
        self.avg_length = (sum(self.lengths.values()) / len(self.lengths)) if self.lengths else 0.0

    def idf(self, term: str) -> float:
        df = sum(1 for counts in self.term_counts.values() if term in counts)
        n = self.corpus_size
        return math.log(1.0 + (n - df + 0.5) / (df + 0.5))

    def score(self, terms: Sequence[str]) -> Dict[int, float]:
        idf = {term: self.idf(term) for term in terms}
        scores: Dict[int, float] = {}
        for doc_id, counts in self.term_counts.items():
            length_norm = 1.0 - self.b + self.b * (self.lengths[doc_id] / self.avg_length if self.avg_length else 0.0)
            total = 0.0
            for term in terms:
                tf = counts.get(term, 0)
                if tf:
                    total += idf[term] * tf * (self.k1 + 1.0) / (tf + self.k1 * length_norm)
            if total > 0:
                scores[doc_id] = total
        return scores


def normalize_scores(scores: Mapping[int, float]) -> Dict[int, float]:
    """Scale so the best score is 1.0."""
    if not scores:
        return {}
    best = max(scores.values())
    if best <= 0:
        return {doc_id: 0.0 for doc_id in scores}
    return {doc_id: score / best for doc_id, score in scores.items()}


def top_k(scores: Mapping[int, float], k: int) -> Dict[int, float]:
    ranked = sorted(scores.items(), key=lambda item: (-item[1], item[0]))
    return dict(ranked[:k])


class LexicalSearcher:
    """Lexical search over segments visible through `visible` (a select of Segment.id)."""

    def __init__(self, k1: float = 1.5, b: float = 0.75, top_k: int = 200):
        self.k1 = k1
        self.b = b
        self.top_k = top_k

    def candidates_query(self, visible: Select, terms: Iterable[str]) -> Select:
        conditions = [Segment.text.ilike(_like_pattern(term), escape='\\') for term in terms]
        return (
            select(Segment.id, Segment.text)
            .where(Segment.id.in_(visible), or_(*conditions))
        )

    def ranked_query(self, visible: Select, terms: Sequence[str]) -> Select:
        tsquery = func.to_tsquery(literal_column(f"'{TEXT_SEARCH_CONFIG}'"), ' | '.join(terms))
        document = text_search_vector(Segment.text)
        rank = func.ts_rank(document, tsquery)
        return (
            select(Segment.id, rank.label('rank'))
            .where(Segment.id.in_(visible), document.bool_op('@@')(tsquery))
            .order_by(rank.desc(), Segment.id)
            .limit(self.top_k)
        )

    def search(self, session, query: str, visible: Select) -> Dict[int, float]:
        """Normalized lexical score per segment id, best first, at most top_k."""
        terms = query_terms(query)
        if not terms:
            return {}
        if session.bind.dialect.name == 'postgresql':
            return self._search_fulltext(session, terms, visible)
        return self._search_bm25(session, terms, visible)

    def _search_fulltext(self, session, terms: Sequence[str], visible: Select) -> Dict[int, float]:
        rows = session.execute(self.ranked_query(visible, terms)).all()
        return normalize_scores({segment_id: float(rank) for segment_id, rank in rows})

    def _search_bm25(self, session, terms: Sequence[str], visible: Select) -> Dict[int, float]:
        documents = dict(session.execute(self.candidates_query(visible, terms)).all())
        if not documents:
            return {}
        corpus_size = session.execute(
            select(func.count()).select_from(visible.subquery())
        ).scalar_one()
        raw = BM25Scorer(documents, corpus_size, self.k1, self.b).score(terms)
        return top_k(normalize_scores(raw), self.top_k)
