"""
Vector search over segment embeddings of one model version.

PostgreSQL ranks with pgvector's cosine distance in the database. Other
backends (SQLite in tests) load the candidate vectors and rank with numpy.
Similarity is mapped from [-1, 1] to [0, 1] as (1 + cos) / 2.
"""
from typing import Dict, Sequence

import numpy as np
from sqlalchemy import select
from sqlalchemy.sql import Select

from spokenkb.database.models import Embedding


def to_unit_interval(cosine: float) -> float:
    return float(min(1.0, max(0.0, (1.0 + cosine) / 2.0)))


def cosine_similarities(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine of `query` against each row; zero-norm rows score 0."""
    query_norm = np.linalg.norm(query)
    row_norms = np.linalg.norm(matrix, axis=1)
    denominator = row_norms * query_norm
    dots = matrix @ query
    return np.divide(dots, denominator, out=np.zeros_like(dots), where=denominator > 0)


class VectorSearcher:
    """Top-k segments by cosine similarity to a query vector."""

    def __init__(self, top_k: int = 50):
        self.top_k = top_k

    def search(self, session, query_vector: Sequence[float], model_version: str,
               visible: Select) -> Dict[int, float]:
        vector = np.asarray(query_vector, dtype=np.float64)
        if session.bind.dialect.name == 'postgresql':
            return self._search_pgvector(session, vector, model_version, visible)
        return self._search_numpy(session, vector, model_version, visible)

    def _search_pgvector(self, session, vector: np.ndarray, model_version: str,
                         visible: Select) -> Dict[int, float]:
        distance = Embedding.vector.cosine_distance(vector.tolist())
        rows = session.execute(
            select(Embedding.segment_id, distance.label('distance'))
            .where(Embedding.model_version == model_version,
                   Embedding.dimension == len(vector),
                   Embedding.segment_id.in_(visible))
            .order_by(distance, Embedding.segment_id)
            .limit(self.top_k)
        ).all()
        return {segment_id: to_unit_interval(1.0 - float(d)) for segment_id, d in rows if d is not None}

    def _search_numpy(self, session, vector: np.ndarray, model_version: str,
                      visible: Select) -> Dict[int, float]:
        rows = session.execute(
            select(Embedding.segment_id, Embedding.vector)
            .where(Embedding.model_version == model_version,
                   Embedding.dimension == len(vector),
                   Embedding.segment_id.in_(visible))
            .order_by(Embedding.segment_id)
        ).all()
        if not rows:
            return {}
        segment_ids = [segment_id for segment_id, _ in rows]
        matrix = np.array([np.asarray(v, dtype=np.float64) for _, v in rows])
        similarities = cosine_similarities(vector, matrix)
        # Stable sort keeps lower segment ids first among equal similarities
        order = np.argsort(-similarities, kind='stable')[:self.top_k]
        return {segment_ids[i]: to_unit_interval(float(similarities[i])) for i in order}
