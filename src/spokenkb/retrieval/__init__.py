"""
Hybrid retrieval over indexed segments: BM25, vector similarity and emphasis.
"""
from .engine import HybridRetrievalEngine, RetrievalResponse, RetrievalResult, deep_link
from .query import QuerySurface, SearchFilters, SearchRequest, SearchResponse, SearchResult
from .reranker import Candidate, HybridReranker, RerankerWeights

__all__ = [
    'HybridRetrievalEngine', 'RetrievalResponse', 'RetrievalResult', 'deep_link',
    'QuerySurface', 'SearchFilters', 'SearchRequest', 'SearchResponse', 'SearchResult',
    'Candidate', 'HybridReranker', 'RerankerWeights',
]
