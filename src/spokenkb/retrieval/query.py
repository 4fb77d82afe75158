"""
Query Surface
=============

Pydantic request/response models and the validation layer in front of the
retrieval engine. Callers always get a SearchResponse back:

    status: 'ok' | 'degraded' | 'rejected'
    results: ranked SearchResult list (empty when rejected)
    degraded_stages: retrieval stages that were unavailable
    message: reason for rejection or degradation

Oversized or malformed requests raise QueryRejected internally and are
reported here; they never reach the engine or the pipeline.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from spokenkb.utils.backoff import as_utc
from spokenkb.utils.config import get_retrieval_config
from spokenkb.utils.error_codes import ErrorCode, QueryRejected
from spokenkb.utils.logger import setup_worker_logger
from .engine import HybridRetrievalEngine, RetrievalResult
from .lexical import tokenize

logger = setup_worker_logger('query')

RETRIEVAL_STAGE = 'retrieval'


class SearchFilters(BaseModel):
    """Optional result filters"""
    playlist_id: Optional[str] = Field(None, description="Only videos from this playlist")
    date_from: Optional[datetime] = Field(None, description="Earliest publish date (inclusive)")
    date_to: Optional[datetime] = Field(None, description="Latest publish date (inclusive)")

    @field_validator('date_from', 'date_to')
    @classmethod
    def normalize_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        """Naive datetimes are read as UTC."""
        return as_utc(value)

    @model_validator(mode='after')
    def check_date_range(self) -> 'SearchFilters':
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")
        return self


class SearchRequest(BaseModel):
    """Request for hybrid search"""
    query: str = Field(..., description="Search query text")
    filters: Optional[SearchFilters] = Field(None, description="Playlist / date range filters")
    max_results: Optional[int] = Field(None, description="Maximum results to return", ge=1)


class SearchResult(BaseModel):
    """One ranked segment. `text` is verbatim transcript data."""
    video_id: str
    title: Optional[str] = None
    text: str
    start_time: float
    end_time: float
    emphasis_score: Optional[float] = None
    low_confidence: bool = False
    deep_link: Optional[str] = None
    score: float

    @classmethod
    def from_retrieval(cls, result: RetrievalResult) -> 'SearchResult':
        return cls(
            video_id=result.video_id,
            title=result.title,
            text=result.text,
            start_time=result.start_time,
            end_time=result.end_time,
            emphasis_score=result.emphasis_score,
            low_confidence=result.low_confidence,
            deep_link=result.deep_link,
            score=result.score,
        )


class SearchResponse(BaseModel):
    """Response for every search call"""
    status: str
    results: List[SearchResult] = Field(default_factory=list)
    degraded_stages: List[str] = Field(default_factory=list)
    message: Optional[str] = None


class QuerySurface:
    """Validates and caps queries before they reach the engine."""

    def __init__(self, engine: HybridRetrievalEngine, config: Optional[Dict[str, Any]] = None):
        self.engine = engine
        rc = get_retrieval_config(config if config is not None else {})
        self.min_query_chars = int(rc['min_query_chars'])
        self.max_query_chars = int(rc['max_query_chars'])
        self.max_query_terms = int(rc['max_query_terms'])
        self.max_results = int(rc['max_results'])

    def validate(self, payload: Union[SearchRequest, Dict[str, Any]]) -> SearchRequest:
        """Parse and cap a request. Raises QueryRejected."""
        if isinstance(payload, SearchRequest):
            request = payload
        else:
            try:
                request = SearchRequest.model_validate(payload)
            except ValidationError as e:
                raise QueryRejected(f"Malformed request: {e.errors()[0]['msg']}",
                                    details={'errors': e.errors()})

        query = request.query.strip()
        if len(query) < self.min_query_chars:
            raise QueryRejected(f"Query must be at least {self.min_query_chars} characters")
        if len(query) > self.max_query_chars:
            raise QueryRejected(f"Query exceeds {self.max_query_chars} characters",
                                error_code=ErrorCode.QUERY_TOO_LONG)
        terms = tokenize(query)
        if not terms:
            raise QueryRejected("Query contains no searchable terms")
        if len(terms) > self.max_query_terms:
            raise QueryRejected(f"Query exceeds {self.max_query_terms} terms",
                                error_code=ErrorCode.QUERY_TOO_LONG)
        if request.max_results is not None and request.max_results > self.max_results:
            raise QueryRejected(f"max_results may not exceed {self.max_results}")

        return request.model_copy(update={'query': query})

    def search(self, payload: Union[SearchRequest, Dict[str, Any]]) -> SearchResponse:
        try:
            request = self.validate(payload)
        except QueryRejected as e:
            logger.info(f"Rejected query [{e.error_code.value}]: {e.message}")
            return SearchResponse(status='rejected', message=e.message)

        filters = request.filters or SearchFilters()
        try:
            response = self.engine.search(
                request.query,
                max_results=request.max_results,
                playlist_id=filters.playlist_id,
                date_from=filters.date_from,
                date_to=filters.date_to,
            )
        except Exception as e:
            logger.error(f"Retrieval failed for query {request.query!r}: {e}", exc_info=True)
            return SearchResponse(
                status='degraded',
                degraded_stages=[RETRIEVAL_STAGE],
                message=f"Unavailable: {RETRIEVAL_STAGE}",
            )
        results = [SearchResult.from_retrieval(r) for r in response.results]
        if response.degraded:
            return SearchResponse(
                status='degraded',
                results=results,
                degraded_stages=response.degraded_stages,
                message=f"Unavailable: {', '.join(response.degraded_stages)}",
            )
        return SearchResponse(status='ok', results=results)
