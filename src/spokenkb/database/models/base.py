"""
Base module for database models.

Contains the SQLAlchemy declarative base, enums, and column helpers shared
across all model modules.
"""

import enum
from sqlalchemy import JSON
from sqlalchemy.orm import declarative_base
from pgvector.sqlalchemy import Vector

from spokenkb.utils.backoff import utcnow


Base = declarative_base()


class ArtifactKind(str, enum.Enum):
    """Blob kinds kept in the artifact store"""
    AUDIO = "audio"
    TRANSCRIPT = "transcript"
    PROSODY = "prosody"


def vector_column_type():
    """pgvector column on PostgreSQL, JSON list everywhere else (SQLite tests)."""
    return Vector().with_variant(JSON(), 'sqlite')


__all__ = ['Base', 'ArtifactKind', 'vector_column_type', 'utcnow']
