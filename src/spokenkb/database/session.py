"""Database session management."""

from contextlib import contextmanager
from typing import Any, Dict, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from spokenkb.utils.config import get_database_config
from spokenkb.utils.logger import setup_worker_logger

logger = setup_worker_logger('database')


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(url: str, echo: bool = False, pool: Optional[Dict[str, Any]] = None) -> Engine:
    """Create an engine for the given URL.

    PostgreSQL gets a sized, pre-pinged pool. SQLite (tests, single-node
    deployments) gets thread-safe connections, a busy timeout and foreign
    key enforcement.
    """
    pool = pool or {}
    if url.startswith('sqlite'):
        engine = create_engine(
            url,
            echo=echo,
            connect_args={'check_same_thread': False, 'timeout': 30},
        )
        event.listen(engine, 'connect', _enable_sqlite_foreign_keys)
        return engine

    return create_engine(
        url,
        echo=echo,
        pool_size=pool.get('size', 5),
        max_overflow=pool.get('max_overflow', 10),
        pool_recycle=pool.get('recycle', 3600),
        pool_pre_ping=pool.get('pre_ping', True),
    )


def create_session_factory(url: str, echo: bool = False, create_tables: bool = True) -> sessionmaker:
    """Engine + sessionmaker in one call; creates tables when asked."""
    engine = create_db_engine(url, echo=echo)
    if create_tables:
        from .models import Base
        Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


class Session:
    """Database session manager that handles connection configuration and pooling."""

    _instance = None

    def __new__(cls):
        """Ensure singleton pattern for session manager."""
        if cls._instance is None:
            cls._instance = super(Session, cls).__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        """Initialize session manager if not already initialized."""
        if self._initialized:
            return

        self.config = get_database_config()
        url = self.config['url']
        safe_url = url.split('@')[-1] if '@' in url else url
        logger.info(f"Creating database engine for {safe_url}")

        try:
            self._engine = create_db_engine(url, echo=self.config.get('echo', False),
                                            pool=self.config.get('pool'))
        except Exception as e:
            logger.error(f"Failed to create database engine: {str(e)}")
            raise

        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)
        self._initialized = True

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        return self._session_factory

    def get_session(self):
        """Get a database session from the pool."""
        return self._session_factory()

    def dispose(self):
        """Dispose of the engine and all pooled connections."""
        if self._engine is not None:
            logger.info("Disposing database engine and connection pool")
            self._engine.dispose()


# Global session manager instance (lazy initialized)
session_manager = None


def _get_session_manager() -> Session:
    """Get or create the global session manager instance."""
    global session_manager
    if session_manager is None:
        session_manager = Session()
    return session_manager


def get_engine() -> Engine:
    """Get the SQLAlchemy engine."""
    return _get_session_manager().engine


def get_session_factory() -> sessionmaker:
    """Get the configured sessionmaker."""
    return _get_session_manager().session_factory


@contextmanager
def get_session():
    """Context manager for database sessions."""
    session = _get_session_manager().get_session()
    try:
        yield session
    finally:
        session.close()


def init_db():
    """Create all tables that do not exist yet."""
    from .models import Base
    Base.metadata.create_all(get_engine())
