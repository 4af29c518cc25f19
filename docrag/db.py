"""Database setup and session utilities for SQLAlchemy.

This module centralizes engine/session initialization, metadata base, and helpers:
- init_db: Ensures the pgvector extension exists and creates required tables and the
  IVFFLAT indexes over chunks.embedding and response_cache.query_embedding.
- session_scope: Context-managed transactional scope for imperative workflows.

Configuration is read from docrag.config.settings.DATABASE_URL.
"""
from contextlib import contextmanager
from typing import Callable, Iterator

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from docrag.config import settings

engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True, future=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()

_VECTOR_INDEXES = {
    "idx_chunks_embedding_ivfflat": ("chunks", "embedding"),
    "idx_response_cache_embedding_ivfflat": ("response_cache", "query_embedding"),
}


def init_db() -> None:
    """Initialize database extensions, tables, and vector indexes.

    Idempotent; safe to run on every startup.
    """
    with engine.connect() as conn:
        conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        conn.commit()

    # Import models after Base is defined
    from docrag import models  # noqa: F401

    Base.metadata.create_all(bind=engine)

    # ivfflat needs ANALYZE after the tables are populated for good recall
    with engine.connect() as conn:
        for index_name, (table, column) in _VECTOR_INDEXES.items():
            conn.execute(
                text(
                    f"""
                    DO $$
                    BEGIN
                        IF NOT EXISTS (
                            SELECT 1 FROM pg_indexes WHERE indexname = '{index_name}'
                        ) THEN
                            CREATE INDEX {index_name}
                            ON {table} USING ivfflat ({column} vector_cosine_ops)
                            WITH (lists = 100);
                        END IF;
                    END$$;
                    """
                )
            )
        conn.commit()


@contextmanager
def session_scope(session_factory: Callable[[], Session] = SessionLocal) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations.

    Commits on success, rolls back and re-raises on error, always closes.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

