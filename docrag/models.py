"""Database ORM models.

Defines persistent entities used by the chunking and retrieval pipeline:
- Chunk: a retrievable passage of a tenant document with a pgvector embedding,
  review status and quality score. Only approved, active chunks are searched.
- ResponseCacheEntry: a cached answer keyed by (tenant_id, query_hash) with the
  query embedding used for similarity lookups and an expiry timestamp.
"""
import uuid
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID

from docrag.config import settings
from docrag.db import Base


class Chunk(Base):
    """Vector-embedded document chunk used for retrieval.

    Indexes:
        - idx_chunks_tenant_status: tenant-scoped retrieval filter
        - idx_chunks_document: cascade deletes and re-chunking by document
        - idx_chunks_dataset: dataset-restricted searches
    """
    __tablename__ = "chunks"

    id = Column(UUID(as_uuid=False), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(64), nullable=False)
    dataset_id = Column(UUID(as_uuid=False), nullable=True)
    document_id = Column(UUID(as_uuid=False), nullable=False)

    chunk_index = Column(Integer, nullable=False, default=0)
    content = Column(Text, nullable=False)
    chunk_type = Column(String(16), nullable=False, default="paragraph")
    topic = Column(String(512), nullable=False, default="")
    quality_score = Column(Integer, nullable=False, default=0)
    start_offset = Column(Integer, nullable=False, default=0)
    end_offset = Column(Integer, nullable=False, default=0)

    status = Column(String(16), nullable=False, default="pending")
    auto_approved = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    version = Column(Integer, nullable=False, default=1)

    embedding = Column(Vector(dim=settings.EMBEDDING_DIM), nullable=False)
    metadata_ = Column("metadata", JSONB, nullable=False, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_chunks_tenant_status", "tenant_id", "status", "is_active"),
        Index("idx_chunks_document", "document_id"),
        Index("idx_chunks_dataset", "dataset_id"),
    )


class ResponseCacheEntry(Base):
    """Cached answer for a normalized query within a tenant."""
    __tablename__ = "response_cache"

    id = Column(UUID(as_uuid=False), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(64), nullable=False)
    query_hash = Column(String(64), nullable=False)
    query_embedding = Column(Vector(dim=settings.EMBEDDING_DIM), nullable=True)
    response = Column(Text, nullable=False)
    hit_count = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "query_hash", name="uq_response_cache_tenant_hash"),
        Index("idx_response_cache_expires", "expires_at"),
    )
