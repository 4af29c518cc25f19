"""Ingestion job status store backed by Redis.

Provides:
- StatusStore: protocol the ingestion pipeline reports to.
- get_redis: Cached Redis client from REDIS_URL with decode_responses.
- RedisStatusStore: ProcessingStatus JSON stored under a namespaced key with TTL.
"""
import logging
from typing import Optional, Protocol

import redis

from docrag.config import settings
from docrag.schemas import ProcessingStatus

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


class StatusStore(Protocol):
    def set_status(self, document_id: str, status: ProcessingStatus) -> None: ...

    def get_status(self, document_id: str) -> Optional[ProcessingStatus]: ...


def get_redis() -> redis.Redis:
    """Return a cached Redis client configured from settings.REDIS_URL.

    Returns:
        redis.Redis: Client with decode_responses=True.
    """
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_client


def _key_for_document(document_id: str) -> str:
    return f"docrag:status:v1:{document_id}"


class RedisStatusStore:
    """StatusStore writing one JSON document per ingestion job.

    Args:
        client: Redis client; defaults to get_redis().
        ttl_seconds: Expiry of a status entry; defaults to settings.STATUS_TTL_SECONDS.
    """

    def __init__(self, client: Optional[redis.Redis] = None, ttl_seconds: Optional[int] = None):
        self._client = client
        self.ttl_seconds = ttl_seconds or settings.STATUS_TTL_SECONDS

    @property
    def client(self) -> redis.Redis:
        return self._client or get_redis()

    def set_status(self, document_id: str, status: ProcessingStatus) -> None:
        self.client.setex(_key_for_document(document_id), self.ttl_seconds, status.model_dump_json())

    def get_status(self, document_id: str) -> Optional[ProcessingStatus]:
        raw = self.client.get(_key_for_document(document_id))
        if not raw:
            return None
        return ProcessingStatus.model_validate_json(raw)
