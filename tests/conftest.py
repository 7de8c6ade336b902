"""Shared fixtures: in-memory databases, caches and a scriptable fake server client."""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytest

from reflective.core.api_client import LogPayload, SearchResponse, SearchResultPayload, TagPayload
from reflective.core.cache import LocalCache
from reflective.core.migrations import init_db
from reflective.core.models import ProcessingStatus, count_words, utcnow
from reflective.core.sync import SyncEngine
from reflective.db import create_db_engine, create_session_factory
from reflective.errors import TransportError


@pytest.fixture
def session_factory():
    """In-memory SQLite shared by every session of one test."""
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def cache(session_factory):
    return LocalCache(session_factory, durable=True)


@pytest.fixture
def ephemeral_cache():
    return LocalCache(durable=False)


class FakeJournalClient:
    """
    Stands in for ReflectiveAPIClient.

    Keeps logs and tags in dicts, records every call, and raises
    TransportError for any method named in ``failing``. Setting ``gate`` to
    an asyncio.Event makes create/update calls wait on it.
    """

    def __init__(self):
        self.logs: Dict[uuid.UUID, LogPayload] = {}
        self.tags: Dict[uuid.UUID, TagPayload] = {}
        self.search_response: Optional[SearchResponse] = None
        self.failing: set = set()
        self.calls: List[tuple] = []
        self.gate: Optional[asyncio.Event] = None
        self.entered = asyncio.Event()
        self.closed = False

    def _call(self, name: str, *args):
        self.calls.append((name, *args))
        if name in self.failing:
            raise TransportError(f"{name}: connection refused")

    def called(self, name: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == name]

    async def _wait_gate(self):
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()

    async def create_log(self, payload: LogPayload) -> LogPayload:
        await self._wait_gate()
        self._call("create_log", payload)
        self.logs[payload.id] = payload
        return payload

    async def update_log(self, payload: LogPayload) -> None:
        await self._wait_gate()
        self._call("update_log", payload)
        self.logs[payload.id] = payload

    async def delete_log(self, log_id: uuid.UUID) -> None:
        self._call("delete_log", log_id)
        self.logs.pop(log_id, None)

    async def fetch_logs(self) -> List[LogPayload]:
        self._call("fetch_logs")
        return list(self.logs.values())

    async def create_tag(self, payload: TagPayload) -> None:
        self._call("create_tag", payload)
        self.tags[payload.id] = payload

    async def fetch_tags(self) -> List[TagPayload]:
        self._call("fetch_tags")
        return list(self.tags.values())

    async def search(self, query: str) -> SearchResponse:
        self._call("search", query)
        return self.search_response or SearchResponse(query=query)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def fake_client():
    return FakeJournalClient()


@pytest.fixture
def engine(cache, fake_client):
    return SyncEngine(cache, fake_client)


@pytest.fixture
def ephemeral_engine(ephemeral_cache, fake_client):
    return SyncEngine(ephemeral_cache, fake_client)


@pytest.fixture
def make_tag_payload():
    def factory(name: str, tag_id: Optional[uuid.UUID] = None, color: Optional[str] = "#336699") -> TagPayload:
        return TagPayload(id=tag_id or uuid.uuid4(), name=name, color=color, created_at=utcnow())
    return factory


@pytest.fixture
def make_log_payload():
    def factory(
        content: str,
        tags: Optional[List[TagPayload]] = None,
        entry_id: Optional[uuid.UUID] = None,
        updated_at: Optional[datetime] = None,
        status: ProcessingStatus = ProcessingStatus.PROCESSED,
    ) -> LogPayload:
        now = utcnow()
        return LogPayload(
            id=entry_id or uuid.uuid4(),
            content=content,
            created_at=now - timedelta(days=1),
            updated_at=updated_at or now,
            word_count=count_words(content),
            processing_status=status,
            tags=tags or [],
        )
    return factory


@pytest.fixture
def make_search_result():
    def factory(log_id: uuid.UUID, rank: int, score: float = 0.9, snippet: str = "match") -> SearchResultPayload:
        return SearchResultPayload(
            log_id=log_id,
            snippet_text=snippet,
            snippet_start_index=0,
            snippet_end_index=len(snippet),
            relevance_score=score,
            rank=rank,
        )
    return factory
