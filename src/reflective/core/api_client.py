"""Journal server client.

Thin typed wrapper around the server's JSON API. Every call is a single
request: no retries and no timeout beyond httpx's default. Any failure
surfaces as an :class:`~reflective.errors.APIError` and the caller decides
whether to try again.

Endpoints (relative to ``<server_url>/api``):
- POST /logs, PUT /logs/{id}, DELETE /logs/{id}, GET /logs
- POST /tags, GET /tags
- POST /search

With ``skip_api`` set, nothing goes over the network: creates echo the
request payload, lists come back empty and searches return no results.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError, field_serializer, field_validator

from reflective.config import Settings
from reflective.core.models import Entry, ProcessingStatus, Tag
from reflective.errors import InvalidResponseError, TransportError

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: Any) -> Any:
    """Accept the wire format; zone-aware values are converted to naive UTC."""
    if isinstance(value, str):
        try:
            value = datetime.strptime(value, TIMESTAMP_FORMAT)
        except ValueError:
            value = datetime.fromisoformat(value)
    if isinstance(value, datetime) and value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# =============================================================================
# Wire models
# =============================================================================

class TagPayload(BaseModel):
    """Tag as the server sends and receives it."""
    id: uuid.UUID
    name: str
    color: Optional[str] = None
    created_at: datetime

    @field_validator("created_at", mode="before")
    @classmethod
    def _parse_created(cls, value: Any) -> Any:
        return parse_timestamp(value)

    @field_serializer("created_at")
    def _serialize_created(self, value: datetime) -> str:
        return format_timestamp(value)

    @classmethod
    def from_tag(cls, tag: Tag) -> "TagPayload":
        return cls(id=tag.id, name=tag.name, color=tag.color, created_at=tag.created_at)


class LogPayload(BaseModel):
    """Entry as the server sends and receives it."""
    id: uuid.UUID
    content: str
    created_at: datetime
    updated_at: datetime
    word_count: int
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    tags: List[TagPayload] = Field(default_factory=list)

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _parse_timestamps(cls, value: Any) -> Any:
        return parse_timestamp(value)

    @field_serializer("created_at", "updated_at")
    def _serialize_timestamps(self, value: datetime) -> str:
        return format_timestamp(value)

    @classmethod
    def from_entry(cls, entry: Entry, tags: List[Tag]) -> "LogPayload":
        return cls(
            id=entry.id,
            content=entry.content or "",
            created_at=entry.created_at,
            updated_at=entry.updated_at,
            word_count=entry.word_count,
            processing_status=entry.processing_status or ProcessingStatus.PENDING,
            tags=[TagPayload.from_tag(tag) for tag in tags],
        )


class SearchResultPayload(BaseModel):
    log_id: uuid.UUID
    snippet_text: str
    snippet_start_index: int
    snippet_end_index: int
    context_before: Optional[str] = None
    context_after: Optional[str] = None
    relevance_score: float
    rank: int


class SearchResponse(BaseModel):
    query: str
    execution_time: float = 0.0
    results: List[SearchResultPayload] = Field(default_factory=list)


# =============================================================================
# Client
# =============================================================================

class ReflectiveAPIClient:
    """Client for the journal server's REST API."""

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the client.

        Args:
            settings: Source of the server URL and the ``skip_api`` switch
            http_client: Optional preconfigured client (tests pass one with a
                mock transport). When omitted, one is created lazily.
        """
        self.base_url = settings.api_base_url
        self.skip_api = settings.skip_api
        self._http_client = http_client
        self._owns_client = http_client is None

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                headers={"Content-Type": "application/json", "Accept": "application/json"}
            )
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> "ReflectiveAPIClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, json: Any = None) -> httpx.Response:
        url = f"{self.base_url}{path}"
        logger.debug(f"{method} {url}")
        try:
            response = await self.http_client.request(
                method,
                url,
                json=json,
                headers={"Content-Type": "application/json"},
            )
        except httpx.TransportError as e:
            logger.error(f"{method} {url} failed: {e}")
            raise TransportError(f"{method} {path}: {e}") from e

        logger.debug(f"Response status code: {response.status_code}")
        if not response.is_success:
            error_detail = response.text[:200] if response.text else ""
            logger.error(f"{method} {url} returned {response.status_code}: {error_detail}")
            raise InvalidResponseError(
                f"{method} {path}: HTTP {response.status_code}", status_code=response.status_code
            )
        return response

    @staticmethod
    def _decode(response: httpx.Response, model, many: bool = False):
        try:
            data = response.json()
            if many:
                if not isinstance(data, list):
                    raise InvalidResponseError(
                        f"Expected a JSON array, got {type(data).__name__}", response.status_code
                    )
                return [model.model_validate(item) for item in data]
            return model.model_validate(data)
        except (ValueError, ValidationError) as e:
            raise InvalidResponseError(
                f"Could not decode {model.__name__}: {e}", response.status_code
            ) from e

    # -- logs ---------------------------------------------------------------

    async def create_log(self, payload: LogPayload) -> LogPayload:
        """Create an entry; returns the server's canonical copy."""
        if self.skip_api:
            return payload
        response = await self._request("POST", "/logs", json=payload.model_dump(mode="json"))
        return self._decode(response, LogPayload)

    async def update_log(self, payload: LogPayload) -> None:
        if self.skip_api:
            return
        await self._request("PUT", f"/logs/{payload.id}", json=payload.model_dump(mode="json"))

    async def delete_log(self, log_id: uuid.UUID) -> None:
        if self.skip_api:
            return
        await self._request("DELETE", f"/logs/{log_id}")

    async def fetch_logs(self) -> List[LogPayload]:
        if self.skip_api:
            return []
        response = await self._request("GET", "/logs")
        return self._decode(response, LogPayload, many=True)

    # -- tags ---------------------------------------------------------------

    async def create_tag(self, payload: TagPayload) -> None:
        if self.skip_api:
            return
        await self._request("POST", "/tags", json=payload.model_dump(mode="json"))

    async def fetch_tags(self) -> List[TagPayload]:
        if self.skip_api:
            return []
        response = await self._request("GET", "/tags")
        return self._decode(response, TagPayload, many=True)

    # -- search -------------------------------------------------------------

    async def search(self, query: str) -> SearchResponse:
        if self.skip_api:
            return SearchResponse(query=query)
        response = await self._request("POST", "/search", json={"query": query})
        return self._decode(response, SearchResponse)
