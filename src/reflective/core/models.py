import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Enum as SQLAEnum, Float, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from reflective.db import Base


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo so we never carry it."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def count_words(content: str) -> int:
    return len(content.split())


class ProcessingStatus(str, enum.Enum):
    """Server-side processing state of an entry."""
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


# Links carry no relationship() attributes: the cache's object graph owns
# navigation, these classes only describe rows.

class Entry(Base):
    """A journal entry ("log" on the wire)."""
    __tablename__ = "entries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    content: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(DateTime)
    word_count: Mapped[int] = mapped_column(Integer, default=0)
    processing_status: Mapped[ProcessingStatus] = mapped_column(
        SQLAEnum(ProcessingStatus), default=ProcessingStatus.PENDING
    )

    @classmethod
    def new(cls, content: str = "", entry_id: Optional[uuid.UUID] = None) -> "Entry":
        now = utcnow()
        return cls(
            id=entry_id or uuid.uuid4(),
            content=content,
            created_at=now,
            updated_at=now,
            word_count=count_words(content),
            processing_status=ProcessingStatus.PENDING,
        )

    @property
    def is_processed(self) -> bool:
        return self.processing_status == ProcessingStatus.PROCESSED

    @property
    def needs_processing(self) -> bool:
        return self.processing_status in (None, ProcessingStatus.PENDING, ProcessingStatus.FAILED)

    def __repr__(self) -> str:
        return f"Entry(id={self.id}, words={self.word_count}, status={self.processing_status})"


class Tag(Base):
    __tablename__ = "tags"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    # Case-insensitive uniqueness is kept by the reconciler, not by the schema
    name: Mapped[str] = mapped_column(String(256))
    color: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime)

    @classmethod
    def new(cls, name: str, color: Optional[str] = None, tag_id: Optional[uuid.UUID] = None) -> "Tag":
        return cls(id=tag_id or uuid.uuid4(), name=name, color=color, created_at=utcnow())

    def __repr__(self) -> str:
        return f"Tag(id={self.id}, name={self.name!r})"


class Link(Base):
    """Entry-Tag association. No unique constraint on (entry_id, tag_id)."""
    __tablename__ = "links"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    entry_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("entries.id"))
    tag_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("tags.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime)

    @classmethod
    def new(cls, entry: Entry, tag: Tag) -> "Link":
        return cls(id=uuid.uuid4(), entry_id=entry.id, tag_id=tag.id, created_at=utcnow())

    @property
    def pair(self) -> tuple:
        return (self.entry_id, self.tag_id)


class Query(Base):
    """One search invocation and its summary."""
    __tablename__ = "queries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    query_text: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    execution_time: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    result_count: Mapped[int] = mapped_column(Integer, default=0)

    @classmethod
    def new(cls, query_text: str) -> "Query":
        return cls(
            id=uuid.uuid4(),
            query_text=query_text,
            created_at=utcnow(),
            execution_time=None,
            result_count=0,
        )


class QueryResult(Base):
    __tablename__ = "query_results"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    query_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("queries.id"))
    entry_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("entries.id"))
    relevance_score: Mapped[float] = mapped_column(Float)
    snippet_text: Mapped[str] = mapped_column(Text)
    snippet_start_index: Mapped[int] = mapped_column(Integer)
    snippet_end_index: Mapped[int] = mapped_column(Integer)
    rank: Mapped[int] = mapped_column(Integer)
    context_before: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    context_after: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


# Dependency order for inserts; deletes run in reverse
MODELS = (Entry, Tag, Link, Query, QueryResult)
