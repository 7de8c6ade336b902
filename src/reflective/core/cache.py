"""Local cache: an in-memory object graph over a pluggable storage strategy.

Every entity the engine works with lives in the :class:`ObjectGraph`. Where
those entities go when the cache is saved depends on the :class:`CacheStore`
strategy in use:

- :class:`DurableStore` commits pending changes to SQLite through SQLAlchemy.
- :class:`EphemeralStore` keeps everything in memory for the life of the
  process; fetching from it always yields nothing.

Switching strategy never migrates data, it only changes where later saves go.

Mutations are made inside ``async with cache.writer():`` so that no caller
observes another caller's half-applied change. The lock is never held across
a network call.
"""

import asyncio
import logging
import unicodedata
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Type

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from reflective.core.models import MODELS, Entry, Link, Query, QueryResult, Tag
from reflective.errors import StorageError

logger = logging.getLogger(__name__)

Key = Tuple[type, uuid.UUID]


def _key(obj) -> Key:
    return (type(obj), obj.id)


def _fold(text: str) -> str:
    """Case- and diacritic-insensitive form of a string."""
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c)).casefold()


# =============================================================================
# Storage strategies
# =============================================================================

class CacheStore(ABC):
    """Where cache changes go when saved, and where they are read back from."""

    durable: bool = False

    @abstractmethod
    def persist(self, upserts: Sequence, deletes: Sequence[Key]) -> None:
        """Write the given changes. Raises StorageError on failure."""
        ...

    @abstractmethod
    def fetch(self, model: type, *criteria, order_by=None) -> List: ...


class DurableStore(CacheStore):
    """SQLite-backed storage. Returned objects are detached from any session."""

    durable = True

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def persist(self, upserts: Sequence, deletes: Sequence[Key]) -> None:
        session = self.session_factory()
        try:
            doomed: Dict[type, List[uuid.UUID]] = {}
            for model, obj_id in deletes:
                doomed.setdefault(model, []).append(obj_id)
            for model in reversed(MODELS):
                if doomed.get(model):
                    session.execute(delete(model).where(model.id.in_(doomed[model])))

            by_model: Dict[type, List] = {}
            for obj in upserts:
                by_model.setdefault(type(obj), []).append(obj)
            for model in MODELS:
                for obj in by_model.get(model, []):
                    session.merge(obj)
                session.flush()

            session.commit()
            logger.debug(f"Committed {len(upserts)} upserts and {len(deletes)} deletes")
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Database error saving cache: {str(e)}") from e
        finally:
            session.close()

    def fetch(self, model: type, *criteria, order_by=None) -> List:
        session = self.session_factory()
        try:
            stmt = select(model)
            if criteria:
                stmt = stmt.where(*criteria)
            if order_by is not None:
                stmt = stmt.order_by(order_by)
            results = list(session.scalars(stmt).all())
            logger.debug(f"Fetched {len(results)} records of type {model.__name__}")
            return results
        except SQLAlchemyError as e:
            raise StorageError(f"Database error fetching {model.__name__}: {str(e)}") from e
        finally:
            session.close()


class EphemeralStore(CacheStore):
    """In-memory only: nothing is written and nothing can be read back."""

    durable = False

    def persist(self, upserts: Sequence, deletes: Sequence[Key]) -> None:
        logger.debug(f"Ephemeral mode: keeping {len(upserts) + len(deletes)} changes in memory")

    def fetch(self, model: type, *criteria, order_by=None) -> List:
        return []


# =============================================================================
# Object graph
# =============================================================================

class ChangeSet:
    """Objects touched while recording, with what was there before the first touch."""

    def __init__(self):
        self.original: Dict[Key, Optional[object]] = {}

    def touch(self, key: Key, previous: Optional[object]) -> None:
        if key not in self.original:
            self.original[key] = previous

    def __len__(self) -> int:
        return len(self.original)


class ObjectGraph:
    """Identity maps per entity kind plus the set of keys changed since the last save."""

    def __init__(self):
        self._objects: Dict[type, Dict[uuid.UUID, object]] = {model: {} for model in MODELS}
        self._links_by_entry: Dict[uuid.UUID, Dict[uuid.UUID, Link]] = {}
        self._links_by_tag: Dict[uuid.UUID, Dict[uuid.UUID, Link]] = {}
        self._pending: Dict[Key, None] = {}
        self._recording: Optional[ChangeSet] = None

    def get(self, model: type, obj_id: uuid.UUID):
        return self._objects[model].get(obj_id)

    def values(self, model: type) -> List:
        return list(self._objects[model].values())

    def links_for_entry(self, entry_id: uuid.UUID) -> List[Link]:
        return list(self._links_by_entry.get(entry_id, {}).values())

    def links_for_tag(self, tag_id: uuid.UUID) -> List[Link]:
        return list(self._links_by_tag.get(tag_id, {}).values())

    def put(self, obj, track: bool = True) -> None:
        key = _key(obj)
        previous = self._objects[key[0]].get(key[1])
        if previous is not None and previous is not obj:
            self._unindex(previous)
        self._objects[key[0]][key[1]] = obj
        self._index(obj)
        if track:
            self._touch(key, previous)

    def drop(self, obj, track: bool = True) -> None:
        key = _key(obj)
        previous = self._objects[key[0]].pop(key[1], None)
        if previous is None:
            return
        self._unindex(previous)
        if track:
            self._touch(key, previous)

    def _touch(self, key: Key, previous: Optional[object]) -> None:
        if self._recording is not None:
            self._recording.touch(key, previous)
        else:
            self._pending[key] = None

    def _index(self, obj) -> None:
        if isinstance(obj, Link):
            self._links_by_entry.setdefault(obj.entry_id, {})[obj.id] = obj
            self._links_by_tag.setdefault(obj.tag_id, {})[obj.id] = obj

    def _unindex(self, obj) -> None:
        if isinstance(obj, Link):
            self._links_by_entry.get(obj.entry_id, {}).pop(obj.id, None)
            self._links_by_tag.get(obj.tag_id, {}).pop(obj.id, None)

    @contextmanager
    def recording(self, changes: Optional[ChangeSet] = None) -> Iterator[ChangeSet]:
        if self._recording is not None:
            raise RuntimeError("Already recording changes")
        changes = changes if changes is not None else ChangeSet()
        self._recording = changes
        try:
            yield changes
        finally:
            self._recording = None

    def mark_pending(self, keys: Iterable[Key]) -> None:
        for key in keys:
            self._pending[key] = None

    def pending_changes(self) -> Tuple[List, List[Key]]:
        upserts, deletes = [], []
        for key in self._pending:
            obj = self._objects[key[0]].get(key[1])
            if obj is not None:
                upserts.append(obj)
            else:
                deletes.append(key)
        return upserts, deletes

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    def clear_pending(self) -> None:
        self._pending.clear()


# =============================================================================
# Cache
# =============================================================================

class LocalCache:
    """The in-process view of every entry, tag, link and search the app knows."""

    def __init__(self, session_factory: Optional[sessionmaker] = None, durable: bool = True):
        self._session_factory = session_factory
        self.graph = ObjectGraph()
        self.store: CacheStore = self._make_store(durable)
        self._lock = asyncio.Lock()

    def _make_store(self, durable: bool) -> CacheStore:
        if not durable:
            return EphemeralStore()
        if self._session_factory is None:
            raise ValueError("Durable mode needs a database session factory")
        return DurableStore(self._session_factory)

    @property
    def durable(self) -> bool:
        return self.store.durable

    @durable.setter
    def durable(self, enabled: bool) -> None:
        if enabled != self.store.durable:
            self.store = self._make_store(enabled)
            logger.info(f"Cache switched to {'durable' if enabled else 'ephemeral'} mode")

    def writer(self) -> asyncio.Lock:
        """Single-writer critical section: ``async with cache.writer(): ...``."""
        return self._lock

    # -- mutation -------------------------------------------------------------

    def add(self, obj) -> None:
        """Insert a new object or mark an existing one as changed."""
        self.graph.put(obj)

    def delete(self, obj) -> None:
        """Delete an object together with the rows that depend on it."""
        if isinstance(obj, Entry):
            for link in self.graph.links_for_entry(obj.id):
                self.graph.drop(link)
            for result in self.objects(QueryResult, lambda r: r.entry_id == obj.id):
                self.graph.drop(result)
        elif isinstance(obj, Tag):
            for link in self.graph.links_for_tag(obj.id):
                self.graph.drop(link)
        elif isinstance(obj, Query):
            for result in self.results_for_query(obj):
                self.graph.drop(result)
        self.graph.drop(obj)

    @contextmanager
    def record(self, changes: Optional[ChangeSet] = None) -> Iterator[ChangeSet]:
        """Collect changes aside from the pending set until staged or reverted.

        Pass an existing ChangeSet to keep adding to it across lock sections.
        """
        with self.graph.recording(changes) as recorded:
            yield recorded

    def stage(self, changes: ChangeSet) -> None:
        """Make recorded changes part of the next save."""
        self.graph.mark_pending(changes.original)

    def revert(self, changes: ChangeSet) -> None:
        """Undo recorded additions and removals. Field edits are the caller's to restore."""
        for (model, obj_id), original in changes.original.items():
            current = self.graph.get(model, obj_id)
            if original is None:
                if current is not None:
                    self.graph.drop(current, track=False)
            elif current is not original:
                self.graph.put(original, track=False)

    @property
    def has_changes(self) -> bool:
        return self.graph.has_pending

    def save(self) -> bool:
        """Persist pending changes. Returns False when there was nothing to do."""
        if not self.has_changes:
            return False
        upserts, deletes = self.graph.pending_changes()
        self.store.persist(upserts, deletes)
        self.graph.clear_pending()
        return True

    # -- reading --------------------------------------------------------------

    def fetch(self, model: type, *criteria, order_by=None) -> List:
        """Read straight from the storage strategy (always empty when ephemeral)."""
        return self.store.fetch(model, *criteria, order_by=order_by)

    def load(self) -> int:
        """Materialize everything stored into the graph. Returns the object count."""
        count = 0
        for model in MODELS:
            for obj in self.fetch(model):
                if self.graph.get(model, obj.id) is None:
                    self.graph.put(obj, track=False)
                    count += 1
        logger.info(f"Loaded {count} cached objects")
        return count

    def get(self, model: Type, obj_id: uuid.UUID):
        return self.graph.get(model, obj_id)

    def objects(
        self,
        model: Type,
        predicate: Optional[Callable[[object], bool]] = None,
        key: Optional[Callable] = None,
        reverse: bool = False,
    ) -> List:
        items = self.graph.values(model)
        if predicate is not None:
            items = [item for item in items if predicate(item)]
        if key is not None:
            items.sort(key=key, reverse=reverse)
        return items

    def links_for_entry(self, entry: Entry) -> List[Link]:
        return sorted(self.graph.links_for_entry(entry.id), key=lambda l: l.created_at)

    def links_for_tag(self, tag: Tag) -> List[Link]:
        return sorted(self.graph.links_for_tag(tag.id), key=lambda l: l.created_at, reverse=True)

    def find_link(self, entry: Entry, tag: Tag) -> Optional[Link]:
        for link in self.graph.links_for_entry(entry.id):
            if link.tag_id == tag.id:
                return link
        return None

    def tags_for_entry(self, entry: Entry) -> List[Tag]:
        tags = {}
        for link in self.graph.links_for_entry(entry.id):
            tag = self.graph.get(Tag, link.tag_id)
            if tag is not None:
                tags[tag.id] = tag
        return sorted(tags.values(), key=lambda t: t.name)

    def find_tag_by_name(self, name: str) -> Optional[Tag]:
        folded = name.casefold()
        for tag in self.graph.values(Tag):
            if tag.name.casefold() == folded:
                return tag
        return None

    def results_for_query(self, query: Query) -> List[QueryResult]:
        return sorted(
            self.objects(QueryResult, lambda r: r.query_id == query.id),
            key=lambda r: r.rank,
        )

    sorted_results = results_for_query

    # -- finders --------------------------------------------------------------

    def recent_entries(self) -> List[Entry]:
        return self.objects(Entry, key=lambda e: e.created_at, reverse=True)

    def entries_containing(self, text: str) -> List[Entry]:
        needle = _fold(text)
        return self.objects(
            Entry, lambda e: needle in _fold(e.content or ""), key=lambda e: e.created_at, reverse=True
        )

    def entries_on(self, day: date) -> List[Entry]:
        start = datetime.combine(day, time.min)
        end = start + timedelta(days=1)
        return self.objects(
            Entry, lambda e: start <= e.created_at < end, key=lambda e: e.created_at, reverse=True
        )

    def entries_with_tag(self, name: str) -> List[Entry]:
        return self.entries_with_any_tag([name])

    def entries_with_any_tag(self, names: Iterable[str]) -> List[Entry]:
        wanted = {name.casefold() for name in names}
        tag_ids = {tag.id for tag in self.graph.values(Tag) if tag.name.casefold() in wanted}
        entry_ids = {
            link.entry_id
            for tag_id in tag_ids
            for link in self.graph.links_for_tag(tag_id)
        }
        return self.objects(
            Entry, lambda e: e.id in entry_ids, key=lambda e: e.created_at, reverse=True
        )

    def recent_queries(self, limit: int = 50) -> List[Query]:
        return self.objects(Query, key=lambda q: q.created_at, reverse=True)[:limit]

    # -- statistics and maintenance -------------------------------------------

    def entry_count(self) -> int:
        return len(self.graph.values(Entry))

    def association_count(self) -> int:
        return len(self.graph.values(Link))

    def average_tag_count(self) -> float:
        entries = self.graph.values(Entry)
        if not entries:
            return 0.0
        total = sum(len(self.tags_for_entry(entry)) for entry in entries)
        return total / len(entries)

    def cleanup_orphaned_links(self) -> int:
        """Delete links whose entry or tag no longer exists. Returns the count removed."""
        orphaned = [
            link for link in self.graph.values(Link)
            if self.graph.get(Entry, link.entry_id) is None or self.graph.get(Tag, link.tag_id) is None
        ]
        for link in orphaned:
            self.graph.drop(link)
        if orphaned:
            logger.info(f"Removed {len(orphaned)} orphaned links")
        return len(orphaned)
