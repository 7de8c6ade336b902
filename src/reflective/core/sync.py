"""Sync Engine - Keeps the local cache and the journal server in agreement.

Three flows go through here:

1. ``sync_all`` pulls every entry and tag from the server and merges them into
   the cache. Entries follow last-writer-wins on ``updated_at``: the server
   copy replaces the local one only when it is strictly newer. Tags have no
   such protection and are overwritten on every run.
2. ``save_entry`` writes an edit through to the server *before* committing it
   locally. If the server refuses, the edit is undone in memory so the cache
   never holds content the server has not accepted.
3. ``perform_search`` runs a server search and records it as a Query with its
   ranked QueryResults. A failed search leaves no Query behind.

Cache mutations happen under ``cache.writer()``; network calls happen outside
of it.
"""

import logging
import uuid
from datetime import datetime
from typing import Iterable, List, Optional

from pydantic import BaseModel, ConfigDict

from reflective.config import Settings
from reflective.core.api_client import LogPayload, ReflectiveAPIClient, TagPayload
from reflective.core.cache import ChangeSet, LocalCache
from reflective.core.migrations import init_db
from reflective.core.models import (
    Entry,
    ProcessingStatus,
    Query,
    QueryResult,
    Tag,
    count_words,
    utcnow,
)
from reflective.core.reconciler import AssociationReconciler
from reflective.core.tags import extract_tags
from reflective.db import create_db_engine, create_session_factory
from reflective.errors import APIError, ReflectiveError, SearchError, StorageError

logger = logging.getLogger(__name__)


class SyncReport(BaseModel):
    """Result of one sync_all run."""
    success: bool
    skipped: bool = False
    entries_created: int = 0
    entries_updated: int = 0
    entries_unchanged: int = 0
    tags_created: int = 0
    tags_updated: int = 0
    error: Optional[str] = None


class SaveResult(BaseModel):
    """Result of a save_entry call."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    entry: Optional[Entry] = None
    created: bool = False
    error: Optional[str] = None


class _EntrySnapshot:
    """Field values of an entry before an edit, for rollback."""

    FIELDS = ("content", "updated_at", "word_count", "processing_status")

    def __init__(self, entry: Entry):
        self.values = {name: getattr(entry, name) for name in self.FIELDS}

    def restore(self, entry: Entry) -> None:
        for name, value in self.values.items():
            setattr(entry, name, value)


class SyncEngine:
    """Coordinates the local cache, the tag reconciler and the server client."""

    def __init__(
        self,
        cache: LocalCache,
        client: ReflectiveAPIClient,
        reconciler: Optional[AssociationReconciler] = None,
    ):
        self.cache = cache
        self.client = client
        self.reconciler = reconciler or AssociationReconciler(cache)

        self.is_syncing: bool = False
        self.last_sync_error: Optional[str] = None
        self.last_synced_at: Optional[datetime] = None

    async def start(self) -> int:
        """Bring stored objects into memory. Returns how many were loaded."""
        if not self.cache.durable:
            return 0
        async with self.cache.writer():
            return self.cache.load()

    async def aclose(self) -> None:
        await self.client.aclose()

    # =========================================================================
    # Full sync
    # =========================================================================

    async def sync_all(self) -> SyncReport:
        """
        Pull every entry and tag from the server and merge them locally.

        Does nothing if a run is already in progress. Any failure aborts the
        rest of the run and is kept in ``last_sync_error``; the next run
        starts over from scratch.

        Returns:
            SyncReport with per-phase counts
        """
        if self.is_syncing:
            logger.debug("Sync already in progress, skipping")
            return SyncReport(success=False, skipped=True)

        self.is_syncing = True
        report = SyncReport(success=False)
        try:
            remote_logs = await self.client.fetch_logs()
            async with self.cache.writer():
                for payload in remote_logs:
                    self._merge_entry(payload, report)
                self.cache.save()

            remote_tags = await self.client.fetch_tags()
            async with self.cache.writer():
                for payload in remote_tags:
                    self._merge_tag(payload, report)
                self.cache.save()

            report.success = True
            self.last_sync_error = None
            self.last_synced_at = utcnow()
            logger.info(
                f"Sync complete: {report.entries_created} new, {report.entries_updated} updated, "
                f"{report.entries_unchanged} unchanged entries; {len(remote_tags)} tags"
            )
        except ReflectiveError as e:
            self.last_sync_error = str(e)
            report.error = str(e)
            logger.error(f"Sync failed: {e}")
        finally:
            self.is_syncing = False
        return report

    def _merge_entry(self, payload: LogPayload, report: SyncReport) -> None:
        local = self.cache.get(Entry, payload.id)
        if local is None:
            entry = Entry(
                id=payload.id,
                content=payload.content,
                created_at=payload.created_at,
                updated_at=payload.updated_at,
                word_count=payload.word_count,
                processing_status=payload.processing_status,
            )
            self.cache.add(entry)
            self._apply_payload_tags(entry, payload.tags)
            report.entries_created += 1
        elif local.updated_at is None or payload.updated_at > local.updated_at:
            self._overwrite_entry(local, payload)
            report.entries_updated += 1
        else:
            # Local copy is as new or newer: unsynced local edits are kept
            report.entries_unchanged += 1

    def _overwrite_entry(self, entry: Entry, payload: LogPayload) -> None:
        entry.content = payload.content
        entry.updated_at = payload.updated_at
        entry.word_count = payload.word_count
        entry.processing_status = payload.processing_status
        self.cache.add(entry)
        self._apply_payload_tags(entry, payload.tags)

    def _apply_payload_tags(self, entry: Entry, tag_payloads: Iterable[TagPayload]) -> None:
        tags = []
        for tag_payload in tag_payloads:
            tag = self.cache.get(Tag, tag_payload.id)
            if tag is None:
                self._warn_name_clash(tag_payload)
                tag = Tag(
                    id=tag_payload.id,
                    name=tag_payload.name,
                    color=tag_payload.color,
                    created_at=tag_payload.created_at,
                )
                self.cache.add(tag)
            tags.append(tag)
        self.reconciler.set_links(entry, tags)

    def _warn_name_clash(self, payload: TagPayload) -> None:
        existing = self.cache.find_tag_by_name(payload.name)
        if existing is not None and existing.id != payload.id:
            logger.warning(
                f"Server tag {payload.name!r} ({payload.id}) matches local tag "
                f"{existing.name!r} ({existing.id}) by name but not by id; keeping both"
            )

    def _merge_tag(self, payload: TagPayload, report: SyncReport) -> None:
        tag = self.cache.get(Tag, payload.id)
        if tag is None:
            self._warn_name_clash(payload)
            tag = Tag(
                id=payload.id,
                name=payload.name,
                color=payload.color,
                created_at=payload.created_at,
            )
            report.tags_created += 1
        else:
            # No last-writer-wins for tags: the server copy always wins
            tag.name = payload.name
            tag.color = payload.color
            report.tags_updated += 1
        self.cache.add(tag)

    # =========================================================================
    # Search
    # =========================================================================

    async def perform_search(self, query_text: str) -> Query:
        """
        Run a server search and record it with its ranked results.

        Results pointing at entries the cache does not know are skipped.

        Raises:
            SearchError: the server call or the local commit failed. The
                Query and any results created for it are discarded.
        """
        async with self.cache.writer():
            with self.cache.record() as changes:
                query = Query.new(query_text)
                self.cache.add(query)

        try:
            response = await self.client.search(query_text)
        except APIError as e:
            async with self.cache.writer():
                self.cache.revert(changes)
            logger.error(f"Search for {query_text!r} failed: {e}")
            raise SearchError(f"Search failed: {e}") from e

        async with self.cache.writer():
            with self.cache.record(changes):
                stored = 0
                for item in sorted(response.results, key=lambda r: r.rank):
                    if self.cache.get(Entry, item.log_id) is None:
                        logger.debug(f"Skipping search result for unknown entry {item.log_id}")
                        continue
                    self.cache.add(QueryResult(
                        id=uuid.uuid4(),
                        query_id=query.id,
                        entry_id=item.log_id,
                        relevance_score=item.relevance_score,
                        snippet_text=item.snippet_text,
                        snippet_start_index=item.snippet_start_index,
                        snippet_end_index=item.snippet_end_index,
                        rank=item.rank,
                        context_before=item.context_before,
                        context_after=item.context_after,
                    ))
                    stored += 1
                query.execution_time = response.execution_time
                query.result_count = stored

            self.cache.stage(changes)
            try:
                self.cache.save()
            except StorageError as e:
                # Pending keys now resolve to deletes, so no rows outlive the query
                self.cache.revert(changes)
                logger.error(f"Could not store search results: {e}")
                raise SearchError(f"Search failed: {e}") from e

        logger.info(f"Search {query_text!r}: {query.result_count} results in {query.execution_time}s")
        return query

    # =========================================================================
    # Entry write-through
    # =========================================================================

    async def save_entry(self, content: str, entry: Optional[Entry] = None) -> SaveResult:
        """
        Save new content for an entry (or a new entry when ``entry`` is None).

        The word count, timestamp, processing status and tag links are updated
        in memory, the server is told (create or update), and only then is the
        change committed locally. A server failure rolls the in-memory edit
        back.

        Returns:
            SaveResult; ``success`` is False with ``error`` set on failure
        """
        async with self.cache.writer():
            is_new = entry is None or self.cache.get(Entry, entry.id) is None
            snapshot = None
            if entry is None:
                entry = Entry.new(content)
            elif is_new:
                entry.created_at = entry.created_at or utcnow()
            else:
                snapshot = _EntrySnapshot(entry)

            with self.cache.record() as changes:
                self._apply_edit(entry, content)
                self.cache.add(entry)
                outcome = self.reconciler.reconcile(entry, extract_tags(content))
            edited = (entry.content, entry.updated_at)
            if not outcome.success:
                logger.warning(f"Tag processing failed for entry {entry.id}: {outcome.error}")

            payload = LogPayload.from_entry(entry, self.cache.tags_for_entry(entry))

        try:
            if is_new:
                await self.client.create_log(payload)
            else:
                await self.client.update_log(payload)
        except APIError as e:
            async with self.cache.writer():
                if snapshot is not None and (entry.content, entry.updated_at) != edited:
                    # A sync applied a newer server copy meanwhile; its links stand
                    self._keep_synced_copy(changes)
                    logger.warning(f"Entry {entry.id} was replaced by a sync while saving; keeping the synced copy")
                else:
                    self.cache.revert(changes)
                    if snapshot is not None:
                        snapshot.restore(entry)
            logger.error(f"Failed to sync entry {entry.id} with server: {e}")
            return SaveResult(
                success=False,
                entry=None if is_new else entry,
                error=f"Failed to sync with server: {e}",
            )

        async with self.cache.writer():
            self.cache.stage(changes)
            try:
                self.cache.save()
            except StorageError as e:
                if is_new:
                    self.cache.revert(changes)
                    logger.error(f"Failed to store new entry {entry.id}, discarded: {e}")
                    return SaveResult(success=False, error=f"Failed to save entry: {e}")
                # The server has it; the change stays pending for the next save
                logger.error(f"Failed to store entry {entry.id}: {e}")
                return SaveResult(success=False, entry=entry, error=f"Failed to save entry: {e}")

        logger.info(f"Saved entry {entry.id} with {len(payload.tags)} tags")
        return SaveResult(success=True, entry=entry, created=is_new)

    def _keep_synced_copy(self, changes: ChangeSet) -> None:
        """Settle a failed edit whose entry was meanwhile overwritten by a sync.

        Tags the edit introduced that ended up unlinked are dropped. Every
        other recorded key already reflects the synced copy and is staged so
        the store matches memory.
        """
        kept = ChangeSet()
        for (model, obj_id), original in changes.original.items():
            current = self.cache.get(model, obj_id)
            if model is Tag and original is None and current is not None:
                if not self.cache.links_for_tag(current):
                    self.cache.graph.drop(current, track=False)
                    continue
            kept.touch((model, obj_id), original)
        self.cache.stage(kept)
        try:
            self.cache.save()
        except StorageError as e:
            logger.error(f"Failed to store synced links: {e}")

    @staticmethod
    def _apply_edit(entry: Entry, content: str) -> None:
        now = utcnow()
        entry.content = content
        entry.word_count = count_words(content)
        entry.updated_at = max(now, entry.updated_at) if entry.updated_at else now
        if entry.processing_status in (None, ProcessingStatus.PROCESSED):
            entry.processing_status = ProcessingStatus.PENDING

    async def delete_entry(self, entry: Entry) -> bool:
        """Delete an entry on the server, then locally. Returns False on failure."""
        try:
            await self.client.delete_log(entry.id)
        except APIError as e:
            logger.error(f"Failed to delete entry {entry.id} on server: {e}")
            return False

        async with self.cache.writer():
            self.cache.delete(entry)
            try:
                self.cache.save()
            except StorageError as e:
                logger.error(f"Failed to delete entry {entry.id} locally: {e}")
                return False
        return True

    async def load_entry(self, entry_id: uuid.UUID) -> Optional[Entry]:
        """
        Fetch one entry from the server into the cache, tags included.

        Used to open an entry when running in server-only mode. The server
        copy replaces whatever is in memory.

        Raises:
            APIError: the server could not be reached or answered badly
        """
        remote_logs = await self.client.fetch_logs()
        payload = next((p for p in remote_logs if p.id == entry_id), None)
        if payload is None:
            logger.info(f"No entry found on server with ID: {entry_id}")
            return None

        async with self.cache.writer():
            entry = self.cache.get(Entry, entry_id)
            if entry is None:
                entry = Entry(id=payload.id, created_at=payload.created_at)
            self._overwrite_entry(entry, payload)
            self.cache.save()
        return entry

    # =========================================================================
    # Tags
    # =========================================================================

    async def push_tags(self, tags: Optional[List[Tag]] = None) -> int:
        """Send tags to the server (all cached tags by default). Returns the count sent."""
        tags = tags if tags is not None else self.cache.objects(Tag)
        for tag in tags:
            await self.client.create_tag(TagPayload.from_tag(tag))
        return len(tags)


def build_engine(settings: Settings, client: Optional[ReflectiveAPIClient] = None) -> SyncEngine:
    """
    Wire up a SyncEngine from settings.

    The database is only created in durable mode, so server-only mode leaves
    no files behind.
    """
    session_factory = None
    if settings.durable:
        db_path = settings.get_db_path()
        if db_path is not None:
            db_path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_db_engine(settings.database_url)
        init_db(engine)
        session_factory = create_session_factory(engine)

    cache = LocalCache(session_factory, durable=settings.durable)
    return SyncEngine(cache, client or ReflectiveAPIClient(settings))
