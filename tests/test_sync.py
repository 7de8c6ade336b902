"""Tests for the sync engine: full sync merge, write-through saves and searches."""

import asyncio
from datetime import timedelta

import pytest

from reflective.config import Settings
from reflective.core.api_client import SearchResponse
from reflective.core.cache import LocalCache
from reflective.core.models import Entry, Link, ProcessingStatus, Query, QueryResult, Tag, utcnow
from reflective.core.sync import SyncEngine, build_engine
from reflective.errors import SearchError, StorageError


def tag_names(cache, entry):
    return [tag.name for tag in cache.tags_for_entry(entry)]


# =============================================================================
# sync_all
# =============================================================================

class TestSyncAll:

    @pytest.mark.asyncio
    async def test_creates_remote_entries_with_tags(self, engine, cache, fake_client, make_log_payload, make_tag_payload):
        alice = make_tag_payload("Alice")
        payload = make_log_payload("Met #Alice", tags=[alice])
        fake_client.logs[payload.id] = payload
        fake_client.tags[alice.id] = alice

        report = await engine.sync_all()

        assert report.success
        assert report.entries_created == 1
        entry = cache.get(Entry, payload.id)
        assert entry.content == "Met #Alice"
        assert entry.processing_status is ProcessingStatus.PROCESSED
        assert tag_names(cache, entry) == ["Alice"]
        assert cache.get(Tag, alice.id).color == alice.color
        assert [e.id for e in cache.fetch(Entry)] == [payload.id]
        assert len(cache.fetch(Link)) == 1
        assert engine.last_sync_error is None
        assert engine.last_synced_at is not None

    @pytest.mark.asyncio
    async def test_remote_newer_overwrites_local(self, engine, cache, fake_client, make_log_payload):
        entry = Entry.new("local text")
        cache.add(entry)
        cache.save()
        remote = make_log_payload("remote text", entry_id=entry.id, updated_at=entry.updated_at + timedelta(seconds=5))
        fake_client.logs[entry.id] = remote

        report = await engine.sync_all()

        assert report.entries_updated == 1
        assert entry.content == "remote text"
        assert entry.updated_at == remote.updated_at
        assert entry.word_count == 2
        assert cache.fetch(Entry)[0].content == "remote text"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("offset", [timedelta(0), timedelta(seconds=-5)])
    async def test_local_same_or_newer_is_kept(self, engine, cache, fake_client, make_log_payload, offset):
        entry = Entry.new("local text")
        cache.add(entry)
        original_updated = entry.updated_at
        fake_client.logs[entry.id] = make_log_payload(
            "remote text", entry_id=entry.id, updated_at=original_updated + offset
        )

        report = await engine.sync_all()

        assert report.entries_unchanged == 1
        assert entry.content == "local text"
        assert entry.updated_at == original_updated

    @pytest.mark.asyncio
    async def test_applied_remote_entry_replaces_links(self, engine, cache, fake_client, make_log_payload, make_tag_payload):
        entry = Entry.new("#old")
        cache.add(entry)
        engine.reconciler.reconcile(entry, ["old"])
        new_tag = make_tag_payload("new")
        fake_client.logs[entry.id] = make_log_payload(
            "#new", entry_id=entry.id, tags=[new_tag], updated_at=entry.updated_at + timedelta(minutes=1)
        )

        await engine.sync_all()

        assert tag_names(cache, entry) == ["new"]
        assert cache.find_tag_by_name("old") is not None

    @pytest.mark.asyncio
    async def test_tags_overwritten_unconditionally(self, engine, cache, fake_client, make_tag_payload):
        tag = Tag.new("Alice", color="#111111")
        cache.add(tag)
        cache.save()
        renamed = make_tag_payload("Alicia", tag_id=tag.id, color="#222222")
        fake_client.tags[tag.id] = renamed

        report = await engine.sync_all()

        assert report.tags_updated == 1
        assert (tag.name, tag.color) == ("Alicia", "#222222")
        assert cache.fetch(Tag)[0].name == "Alicia"

    @pytest.mark.asyncio
    async def test_failure_is_recorded_and_flag_cleared(self, engine, fake_client):
        fake_client.failing.add("fetch_logs")

        report = await engine.sync_all()

        assert not report.success
        assert "connection refused" in report.error
        assert engine.last_sync_error == report.error
        assert engine.is_syncing is False
        assert fake_client.called("fetch_tags") == []

    @pytest.mark.asyncio
    async def test_success_clears_previous_error(self, engine, fake_client):
        fake_client.failing.add("fetch_tags")
        await engine.sync_all()
        fake_client.failing.clear()

        report = await engine.sync_all()

        assert report.success
        assert engine.last_sync_error is None

    @pytest.mark.asyncio
    async def test_overlapping_run_is_skipped(self, engine, fake_client):
        engine.is_syncing = True

        report = await engine.sync_all()

        assert report.skipped
        assert fake_client.calls == []

    @pytest.mark.asyncio
    async def test_ephemeral_mode_writes_nothing(self, ephemeral_engine, ephemeral_cache, fake_client, make_log_payload):
        payload = make_log_payload("only in memory")
        fake_client.logs[payload.id] = payload

        report = await ephemeral_engine.sync_all()

        assert report.success
        assert ephemeral_cache.get(Entry, payload.id) is not None
        assert ephemeral_cache.fetch(Entry) == []

    @pytest.mark.asyncio
    async def test_storage_failure_aborts_run(self, engine, cache, fake_client, make_log_payload, monkeypatch):
        payload = make_log_payload("text")
        fake_client.logs[payload.id] = payload

        def broken_save():
            raise StorageError("disk full")

        monkeypatch.setattr(cache, "save", broken_save)
        report = await engine.sync_all()

        assert not report.success
        assert engine.last_sync_error == "disk full"
        assert fake_client.called("fetch_tags") == []

    @pytest.mark.asyncio
    async def test_server_tag_differing_by_case_is_kept_with_warning(
        self, engine, cache, fake_client, make_tag_payload, caplog
    ):
        local = (await engine.save_entry("Met #Alice")).entry
        remote = make_tag_payload("alice")
        fake_client.tags[remote.id] = remote

        with caplog.at_level("WARNING", logger="reflective.core.sync"):
            report = await engine.sync_all()

        assert report.success
        assert sorted(t.name for t in cache.fetch(Tag)) == ["Alice", "alice"]
        assert tag_names(cache, local) == ["Alice"]
        assert "'alice'" in caplog.text
        assert "by name but not by id" in caplog.text


# =============================================================================
# save_entry
# =============================================================================

class TestSaveEntry:

    @pytest.mark.asyncio
    async def test_new_entry_is_written_through(self, engine, cache, fake_client):
        result = await engine.save_entry("Run with #Alice in the #park")

        assert result.success and result.created
        entry = result.entry
        assert entry.word_count == 6
        assert entry.processing_status is ProcessingStatus.PENDING
        assert tag_names(cache, entry) == ["Alice", "park"]

        (_, payload), = fake_client.called("create_log")
        assert payload.id == entry.id
        assert sorted(t.name for t in payload.tags) == ["Alice", "park"]
        assert [e.id for e in cache.fetch(Entry)] == [entry.id]
        assert len(cache.fetch(Link)) == 2

    @pytest.mark.asyncio
    async def test_existing_entry_uses_update(self, engine, cache, fake_client):
        entry = (await engine.save_entry("first")).entry

        result = await engine.save_entry("second version", entry)

        assert result.success and not result.created
        assert len(fake_client.called("update_log")) == 1
        assert cache.fetch(Entry)[0].content == "second version"

    @pytest.mark.asyncio
    async def test_processed_entry_goes_back_to_pending(self, engine, cache):
        entry = (await engine.save_entry("draft")).entry
        entry.processing_status = ProcessingStatus.PROCESSED

        await engine.save_entry("edited draft", entry)

        assert entry.processing_status is ProcessingStatus.PENDING

    @pytest.mark.asyncio
    async def test_failed_status_is_kept(self, engine):
        entry = (await engine.save_entry("draft")).entry
        entry.processing_status = ProcessingStatus.FAILED

        await engine.save_entry("edited draft", entry)

        assert entry.processing_status is ProcessingStatus.FAILED

    @pytest.mark.asyncio
    async def test_updated_at_never_moves_backwards(self, engine):
        entry = (await engine.save_entry("draft")).entry
        future = utcnow() + timedelta(hours=1)
        entry.updated_at = future

        await engine.save_entry("edited", entry)

        assert entry.updated_at >= future

    @pytest.mark.asyncio
    async def test_remote_failure_discards_new_entry(self, engine, cache, fake_client):
        fake_client.failing.add("create_log")

        result = await engine.save_entry("Brand new #idea")

        assert not result.success
        assert result.error.startswith("Failed to sync with server")
        assert cache.objects(Entry) == []
        assert cache.objects(Tag) == []
        assert cache.objects(Link) == []
        assert cache.has_changes is False
        assert cache.fetch(Entry) == []

    @pytest.mark.asyncio
    async def test_remote_failure_restores_existing_entry(self, engine, cache, fake_client):
        entry = (await engine.save_entry("Original #keep")).entry
        before = (entry.content, entry.updated_at, entry.word_count, entry.processing_status)
        fake_client.failing.add("update_log")

        result = await engine.save_entry("Rewritten #other words", entry)

        assert not result.success
        assert result.entry is entry
        assert (entry.content, entry.updated_at, entry.word_count, entry.processing_status) == before
        assert tag_names(cache, entry) == ["keep"]
        assert cache.find_tag_by_name("other") is None
        assert cache.fetch(Entry)[0].content == "Original #keep"

    @pytest.mark.asyncio
    async def test_end_to_end_case_folding_and_relink(self, engine, cache):
        result = await engine.save_entry("Met with #Alice and #alice today")
        entry = result.entry

        assert [t.name for t in cache.objects(Tag)] == ["Alice"]
        assert cache.association_count() == 1

        await engine.save_entry("Met with #Bob", entry)

        assert tag_names(cache, entry) == ["Bob"]
        assert cache.association_count() == 1
        assert sorted(t.name for t in cache.fetch(Tag)) == ["Alice", "Bob"]
        assert len(cache.fetch(Link)) == 1

    @pytest.mark.asyncio
    async def test_same_tag_in_two_saves_keeps_id(self, engine, cache):
        entry = (await engine.save_entry("#Work")).entry
        work_id = cache.find_tag_by_name("Work").id

        await engine.save_entry("#work again", entry)

        assert [t.id for t in cache.tags_for_entry(entry)] == [work_id]

    @pytest.mark.asyncio
    async def test_storage_failure_discards_new_entry(self, engine, cache, monkeypatch):
        def broken_persist(upserts, deletes):
            raise StorageError("disk full")

        monkeypatch.setattr(cache.store, "persist", broken_persist)
        result = await engine.save_entry("#lost")

        assert not result.success
        assert result.entry is None
        assert cache.objects(Entry) == []
        assert cache.objects(Tag) == []

    @pytest.mark.asyncio
    async def test_storage_failure_on_existing_entry_stays_pending(self, engine, cache, monkeypatch):
        entry = (await engine.save_entry("first")).entry
        original_persist = cache.store.persist

        def broken_persist(upserts, deletes):
            raise StorageError("disk full")

        monkeypatch.setattr(cache.store, "persist", broken_persist)
        result = await engine.save_entry("second", entry)

        assert not result.success
        assert entry.content == "second"
        assert cache.has_changes

        monkeypatch.setattr(cache.store, "persist", original_persist)
        cache.save()
        assert cache.fetch(Entry)[0].content == "second"

    @pytest.mark.asyncio
    async def test_sync_during_save_does_not_persist_unconfirmed_edit(self, engine, cache, fake_client):
        fake_client.gate = asyncio.Event()
        save_task = asyncio.create_task(engine.save_entry("Pending #draft"))
        await fake_client.entered.wait()

        report = await engine.sync_all()

        assert report.success
        assert cache.fetch(Entry) == []
        assert cache.fetch(Tag) == []

        fake_client.gate.set()
        result = await save_task

        assert result.success
        assert [e.id for e in cache.fetch(Entry)] == [result.entry.id]
        assert [t.name for t in cache.fetch(Tag)] == ["draft"]

    @pytest.mark.asyncio
    async def test_failed_save_keeps_copy_written_by_concurrent_sync(
        self, engine, cache, fake_client, make_log_payload, make_tag_payload
    ):
        entry = (await engine.save_entry("Slept in #morning")).entry
        fake_client.entered.clear()
        fake_client.gate = asyncio.Event()
        save_task = asyncio.create_task(engine.save_entry("Rewritten #draft", entry=entry))
        await fake_client.entered.wait()

        evening = make_tag_payload("evening")
        remote = make_log_payload(
            "From my phone #evening",
            tags=[evening],
            entry_id=entry.id,
            updated_at=utcnow() + timedelta(hours=1),
        )
        fake_client.logs[entry.id] = remote
        assert (await engine.sync_all()).success

        fake_client.failing.add("update_log")
        fake_client.gate.set()
        result = await save_task

        assert not result.success
        assert entry.content == "From my phone #evening"
        assert entry.updated_at == remote.updated_at
        assert [e.content for e in cache.fetch(Entry)] == ["From my phone #evening"]
        assert tag_names(cache, entry) == ["evening"]
        assert cache.find_tag_by_name("draft") is None
        assert [link.tag_id for link in cache.fetch(Link)] == [evening.id]


# =============================================================================
# perform_search
# =============================================================================

class TestPerformSearch:

    @pytest.mark.asyncio
    async def test_records_query_with_ranked_results(self, engine, cache, fake_client, make_search_result):
        first = (await engine.save_entry("walk in the park")).entry
        second = (await engine.save_entry("long walk home")).entry
        unknown = Entry.new("never synced")
        fake_client.search_response = SearchResponse(
            query="walk",
            execution_time=0.25,
            results=[
                make_search_result(second.id, rank=2),
                make_search_result(unknown.id, rank=3),
                make_search_result(first.id, rank=1),
            ],
        )

        query = await engine.perform_search("walk")

        assert query.result_count == 2
        assert query.execution_time == pytest.approx(0.25)
        results = cache.results_for_query(query)
        assert [(r.rank, r.entry_id) for r in results] == [(1, first.id), (2, second.id)]
        assert [q.id for q in cache.fetch(Query)] == [query.id]
        assert len(cache.fetch(QueryResult)) == 2
        assert cache.recent_queries() == [query]

    @pytest.mark.asyncio
    async def test_empty_results(self, engine, cache):
        query = await engine.perform_search("nothing")

        assert query.result_count == 0
        assert cache.fetch(Query)[0].query_text == "nothing"

    @pytest.mark.asyncio
    async def test_remote_failure_leaves_no_query(self, engine, cache, fake_client):
        fake_client.failing.add("search")

        with pytest.raises(SearchError):
            await engine.perform_search("walk")

        assert cache.objects(Query) == []
        assert cache.fetch(Query) == []
        assert cache.has_changes is False

    @pytest.mark.asyncio
    async def test_storage_failure_leaves_no_query(self, engine, cache, fake_client, make_search_result, monkeypatch):
        entry = (await engine.save_entry("walk")).entry
        fake_client.search_response = SearchResponse(query="walk", results=[make_search_result(entry.id, rank=1)])

        def broken_persist(upserts, deletes):
            raise StorageError("disk full")

        monkeypatch.setattr(cache.store, "persist", broken_persist)
        with pytest.raises(SearchError):
            await engine.perform_search("walk")

        assert cache.objects(Query) == []
        assert cache.objects(QueryResult) == []


# =============================================================================
# Supplemented operations
# =============================================================================

class TestEntryLifecycle:

    @pytest.mark.asyncio
    async def test_delete_entry(self, engine, cache, fake_client):
        entry = (await engine.save_entry("to remove #tmp")).entry

        assert await engine.delete_entry(entry) is True

        assert fake_client.called("delete_log") == [("delete_log", entry.id)]
        assert cache.get(Entry, entry.id) is None
        assert cache.fetch(Entry) == []
        assert cache.fetch(Link) == []
        assert [t.name for t in cache.fetch(Tag)] == ["tmp"]

    @pytest.mark.asyncio
    async def test_delete_entry_remote_failure_keeps_entry(self, engine, cache, fake_client):
        entry = (await engine.save_entry("stays")).entry
        fake_client.failing.add("delete_log")

        assert await engine.delete_entry(entry) is False
        assert cache.get(Entry, entry.id) is entry

    @pytest.mark.asyncio
    async def test_load_entry_from_server(self, ephemeral_engine, ephemeral_cache, fake_client, make_log_payload, make_tag_payload):
        payload = make_log_payload("Remote #only", tags=[make_tag_payload("only")])
        fake_client.logs[payload.id] = payload

        entry = await ephemeral_engine.load_entry(payload.id)

        assert entry.content == "Remote #only"
        assert tag_names(ephemeral_cache, entry) == ["only"]

    @pytest.mark.asyncio
    async def test_load_missing_entry(self, ephemeral_engine, make_log_payload):
        assert await ephemeral_engine.load_entry(make_log_payload("x").id) is None

    @pytest.mark.asyncio
    async def test_start_loads_durable_cache(self, engine, cache, fake_client, session_factory):
        saved = (await engine.save_entry("persisted #tag")).entry

        restarted = SyncEngine(LocalCache(session_factory), fake_client)
        assert await restarted.start() == 3

        entry = restarted.cache.get(Entry, saved.id)
        assert tag_names(restarted.cache, entry) == ["tag"]

    @pytest.mark.asyncio
    async def test_push_tags(self, engine, fake_client):
        await engine.save_entry("#a #b")

        assert await engine.push_tags() == 2
        assert sorted(p.name for _, p in fake_client.called("create_tag")) == ["a", "b"]


def test_build_engine_ephemeral_creates_no_database(tmp_path):
    db_file = tmp_path / "journal.db"
    settings = Settings(
        _env_file=None,
        database_url=f"sqlite:///{db_file}",
        server_only_mode=True,
    )

    engine = build_engine(settings)

    assert engine.cache.durable is False
    assert not db_file.exists()


def test_build_engine_durable_creates_database(tmp_path):
    db_file = tmp_path / "nested" / "journal.db"
    settings = Settings(_env_file=None, database_url=f"sqlite:///{db_file}")

    engine = build_engine(settings)

    assert engine.cache.durable is True
    assert db_file.exists()
