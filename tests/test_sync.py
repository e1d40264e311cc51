"""Tests for mirrored collections and the realtime reconciler."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from models.events import SubscriptionStatus
from models.request import Request
from services.memory_store import MemoryStore
from services.queue_service import QueueService
from services.sync import EntityCollection, RequestSync, SetListSync, SongSync

T0 = datetime(2026, 10, 15, 20, 0, tzinfo=timezone.utc)


def stamp(seconds: int) -> str:
    return (T0 + timedelta(seconds=seconds)).isoformat()


def request_row(request_id="R1", votes=0, updated=0, **fields):
    return {"id": request_id, "title": "Wonderwall", "votes": votes, "updated_at": stamp(updated), **fields}


class RacingStore(MemoryStore):
    """Commits a write from 'another client' right after a snapshot is read."""

    def __init__(self):
        super().__init__()
        self.race = None

    async def select(self, table, *args, **kwargs):
        rows = await super().select(table, *args, **kwargs)
        if self.race is not None:
            race, self.race = self.race, None
            await race()
        return rows


class TestEntityCollection:
    def test_duplicate_insert_keeps_one_entity(self):
        collection = EntityCollection(Request.from_row)
        collection.upsert(request_row())
        collection.upsert(request_row())
        assert len(collection) == 1

    def test_update_of_unknown_inserts(self):
        collection = EntityCollection(Request.from_row)
        assert collection.upsert(request_row("R9", votes=4)) is True
        assert collection.get("R9").votes == 4

    def test_delete_of_unknown_is_noop(self):
        collection = EntityCollection(Request.from_row)
        assert collection.remove("missing") is False
        assert len(collection) == 0

    def test_stale_update_is_ignored(self):
        collection = EntityCollection(Request.from_row)
        collection.upsert(request_row(votes=5, updated=10))
        assert collection.upsert(request_row(votes=3, updated=5)) is False
        assert collection.get("R1").votes == 5

    def test_deleted_row_is_not_resurrected_by_stale_event(self):
        collection = EntityCollection(Request.from_row)
        collection.upsert(request_row(updated=1))
        collection.remove("R1", T0 + timedelta(seconds=10))

        assert collection.upsert(request_row(updated=5)) is False
        assert "R1" not in collection
        assert collection.upsert(request_row(updated=20)) is True

    def test_merge_keeps_embedded_children(self):
        collection = EntityCollection(Request.from_row)
        requester = {"id": "P1", "request_id": "R1", "name": "Sam"}
        collection.upsert(request_row(requesters=[requester]))
        collection.upsert(request_row(votes=1, updated=1))
        assert [r.name for r in collection.get("R1").requesters] == ["Sam"]

    def test_listeners_see_changes(self):
        collection = EntityCollection(Request.from_row)
        seen = []
        collection.add_listener(lambda entity_id, row: seen.append((entity_id, row is not None)))
        collection.upsert(request_row())
        collection.remove("R1")
        assert seen == [("R1", True), ("R1", False)]

    def test_replace_all_reports_removals(self):
        collection = EntityCollection(Request.from_row)
        collection.upsert(request_row("R1"))
        removed = []
        collection.add_listener(lambda entity_id, row: row is None and removed.append(entity_id))
        collection.replace_all([request_row("R2")])
        assert collection.ids == ["R2"]
        assert removed == ["R1"]


@pytest.mark.asyncio
class TestRealtimeSync:
    async def test_snapshot_then_live_events(self, store, settings):
        await store.insert("songs", {"title": "Creep", "artist": "Radiohead"})
        sync = SongSync(store, settings)
        await sync.start()
        assert sync.is_live
        assert [s.title for s in sync.collection.items()] == ["Creep"]

        created = (await store.insert("songs", {"title": "Africa", "artist": "Toto"}))[0]
        await store.update("songs", {"artist": "TOTO"}, {"id": created["id"]})
        await store.flush()
        assert [s.artist for s in sync.collection.items()] == ["TOTO", "Radiohead"]

        await store.delete("songs", {"id": created["id"]})
        await store.flush()
        assert [s.title for s in sync.collection.items()] == ["Creep"]
        await sync.stop()

    async def test_write_during_snapshot_is_not_lost(self, settings):
        store = RacingStore()
        existing = (await store.insert("songs", {"title": "Creep", "artist": "Radiohead"}))[0]

        async def race():
            await store.update("songs", {"artist": "Radiohead (live)"}, {"id": existing["id"]})
            await store.insert("songs", {"title": "Africa", "artist": "Toto"})

        store.race = race
        sync = SongSync(store, settings)
        await sync.start()
        await store.flush()

        songs = {s.title: s.artist for s in sync.collection.items()}
        assert songs == {"Creep": "Radiohead (live)", "Africa": "Toto"}
        await store.close()

    async def test_reconnects_and_refetches_after_loss(self, store, settings):
        sync = SongSync(store, settings)
        await sync.start()

        store.drop_subscriptions("songs")
        # committed while the feed is down: only a re-fetch can see it
        await store.insert("songs", {"title": "Missed", "artist": "Band"})
        await store.flush()
        await sync.wait_for_recovery()

        assert sync.is_live
        assert [s.title for s in sync.collection.items()] == ["Missed"]

        await store.insert("songs", {"title": "After", "artist": "Band"})
        await store.flush()
        assert len(sync.collection) == 2
        await sync.stop()

    async def test_gives_up_then_recovers_when_online(self, store, settings):
        notices = []
        sync = SongSync(store, settings, on_notice=notices.append)
        await sync.start()

        store.go_offline()
        await store.flush()
        await sync.wait_for_recovery()

        assert sync.status is SubscriptionStatus.FAILED
        assert [n.code for n in notices] == ["SYNC_FAILED"]

        store.go_online()
        await store.insert("songs", {"title": "Back", "artist": "Band"})
        await sync.notify_online()
        assert sync.is_live
        assert [s.title for s in sync.collection.items()] == ["Back"]
        await sync.stop()

    async def test_offline_signal_pauses_sync(self, store, settings):
        sync = SongSync(store, settings)
        await sync.start()

        await sync.notify_offline()
        assert sync.status is SubscriptionStatus.CLOSED
        await store.insert("songs", {"title": "Quiet", "artist": "Band"})
        await store.flush()
        assert len(sync.collection) == 0

        await sync.notify_online()
        assert sync.is_live
        assert len(sync.collection) == 1
        await sync.stop()

    async def test_visibility_refetches(self, store, settings):
        sync = SongSync(store, settings)
        await sync.start()
        await sync.notify_visibility(True)
        assert sync.is_live
        await sync.stop()

    async def test_stop_is_safe_before_start_and_repeatable(self, store, settings):
        sync = SongSync(store, settings)
        await sync.stop()
        await sync.start()
        await sync.stop()
        await sync.stop()
        assert sync.status is SubscriptionStatus.CLOSED

        await store.insert("songs", {"title": "Unseen", "artist": "Band"})
        await store.flush()
        assert len(sync.collection) == 0

    async def test_wait_until_live_times_out(self, store, settings):
        sync = SongSync(store, settings)
        assert await sync.wait_until_live(timeout=0.01) is False


@pytest.mark.asyncio
class TestRequestSync:
    async def test_requesters_fold_into_requests(self, store, settings):
        queue = QueueService(store, settings)
        sync = RequestSync(store, settings)
        await sync.start()

        request = await queue.submit_request("Wonderwall", "Oasis", "Sam")
        await queue.submit_request("Wonderwall", "Oasis", "Alex")
        await store.flush()

        mirrored = sync.collection.get(request.id)
        assert [r.name for r in mirrored.requesters] == ["Sam", "Alex"]

        await store.delete("requesters", {"request_id": request.id, "name": "Sam"})
        await store.flush()
        assert [r.name for r in sync.collection.get(request.id).requesters] == ["Alex"]
        await sync.stop()

    async def test_losing_both_feeds_refetches_once(self, store, settings):
        sync = RequestSync(store, settings)
        await sync.start()
        replaced = list(sync._subscriptions)
        snapshots = store.calls.count("select:requests")

        assert store.drop_subscriptions() == 2
        await store.flush()
        await sync.wait_for_recovery()
        assert sync.is_live
        assert store.calls.count("select:requests") == snapshots + 1

        # a close notice from a replaced subscription turning up late
        for subscription in replaced:
            subscription._on_status(SubscriptionStatus.CLOSED)
        await sync.wait_for_recovery()

        assert sync.is_live
        assert store.calls.count("select:requests") == snapshots + 1
        await sync.stop()

    async def test_snapshot_embeds_requesters(self, store, settings):
        queue = QueueService(store, settings)
        request = await queue.submit_request("Wonderwall", "Oasis", "Sam")

        sync = RequestSync(store, settings)
        await sync.start()
        assert [r.name for r in sync.collection.get(request.id).requesters] == ["Sam"]
        await sync.stop()


@pytest.mark.asyncio
class TestSetListSync:
    async def test_reordering_is_mirrored(self, any_store, set_lists, library, settings):
        one = (await library.add_song("One", "Band")).id
        two = (await library.add_song("Two", "Band")).id
        sync = SetListSync(any_store, settings)
        await sync.start()

        created = await set_lists.create_set_list("Friday", song_ids=[one, two])
        await any_store.flush()
        assert [s.id for s in sync.collection.get(created.id).songs] == [one, two]

        await set_lists.update_set_list(created.id, song_ids=[two, one])
        await any_store.flush()
        assert [s.id for s in sync.collection.get(created.id).songs] == [two, one]
        await sync.stop()
