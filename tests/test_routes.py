"""Integration tests for the queue, set-list and dashboard routes."""

from __future__ import annotations

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from api.routes import feed_lines
from api.websocket_manager import WebSocketManager
from main import create_app
from models.events import ChangeEvent, StatusEvent
from services.memory_store import MemoryStore
from services.store import TABLES


async def submit(client, title="Wonderwall", name="Sam", **extra):
    res = await client.post(
        "/api/requests",
        json={"title": title, "artist": "Oasis", "requester_name": name, **extra},
    )
    assert res.status_code == 200
    return res.json()


@pytest.mark.asyncio
class TestQueueRoutes:
    async def test_health(self, async_client):
        res = await async_client.get("/api/health")
        assert res.status_code == 200
        assert "add_vote" in res.json()["routines"]

    async def test_submit_and_list(self, async_client):
        created = await submit(async_client)
        joined = await submit(async_client, name="Alex")
        assert joined["id"] == created["id"]
        assert [r["name"] for r in joined["requesters"]] == ["Sam", "Alex"]

        res = await async_client.get("/api/queue")
        data = res.json()
        assert data["queue_length"] == 1
        assert data["queue"][0]["requesters"] == ["Sam", "Alex"]

    async def test_duplicate_requester_is_conflict(self, async_client):
        await submit(async_client)
        res = await async_client.post(
            "/api/requests",
            json={"title": "Wonderwall", "artist": "Oasis", "requester_name": "Sam"},
        )
        assert res.status_code == 409
        assert res.json()["detail"]["code"] == "DUPLICATE_REQUESTER"

    async def test_missing_name_is_bad_request(self, async_client):
        res = await async_client.post(
            "/api/requests",
            json={"title": "Wonderwall", "requester_name": "  "},
        )
        assert res.status_code == 400
        assert res.json()["detail"]["field"] == "name"

    async def test_vote_twice(self, async_client):
        created = await submit(async_client)
        first = await async_client.post(f"/api/requests/{created['id']}/vote", json={"user_id": "U1"})
        second = await async_client.post(f"/api/requests/{created['id']}/vote", json={"user_id": "U1"})

        assert first.json()["accepted"] is True
        assert first.json()["votes"] == 1
        assert second.json()["accepted"] is False
        assert second.json()["votes"] == 1

    async def test_vote_unknown_request(self, async_client):
        res = await async_client.post("/api/requests/missing/vote", json={"user_id": "U1"})
        assert res.status_code == 404

    async def test_lock_and_play(self, async_client):
        a = await submit(async_client, "A")
        b = await submit(async_client, "B")

        await async_client.post(f"/api/requests/{a['id']}/lock")
        res = await async_client.post(f"/api/requests/{b['id']}/lock")
        assert res.json()["status"] == "locked"

        queue = (await async_client.get("/api/queue")).json()["queue"]
        assert [item["id"] for item in queue if item["is_locked"]] == [b["id"]]

        res = await async_client.post(f"/api/requests/{b['id']}/played")
        assert res.json()["status"] == "played"
        res = await async_client.post(f"/api/requests/{b['id']}/lock")
        assert res.status_code == 409
        assert res.json()["detail"]["code"] == "REQUEST_PLAYED"

    async def test_reset(self, async_client):
        for title in ("A", "B", "C"):
            await submit(async_client, title)
        res = await async_client.post("/api/queue/reset")
        assert res.json() == {"success": True, "cleared": 3}
        assert (await async_client.get("/api/queue")).json()["queue_length"] == 0


@pytest.mark.asyncio
class TestSetListRoutes:
    async def test_crud_and_activation(self, async_client, store):
        song = (await store.insert("songs", {"title": "Creep", "artist": "Radiohead"}))[0]

        res = await async_client.post("/api/setlists", json={"name": "Friday", "song_ids": [song["id"]]})
        assert res.status_code == 200
        friday = res.json()
        assert [s["title"] for s in friday["songs"]] == ["Creep"]
        saturday = (await async_client.post("/api/setlists", json={"name": "Saturday"})).json()

        await async_client.post(f"/api/setlists/{friday['id']}/active")
        await async_client.post(f"/api/setlists/{saturday['id']}/active")
        active = (await async_client.get("/api/setlists/active")).json()["active"]
        assert active["id"] == saturday["id"]

        res = await async_client.delete(f"/api/setlists/{saturday['id']}")
        assert res.status_code == 409
        assert res.json()["detail"]["code"] == "SET_LIST_ACTIVE"

        res = await async_client.delete(f"/api/setlists/{friday['id']}")
        assert res.json() == {"success": True}
        assert [s["name"] for s in (await async_client.get("/api/setlists")).json()] == ["Saturday"]

    async def test_update(self, async_client):
        created = (await async_client.post("/api/setlists", json={"name": "Friday"})).json()
        res = await async_client.put(f"/api/setlists/{created['id']}", json={"notes": "Encore last"})
        assert res.json()["notes"] == "Encore last"
        assert res.json()["name"] == "Friday"

    async def test_unknown_set_list(self, async_client):
        res = await async_client.put("/api/setlists/missing", json={"name": "x"})
        assert res.status_code == 404


class TestDashboardSocket:
    def test_welcome_then_relayed_changes(self, settings):
        app = create_app(store=MemoryStore(), settings=settings)
        with TestClient(app) as client:
            with client.websocket_connect("/api/ws") as ws:
                welcome = ws.receive_json()
                assert welcome["event_type"] == "connected"
                assert "requests" in welcome["tables"]

                ws.send_text("ping")
                assert ws.receive_json() == {"event_type": "pong"}

                ws.send_json({"type": "watch", "tables": ["requesters", "bogus"]})
                assert ws.receive_json() == {"event_type": "watching", "tables": ["requesters"]}

                client.post(
                    "/api/requests",
                    json={"title": "Wonderwall", "artist": "Oasis", "requester_name": "Sam"},
                )
                change = ws.receive_json()
                assert change["event_type"] == "change"
                assert change["table"] == "requesters"
                assert change["new"]["name"] == "Sam"


class FakeSocket:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def accept(self):
        pass

    async def send_text(self, text):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(text))


@pytest.mark.asyncio
class TestWebSocketManager:
    async def test_changes_follow_watched_tables(self):
        manager = WebSocketManager(TABLES)
        everything, votes_only = FakeSocket(), FakeSocket()
        await manager.connect(everything)
        await manager.connect(votes_only)
        manager.watch(votes_only, ["user_votes"])

        assert await manager.broadcast_change(ChangeEvent(table="requests", new={"id": "R1"})) == 1
        assert await manager.broadcast_change(ChangeEvent(table="user_votes", new={"id": "V1"})) == 2
        assert [e["table"] for e in votes_only.sent] == ["user_votes"]

        assert await manager.broadcast_notice("success", "Queue cleared") == 2

    async def test_unreachable_dashboards_are_dropped(self):
        manager = WebSocketManager(TABLES)
        await manager.connect(FakeSocket())
        await manager.connect(FakeSocket(fail=True))

        assert await manager.broadcast_notice("warning", "hello") == 1
        assert manager.connection_count == 1

    async def test_non_watch_messages_are_keepalives(self):
        manager = WebSocketManager(TABLES)
        socket = FakeSocket()
        await manager.connect(socket)
        assert manager.handle_message(socket, "ping") == {"event_type": "pong"}
        assert manager.handle_message(socket, '{"type": "watch"}') == {"event_type": "watching", "tables": []}


@pytest.mark.asyncio
class TestFeedLines:
    async def test_idle_feed_sends_heartbeats(self):
        lines = asyncio.Queue()
        feed = feed_lines(lines, "requests", heartbeat_interval=0.01)

        assert json.loads(await feed.__anext__()) == {"event_type": "heartbeat", "table": "requests"}
        assert json.loads(await feed.__anext__())["event_type"] == "heartbeat"

        lines.put_nowait(ChangeEvent(table="requests", change_type="INSERT", new={"id": "R1"}))
        assert json.loads(await feed.__anext__())["new"] == {"id": "R1"}

        lines.put_nowait(StatusEvent(table="requests", status="CLOSED"))
        assert json.loads(await feed.__anext__())["status"] == "CLOSED"
        with pytest.raises(StopAsyncIteration):
            await feed.__anext__()
