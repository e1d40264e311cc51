"""Tests for the HTTP store client against the store host app."""

from __future__ import annotations

import json

import httpx
import pytest
import pytest_asyncio

from main import create_app
from models.events import ChangeEvent, HeartbeatEvent, StatusEvent, SubscriptionStatus
from services.memory_store import MemoryStore
from services.errors import ConstraintViolation, DuplicateVoteError, NetworkFailure, StoreError
from services.http_store import HttpStore, HttpSubscription
from services.vote_service import VoteService

pytestmark = pytest.mark.asyncio


@pytest_asyncio.fixture
async def remote(app):
    """HttpStore talking to the app in-process."""
    client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")
    remote = HttpStore(client=client)
    await remote.connect()
    yield remote
    await remote.close()


def ndjson(*events) -> bytes:
    return "".join(event.to_json() + "\n" for event in events).encode("utf-8")


async def lines_of(*events):
    for event in events:
        yield event.to_json()


class TestRequestResponse:
    async def test_routines_are_discovered(self, remote, store):
        assert set(remote.available_routines()) == set(store.available_routines())
        assert remote.supports("add_vote")

    async def test_crud_round_trip(self, remote):
        created = await remote.insert("requests", {"title": "Wonderwall", "artist": "Oasis"})
        request_id = created[0]["id"]

        updated = await remote.update("requests", {"votes": 3}, {"id": request_id})
        assert updated[0]["votes"] == 3

        await remote.insert("requesters", {"request_id": request_id, "name": "Sam"})
        rows = await remote.select("requests", {"id": request_id}, embed=["requesters"])
        assert [r["name"] for r in rows[0]["requesters"]] == ["Sam"]

        assert await remote.delete("requests", {"id": request_id}) == 1
        assert await remote.select("requesters") == []

    async def test_constraint_errors_keep_their_type(self, remote):
        request_id = (await remote.insert("requests", {"title": "Yellow"}))[0]["id"]
        await remote.insert("user_votes", {"request_id": request_id, "user_id": "U1"})

        with pytest.raises(DuplicateVoteError) as exc:
            await remote.insert("user_votes", {"request_id": request_id, "user_id": "U1"})
        assert exc.value.request_id == request_id
        assert exc.value.user_id == "U1"

        await remote.insert("requests", {"title": "Clocks"})
        with pytest.raises(ConstraintViolation) as exc:
            await remote.insert("requests", {"title": "Clocks"})
        assert exc.value.constraint == "requests_title_pending_key"

    async def test_rpc(self, remote):
        request_id = (await remote.insert("requests", {"title": "Yellow"}))[0]["id"]
        assert await remote.rpc("add_vote", request_id=request_id, user_id="U1") is True
        assert await remote.rpc("add_vote", request_id=request_id, user_id="U1") is False

    async def test_unknown_table(self, remote):
        with pytest.raises(StoreError) as exc:
            await remote.select("playlists")
        assert exc.value.status_code == 404

    async def test_host_key_is_required_when_configured(self, settings):
        app = create_app(store=MemoryStore(), settings=settings.model_copy(update={"host_api_key": "secret"}))

        def client():
            return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")

        anonymous = HttpStore(client=client())
        with pytest.raises(StoreError) as exc:
            await anonymous.connect()
        assert exc.value.status_code == 401
        await anonymous.close()

        keyed = HttpStore(client=client(), api_key="secret")
        await keyed.connect()
        assert keyed.supports("add_vote")
        assert await keyed.select("requests") == []
        await keyed.close()

    async def test_vote_service_over_http(self, remote, settings):
        votes = VoteService(remote, settings)
        request_id = (await remote.insert("requests", {"title": "Yellow"}))[0]["id"]
        assert (await votes.cast_vote(request_id, "U1")).accepted
        assert not (await votes.cast_vote(request_id, "U1")).accepted


class TestTransportFailures:
    async def test_connect_error_is_network_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        remote = HttpStore(client=httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test"))
        with pytest.raises(NetworkFailure):
            await remote.select("requests")
        await remote.close()

    async def test_unavailable_host_is_network_failure(self):
        def handler(request):
            return httpx.Response(503, json={"detail": {"code": "NETWORK_FAILURE", "message": "down"}})

        remote = HttpStore(client=httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test"))
        with pytest.raises(NetworkFailure):
            await remote.rpc("reset_queue")
        await remote.close()

    async def test_plain_error_body(self):
        def handler(request):
            return httpx.Response(500, text="boom")

        remote = HttpStore(client=httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test"))
        with pytest.raises(StoreError) as exc:
            await remote.select("requests")
        assert exc.value.status_code == 500
        await remote.close()


class TestFeed:
    async def test_consume_dispatches_and_reports_close(self):
        remote = HttpStore(client=httpx.AsyncClient(base_url="http://test"))
        inserted, deleted, statuses = [], [], []
        subscription = HttpSubscription(
            remote, "requests", inserted.append, None, deleted.append, statuses.append
        )

        await subscription.consume(lines_of(
            StatusEvent(table="requests"),
            ChangeEvent(table="requests", change_type="INSERT", new={"id": "R1", "title": "Yellow"}),
            ChangeEvent(table="requests", change_type="UPDATE", new={"id": "R1", "title": "Yellow"}),
            ChangeEvent(table="requests", change_type="DELETE", old={"id": "R1"}),
        ))

        assert [e.row_id for e in inserted] == ["R1"]
        assert [e.row_id for e in deleted] == ["R1"]
        assert statuses == [SubscriptionStatus.SUBSCRIBED, SubscriptionStatus.CLOSED]
        assert subscription.status is SubscriptionStatus.CLOSED
        await remote.close()

    async def test_loss_status_stops_consuming(self):
        remote = HttpStore(client=httpx.AsyncClient(base_url="http://test"))
        inserted, statuses = [], []
        subscription = HttpSubscription(remote, "requests", inserted.append, None, None, statuses.append)

        await subscription.consume(lines_of(
            StatusEvent(table="requests"),
            StatusEvent(table="requests", status="CHANNEL_ERROR"),
            ChangeEvent(table="requests", change_type="INSERT", new={"id": "R1"}),
        ))

        assert inserted == []
        assert statuses == [SubscriptionStatus.SUBSCRIBED, SubscriptionStatus.CHANNEL_ERROR]
        await remote.close()

    async def test_subscribe_waits_for_confirmation(self):
        body = ndjson(
            StatusEvent(table="songs"),
            ChangeEvent(table="songs", change_type="INSERT", new={"id": "S1", "title": "Creep"}),
        )

        def handler(request):
            assert request.url.path == "/api/feed/songs"
            return httpx.Response(200, content=body)

        remote = HttpStore(client=httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test"))
        inserted, statuses = [], []
        subscription = await remote.subscribe("songs", on_insert=inserted.append, on_status=statuses.append)

        assert statuses[0] is SubscriptionStatus.SUBSCRIBED
        await subscription._task
        assert [e.new["title"] for e in inserted] == ["Creep"]
        assert statuses[-1] is SubscriptionStatus.CLOSED
        await remote.close()

    async def test_refused_feed_raises(self):
        def handler(request):
            return httpx.Response(500, text=json.dumps({"detail": "nope"}))

        remote = HttpStore(client=httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test"))
        with pytest.raises(NetworkFailure):
            await remote.subscribe("songs")
        await remote.close()

    async def test_heartbeats_are_skipped(self):
        remote = HttpStore(client=httpx.AsyncClient(base_url="http://test"))
        inserted, statuses = [], []
        subscription = HttpSubscription(remote, "requests", inserted.append, None, None, statuses.append)

        await subscription.consume(lines_of(
            StatusEvent(table="requests"),
            HeartbeatEvent(table="requests"),
            HeartbeatEvent(table="requests"),
            ChangeEvent(table="requests", change_type="INSERT", new={"id": "R1"}),
        ))

        assert [e.row_id for e in inserted] == ["R1"]
        assert statuses == [SubscriptionStatus.SUBSCRIBED, SubscriptionStatus.CLOSED]
        await remote.close()

    async def test_unknown_status_counts_as_loss(self):
        remote = HttpStore(client=httpx.AsyncClient(base_url="http://test"))
        statuses = []
        subscription = HttpSubscription(remote, "requests", None, None, None, statuses.append)

        await subscription.consume(lines_of(
            StatusEvent(table="requests"),
            StatusEvent(table="requests", status="REBALANCING"),
        ))

        assert statuses == [SubscriptionStatus.SUBSCRIBED, SubscriptionStatus.CHANNEL_ERROR]
        await remote.close()

    async def test_feed_crash_is_reported(self):
        def handler(request):
            return httpx.Response(200, content=ndjson(StatusEvent(table="songs")))

        remote = HttpStore(client=httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test"))
        statuses = []
        subscription = HttpSubscription(remote, "songs", None, None, None, statuses.append)

        async def broken(lines):
            raise RuntimeError("decoder bug")

        subscription.consume = broken
        await subscription._run()

        assert statuses == [SubscriptionStatus.CHANNEL_ERROR]
        await remote.close()

    async def test_feed_waits_longer_than_calls(self):
        seen = {}

        def handler(request):
            seen.update(request.extensions["timeout"])
            return httpx.Response(200, content=ndjson(StatusEvent(table="songs")))

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")
        remote = HttpStore(client=client, timeout=5.0, feed_read_timeout=30.0)
        subscription = await remote.subscribe("songs")
        await subscription._task

        assert seen["read"] == 30.0
        assert seen["connect"] == 5.0
        await remote.close()
