"""
Remote store over HTTP.

Request/response calls map onto the store host's REST endpoints. Each
subscription holds one streaming GET on the newline-delimited JSON feed.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Iterable, List, Optional, Sequence, Union

import httpx

from models.events import ChangeEvent, SubscriptionStatus
from .errors import EngineError, NetworkFailure, StoreError
from .store import (
    EventHandler,
    Filters,
    StatusHandler,
    Store,
    Subscription,
    dispatch_change,
    maybe_await,
    violation_for,
)

logger = logging.getLogger(__name__)


def error_from_response(response: httpx.Response) -> EngineError:
    """Rebuild the engine error the host reported."""
    try:
        body = response.json()
    except ValueError:
        body = None
    detail = body.get("detail") if isinstance(body, dict) else None
    if not isinstance(detail, dict):
        detail = {"message": str(detail or response.text or response.reason_phrase)}

    code = detail.get("code", "")
    message = detail.get("message", "")
    status = response.status_code

    if status == 503 or code == "NETWORK_FAILURE":
        return NetworkFailure(message or "Store host unavailable")
    if "constraint" in detail:
        return violation_for(detail.get("constraint"), detail.get("row") or {})
    return StoreError(message or f"HTTP {status}", status_code=status)


class HttpSubscription(Subscription):
    """One streaming feed connection."""

    def __init__(
        self,
        store: "HttpStore",
        table: str,
        on_insert: Optional[EventHandler],
        on_update: Optional[EventHandler],
        on_delete: Optional[EventHandler],
        on_status: Optional[StatusHandler],
    ):
        super().__init__(table)
        self._store = store
        self._on_insert = on_insert
        self._on_update = on_update
        self._on_delete = on_delete
        self._on_status = on_status
        self._ready = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._closing = False
        self._confirmed = False

    async def _report(self, status: SubscriptionStatus) -> None:
        if self._closing:
            return
        self._status = status
        if status is SubscriptionStatus.SUBSCRIBED:
            self._confirmed = True
            self._ready.set()
        elif status.is_loss:
            self._ready.set()
        if self._on_status is not None:
            await maybe_await(self._on_status(status))

    async def consume(self, lines: AsyncIterator[str]) -> None:
        """Dispatch feed lines until the stream ends or reports a loss."""
        async for line in lines:
            if self._closing:
                return
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except ValueError:
                logger.warning(f"[{self.table}] unreadable feed line: {line[:80]}")
                continue

            event_type = data.get("event_type")
            if event_type == "heartbeat":
                continue
            if event_type == "status":
                try:
                    status = SubscriptionStatus(data.get("status"))
                except ValueError:
                    logger.warning(f"[{self.table}] unknown feed status: {data.get('status')!r}")
                    status = SubscriptionStatus.CHANNEL_ERROR
                await self._report(status)
                if status.is_loss:
                    return
            elif event_type == "change":
                try:
                    await dispatch_change(
                        ChangeEvent.from_dict(data), self._on_insert, self._on_update, self._on_delete
                    )
                except Exception:
                    logger.exception(f"Feed handler failed on '{self.table}'")

        # the server ended the stream without saying why
        await self._report(SubscriptionStatus.CLOSED)

    async def _run(self) -> None:
        try:
            async with self._store.client.stream(
                "GET", f"/api/feed/{self.table}", timeout=self._store.feed_timeout
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    logger.error(f"[{self.table}] feed refused: HTTP {response.status_code}")
                    await self._report(SubscriptionStatus.CHANNEL_ERROR)
                    return
                await self.consume(response.aiter_lines())
        except httpx.TransportError as e:
            logger.warning(f"[{self.table}] feed transport error: {e}")
            await self._report(SubscriptionStatus.CHANNEL_ERROR)
        except Exception:
            logger.exception(f"[{self.table}] feed stopped unexpectedly")
            await self._report(SubscriptionStatus.CHANNEL_ERROR)

    def _start(self) -> None:
        self._task = asyncio.create_task(self._run())

    async def wait_ready(self) -> None:
        await self._ready.wait()
        # a short feed may already have ended; it still counts once confirmed
        if not self._confirmed:
            raise NetworkFailure(f"Could not subscribe to '{self.table}'")

    async def unsubscribe(self) -> None:
        if self._closing:
            return
        self._closing = True
        self._status = SubscriptionStatus.CLOSED
        self._ready.set()
        if self._task is not None and not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.debug(f"Unsubscribed from '{self.table}'")


class HttpStore(Store):
    """
    Store host client.

    Args:
        base_url: Host root, e.g. http://127.0.0.1:5175
        api_key: Optional bearer token
        client: Pre-built AsyncClient (tests pass one with a custom transport)
        timeout: Seconds allowed for a request/response call
        feed_read_timeout: Seconds a feed may stay silent; the host
            sends heartbeats well inside this
    """

    def __init__(
        self,
        base_url: str = "",
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        feed_read_timeout: Optional[float] = 45.0,
    ):
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        if api_key:
            self.client.headers["Authorization"] = f"Bearer {api_key}"
        self.feed_timeout = httpx.Timeout(timeout, read=feed_read_timeout)
        self._routines: Sequence[str] = ()
        self._subscriptions: List[HttpSubscription] = []

    async def connect(self) -> None:
        """Learn which atomic routines the host offers."""
        data = await self._call("GET", "/api/rpc")
        self._routines = tuple(data.get("routines", ()))
        logger.info(f"Connected to store host ({len(self._routines)} routines)")

    async def _call(self, method: str, path: str, payload: Optional[dict] = None) -> Any:
        try:
            response = await self.client.request(method, path, json=payload)
        except httpx.TransportError as e:
            raise NetworkFailure(f"{method} {path}: {e}")
        if response.status_code >= 400:
            raise error_from_response(response)
        return response.json()

    def available_routines(self) -> Sequence[str]:
        return self._routines

    async def select(
        self,
        table: str,
        filters: Optional[Filters] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        embed: Iterable[str] = (),
    ) -> List[dict]:
        data = await self._call(
            "POST",
            f"/api/store/{table}/select",
            {"filters": filters, "order_by": order_by, "descending": descending, "embed": list(embed)},
        )
        return data["rows"]

    async def insert(self, table: str, rows: Union[dict, List[dict]]) -> List[dict]:
        data = await self._call("POST", f"/api/store/{table}", {"rows": rows})
        return data["rows"]

    async def update(self, table: str, patch: dict, filters: Optional[Filters]) -> List[dict]:
        data = await self._call("PATCH", f"/api/store/{table}", {"patch": patch, "filters": filters})
        return data["rows"]

    async def delete(self, table: str, filters: Optional[Filters]) -> int:
        data = await self._call("POST", f"/api/store/{table}/delete", {"filters": filters})
        return data["deleted"]

    async def rpc(self, name: str, **params: Any) -> Any:
        data = await self._call("POST", f"/api/rpc/{name}", {"params": params})
        return data["result"]

    async def subscribe(
        self,
        table: str,
        on_insert: Optional[EventHandler] = None,
        on_update: Optional[EventHandler] = None,
        on_delete: Optional[EventHandler] = None,
        on_status: Optional[StatusHandler] = None,
    ) -> Subscription:
        """Open the feed and wait for the host to confirm it."""
        subscription = HttpSubscription(self, table, on_insert, on_update, on_delete, on_status)
        self._subscriptions = [s for s in self._subscriptions if s.is_active]
        self._subscriptions.append(subscription)
        subscription._start()
        try:
            await subscription.wait_ready()
        except NetworkFailure:
            await subscription.unsubscribe()
            self._subscriptions.remove(subscription)
            raise
        return subscription

    async def close(self) -> None:
        for subscription in self._subscriptions:
            await subscription.unsubscribe()
        self._subscriptions.clear()
        await self.client.aclose()
