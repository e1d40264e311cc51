"""
REST API, change feed and WebSocket routes for the request store host.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Union
from fastapi import APIRouter, Depends, Header, WebSocket, WebSocketDisconnect, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from models.events import ChangeEvent, HeartbeatEvent, StatusEvent, SubscriptionStatus
from services.errors import (
    ConstraintViolation,
    EngineError,
    InvariantViolation,
    MutationInFlightError,
    NetworkFailure,
    NotFoundError,
    StoreError,
    ValidationFailure,
)
from services.queue_service import QueueService
from services.setlist_service import SetListService
from services.store import TABLES, Store
from services.vote_service import VoteService
from .websocket_manager import WebSocketManager

logger = logging.getLogger(__name__)


# -------------------------------------------------------------------------
# Request/Response Models
# -------------------------------------------------------------------------

class SelectBody(BaseModel):
    filters: Optional[Dict[str, Any]] = None
    order_by: Optional[str] = None
    descending: bool = False
    embed: List[str] = Field(default_factory=list)


class InsertBody(BaseModel):
    rows: Union[Dict[str, Any], List[Dict[str, Any]]]


class UpdateBody(BaseModel):
    patch: Dict[str, Any]
    filters: Optional[Dict[str, Any]] = None


class DeleteBody(BaseModel):
    filters: Optional[Dict[str, Any]] = None


class RpcBody(BaseModel):
    params: Dict[str, Any] = Field(default_factory=dict)


class SubmitRequestBody(BaseModel):
    """A song request from an attendee."""
    title: str
    artist: str = ""
    requester_name: str
    photo: Optional[str] = None
    message: Optional[str] = None


class VoteBody(BaseModel):
    user_id: str


class SetListBody(BaseModel):
    name: str
    date: Optional[str] = None
    notes: str = ""
    song_ids: List[str] = Field(default_factory=list)


class SetListUpdateBody(BaseModel):
    name: Optional[str] = None
    date: Optional[str] = None
    notes: Optional[str] = None
    song_ids: Optional[List[str]] = None


# -------------------------------------------------------------------------
# Error Mapping
# -------------------------------------------------------------------------

def error_status(error: EngineError) -> int:
    """HTTP status for an engine error."""
    if isinstance(error, (ConstraintViolation, InvariantViolation, MutationInFlightError)):
        return 409
    if isinstance(error, ValidationFailure):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, NetworkFailure):
        return 503
    if isinstance(error, StoreError) and error.status_code:
        return error.status_code
    return 500


def error_detail(error: EngineError) -> dict:
    """JSON detail carrying enough to rebuild the error client-side."""
    detail = {
        "code": error.code,
        "message": str(error),
        "user_message": error.user_message,
    }
    if isinstance(error, ConstraintViolation):
        detail["constraint"] = error.constraint
        detail["row"] = {
            key: getattr(error, key)
            for key in ("request_id", "user_id", "name")
            if hasattr(error, key)
        }
    if isinstance(error, ValidationFailure):
        detail["field"] = error.field
    return detail


def http_error(error: EngineError) -> HTTPException:
    status = error_status(error)
    if status >= 500:
        logger.error(f"{error.code}: {error}")
    else:
        logger.warning(f"{error.code}: {error}")
    return HTTPException(status_code=status, detail=error_detail(error))


# -------------------------------------------------------------------------
# Change Feed Lines
# -------------------------------------------------------------------------

async def feed_lines(lines: asyncio.Queue, table: str, heartbeat_interval: float) -> AsyncIterator[str]:
    """
    NDJSON lines for one feed connection. A heartbeat line goes out
    whenever nothing else was sent for `heartbeat_interval` seconds.
    Ends after a loss status.
    """
    while True:
        try:
            event = await asyncio.wait_for(lines.get(), heartbeat_interval)
        except asyncio.TimeoutError:
            event = HeartbeatEvent(table=table)
        yield event.to_json() + "\n"
        if isinstance(event, StatusEvent) and SubscriptionStatus(event.status).is_loss:
            return


# -------------------------------------------------------------------------
# Router Factory
# -------------------------------------------------------------------------

def create_router(
    ws_manager: WebSocketManager,
    store: Store,
    queue: QueueService,
    votes: VoteService,
    set_lists: SetListService,
    heartbeat_interval: float = 15.0,
    api_key: Optional[str] = None,
) -> APIRouter:
    """
    Create the API router with all routes.

    Args:
        ws_manager: WebSocket connection manager
        store: Store exposed over REST and the change feed
        queue: Request submission and queue transitions
        votes: Vote commit protocol
        set_lists: Set-list CRUD and activation
        heartbeat_interval: Seconds between keepalive lines on an idle feed
        api_key: Bearer token required on store, rpc and feed endpoints

    Returns:
        Configured APIRouter
    """
    router = APIRouter(prefix="/api")

    def require_key(authorization: Optional[str] = Header(default=None)) -> None:
        if api_key and authorization != f"Bearer {api_key}":
            raise HTTPException(
                status_code=401,
                detail={"code": "UNAUTHORIZED", "message": "Missing or invalid store key"},
            )

    guarded = [Depends(require_key)]

    def check_table(table: str) -> None:
        if table not in TABLES:
            raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": f"Unknown table '{table}'"})

    # -------------------------------------------------------------------------
    # Health Check
    # -------------------------------------------------------------------------

    @router.get("/health")
    async def health_check():
        return {
            "status": "ok",
            "connections": ws_manager.connection_count,
            "routines": list(store.available_routines()),
        }

    # -------------------------------------------------------------------------
    # Store Endpoints
    # -------------------------------------------------------------------------

    @router.post("/store/{table}/select", dependencies=guarded)
    async def select_rows(table: str, body: SelectBody):
        check_table(table)
        try:
            rows = await store.select(table, body.filters, body.order_by, body.descending, body.embed)
            return {"rows": rows}
        except EngineError as e:
            raise http_error(e)

    @router.post("/store/{table}", dependencies=guarded)
    async def insert_rows(table: str, body: InsertBody):
        check_table(table)
        try:
            return {"rows": await store.insert(table, body.rows)}
        except EngineError as e:
            raise http_error(e)

    @router.patch("/store/{table}", dependencies=guarded)
    async def update_rows(table: str, body: UpdateBody):
        check_table(table)
        try:
            return {"rows": await store.update(table, body.patch, body.filters)}
        except EngineError as e:
            raise http_error(e)

    @router.post("/store/{table}/delete", dependencies=guarded)
    async def delete_rows(table: str, body: DeleteBody):
        check_table(table)
        try:
            return {"deleted": await store.delete(table, body.filters)}
        except EngineError as e:
            raise http_error(e)

    @router.get("/rpc", dependencies=guarded)
    async def list_routines():
        return {"routines": list(store.available_routines())}

    @router.post("/rpc/{name}", dependencies=guarded)
    async def call_routine(name: str, body: RpcBody):
        try:
            return {"result": await store.rpc(name, **body.params)}
        except EngineError as e:
            raise http_error(e)

    # -------------------------------------------------------------------------
    # Change Feed (newline-delimited JSON)
    # -------------------------------------------------------------------------

    @router.get("/feed/{table}", dependencies=guarded)
    async def change_feed(table: str):
        check_table(table)
        lines: asyncio.Queue = asyncio.Queue()

        def on_change(event: ChangeEvent) -> None:
            lines.put_nowait(event)

        def on_status(status: SubscriptionStatus) -> None:
            lines.put_nowait(StatusEvent(table=table, status=status.value))

        try:
            subscription = await store.subscribe(table, on_change, on_change, on_change, on_status)
        except EngineError as e:
            raise http_error(e)

        async def stream():
            try:
                async for line in feed_lines(lines, table, heartbeat_interval):
                    yield line
            finally:
                await subscription.unsubscribe()

        return StreamingResponse(stream(), media_type="application/x-ndjson")

    # -------------------------------------------------------------------------
    # Queue Endpoints
    # -------------------------------------------------------------------------

    @router.get("/queue")
    async def get_queue(include_played: bool = False):
        try:
            requests = await queue.get_queue(include_played)
        except EngineError as e:
            raise http_error(e)
        return {
            "queue": [r.to_queue_item(i + 1) for i, r in enumerate(requests)],
            "queue_length": len(requests),
        }

    @router.post("/requests")
    async def submit_request(body: SubmitRequestBody):
        try:
            request = await queue.submit_request(
                body.title, body.artist, body.requester_name, body.photo, body.message
            )
        except EngineError as e:
            raise http_error(e)
        return request.to_dict()

    @router.post("/requests/{request_id}/vote")
    async def vote(request_id: str, body: VoteBody):
        try:
            result = await votes.cast_vote(request_id, body.user_id)
        except EngineError as e:
            raise http_error(e)
        return result.to_dict()

    @router.post("/requests/{request_id}/lock")
    async def lock_request(request_id: str):
        try:
            return (await queue.lock(request_id)).to_dict()
        except EngineError as e:
            raise http_error(e)

    @router.post("/requests/{request_id}/played")
    async def mark_played(request_id: str):
        try:
            return (await queue.mark_played(request_id)).to_dict()
        except EngineError as e:
            raise http_error(e)

    @router.post("/queue/reset")
    async def reset_queue():
        try:
            cleared = await queue.reset_queue()
        except EngineError as e:
            raise http_error(e)
        await ws_manager.broadcast_notice("success", f"Queue cleared ({cleared} requests)", "QUEUE_RESET")
        return {"success": True, "cleared": cleared}

    # -------------------------------------------------------------------------
    # Set List Endpoints
    # -------------------------------------------------------------------------

    @router.get("/setlists")
    async def list_set_lists():
        try:
            return [s.to_dict() for s in await set_lists.list_set_lists()]
        except EngineError as e:
            raise http_error(e)

    @router.get("/setlists/active")
    async def get_active_set_list():
        try:
            active = await set_lists.get_active()
        except EngineError as e:
            raise http_error(e)
        return {"active": active.to_dict() if active else None}

    @router.post("/setlists")
    async def create_set_list(body: SetListBody):
        try:
            created = await set_lists.create_set_list(body.name, body.date, body.notes, body.song_ids)
        except EngineError as e:
            raise http_error(e)
        return created.to_dict()

    @router.put("/setlists/{set_list_id}")
    async def update_set_list(set_list_id: str, body: SetListUpdateBody):
        try:
            updated = await set_lists.update_set_list(
                set_list_id, body.name, body.date, body.notes, body.song_ids
            )
        except EngineError as e:
            raise http_error(e)
        return updated.to_dict()

    @router.delete("/setlists/{set_list_id}")
    async def delete_set_list(set_list_id: str):
        try:
            await set_lists.delete_set_list(set_list_id)
        except EngineError as e:
            raise http_error(e)
        return {"success": True}

    @router.post("/setlists/{set_list_id}/active")
    async def set_active(set_list_id: str):
        try:
            return (await set_lists.set_active(set_list_id)).to_dict()
        except EngineError as e:
            raise http_error(e)

    # -------------------------------------------------------------------------
    # WebSocket Endpoint
    # -------------------------------------------------------------------------

    @router.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Dashboard feed: committed changes for the watched tables."""
        await ws_manager.connect(websocket)

        try:
            pending = await store.select("requests", {"is_played": False})
            await ws_manager.send_welcome(websocket, queue_length=len(pending))

            while True:
                text = await websocket.receive_text()
                await websocket.send_text(json.dumps(ws_manager.handle_message(websocket, text)))

        except WebSocketDisconnect:
            await ws_manager.disconnect(websocket)
        except Exception as e:
            logger.error(f"WebSocket error: {e}")
            await ws_manager.disconnect(websocket)

    return router
