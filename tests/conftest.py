"""
Pytest configuration and fixtures for the request engine tests.
"""

from __future__ import annotations

import httpx
import pytest
import pytest_asyncio

from config.settings import Settings
from main import create_app
from services.audit_log import AuditLog
from services.memory_store import MemoryStore
from services.queue_service import QueueService
from services.setlist_service import SetListService
from services.library_service import LibraryService
from services.vote_service import VoteService


@pytest.fixture
def settings(tmp_path):
    """Settings with no backoff delays and a throwaway audit directory."""
    return Settings(
        retry_base_delay=0,
        retry_max_delay=0,
        audit_log_dir=str(tmp_path / "audit"),
    )


@pytest_asyncio.fixture
async def store():
    """Store offering every atomic routine."""
    store = MemoryStore()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def plain_store():
    """Store without server-side routines (two-step fallbacks)."""
    store = MemoryStore(routines=())
    yield store
    await store.close()


@pytest_asyncio.fixture(params=["atomic", "plain"])
async def any_store(request):
    """Runs a test against both store flavours."""
    store = MemoryStore() if request.param == "atomic" else MemoryStore(routines=())
    yield store
    await store.close()


@pytest.fixture
def audit(settings):
    return AuditLog(settings.audit_log_dir)


@pytest.fixture
def queue(any_store, settings, audit):
    return QueueService(any_store, settings, audit)


@pytest.fixture
def votes(any_store, settings):
    return VoteService(any_store, settings)


@pytest.fixture
def set_lists(any_store, settings, audit):
    return SetListService(any_store, settings, audit)


@pytest.fixture
def library(any_store, settings):
    return LibraryService(any_store, settings)


@pytest.fixture
def app(store, settings):
    return create_app(store=store, settings=settings)


@pytest_asyncio.fixture
async def async_client(app):
    """Async HTTP client against the ASGI app."""
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
