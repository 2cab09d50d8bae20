"""API-specific test fixtures."""

import httpx
import pytest
from fastapi import FastAPI, HTTPException

from app.api.routes import api_router
from app.core.config import get_settings
from app.main import generic_exception_handler, http_exception_handler, wire_services

WEBHOOK_SECRET = "test-webhook-secret"
ADMIN_KEY = "test-admin-key"


@pytest.fixture
def api_settings(monkeypatch):
    """Settings as the routes see them (environment + get_settings cache)."""
    monkeypatch.setenv("MERCADOPAGO_ACCESS_TOKEN", "TEST-token")
    monkeypatch.setenv("MERCADOPAGO_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("ADMIN_API_KEY", ADMIN_KEY)
    monkeypatch.setenv("WEBHOOK_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("SCHEDULER_ENABLED", "false")
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
def test_app(api_settings, session_factory, redis, processor_client, notifier, storage) -> FastAPI:
    """App with the real pipeline wired to SQLite, fakeredis and fake processor/notifier."""
    app = FastAPI(title=api_settings.app_name)
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)
    app.include_router(api_router)

    wire_services(
        app,
        session_factory,
        redis,
        api_settings,
        client=processor_client,
        notifier=notifier,
        storage=storage,
    )
    return app


@pytest.fixture
async def client(test_app):
    transport = httpx.ASGITransport(app=test_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Key": ADMIN_KEY}
