"""
kamianime.api.main — FastAPI application entry point
=====================================================

Run standalone with::

    uvicorn kamianime.api.main:app --port 8000

The bot process also serves this app (see :mod:`kamianime.bot.__main__`)
with its own :class:`SyncBridge`, so webhooks land on the same Discord bus
the bot listens to.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from kamianime.api.deps import get_config, get_engine, load_webhook_secret  # noqa: E402
from kamianime.api.rate_limit import configure_rate_limiters  # noqa: E402
from kamianime.api.routes.admin import router as admin_router  # noqa: E402
from kamianime.api.routes.public import router as public_router  # noqa: E402
from kamianime.api.routes.sync import router as sync_router  # noqa: E402
from kamianime.api.routes.webhooks import router as webhooks_router  # noqa: E402
from kamianime.engine.bus import EventBus, ProfileView  # noqa: E402
from kamianime.engine.events import Platform  # noqa: E402
from kamianime.errors import KamiError  # noqa: E402
from kamianime.services.sync_service import SyncBridge  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Allowed CORS origins from ``CORS_ORIGINS`` (comma-separated)."""
    raw = os.getenv("CORS_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]
    return []


def _attach_bridge(app: FastAPI, bridge: SyncBridge) -> None:
    app.state.bridge = bridge
    app.state.website_view = ProfileView(bridge.buses[Platform.WEBSITE])
    app.dependency_overrides[get_engine] = lambda: bridge.engine
    configure_rate_limiters(engine=bridge.engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build a bridge when none was injected; drain it on shutdown."""
    if getattr(app.state, "bridge", None) is None:
        engine = get_engine()
        buses = {p: EventBus(p) for p in Platform}
        bridge = SyncBridge.from_config(
            engine, buses, get_config(), webhook_secret=load_webhook_secret(),
        )
        _attach_bridge(app, bridge)
    logger.info("KamiAnime API started — engine ready (%s)", app.state.bridge.engine.url.database)
    yield
    await app.state.bridge.drain()
    logger.info("KamiAnime API shutting down")


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------
async def _kami_error_handler(request: Request, exc: KamiError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "reason": exc.reason},
    )


async def _timeout_handler(request: Request, exc: TimeoutError) -> JSONResponse:
    return JSONResponse(
        status_code=504,
        content={"detail": "The update did not complete in time", "reason": "timeout"},
    )


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "reason": "internal"},
    )


def create_app(bridge: SyncBridge | None = None) -> FastAPI:
    """Build the API, optionally around an existing *bridge*."""
    app = FastAPI(
        title="KamiAnime Sync API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.bridge = None
    if bridge is not None:
        _attach_bridge(app, bridge)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(KamiError, _kami_error_handler)
    app.add_exception_handler(TimeoutError, _timeout_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)

    app.include_router(webhooks_router, prefix="/api")
    app.include_router(sync_router, prefix="/api")
    app.include_router(public_router, prefix="/api")
    app.include_router(admin_router, prefix="/api")

    @app.get("/api/health")
    def health():
        return {"status": "ok"}

    return app


app = create_app()
