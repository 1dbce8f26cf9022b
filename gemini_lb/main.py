from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from gemini_lb.core.clients.http import close_http_client, init_http_client
from gemini_lb.core.config.settings import get_settings
from gemini_lb.core.config.startup_log import log_startup_config
from gemini_lb.core.handlers.exceptions import add_exception_handlers
from gemini_lb.core.middleware import add_api_unhandled_error_middleware, add_request_id_middleware
from gemini_lb.db.session import close_db, init_db
from gemini_lb.modules.balancer import api as balancer_api
from gemini_lb.modules.balancer.persistence import PersistenceStore, build_persist_scheduler, repo_factory_for
from gemini_lb.modules.balancer.service import build_key_balancer
from gemini_lb.modules.debug import api as debug_api
from gemini_lb.modules.health import api as health_api
from gemini_lb.modules.metrics import api as metrics_api
from gemini_lb.modules.proxy import api as proxy_api

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    log_startup_config()
    try:
        session_factory = await init_db()
    except Exception:
        # An unusable store leaves the balancer in memory-only mode.
        logger.exception("balancer_persistence_unavailable mode=in_memory")
        session_factory = None
    await init_http_client()

    balancer = build_key_balancer(settings)
    scheduler = None
    if balancer is None:
        logger.warning("No API keys configured; /api/gemini endpoints will return 503")
    elif session_factory is not None:
        store = PersistenceStore(repo_factory_for(session_factory))
        if settings.persist_enabled:
            state = await store.load()
            if state is not None:
                await balancer.restore(state)
        scheduler = build_persist_scheduler(balancer, store)
        await scheduler.start()
    app.state.balancer = balancer
    app.state.persist_scheduler = scheduler

    try:
        yield
    finally:
        try:
            if scheduler is not None:
                await scheduler.stop()
        finally:
            try:
                await close_http_client()
            finally:
                await close_db()


def create_app() -> FastAPI:
    app = FastAPI(title="gemini-lb", version="0.1.0", lifespan=lifespan)

    # Registered last runs first: request ids wrap error handling.
    add_api_unhandled_error_middleware(app)
    add_request_id_middleware(app)
    add_exception_handlers(app)

    app.include_router(proxy_api.router)
    app.include_router(balancer_api.router)
    app.include_router(debug_api.router)
    app.include_router(metrics_api.router)
    app.include_router(health_api.router)

    return app


app = create_app()
