from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from time import perf_counter

from fastapi import FastAPI, Request
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import Response

import marketplace_chat.db.session as db_session
from marketplace_chat.api.v1.router import api_router
from marketplace_chat.core.errors import add_exception_handlers, success_response
from marketplace_chat.core.logging import configure_logging
from marketplace_chat.core.settings import get_settings
from marketplace_chat.realtime import ConnectionManager, RealtimeDispatcher, RealtimePublisher

settings = get_settings()
configure_logging(debug=settings.debug)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application startup started")
    db_session.init_db()
    app.state.connection_manager = ConnectionManager(
        max_subscriptions_per_connection=settings.ws_max_subscriptions_per_connection,
        queue_size=settings.ws_outgoing_queue_size,
    )
    app.state.realtime_publisher = RealtimePublisher(app.state.connection_manager)
    app.state.realtime_dispatcher = RealtimeDispatcher(
        publisher=app.state.realtime_publisher,
        session_factory=db_session.open_session,
        poll_interval_sec=settings.realtime_dispatcher_poll_ms / 1000.0,
        batch_size=settings.realtime_dispatcher_batch_size,
        max_attempts=settings.realtime_dispatcher_max_attempts,
    )
    if settings.realtime_dispatcher_enabled:
        await app.state.realtime_dispatcher.start()
    logger.info("Application startup completed")
    yield
    await app.state.realtime_dispatcher.stop()
    await app.state.connection_manager.close()
    logger.info("Application shutdown completed")


def create_app() -> FastAPI:
    logger.debug("Creating FastAPI app with API prefix: %s", settings.api_v1_prefix)
    app = FastAPI(
        title=settings.app_name,
        lifespan=lifespan,
        middleware=[
            Middleware(
                CORSMiddleware,
                allow_origins=settings.cors_origins,
                allow_credentials=True,
                allow_methods=["*"],
                allow_headers=["*"],
            )
        ],
    )

    if settings.debug:
        @app.middleware("http")
        async def request_debug_logger(request: Request, call_next) -> Response:
            start = perf_counter()
            response = await call_next(request)
            logger.debug(
                "HTTP request completed method=%s path=%s status=%s duration_ms=%.2f",
                request.method,
                request.url.path,
                response.status_code,
                (perf_counter() - start) * 1000,
            )
            return response

    add_exception_handlers(app)
    app.include_router(api_router, prefix=settings.api_v1_prefix)

    @app.get("/health")
    def health_check():
        return success_response({"ok": True})

    return app


app = create_app()
