from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from app.api.inbox import router as inbox_router
from app.api.meta import router as meta_router
from app.config import settings
from app.db import dispose_db, init_db
from app.errors import register_error_handlers
from app.logging import configure_logging, get_logger
from app.observability import ObservabilityMiddleware
from app.services.platform import FacebookService
from app.websocket.broadcaster import InboxBroadcaster
from app.websocket.manager import ConnectionManager
from app.websocket.router import router as ws_router

logger = get_logger(__name__)


def create_app(
    manager: ConnectionManager | None = None,
    platform_service=None,
    init_database: bool = True,
) -> FastAPI:
    """Build the application with its own realtime manager and platform client."""
    configure_logging()
    app = FastAPI(title=settings.app_name)

    manager = manager or ConnectionManager(redis_url=settings.redis_url)
    app.state.connection_manager = manager
    app.state.broadcaster = InboxBroadcaster(manager)
    app.state.platform_service = platform_service or FacebookService()

    app.add_middleware(ObservabilityMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    app.include_router(meta_router, prefix="/api/v1")
    app.include_router(inbox_router, prefix="/api/v1")
    app.include_router(ws_router)

    @app.get("/health")
    def health_check():
        return {"status": "ok"}

    @app.get("/metrics")
    def metrics():
        data = generate_latest()
        return Response(content=data, media_type=CONTENT_TYPE_LATEST)

    @app.on_event("startup")
    async def _start():
        if init_database:
            init_db()
        await manager.connect()
        logger.info("app_started environment=%s", settings.environment)

    @app.on_event("shutdown")
    async def _stop():
        await manager.disconnect()
        if init_database:
            dispose_db()

    return app


app = create_app()
