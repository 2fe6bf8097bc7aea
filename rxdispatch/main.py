import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response

from rxdispatch.config import settings
from rxdispatch.coordinator import AssignmentCoordinator
from rxdispatch.db import PostgresStore
from rxdispatch.engine import TransitionEngine
from rxdispatch.errors import DispatchError
from rxdispatch.metrics import get_metrics_bytes, get_metrics_content_type, notification_queue_depth
from rxdispatch.notifications import Notifier, QueueNotifier
from rxdispatch.ordering import Catalog, OrderDesk
from rxdispatch.queue import queue_depth
from rxdispatch.redis_client import close_redis, get_redis
from rxdispatch.routes import admin, deliveries, delivery_requests, dispatcher, drivers, orders
from rxdispatch.store import EntityStore, MemoryStore

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


def _default_store() -> EntityStore:
    if settings.store_backend == "memory":
        return MemoryStore()
    return PostgresStore()


def create_app(
    store: EntityStore | None = None,
    notifier: Notifier | None = None,
    catalog: Catalog | None = None,
) -> FastAPI:
    store = store or _default_store()
    notifier = notifier or QueueNotifier()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await store.open()
        await get_redis()
        logger.info("rxdispatch started (store=%s)", type(store).__name__)
        yield
        await store.close()
        await close_redis()

    app = FastAPI(title="Medicine Dispatch", lifespan=lifespan)
    coordinator = AssignmentCoordinator(store, notifier)
    app.state.store = store
    app.state.coordinator = coordinator
    app.state.engine = TransitionEngine(store, notifier, coordinator)
    app.state.desk = OrderDesk(store, notifier, catalog)

    app.include_router(orders.router)
    app.include_router(delivery_requests.router)
    app.include_router(deliveries.router)
    app.include_router(dispatcher.router)
    app.include_router(drivers.router)
    app.include_router(admin.router)

    @app.exception_handler(DispatchError)
    async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus scrape endpoint: transitions, assignments, notifications, queue depth."""
        try:
            notification_queue_depth.set(await queue_depth())
        except Exception:
            logger.debug("Notification queue depth unavailable", exc_info=True)
        return Response(
            content=get_metrics_bytes(),
            media_type=get_metrics_content_type(),
        )

    return app


app = create_app()
