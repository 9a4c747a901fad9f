import asyncio
import logging
from contextlib import asynccontextmanager

import asyncpg
from fastapi import FastAPI

from tracker.api.routes import cron, ping, tickets
from tracker.core.config import Settings, get_settings
from tracker.core.logging import configure_logging, init_tracer, shutdown_tracer
from tracker.tickets.memory import InMemoryTicketStore
from tracker.tickets.repository import PostgresTicketStore, TicketStore
from tracker.tickets.service import TicketService

logger = logging.getLogger(__name__)


async def _build_store(settings: Settings) -> tuple[TicketStore, asyncpg.Pool | None]:
    if settings.storage_backend == "memory":
        return InMemoryTicketStore(), None

    pool = await asyncpg.create_pool(
        dsn=settings.postgres_dsn,
        min_size=settings.postgres_pool_min_size,
        max_size=settings.postgres_pool_max_size,
    )
    store = PostgresTicketStore(pool)
    try:
        await store.ensure_schema()
    except Exception:
        await pool.close()
        raise
    return store, pool


def build_ticket_service(settings: Settings, store: TicketStore) -> TicketService:
    return TicketService.build(
        store,
        inactivity_window=settings.auto_close_after,
        system_actor=settings.system_actor(),
        auto_close_label=settings.auto_close_label,
        initial_status_policy=settings.initial_status_policy(),
        conflict_retry_attempts=settings.conflict_retry_attempts,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    app.state.logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)
    app.state.tracer_provider = tracer_provider

    store, pool = await _build_store(settings)
    service = build_ticket_service(settings, store)
    app.state.ticket_service = service
    logger.info("Ticket service ready (storage=%s)", settings.storage_backend)

    stop = asyncio.Event()
    sweep_task: asyncio.Task | None = None
    if settings.auto_close_interval_seconds > 0:
        sweep_task = asyncio.create_task(
            service.sweep.run_forever(settings.auto_close_interval_seconds, stop)
        )
        logger.info("Auto-close sweep scheduled every %.0fs", settings.auto_close_interval_seconds)
    try:
        yield
    finally:
        stop.set()
        if sweep_task is not None:
            await sweep_task
        app.state.ticket_service = None
        if pool is not None:
            await pool.close()
        shutdown_tracer(tracer_provider)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(ping.router)
    app.include_router(tickets.router)
    app.include_router(cron.router)
    return app


app = create_app()
