import logging
from contextlib import asynccontextmanager

import asyncpg
from fastapi import FastAPI

from helpdesk.api.routes import ping, tickets
from helpdesk.core.config import Settings, get_settings
from helpdesk.core.logging import configure_logging, init_tracer, shutdown_tracer
from helpdesk.services.notifications import RQNotificationQueue
from helpdesk.tickets.repository import PostgresTicketRepository
from helpdesk.tickets.service import TicketService

logger = logging.getLogger(__name__)


async def build_ticket_service(settings: Settings, pool: asyncpg.Pool) -> TicketService:
    repository = PostgresTicketRepository(pool)
    await repository.ensure_schema()
    notifications = RQNotificationQueue.from_url(
        settings.redis_url,
        settings.notifications_queue,
        job_timeout=settings.notifications_job_timeout,
    )
    return TicketService(
        repository,
        notifications,
        page_size=settings.tickets_page_size,
        tag_completion_limit=settings.tag_completion_limit,
        pending_attachment_max_age_hours=settings.pending_attachment_max_age_hours,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    app.state.logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)
    app.state.tracer_provider = tracer_provider

    pool: asyncpg.Pool | None = None
    app.state.ticket_service = None
    try:
        pool = await asyncpg.create_pool(
            dsn=settings.postgres_dsn,
            min_size=settings.postgres_pool_min_size,
            max_size=settings.postgres_pool_max_size,
        )
        app.state.ticket_service = await build_ticket_service(settings, pool)
    except (OSError, asyncpg.PostgresError):
        # The API still starts; ticket routes answer 503 until storage is reachable.
        logger.exception("Ticket service initialisation failed")
        if pool is not None:
            await pool.close()
            pool = None
    try:
        yield
    finally:
        if pool is not None:
            await pool.close()
        shutdown_tracer(tracer_provider)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(ping.router)
    app.include_router(tickets.router)
    return app


app = create_app()
