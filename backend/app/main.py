"""FastAPI entrypoint for the Clockout time-entry backend."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.dependencies import get_entry_ledger, get_settings
from .api.routers import health, time_entries
from .domain.time_entries import bootstrap_ledger
from .infra.logging import configure_logging, get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def _lifespan(application: FastAPI):
    # Reconcile legacy rows before the one-open-entry index is created.
    report = bootstrap_ledger(get_entry_ledger())
    logger.info(
        "ledger_bootstrapped",
        extra={
            "reconciled_closed": report.closed_count,
            "reconciled_removed": report.removed_count,
        },
    )
    yield


def create_app() -> FastAPI:
    """Instantiate the FastAPI app and register routers."""

    settings = get_settings()
    configure_logging(settings.logging)
    application = FastAPI(title="Clockout API", version="0.1.0", lifespan=_lifespan)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    for router in (health.router, time_entries.router):
        application.include_router(router)
    return application


app = create_app()
