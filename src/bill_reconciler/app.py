import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from bill_reconciler.api.routes import config, occurrences, reconcile
from bill_reconciler.core import settings
from bill_reconciler.integration.ledger import SupabaseLedger
from bill_reconciler.integration.supabase import SupabaseClient
from bill_reconciler.logger import get_logger, setup_logging
from bill_reconciler.services.calendar_cache import CalendarCache
from bill_reconciler.services.reconciliation import ReconciliationCoordinator
from bill_reconciler.services.scheduler import ReconciliationScheduler
from bill_reconciler.storage.base import OverrideStore
from bill_reconciler.storage.json_file import JsonOverrideStore
from bill_reconciler.storage.memory import MemoryOverrideStore
from bill_reconciler.storage.supabase import SupabaseOverrideStore

logger = get_logger(__name__)


def build_override_store(kind: str, database: SupabaseClient) -> OverrideStore:
    if kind == "supabase":
        return SupabaseOverrideStore(database)
    if kind == "memory":
        logger.warning("[STORE] Using in-memory status store; statuses are lost on restart.")
        return MemoryOverrideStore()
    return JsonOverrideStore(data_path=os.path.join(settings.DATA_DIR, "overrides.json"))


def build_scheduler(coordinator: ReconciliationCoordinator) -> ReconciliationScheduler:
    return ReconciliationScheduler(
        coordinator,
        user_ids=settings.get_env_list("RECONCILE_USER_IDS"),
        interval_seconds=settings.get_env_float("RECONCILE_INTERVAL_SECONDS", 0.0),
        lookback_days=settings.get_env_int(
            "RECONCILE_LOOKBACK_DAYS",
            settings.DEFAULT_RECONCILE_LOOKBACK_DAYS,
            min_value=0,
        ),
        lookahead_days=settings.get_env_int(
            "RECONCILE_LOOKAHEAD_DAYS",
            settings.DEFAULT_RECONCILE_LOOKAHEAD_DAYS,
            min_value=0,
        ),
    )


def create_app() -> FastAPI:
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Initializing services...")
        settings.log_environment()

        database = SupabaseClient()
        if not database.configured:
            logger.warning("SUPABASE_URL or SUPABASE_KEY not set. Bills and transactions cannot be read.")

        store = build_override_store(settings.get_override_store_kind(), database)
        cache = CalendarCache(
            ttl_seconds=settings.get_env_float("CALENDAR_CACHE_TTL", settings.DEFAULT_CALENDAR_CACHE_TTL)
        )
        coordinator = ReconciliationCoordinator(SupabaseLedger(database), store, cache=cache)
        scheduler = build_scheduler(coordinator)

        app.state.database = database
        app.state.store = store
        app.state.coordinator = coordinator
        app.state.scheduler = scheduler

        if not scheduler.start():
            logger.info("Background reconciliation disabled.")

        logger.info("Services initialized.")
        yield
        logger.info("Service shutting down.")
        await scheduler.stop()
        await database.aclose()

    app = FastAPI(title="Bill Reconciler", lifespan=lifespan)

    app.include_router(occurrences.router)
    app.include_router(reconcile.router)
    app.include_router(config.router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
