import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request

from .api import requests as requests_api
from .config import Settings, get_settings
from .exception_handlers import register_exception_handlers
from .executor import BigQueryExecutor, QueryExecutor
from .log import setup_logging
from .metrics import metrics_response, request_latency_seconds
from .oracle import PaymentOracle, PocketdPaymentOracle
from .services import RequestService, StatusService
from .store import JobStore, create_store
from .supervisor import WatcherSupervisor, run_reaper
from .tokens import generate_secret
from .watcher import JobWatcher, PaymentTerms

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    reaper = asyncio.create_task(
        run_reaper(app.state.store, settings.job_retention_seconds, settings.reaper_interval_seconds)
    )
    logger.info("paidquery: started (chain=%s, store=%s)", settings.chain_id, settings.job_store_backend)
    try:
        yield
    finally:
        reaper.cancel()
        await asyncio.gather(reaper, return_exceptions=True)
        await app.state.supervisor.stop()
        await app.state.store.close()
        logger.info("paidquery: stopped")


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[JobStore] = None,
    oracle: Optional[PaymentOracle] = None,
    executor: Optional[QueryExecutor] = None,
) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level)

    store = store if store is not None else create_store(settings)
    terms = PaymentTerms(
        payee=settings.payee_address,
        min_amount=settings.min_payment_amount,
        denom=settings.payment_denom,
    )
    watcher = JobWatcher(
        store,
        oracle if oracle is not None else PocketdPaymentOracle(settings),
        executor if executor is not None else BigQueryExecutor(settings),
        terms,
        poll_interval=settings.poll_interval_seconds,
        timeout=settings.payment_timeout_seconds,
    )
    supervisor = WatcherSupervisor(watcher, max_active=settings.max_active_jobs)

    app = FastAPI(title="Paid Query Gateway", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.supervisor = supervisor
    app.state.request_service = RequestService(
        store, supervisor, terms, secret_factory=lambda: generate_secret(settings.secret_bytes)
    )
    app.state.status_service = StatusService(store)

    app.include_router(requests_api.router)
    register_exception_handlers(app)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        start = time.time()
        try:
            response = await call_next(request)
            return response
        finally:
            request_latency_seconds.observe(time.time() - start)

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok"}

    @app.get("/readyz")
    async def readyz(request: Request):
        ready = await request.app.state.store.ping()
        return {"ready": ready, "active_watchers": request.app.state.supervisor.active_count}

    @app.get("/metrics")
    async def metrics():
        return metrics_response()

    return app


app = create_app()
