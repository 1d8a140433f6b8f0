import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from pg_billing.api import admin_billing, health
from pg_billing.core.config import (
    BillingConfig,
    Settings,
    billing_config_from_settings,
    settings,
    validate_config,
)
from pg_billing.core.database import create_all_tables, get_session_factory, init_engine
from pg_billing.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from pg_billing.core.logging import configure_logging
from pg_billing.core.middleware.request_id import RequestIdMiddleware
from pg_billing.features.billing.attempt_service import AttemptService
from pg_billing.features.billing.gateway import PaymentGateway
from pg_billing.features.billing.mastercard_gateway import MastercardGateway
from pg_billing.features.billing.reconcile_job import run_reconcile_job
from pg_billing.features.billing.retry_policy import RetryPolicy
from pg_billing.features.billing.sql_stores import (
    SqlBillingAttemptStore,
    SqlCardStore,
    SqlJobRunStore,
    SqlPlanStore,
    SqlSubscriptionStore,
    SqlTransactionStore,
)
from pg_billing.features.billing.subscription_service import SubscriptionService
from pg_billing.workers.billing_scheduler import BillingScheduler
from pg_billing.workers.worker_manager import WorkerManager

logger = logging.getLogger("pg_billing")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BillingServices:
    config: BillingConfig
    subscriptions: Any
    attempts: Any
    transactions: Any
    cards: Any
    plans: Any
    job_runs: Any
    gateway: PaymentGateway
    subscription_service: SubscriptionService
    attempt_service: AttemptService
    retry_policy: RetryPolicy
    scheduler: BillingScheduler
    worker_manager: WorkerManager
    engine: Any = None


def assemble_services(
    *,
    subscriptions,
    attempts,
    transactions,
    cards,
    plans,
    job_runs,
    gateway: PaymentGateway,
    config: BillingConfig,
    clock: Callable[[], datetime] = _utcnow,
    default_currency: str = "LKR",
    engine=None,
) -> BillingServices:
    """Wire stores and gateway into the processors, scheduler and worker manager."""
    subscription_service = SubscriptionService(
        subscriptions, attempts, transactions, cards, plans, gateway, config=config, clock=clock
    )
    attempt_service = AttemptService(
        subscriptions, attempts, transactions, cards, gateway,
        config=config, clock=clock, default_currency=default_currency,
    )
    retry_policy = RetryPolicy(subscriptions, attempts, config=config, clock=clock)

    def reconcile():
        return run_reconcile_job(
            subscriptions, attempts, transactions, now=clock(), config=config, job_runs=job_runs
        )

    scheduler = BillingScheduler(
        subscription_service, attempt_service, retry_policy, config=config, reconcile=reconcile
    )
    worker_manager = WorkerManager(shutdown_grace=config.shutdown_grace.total_seconds())
    worker_manager.register_worker(scheduler)

    return BillingServices(
        config=config,
        subscriptions=subscriptions,
        attempts=attempts,
        transactions=transactions,
        cards=cards,
        plans=plans,
        job_runs=job_runs,
        gateway=gateway,
        subscription_service=subscription_service,
        attempt_service=attempt_service,
        retry_policy=retry_policy,
        scheduler=scheduler,
        worker_manager=worker_manager,
        engine=engine,
    )


def build_services(
    settings_obj: Optional[Settings] = None,
    gateway: Optional[PaymentGateway] = None,
) -> BillingServices:
    """Production wiring: SQL stores on DATABASE_URL and the Mastercard gateway."""
    cfg = settings_obj or settings
    config = billing_config_from_settings(cfg)

    engine = init_engine(cfg.DATABASE_URL)
    create_all_tables(engine)
    session_factory = get_session_factory()

    gateway = gateway or MastercardGateway(
        settings_obj=cfg,
        timeout=config.gateway_timeout.total_seconds(),
    )
    return assemble_services(
        subscriptions=SqlSubscriptionStore(session_factory),
        attempts=SqlBillingAttemptStore(session_factory),
        transactions=SqlTransactionStore(session_factory),
        cards=SqlCardStore(session_factory),
        plans=SqlPlanStore(session_factory),
        job_runs=SqlJobRunStore(session_factory),
        gateway=gateway,
        config=config,
        default_currency=cfg.DEFAULT_CURRENCY,
        engine=engine,
    )


def create_app(
    settings_obj: Optional[Settings] = None,
    services: Optional[BillingServices] = None,
) -> FastAPI:
    cfg = settings_obj or settings
    configure_logging(cfg.ENV)
    validate_config(strict=cfg.CONFIG_STRICT, settings_obj=cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting pg-billing...")
        if app.state.services is None:
            app.state.services = build_services(cfg)
        app.state.engine = app.state.services.engine
        manager = app.state.services.worker_manager
        if cfg.BILLING_WORKER_ENABLED:
            await manager.start_all()
        try:
            yield
        finally:
            logger.info("Stopping pg-billing...")
            if manager.running:
                await manager.stop_all()

    app = FastAPI(title="pg-billing", lifespan=lifespan)
    app.state.settings = cfg
    app.state.services = services
    app.state.engine = services.engine if services else None

    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health.root_router, tags=["health"])
    app.include_router(admin_billing.router, tags=["admin-billing"])
    return app


app = create_app()
