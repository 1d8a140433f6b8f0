"""
Admin-only billing operations router.
Requires X-Admin-Key header for all endpoints.
Handles worker status/restart, on-demand attempt processing, reconciliation
and per-subscription billing history.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from pg_billing.core.admin_auth import AdminActor, require_admin
from pg_billing.features.billing.reconcile_job import run_reconcile_job
from pg_billing.models.billing import BillingAttempt

logger = logging.getLogger("pg_billing.admin_billing")

router = APIRouter()


def get_services(request: Request):
    return request.app.state.services


# ============================================================================
# Pydantic Models
# ============================================================================

class WorkerStatusResponse(BaseModel):
    running: bool
    workers: Dict[str, Dict[str, Any]]


class WorkerRestartResponse(BaseModel):
    message: str


class ProcessAttemptsResponse(BaseModel):
    processed: int


class ReconcileResponse(BaseModel):
    issues_found: int
    corrections_applied: int
    stuck_processing: int
    unsettled_cycles: int = 0
    issues: List[Dict[str, Any]] = []
    timestamp: str


class ScheduleAttemptRequest(BaseModel):
    scheduled_at: Optional[datetime] = Field(default=None, description="When to charge; defaults to now")


# ============================================================================
# Workers
# ============================================================================

@router.get("/v1/admin/workers/status", response_model=WorkerStatusResponse)
def worker_status(actor: AdminActor = Depends(require_admin), services=Depends(get_services)):
    manager = services.worker_manager
    return WorkerStatusResponse(running=manager.running, workers=manager.get_worker_status())


@router.post("/v1/admin/workers/restart", response_model=WorkerRestartResponse)
async def restart_workers(actor: AdminActor = Depends(require_admin), services=Depends(get_services)):
    logger.info(f"[admin] worker restart requested by {actor.actor_id}")
    await services.worker_manager.restart_all()
    return WorkerRestartResponse(message="Workers restarted successfully")


# ============================================================================
# Billing operations
# ============================================================================

@router.post("/v1/admin/billing/attempts/process", response_model=ProcessAttemptsResponse)
def process_attempts(
    limit: int = Query(50, ge=1, le=500),
    actor: AdminActor = Depends(require_admin),
    services=Depends(get_services),
):
    """Charge due pending attempts now instead of waiting for the next cycle."""
    logger.info(f"[admin] process attempts requested by {actor.actor_id}: limit={limit}")
    processed = services.attempt_service.process_pending_billing_attempts(limit)
    return ProcessAttemptsResponse(processed=processed)


@router.post("/v1/admin/billing/reconcile", response_model=ReconcileResponse)
def reconcile(
    fix: bool = Query(True, description="Write missing transactions instead of only reporting them"),
    limit: int = Query(100, ge=1, le=1000),
    actor: AdminActor = Depends(require_admin),
    services=Depends(get_services),
):
    logger.info(f"[admin] reconcile requested by {actor.actor_id}: fix={fix}, limit={limit}")
    result = run_reconcile_job(
        services.subscriptions,
        services.attempts,
        services.transactions,
        fix=fix,
        limit=limit,
        config=services.config,
        job_runs=services.job_runs,
    )
    return ReconcileResponse(**result)


@router.get("/v1/admin/billing/subscriptions/{subscription_id}/attempts", response_model=List[BillingAttempt])
def subscription_attempts(
    subscription_id: int,
    actor: AdminActor = Depends(require_admin),
    services=Depends(get_services),
):
    """Latest 50 attempts, newest first."""
    services.subscription_service.get_subscription(subscription_id)
    return services.attempt_service.get_subscription_billing_history(subscription_id)


@router.post(
    "/v1/admin/billing/subscriptions/{subscription_id}/attempts",
    response_model=BillingAttempt,
    status_code=201,
)
def schedule_attempt(
    subscription_id: int,
    req: Optional[ScheduleAttemptRequest] = None,
    actor: AdminActor = Depends(require_admin),
    services=Depends(get_services),
):
    scheduled_at = req.scheduled_at if req else None
    if scheduled_at is not None and scheduled_at.tzinfo is None:
        scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
    attempt = services.attempt_service.schedule_manual_attempt(subscription_id, scheduled_at)
    logger.info(f"[admin] attempt {attempt.id} scheduled for subscription {subscription_id} by {actor.actor_id}")
    return attempt
