"""Billing scheduler worker.

Runs one billing cycle immediately and then every cycle interval until the
shared cancel event is set or stop() is called. A cycle runs, in order:

1. due subscriptions
2. pending attempts
3. retry policy
4. reconcile (when configured)

A failing task is logged and the cycle moves on to the next one.

Usage:
    python -m pg_billing.workers.billing_scheduler --once
    python -m pg_billing.workers.billing_scheduler --loop
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from pg_billing.core.config import BillingConfig
from pg_billing.core.logging import cycle_id_ctx_var
from pg_billing.features.billing.attempt_service import AttemptService
from pg_billing.features.billing.retry_policy import RetryPolicy
from pg_billing.features.billing.subscription_service import SubscriptionService

logger = logging.getLogger("pg_billing.worker")

STATUS_RUNNING = "running"
STATUS_STOPPED = "stopped"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BillingScheduler:
    def __init__(
        self,
        subscription_service: SubscriptionService,
        attempt_service: AttemptService,
        retry_policy: RetryPolicy,
        config: Optional[BillingConfig] = None,
        reconcile: Optional[Callable[[], Dict[str, Any]]] = None,
    ):
        self.subscription_service = subscription_service
        self.attempt_service = attempt_service
        self.retry_policy = retry_policy
        self.config = config or BillingConfig()
        self.reconcile = reconcile
        self.status = STATUS_STOPPED
        self.last_cycle: Optional[Dict[str, Any]] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._cancel_event: Optional[asyncio.Event] = None

    def _should_stop(self) -> bool:
        return bool(
            (self._stop_event is not None and self._stop_event.is_set())
            or (self._cancel_event is not None and self._cancel_event.is_set())
        )

    async def start(self, cancel_event: asyncio.Event) -> None:
        """Run cycles until cancel_event is set or stop() is called."""
        self._cancel_event = cancel_event
        self._stop_event = asyncio.Event()
        self.status = STATUS_RUNNING
        interval = self.config.cycle_interval.total_seconds()
        logger.info(f"[billing-worker] started (interval={interval:.0f}s)")
        try:
            while not self._should_stop():
                await self.run_cycle()
                if self._should_stop():
                    break
                await self._wait(interval)
        finally:
            self.status = STATUS_STOPPED
            logger.info("[billing-worker] stopped")

    async def _wait(self, seconds: float) -> None:
        waiters = [
            asyncio.ensure_future(self._cancel_event.wait()),
            asyncio.ensure_future(self._stop_event.wait()),
        ]
        try:
            await asyncio.wait(waiters, timeout=seconds, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    def stop(self) -> None:
        """Ask the loop to exit. An in-flight cycle finishes its current item first."""
        if self._stop_event is not None:
            self._stop_event.set()

    def _tasks(self) -> List[Tuple[str, Callable[[], Any]]]:
        cfg = self.config
        tasks: List[Tuple[str, Callable[[], Any]]] = [
            ("due_subscriptions", lambda: self.subscription_service.process_due_subscriptions(
                cfg.due_subscription_limit, should_stop=self._should_stop)),
            ("pending_attempts", lambda: self.attempt_service.process_pending_billing_attempts(
                cfg.pending_attempt_limit, should_stop=self._should_stop)),
            ("retries", lambda: self.retry_policy.retry_failed_billing(cfg.max_retry_attempts)),
        ]
        if self.reconcile is not None:
            tasks.append(("reconcile", self.reconcile))
        return tasks

    async def run_cycle(self) -> Dict[str, Any]:
        cycle_id = uuid.uuid4().hex[:12]
        token = cycle_id_ctx_var.set(cycle_id)
        started_at = _utcnow()
        results: Dict[str, Dict[str, Any]] = {}
        try:
            for name, task in self._tasks():
                if self._should_stop():
                    results[name] = {"skipped": True}
                    continue
                try:
                    # Store and gateway calls block; keep them off the event loop
                    outcome = await asyncio.to_thread(task)
                except Exception as e:
                    logger.error(f"[billing-worker] task {name} failed: {e}", extra={"task": name}, exc_info=True)
                    results[name] = {"error": str(e)}
                    continue
                if isinstance(outcome, dict):
                    processed = outcome.get("corrections_applied", 0)
                else:
                    processed = outcome
                results[name] = {"processed": processed}
                logger.info(f"[billing-worker] {name}: processed {processed}", extra={"task": name, "processed": processed})
        finally:
            cycle_id_ctx_var.reset(token)

        self.last_cycle = {
            "cycle_id": cycle_id,
            "started_at": started_at.isoformat(),
            "finished_at": _utcnow().isoformat(),
            "tasks": results,
        }
        return self.last_cycle

    def health_check(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "timestamp": _utcnow().isoformat(),
            "last_cycle": self.last_cycle,
        }


def main() -> None:
    from pg_billing.core.config import settings
    from pg_billing.core.logging import configure_logging
    from pg_billing.main import build_services

    parser = argparse.ArgumentParser(description="Billing scheduler worker")
    parser.add_argument("--once", action="store_true", help="Run a single billing cycle and exit")
    parser.add_argument("--loop", action="store_true", help="Run cycles until interrupted")
    args = parser.parse_args()

    configure_logging(settings.ENV)
    services = build_services(settings)
    scheduler = services.scheduler

    if args.once:
        cycle = asyncio.run(scheduler.run_cycle())
        print(f"[billing-worker] Cycle {cycle['cycle_id']}: {cycle['tasks']}")
        return

    print(f"[billing-worker] Starting loop (interval={scheduler.config.cycle_interval}). CTRL+C to stop.")
    try:
        asyncio.run(scheduler.start(asyncio.Event()))
    except KeyboardInterrupt:
        print("[billing-worker] Stopped")


if __name__ == "__main__":
    main()
