import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from pg_billing.core.config import BillingConfig
from pg_billing.workers.billing_scheduler import BillingScheduler
from pg_billing.models.billing import Subscription, SubscriptionStatus


class RecordingProcessor:
    """Stands in for the three processors and records call order."""

    def __init__(self, calls, fail=None):
        self.calls = calls
        self.fail = fail or set()

    def _run(self, name, value):
        self.calls.append(name)
        if name in self.fail:
            raise RuntimeError(f"{name} exploded")
        return value

    def process_due_subscriptions(self, limit, should_stop=None):
        return self._run("due_subscriptions", 2)

    def process_pending_billing_attempts(self, limit, should_stop=None):
        return self._run("pending_attempts", 1)

    def retry_failed_billing(self, max_attempts):
        return self._run("retries", 3)


def _scheduler(calls, fail=None, reconcile=None, config=None):
    processor = RecordingProcessor(calls, fail)
    return BillingScheduler(processor, processor, processor, config=config or BillingConfig(), reconcile=reconcile)


@pytest.mark.asyncio
async def test_cycle_runs_tasks_in_order():
    calls = []

    def reconcile():
        calls.append("reconcile")
        return {"corrections_applied": 4}

    cycle = await _scheduler(calls, reconcile=reconcile).run_cycle()

    assert calls == ["due_subscriptions", "pending_attempts", "retries", "reconcile"]
    assert cycle["tasks"] == {
        "due_subscriptions": {"processed": 2},
        "pending_attempts": {"processed": 1},
        "retries": {"processed": 3},
        "reconcile": {"processed": 4},
    }
    assert cycle["cycle_id"]


@pytest.mark.asyncio
async def test_failing_task_does_not_abort_cycle(caplog):
    calls = []

    cycle = await _scheduler(calls, fail={"pending_attempts"}).run_cycle()

    assert calls == ["due_subscriptions", "pending_attempts", "retries"]
    assert cycle["tasks"]["pending_attempts"] == {"error": "pending_attempts exploded"}
    assert cycle["tasks"]["retries"] == {"processed": 3}
    assert "task pending_attempts failed" in caplog.text


@pytest.mark.asyncio
async def test_start_runs_immediately_and_stops_on_cancel():
    calls = []
    scheduler = _scheduler(calls, config=BillingConfig(cycle_interval=timedelta(seconds=60)))
    cancel = asyncio.Event()

    task = asyncio.create_task(scheduler.start(cancel))
    for _ in range(100):
        if scheduler.last_cycle is not None:
            break
        await asyncio.sleep(0.01)

    assert scheduler.health_check()["status"] == "running"
    assert calls[:3] == ["due_subscriptions", "pending_attempts", "retries"]

    cancel.set()
    await asyncio.wait_for(task, timeout=2)

    health = scheduler.health_check()
    assert health["status"] == "stopped"
    assert health["last_cycle"]["tasks"]["retries"] == {"processed": 3}
    # The 60s interval was not waited out: only one cycle ran
    assert calls.count("due_subscriptions") == 1


@pytest.mark.asyncio
async def test_stop_ends_loop():
    calls = []
    scheduler = _scheduler(calls, config=BillingConfig(cycle_interval=timedelta(seconds=60)))

    task = asyncio.create_task(scheduler.start(asyncio.Event()))
    for _ in range(100):
        if scheduler.last_cycle is not None:
            break
        await asyncio.sleep(0.01)
    scheduler.stop()
    await asyncio.wait_for(task, timeout=2)

    assert scheduler.status == "stopped"


@pytest.mark.asyncio
async def test_stop_requested_skips_remaining_tasks():
    calls = []
    scheduler = _scheduler(calls)
    scheduler._stop_event = asyncio.Event()
    scheduler._stop_event.set()

    cycle = await scheduler.run_cycle()

    assert calls == []
    assert cycle["tasks"]["due_subscriptions"] == {"skipped": True}


def test_health_check_before_first_cycle():
    health = _scheduler([]).health_check()
    assert health["status"] == "stopped"
    assert health["last_cycle"] is None
    assert health["timestamp"]


@pytest.mark.asyncio
async def test_cycle_against_real_services(services, stores, card, clock):
    stores["subscriptions"].create(Subscription(
        user_id="user_1", card_id=card.id, plan_name="Pro Monthly", amount=Decimal("1000.00"),
        currency="LKR", status=SubscriptionStatus.active, interval="month",
        next_billing_at=clock.now - timedelta(minutes=1), created_at=clock.now - timedelta(days=31),
    ))

    cycle = await services.scheduler.run_cycle()

    assert cycle["tasks"]["due_subscriptions"] == {"processed": 1}
    assert cycle["tasks"]["reconcile"] == {"processed": 0}
    assert stores["job_runs"].latest("billing.reconcile")["status"] == "success"
