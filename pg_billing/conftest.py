# pg_billing/conftest.py
from datetime import timedelta
from decimal import Decimal

import pytest

from pg_billing.core.config import BillingConfig
from pg_billing.core.database import build_engine, create_all_tables, drop_all_tables
from pg_billing.features.billing.memory_stores import (
    MemoryBillingAttemptStore,
    MemoryCardStore,
    MemoryJobRunStore,
    MemoryPlanStore,
    MemorySubscriptionStore,
    MemoryTransactionStore,
)
from pg_billing.main import assemble_services
from pg_billing.models.billing import Card, Plan
from pg_billing.tests.mocks import FakeClock, FakeGateway


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def billing_config():
    # No grace/pause sleeps in tests
    return BillingConfig(shutdown_grace=timedelta(0))


@pytest.fixture
def stores():
    transactions = MemoryTransactionStore()
    subscriptions = MemorySubscriptionStore()
    return {
        "subscriptions": subscriptions,
        "attempts": MemoryBillingAttemptStore(transactions, subscriptions),
        "transactions": transactions,
        "cards": MemoryCardStore(),
        "plans": MemoryPlanStore(),
        "job_runs": MemoryJobRunStore(),
    }


@pytest.fixture
def services(stores, gateway, billing_config, clock):
    wired = assemble_services(gateway=gateway, config=billing_config, clock=clock, **stores)
    wired.worker_manager.restart_pause = 0
    return wired


@pytest.fixture
def monthly_plan(stores):
    return stores["plans"].create(Plan(
        id=0, name="Pro Monthly", amount=Decimal("1000.00"), currency="LKR", interval="month",
    ))


@pytest.fixture
def trial_plan(stores):
    return stores["plans"].create(Plan(
        id=0, name="Pro Trial", amount=Decimal("1000.00"), currency="LKR", interval="month",
        trial_period_days=14,
    ))


@pytest.fixture
def card(stores):
    return stores["cards"].create(Card(id=0, user_id="user_1", gateway_token="tok_visa", last_four="4242"))


@pytest.fixture
def sqlite_engine():
    engine = build_engine("sqlite://")
    create_all_tables(engine)
    yield engine
    drop_all_tables(engine)
    engine.dispose()
