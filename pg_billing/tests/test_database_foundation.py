"""Engine and session helpers."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, insert, select
from sqlalchemy.orm import sessionmaker

from pg_billing.core import database
from pg_billing.core.database import (
    build_engine,
    check_connection,
    create_all_tables,
    plans,
    reset_database,
    session_scope,
)


def _plan_values():
    return dict(name="Pro", amount=Decimal("1000.00"), currency="LKR", interval="month",
                trial_period_days=0, is_active=True)


def _count(engine):
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(plans)).scalar()


def test_session_scope_commits(sqlite_engine):
    factory = sessionmaker(bind=sqlite_engine)
    with session_scope(factory) as session:
        session.execute(insert(plans).values(**_plan_values()))

    assert _count(sqlite_engine) == 1


def test_session_scope_rolls_back_on_error(sqlite_engine):
    factory = sessionmaker(bind=sqlite_engine)
    with pytest.raises(RuntimeError):
        with session_scope(factory) as session:
            session.execute(insert(plans).values(**_plan_values()))
            raise RuntimeError("boom")

    assert _count(sqlite_engine) == 0


def test_reset_database_empties_tables(sqlite_engine):
    with session_scope(sessionmaker(bind=sqlite_engine)) as session:
        session.execute(insert(plans).values(**_plan_values()))

    reset_database(sqlite_engine)

    assert _count(sqlite_engine) == 0


def test_check_connection():
    engine = build_engine("sqlite://")
    assert check_connection(engine) is True
    engine.dispose()


def test_init_engine_and_get_db_session(monkeypatch):
    monkeypatch.setattr(database, "_engine", None)
    monkeypatch.setattr(database, "_SessionLocal", None)

    engine = database.init_engine("sqlite://")
    create_all_tables(engine)
    with database.get_db_session() as session:
        session.execute(insert(plans).values(
            **_plan_values(), created_at=datetime.now(timezone.utc), updated_at=datetime.now(timezone.utc),
        ))

    assert database.get_engine() is engine
    assert _count(engine) == 1
    engine.dispose()


def test_init_engine_requires_url(monkeypatch):
    monkeypatch.delenv("TEST_DATABASE_URL", raising=False)
    monkeypatch.setattr(database.settings, "DATABASE_URL", None)
    with pytest.raises(ValueError):
        database.init_engine()
