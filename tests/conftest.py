"""Shared fixtures: a throwaway SQLite ledger per test and position helpers."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlmodel import Session, select

from profit_service.config import Settings
from profit_service.database import build_engine, create_db_and_tables
from profit_service.engine.coordinator import DistributionCoordinator
from profit_service.models.balance import Balance
from profit_service.models.distribution import DistributionRecord
from profit_service.models.position import Position
from profit_service.services.positions import ensure_balance, open_position

# Investments started mid-morning; daily runs fire shortly after midnight
START = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)
DAY0_RUN = datetime(2026, 3, 2, 0, 5, tzinfo=timezone.utc)


class FakeClock:
    """Settable wall clock for the cooldown guard."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(DAY0_RUN)


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    create_db_and_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        max_concurrency=4,
        storage_timeout_seconds=30,
        retry_backoff_seconds=0,
        max_credit_attempts=3,
    )


@pytest.fixture
def coordinator(engine, test_settings):
    return DistributionCoordinator(engine, test_settings)


@pytest.fixture
def fund(engine):
    """Open a funded position; the owner's balance row is created on demand."""

    def _fund(
        owner_id: int = 1,
        principal: str = "1000.00",
        rate: str = "0.015",
        duration: int = 10,
        kind: str = "investment",
        started_at: datetime = START,
        available: str = "100000.00",
    ) -> Position:
        with Session(engine) as session:
            ensure_balance(session, owner_id, available=Decimal(available))
            return open_position(
                session,
                owner_id=owner_id,
                plan_id=7,
                kind=kind,
                principal=Decimal(principal),
                rate=Decimal(rate),
                duration_periods=duration,
                started_at=started_at,
            )

    return _fund


def load(engine, model, ident):
    with Session(engine) as session:
        return session.get(model, ident)


def balance_of(engine, owner_id: int) -> Balance:
    with Session(engine) as session:
        return session.exec(select(Balance).where(Balance.owner_id == owner_id)).one()


def records_for(engine, position_id: int) -> list[DistributionRecord]:
    with Session(engine) as session:
        return session.exec(
            select(DistributionRecord)
            .where(DistributionRecord.position_id == position_id)
            .order_by(DistributionRecord.period_number)
        ).all()
