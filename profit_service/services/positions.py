"""Position store boundary: funding new positions and building status views.

Positions are funded by the surrounding platform; ``open_position`` is the one
place that creates them here, moving the principal from the owner's available
balance into the invested one. Rate and principal are fixed at this point and
nothing in the engine ever writes them again.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, update
from sqlmodel import Session, select

from profit_service.engine.calculator import cumulative_amount, minimal_unit, per_period_amount
from profit_service.engine.periods import advance, as_utc
from profit_service.models.balance import Balance
from profit_service.models.distribution import DistributionRecord
from profit_service.models.position import Position
from profit_service.utils.constants import KIND_PERIOD_UNIT, PositionKind, PositionStatus

logger = logging.getLogger(__name__)


def ensure_balance(session: Session, owner_id: int, available: Decimal = Decimal("0.00")) -> Balance:
    """Return the owner's balance row, creating it with ``available`` funds if missing."""
    balance = session.exec(select(Balance).where(Balance.owner_id == owner_id)).first()
    if balance is None:
        balance = Balance(owner_id=owner_id, available=available)
        session.add(balance)
        session.commit()
        session.refresh(balance)
    return balance


def open_position(
    session: Session,
    owner_id: int,
    plan_id: int,
    kind: PositionKind | str,
    principal: Decimal,
    rate: Decimal,
    duration_periods: int,
    started_at: datetime | None = None,
) -> Position:
    """Fund a new position from the owner's available balance."""
    kind = PositionKind(kind)
    principal = Decimal(principal)
    rate = Decimal(rate)
    if principal <= 0:
        raise ValueError("principal must be positive")
    if rate < 0:
        raise ValueError("rate must not be negative")
    if duration_periods < 1:
        raise ValueError("duration_periods must be at least 1")

    moved = session.connection().execute(
        update(Balance)
        .where(Balance.owner_id == owner_id)
        .where(Balance.available >= principal)
        .values(
            available=Balance.available - principal,
            invested=Balance.invested + principal,
            updated_at=datetime.now(timezone.utc),
        )
    )
    if moved.rowcount != 1:
        session.rollback()
        raise ValueError(f"owner {owner_id} has no balance covering {principal}")

    position = Position(
        owner_id=owner_id,
        plan_id=plan_id,
        kind=kind.value,
        principal=principal,
        rate=rate,
        period_unit=KIND_PERIOD_UNIT[kind].value,
        started_at=started_at or datetime.now(timezone.utc),
        duration_periods=duration_periods,
    )
    session.add(position)
    session.commit()
    session.refresh(position)
    logger.info(
        f"Opened {kind.value} position {position.id} for owner {owner_id}: "
        f"{principal} at {rate} per {position.period_unit} for {duration_periods} periods"
    )
    return position


def position_status(session: Session, position: Position, now: datetime | None = None) -> dict:
    """Progress view of one position."""
    now = as_utc(now) if now else datetime.now(timezone.utc)
    earned = session.exec(
        select(func.count(DistributionRecord.id), func.coalesce(func.sum(DistributionRecord.amount), 0))
        .where(DistributionRecord.position_id == position.id)
    ).one()
    records, total = earned

    next_due = None
    if position.status == PositionStatus.ACTIVE and position.periods_credited < position.duration_periods:
        next_due = advance(position.started_at, position.period_unit, position.periods_credited)

    return {
        "id": position.id,
        "owner_id": position.owner_id,
        "plan_id": position.plan_id,
        "kind": position.kind,
        "status": position.status,
        "principal": position.principal,
        "rate": position.rate,
        "period_unit": position.period_unit,
        "started_at": as_utc(position.started_at).isoformat(),
        "duration_periods": position.duration_periods,
        "periods_credited": position.periods_credited,
        "periods_remaining": position.duration_periods - position.periods_credited,
        "progress_pct": round(position.periods_credited / position.duration_periods * 100, 1),
        "distribution_count": records,
        "total_earned": Decimal(str(total)).quantize(minimal_unit()),
        "per_period_amount": per_period_amount(position.principal, position.rate),
        "expected_total": cumulative_amount(position.principal, position.rate, position.duration_periods),
        "next_credit_due": next_due.isoformat() if next_due else None,
        "overdue": bool(next_due and next_due < now),
    }
