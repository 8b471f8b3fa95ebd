"""Ledger writer: credits one (position, period) exactly once.

A credit is one transaction: insert the DistributionRecord, bump the
position's periods_credited, add the amount to the owner's profit balance and
append the audit transaction. The unique (position_id, period_key) constraint
is what makes replays harmless; the record insert goes first so a duplicate is
detected before anything else is touched.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from profit_service.engine.errors import ConcurrentCreditError, DataIntegrityError
from profit_service.engine.periods import Period
from profit_service.models.balance import Balance
from profit_service.models.distribution import DistributionRecord
from profit_service.models.ledger_transaction import LedgerTransaction
from profit_service.models.position import Position
from profit_service.utils.constants import (
    PositionKind,
    PositionStatus,
    TransactionType,
    TRANSACTION_DESCRIPTIONS,
)

logger = logging.getLogger(__name__)


@dataclass
class CreditOutcome:
    status: str  # "credited", "replayed", "not_creditable"
    record_id: int | None = None
    amount: Decimal = Decimal("0.00")
    period_number: int | None = None
    run_id: int | None = None

    @property
    def credited(self) -> bool:
        return self.status == "credited"


class LedgerWriter:
    def __init__(self, engine):
        self.engine = engine

    def credit(
        self,
        position: Position,
        period: Period,
        amount: Decimal,
        run_id: int | None = None,
    ) -> CreditOutcome:
        """Credit ``amount`` to ``position`` for ``period``.

        ``position`` is the snapshot the amount was computed from; the write only
        applies if periods_credited still matches it.
        """
        if (
            position.status != PositionStatus.ACTIVE
            or position.periods_credited >= position.duration_periods
        ):
            return CreditOutcome("not_creditable")

        with Session(self.engine) as session:
            try:
                record = self._apply(session, position, period, amount, run_id)
                session.commit()
            except IntegrityError as e:
                session.rollback()
                existing = self.find_record(position.id, period.key)
                if existing is not None:
                    logger.info(
                        f"[position {position.id}] {period.key} already credited "
                        f"(record {existing.id}), replay is a no-op"
                    )
                    return CreditOutcome(
                        "replayed",
                        record_id=existing.id,
                        amount=existing.amount,
                        period_number=existing.period_number,
                        run_id=existing.run_id,
                    )
                raise DataIntegrityError(position.id, f"constraint violation: {e.orig}") from e

            logger.info(
                f"[position {position.id}] credited {amount} for {period.key} "
                f"(period {record.period_number}/{position.duration_periods})"
            )
            return CreditOutcome(
                "credited",
                record_id=record.id,
                amount=record.amount,
                period_number=record.period_number,
                run_id=run_id,
            )

    def _apply(
        self,
        session: Session,
        position: Position,
        period: Period,
        amount: Decimal,
        run_id: int | None,
    ) -> DistributionRecord:
        now = datetime.now(timezone.utc)
        record = DistributionRecord(
            position_id=position.id,
            period_key=period.key,
            period_number=position.periods_credited + 1,
            amount=amount,
            run_id=run_id,
        )
        session.add(record)
        session.flush()

        # Row lock on PostgreSQL; SQLite already holds the write lock after the insert
        session.exec(
            select(Position.id).where(Position.id == position.id).with_for_update()
        ).first()

        conn = session.connection()
        bumped = conn.execute(
            update(Position)
            .where(Position.id == position.id)
            .where(Position.status == PositionStatus.ACTIVE.value)
            .where(Position.periods_credited == position.periods_credited)
            .where(Position.periods_credited < Position.duration_periods)
            .values(periods_credited=Position.periods_credited + 1)
        )
        if bumped.rowcount != 1:
            raise ConcurrentCreditError(
                f"position {position.id} changed since snapshot "
                f"(expected periods_credited={position.periods_credited})"
            )

        credited = conn.execute(
            update(Balance)
            .where(Balance.owner_id == position.owner_id)
            .values(profit_accrued=Balance.profit_accrued + amount, updated_at=now)
        )
        if credited.rowcount != 1:
            raise DataIntegrityError(position.id, f"no balance row for owner {position.owner_id}")

        kind = PositionKind(position.kind)
        session.add(LedgerTransaction(
            owner_id=position.owner_id,
            position_id=position.id,
            distribution_id=record.id,
            run_id=run_id,
            type=TransactionType.PROFIT.value,
            balance_component="profit_accrued",
            amount=amount,
            description=f"{TRANSACTION_DESCRIPTIONS[(kind, TransactionType.PROFIT)]} ({period.key})",
        ))
        session.flush()
        return record

    def find_record(self, position_id: int, period_key: str) -> DistributionRecord | None:
        with Session(self.engine) as session:
            return session.exec(
                select(DistributionRecord)
                .where(DistributionRecord.position_id == position_id)
                .where(DistributionRecord.period_key == period_key)
            ).first()
