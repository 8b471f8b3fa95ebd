"""Lifecycle manager: moves positions from active to a terminal state.

Both transitions are compare-and-set updates guarded on status='active', so
re-observing a finished position is a no-op and no status ever moves backward.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import update
from sqlmodel import Session, select

from profit_service.config import Settings, settings as default_settings
from profit_service.engine.errors import PositionNotFoundError, PositionStateError
from profit_service.models.balance import Balance
from profit_service.models.ledger_transaction import LedgerTransaction
from profit_service.models.position import Position
from profit_service.utils.constants import (
    PositionKind,
    PositionStatus,
    TransactionType,
    TRANSACTION_DESCRIPTIONS,
)

logger = logging.getLogger(__name__)


class LifecycleManager:
    def __init__(self, engine, settings: Settings | None = None):
        self.engine = engine
        self.settings = settings or default_settings

    def advance(self, position_id: int, run_id: int | None = None) -> bool:
        """Complete the position if its final period has been paid.

        Returns True only for the call that performed the transition.
        """
        now = datetime.now(timezone.utc)
        with Session(self.engine) as session:
            conn = session.connection()
            result = conn.execute(
                update(Position)
                .where(Position.id == position_id)
                .where(Position.status == PositionStatus.ACTIVE.value)
                .where(Position.periods_credited >= Position.duration_periods)
                .values(status=PositionStatus.COMPLETED.value, completed_at=now)
            )
            if result.rowcount != 1:
                return False

            position = session.get(Position, position_id)
            duration = position.duration_periods
            if position.kind in self.settings.capital_return_kinds:
                self._return_capital(session, position, run_id=run_id)
            session.commit()

        logger.info(f"[position {position_id}] completed after {duration} periods")
        return True

    def complete_exhausted(self, kind: PositionKind | str, run_id: int | None = None) -> int:
        """Sweep: complete every active position of ``kind`` whose periods are all paid."""
        kind = PositionKind(kind)
        with Session(self.engine) as session:
            ids = session.exec(
                select(Position.id)
                .where(Position.kind == kind.value)
                .where(Position.status == PositionStatus.ACTIVE.value)
                .where(Position.periods_credited >= Position.duration_periods)
            ).all()
        return sum(1 for position_id in ids if self.advance(position_id, run_id=run_id))

    def cancel(self, position_id: int, operator: str | None = None) -> Position:
        """Cancel an active position and hand its principal back to the owner."""
        now = datetime.now(timezone.utc)
        with Session(self.engine) as session:
            conn = session.connection()
            result = conn.execute(
                update(Position)
                .where(Position.id == position_id)
                .where(Position.status == PositionStatus.ACTIVE.value)
                .values(status=PositionStatus.CANCELLED.value, cancelled_at=now)
            )
            position = session.get(Position, position_id)
            if position is None:
                raise PositionNotFoundError(f"position {position_id} not found")
            if result.rowcount != 1:
                raise PositionStateError(
                    f"position {position_id} is {position.status}, only active positions can be cancelled"
                )

            self._return_capital(session, position, operator=operator)
            session.commit()
            session.refresh(position)

        logger.warning(f"[position {position_id}] cancelled by {operator or 'system'}")
        return position

    def _return_capital(self, session: Session, position: Position, run_id: int | None = None,
                        operator: str | None = None):
        conn = session.connection()
        moved = conn.execute(
            update(Balance)
            .where(Balance.owner_id == position.owner_id)
            .values(
                invested=Balance.invested - position.principal,
                available=Balance.available + position.principal,
                updated_at=datetime.now(timezone.utc),
            )
        )
        if moved.rowcount != 1:
            raise PositionStateError(f"no balance row for owner {position.owner_id}")

        kind = PositionKind(position.kind)
        session.add(LedgerTransaction(
            owner_id=position.owner_id,
            position_id=position.id,
            run_id=run_id,
            type=TransactionType.CAPITAL_RETURN.value,
            balance_component="available",
            amount=position.principal,
            description=TRANSACTION_DESCRIPTIONS[(kind, TransactionType.CAPITAL_RETURN)],
            created_by=operator,
        ))
