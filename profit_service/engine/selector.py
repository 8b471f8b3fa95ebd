"""Eligibility selector: which positions are due for a period.

"Already paid" is answered by the presence of a DistributionRecord for the
period key, never by a flag on the position, so repeated or retried runs see
the same answer the ledger writer's unique constraint enforces.
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy import exists, func
from sqlmodel import Session, select

from profit_service.engine.periods import Period, advance
from profit_service.models.distribution import DistributionRecord
from profit_service.models.position import Position
from profit_service.utils.constants import PositionKind, PositionStatus

logger = logging.getLogger(__name__)


@dataclass
class Selection:
    """Positions due for a period plus how many were already paid for it."""
    period: Period
    positions: list[Position] = field(default_factory=list)
    already_settled: int = 0


class EligibilitySelector:
    def __init__(self, engine):
        self.engine = engine

    def select_due(self, kind: PositionKind | str, period: Period) -> Selection:
        kind = PositionKind(kind)
        paid_for_period = exists().where(
            DistributionRecord.position_id == Position.id,
            DistributionRecord.period_key == period.key,
        )
        stmt = (
            select(Position)
            .where(Position.kind == kind.value)
            .where(Position.status == PositionStatus.ACTIVE.value)
            .where(Position.periods_credited < Position.duration_periods)
            .where(~paid_for_period)
            .order_by(Position.started_at, Position.id)
        )
        settled_stmt = (
            select(func.count(DistributionRecord.id))
            .join(Position, Position.id == DistributionRecord.position_id)
            .where(Position.kind == kind.value)
            .where(DistributionRecord.period_key == period.key)
        )

        with Session(self.engine) as session:
            candidates = session.exec(stmt).all()
            settled = session.exec(settled_stmt).one()

        due = [p for p in candidates if is_due(p, period)]
        logger.debug(
            f"[{kind.value}:{period.key}] {len(due)} due of {len(candidates)} unpaid active, "
            f"{settled} already settled"
        )
        return Selection(period=period, positions=due, already_settled=settled)


def is_due(position: Position, period: Period) -> bool:
    """The next unpaid period of the position starts before the end of ``period``."""
    if position.status != PositionStatus.ACTIVE:
        return False
    if position.periods_credited >= position.duration_periods:
        return False
    next_start = advance(position.started_at, position.period_unit, position.periods_credited)
    return next_start < period.end
