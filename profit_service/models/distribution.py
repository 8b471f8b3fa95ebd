"""DistributionRecord model: immutable proof that a position was paid for one period."""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field

from profit_service.utils.constants import MONEY_DECIMAL_PLACES


class DistributionRecord(SQLModel, table=True):
    __tablename__ = "distribution_record"
    __table_args__ = (
        UniqueConstraint("position_id", "period_key", name="uq_distribution_position_period"),
    )

    id: int | None = Field(default=None, primary_key=True)
    position_id: int = Field(foreign_key="position.id", index=True)
    period_key: str = Field(index=True)  # "2026-10-19" or "2026-10-19T14:00Z"
    period_number: int  # 1-based index of the credited period
    amount: Decimal = Field(max_digits=18, decimal_places=MONEY_DECIMAL_PLACES)
    run_id: int | None = Field(default=None, foreign_key="run_lock.id")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
