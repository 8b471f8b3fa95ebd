"""Position model: a funded investment or live trade accruing profit per period."""

from datetime import datetime, timezone
from decimal import Decimal

from sqlmodel import SQLModel, Field

from profit_service.utils.constants import MONEY_DECIMAL_PLACES


class Position(SQLModel, table=True):
    __tablename__ = "position"

    id: int | None = Field(default=None, primary_key=True)
    owner_id: int = Field(index=True)
    plan_id: int = Field(index=True)
    kind: str = Field(index=True)  # "investment", "live_trade"
    principal: Decimal = Field(max_digits=18, decimal_places=MONEY_DECIMAL_PLACES)  # immutable after creation
    rate: Decimal = Field(max_digits=12, decimal_places=8)  # profit fraction per period, copied from the plan
    period_unit: str  # "day", "hour"
    started_at: datetime
    duration_periods: int
    status: str = Field(default="active", index=True)  # "active", "completed", "cancelled"
    periods_credited: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
