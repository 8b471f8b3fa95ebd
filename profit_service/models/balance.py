"""Balance model: per-owner aggregate, only ever changed by additive updates."""

from datetime import datetime, timezone
from decimal import Decimal

from sqlmodel import SQLModel, Field

from profit_service.utils.constants import MONEY_DECIMAL_PLACES


class Balance(SQLModel, table=True):
    __tablename__ = "balance"

    id: int | None = Field(default=None, primary_key=True)
    owner_id: int = Field(index=True, unique=True)
    available: Decimal = Field(default=Decimal("0.00"), max_digits=18, decimal_places=MONEY_DECIMAL_PLACES)
    invested: Decimal = Field(default=Decimal("0.00"), max_digits=18, decimal_places=MONEY_DECIMAL_PLACES)
    profit_accrued: Decimal = Field(default=Decimal("0.00"), max_digits=18, decimal_places=MONEY_DECIMAL_PLACES)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
