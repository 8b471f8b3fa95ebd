"""LedgerTransaction model: append-only audit trail of balance movements made by the engine."""

from datetime import datetime, timezone
from decimal import Decimal

from sqlmodel import SQLModel, Field

from profit_service.utils.constants import MONEY_DECIMAL_PLACES


class LedgerTransaction(SQLModel, table=True):
    __tablename__ = "ledger_transaction"

    id: int | None = Field(default=None, primary_key=True)
    owner_id: int = Field(index=True)
    position_id: int = Field(foreign_key="position.id", index=True)
    distribution_id: int | None = Field(default=None, foreign_key="distribution_record.id")
    run_id: int | None = Field(default=None, foreign_key="run_lock.id")
    type: str  # "profit", "capital_return"
    balance_component: str  # "profit_accrued", "available"
    amount: Decimal = Field(max_digits=18, decimal_places=MONEY_DECIMAL_PLACES)
    description: str | None = None
    created_by: str | None = None  # operator username for admin actions
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
