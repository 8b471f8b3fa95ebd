"""RunLock model: one row per (kind, period_key) run, claimed atomically."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, UniqueConstraint
from sqlmodel import SQLModel, Field, Column

from profit_service.utils.constants import MONEY_DECIMAL_PLACES


class RunLock(SQLModel, table=True):
    __tablename__ = "run_lock"
    __table_args__ = (
        UniqueConstraint("kind", "period_key", name="uq_run_lock_kind_period"),
    )

    id: int | None = Field(default=None, primary_key=True)
    kind: str = Field(index=True)  # "investment", "live_trade"
    period_key: str
    status: str  # "running", "completed", "failed"
    trigger: str  # "scheduled", "manual"
    triggered_by: str | None = None  # operator username for manual runs
    attempt: int = 1  # bumped on every re-claim
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    processed: int = 0
    skipped: int = 0
    failed: int = 0
    completed: int = 0
    not_started: int = 0  # left unpaid by an abort
    total_amount: Decimal = Field(default=Decimal("0.00"), max_digits=18, decimal_places=MONEY_DECIMAL_PLACES)
    failures: list[dict[str, Any]] | None = Field(default=None, sa_column=Column(JSON))
    error: str | None = None
