"""Pydantic schemas for the distribution API."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class PositionFailure(BaseModel):
    position_id: int
    reason: str
    error_class: str  # "transient", "timeout", "data_integrity"


class RunSummary(BaseModel):
    """Structured result returned by every trigger call, including skipped runs."""
    kind: str
    period_key: str
    trigger: str
    status: str  # "completed", "skipped", "failed"
    reason: str | None = None
    run_id: int | None = None
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    completed: int = 0
    not_started: int = 0
    total_amount: Decimal = Decimal("0.00")
    failures: list[PositionFailure] = Field(default_factory=list)
    error: str | None = None


class RunRecord(BaseModel):
    """A persisted RunLock row."""
    id: int
    kind: str
    period_key: str
    status: str
    trigger: str
    triggered_by: str | None = None
    attempt: int
    started_at: datetime
    finished_at: datetime | None = None
    processed: int
    skipped: int
    failed: int
    completed: int
    not_started: int = 0
    total_amount: Decimal
    failures: list[PositionFailure] | None = None
    error: str | None = None

    model_config = {"from_attributes": True}


class DiscrepancyRead(BaseModel):
    owner_id: int
    profit_accrued: Decimal
    ledger_total: Decimal
    difference: Decimal


class ReconciliationReport(BaseModel):
    consistent: bool
    owners_checked: int
    discrepancies: list[DiscrepancyRead]
