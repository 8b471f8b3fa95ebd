"""Shared constants: position kinds, statuses and period units."""

from enum import Enum


class PositionKind(str, Enum):
    INVESTMENT = "investment"
    LIVE_TRADE = "live_trade"


class PeriodUnit(str, Enum):
    DAY = "day"
    HOUR = "hour"


class PositionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"  # only ever reported, never stored on a RunLock


class RunTrigger(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class TransactionType(str, Enum):
    PROFIT = "profit"
    CAPITAL_RETURN = "capital_return"


# Crediting cadence per kind
KIND_PERIOD_UNIT: dict[PositionKind, PeriodUnit] = {
    PositionKind.INVESTMENT: PeriodUnit.DAY,
    PositionKind.LIVE_TRADE: PeriodUnit.HOUR,
}

TRANSACTION_DESCRIPTIONS: dict[tuple[PositionKind, TransactionType], str] = {
    (PositionKind.INVESTMENT, TransactionType.PROFIT): "Daily investment profit",
    (PositionKind.LIVE_TRADE, TransactionType.PROFIT): "Live trade hourly profit",
    (PositionKind.INVESTMENT, TransactionType.CAPITAL_RETURN): "Investment capital return",
    (PositionKind.LIVE_TRADE, TransactionType.CAPITAL_RETURN): "Live trade capital return",
}

# Scale of every money column and of computed amounts
MONEY_DECIMAL_PLACES = 2
