"""Database models."""

from profit_service.models.position import Position
from profit_service.models.distribution import DistributionRecord
from profit_service.models.balance import Balance
from profit_service.models.ledger_transaction import LedgerTransaction
from profit_service.models.run_lock import RunLock
from profit_service.models.operator import Operator

__all__ = [
    "Position",
    "DistributionRecord",
    "Balance",
    "LedgerTransaction",
    "RunLock",
    "Operator",
]
