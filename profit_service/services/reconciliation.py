"""Balance reconciliation: verifies profit balances are derivable from the ledger.

For every owner the profit_accrued component must equal the sum of the
DistributionRecords of that owner's positions. Sums are taken in Python over
Decimals so the check does not depend on the database's numeric arithmetic.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal

from sqlmodel import Session, select

from profit_service.models.balance import Balance
from profit_service.models.distribution import DistributionRecord
from profit_service.models.position import Position

logger = logging.getLogger(__name__)


@dataclass
class BalanceDiscrepancy:
    owner_id: int
    profit_accrued: Decimal
    ledger_total: Decimal

    @property
    def difference(self) -> Decimal:
        return self.profit_accrued - self.ledger_total


def ledger_totals(session: Session) -> dict[int, Decimal]:
    """Sum of distributed amounts per owner."""
    rows = session.exec(
        select(Position.owner_id, DistributionRecord.amount)
        .join(Position, Position.id == DistributionRecord.position_id)
    ).all()
    totals: dict[int, Decimal] = defaultdict(lambda: Decimal("0.00"))
    for owner_id, amount in rows:
        totals[owner_id] += Decimal(amount)
    return dict(totals)


def reconcile_balances(session: Session) -> list[BalanceDiscrepancy]:
    """Return every owner whose profit balance disagrees with the ledger."""
    totals = ledger_totals(session)
    balances = {b.owner_id: b for b in session.exec(select(Balance)).all()}

    discrepancies = []
    for owner_id in sorted(set(totals) | set(balances)):
        accrued = balances[owner_id].profit_accrued if owner_id in balances else Decimal("0.00")
        expected = totals.get(owner_id, Decimal("0.00"))
        if Decimal(accrued) != expected:
            discrepancies.append(BalanceDiscrepancy(owner_id, Decimal(accrued), expected))

    if discrepancies:
        logger.warning(f"Reconciliation found {len(discrepancies)} balance discrepancies")
    return discrepancies
