"""Distribution API: scheduled trigger, manual run, status, history, abort, reconciliation."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlmodel import Session, select

from profit_service.api.deps import coordinator_dependency, get_current_user, require_trigger_secret
from profit_service.database import get_session
from profit_service.engine.coordinator import DistributionCoordinator
from profit_service.engine.errors import RunAbortedError
from profit_service.models.balance import Balance
from profit_service.models.operator import Operator
from profit_service.models.run_lock import RunLock
from profit_service.schemas.distribution import (
    DiscrepancyRead,
    ReconciliationReport,
    RunRecord,
    RunSummary,
)
from profit_service.services.reconciliation import ledger_totals, reconcile_balances
from profit_service.utils.constants import PositionKind, RunTrigger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/distribution", tags=["distribution"])


async def _run(
    coordinator: DistributionCoordinator,
    kind: PositionKind,
    trigger: RunTrigger,
    operator: str | None = None,
):
    try:
        result = await coordinator.run_distribution(
            kind, datetime.now(timezone.utc), trigger=trigger, operator=operator
        )
    except RunAbortedError as e:
        # Still account for whatever was processed before the fault
        body = RunSummary(**e.result.to_dict()).model_dump(mode="json")
        body["error_class"] = e.error_class
        return JSONResponse(status_code=503 if e.transient else 500, content=body)
    return RunSummary(**result.to_dict())


@router.post("/{kind}/trigger", response_model=RunSummary, dependencies=[Depends(require_trigger_secret)])
async def scheduled_trigger(
    kind: PositionKind,
    coordinator: DistributionCoordinator = Depends(coordinator_dependency),
):
    """Entry point for the external scheduler (shared-secret bearer token)."""
    return await _run(coordinator, kind, RunTrigger.SCHEDULED)


@router.post("/{kind}/run", response_model=RunSummary)
async def manual_run(
    kind: PositionKind,
    operator: Operator = Depends(get_current_user),
    coordinator: DistributionCoordinator = Depends(coordinator_dependency),
):
    """Operator-initiated run for the current period, subject to the cooldown guard."""
    logger.info(f"Operator {operator.username} requested a manual {kind.value} run")
    return await _run(coordinator, kind, RunTrigger.MANUAL, operator.username)


@router.get("/status", dependencies=[Depends(get_current_user)])
def distribution_status(coordinator: DistributionCoordinator = Depends(coordinator_dependency)):
    """Per-kind lock state, last completed period and manual cooldown."""
    now = datetime.now(timezone.utc)
    return {
        "kinds": [coordinator.guard.status(kind) for kind in PositionKind],
        "active_runs": coordinator.active_runs(),
        "timestamp": now.isoformat(),
    }


@router.get("/runs", response_model=list[RunRecord], dependencies=[Depends(get_current_user)])
def list_runs(
    kind: PositionKind | None = None,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(RunLock).order_by(RunLock.started_at.desc())
    if kind is not None:
        stmt = stmt.where(RunLock.kind == kind.value)
    if status is not None:
        stmt = stmt.where(RunLock.status == status)
    stmt = stmt.offset(offset).limit(limit)
    return session.exec(stmt).all()


@router.post("/{kind}/abort")
def abort_runs(
    kind: PositionKind,
    operator: Operator = Depends(get_current_user),
    coordinator: DistributionCoordinator = Depends(coordinator_dependency),
):
    """Stop in-process runs of ``kind`` from starting further positions."""
    aborted = coordinator.request_abort(kind)
    if aborted:
        logger.warning(f"Operator {operator.username} aborted {kind.value} runs: {aborted}")
    return {"kind": kind.value, "aborted_period_keys": aborted}


@router.get("/reconcile", response_model=ReconciliationReport, dependencies=[Depends(get_current_user)])
def reconcile(session: Session = Depends(get_session)):
    """Check that every profit balance equals the sum of its distribution records."""
    discrepancies = reconcile_balances(session)
    owners = set(ledger_totals(session)) | set(session.exec(select(Balance.owner_id)).all())
    return ReconciliationReport(
        consistent=not discrepancies,
        owners_checked=len(owners),
        discrepancies=[
            DiscrepancyRead(
                owner_id=d.owner_id,
                profit_accrued=d.profit_accrued,
                ledger_total=d.ledger_total,
                difference=d.difference,
            )
            for d in discrepancies
        ],
    )
