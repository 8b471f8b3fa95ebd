"""Positions API: inspection and admin cancellation."""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from profit_service.api.deps import coordinator_dependency, get_current_user
from profit_service.database import get_session
from profit_service.engine.coordinator import DistributionCoordinator
from profit_service.engine.errors import PositionNotFoundError, PositionStateError
from profit_service.models.distribution import DistributionRecord
from profit_service.models.operator import Operator
from profit_service.models.position import Position
from profit_service.services.positions import position_status
from profit_service.utils.constants import PositionKind

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/positions", tags=["positions"], dependencies=[Depends(get_current_user)])


@router.get("")
def list_positions(
    kind: PositionKind | None = None,
    status: str | None = None,
    owner_id: int | None = None,
    limit: int = 100,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(Position).order_by(Position.started_at.desc())
    if kind is not None:
        stmt = stmt.where(Position.kind == kind.value)
    if status is not None:
        stmt = stmt.where(Position.status == status)
    if owner_id is not None:
        stmt = stmt.where(Position.owner_id == owner_id)
    stmt = stmt.offset(offset).limit(limit)
    return session.exec(stmt).all()


@router.get("/{position_id}")
def get_position(position_id: int, session: Session = Depends(get_session)):
    """Position with progress, earnings and next credit due."""
    position = session.get(Position, position_id)
    if not position:
        raise HTTPException(status_code=404, detail="Position not found")
    return position_status(session, position)


@router.get("/{position_id}/distributions")
def position_distributions(position_id: int, session: Session = Depends(get_session)):
    if not session.get(Position, position_id):
        raise HTTPException(status_code=404, detail="Position not found")
    return session.exec(
        select(DistributionRecord)
        .where(DistributionRecord.position_id == position_id)
        .order_by(DistributionRecord.period_number)
    ).all()


@router.post("/{position_id}/cancel")
async def cancel_position(
    position_id: int,
    operator: Operator = Depends(get_current_user),
    coordinator: DistributionCoordinator = Depends(coordinator_dependency),
):
    """Cancel an active position and return its principal to the owner."""
    try:
        position = await asyncio.to_thread(coordinator.lifecycle.cancel, position_id, operator.username)
    except PositionNotFoundError:
        raise HTTPException(status_code=404, detail="Position not found")
    except PositionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {
        "id": position.id,
        "status": position.status,
        "cancelled_by": operator.username,
        "cancelled_at": position.cancelled_at.isoformat() if position.cancelled_at else None,
    }
