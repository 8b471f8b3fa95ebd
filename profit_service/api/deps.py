"""Shared API dependencies."""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlmodel import Session, select

from profit_service.database import get_session
from profit_service.engine.coordinator import DistributionCoordinator, get_coordinator
from profit_service.models.operator import Operator
from profit_service.services.auth import decode_access_token, verify_trigger_secret

bearer_scheme = HTTPBearer()
trigger_scheme = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    session: Session = Depends(get_session),
) -> Operator:
    """Validate the operator JWT and return the operator."""
    username = decode_access_token(credentials.credentials)
    if username is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    operator = session.exec(select(Operator).where(Operator.username == username)).first()
    if operator is None or not operator.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Operator not found or inactive",
        )
    return operator


def require_trigger_secret(
    credentials: HTTPAuthorizationCredentials | None = Depends(trigger_scheme),
) -> None:
    """Reject scheduler calls without the shared secret before any engine work."""
    if credentials is None or not verify_trigger_secret(credentials.credentials):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid trigger credential",
        )


def coordinator_dependency() -> DistributionCoordinator:
    return get_coordinator()
