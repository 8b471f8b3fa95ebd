"""Cooldown guard: admits at most one run per (kind, period_key).

Admission is a single atomic claim in storage: either the INSERT of a new
RunLock row wins the unique (kind, period_key) constraint, or a conditional
UPDATE re-claims an existing row guarded by the status and attempt counter
that were observed. Concurrent callers therefore get exactly one winner.

Lock timestamps come from the guard's own clock, never from the reading a
caller used to pick the period, so a backdated run cannot look stale.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from profit_service.config import Settings, settings as default_settings
from profit_service.engine.periods import Period, as_utc, period_for
from profit_service.models.run_lock import RunLock
from profit_service.utils.constants import PositionKind, RunStatus, RunTrigger

logger = logging.getLogger(__name__)


@dataclass
class Admission:
    admitted: bool
    run_id: int | None = None
    attempt: int = 0
    reason: str | None = None  # "in_progress", "already_completed", "cooldown"


class CooldownGuard:
    def __init__(self, engine, settings: Settings | None = None, clock=None):
        self.engine = engine
        self.settings = settings or default_settings
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def manual_cooldown(self, kind: PositionKind | str) -> timedelta:
        if PositionKind(kind) == PositionKind.INVESTMENT:
            return timedelta(hours=self.settings.investment_manual_cooldown_hours)
        return timedelta(hours=self.settings.live_trade_manual_cooldown_hours)

    def admit(
        self,
        kind: PositionKind | str,
        period: Period,
        trigger: RunTrigger | str = RunTrigger.SCHEDULED,
        operator: str | None = None,
    ) -> Admission:
        kind = PositionKind(kind)
        trigger = RunTrigger(trigger)
        now = self.clock()

        with Session(self.engine) as session:
            lock = RunLock(
                kind=kind.value,
                period_key=period.key,
                status=RunStatus.RUNNING.value,
                trigger=trigger.value,
                triggered_by=operator,
                started_at=now,
            )
            session.add(lock)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
            else:
                logger.info(f"[{kind.value}:{period.key}] run {lock.id} claimed ({trigger.value})")
                return Admission(True, run_id=lock.id, attempt=1)

        return self._reclaim(kind, period, trigger, operator, now)

    def _reclaim(self, kind, period, trigger, operator, now) -> Admission:
        with Session(self.engine) as session:
            existing = session.exec(
                select(RunLock)
                .where(RunLock.kind == kind.value)
                .where(RunLock.period_key == period.key)
            ).first()
            if existing is None:
                return Admission(False, reason="in_progress")

            run_id, attempt, status = existing.id, existing.attempt, existing.status
            reason = self.rejection_reason(existing, trigger, now)
            if reason is not None:
                logger.info(f"[{kind.value}:{period.key}] {trigger.value} run rejected: {reason}")
                return Admission(False, run_id=run_id, attempt=attempt, reason=reason)

            result = session.connection().execute(
                update(RunLock)
                .where(RunLock.id == run_id)
                .where(RunLock.attempt == attempt)
                .where(RunLock.status == status)
                .values(
                    status=RunStatus.RUNNING.value,
                    attempt=attempt + 1,
                    trigger=trigger.value,
                    triggered_by=operator,
                    started_at=now,
                    finished_at=None,
                    processed=0,
                    skipped=0,
                    failed=0,
                    completed=0,
                    not_started=0,
                    total_amount=Decimal("0.00"),
                    failures=[],
                    error=None,
                )
            )
            claimed = result.rowcount == 1
            session.commit()

        if not claimed:
            logger.info(f"[{kind.value}:{period.key}] lost re-claim race for run {run_id}")
            return Admission(False, run_id=run_id, attempt=attempt, reason="in_progress")

        logger.info(
            f"[{kind.value}:{period.key}] run {run_id} re-claimed after {status} "
            f"(attempt {attempt + 1}, {trigger.value})"
        )
        return Admission(True, run_id=run_id, attempt=attempt + 1)

    def rejection_reason(self, lock: RunLock, trigger: RunTrigger, now: datetime) -> str | None:
        if lock.status == RunStatus.RUNNING:
            age = now - as_utc(lock.started_at)
            if age < timedelta(seconds=self.settings.run_lock_stale_after_seconds):
                return "in_progress"
            logger.warning(
                f"[{lock.kind}:{lock.period_key}] taking over stale run {lock.id} started {lock.started_at}"
            )
            return None

        if is_clean(lock):
            if trigger == RunTrigger.SCHEDULED:
                return "already_completed"
            if lock.finished_at is not None and now - as_utc(lock.finished_at) < self.manual_cooldown(lock.kind):
                return "cooldown"
        return None

    def release(self, run_id: int, attempt: int, result) -> bool:
        """Record the final state of a claimed run. Ignored if the claim was taken over."""
        finished_at = self.clock()
        with Session(self.engine) as session:
            updated = session.connection().execute(
                update(RunLock)
                .where(RunLock.id == run_id)
                .where(RunLock.attempt == attempt)
                .values(
                    status=result.status,
                    finished_at=finished_at,
                    processed=result.processed,
                    skipped=result.skipped,
                    failed=result.failed,
                    completed=result.completed,
                    not_started=result.not_started,
                    total_amount=result.total_amount,
                    failures=list(result.failures),
                    error=result.error,
                )
            )
            released = updated.rowcount == 1
            session.commit()
        if not released:
            logger.warning(f"Run {run_id} attempt {attempt} was taken over before it finished")
            return False
        return True

    def status(self, kind: PositionKind | str) -> dict:
        """Inspection view used by the status endpoint."""
        kind = PositionKind(kind)
        now = self.clock()
        period = period_for(kind, now)
        stale_after = timedelta(seconds=self.settings.run_lock_stale_after_seconds)

        with Session(self.engine) as session:
            running = session.exec(
                select(RunLock)
                .where(RunLock.kind == kind.value)
                .where(RunLock.status == RunStatus.RUNNING.value)
                .order_by(RunLock.started_at.desc())
            ).all()
            last_completed = session.exec(
                select(RunLock)
                .where(RunLock.kind == kind.value)
                .where(RunLock.status == RunStatus.COMPLETED.value)
                .order_by(RunLock.period_key.desc())
            ).first()
            current = session.exec(
                select(RunLock)
                .where(RunLock.kind == kind.value)
                .where(RunLock.period_key == period.key)
            ).first()

        live = [r for r in running if now - as_utc(r.started_at) < stale_after]
        remaining = timedelta(0)
        if current is not None and is_clean(current) and current.finished_at is not None:
            remaining = max(timedelta(0), self.manual_cooldown(kind) - (now - as_utc(current.finished_at)))

        return {
            "kind": kind.value,
            "current_period_key": period.key,
            "running": bool(live),
            "running_period_keys": [r.period_key for r in live],
            "current_run_status": current.status if current else None,
            "last_completed_period_key": last_completed.period_key if last_completed else None,
            "last_completed_at": last_completed.finished_at.isoformat()
            if last_completed and last_completed.finished_at else None,
            "manual_cooldown_remaining_seconds": int(remaining.total_seconds()),
            "manual_cooldown_remaining": format_remaining(remaining),
        }


def is_clean(lock: RunLock) -> bool:
    """Completed with every due position settled; only such runs block a retry."""
    return lock.status == RunStatus.COMPLETED and lock.failed == 0 and not lock.not_started


def format_remaining(remaining: timedelta) -> str:
    """Human-readable cooldown, e.g. "3h 12m remaining" or "Ready"."""
    seconds = int(remaining.total_seconds())
    if seconds <= 0:
        return "Ready"
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f"{hours}h {minutes}m remaining"
    if minutes > 0:
        return f"{minutes}m {secs}s remaining"
    return f"{secs}s remaining"
