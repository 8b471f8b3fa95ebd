"""Run coordinator: the single entry point for scheduled and manual runs.

One run for (kind, period_key):
guard admission → eligibility selection → per position (calculate → credit →
lifecycle) with bounded parallelism → completion sweep → release the guard.

Per-position failures are isolated and reported in the result; only a failure
of the run itself (admission, selection, sweep) aborts it.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from decimal import Decimal

from sqlmodel import Session

from profit_service.config import Settings, settings as default_settings
from profit_service.engine.calculator import period_amount
from profit_service.engine.cooldown import Admission, CooldownGuard
from profit_service.engine.errors import (
    DataIntegrityError,
    DistributionError,
    RunAbortedError,
    StorageTimeout,
    TransientStorageError,
    classify_storage_error,
)
from profit_service.engine.ledger_writer import CreditOutcome, LedgerWriter
from profit_service.engine.lifecycle import LifecycleManager
from profit_service.engine.periods import Period, as_utc, period_for
from profit_service.engine.selector import EligibilitySelector
from profit_service.models.position import Position
from profit_service.utils.constants import PositionKind, RunStatus, RunTrigger

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """Aggregate outcome of one run; also the trigger endpoints' response body."""
    kind: str
    period_key: str
    trigger: str = RunTrigger.SCHEDULED.value
    status: str = RunStatus.RUNNING.value  # "completed", "failed", "skipped"
    reason: str | None = None  # why a run was skipped, or "aborted"
    run_id: int | None = None
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    completed: int = 0
    not_started: int = 0
    total_amount: Decimal = Decimal("0.00")
    failures: list[dict] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


class DistributionCoordinator:
    def __init__(self, engine, settings: Settings | None = None):
        self.engine = engine
        self.settings = settings or default_settings
        self.selector = EligibilitySelector(engine)
        self.writer = LedgerWriter(engine)
        self.lifecycle = LifecycleManager(engine, self.settings)
        self.guard = CooldownGuard(engine, self.settings)
        self._abort_events: dict[tuple[str, str], asyncio.Event] = {}

    async def run_distribution(
        self,
        kind: PositionKind | str,
        now: datetime | None = None,
        trigger: RunTrigger | str = RunTrigger.SCHEDULED,
        operator: str | None = None,
    ) -> RunResult:
        kind = PositionKind(kind)
        trigger = RunTrigger(trigger)
        now = as_utc(now) if now is not None else datetime.now(timezone.utc)
        period = period_for(kind, now)
        result = RunResult(kind=kind.value, period_key=period.key, trigger=trigger.value)
        tag = f"[{kind.value}:{period.key}]"
        started = time.monotonic()

        try:
            admission = await self._storage(self.guard.admit, kind, period, trigger, operator)
        except DistributionError as e:
            result.status = RunStatus.FAILED.value
            result.error = f"admission failed: {e}"
            logger.error(f"{tag} {result.error}")
            raise RunAbortedError(result.error, result, transient=isinstance(e, TransientStorageError)) from e

        if not admission.admitted:
            result.status = RunStatus.SKIPPED.value
            result.reason = admission.reason
            result.run_id = admission.run_id
            return result

        result.run_id = admission.run_id
        by = f" by {operator}" if operator else ""
        logger.info(f"{tag} run {admission.run_id} started ({trigger.value}{by})")

        abort = asyncio.Event()
        self._abort_events[(kind.value, period.key)] = abort
        try:
            selection = await self._storage(self.selector.select_due, kind, period)
            result.skipped += selection.already_settled
            semaphore = asyncio.Semaphore(max(1, self.settings.max_concurrency))

            async def worker(position: Position):
                async with semaphore:
                    if abort.is_set():
                        result.not_started += 1
                        return
                    await self._process_position(position.id, period, result)

            await asyncio.gather(*(worker(p) for p in selection.positions))
            result.completed += await self._storage(
                self.lifecycle.complete_exhausted, kind, admission.run_id
            )
        except Exception as e:
            error = classify_storage_error(e)
            result.status = RunStatus.FAILED.value
            result.error = str(error)
            logger.error(f"{tag} run {admission.run_id} aborted: {error}", exc_info=True)
            await self._release(admission, result)
            raise RunAbortedError(
                f"run aborted: {error}", result, transient=isinstance(error, TransientStorageError)
            ) from e
        finally:
            self._abort_events.pop((kind.value, period.key), None)

        result.status = RunStatus.COMPLETED.value
        if abort.is_set():
            result.reason = "aborted"
        await self._release(admission, result)
        logger.info(
            f"{tag} run {admission.run_id} finished: processed={result.processed} "
            f"skipped={result.skipped} failed={result.failed} completed={result.completed} "
            f"total={result.total_amount} in {time.monotonic() - started:.1f}s"
        )
        return result

    async def _process_position(self, position_id: int, period: Period, result: RunResult):
        attempts = max(1, self.settings.max_credit_attempts)
        outcome = None

        for attempt in range(1, attempts + 1):
            try:
                outcome = await self._storage(
                    self._credit_position, position_id, period, result.run_id, position_id=position_id
                )
                break
            except StorageTimeout as e:
                # Unknown outcome: look before retrying
                failure = e
                record = None
                try:
                    record = await self._storage(
                        self.writer.find_record, position_id, period.key, position_id=position_id
                    )
                except DistributionError as recheck_error:
                    failure = recheck_error
                if record is not None:
                    outcome = CreditOutcome(
                        "credited", record_id=record.id, amount=record.amount,
                        period_number=record.period_number, run_id=record.run_id,
                    )
                    break
                if attempt == attempts:
                    self._record_failure(result, position_id, failure)
                    return
                logger.warning(f"[position {position_id}] timed out without a record, retry {attempt}/{attempts - 1}")
                await asyncio.sleep(self.settings.retry_backoff_seconds * attempt)
            except TransientStorageError as e:
                if attempt == attempts:
                    self._record_failure(result, position_id, e)
                    return
                logger.warning(f"[position {position_id}] transient error, retry {attempt}/{attempts - 1}: {e}")
                await asyncio.sleep(self.settings.retry_backoff_seconds * attempt)
            except DistributionError as e:
                self._record_failure(result, position_id, e)
                return

        if outcome.status == "credited" or (
            outcome.status == "replayed" and outcome.run_id is not None and outcome.run_id == result.run_id
        ):
            result.processed += 1
            result.total_amount += outcome.amount
        else:
            result.skipped += 1

        if outcome.status != "credited":
            return
        try:
            if await self._storage(self.lifecycle.advance, position_id, result.run_id, position_id=position_id):
                result.completed += 1
        except DistributionError as e:
            # The end-of-run sweep completes it
            logger.error(f"[position {position_id}] completion deferred: {e}")

    def _credit_position(self, position_id: int, period: Period, run_id: int | None) -> CreditOutcome:
        with Session(self.engine) as session:
            position = session.get(Position, position_id)
        if position is None:
            raise DataIntegrityError(position_id, "position not found")

        amount = period_amount(position.principal, position.rate, position.periods_credited + 1)
        return self.writer.credit(position, period, amount, run_id)

    def _record_failure(self, result: RunResult, position_id: int, error: DistributionError):
        reason = getattr(error, "reason", None) or str(error)
        result.failed += 1
        result.failures.append({
            "position_id": position_id,
            "reason": reason,
            "error_class": error.error_class,
        })
        logger.error(f"[position {position_id}] credit failed ({error.error_class}): {reason}")

    async def _storage(self, fn, *args, position_id: int | None = None):
        """Run a blocking storage call in a worker thread with a deadline."""
        timeout = self.settings.storage_timeout_seconds
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise StorageTimeout(f"{fn.__name__} exceeded {timeout}s") from e
        except DistributionError:
            raise
        except Exception as e:
            raise classify_storage_error(e, position_id) from e

    async def _release(self, admission: Admission, result: RunResult):
        try:
            await self._storage(self.guard.release, admission.run_id, admission.attempt, result)
        except DistributionError as e:
            # The lock goes stale and the next run takes it over
            logger.error(f"Could not release run {admission.run_id}: {e}")

    def request_abort(self, kind: PositionKind | str | None = None) -> list[str]:
        """Stop in-process runs from starting new positions. Returns the affected period keys."""
        kind_value = PositionKind(kind).value if kind is not None else None
        aborted = []
        for (run_kind, period_key), event in self._abort_events.items():
            if kind_value is None or run_kind == kind_value:
                event.set()
                aborted.append(period_key)
        return aborted

    def active_runs(self) -> list[dict]:
        return [{"kind": k, "period_key": p} for (k, p) in self._abort_events]


_default_coordinator: DistributionCoordinator | None = None


def get_coordinator() -> DistributionCoordinator:
    """Process-wide coordinator bound to the application engine."""
    global _default_coordinator
    if _default_coordinator is None:
        from profit_service.database import engine
        _default_coordinator = DistributionCoordinator(engine)
    return _default_coordinator
