"""End-to-end run tests for the distribution coordinator on a SQLite ledger."""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from profit_service.config import Settings
from profit_service.engine.coordinator import DistributionCoordinator
from profit_service.engine.errors import RunAbortedError
from profit_service.engine.periods import as_utc, period_for
from profit_service.models.distribution import DistributionRecord
from profit_service.models.position import Position
from profit_service.models.run_lock import RunLock
from profit_service.services.reconciliation import reconcile_balances

from tests.conftest import DAY0_RUN, START, balance_of, load, records_for


def _all_records(engine):
    with Session(engine) as session:
        return session.exec(select(DistributionRecord)).all()


def _consistent(engine) -> bool:
    with Session(engine) as session:
        return reconcile_balances(session) == []


def _locked(message="database is locked"):
    return OperationalError("UPDATE position", {}, Exception(message))


# ---------------------------------------------------------------------------
# 1. Idempotence
# ---------------------------------------------------------------------------

class TestIdempotence:
    @pytest.mark.asyncio
    async def test_first_run_credits_every_due_position(self, coordinator, engine, fund):
        positions = [fund(owner_id=i) for i in range(1, 6)]
        result = await coordinator.run_distribution("investment", DAY0_RUN)

        assert result.status == "completed"
        assert result.period_key == "2026-03-02"
        assert result.processed == 5
        assert result.skipped == 0
        assert result.failed == 0
        assert result.total_amount == Decimal("75.00")
        for p in positions:
            assert [r.amount for r in records_for(engine, p.id)] == [Decimal("15.00")]

    @pytest.mark.asyncio
    async def test_repeated_scheduled_trigger_is_skipped(self, coordinator, engine, fund):
        for i in range(1, 4):
            fund(owner_id=i)
        await coordinator.run_distribution("investment", DAY0_RUN)
        again = await coordinator.run_distribution("investment", DAY0_RUN + timedelta(hours=3))

        assert again.status == "skipped"
        assert again.reason == "already_completed"
        assert again.processed == 0
        assert len(_all_records(engine)) == 3
        assert balance_of(engine, 1).profit_accrued == Decimal("15.00")

    @pytest.mark.asyncio
    async def test_readmitted_run_reports_settled_positions_as_skipped(self, engine, fund):
        settings = Settings(_env_file=None, retry_backoff_seconds=0, investment_manual_cooldown_hours=0)
        coordinator = DistributionCoordinator(engine, settings)
        for i in range(1, 4):
            fund(owner_id=i)
        await coordinator.run_distribution("investment", DAY0_RUN)

        manual = await coordinator.run_distribution(
            "investment", DAY0_RUN + timedelta(hours=1), trigger="manual", operator="ops"
        )
        assert manual.status == "completed"
        assert manual.processed == 0
        assert manual.skipped == 3
        assert len(_all_records(engine)) == 3

    @pytest.mark.asyncio
    async def test_concurrent_triggers_have_one_winner(self, coordinator, engine, fund):
        for i in range(1, 6):
            fund(owner_id=i)

        results = await asyncio.gather(
            coordinator.run_distribution("investment", DAY0_RUN),
            coordinator.run_distribution("investment", DAY0_RUN),
            coordinator.run_distribution("investment", DAY0_RUN, trigger="manual", operator="ops"),
        )

        statuses = sorted(r.status for r in results)
        assert statuses == ["completed", "skipped", "skipped"]
        assert sum(r.processed for r in results) == 5
        assert len(_all_records(engine)) == 5
        assert _consistent(engine)

    @pytest.mark.asyncio
    async def test_independent_coordinators_share_the_ledger_guard(self, engine, test_settings, fund):
        for i in range(1, 4):
            fund(owner_id=i)
        first = DistributionCoordinator(engine, test_settings)
        second = DistributionCoordinator(engine, test_settings)

        results = await asyncio.gather(
            first.run_distribution("investment", DAY0_RUN),
            second.run_distribution("investment", DAY0_RUN),
        )
        assert sum(r.processed for r in results) == 3
        assert len(_all_records(engine)) == 3


# ---------------------------------------------------------------------------
# 2. Lifecycle across runs
# ---------------------------------------------------------------------------

class TestScenario:
    @pytest.mark.asyncio
    async def test_ten_day_investment(self, coordinator, engine, fund):
        position = fund(principal="1000.00", rate="0.015", duration=10)

        for day in range(10):
            result = await coordinator.run_distribution("investment", DAY0_RUN + timedelta(days=day))
            assert result.processed == 1
            assert result.total_amount == Decimal("15.00")

        assert result.completed == 1
        done = load(engine, Position, position.id)
        assert done.status == "completed"
        assert done.periods_credited == 10

        records = records_for(engine, position.id)
        assert [r.period_number for r in records] == list(range(1, 11))
        assert sum(r.amount for r in records) == Decimal("150.00")
        assert balance_of(engine, 1).profit_accrued == Decimal("150.00")

        eleventh = await coordinator.run_distribution("investment", DAY0_RUN + timedelta(days=10))
        assert eleventh.status == "completed"
        assert eleventh.processed == 0
        assert len(records_for(engine, position.id)) == 10

    @pytest.mark.asyncio
    async def test_missed_day_is_caught_up_one_period_per_run(self, coordinator, engine, fund):
        position = fund(duration=5)
        await coordinator.run_distribution("investment", DAY0_RUN)
        # Day 1 never ran
        await coordinator.run_distribution("investment", DAY0_RUN + timedelta(days=2))

        assert [r.period_number for r in records_for(engine, position.id)] == [1, 2]
        assert load(engine, Position, position.id).periods_credited == 2

    @pytest.mark.asyncio
    async def test_hourly_live_trade_returns_capital(self, coordinator, engine, fund):
        trade_start = DAY0_RUN.replace(minute=0)
        fund(kind="live_trade", principal="500.00", rate="0.002", duration=3, started_at=trade_start)

        for hour in range(3):
            now = trade_start + timedelta(hours=hour, minutes=1)
            result = await coordinator.run_distribution("live_trade", now)
            assert result.processed == 1
            assert result.period_key == now.strftime("%Y-%m-%dT%H:00Z")

        assert result.completed == 1
        balance = balance_of(engine, 1)
        assert balance.profit_accrued == Decimal("3.00")
        assert balance.invested == Decimal("0.00")
        assert balance.available == Decimal("100000.00")

    @pytest.mark.asyncio
    async def test_cancelled_position_is_never_credited(self, coordinator, engine, fund):
        kept = fund(owner_id=1)
        dropped = fund(owner_id=2)
        coordinator.lifecycle.cancel(dropped.id)

        result = await coordinator.run_distribution("investment", DAY0_RUN)
        assert result.processed == 1
        assert len(records_for(engine, kept.id)) == 1
        assert records_for(engine, dropped.id) == []


# ---------------------------------------------------------------------------
# 3. Failures
# ---------------------------------------------------------------------------

class TestFailures:
    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, coordinator, engine, fund):
        fund()
        real_credit = coordinator.writer.credit
        calls = []

        def flaky(*args):
            calls.append(args[0].id)
            if len(calls) == 1:
                raise _locked()
            return real_credit(*args)

        with patch.object(coordinator.writer, "credit", side_effect=flaky):
            result = await coordinator.run_distribution("investment", DAY0_RUN)

        assert len(calls) == 2
        assert result.processed == 1
        assert result.failed == 0

    @pytest.mark.asyncio
    async def test_exhausted_retries_are_reported_and_rerun_fills_gap(self, coordinator, engine, fund):
        positions = [fund(owner_id=i) for i in range(1, 4)]
        broken_id = positions[1].id
        real_credit = coordinator.writer.credit

        def failing_for_one(position, *args):
            if position.id == broken_id:
                raise _locked()
            return real_credit(position, *args)

        with patch.object(coordinator.writer, "credit", side_effect=failing_for_one):
            first = await coordinator.run_distribution("investment", DAY0_RUN)

        assert first.status == "completed"
        assert first.processed == 2
        assert first.failed == 1
        assert first.failures[0]["position_id"] == broken_id
        assert first.failures[0]["error_class"] == "transient"
        assert records_for(engine, broken_id) == []
        lock = load(engine, RunLock, first.run_id)
        assert lock.failed == 1
        assert lock.failures[0]["position_id"] == broken_id

        # A scheduled re-trigger is admitted because the run had failures
        second = await coordinator.run_distribution("investment", DAY0_RUN + timedelta(minutes=10))
        assert second.status == "completed"
        assert second.run_id == first.run_id
        assert second.processed == 1
        assert second.skipped == 2
        assert second.failed == 0
        assert len(_all_records(engine)) == 3
        assert _consistent(engine)

    @pytest.mark.asyncio
    async def test_data_integrity_failure_is_isolated(self, coordinator, engine, fund):
        healthy = fund(owner_id=1)
        with Session(engine) as session:
            orphan = Position(
                owner_id=77, plan_id=1, kind="investment", principal=Decimal("200.00"),
                rate=Decimal("0.01"), period_unit="day", started_at=START, duration_periods=3,
            )
            session.add(orphan)
            session.commit()
            session.refresh(orphan)

        result = await coordinator.run_distribution("investment", DAY0_RUN)

        assert result.processed == 1
        assert result.failed == 1
        assert result.failures[0]["position_id"] == orphan.id
        assert result.failures[0]["error_class"] == "data_integrity"
        assert len(records_for(engine, healthy.id)) == 1
        assert records_for(engine, orphan.id) == []

    @pytest.mark.asyncio
    async def test_timeout_with_committed_credit_counts_as_processed(self, engine, fund):
        settings = Settings(_env_file=None, storage_timeout_seconds=1.0, retry_backoff_seconds=0)
        coordinator = DistributionCoordinator(engine, settings)
        position = fund()
        real_credit = coordinator.writer.credit

        def commits_then_hangs(*args):
            outcome = real_credit(*args)
            time.sleep(2.0)
            return outcome

        with patch.object(coordinator.writer, "credit", side_effect=commits_then_hangs):
            result = await coordinator.run_distribution("investment", DAY0_RUN)

        assert result.processed == 1
        assert result.failed == 0
        assert result.total_amount == Decimal("15.00")
        assert len(records_for(engine, position.id)) == 1

    @pytest.mark.asyncio
    async def test_selection_failure_aborts_and_releases(self, coordinator, engine, fund):
        fund()
        with patch.object(coordinator.selector, "select_due", side_effect=_locked()):
            with pytest.raises(RunAbortedError) as exc:
                await coordinator.run_distribution("investment", DAY0_RUN)

        assert exc.value.transient is True
        assert exc.value.result.status == "failed"
        lock = load(engine, RunLock, exc.value.result.run_id)
        assert lock.status == "failed"

        # The failed period can be run again
        retry = await coordinator.run_distribution("investment", DAY0_RUN + timedelta(minutes=5))
        assert retry.status == "completed"
        assert retry.processed == 1


    @pytest.mark.asyncio
    async def test_timeout_without_record_backs_off_before_retry(self, engine, fund):
        settings = Settings(_env_file=None, storage_timeout_seconds=0.5, retry_backoff_seconds=0.25)
        coordinator = DistributionCoordinator(engine, settings)
        position = fund()
        real_credit = coordinator.writer.credit
        calls = []

        def hangs_once_without_writing(*args):
            calls.append(args[0].id)
            if len(calls) == 1:
                time.sleep(1.0)
                return None
            return real_credit(*args)

        with patch.object(coordinator.writer, "credit", side_effect=hangs_once_without_writing), \
                patch("profit_service.engine.coordinator.asyncio.sleep", new_callable=AsyncMock) as backoff:
            result = await coordinator.run_distribution("investment", DAY0_RUN)

        backoff.assert_awaited_once_with(0.25)
        assert len(calls) == 2
        assert result.processed == 1
        assert result.failed == 0
        assert len(records_for(engine, position.id)) == 1


# ---------------------------------------------------------------------------
# 4. Abort and overlapping triggers
# ---------------------------------------------------------------------------

class TestAbort:
    @pytest.fixture
    def serial(self, engine):
        settings = Settings(_env_file=None, max_concurrency=1, retry_backoff_seconds=0)
        return DistributionCoordinator(engine, settings)

    async def _aborted_run(self, coordinator):
        real_process = coordinator._process_position

        async def abort_after_first(*args):
            assert coordinator.active_runs() == [{"kind": "investment", "period_key": "2026-03-02"}]
            coordinator.request_abort("investment")
            await real_process(*args)

        with patch.object(coordinator, "_process_position", side_effect=abort_after_first):
            return await coordinator.run_distribution("investment", DAY0_RUN)

    @pytest.mark.asyncio
    async def test_abort_stops_unstarted_positions(self, serial, engine, fund):
        for i in range(1, 4):
            fund(owner_id=i)

        result = await self._aborted_run(serial)

        assert result.status == "completed"
        assert result.reason == "aborted"
        assert result.processed == 1
        assert result.not_started == 2
        assert serial.active_runs() == []
        assert len(_all_records(engine)) == 1

        lock = load(engine, RunLock, result.run_id)
        assert lock.status == "completed"
        assert lock.not_started == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("trigger", ["scheduled", "manual"])
    async def test_retry_after_abort_pays_the_rest(self, serial, engine, fund, trigger):
        positions = [fund(owner_id=i) for i in range(1, 4)]
        aborted = await self._aborted_run(serial)

        retry = await serial.run_distribution(
            "investment", DAY0_RUN + timedelta(minutes=5), trigger=trigger, operator="ops"
        )

        assert retry.status == "completed"
        assert retry.run_id == aborted.run_id
        assert retry.processed == 2
        assert retry.skipped == 1
        assert retry.not_started == 0
        assert [len(records_for(engine, p.id)) for p in positions] == [1, 1, 1]
        assert load(engine, RunLock, retry.run_id).not_started == 0
        assert _consistent(engine)

        # Settled now, so a further scheduled trigger is refused
        again = await serial.run_distribution("investment", DAY0_RUN + timedelta(minutes=10))
        assert again.status == "skipped"
        assert again.reason == "already_completed"

    @pytest.mark.asyncio
    async def test_backdated_reading_does_not_make_a_live_run_stale(self, coordinator, engine, fund):
        fund()
        held = coordinator.guard.admit("investment", period_for("investment", DAY0_RUN), "manual", "cli")
        assert held.admitted

        # An hour past the backdated reading, but the lock is seconds old
        later = await coordinator.run_distribution("investment", DAY0_RUN + timedelta(hours=1))

        assert later.status == "skipped"
        assert later.reason == "in_progress"
        assert _all_records(engine) == []
        lock = load(engine, RunLock, held.run_id)
        assert lock.attempt == 1
        assert datetime.now(timezone.utc) - as_utc(lock.started_at) < timedelta(minutes=5)
