"""Maturity bonus scheduler tests"""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch

from sqlalchemy import select

from bullion_gateway.domain.models import (
    Channel,
    MaturityRunSummary,
    PlanStatus,
    SipInstallmentIntent,
    TransactionKind,
)
from bullion_gateway.infrastructure.database.models import LedgerTransaction, Plan
from bullion_gateway.services.plans import PlanService
from bullion_gateway.services.scheduler import MaturityScheduler, bonus_reference
from bullion_gateway.services.settlement import SettlementOrchestrator
from bullion_gateway.utils.date_utils import add_months

START = datetime(2025, 1, 10, 6, 0, tzinfo=timezone.utc)
# One day after the 12th installment would have been due
RUN_AT = add_months(START, 12) + timedelta(days=1)


def plan_with_eleven_installments(db, template, user_id="user-1") -> Plan:
    plan = PlanService(db).opt_in_fixed(user_id, template.id, now=START)
    orchestrator = SettlementOrchestrator(db)
    for month in range(1, 12):
        orchestrator.submit(
            SipInstallmentIntent(
                user_id=user_id,
                amount=Decimal("1000"),
                channel=Channel.ONLINE,
                utr=None,
                plan_id=str(plan.id),
                plan_kind=plan.kind,
            ),
            now=add_months(START, month),
        )
    db.commit()
    return plan


@pytest.fixture
def scheduler(session_factory, notifier) -> MaturityScheduler:
    return MaturityScheduler(session_factory=session_factory, notifier=notifier, interval_seconds=3600)


def test_bonus_credited_once_across_runs(db, template, scheduler):
    """11 installments of 1000 earn a bonus of 1000"""
    plan = plan_with_eleven_installments(db, template)

    first = scheduler.run_once(now=RUN_AT)
    second = scheduler.run_once(now=RUN_AT)

    assert (first.processed, first.skipped, first.failed) == (1, 0, 0)
    assert (second.processed, second.skipped, second.failed) == (0, 0, 0)
    assert [n.user_id for n in first.notifications] == ["user-1"]

    db.expire_all()
    refreshed = db.get(Plan, plan.id)
    assert refreshed.status == PlanStatus.COMPLETED
    assert refreshed.months_paid == 12
    assert refreshed.total_amount_paid == Decimal("12000")
    assert refreshed.next_due_date is None

    bonuses = db.execute(
        select(LedgerTransaction).where(LedgerTransaction.kind == TransactionKind.SIP_BONUS)
    ).scalars().all()
    assert len(bonuses) == 1
    assert bonuses[0].amount == Decimal("1000")
    assert bonuses[0].channel == Channel.SCHEDULED
    assert bonuses[0].utr == bonus_reference(plan.id)


def test_plan_not_yet_due_is_left_alone(db, template, scheduler):
    plan_with_eleven_installments(db, template)

    summary = scheduler.run_once(now=add_months(START, 12) - timedelta(days=1))

    assert summary.processed == 0


def test_plan_paid_before_run_is_skipped(db, template, scheduler):
    plan = plan_with_eleven_installments(db, template)

    with patch("bullion_gateway.services.scheduler.PlanRepository.find_maturity_candidate_ids") as candidates:
        candidates.return_value = [plan.id]
        SettlementOrchestrator(db).submit(
            SipInstallmentIntent(
                user_id="user-1",
                amount=Decimal("1000"),
                channel=Channel.ONLINE,
                utr=None,
                plan_id=str(plan.id),
                plan_kind=plan.kind,
            ),
            now=RUN_AT,
        )
        summary = scheduler.run_once(now=RUN_AT)

    assert (summary.processed, summary.skipped) == (0, 1)


def test_failure_on_one_plan_does_not_abort_run(db, template, scheduler):
    plan_with_eleven_installments(db, template, user_id="user-1")
    plan_with_eleven_installments(db, template, user_id="user-2")

    with patch(
        "bullion_gateway.services.scheduler.apply_bonus_to_plan", side_effect=[RuntimeError("boom"), None]
    ):
        summary = scheduler.run_once(now=RUN_AT)
    assert (summary.processed, summary.skipped, summary.failed) == (0, 1, 1)

    # Both plans are picked up again by the next run
    retry = scheduler.run_once(now=RUN_AT)
    assert retry.processed == 2


def test_worker_start_and_stop(scheduler):
    scheduler.run_once = MagicMock(return_value=MaturityRunSummary())

    async def run_worker():
        await scheduler.start()
        assert scheduler.is_running
        await asyncio.sleep(0.05)
        await scheduler.stop()

    asyncio.run(run_worker())

    assert not scheduler.is_running
    scheduler.run_once.assert_called()
    scheduler.notifier.notify_all.assert_awaited()


def test_rejects_non_positive_interval(session_factory, notifier):
    with pytest.raises(ValueError):
        MaturityScheduler(session_factory=session_factory, notifier=notifier, interval_seconds=-1)


def test_first_pass_runs_immediately_on_start(scheduler):
    scheduler.run_once = MagicMock(return_value=MaturityRunSummary())

    async def run_worker():
        await scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()

    asyncio.run(run_worker())

    # interval is an hour, so only the start-up pass had time to run
    scheduler.run_once.assert_called_once()
