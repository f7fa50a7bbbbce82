"""Maturity scheduler - credits the 12th month bonus on eligible fixed-tenure plans"""

import asyncio
import logging
import time
import uuid
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from bullion_gateway.config import settings
from bullion_gateway.domain.models import (
    Channel,
    Direction,
    MaturityRunSummary,
    Notification,
    PlanStatus,
    TransactionKind,
    TransactionStatus,
)
from bullion_gateway.domain.plans import (
    BONUS_TENURE_MONTHS,
    BONUS_TRIGGER_MONTHS,
    apply_maturity_bonus,
    is_bonus_eligible,
)
from bullion_gateway.infrastructure.clients.notifier import NotificationClient
from bullion_gateway.infrastructure.database.repositories import PlanRepository, TransactionRepository
from bullion_gateway.infrastructure.database.session import SessionLocal, transaction_scope
from bullion_gateway.infrastructure.observability.logging import log_maturity_run
from bullion_gateway.infrastructure.observability.metrics import (
    maturity_bonus_counter,
    plan_transition_counter,
    record_settlement,
)
from bullion_gateway.utils.date_utils import utcnow

logger = logging.getLogger(__name__)


def bonus_reference(plan_id: uuid.UUID) -> str:
    """Deterministic utr; the unique index makes a second bonus on one plan impossible"""
    return f"BONUS-{plan_id}"


def apply_bonus_to_plan(db: Session, plan_id: uuid.UUID, now: datetime) -> Optional[Notification]:
    """
    Apply the maturity bonus to one plan in its own unit of work.

    Eligibility is re-checked under the plan lock, so a plan a concurrent
    installment or earlier run already moved on is skipped.

    Returns:
        The user notification when the bonus was applied, None when skipped
    """
    plans = PlanRepository(db)
    transactions = TransactionRepository(db)

    with transaction_scope(db):
        plan = plans.lock_plan(plan_id)
        if plan is None or not is_bonus_eligible(plan.progress(), now):
            return None

        bonus, outcome = apply_maturity_bonus(plan.progress())
        plans.apply_progress(plan, outcome, now)
        txn = transactions.create(
            user_id=plan.user_id,
            amount=bonus,
            direction=Direction.CREDIT,
            channel=Channel.SCHEDULED,
            kind=TransactionKind.SIP_BONUS,
            status=TransactionStatus.SUCCESS,
            utr=bonus_reference(plan.id),
            plan_id=plan.id,
            plan_kind=plan.kind,
        )

    plan_transition_counter.labels(to_status=PlanStatus.COMPLETED.value).inc()
    record_settlement(txn.kind.value, txn.channel.value, txn.status.value)
    return Notification(
        user_id=plan.user_id,
        title="SIP Bonus Credited",
        message=f"Your 12th month bonus of {bonus} was credited to SIP {plan.id}. Your plan is now complete.",
        kind="SIP_BONUS",
    )


class MaturityScheduler:
    """
    Periodic maturity pass.

    Each candidate plan is processed in its own session and unit of work;
    a failure on one plan is logged and counted, the rest still run.

    The first pass runs as soon as the worker starts, then one every
    ``interval_seconds`` measured from the end of the previous pass. Passes
    are idempotent, so a restart only repeats work that is already a no-op.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        notifier: Optional[NotificationClient] = None,
        interval_seconds: int | None = None,
    ):
        interval = interval_seconds or settings.maturity_interval_seconds
        if interval <= 0:
            raise ValueError(f"interval_seconds must be positive, got: {interval}")
        self.session_factory = session_factory
        self.notifier = notifier or NotificationClient()
        self.interval_seconds = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    def run_once(self, now: Optional[datetime] = None) -> MaturityRunSummary:
        """One pass over all candidates; running it twice credits each bonus once"""
        start = time.time()
        now = now or utcnow()
        summary = MaturityRunSummary()

        with self.session_factory() as db:
            candidate_ids = PlanRepository(db).find_maturity_candidate_ids(
                now, BONUS_TENURE_MONTHS, BONUS_TRIGGER_MONTHS
            )

        for plan_id in candidate_ids:
            with self.session_factory() as db:
                try:
                    notification = apply_bonus_to_plan(db, plan_id, now)
                except Exception:
                    logger.exception(
                        "Maturity bonus failed", extra={"plan_id": str(plan_id), "step": "maturity_bonus"}
                    )
                    maturity_bonus_counter.labels(outcome="failed").inc()
                    summary.failed += 1
                    continue

            if notification is None:
                maturity_bonus_counter.labels(outcome="skipped").inc()
                summary.skipped += 1
            else:
                maturity_bonus_counter.labels(outcome="processed").inc()
                summary.processed += 1
                summary.notifications.append(notification)

        log_maturity_run(
            summary.processed, summary.skipped, summary.failed, duration_ms=(time.time() - start) * 1000
        )
        return summary

    async def run_and_notify(self, now: Optional[datetime] = None) -> MaturityRunSummary:
        summary = await asyncio.to_thread(self.run_once, now)
        await self.notifier.notify_all(summary.notifications)
        return summary

    async def start(self) -> None:
        if self._running:
            logger.warning("Maturity scheduler already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Maturity scheduler started (interval {self.interval_seconds}s)")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Maturity scheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_and_notify()
            except Exception:
                logger.exception("Maturity run failed")
            await asyncio.sleep(self.interval_seconds)
