"""Data access layer for holdings, plans, transactions and reference data"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bullion_gateway.domain.exceptions import DuplicateReference, InsufficientHoldings, TransactionAlreadyFinal
from bullion_gateway.domain.models import (
    Channel,
    Direction,
    InstallmentOutcome,
    MarketOverride,
    Metal,
    PlanKind,
    PlanStatus,
    TransactionKind,
    TransactionStatus,
)
from bullion_gateway.infrastructure.database.models import (
    Holding,
    LedgerTransaction,
    MarketSetting,
    Plan,
    PlanTemplate,
    PriceSnapshot,
)
from bullion_gateway.utils.date_utils import utcnow


class HoldingRepository:
    """
    Holdings ledger: per-(user, metal) balances.

    Mutations lock the row (SELECT ... FOR UPDATE) so the sufficiency check
    and the write happen under the same lock inside the caller's transaction.
    """

    def __init__(self, db: Session):
        self.db = db

    def lock(self, user_id: str, metal: Metal) -> Optional[Holding]:
        return self.db.execute(
            select(Holding)
            .where(Holding.user_id == user_id, Holding.metal == metal)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _lock_or_create(self, user_id: str, metal: Metal) -> Holding:
        holding = self.lock(user_id, metal)
        if holding is not None:
            return holding

        # A concurrent first purchase may insert the row between our select and insert
        try:
            with self.db.begin_nested():
                holding = Holding(
                    user_id=user_id,
                    metal=metal,
                    amount_invested=Decimal("0"),
                    quantity=Decimal("0"),
                )
                self.db.add(holding)
                self.db.flush()
            return holding
        except IntegrityError:
            return self.lock(user_id, metal)

    def credit(self, user_id: str, metal: Metal, amount: Decimal, quantity: Decimal) -> Holding:
        """Add invested amount and quantity, creating the holding on first purchase"""
        holding = self._lock_or_create(user_id, metal)
        holding.amount_invested = Decimal(holding.amount_invested) + amount
        holding.quantity = Decimal(holding.quantity) + quantity
        holding.updated_at = utcnow()
        self.db.flush()
        return holding

    def debit(self, user_id: str, metal: Metal, amount: Decimal, quantity: Decimal) -> Holding:
        """
        Remove quantity and cost basis from a holding.

        Raises:
            InsufficientHoldings: No holding, or quantity exceeds the locked balance
        """
        holding = self.lock(user_id, metal)
        if holding is None or Decimal(holding.quantity) < quantity:
            held = Decimal(holding.quantity) if holding is not None else Decimal("0")
            raise InsufficientHoldings(f"Requested {quantity} of {metal.value}, holding {held}")

        holding.quantity = Decimal(holding.quantity) - quantity
        holding.amount_invested = max(Decimal(holding.amount_invested) - amount, Decimal("0"))
        holding.updated_at = utcnow()
        self.db.flush()
        return holding

    def get(self, user_id: str, metal: Metal) -> Optional[Holding]:
        return self.db.execute(
            select(Holding).where(Holding.user_id == user_id, Holding.metal == metal)
        ).scalar_one_or_none()

    def list_by_user(self, user_id: str) -> List[Holding]:
        return list(
            self.db.execute(
                select(Holding).where(Holding.user_id == user_id).order_by(Holding.metal)
            ).scalars()
        )


class PlanRepository:
    """Repository for installment plans and their templates"""

    def __init__(self, db: Session):
        self.db = db

    def create_template(
        self, name: str, metal: Metal, total_months: int, installment_amount: Decimal
    ) -> PlanTemplate:
        template = PlanTemplate(
            name=name,
            metal=metal,
            total_months=total_months,
            installment_amount=installment_amount,
        )
        self.db.add(template)
        self.db.flush()
        return template

    def get_template(self, template_id: uuid.UUID) -> Optional[PlanTemplate]:
        return self.db.get(PlanTemplate, template_id)

    def list_active_templates(self) -> List[PlanTemplate]:
        return list(
            self.db.execute(
                select(PlanTemplate)
                .where(PlanTemplate.is_active.is_(True))
                .order_by(PlanTemplate.created_at)
            ).scalars()
        )

    def create_plan(
        self,
        user_id: str,
        kind: PlanKind,
        metal: Metal,
        total_months: int,
        next_due_date: datetime,
        template_id: Optional[uuid.UUID] = None,
        installment_amount: Optional[Decimal] = None,
    ) -> Plan:
        plan = Plan(
            user_id=user_id,
            kind=kind,
            template_id=template_id,
            metal=metal,
            total_months=total_months,
            installment_amount=installment_amount,
            months_paid=0,
            total_amount_paid=Decimal("0"),
            next_due_date=next_due_date,
            has_delayed_payment=False,
            status=PlanStatus.ACTIVE,
        )
        self.db.add(plan)
        self.db.flush()
        return plan

    def has_active_plan_for_template(self, user_id: str, template_id: uuid.UUID) -> bool:
        return (
            self.db.execute(
                select(Plan.id).where(
                    Plan.user_id == user_id,
                    Plan.template_id == template_id,
                    Plan.status == PlanStatus.ACTIVE,
                )
            ).first()
            is not None
        )

    def get_plan_by_id(self, plan_id: uuid.UUID) -> Optional[Plan]:
        return self.db.get(Plan, plan_id)

    def lock_plan(self, plan_id: uuid.UUID) -> Optional[Plan]:
        """Load a plan with a row lock, serializing installments per plan"""
        return self.db.execute(
            select(Plan)
            .where(Plan.id == plan_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def list_by_user(self, user_id: str) -> List[Plan]:
        return list(
            self.db.execute(
                select(Plan).where(Plan.user_id == user_id).order_by(Plan.created_at.desc())
            ).scalars()
        )

    def find_maturity_candidate_ids(self, now: datetime, tenure_months: int, trigger_months: int) -> List[uuid.UUID]:
        """Ids of ACTIVE plans sitting at the bonus trigger with their due date passed"""
        return list(
            self.db.execute(
                select(Plan.id)
                .where(
                    Plan.status == PlanStatus.ACTIVE,
                    Plan.total_months == tenure_months,
                    Plan.months_paid == trigger_months,
                    Plan.next_due_date.is_not(None),
                    Plan.next_due_date <= now,
                )
                .order_by(Plan.next_due_date)
            ).scalars()
        )

    def apply_progress(self, plan: Plan, outcome: InstallmentOutcome, now: datetime) -> Plan:
        """Write plan engine output back to the row"""
        plan.months_paid = outcome.months_paid
        plan.total_amount_paid = outcome.total_amount_paid
        plan.next_due_date = outcome.next_due_date
        plan.has_delayed_payment = outcome.has_delayed_payment if plan.kind == PlanKind.FIXED else False
        if outcome.status != plan.status:
            plan.status = outcome.status
            if outcome.status == PlanStatus.COMPLETED:
                plan.completed_at = now
        self.db.flush()
        return plan

    def close(self, plan: Plan, status: PlanStatus, now: datetime) -> Plan:
        """Move a completed plan to its terminal status (already validated by the plan engine)"""
        plan.status = status
        plan.closed_at = now
        self.db.flush()
        return plan


class TransactionRepository:
    """
    Append-only transaction log.

    Rows are inserted once; the only later write is the single move from
    PENDING to SUCCESS or FAILED.
    """

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        user_id: str,
        amount: Decimal,
        direction: Direction,
        channel: Channel,
        kind: TransactionKind,
        status: TransactionStatus,
        utr: Optional[str] = None,
        plan_id: Optional[uuid.UUID] = None,
        plan_kind: Optional[PlanKind] = None,
        metal: Optional[Metal] = None,
        execution_quantity: Optional[Decimal] = None,
        execution_rate: Optional[Decimal] = None,
        otp_hash: Optional[str] = None,
        otp_expires_at: Optional[datetime] = None,
    ) -> LedgerTransaction:
        """
        Persist a transaction inside the caller's unit of work.

        Raises:
            DuplicateReference: ``utr`` was already recorded
        """
        now = utcnow()
        txn = LedgerTransaction(
            user_id=user_id,
            amount=amount,
            direction=direction,
            channel=channel,
            kind=kind,
            status=status,
            utr=utr or f"{kind.value}-{uuid.uuid4().hex}",
            plan_id=plan_id,
            plan_kind=plan_kind,
            metal=metal,
            execution_quantity=execution_quantity,
            execution_rate=execution_rate,
            otp_hash=otp_hash,
            otp_expires_at=otp_expires_at,
            created_at=now,
            finalized_at=None if status == TransactionStatus.PENDING else now,
        )
        self.db.add(txn)
        try:
            self.db.flush()
        except IntegrityError as e:
            raise DuplicateReference(f"Payment reference {txn.utr} already recorded") from e
        return txn

    def exists_with_utr(self, utr: str) -> bool:
        return self.db.execute(select(LedgerTransaction.id).where(LedgerTransaction.utr == utr)).first() is not None

    def get(self, transaction_id: uuid.UUID) -> Optional[LedgerTransaction]:
        return self.db.get(LedgerTransaction, transaction_id)

    def lock(self, transaction_id: uuid.UUID) -> Optional[LedgerTransaction]:
        return self.db.execute(
            select(LedgerTransaction)
            .where(LedgerTransaction.id == transaction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def finalize(self, txn: LedgerTransaction, status: TransactionStatus) -> LedgerTransaction:
        """
        Move a PENDING transaction to its terminal status and clear its one-time code.

        Raises:
            TransactionAlreadyFinal: Transaction is not PENDING
        """
        if txn.status != TransactionStatus.PENDING:
            raise TransactionAlreadyFinal(f"Transaction {txn.id} is already {txn.status.value}")
        if status == TransactionStatus.PENDING:
            raise ValueError("finalize requires a terminal status")
        txn.status = status
        txn.otp_hash = None
        txn.otp_expires_at = None
        txn.finalized_at = utcnow()
        self.db.flush()
        return txn

    def list_by_user(
        self, user_id: str, kind: Optional[TransactionKind] = None, limit: int = 50
    ) -> List[LedgerTransaction]:
        """Fetch recent transactions for a user"""
        query = select(LedgerTransaction).where(LedgerTransaction.user_id == user_id)
        if kind is not None:
            query = query.where(LedgerTransaction.kind == kind)
        return list(
            self.db.execute(query.order_by(LedgerTransaction.created_at.desc()).limit(limit)).scalars()
        )

    def list_by_plan(self, plan_id: uuid.UUID) -> List[LedgerTransaction]:
        return list(
            self.db.execute(
                select(LedgerTransaction)
                .where(LedgerTransaction.plan_id == plan_id)
                .order_by(LedgerTransaction.created_at)
            ).scalars()
        )


class PriceRepository:
    """Latest-wins price snapshots"""

    def __init__(self, db: Session):
        self.db = db

    def add(self, metal: Metal, rate: Decimal) -> PriceSnapshot:
        snapshot = PriceSnapshot(metal=metal, rate=rate)
        self.db.add(snapshot)
        self.db.flush()
        return snapshot

    def latest(self, metal: Metal) -> Optional[PriceSnapshot]:
        return self.db.execute(
            select(PriceSnapshot)
            .where(PriceSnapshot.metal == metal)
            .order_by(PriceSnapshot.id.desc())
            .limit(1)
        ).scalar_one_or_none()


class MarketSettingRepository:
    """History of admin market configuration"""

    def __init__(self, db: Session):
        self.db = db

    def current(self) -> Optional[MarketSetting]:
        return self.db.execute(
            select(MarketSetting).order_by(MarketSetting.id.desc()).limit(1)
        ).scalar_one_or_none()

    def record(
        self, override: MarketOverride, open_time: str, close_time: str, updated_by: Optional[str]
    ) -> MarketSetting:
        setting = MarketSetting(
            override=override,
            open_time=open_time,
            close_time=close_time,
            updated_by=updated_by,
        )
        self.db.add(setting)
        self.db.flush()
        return setting

    def history(self, limit: int = 50) -> List[MarketSetting]:
        return list(
            self.db.execute(select(MarketSetting).order_by(MarketSetting.id.desc()).limit(limit)).scalars()
        )
