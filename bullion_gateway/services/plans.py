"""Plan service - opt-in, lookup and end-of-life (conversion, settlement) of installment plans"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bullion_gateway.domain.exceptions import (
    DuplicateActivePlan,
    NotMature,
    PlanNotFound,
    TemplateNotFound,
    ValidationError,
)
from bullion_gateway.domain.models import (
    Channel,
    Direction,
    Metal,
    Notification,
    PlanKind,
    PlanStatus,
    Principal,
    TransactionKind,
    TransactionStatus,
)
from bullion_gateway.domain.plans import first_due_date, transition
from bullion_gateway.domain.pricing import quantity_for_amount, round_money
from bullion_gateway.infrastructure.database.models import LedgerTransaction, Plan, PlanTemplate
from bullion_gateway.infrastructure.database.repositories import (
    HoldingRepository,
    PlanRepository,
    PriceRepository,
    TransactionRepository,
)
from bullion_gateway.infrastructure.database.session import transaction_scope
from bullion_gateway.infrastructure.observability.metrics import plan_transition_counter, record_settlement
from bullion_gateway.services.settlement import SettlementResult, latest_rate, load_owned_plan, parse_plan_id
from bullion_gateway.utils.date_utils import utcnow

logger = logging.getLogger(__name__)

MAX_FLEXIBLE_MONTHS = 120


@dataclass
class SettleResult:
    plan: Plan
    already_settled: bool = False
    payout_quantity: Optional[Decimal] = None
    payout_rate: Optional[Decimal] = None
    notifications: List[Notification] = field(default_factory=list)


class PlanService:
    def __init__(self, db: Session):
        self.db = db
        self.plans = PlanRepository(db)
        self.holdings = HoldingRepository(db)
        self.transactions = TransactionRepository(db)
        self.prices = PriceRepository(db)

    # Templates

    def create_template(
        self, name: str, metal: Metal, total_months: int, installment_amount: Decimal
    ) -> PlanTemplate:
        if total_months < 1:
            raise ValidationError("total_months must be at least 1")
        with transaction_scope(self.db):
            template = self.plans.create_template(name, metal, total_months, round_money(installment_amount))
        logger.info(f"Plan template created: {template.name}", extra={"step": "template_created"})
        return template

    def list_templates(self) -> List[PlanTemplate]:
        return self.plans.list_active_templates()

    # Opt-in

    def opt_in_fixed(self, user_id: str, template_id: str | uuid.UUID, now: Optional[datetime] = None) -> Plan:
        """
        Start a fixed plan from a template; metal and tenure are copied from it.

        Raises:
            TemplateNotFound: Unknown or inactive template
            DuplicateActivePlan: User already has an ACTIVE plan on this template
        """
        now = now or utcnow()
        tid = self._parse_template_id(template_id)
        try:
            with transaction_scope(self.db):
                template = self.plans.get_template(tid)
                if template is None or not template.is_active:
                    raise TemplateNotFound(f"Template {template_id} not found")
                if self.plans.has_active_plan_for_template(user_id, tid):
                    raise DuplicateActivePlan()
                plan = self.plans.create_plan(
                    user_id=user_id,
                    kind=PlanKind.FIXED,
                    metal=template.metal,
                    total_months=template.total_months,
                    next_due_date=first_due_date(now),
                    template_id=tid,
                    installment_amount=template.installment_amount,
                )
        except IntegrityError as e:
            # Lost a race against a concurrent opt-in on the partial unique index
            raise DuplicateActivePlan() from e

        self._log_opt_in(plan)
        return plan

    def opt_in_flexible(
        self,
        user_id: str,
        metal: Metal,
        total_months: int,
        installment_amount: Optional[Decimal] = None,
        now: Optional[datetime] = None,
    ) -> Plan:
        if not 1 <= total_months <= MAX_FLEXIBLE_MONTHS:
            raise ValidationError(f"total_months must be between 1 and {MAX_FLEXIBLE_MONTHS}")
        now = now or utcnow()
        with transaction_scope(self.db):
            plan = self.plans.create_plan(
                user_id=user_id,
                kind=PlanKind.FLEXIBLE,
                metal=metal,
                total_months=total_months,
                next_due_date=first_due_date(now),
                installment_amount=round_money(installment_amount) if installment_amount is not None else None,
            )
        self._log_opt_in(plan)
        return plan

    # Lookup

    def get_plan(self, plan_id: str | uuid.UUID, caller: Principal) -> Plan:
        """Owner or admin only"""
        if caller.is_admin:
            plan = self.plans.get_plan_by_id(parse_plan_id(plan_id))
            if plan is None:
                raise PlanNotFound(f"Plan {plan_id} not found")
            return plan
        return load_owned_plan(self.plans, plan_id, caller.user_id, lock=False)

    def list_plans(self, user_id: str) -> List[Plan]:
        return self.plans.list_by_user(user_id)

    def plan_transactions(self, plan: Plan) -> List[LedgerTransaction]:
        return self.transactions.list_by_plan(plan.id)

    # End of life

    def convert(self, plan_id: str | uuid.UUID, caller: Principal, now: Optional[datetime] = None) -> SettlementResult:
        """
        Convert a completed plan's accumulated value into metal holdings at the current price.

        The market gate is checked by the caller.

        Raises:
            NotMature: Plan is not COMPLETED (still active, or already converted or settled)
            PriceUnavailable: No snapshot for the plan's metal
        """
        now = now or utcnow()
        with transaction_scope(self.db):
            plan = load_owned_plan(self.plans, plan_id, caller.user_id)
            if plan.status != PlanStatus.COMPLETED:
                raise NotMature(f"Plan is {plan.status.value}, only COMPLETED plans can be converted")
            target = transition(plan.status, PlanStatus.CONVERTED)

            amount = Decimal(plan.total_amount_paid)
            rate = latest_rate(self.prices, plan.metal)
            quantity = quantity_for_amount(amount, rate)
            holding = self.holdings.credit(plan.user_id, plan.metal, amount, quantity)
            self.plans.close(plan, target, now)

            txn = self.transactions.create(
                user_id=plan.user_id,
                amount=amount,
                direction=Direction.DEBIT,
                channel=Channel.ONLINE,
                kind=TransactionKind.CONVERSION,
                status=TransactionStatus.SUCCESS,
                utr=f"CONVERT-{plan.id}",
                plan_id=plan.id,
                plan_kind=plan.kind,
                metal=plan.metal,
                execution_quantity=quantity,
                execution_rate=rate,
            )

        plan_transition_counter.labels(to_status=target.value).inc()
        record_settlement(txn.kind.value, txn.channel.value, txn.status.value)
        notice = Notification(
            user_id=plan.user_id,
            title="SIP Converted",
            message=f"Your SIP {plan.id} was converted into {quantity} g of {plan.metal.value} at {rate}.",
            kind="SIP_CONVERTED",
        )
        return SettlementResult(transaction=txn, plan=plan, holding=holding, notifications=[notice])

    def settle(self, plan_id: str | uuid.UUID, now: Optional[datetime] = None) -> SettleResult:
        """
        Admin settlement of a completed plan. Settling twice is a no-op.

        Raises:
            NotMature: Plan has not completed
            InvalidPlanTransition: Plan was converted instead
        """
        now = now or utcnow()
        with transaction_scope(self.db):
            plan = self.plans.lock_plan(parse_plan_id(plan_id))
            if plan is None:
                raise PlanNotFound(f"Plan {plan_id} not found")
            if plan.status == PlanStatus.SETTLED:
                return SettleResult(plan=plan, already_settled=True)
            if plan.status == PlanStatus.ACTIVE:
                raise NotMature()
            target = transition(plan.status, PlanStatus.SETTLED)

            rate = latest_rate(self.prices, plan.metal)
            quantity = quantity_for_amount(Decimal(plan.total_amount_paid), rate)
            self.plans.close(plan, target, now)

        plan_transition_counter.labels(to_status=target.value).inc()
        logger.info(
            f"Plan settled with payout {quantity}",
            extra={"user_id": plan.user_id, "plan_id": str(plan.id), "step": "plan_settled"},
        )
        notice = Notification(
            user_id=plan.user_id,
            title="SIP Settled",
            message=f"Your SIP {plan.id} has been settled. Payout: {quantity} g of {plan.metal.value}.",
            kind="SIP_SETTLED",
        )
        return SettleResult(plan=plan, payout_quantity=quantity, payout_rate=rate, notifications=[notice])

    def _log_opt_in(self, plan: Plan) -> None:
        logger.info(
            f"{plan.kind.value} plan opted in for {plan.total_months} months",
            extra={"user_id": plan.user_id, "plan_id": str(plan.id), "step": "plan_opt_in"},
        )

    @staticmethod
    def _parse_template_id(template_id: str | uuid.UUID) -> uuid.UUID:
        if isinstance(template_id, uuid.UUID):
            return template_id
        try:
            return uuid.UUID(template_id)
        except ValueError as e:
            raise TemplateNotFound(f"Template {template_id} not found") from e
