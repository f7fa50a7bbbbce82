"""Settlement orchestrator - turns a payment intent into ledger, plan and transaction writes"""

import hashlib
import hmac
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from bullion_gateway.config import settings
from bullion_gateway.domain.exceptions import (
    DuplicateReference,
    InsufficientHoldings,
    InvalidSipType,
    PlanNotFound,
    PriceUnavailable,
    SipAlreadyCompleted,
    Unauthorized,
)
from bullion_gateway.domain.models import (
    Channel,
    Direction,
    GenericIntent,
    Metal,
    MetalPurchaseIntent,
    Notification,
    PaymentIntent,
    PlanKind,
    PlanStatus,
    SaleRequest,
    SipInstallmentIntent,
    TransactionKind,
    TransactionStatus,
)
from bullion_gateway.domain.plans import apply_installment
from bullion_gateway.domain.pricing import quantity_for_amount, released_cost_basis, sale_proceeds
from bullion_gateway.infrastructure.database.models import Holding, LedgerTransaction, Plan
from bullion_gateway.infrastructure.database.repositories import (
    HoldingRepository,
    PlanRepository,
    PriceRepository,
    TransactionRepository,
)
from bullion_gateway.infrastructure.database.session import transaction_scope
from bullion_gateway.infrastructure.observability.metrics import plan_transition_counter, record_settlement
from bullion_gateway.utils.date_utils import utcnow

logger = logging.getLogger(__name__)

ONE_TIME_CODE_DIGITS = 6


@dataclass
class SettlementResult:
    """Committed outcome of one unit of work plus what to notify afterwards"""

    transaction: LedgerTransaction
    plan: Optional[Plan] = None
    holding: Optional[Holding] = None
    notifications: List[Notification] = field(default_factory=list)


def generate_one_time_code() -> str:
    """Random 6-digit code for the offline channel"""
    low = 10 ** (ONE_TIME_CODE_DIGITS - 1)
    return str(low + secrets.randbelow(9 * low))


def hash_one_time_code(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


def one_time_code_matches(code: str, code_hash: Optional[str]) -> bool:
    if not code_hash:
        return False
    return hmac.compare_digest(hash_one_time_code(code), code_hash)


def parse_plan_id(plan_id: str | uuid.UUID) -> uuid.UUID:
    if isinstance(plan_id, uuid.UUID):
        return plan_id
    try:
        return uuid.UUID(plan_id)
    except ValueError as e:
        raise PlanNotFound(f"Plan {plan_id} not found") from e


def load_owned_plan(
    plans: PlanRepository,
    plan_id: str | uuid.UUID,
    user_id: str,
    plan_kind: Optional[PlanKind] = None,
    lock: bool = True,
) -> Plan:
    """
    Fetch a plan the caller owns, locking it for the rest of the unit of work.

    Raises:
        PlanNotFound: Unknown plan id
        InvalidSipType: Plan exists but is of the other kind
        Unauthorized: Plan belongs to someone else
    """
    pid = parse_plan_id(plan_id)
    plan = plans.lock_plan(pid) if lock else plans.get_plan_by_id(pid)
    if plan is None:
        raise PlanNotFound(f"Plan {plan_id} not found")
    if plan.user_id != user_id:
        raise Unauthorized("Plan not owned by caller")
    if plan_kind is not None and plan.kind != plan_kind:
        raise InvalidSipType(f"Plan {plan_id} is a {plan.kind.value} plan, not {plan_kind.value}")
    return plan


def latest_rate(prices: PriceRepository, metal: Metal) -> Decimal:
    """
    Raises:
        PriceUnavailable: No snapshot recorded for the metal
    """
    snapshot = prices.latest(metal)
    if snapshot is None or Decimal(snapshot.rate) <= 0:
        raise PriceUnavailable(f"Price unavailable for {metal.value}")
    return Decimal(snapshot.rate)


def post_installment(plans: PlanRepository, plan: Plan, amount: Decimal, now: datetime) -> List[Notification]:
    """Apply one installment to a locked plan; returns notifications owed for it"""
    previous_status = plan.status
    outcome = apply_installment(plan.progress(), amount, now)
    plans.apply_progress(plan, outcome, now)

    notifications = []
    if outcome.status != previous_status:
        plan_transition_counter.labels(to_status=outcome.status.value).inc()
        notifications.append(
            Notification(
                user_id=plan.user_id,
                title="SIP Completed",
                message=f"Your {plan.kind.value.lower()} SIP {plan.id} has completed all {plan.total_months} installments.",
                kind="SIP_COMPLETED",
            )
        )
    if outcome.bonus_due:
        notifications.append(
            Notification(
                user_id=settings.admin_user_id,
                title="SIP Bonus Payment Due",
                message=(
                    f"User {plan.user_id} has completed {plan.months_paid} months of {plan.kind.value.title()} "
                    f"SIP {plan.id}. Please pay the 12th month bonus. "
                    f"User Delayed Payment: {'Yes' if plan.has_delayed_payment else 'No'}"
                ),
                kind="SIP_BONUS",
            )
        )
    return notifications


class SettlementOrchestrator:
    """
    Single entry point for money movements.

    Online intents apply their plan/holding effect and the SUCCESS
    transaction in one unit of work. Offline intents freeze the execution
    quantity, persist a PENDING transaction with a one-time code and defer
    every effect to confirmation.
    """

    def __init__(self, db: Session, code_ttl_minutes: int | None = None):
        self.db = db
        self.holdings = HoldingRepository(db)
        self.plans = PlanRepository(db)
        self.transactions = TransactionRepository(db)
        self.prices = PriceRepository(db)
        self.code_ttl = timedelta(minutes=code_ttl_minutes or settings.offline_code_ttl_minutes)

    def submit(self, intent: PaymentIntent, now: Optional[datetime] = None) -> SettlementResult:
        """Settle an online intent or record an offline one"""
        now = now or utcnow()
        if intent.channel == Channel.OFFLINE:
            result = self._record_offline(intent, now)
        else:
            result = self._settle_online(intent, now)

        txn = result.transaction
        record_settlement(txn.kind.value, txn.channel.value, txn.status.value)
        return result

    # Online channel

    def _settle_online(self, intent: PaymentIntent, now: datetime) -> SettlementResult:
        with transaction_scope(self.db):
            self._reject_reused_reference(intent.utr)

            if isinstance(intent, SipInstallmentIntent):
                return self._pay_installment(intent, now)
            if isinstance(intent, MetalPurchaseIntent):
                return self._buy_metal(intent)
            return self._record_generic(intent)

    def _pay_installment(self, intent: SipInstallmentIntent, now: datetime) -> SettlementResult:
        plan = load_owned_plan(self.plans, intent.plan_id, intent.user_id, intent.plan_kind)
        notifications = post_installment(self.plans, plan, intent.amount, now)
        txn = self.transactions.create(
            user_id=intent.user_id,
            amount=intent.amount,
            direction=Direction.CREDIT,
            channel=intent.channel,
            kind=TransactionKind.SIP_INSTALLMENT,
            status=TransactionStatus.SUCCESS,
            utr=intent.utr,
            plan_id=plan.id,
            plan_kind=plan.kind,
        )
        return SettlementResult(transaction=txn, plan=plan, notifications=notifications)

    def _buy_metal(self, intent: MetalPurchaseIntent) -> SettlementResult:
        rate = latest_rate(self.prices, intent.metal)
        quantity = quantity_for_amount(intent.amount, rate)
        holding = self.holdings.credit(intent.user_id, intent.metal, intent.amount, quantity)
        txn = self.transactions.create(
            user_id=intent.user_id,
            amount=intent.amount,
            direction=Direction.CREDIT,
            channel=intent.channel,
            kind=TransactionKind.PURCHASE,
            status=TransactionStatus.SUCCESS,
            utr=intent.utr,
            metal=intent.metal,
            execution_quantity=quantity,
            execution_rate=rate,
        )
        return SettlementResult(transaction=txn, holding=holding)

    def _record_generic(self, intent: GenericIntent) -> SettlementResult:
        txn = self.transactions.create(
            user_id=intent.user_id,
            amount=intent.amount,
            direction=intent.direction,
            channel=intent.channel,
            kind=TransactionKind.GENERIC,
            status=TransactionStatus.SUCCESS,
            utr=intent.utr,
        )
        return SettlementResult(transaction=txn)

    # Offline channel

    def _record_offline(self, intent: PaymentIntent, now: datetime) -> SettlementResult:
        code = generate_one_time_code()
        plan_id = plan_kind = metal = quantity = rate = None
        kind = TransactionKind.GENERIC
        direction = Direction.CREDIT

        with transaction_scope(self.db):
            self._reject_reused_reference(intent.utr)

            if isinstance(intent, SipInstallmentIntent):
                plan = load_owned_plan(self.plans, intent.plan_id, intent.user_id, intent.plan_kind, lock=False)
                if plan.status != PlanStatus.ACTIVE:
                    raise SipAlreadyCompleted(f"Plan is {plan.status.value}, no further installments accepted")
                plan_id, plan_kind = plan.id, plan.kind
                kind = TransactionKind.SIP_INSTALLMENT
            elif isinstance(intent, MetalPurchaseIntent):
                # Price is locked now; confirmation applies this quantity even if the price moves
                rate = latest_rate(self.prices, intent.metal)
                quantity = quantity_for_amount(intent.amount, rate)
                metal = intent.metal
                kind = TransactionKind.PURCHASE
            else:
                direction = intent.direction

            txn = self.transactions.create(
                user_id=intent.user_id,
                amount=intent.amount,
                direction=direction,
                channel=Channel.OFFLINE,
                kind=kind,
                status=TransactionStatus.PENDING,
                utr=intent.utr or f"OFFLINE-{intent.user_id}-{uuid.uuid4().hex[:12]}",
                plan_id=plan_id,
                plan_kind=plan_kind,
                metal=metal,
                execution_quantity=quantity,
                execution_rate=rate,
                otp_hash=hash_one_time_code(code),
                otp_expires_at=now + self.code_ttl,
            )

        logger.info(
            "Offline payment pending verification",
            extra={"user_id": intent.user_id, "transaction_id": str(txn.id), "step": "offline_intent"},
        )
        admin_notice = Notification(
            user_id=settings.admin_user_id,
            title="Offline Payment OTP Verification",
            message=f"User {intent.user_id} requested offline payment of {intent.amount}. OTP: {code}",
            kind="OTP",
        )
        return SettlementResult(transaction=txn, notifications=[admin_notice])

    # Sale

    def sell(self, request: SaleRequest) -> SettlementResult:
        """
        Sell metal back at the current price.

        The holding stays locked from the sufficiency check through the
        debit, so concurrent sells on one holding cannot both pass.

        Raises:
            PriceUnavailable: No snapshot for the metal
            InsufficientHoldings: Quantity exceeds the holding
        """
        with transaction_scope(self.db):
            self._reject_reused_reference(request.utr)
            rate = latest_rate(self.prices, request.metal)

            holding = self.holdings.lock(request.user_id, request.metal)
            if holding is None or Decimal(holding.quantity) < request.quantity:
                held = Decimal(holding.quantity) if holding is not None else Decimal("0")
                raise InsufficientHoldings(f"Requested {request.quantity} of {request.metal.value}, holding {held}")

            released = released_cost_basis(
                Decimal(holding.amount_invested), Decimal(holding.quantity), request.quantity
            )
            holding = self.holdings.debit(request.user_id, request.metal, released, request.quantity)

            txn = self.transactions.create(
                user_id=request.user_id,
                amount=sale_proceeds(request.quantity, rate),
                direction=Direction.CREDIT,
                channel=Channel.ONLINE,
                kind=TransactionKind.SALE,
                status=TransactionStatus.SUCCESS,
                utr=request.utr,
                metal=request.metal,
                execution_quantity=request.quantity,
                execution_rate=rate,
            )

        record_settlement(txn.kind.value, txn.channel.value, txn.status.value)
        return SettlementResult(transaction=txn, holding=holding)

    def _reject_reused_reference(self, utr: Optional[str]) -> None:
        if utr is not None and self.transactions.exists_with_utr(utr):
            raise DuplicateReference(f"Payment reference {utr} already recorded")
