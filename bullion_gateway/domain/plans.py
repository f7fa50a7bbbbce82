"""Plan engine - installment plan state machine and progress math"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, FrozenSet, Tuple

from bullion_gateway.domain.exceptions import InvalidPlanTransition, SipAlreadyCompleted
from bullion_gateway.domain.models import InstallmentOutcome, PlanKind, PlanProgress, PlanStatus
from bullion_gateway.domain.pricing import round_money
from bullion_gateway.utils.date_utils import add_months, ensure_utc

# Only these edges exist; CONVERTED and SETTLED are terminal
ALLOWED_TRANSITIONS: Dict[PlanStatus, FrozenSet[PlanStatus]] = {
    PlanStatus.ACTIVE: frozenset({PlanStatus.COMPLETED}),
    PlanStatus.COMPLETED: frozenset({PlanStatus.CONVERTED, PlanStatus.SETTLED}),
    PlanStatus.CONVERTED: frozenset(),
    PlanStatus.SETTLED: frozenset(),
}

BONUS_TENURE_MONTHS = 12
BONUS_TRIGGER_MONTHS = 11


def transition(current: PlanStatus, target: PlanStatus) -> PlanStatus:
    """Validate a status change against the transition table"""
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidPlanTransition(f"Cannot move plan from {current.value} to {target.value}")
    return target


def first_due_date(now: datetime) -> datetime:
    """Due date of the first installment for a plan opted into at ``now``"""
    return add_months(ensure_utc(now), 1)


def apply_installment(plan: PlanProgress, amount: Decimal, now: datetime) -> InstallmentOutcome:
    """
    Compute plan progress after one installment.

    Requirements:
    - Only ACTIVE plans accept installments
    - months_paid + 1, total_amount_paid + amount, next due = now + 1 month
    - Fixed plans flag a late payment (posted after the previous due date); the flag is sticky
    - Reaching the tenure completes the plan and clears the due date

    Raises:
        SipAlreadyCompleted: Plan is not ACTIVE or its tenure is already paid
    """
    if plan.status != PlanStatus.ACTIVE or plan.months_paid >= plan.total_months:
        raise SipAlreadyCompleted(f"Plan is {plan.status.value}, no further installments accepted")

    now = ensure_utc(now)
    months_paid = plan.months_paid + 1
    total_paid = round_money(plan.total_amount_paid + amount)

    delayed = plan.has_delayed_payment
    if plan.kind == PlanKind.FIXED and plan.next_due_date is not None:
        delayed = delayed or now > ensure_utc(plan.next_due_date)

    completed = months_paid >= plan.total_months
    status = transition(plan.status, PlanStatus.COMPLETED) if completed else PlanStatus.ACTIVE

    return InstallmentOutcome(
        months_paid=months_paid,
        total_amount_paid=total_paid,
        next_due_date=None if completed else add_months(now, 1),
        has_delayed_payment=delayed,
        status=status,
        bonus_due=(months_paid == BONUS_TRIGGER_MONTHS and plan.total_months == BONUS_TENURE_MONTHS),
    )


def is_bonus_eligible(plan: PlanProgress, now: datetime) -> bool:
    """12-month ACTIVE plan with 11 months paid whose next due date has passed"""
    return (
        plan.status == PlanStatus.ACTIVE
        and plan.total_months == BONUS_TENURE_MONTHS
        and plan.months_paid == BONUS_TRIGGER_MONTHS
        and plan.next_due_date is not None
        and ensure_utc(plan.next_due_date) <= ensure_utc(now)
    )


def maturity_bonus_amount(total_amount_paid: Decimal) -> Decimal:
    """
    12th month bonus: the average of the 11 installments paid.

    Example:
        11000 paid over 11 months -> 1000
    """
    return round_money(total_amount_paid / BONUS_TRIGGER_MONTHS)


def apply_maturity_bonus(plan: PlanProgress) -> Tuple[Decimal, InstallmentOutcome]:
    """Credit the bonus as a virtual 12th installment and complete the plan"""
    bonus = maturity_bonus_amount(plan.total_amount_paid)
    outcome = InstallmentOutcome(
        months_paid=BONUS_TENURE_MONTHS,
        total_amount_paid=round_money(plan.total_amount_paid + bonus),
        next_due_date=None,
        has_delayed_payment=plan.has_delayed_payment,
        status=transition(plan.status, PlanStatus.COMPLETED),
    )
    return bonus, outcome
