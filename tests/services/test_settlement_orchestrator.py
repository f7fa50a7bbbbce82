"""Settlement orchestrator tests against the database session"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

from sqlalchemy import select

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
    PlanKind,
    PlanStatus,
    SaleRequest,
    SipInstallmentIntent,
    TransactionKind,
    TransactionStatus,
)
from bullion_gateway.infrastructure.database.models import LedgerTransaction
from bullion_gateway.infrastructure.database.repositories import HoldingRepository, PriceRepository, TransactionRepository
from bullion_gateway.infrastructure.database.session import transaction_scope
from bullion_gateway.services.plans import PlanService
from bullion_gateway.services.settlement import SettlementOrchestrator, hash_one_time_code

NOW = datetime(2026, 2, 2, 6, 0, tzinfo=timezone.utc)


def installment(plan, amount="1000", user_id="user-1", channel=Channel.ONLINE, utr=None, kind=None):
    return SipInstallmentIntent(
        user_id=user_id,
        amount=Decimal(amount),
        channel=channel,
        utr=utr,
        plan_id=str(plan.id),
        plan_kind=kind or plan.kind,
    )


def purchase(metal=Metal.GOLD_24K, amount="3500", user_id="user-1", channel=Channel.ONLINE, utr=None):
    return MetalPurchaseIntent(user_id=user_id, amount=Decimal(amount), channel=channel, utr=utr, metal=metal)


def transaction_count(db) -> int:
    return len(db.execute(select(LedgerTransaction)).scalars().all())


def test_purchase_credits_holding_at_current_price(db, prices):
    """3500 at 7000 per gram is 0.5 g"""
    result = SettlementOrchestrator(db).submit(purchase(), now=NOW)

    assert result.holding.quantity == Decimal("0.5")
    assert result.holding.amount_invested == Decimal("3500")
    txn = result.transaction
    assert txn.kind == TransactionKind.PURCHASE
    assert txn.status == TransactionStatus.SUCCESS
    assert txn.execution_rate == Decimal("7000")
    assert txn.execution_quantity == Decimal("0.5")


def test_second_purchase_accumulates(db, prices):
    orchestrator = SettlementOrchestrator(db)
    orchestrator.submit(purchase(amount="3500"), now=NOW)
    orchestrator.submit(purchase(amount="7000"), now=NOW)

    holding = HoldingRepository(db).get("user-1", Metal.GOLD_24K)
    assert holding.quantity == Decimal("1.5")
    assert holding.amount_invested == Decimal("10500")


def test_purchase_without_price_fails(db):
    with pytest.raises(PriceUnavailable):
        SettlementOrchestrator(db).submit(purchase(), now=NOW)

    assert HoldingRepository(db).get("user-1", Metal.GOLD_24K) is None
    assert transaction_count(db) == 0


def test_installment_advances_plan(db, template):
    plan = PlanService(db).opt_in_fixed("user-1", template.id, now=NOW)

    result = SettlementOrchestrator(db).submit(installment(plan, utr="UTR-1"), now=NOW + timedelta(days=3))

    assert result.plan.months_paid == 1
    assert result.plan.total_amount_paid == Decimal("1000")
    assert result.plan.has_delayed_payment is False
    assert result.transaction.kind == TransactionKind.SIP_INSTALLMENT
    assert result.transaction.plan_id == plan.id
    assert result.transaction.utr == "UTR-1"
    assert result.notifications == []


def test_late_installment_marks_fixed_plan_delayed(db, template):
    plan = PlanService(db).opt_in_fixed("user-1", template.id, now=NOW)

    result = SettlementOrchestrator(db).submit(installment(plan), now=NOW + timedelta(days=40))

    assert result.plan.has_delayed_payment is True


def test_eleventh_installment_notifies_admin_of_bonus(db, template):
    plan = PlanService(db).opt_in_fixed("user-1", template.id, now=NOW)
    orchestrator = SettlementOrchestrator(db)

    for month in range(10):
        orchestrator.submit(installment(plan), now=NOW + timedelta(days=month))
    result = orchestrator.submit(installment(plan), now=NOW + timedelta(days=11))

    assert result.plan.months_paid == 11
    assert [n.kind for n in result.notifications] == ["SIP_BONUS"]
    assert result.notifications[0].user_id == "admin"


def test_installment_on_completed_plan_rejected(db):
    plan = PlanService(db).opt_in_flexible("user-1", Metal.SILVER, 1, now=NOW)
    orchestrator = SettlementOrchestrator(db)
    completed = orchestrator.submit(installment(plan, amount="500"), now=NOW)
    assert completed.plan.status == PlanStatus.COMPLETED
    assert [n.kind for n in completed.notifications] == ["SIP_COMPLETED"]

    with pytest.raises(SipAlreadyCompleted):
        orchestrator.submit(installment(plan, amount="500"), now=NOW)

    db.expire_all()
    assert db.get(type(plan), plan.id).months_paid == 1
    assert transaction_count(db) == 1


def test_installment_with_wrong_plan_kind_rejected(db, template):
    plan = PlanService(db).opt_in_fixed("user-1", template.id, now=NOW)

    with pytest.raises(InvalidSipType):
        SettlementOrchestrator(db).submit(installment(plan, kind=PlanKind.FLEXIBLE), now=NOW)


def test_installment_on_someone_elses_plan_rejected(db, template):
    plan = PlanService(db).opt_in_fixed("user-1", template.id, now=NOW)

    with pytest.raises(Unauthorized):
        SettlementOrchestrator(db).submit(installment(plan, user_id="user-2"), now=NOW)

    assert transaction_count(db) == 0


def test_installment_on_unknown_plan_rejected(db):
    intent = SipInstallmentIntent(
        user_id="user-1",
        amount=Decimal("1000"),
        channel=Channel.ONLINE,
        utr=None,
        plan_id="not-a-plan",
        plan_kind=PlanKind.FIXED,
    )
    with pytest.raises(PlanNotFound):
        SettlementOrchestrator(db).submit(intent, now=NOW)


def test_reused_payment_reference_rejected(db, prices):
    orchestrator = SettlementOrchestrator(db)
    orchestrator.submit(purchase(utr="UTR-42"), now=NOW)

    with pytest.raises(DuplicateReference):
        orchestrator.submit(purchase(utr="UTR-42"), now=NOW)

    assert HoldingRepository(db).get("user-1", Metal.GOLD_24K).quantity == Decimal("0.5")


def test_unique_reference_constraint_rejects_duplicate(db):
    repo = TransactionRepository(db)
    record = dict(
        user_id="user-1",
        amount=Decimal("100"),
        direction=Direction.CREDIT,
        channel=Channel.ONLINE,
        kind=TransactionKind.GENERIC,
        status=TransactionStatus.SUCCESS,
        utr="UTR-7",
    )
    with transaction_scope(db):
        repo.create(**record)

    with pytest.raises(DuplicateReference):
        with transaction_scope(db):
            repo.create(**record)

    assert transaction_count(db) == 1


def test_generic_intent_records_transaction_only(db):
    intent = GenericIntent(
        user_id="user-1", amount=Decimal("250"), channel=Channel.ONLINE, utr=None, direction=Direction.DEBIT
    )
    result = SettlementOrchestrator(db).submit(intent, now=NOW)

    assert result.transaction.kind == TransactionKind.GENERIC
    assert result.transaction.direction == Direction.DEBIT
    assert result.holding is None
    assert HoldingRepository(db).list_by_user("user-1") == []


def test_sale_releases_proportional_cost_basis(db):
    """Hold 2 g bought for 10000, sell 1 g at 6000"""
    prices = PriceRepository(db)
    prices.add(Metal.GOLD_24K, Decimal("5000"))
    db.commit()
    orchestrator = SettlementOrchestrator(db)
    orchestrator.submit(purchase(amount="10000"), now=NOW)
    prices.add(Metal.GOLD_24K, Decimal("6000"))
    db.commit()

    result = orchestrator.sell(SaleRequest(user_id="user-1", metal=Metal.GOLD_24K, quantity=Decimal("1"), utr=None))

    assert result.holding.quantity == Decimal("1")
    assert result.holding.amount_invested == Decimal("5000")
    assert result.transaction.kind == TransactionKind.SALE
    assert result.transaction.amount == Decimal("6000")
    assert result.transaction.direction == Direction.CREDIT
    assert result.transaction.execution_rate == Decimal("6000")


def test_selling_everything_clears_basis(db, prices):
    orchestrator = SettlementOrchestrator(db)
    orchestrator.submit(purchase(amount="1000"), now=NOW)
    held = HoldingRepository(db).get("user-1", Metal.GOLD_24K).quantity

    result = orchestrator.sell(SaleRequest(user_id="user-1", metal=Metal.GOLD_24K, quantity=held, utr=None))

    assert result.holding.quantity == Decimal("0")
    assert result.holding.amount_invested == Decimal("0")


def test_oversell_rejected_and_holding_unchanged(db, prices):
    orchestrator = SettlementOrchestrator(db)
    orchestrator.submit(purchase(amount="3500"), now=NOW)

    with pytest.raises(InsufficientHoldings):
        orchestrator.sell(SaleRequest(user_id="user-1", metal=Metal.GOLD_24K, quantity=Decimal("0.6"), utr=None))

    holding = HoldingRepository(db).get("user-1", Metal.GOLD_24K)
    assert holding.quantity == Decimal("0.5")
    assert holding.amount_invested == Decimal("3500")


def test_sequential_sells_cannot_oversell(db, prices):
    orchestrator = SettlementOrchestrator(db)
    orchestrator.submit(purchase(amount="7000"), now=NOW)
    sale = SaleRequest(user_id="user-1", metal=Metal.GOLD_24K, quantity=Decimal("0.6"), utr=None)

    orchestrator.sell(sale)
    with pytest.raises(InsufficientHoldings):
        orchestrator.sell(sale)

    assert HoldingRepository(db).get("user-1", Metal.GOLD_24K).quantity == Decimal("0.4")


def test_sell_rereads_holding_changed_by_another_session(db, prices, session_factory):
    orchestrator = SettlementOrchestrator(db)
    orchestrator.submit(purchase(amount="14000"), now=NOW)
    assert HoldingRepository(db).get("user-1", Metal.GOLD_24K).quantity == Decimal("2")
    db.commit()

    other = session_factory()
    try:
        SettlementOrchestrator(other).sell(
            SaleRequest(user_id="user-1", metal=Metal.GOLD_24K, quantity=Decimal("1.5"), utr=None)
        )
    finally:
        other.close()

    # db still caches the 2 g row; the locked read must see the committed 0.5 g
    with pytest.raises(InsufficientHoldings):
        orchestrator.sell(SaleRequest(user_id="user-1", metal=Metal.GOLD_24K, quantity=Decimal("1"), utr=None))

    assert HoldingRepository(db).get("user-1", Metal.GOLD_24K).quantity == Decimal("0.5")


def test_selling_without_holding_rejected(db, prices):
    with pytest.raises(InsufficientHoldings):
        SettlementOrchestrator(db).sell(
            SaleRequest(user_id="user-1", metal=Metal.SILVER, quantity=Decimal("1"), utr=None)
        )


@patch("bullion_gateway.services.settlement.generate_one_time_code", return_value="482913")
def test_offline_purchase_freezes_price_and_defers_effect(mock_code, db, prices):
    result = SettlementOrchestrator(db).submit(purchase(channel=Channel.OFFLINE), now=NOW)

    txn = result.transaction
    assert txn.status == TransactionStatus.PENDING
    assert txn.channel == Channel.OFFLINE
    assert txn.execution_quantity == Decimal("0.5")
    assert txn.execution_rate == Decimal("7000")
    assert txn.otp_hash == hash_one_time_code("482913")
    assert txn.otp_expires_at == NOW + timedelta(minutes=15)
    assert HoldingRepository(db).get("user-1", Metal.GOLD_24K) is None

    [notice] = result.notifications
    assert notice.user_id == "admin"
    assert "482913" in notice.message


def test_offline_installment_on_completed_plan_rejected(db):
    plan = PlanService(db).opt_in_flexible("user-1", Metal.SILVER, 1, now=NOW)
    orchestrator = SettlementOrchestrator(db)
    orchestrator.submit(installment(plan, amount="500"), now=NOW)

    with pytest.raises(SipAlreadyCompleted):
        orchestrator.submit(installment(plan, amount="500", channel=Channel.OFFLINE), now=NOW)
