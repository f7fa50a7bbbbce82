"""Offline payment confirmation tests"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

from bullion_gateway.domain.exceptions import (
    AlreadyVerified,
    Expired,
    InvalidCode,
    SipAlreadyCompleted,
    TransactionNotFound,
    Unauthorized,
    WrongChannel,
)
from bullion_gateway.domain.models import (
    Channel,
    Metal,
    MetalPurchaseIntent,
    PlanStatus,
    Principal,
    Role,
    SipInstallmentIntent,
    TransactionStatus,
)
from bullion_gateway.infrastructure.database.models import LedgerTransaction, Plan
from bullion_gateway.infrastructure.database.repositories import HoldingRepository, PriceRepository
from bullion_gateway.services.plans import PlanService
from bullion_gateway.services.settlement import SettlementOrchestrator
from bullion_gateway.services.verifier import DeferredPaymentVerifier

NOW = datetime(2026, 5, 4, 7, 0, tzinfo=timezone.utc)
CODE = "135790"
OWNER = Principal(user_id="user-1")
ADMIN = Principal(user_id="admin", role=Role.ADMIN)


@pytest.fixture(autouse=True)
def fixed_code():
    with patch("bullion_gateway.services.settlement.generate_one_time_code", return_value=CODE):
        yield


def offline_installment(db, plan, amount="1000") -> LedgerTransaction:
    intent = SipInstallmentIntent(
        user_id=plan.user_id,
        amount=Decimal(amount),
        channel=Channel.OFFLINE,
        utr=None,
        plan_id=str(plan.id),
        plan_kind=plan.kind,
    )
    return SettlementOrchestrator(db).submit(intent, now=NOW).transaction


def reload(db, model, key):
    db.expire_all()
    return db.get(model, key)


def test_confirm_applies_installment_once(db, template):
    plan = PlanService(db).opt_in_fixed("user-1", template.id, now=NOW)
    txn = offline_installment(db, plan)
    assert reload(db, Plan, plan.id).months_paid == 0

    result = DeferredPaymentVerifier(db).confirm(txn.id, CODE, OWNER, now=NOW + timedelta(minutes=5))

    assert result.transaction.status == TransactionStatus.SUCCESS
    assert result.transaction.otp_hash is None
    assert result.transaction.otp_expires_at is None
    assert result.plan.months_paid == 1
    assert result.plan.total_amount_paid == Decimal("1000")


def test_second_confirmation_is_already_verified(db, template):
    plan = PlanService(db).opt_in_fixed("user-1", template.id, now=NOW)
    txn = offline_installment(db, plan)
    verifier = DeferredPaymentVerifier(db)
    verifier.confirm(txn.id, CODE, OWNER, now=NOW)

    with pytest.raises(AlreadyVerified):
        verifier.confirm(txn.id, CODE, OWNER, now=NOW)

    assert reload(db, Plan, plan.id).months_paid == 1


def test_wrong_code_keeps_transaction_pending(db, template):
    plan = PlanService(db).opt_in_fixed("user-1", template.id, now=NOW)
    txn = offline_installment(db, plan)

    with pytest.raises(InvalidCode):
        DeferredPaymentVerifier(db).confirm(txn.id, "000000", OWNER, now=NOW)

    assert reload(db, LedgerTransaction, txn.id).status == TransactionStatus.PENDING
    assert reload(db, Plan, plan.id).months_paid == 0


def test_correct_code_after_expiry_is_expired(db, template):
    plan = PlanService(db).opt_in_fixed("user-1", template.id, now=NOW)
    txn = offline_installment(db, plan)

    with pytest.raises(Expired):
        DeferredPaymentVerifier(db).confirm(txn.id, CODE, OWNER, now=NOW + timedelta(minutes=16))

    assert reload(db, LedgerTransaction, txn.id).status == TransactionStatus.PENDING


def test_online_transaction_is_wrong_channel(db, prices):
    intent = MetalPurchaseIntent(
        user_id="user-1", amount=Decimal("700"), channel=Channel.ONLINE, utr=None, metal=Metal.GOLD_24K
    )
    txn = SettlementOrchestrator(db).submit(intent, now=NOW).transaction

    with pytest.raises(WrongChannel):
        DeferredPaymentVerifier(db).confirm(txn.id, CODE, OWNER, now=NOW)


def test_unknown_transaction_not_found(db):
    with pytest.raises(TransactionNotFound):
        DeferredPaymentVerifier(db).confirm("00000000-0000-0000-0000-000000000000", CODE, OWNER, now=NOW)
    with pytest.raises(TransactionNotFound):
        DeferredPaymentVerifier(db).confirm("garbage", CODE, OWNER, now=NOW)


def test_only_owner_or_admin_can_confirm(db, template):
    plan = PlanService(db).opt_in_fixed("user-1", template.id, now=NOW)
    txn = offline_installment(db, plan)
    verifier = DeferredPaymentVerifier(db)

    with pytest.raises(Unauthorized):
        verifier.confirm(txn.id, CODE, Principal(user_id="user-2"), now=NOW)

    result = verifier.confirm(txn.id, CODE, ADMIN, now=NOW)
    assert result.transaction.status == TransactionStatus.SUCCESS


def test_purchase_confirmation_uses_frozen_quantity(db, prices):
    intent = MetalPurchaseIntent(
        user_id="user-1", amount=Decimal("3500"), channel=Channel.OFFLINE, utr=None, metal=Metal.GOLD_24K
    )
    txn = SettlementOrchestrator(db).submit(intent, now=NOW).transaction
    PriceRepository(db).add(Metal.GOLD_24K, Decimal("10000"))
    db.commit()

    result = DeferredPaymentVerifier(db).confirm(txn.id, CODE, OWNER, now=NOW)

    assert result.holding.quantity == Decimal("0.5")
    assert HoldingRepository(db).get("user-1", Metal.GOLD_24K).amount_invested == Decimal("3500")


def test_plan_completed_meanwhile_fails_pending_transaction(db):
    plan = PlanService(db).opt_in_flexible("user-1", Metal.GOLD_22K, 1, now=NOW)
    pending = offline_installment(db, plan, amount="800")
    online = SipInstallmentIntent(
        user_id="user-1",
        amount=Decimal("800"),
        channel=Channel.ONLINE,
        utr=None,
        plan_id=str(plan.id),
        plan_kind=plan.kind,
    )
    SettlementOrchestrator(db).submit(online, now=NOW)

    with pytest.raises(SipAlreadyCompleted):
        DeferredPaymentVerifier(db).confirm(pending.id, CODE, OWNER, now=NOW)

    failed = reload(db, LedgerTransaction, pending.id)
    assert failed.status == TransactionStatus.FAILED
    assert failed.finalized_at is not None
    refreshed = reload(db, Plan, plan.id)
    assert refreshed.status == PlanStatus.COMPLETED
    assert refreshed.months_paid == 1
