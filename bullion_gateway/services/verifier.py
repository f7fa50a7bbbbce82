"""Deferred payment verifier - confirms offline transactions with their one-time code"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from bullion_gateway.domain.exceptions import (
    AlreadyVerified,
    DeferredPaymentError,
    Expired,
    InvalidCode,
    SipAlreadyCompleted,
    TransactionNotFound,
    Unauthorized,
    WrongChannel,
)
from bullion_gateway.domain.models import Channel, Principal, TransactionKind, TransactionStatus
from bullion_gateway.infrastructure.database.models import LedgerTransaction
from bullion_gateway.infrastructure.database.repositories import (
    HoldingRepository,
    PlanRepository,
    TransactionRepository,
)
from bullion_gateway.infrastructure.database.session import transaction_scope
from bullion_gateway.infrastructure.observability.metrics import offline_confirmation_counter, record_settlement
from bullion_gateway.services.settlement import (
    SettlementResult,
    load_owned_plan,
    one_time_code_matches,
    post_installment,
)
from bullion_gateway.utils.date_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)


class DeferredPaymentVerifier:
    """
    Second half of the offline channel.

    A correct, unexpired code applies the deferred effect exactly once.
    If the plan can no longer take the installment, the pending
    transaction is closed as FAILED and the conflict is reported.
    """

    def __init__(self, db: Session):
        self.db = db
        self.holdings = HoldingRepository(db)
        self.plans = PlanRepository(db)
        self.transactions = TransactionRepository(db)

    def confirm(
        self,
        transaction_id: str | uuid.UUID,
        code: str,
        caller: Principal,
        now: Optional[datetime] = None,
    ) -> SettlementResult:
        """
        Raises (checked in this order):
            TransactionNotFound, Unauthorized, WrongChannel, AlreadyVerified,
            InvalidCode, Expired, SipAlreadyCompleted
        """
        now = now or utcnow()
        txn_id = self._parse_id(transaction_id)

        try:
            with transaction_scope(self.db):
                txn = self._load_pending(txn_id, code, caller, now)
                result = self._apply_deferred_effect(txn, now)
                self.transactions.finalize(txn, TransactionStatus.SUCCESS)
        except SipAlreadyCompleted:
            self._mark_failed(txn_id)
            offline_confirmation_counter.labels(outcome="failed").inc()
            raise
        except DeferredPaymentError as e:
            offline_confirmation_counter.labels(outcome=e.code).inc()
            raise

        offline_confirmation_counter.labels(outcome="confirmed").inc()
        record_settlement(txn.kind.value, txn.channel.value, txn.status.value)
        logger.info(
            "Offline payment confirmed",
            extra={"user_id": txn.user_id, "transaction_id": str(txn.id), "step": "offline_confirm"},
        )
        return result

    def _load_pending(
        self, txn_id: uuid.UUID, code: str, caller: Principal, now: datetime
    ) -> LedgerTransaction:
        txn = self.transactions.lock(txn_id)
        if txn is None:
            raise TransactionNotFound(f"Transaction {txn_id} not found")
        if not caller.is_admin and txn.user_id != caller.user_id:
            raise Unauthorized("Transaction not owned by caller")
        if txn.channel != Channel.OFFLINE:
            raise WrongChannel()
        if txn.status != TransactionStatus.PENDING:
            raise AlreadyVerified()
        if not one_time_code_matches(code, txn.otp_hash):
            raise InvalidCode()
        if txn.otp_expires_at is None or ensure_utc(now) > ensure_utc(txn.otp_expires_at):
            raise Expired()
        return txn

    def _apply_deferred_effect(self, txn: LedgerTransaction, now: datetime) -> SettlementResult:
        if txn.kind == TransactionKind.SIP_INSTALLMENT:
            plan = load_owned_plan(self.plans, txn.plan_id, txn.user_id, txn.plan_kind)
            notifications = post_installment(self.plans, plan, Decimal(txn.amount), now)
            return SettlementResult(transaction=txn, plan=plan, notifications=notifications)

        if txn.kind == TransactionKind.PURCHASE:
            # Quantity was frozen when the intent was recorded
            holding = self.holdings.credit(
                txn.user_id, txn.metal, Decimal(txn.amount), Decimal(txn.execution_quantity)
            )
            return SettlementResult(transaction=txn, holding=holding)

        return SettlementResult(transaction=txn)

    def _mark_failed(self, txn_id: uuid.UUID) -> None:
        with transaction_scope(self.db):
            txn = self.transactions.lock(txn_id)
            if txn is not None and txn.status == TransactionStatus.PENDING:
                self.transactions.finalize(txn, TransactionStatus.FAILED)
                record_settlement(txn.kind.value, txn.channel.value, TransactionStatus.FAILED.value)
                logger.warning(
                    "Offline payment failed: plan no longer accepts installments",
                    extra={"user_id": txn.user_id, "transaction_id": str(txn.id), "step": "offline_confirm"},
                )

    @staticmethod
    def _parse_id(transaction_id: str | uuid.UUID) -> uuid.UUID:
        if isinstance(transaction_id, uuid.UUID):
            return transaction_id
        try:
            return uuid.UUID(transaction_id)
        except ValueError as e:
            raise TransactionNotFound(f"Transaction {transaction_id} not found") from e
