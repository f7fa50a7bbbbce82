"""POST /v1/transactions* - payment intents, sales and offline confirmation"""

import logging
import time
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from bullion_gateway.api.dependencies import get_notification_client, get_principal, get_request_id
from bullion_gateway.api.v1.schemas import (
    ConfirmRequest,
    PaymentIntentRequest,
    SellRequest,
    SettlementResponse,
    TransactionListResponse,
    TransactionResponse,
)
from bullion_gateway.domain.exceptions import DomainException
from bullion_gateway.domain.models import Principal, TransactionKind
from bullion_gateway.infrastructure.clients.notifier import NotificationClient
from bullion_gateway.infrastructure.database.repositories import TransactionRepository
from bullion_gateway.infrastructure.database.session import get_db
from bullion_gateway.infrastructure.observability.logging import log_settlement
from bullion_gateway.services.market import MarketGate
from bullion_gateway.services.settlement import SettlementOrchestrator, SettlementResult
from bullion_gateway.services.verifier import DeferredPaymentVerifier

router = APIRouter()


def _finish(
    result: SettlementResult,
    request_id: str,
    start_time: float,
    background_tasks: BackgroundTasks,
    notifier: NotificationClient,
) -> SettlementResponse:
    txn = result.transaction
    if result.notifications:
        background_tasks.add_task(notifier.notify_all, result.notifications)
    log_settlement(
        request_id,
        txn.user_id,
        txn.kind.value,
        txn.channel.value,
        str(txn.id),
        txn.status.value,
        (time.time() - start_time) * 1000,
        plan_id=str(txn.plan_id) if txn.plan_id else None,
    )
    return SettlementResponse.from_result(result)


def _internal_error(db: Session, request_id: str, e: Exception) -> HTTPException:
    db.rollback()
    logging.error(f"Unexpected error: {e}", extra={"request_id": request_id})
    return HTTPException(status_code=500, detail="Internal server error")


@router.post("/transactions", response_model=SettlementResponse)
def submit_payment(
    request_body: PaymentIntentRequest,
    background_tasks: BackgroundTasks,
    request: Request,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    notifier: NotificationClient = Depends(get_notification_client),
):
    """
    Record a payment.

    Flow:
    1. Classify the intent (installment, purchase or plain credit/debit)
    2. Check the market window
    3. ONLINE: apply plan/holding effect and SUCCESS transaction atomically
       OFFLINE: persist a PENDING transaction and send its code to the admin
    4. Notify after commit
    """
    start_time = time.time()
    request_id = get_request_id(request)
    intent = request_body.build_intent(principal.user_id)

    try:
        MarketGate(db).require_open()
        result = SettlementOrchestrator(db).submit(intent)
    except DomainException:
        raise
    except Exception as e:
        raise _internal_error(db, request_id, e)

    return _finish(result, request_id, start_time, background_tasks, notifier)


@router.post("/transactions/sell", response_model=SettlementResponse)
def sell_metal(
    request_body: SellRequest,
    background_tasks: BackgroundTasks,
    request: Request,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    notifier: NotificationClient = Depends(get_notification_client),
):
    """Sell metal back at the current price"""
    start_time = time.time()
    request_id = get_request_id(request)

    try:
        MarketGate(db).require_open()
        result = SettlementOrchestrator(db).sell(request_body.build_request(principal.user_id))
    except DomainException:
        raise
    except Exception as e:
        raise _internal_error(db, request_id, e)

    return _finish(result, request_id, start_time, background_tasks, notifier)


@router.post("/transactions/{transaction_id}/confirm", response_model=SettlementResponse)
def confirm_offline_payment(
    transaction_id: str,
    request_body: ConfirmRequest,
    background_tasks: BackgroundTasks,
    request: Request,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    notifier: NotificationClient = Depends(get_notification_client),
):
    """Confirm an offline payment with its one-time code (not market gated)"""
    start_time = time.time()
    request_id = get_request_id(request)

    try:
        result = DeferredPaymentVerifier(db).confirm(transaction_id, request_body.code, principal)
    except DomainException:
        raise
    except Exception as e:
        raise _internal_error(db, request_id, e)

    return _finish(result, request_id, start_time, background_tasks, notifier)


@router.get("/transactions", response_model=TransactionListResponse)
def list_transactions(
    kind: Optional[TransactionKind] = Query(None, description="Filter by transaction kind"),
    limit: int = Query(50, ge=1, le=200),
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    """Recent transactions for the caller, newest first"""
    transactions = TransactionRepository(db).list_by_user(principal.user_id, kind=kind, limit=limit)
    return TransactionListResponse(
        user_id=principal.user_id,
        transactions=[TransactionResponse.from_model(t) for t in transactions],
    )
