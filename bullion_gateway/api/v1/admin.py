"""/v1/admin - templates, settlement, prices, market window and maturity runs"""

import logging
from typing import Callable

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session

from bullion_gateway.api.dependencies import get_notification_client, get_session_factory, require_admin
from bullion_gateway.api.v1.schemas import (
    MarketHistoryResponse,
    MarketSettingResponse,
    MarketStatusResponse,
    MarketUpdateRequest,
    MaturityRunResponse,
    PlanResponse,
    PriceListResponse,
    PriceResponse,
    PriceUpdateRequest,
    SettleResponse,
    TemplateRequest,
    TemplateResponse,
)
from bullion_gateway.config import settings
from bullion_gateway.domain.models import Principal
from bullion_gateway.infrastructure.clients.notifier import NotificationClient
from bullion_gateway.infrastructure.database.repositories import PriceRepository
from bullion_gateway.infrastructure.database.session import get_db, transaction_scope
from bullion_gateway.services.market import MarketGate
from bullion_gateway.services.plans import PlanService
from bullion_gateway.services.scheduler import MaturityScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin")


@router.post("/plan-templates", response_model=TemplateResponse, status_code=201)
def create_plan_template(
    request_body: TemplateRequest,
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    template = PlanService(db).create_template(
        request_body.name,
        request_body.metal,
        request_body.total_months,
        request_body.installment_amount,
    )
    return TemplateResponse.from_model(template)


@router.post("/plans/{plan_id}/settle", response_model=SettleResponse)
def settle_plan(
    plan_id: str,
    background_tasks: BackgroundTasks,
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
    notifier: NotificationClient = Depends(get_notification_client),
):
    """Settle a completed plan; repeating the call answers already_settled=true"""
    result = PlanService(db).settle(plan_id)
    if result.notifications:
        background_tasks.add_task(notifier.notify_all, result.notifications)
    return SettleResponse(
        plan=PlanResponse.from_model(result.plan),
        already_settled=result.already_settled,
        payout_quantity=result.payout_quantity,
        payout_rate=result.payout_rate,
    )


@router.post("/prices", response_model=PriceListResponse, status_code=201)
def publish_prices(
    request_body: PriceUpdateRequest,
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Append a snapshot per metal; the newest snapshot is the current price"""
    repo = PriceRepository(db)
    with transaction_scope(db):
        snapshots = [repo.add(metal, rate) for metal, rate in request_body.rates.items()]

    logger.info(
        f"Prices published for {len(snapshots)} metal(s)",
        extra={"user_id": admin.user_id, "step": "price_update"},
    )
    return PriceListResponse(
        prices=[PriceResponse(metal=s.metal, rate=s.rate, updated_at=s.created_at) for s in snapshots]
    )


@router.put("/market/status", response_model=MarketStatusResponse)
def update_market_status(
    request_body: MarketUpdateRequest,
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    gate = MarketGate(db)
    with transaction_scope(db):
        setting = gate.update(
            admin.user_id,
            override=request_body.override,
            open_time=request_body.open_time,
            close_time=request_body.close_time,
        )
    window = gate.status()
    return MarketStatusResponse(
        is_open=window.is_open,
        reason=window.reason,
        code=window.code,
        override=setting.override,
        open_time=setting.open_time,
        close_time=setting.close_time,
        timezone=settings.market_timezone,
    )


@router.get("/market/history", response_model=MarketHistoryResponse)
def market_history(
    limit: int = Query(50, ge=1, le=500),
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return MarketHistoryResponse(
        settings=[
            MarketSettingResponse(
                override=s.override,
                open_time=s.open_time,
                close_time=s.close_time,
                updated_by=s.updated_by,
                created_at=s.created_at,
            )
            for s in MarketGate(db).history(limit)
        ]
    )


@router.post("/maturity/run", response_model=MaturityRunResponse)
def run_maturity(
    background_tasks: BackgroundTasks,
    admin: Principal = Depends(require_admin),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    notifier: NotificationClient = Depends(get_notification_client),
):
    """Run the maturity pass now instead of waiting for the next scheduled run"""
    summary = MaturityScheduler(session_factory=session_factory, notifier=notifier).run_once()
    if summary.notifications:
        background_tasks.add_task(notifier.notify_all, summary.notifications)
    return MaturityRunResponse(processed=summary.processed, skipped=summary.skipped, failed=summary.failed)
