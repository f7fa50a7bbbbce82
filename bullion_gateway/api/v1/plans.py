"""/v1/plans - installment plan opt-in, lookup and conversion"""

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from bullion_gateway.api.dependencies import get_notification_client, get_principal
from bullion_gateway.api.v1.schemas import (
    FixedPlanRequest,
    FlexiblePlanRequest,
    PlanDetailResponse,
    PlanListResponse,
    PlanResponse,
    SettlementResponse,
    TemplateResponse,
    TransactionResponse,
)
from bullion_gateway.domain.models import Principal
from bullion_gateway.infrastructure.clients.notifier import NotificationClient
from bullion_gateway.infrastructure.database.session import get_db
from bullion_gateway.services.market import MarketGate
from bullion_gateway.services.plans import PlanService

router = APIRouter()


@router.post("/plans/fixed", response_model=PlanResponse, status_code=201)
def opt_in_fixed_plan(
    request_body: FixedPlanRequest,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    """Opt in to an admin-defined template; metal and tenure come from the template"""
    plan = PlanService(db).opt_in_fixed(principal.user_id, request_body.template_id)
    return PlanResponse.from_model(plan)


@router.post("/plans/flexible", response_model=PlanResponse, status_code=201)
def opt_in_flexible_plan(
    request_body: FlexiblePlanRequest,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    plan = PlanService(db).opt_in_flexible(
        principal.user_id,
        request_body.metal,
        request_body.total_months,
        request_body.installment_amount,
    )
    return PlanResponse.from_model(plan)


@router.get("/plans", response_model=PlanListResponse)
def list_plans(principal: Principal = Depends(get_principal), db: Session = Depends(get_db)):
    plans = PlanService(db).list_plans(principal.user_id)
    return PlanListResponse(user_id=principal.user_id, plans=[PlanResponse.from_model(p) for p in plans])


@router.get("/plans/{plan_id}", response_model=PlanDetailResponse)
def get_plan(plan_id: str, principal: Principal = Depends(get_principal), db: Session = Depends(get_db)):
    """
    Retrieve a plan with its installment history.

    Owner or admin only.
    """
    service = PlanService(db)
    plan = service.get_plan(plan_id, principal)
    return PlanDetailResponse(
        **PlanResponse.from_model(plan).model_dump(),
        transactions=[TransactionResponse.from_model(t) for t in service.plan_transactions(plan)],
    )


@router.post("/plans/{plan_id}/convert", response_model=SettlementResponse)
def convert_plan(
    plan_id: str,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    notifier: NotificationClient = Depends(get_notification_client),
):
    """Convert a completed plan into metal holdings at the current price"""
    MarketGate(db).require_open()
    result = PlanService(db).convert(plan_id, principal)
    background_tasks.add_task(notifier.notify_all, result.notifications)
    return SettlementResponse.from_result(result)


@router.get("/plan-templates", response_model=list[TemplateResponse])
def list_plan_templates(db: Session = Depends(get_db)):
    return [TemplateResponse.from_model(t) for t in PlanService(db).list_templates()]
