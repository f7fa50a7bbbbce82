"""Pydantic schemas for API request/response validation"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from bullion_gateway.domain.models import (
    Channel,
    Direction,
    GenericIntent,
    MarketOverride,
    Metal,
    MetalPurchaseIntent,
    PaymentIntent,
    PlanKind,
    PlanStatus,
    SaleRequest,
    SipInstallmentIntent,
    TransactionKind,
    TransactionStatus,
)

QUICK_BUY_PREFIX = "quick-buy-"

HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


# Requests


class PaymentIntentRequest(BaseModel):
    """
    Request body for POST /v1/transactions.

    A plan reference makes this a SIP installment; a metal reference makes it
    a purchase; neither makes it a plain credit/debit. ``quick-buy-*`` plan
    ids are purchases of ``metal``.
    """

    amount: Decimal = Field(..., gt=0, max_digits=18, decimal_places=2)
    channel: Channel = Channel.ONLINE
    utr: Optional[str] = Field(None, min_length=1, max_length=128, description="Payment gateway reference")
    plan_id: Optional[str] = None
    plan_kind: Optional[PlanKind] = None
    metal: Optional[Metal] = None
    direction: Direction = Direction.CREDIT

    @field_validator("channel")
    @classmethod
    def channel_is_client_facing(cls, value: Channel) -> Channel:
        if value == Channel.SCHEDULED:
            raise ValueError("channel must be ONLINE or OFFLINE")
        return value

    @model_validator(mode="after")
    def check_references(self) -> "PaymentIntentRequest":
        if self.is_quick_buy and self.metal is None:
            raise ValueError("metal is required for quick-buy purchases")
        if self.plan_id and not self.is_quick_buy and self.plan_kind is None:
            raise ValueError("plan_kind must be FIXED or FLEXIBLE for plan installments")
        return self

    @property
    def is_quick_buy(self) -> bool:
        return bool(self.plan_id) and self.plan_id.startswith(QUICK_BUY_PREFIX)

    def build_intent(self, user_id: str) -> PaymentIntent:
        common = dict(user_id=user_id, amount=self.amount, channel=self.channel, utr=self.utr)
        if self.plan_id and not self.is_quick_buy:
            return SipInstallmentIntent(plan_id=self.plan_id, plan_kind=self.plan_kind, **common)
        if self.metal is not None:
            return MetalPurchaseIntent(metal=self.metal, **common)
        return GenericIntent(direction=self.direction, **common)


class SellRequest(BaseModel):
    """Request body for POST /v1/transactions/sell"""

    metal: Metal
    quantity: Decimal = Field(..., gt=0, max_digits=18, decimal_places=6, description="Grams to sell")
    utr: Optional[str] = Field(None, min_length=1, max_length=128)

    def build_request(self, user_id: str) -> SaleRequest:
        return SaleRequest(user_id=user_id, metal=self.metal, quantity=self.quantity, utr=self.utr)


class ConfirmRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=12, description="One-time code sent to the administrator")


class FixedPlanRequest(BaseModel):
    template_id: str = Field(..., min_length=1)


class FlexiblePlanRequest(BaseModel):
    metal: Metal
    total_months: int = Field(12, ge=1, le=120)
    installment_amount: Optional[Decimal] = Field(None, gt=0, max_digits=18, decimal_places=2)


class TemplateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    metal: Metal
    total_months: int = Field(..., ge=1, le=120)
    installment_amount: Decimal = Field(..., gt=0, max_digits=18, decimal_places=2)


class PriceUpdateRequest(BaseModel):
    """Rates per gram for one or more metals"""

    rates: Dict[Metal, Decimal] = Field(..., min_length=1)

    @field_validator("rates")
    @classmethod
    def rates_positive(cls, value: Dict[Metal, Decimal]) -> Dict[Metal, Decimal]:
        for metal, rate in value.items():
            if rate <= 0:
                raise ValueError(f"rate for {metal.value} must be positive")
        return value


class MarketUpdateRequest(BaseModel):
    override: Optional[MarketOverride] = None
    open_time: Optional[str] = Field(None, pattern=HHMM_PATTERN)
    close_time: Optional[str] = Field(None, pattern=HHMM_PATTERN)


# Responses


class TransactionResponse(BaseModel):
    transaction_id: str
    user_id: str
    amount: Decimal
    direction: Direction
    channel: Channel
    kind: TransactionKind
    status: TransactionStatus
    utr: str
    plan_id: Optional[str] = None
    plan_kind: Optional[PlanKind] = None
    metal: Optional[Metal] = None
    execution_quantity: Optional[Decimal] = None
    execution_rate: Optional[Decimal] = None
    created_at: datetime
    finalized_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, txn) -> "TransactionResponse":
        return cls(
            transaction_id=str(txn.id),
            user_id=txn.user_id,
            amount=txn.amount,
            direction=txn.direction,
            channel=txn.channel,
            kind=txn.kind,
            status=txn.status,
            utr=txn.utr,
            plan_id=str(txn.plan_id) if txn.plan_id else None,
            plan_kind=txn.plan_kind,
            metal=txn.metal,
            execution_quantity=txn.execution_quantity,
            execution_rate=txn.execution_rate,
            created_at=txn.created_at,
            finalized_at=txn.finalized_at,
        )


class TransactionListResponse(BaseModel):
    user_id: str
    transactions: List[TransactionResponse]


class PlanResponse(BaseModel):
    plan_id: str
    user_id: str
    kind: PlanKind
    template_id: Optional[str] = None
    metal: Metal
    total_months: int
    installment_amount: Optional[Decimal] = None
    months_paid: int
    total_amount_paid: Decimal
    next_due_date: Optional[datetime] = None
    has_delayed_payment: bool
    status: PlanStatus
    created_at: datetime
    completed_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, plan) -> "PlanResponse":
        return cls(
            plan_id=str(plan.id),
            user_id=plan.user_id,
            kind=plan.kind,
            template_id=str(plan.template_id) if plan.template_id else None,
            metal=plan.metal,
            total_months=plan.total_months,
            installment_amount=plan.installment_amount,
            months_paid=plan.months_paid,
            total_amount_paid=plan.total_amount_paid,
            next_due_date=plan.next_due_date,
            has_delayed_payment=plan.has_delayed_payment,
            status=plan.status,
            created_at=plan.created_at,
            completed_at=plan.completed_at,
            closed_at=plan.closed_at,
        )


class PlanDetailResponse(PlanResponse):
    transactions: List[TransactionResponse] = []


class PlanListResponse(BaseModel):
    user_id: str
    plans: List[PlanResponse]


class TemplateResponse(BaseModel):
    template_id: str
    name: str
    metal: Metal
    total_months: int
    installment_amount: Decimal
    is_active: bool

    @classmethod
    def from_model(cls, template) -> "TemplateResponse":
        return cls(
            template_id=str(template.id),
            name=template.name,
            metal=template.metal,
            total_months=template.total_months,
            installment_amount=template.installment_amount,
            is_active=template.is_active,
        )


class HoldingResponse(BaseModel):
    metal: Metal
    quantity: Decimal
    amount_invested: Decimal
    updated_at: datetime

    @classmethod
    def from_model(cls, holding) -> "HoldingResponse":
        return cls(
            metal=holding.metal,
            quantity=holding.quantity,
            amount_invested=holding.amount_invested,
            updated_at=holding.updated_at,
        )


class HoldingListResponse(BaseModel):
    user_id: str
    holdings: List[HoldingResponse]


class SettlementResponse(BaseModel):
    """Outcome of a payment intent, sale, confirmation or conversion"""

    transaction: TransactionResponse
    plan: Optional[PlanResponse] = None
    holding: Optional[HoldingResponse] = None
    requires_verification: bool = False

    @classmethod
    def from_result(cls, result) -> "SettlementResponse":
        txn = result.transaction
        return cls(
            transaction=TransactionResponse.from_model(txn),
            plan=PlanResponse.from_model(result.plan) if result.plan is not None else None,
            holding=HoldingResponse.from_model(result.holding) if result.holding is not None else None,
            requires_verification=txn.status == TransactionStatus.PENDING,
        )


class SettleResponse(BaseModel):
    plan: PlanResponse
    already_settled: bool
    payout_quantity: Optional[Decimal] = None
    payout_rate: Optional[Decimal] = None


class PriceResponse(BaseModel):
    metal: Metal
    rate: Decimal
    updated_at: datetime


class PriceListResponse(BaseModel):
    prices: List[PriceResponse]


class MarketStatusResponse(BaseModel):
    is_open: bool
    reason: Optional[str] = None
    code: Optional[str] = None
    override: MarketOverride
    open_time: str
    close_time: str
    timezone: str


class MarketSettingResponse(BaseModel):
    override: MarketOverride
    open_time: str
    close_time: str
    updated_by: Optional[str] = None
    created_at: datetime


class MarketHistoryResponse(BaseModel):
    settings: List[MarketSettingResponse]


class MaturityRunResponse(BaseModel):
    processed: int
    skipped: int
    failed: int
