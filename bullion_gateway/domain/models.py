"""Domain models - pure Python dataclasses and enums representing business entities"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Union


class Metal(str, enum.Enum):
    GOLD_24K = "gold24K"
    GOLD_22K = "gold22K"
    SILVER = "silver"


class PlanKind(str, enum.Enum):
    FIXED = "FIXED"
    FLEXIBLE = "FLEXIBLE"


class PlanStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CONVERTED = "CONVERTED"
    SETTLED = "SETTLED"


class Direction(str, enum.Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class Channel(str, enum.Enum):
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"
    SCHEDULED = "SCHEDULED"


class TransactionKind(str, enum.Enum):
    SIP_INSTALLMENT = "SIP_INSTALLMENT"
    PURCHASE = "PURCHASE"
    SALE = "SALE"
    GENERIC = "GENERIC"
    SIP_BONUS = "SIP_BONUS"
    CONVERSION = "CONVERSION"


class TransactionStatus(str, enum.Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class MarketOverride(str, enum.Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class Role(str, enum.Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


@dataclass(frozen=True)
class Principal:
    """Authenticated caller as supplied by the identity provider"""

    user_id: str
    role: Role = Role.CUSTOMER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


# Payment intents: built once at the API boundary, never re-inferred downstream


@dataclass(frozen=True)
class SipInstallmentIntent:
    """Installment toward an existing plan"""

    user_id: str
    amount: Decimal
    channel: Channel
    utr: Optional[str]
    plan_id: str
    plan_kind: PlanKind


@dataclass(frozen=True)
class MetalPurchaseIntent:
    """Direct purchase of metal at the current price"""

    user_id: str
    amount: Decimal
    channel: Channel
    utr: Optional[str]
    metal: Metal


@dataclass(frozen=True)
class GenericIntent:
    """Plain credit or debit with no ledger effect"""

    user_id: str
    amount: Decimal
    channel: Channel
    utr: Optional[str]
    direction: Direction = Direction.CREDIT


PaymentIntent = Union[SipInstallmentIntent, MetalPurchaseIntent, GenericIntent]


@dataclass(frozen=True)
class SaleRequest:
    user_id: str
    metal: Metal
    quantity: Decimal
    utr: Optional[str]


@dataclass
class PlanProgress:
    """Snapshot of the plan fields the plan engine reads"""

    kind: PlanKind
    status: PlanStatus
    total_months: int
    months_paid: int
    total_amount_paid: Decimal
    next_due_date: Optional[datetime]
    has_delayed_payment: bool = False


@dataclass
class InstallmentOutcome:
    """New plan progress after one installment"""

    months_paid: int
    total_amount_paid: Decimal
    next_due_date: Optional[datetime]
    has_delayed_payment: bool
    status: PlanStatus
    bonus_due: bool = False


@dataclass
class MarketWindow:
    """Answer from the market window gate"""

    is_open: bool
    reason: Optional[str] = None
    code: Optional[str] = None


@dataclass
class Notification:
    """Outbound message, delivered after the unit of work commits"""

    user_id: str
    title: str
    message: str
    kind: str = "INFO"


@dataclass
class MaturityRunSummary:
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    notifications: List[Notification] = field(default_factory=list)
