"""SQLAlchemy ORM models for holdings, plans, transactions and reference data"""

import uuid
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship

from bullion_gateway.domain.models import (
    Channel,
    Direction,
    MarketOverride,
    Metal,
    PlanKind,
    PlanProgress,
    PlanStatus,
    TransactionKind,
    TransactionStatus,
)
from bullion_gateway.utils.date_utils import ensure_utc, utcnow

Base = declarative_base()

Money = Numeric(18, 2)
Quantity = Numeric(18, 6)
Rate = Numeric(18, 4)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetime, also on backends that drop tzinfo (SQLite)"""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return ensure_utc(value) if value is not None else None

    def process_result_value(self, value, dialect):
        return ensure_utc(value) if value is not None else None


def _enum(enum_cls):
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class Holding(Base):
    """Per-user, per-metal running balance"""

    __tablename__ = "holding"
    __table_args__ = (
        UniqueConstraint("user_id", "metal", name="uq_holding_user_metal"),
        CheckConstraint("quantity >= 0", name="ck_holding_quantity_non_negative"),
        CheckConstraint("amount_invested >= 0", name="ck_holding_amount_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, index=True)
    metal = Column(_enum(Metal), nullable=False)
    amount_invested = Column(Money, nullable=False, default=Decimal("0"))
    quantity = Column(Quantity, nullable=False, default=Decimal("0"))
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class PlanTemplate(Base):
    """Admin-defined template for Fixed plans"""

    __tablename__ = "plan_template"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    metal = Column(_enum(Metal), nullable=False)
    total_months = Column(Integer, nullable=False)
    installment_amount = Column(Money, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    plans = relationship("Plan", back_populates="template")


class Plan(Base):
    """
    Installment plan (SIP) owned by one user.

    Fixed plans copy metal and tenure from their template at opt-in so later
    template edits never change a running subscription.
    """

    __tablename__ = "sip_plan"
    __table_args__ = (
        CheckConstraint("months_paid >= 0", name="ck_plan_months_non_negative"),
        CheckConstraint("months_paid <= total_months", name="ck_plan_months_within_tenure"),
        Index(
            "uq_plan_active_fixed_template",
            "user_id",
            "template_id",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, index=True)
    kind = Column(_enum(PlanKind), nullable=False)
    template_id = Column(UUID(as_uuid=True), ForeignKey("plan_template.id"), nullable=True)
    metal = Column(_enum(Metal), nullable=False)
    total_months = Column(Integer, nullable=False)
    installment_amount = Column(Money, nullable=True)
    months_paid = Column(Integer, nullable=False, default=0)
    total_amount_paid = Column(Money, nullable=False, default=Decimal("0"))
    next_due_date = Column(UTCDateTime, nullable=True)
    has_delayed_payment = Column(Boolean, nullable=False, default=False)
    status = Column(_enum(PlanStatus), nullable=False, default=PlanStatus.ACTIVE, index=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    completed_at = Column(UTCDateTime, nullable=True)
    closed_at = Column(UTCDateTime, nullable=True)

    template = relationship("PlanTemplate", back_populates="plans")

    def progress(self) -> PlanProgress:
        return PlanProgress(
            kind=self.kind,
            status=self.status,
            total_months=self.total_months,
            months_paid=self.months_paid,
            total_amount_paid=Decimal(self.total_amount_paid),
            next_due_date=self.next_due_date,
            has_delayed_payment=self.has_delayed_payment,
        )


class LedgerTransaction(Base):
    """Append-only record of one money movement"""

    __tablename__ = "ledger_transaction"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, index=True)
    amount = Column(Money, nullable=False)
    direction = Column(_enum(Direction), nullable=False)
    channel = Column(_enum(Channel), nullable=False)
    kind = Column(_enum(TransactionKind), nullable=False)
    status = Column(_enum(TransactionStatus), nullable=False, default=TransactionStatus.PENDING)
    utr = Column(Text, nullable=False, unique=True)
    plan_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    plan_kind = Column(_enum(PlanKind), nullable=True)
    metal = Column(_enum(Metal), nullable=True)
    execution_quantity = Column(Quantity, nullable=True)
    execution_rate = Column(Rate, nullable=True)
    otp_hash = Column(String(64), nullable=True)
    otp_expires_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    finalized_at = Column(UTCDateTime, nullable=True)


class PriceSnapshot(Base):
    """Latest-wins conversion rate per metal (currency per gram)"""

    __tablename__ = "price_snapshot"

    id = Column(Integer, primary_key=True, autoincrement=True)
    metal = Column(_enum(Metal), nullable=False, index=True)
    rate = Column(Rate, nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)


class MarketSetting(Base):
    """Admin market configuration history; the newest row is in force"""

    __tablename__ = "market_setting"

    id = Column(Integer, primary_key=True, autoincrement=True)
    override = Column(_enum(MarketOverride), nullable=False, default=MarketOverride.OPEN)
    open_time = Column(String(5), nullable=False)
    close_time = Column(String(5), nullable=False)
    updated_by = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)

