import enum
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import DateTime, Enum, Index, JSON, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base


class PaymentProviderType(enum.Enum):
    mpesa = "mpesa"
    pesapal = "pesapal"
    paystack = "paystack"


class PendingPaymentStatus(enum.Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"


class FulfillmentStatus(enum.Enum):
    pending = "pending"
    fulfilled = "fulfilled"


TERMINAL_STATUSES = (PendingPaymentStatus.completed, PendingPaymentStatus.failed)


class PendingPayment(Base):
    __tablename__ = "pending_payments"
    __table_args__ = (
        Index("ix_pending_payments_status_fulfillment", "status", "fulfillment_status"),
    )

    order_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    provider_tracking_id: Mapped[str | None] = mapped_column(
        String(120), unique=True, index=True
    )
    provider: Mapped[PaymentProviderType] = mapped_column(
        Enum(PaymentProviderType), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="KES")
    # "metadata" is reserved on declarative classes
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    status: Mapped[PendingPaymentStatus] = mapped_column(
        Enum(PendingPaymentStatus), default=PendingPaymentStatus.pending, nullable=False
    )
    fulfillment_status: Mapped[FulfillmentStatus] = mapped_column(
        Enum(FulfillmentStatus), default=FulfillmentStatus.pending, nullable=False
    )
    provider_status: Mapped[dict | None] = mapped_column(JSON)
    failure_reason: Mapped[str | None] = mapped_column(Text)
    fulfillment_error: Mapped[str | None] = mapped_column(Text)
    fulfillment_receipt: Mapped[dict | None] = mapped_column(JSON)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    fulfilled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
