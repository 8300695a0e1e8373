from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from app.models.entitlements import PlanType
from app.models.payments import (
    FulfillmentStatus,
    PaymentProviderType,
    PendingPayment,
    PendingPaymentStatus,
)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PaymentInitiate(CamelModel):
    owner_id: str = Field(min_length=1, max_length=64)
    amount: Decimal = Field(gt=0)
    currency: str = Field(default="KES", min_length=3, max_length=3)
    metadata: dict = Field(default_factory=dict)
    phone_number: str | None = Field(default=None, max_length=20)
    email: str | None = Field(default=None, max_length=255)
    first_name: str | None = Field(default=None, max_length=80)
    last_name: str | None = Field(default=None, max_length=80)
    description: str | None = Field(default=None, max_length=120)
    callback_url: str | None = Field(default=None, max_length=500)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()

    @field_validator("metadata")
    @classmethod
    def require_type(cls, v: dict) -> dict:
        if not v.get("type"):
            raise ValueError("metadata.type is required")
        return v


class PaymentInitiateRead(CamelModel):
    order_id: str
    provider: PaymentProviderType
    status: PendingPaymentStatus
    provider_tracking_id: str | None = None
    client_action: dict | None = None
    message: str | None = None


class PendingPaymentRead(CamelModel):
    order_id: str
    provider: PaymentProviderType
    provider_tracking_id: str | None = None
    amount: Decimal
    currency: str
    metadata: dict = Field(default_factory=dict)
    status: PendingPaymentStatus
    fulfillment_status: FulfillmentStatus
    failure_reason: str | None = None
    fulfillment_error: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None
    fulfilled_at: datetime | None = None

    @classmethod
    def from_payment(cls, payment: PendingPayment) -> "PendingPaymentRead":
        return cls(
            order_id=payment.order_id,
            provider=payment.provider,
            provider_tracking_id=payment.provider_tracking_id,
            amount=payment.amount,
            currency=payment.currency,
            metadata=dict(payment.metadata_ or {}),
            status=payment.status,
            fulfillment_status=payment.fulfillment_status,
            failure_reason=payment.failure_reason,
            fulfillment_error=payment.fulfillment_error,
            created_at=payment.created_at,
            completed_at=payment.completed_at,
            fulfilled_at=payment.fulfilled_at,
        )


class PaymentStatusRead(CamelModel):
    order_id: str
    provider: PaymentProviderType
    status: PendingPaymentStatus
    fulfillment_status: FulfillmentStatus
    provider_tracking_id: str | None = None
    amount: Decimal
    currency: str
    provider_facts: dict = Field(default_factory=dict)
    failure_reason: str | None = None

    @classmethod
    def from_payment(cls, payment: PendingPayment) -> "PaymentStatusRead":
        return cls(
            order_id=payment.order_id,
            provider=payment.provider,
            status=payment.status,
            fulfillment_status=payment.fulfillment_status,
            provider_tracking_id=payment.provider_tracking_id,
            amount=payment.amount,
            currency=payment.currency,
            provider_facts=dict(payment.provider_status or {}),
            failure_reason=payment.failure_reason,
        )


class ReconciliationActionRequest(CamelModel):
    order_id: str = Field(min_length=1, max_length=64)
    action: str = Field(min_length=1, max_length=40)


class ReconciliationActionRead(CamelModel):
    success: bool = True
    message: str
    data: PendingPaymentRead


class ReconciliationCounts(CamelModel):
    pending_fulfillment_count: int
    recently_fulfilled_count: int
    failed_count: int


class ReconciliationSummaryRead(CamelModel):
    pending_fulfillment: list[PendingPaymentRead] = Field(default_factory=list)
    recently_fulfilled: list[PendingPaymentRead] = Field(default_factory=list)
    failed_payments: list[PendingPaymentRead] = Field(default_factory=list)
    summary: ReconciliationCounts


# Entitlement metadata, narrowed at the fulfillment boundary.


def _normalize_plan(value):
    if value is None or value == "":
        return PlanType.monthly
    if isinstance(value, PlanType):
        return value
    return str(value).strip().lower()


class _EntitlementMeta(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    agent_id: str | None = Field(default=None, alias="agentId")
    user_id: str | None = Field(default=None, alias="userId")


class _SubscriptionMeta(_EntitlementMeta):
    plan_type: PlanType = Field(default=PlanType.monthly, alias="planType")

    @field_validator("plan_type", mode="before")
    @classmethod
    def normalize_plan(cls, v):
        return _normalize_plan(v)


class AgentSubscriptionMeta(_SubscriptionMeta):
    type: Literal["agent_subscription"]

    @model_validator(mode="after")
    def require_owner(self):
        if not (self.agent_id or self.user_id):
            raise ValueError("agentId is required")
        return self

    @property
    def owner_id(self) -> str:
        return self.agent_id or self.user_id


class UserSubscriptionMeta(_SubscriptionMeta):
    type: Literal["user_subscription"]

    @model_validator(mode="after")
    def require_owner(self):
        if not (self.user_id or self.agent_id):
            raise ValueError("userId is required")
        return self

    @property
    def owner_id(self) -> str:
        return self.user_id or self.agent_id


class CreditPurchaseMeta(_EntitlementMeta):
    type: Literal["credit_purchase"]
    credits: int = Field(gt=0)

    @model_validator(mode="after")
    def require_owner(self):
        if not (self.agent_id or self.user_id):
            raise ValueError("agentId is required")
        return self

    @property
    def owner_id(self) -> str:
        return self.agent_id or self.user_id


EntitlementMeta = Annotated[
    Union[AgentSubscriptionMeta, UserSubscriptionMeta, CreditPurchaseMeta],
    Field(discriminator="type"),
]

entitlement_meta_adapter: TypeAdapter[EntitlementMeta] = TypeAdapter(EntitlementMeta)
