from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class ServiceRequestStatus(str, Enum):
    REQUEST_CREATED = "REQUEST_CREATED"
    LEAD_ASSIGNED = "LEAD_ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    APPROVED = "APPROVED"
    CLOSED = "CLOSED"
    CANCELLED_BY_CUSTOMER = "CANCELLED_BY_CUSTOMER"


REASSIGNABLE_REQUEST_STATUSES = {
    ServiceRequestStatus.REQUEST_CREATED.value,
    ServiceRequestStatus.LEAD_ASSIGNED.value,
}


class LeadStatus(str, Enum):
    SUBMITTED = "submitted"
    ROUTED = "routed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


OPEN_LEAD_STATUSES = {LeadStatus.SUBMITTED.value, LeadStatus.ROUTED.value}


class LeadRejectionReason(str, Enum):
    TOO_FAR = "TOO_FAR"
    TOO_EXPENSIVE = "TOO_EXPENSIVE"
    NOT_RELEVANT = "NOT_RELEVANT"
    OTHER = "OTHER"


class ProposalStatus(str, Enum):
    SENT = "SENT"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class PaymentStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkOrderStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    TRIAL = "TRIAL"


class BillingCycle(str, Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    RETRYING = "retrying"
    FAILED = "failed"


def dollars_to_cents(value: float) -> int:
    return int(round(float(value) * 100))


# ── Requests ─────────────────────────────────────────────────


class ServiceRequestCreate(BaseModel):
    category: str = Field(min_length=1, max_length=100)
    sub_category: Optional[str] = Field(default=None, max_length=100)
    title: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = None
    zip_code: str = Field(min_length=3, max_length=10)
    city: Optional[str] = None
    state: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    radius_miles: Optional[float] = Field(default=None, gt=0, le=500)


class LeadAcceptRequest(BaseModel):
    description: str
    price: float

    @field_validator("description")
    @classmethod
    def _description_not_blank(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("description is required")
        return value

    @field_validator("price")
    @classmethod
    def _price_positive(cls, value: float) -> float:
        if value is None or value <= 0:
            raise ValueError("price must be greater than 0")
        return value


class LeadRejectRequest(BaseModel):
    reason: LeadRejectionReason
    reason_other: Optional[str] = None

    @model_validator(mode="after")
    def _other_requires_text(self):
        if self.reason == LeadRejectionReason.OTHER and not (self.reason_other or "").strip():
            raise ValueError("reason_other is required when reason is OTHER")
        return self


class ProposalRejectRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=32)
    reason_other: Optional[str] = None


class SubscriptionCheckoutRequest(BaseModel):
    plan_id: int = Field(gt=0)


class NotificationPreferenceUpdate(BaseModel):
    email_enabled: Optional[bool] = None
    new_lead_alerts: Optional[bool] = None
    lead_updates: Optional[bool] = None
    proposal_updates: Optional[bool] = None
    work_order_updates: Optional[bool] = None
    review_requests: Optional[bool] = None


# ── Responses ────────────────────────────────────────────────


class ServiceRequestOut(BaseModel):
    id: int
    customer_id: int
    category: str
    sub_category: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    zip_code: str
    city: Optional[str] = None
    state: Optional[str] = None
    status: ServiceRequestStatus
    primary_provider_id: Optional[int] = None
    created_at: Optional[datetime] = None


class LeadOut(BaseModel):
    id: int
    service_request_id: Optional[int] = None
    provider_id: int
    business_id: Optional[int] = None
    category: Optional[str] = None
    zip_code: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    description: Optional[str] = None
    status: LeadStatus
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    lead_cost_cents: Optional[int] = None
    created_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None


class LeadListResponse(BaseModel):
    items: List[LeadOut]


class LeadCheckoutOut(BaseModel):
    lead_id: int
    payment_intent_id: str
    client_secret: Optional[str] = None
    amount_cents: int
    discount_percent: int = 0


class ProposalOut(BaseModel):
    id: int
    service_request_id: int
    provider_id: int
    description: str
    price: float
    status: ProposalStatus
    payment_status: PaymentStatus
    provider_payout_amount: Optional[float] = None
    platform_fee_amount: Optional[float] = None
    payout_status: Optional[PayoutStatus] = None


class ProposalCheckoutOut(BaseModel):
    proposal_id: int
    payment_intent_id: str
    client_secret: Optional[str] = None
    amount_cents: int


class WorkOrderOut(BaseModel):
    id: int
    proposal_id: int
    service_request_id: int
    status: WorkOrderStatus
    completed_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None


class AssignmentOut(BaseModel):
    service_request_id: int
    primary_lead_id: Optional[int] = None
    primary_provider_id: Optional[int] = None
    alternative_provider_ids: List[int] = Field(default_factory=list)
    no_provider_available: bool = False


class FallbackOut(BaseModel):
    service_request_id: int
    promoted_lead_id: Optional[int] = None
    promoted_provider_id: Optional[int] = None


class NotificationAuditOut(BaseModel):
    id: int
    user_id: Optional[int] = None
    notification_type: str
    recipient_email: str
    subject: Optional[str] = None
    status: NotificationStatus
    retry_count: int
    max_retries: int
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None


class NotificationAuditListResponse(BaseModel):
    items: List[NotificationAuditOut]


class NotificationPreferenceOut(BaseModel):
    email_enabled: bool
    new_lead_alerts: bool
    lead_updates: bool
    proposal_updates: bool
    work_order_updates: bool
    review_requests: bool


class TaskRunOut(BaseModel):
    task: str
    result: Dict[str, Any]


class SubscriptionPlanOut(BaseModel):
    id: int
    name: str
    tier: str
    billing_cycle: BillingCycle
    price: float
    lead_discount_percent: int
    priority_boost_points: int
    is_featured: bool
    max_leads_per_month: Optional[int] = None


class SubscriptionPlanListResponse(BaseModel):
    items: List[SubscriptionPlanOut]


class SubscriptionCheckoutOut(BaseModel):
    plan_id: int
    payment_intent_id: str
    client_secret: Optional[str] = None
    amount_cents: int


class MonthlyUsageOut(BaseModel):
    leads_accepted: int
    max_leads_per_month: Optional[int] = None
    is_unlimited: bool


class SubscriptionOut(BaseModel):
    id: Optional[int] = None
    status: Optional[SubscriptionStatus] = None
    plan: Optional[SubscriptionPlanOut] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    usage: MonthlyUsageOut
