from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

from leadflow.utils.clock import now_utc

Base = declarative_base()

JSON_TYPE = JSON().with_variant(JSONB, "postgresql")


def _created_at():
    return Column(DateTime(timezone=True), default=now_utc, server_default=func.now(), nullable=False)


def _updated_at():
    return Column(
        DateTime(timezone=True),
        default=now_utc,
        onupdate=now_utc,
        server_default=func.now(),
        nullable=False,
    )


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), nullable=False, unique=True)
    name = Column(String(200))
    phone = Column(String(32))
    role = Column(String(32), nullable=False, default="CUSTOMER", server_default=text("'CUSTOMER'"))
    is_active = Column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at = _created_at()


class Business(Base):
    __tablename__ = "businesses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, ForeignKey("users.id"), index=True)
    name = Column(String(200), nullable=False)
    category = Column(String(100), nullable=False, index=True)
    sub_category = Column(String(100))
    address = Column(String(255))
    city = Column(String(100))
    state = Column(String(50))
    zip_code = Column(String(10), index=True)
    latitude = Column(Float)
    longitude = Column(Float)
    geocoded_at = Column(DateTime(timezone=True))
    geocode_failed_at = Column(DateTime(timezone=True))
    rating = Column(Float, nullable=False, default=0.0, server_default=text("0"))
    rating_count = Column(Integer, nullable=False, default=0, server_default=text("0"))
    is_active = Column(Boolean, nullable=False, default=True, server_default=text("true"))
    is_featured = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    stripe_account_id = Column(String(64))
    created_at = _created_at()


class ServiceRequest(Base):
    __tablename__ = "service_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    category = Column(String(100), nullable=False)
    sub_category = Column(String(100))
    title = Column(String(200))
    description = Column(Text)
    zip_code = Column(String(10), nullable=False)
    city = Column(String(100))
    state = Column(String(50))
    latitude = Column(Float)
    longitude = Column(Float)
    radius_miles = Column(Float)
    status = Column(
        String(32),
        nullable=False,
        default="REQUEST_CREATED",
        server_default=text("'REQUEST_CREATED'"),
    )
    primary_provider_id = Column(Integer, ForeignKey("users.id"))
    row_version = Column(Integer, nullable=False, default=1, server_default=text("1"))
    created_at = _created_at()
    updated_at = _updated_at()

    __table_args__ = (Index("idx_service_requests_status", "status"),)


class Lead(Base):
    __tablename__ = "leads"

    id = Column(Integer, primary_key=True, autoincrement=True)
    # NULL only for rows written before the column existed; see lead_lifecycle.find_leads_for_request.
    service_request_id = Column(Integer, ForeignKey("service_requests.id", ondelete="CASCADE"), index=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    provider_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    business_id = Column(Integer, ForeignKey("businesses.id"))
    category = Column(String(100))
    zip_code = Column(String(10))
    city = Column(String(100))
    state = Column(String(50))
    description = Column(Text)
    status = Column(String(16), nullable=False, default="submitted", server_default=text("'submitted'"))
    customer_name = Column(String(200))
    customer_email = Column(String(255))
    customer_phone = Column(String(32))
    lead_metadata = Column("metadata", JSON_TYPE)
    stripe_payment_intent_id = Column(String(64))
    lead_cost_cents = Column(Integer)
    rejection_reason = Column(String(32))
    rejection_reason_other = Column(Text)
    routed_at = Column(DateTime(timezone=True))
    accepted_at = Column(DateTime(timezone=True))
    rejected_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))
    created_at = _created_at()
    updated_at = _updated_at()

    __table_args__ = (
        CheckConstraint(
            "status IN ('submitted','routed','accepted','rejected','cancelled')",
            name="chk_leads_status",
        ),
        UniqueConstraint("service_request_id", "provider_id", name="uniq_leads_request_provider"),
        Index(
            "uniq_leads_one_accepted_per_request",
            "service_request_id",
            unique=True,
            sqlite_where=text("status = 'accepted'"),
            postgresql_where=text("status = 'accepted'"),
        ),
        Index("idx_leads_status_created", "status", "created_at"),
    )


class AlternativeSelection(Base):
    __tablename__ = "alternative_selections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    service_request_id = Column(
        Integer,
        ForeignKey("service_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    business_id = Column(Integer, ForeignKey("businesses.id"), nullable=False)
    position = Column(Integer, nullable=False)
    created_at = _created_at()

    __table_args__ = (
        CheckConstraint("position BETWEEN 1 AND 3", name="chk_alternative_position"),
        UniqueConstraint("service_request_id", "position", name="uniq_alternative_request_position"),
    )


class Proposal(Base):
    __tablename__ = "proposals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    service_request_id = Column(Integer, ForeignKey("service_requests.id"), nullable=False, index=True)
    lead_id = Column(Integer, ForeignKey("leads.id", ondelete="SET NULL"))
    provider_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    business_id = Column(Integer, ForeignKey("businesses.id"))
    correlation_id = Column(String(64), unique=True)
    description = Column(Text, nullable=False)
    price_cents = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, default="SENT", server_default=text("'SENT'"))
    payment_status = Column(String(16), nullable=False, default="none", server_default=text("'none'"))
    stripe_payment_intent_id = Column(String(64))
    provider_payout_cents = Column(Integer)
    platform_fee_cents = Column(Integer)
    payout_status = Column(String(16))
    payout_method = Column(String(16))
    payout_processed_at = Column(DateTime(timezone=True))
    payout_error = Column(Text)
    stripe_transfer_id = Column(String(64))
    rejection_reason = Column(String(32))
    rejection_reason_other = Column(Text)
    accepted_at = Column(DateTime(timezone=True))
    rejected_at = Column(DateTime(timezone=True))
    created_at = _created_at()
    updated_at = _updated_at()

    __table_args__ = (
        CheckConstraint("price_cents > 0", name="chk_proposals_price_positive"),
        CheckConstraint("status IN ('SENT','ACCEPTED','REJECTED')", name="chk_proposals_status"),
    )


class WorkOrder(Base):
    __tablename__ = "work_orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    proposal_id = Column(Integer, ForeignKey("proposals.id"), nullable=False, unique=True)
    service_request_id = Column(Integer, ForeignKey("service_requests.id"), nullable=False, index=True)
    provider_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    status = Column(String(16), nullable=False, default="IN_PROGRESS", server_default=text("'IN_PROGRESS'"))
    completed_at = Column(DateTime(timezone=True))
    approved_at = Column(DateTime(timezone=True))
    created_at = _created_at()
    updated_at = _updated_at()


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    tier = Column(String(16), nullable=False)
    billing_cycle = Column(String(16), nullable=False, default="MONTHLY", server_default=text("'MONTHLY'"))
    price_cents = Column(Integer, nullable=False)
    lead_discount_percent = Column(Integer, nullable=False, default=0, server_default=text("0"))
    priority_boost_points = Column(Integer, nullable=False, default=0, server_default=text("0"))
    is_featured = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    max_leads_per_month = Column(Integer)
    is_active = Column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at = _created_at()


class UserSubscription(Base):
    __tablename__ = "user_subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False)
    status = Column(String(16), nullable=False, default="ACTIVE", server_default=text("'ACTIVE'"))
    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False)
    cancelled_at = Column(DateTime(timezone=True))
    last_payment_intent_id = Column(String(64))
    created_at = _created_at()
    updated_at = _updated_at()


class NotificationPreference(Base):
    __tablename__ = "notification_preferences"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    email_enabled = Column(Boolean, nullable=False, default=True, server_default=text("true"))
    new_lead_alerts = Column(Boolean, nullable=False, default=True, server_default=text("true"))
    lead_updates = Column(Boolean, nullable=False, default=True, server_default=text("true"))
    proposal_updates = Column(Boolean, nullable=False, default=True, server_default=text("true"))
    work_order_updates = Column(Boolean, nullable=False, default=True, server_default=text("true"))
    review_requests = Column(Boolean, nullable=False, default=True, server_default=text("true"))
    unsubscribe_token = Column(String(64), nullable=False, unique=True)
    created_at = _created_at()
    updated_at = _updated_at()


class NotificationAudit(Base):
    __tablename__ = "notification_audits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"))
    notification_type = Column(String(64), nullable=False)
    recipient_email = Column(String(255), nullable=False)
    subject = Column(String(255))
    template_data = Column(JSON_TYPE)
    status = Column(String(16), nullable=False, default="pending", server_default=text("'pending'"))
    retry_count = Column(Integer, nullable=False, default=0, server_default=text("0"))
    max_retries = Column(Integer, nullable=False, default=3, server_default=text("3"))
    error_message = Column(Text)
    sent_at = Column(DateTime(timezone=True))
    created_at = _created_at()
    updated_at = _updated_at()

    __table_args__ = (Index("idx_notification_audits_status", "status", "created_at"),)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(64), nullable=False)
    action = Column(String(64), nullable=False)
    old_value = Column(JSON_TYPE)
    new_value = Column(JSON_TYPE)
    actor_type = Column(String(32), nullable=False)
    actor_id = Column(String(64))
    ip_address = Column(String(45))
    user_agent = Column(Text)
    audit_meta = Column("metadata", JSON_TYPE)
    timestamp = _created_at()

    __table_args__ = (Index("idx_audit_logs_entity", "entity_type", "entity_id", "timestamp"),)
