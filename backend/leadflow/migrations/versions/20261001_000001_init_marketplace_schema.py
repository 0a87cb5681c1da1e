"""init marketplace schema

Revision ID: 20261001_000001
Revises:
Create Date: 2026-10-01 09:00:00

Leads reference their service request only through metadata.serviceRequestId
at this revision; 20261001_000002 adds the typed foreign key.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261001_000001"
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def _timestamps(updated: bool = True) -> list:
    cols = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False)]
    if updated:
        cols.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False)
        )
    return cols


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("name", sa.String(length=200)),
        sa.Column("phone", sa.String(length=32)),
        sa.Column("role", sa.String(length=32), nullable=False, server_default=sa.text("'CUSTOMER'")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(updated=False),
    )

    op.create_table(
        "businesses",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("owner_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("sub_category", sa.String(length=100)),
        sa.Column("address", sa.String(length=255)),
        sa.Column("city", sa.String(length=100)),
        sa.Column("state", sa.String(length=50)),
        sa.Column("zip_code", sa.String(length=10)),
        sa.Column("latitude", sa.Float()),
        sa.Column("longitude", sa.Float()),
        sa.Column("geocoded_at", sa.DateTime(timezone=True)),
        sa.Column("geocode_failed_at", sa.DateTime(timezone=True)),
        sa.Column("rating", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("rating_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("is_featured", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("stripe_account_id", sa.String(length=64)),
        *_timestamps(updated=False),
    )
    op.create_index("ix_businesses_owner_id", "businesses", ["owner_id"])
    op.create_index("ix_businesses_category", "businesses", ["category"])
    op.create_index("ix_businesses_zip_code", "businesses", ["zip_code"])

    op.create_table(
        "service_requests",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("sub_category", sa.String(length=100)),
        sa.Column("title", sa.String(length=200)),
        sa.Column("description", sa.Text()),
        sa.Column("zip_code", sa.String(length=10), nullable=False),
        sa.Column("city", sa.String(length=100)),
        sa.Column("state", sa.String(length=50)),
        sa.Column("latitude", sa.Float()),
        sa.Column("longitude", sa.Float()),
        sa.Column("radius_miles", sa.Float()),
        sa.Column("status", sa.String(length=32), nullable=False, server_default=sa.text("'REQUEST_CREATED'")),
        sa.Column("primary_provider_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
    )
    op.create_index("ix_service_requests_customer_id", "service_requests", ["customer_id"])
    op.create_index("idx_service_requests_status", "service_requests", ["status"])

    op.create_table(
        "leads",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("provider_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("business_id", sa.Integer(), sa.ForeignKey("businesses.id")),
        sa.Column("category", sa.String(length=100)),
        sa.Column("zip_code", sa.String(length=10)),
        sa.Column("city", sa.String(length=100)),
        sa.Column("state", sa.String(length=50)),
        sa.Column("description", sa.Text()),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'submitted'")),
        sa.Column("customer_name", sa.String(length=200)),
        sa.Column("customer_email", sa.String(length=255)),
        sa.Column("customer_phone", sa.String(length=32)),
        sa.Column("metadata", JSON_TYPE),
        sa.Column("stripe_payment_intent_id", sa.String(length=64)),
        sa.Column("lead_cost_cents", sa.Integer()),
        sa.Column("rejection_reason", sa.String(length=32)),
        sa.Column("rejection_reason_other", sa.Text()),
        sa.Column("routed_at", sa.DateTime(timezone=True)),
        sa.Column("accepted_at", sa.DateTime(timezone=True)),
        sa.Column("rejected_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('submitted','routed','accepted','rejected','cancelled')",
            name="chk_leads_status",
        ),
    )
    op.create_index("ix_leads_provider_id", "leads", ["provider_id"])
    op.create_index("idx_leads_status_created", "leads", ["status", "created_at"])

    op.create_table(
        "alternative_selections",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "service_request_id",
            sa.Integer(),
            sa.ForeignKey("service_requests.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("provider_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("business_id", sa.Integer(), sa.ForeignKey("businesses.id"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        *_timestamps(updated=False),
        sa.CheckConstraint("position BETWEEN 1 AND 3", name="chk_alternative_position"),
        sa.UniqueConstraint("service_request_id", "position", name="uniq_alternative_request_position"),
    )
    op.create_index(
        "ix_alternative_selections_service_request_id",
        "alternative_selections",
        ["service_request_id"],
    )

    op.create_table(
        "proposals",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("service_request_id", sa.Integer(), sa.ForeignKey("service_requests.id"), nullable=False),
        sa.Column("lead_id", sa.Integer(), sa.ForeignKey("leads.id", ondelete="SET NULL")),
        sa.Column("provider_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("business_id", sa.Integer(), sa.ForeignKey("businesses.id")),
        sa.Column("correlation_id", sa.String(length=64), unique=True),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'SENT'")),
        sa.Column("payment_status", sa.String(length=16), nullable=False, server_default=sa.text("'none'")),
        sa.Column("stripe_payment_intent_id", sa.String(length=64)),
        sa.Column("provider_payout_cents", sa.Integer()),
        sa.Column("platform_fee_cents", sa.Integer()),
        sa.Column("payout_status", sa.String(length=16)),
        sa.Column("payout_method", sa.String(length=16)),
        sa.Column("payout_processed_at", sa.DateTime(timezone=True)),
        sa.Column("payout_error", sa.Text()),
        sa.Column("stripe_transfer_id", sa.String(length=64)),
        sa.Column("rejection_reason", sa.String(length=32)),
        sa.Column("rejection_reason_other", sa.Text()),
        sa.Column("accepted_at", sa.DateTime(timezone=True)),
        sa.Column("rejected_at", sa.DateTime(timezone=True)),
        *_timestamps(),
        sa.CheckConstraint("price_cents > 0", name="chk_proposals_price_positive"),
        sa.CheckConstraint("status IN ('SENT','ACCEPTED','REJECTED')", name="chk_proposals_status"),
    )
    op.create_index("ix_proposals_service_request_id", "proposals", ["service_request_id"])

    op.create_table(
        "work_orders",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("proposal_id", sa.Integer(), sa.ForeignKey("proposals.id"), nullable=False, unique=True),
        sa.Column("service_request_id", sa.Integer(), sa.ForeignKey("service_requests.id"), nullable=False),
        sa.Column("provider_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'IN_PROGRESS'")),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("approved_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index("ix_work_orders_service_request_id", "work_orders", ["service_request_id"])

    op.create_table(
        "subscription_plans",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("tier", sa.String(length=16), nullable=False),
        sa.Column("billing_cycle", sa.String(length=16), nullable=False, server_default=sa.text("'MONTHLY'")),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("lead_discount_percent", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("priority_boost_points", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_featured", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("max_leads_per_month", sa.Integer()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(updated=False),
    )

    op.create_table(
        "user_subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False, unique=True),
        sa.Column("plan_id", sa.Integer(), sa.ForeignKey("subscription_plans.id"), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'ACTIVE'")),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("last_payment_intent_id", sa.String(length=64)),
        *_timestamps(),
    )

    op.create_table(
        "notification_preferences",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False, unique=True),
        sa.Column("email_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("new_lead_alerts", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("lead_updates", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("proposal_updates", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("work_order_updates", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("review_requests", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("unsubscribe_token", sa.String(length=64), nullable=False, unique=True),
        *_timestamps(),
    )

    op.create_table(
        "notification_audits",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("notification_type", sa.String(length=64), nullable=False),
        sa.Column("recipient_email", sa.String(length=255), nullable=False),
        sa.Column("subject", sa.String(length=255)),
        sa.Column("template_data", JSON_TYPE),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("error_message", sa.Text()),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index("idx_notification_audits_status", "notification_audits", ["status", "created_at"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("old_value", JSON_TYPE),
        sa.Column("new_value", JSON_TYPE),
        sa.Column("actor_type", sa.String(length=32), nullable=False),
        sa.Column("actor_id", sa.String(length=64)),
        sa.Column("ip_address", sa.String(length=45)),
        sa.Column("user_agent", sa.Text()),
        sa.Column("metadata", JSON_TYPE),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index("idx_audit_logs_entity", "audit_logs", ["entity_type", "entity_id", "timestamp"])


def downgrade() -> None:
    op.drop_index("idx_audit_logs_entity", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("idx_notification_audits_status", table_name="notification_audits")
    op.drop_table("notification_audits")
    op.drop_table("notification_preferences")
    op.drop_table("user_subscriptions")
    op.drop_table("subscription_plans")
    op.drop_index("ix_work_orders_service_request_id", table_name="work_orders")
    op.drop_table("work_orders")
    op.drop_index("ix_proposals_service_request_id", table_name="proposals")
    op.drop_table("proposals")
    op.drop_index("ix_alternative_selections_service_request_id", table_name="alternative_selections")
    op.drop_table("alternative_selections")
    op.drop_index("idx_leads_status_created", table_name="leads")
    op.drop_index("ix_leads_provider_id", table_name="leads")
    op.drop_table("leads")
    op.drop_index("idx_service_requests_status", table_name="service_requests")
    op.drop_index("ix_service_requests_customer_id", table_name="service_requests")
    op.drop_table("service_requests")
    op.drop_index("ix_businesses_zip_code", table_name="businesses")
    op.drop_index("ix_businesses_category", table_name="businesses")
    op.drop_index("ix_businesses_owner_id", table_name="businesses")
    op.drop_table("businesses")
    op.drop_table("users")
