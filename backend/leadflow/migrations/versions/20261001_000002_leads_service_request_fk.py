"""leads service_request_id foreign key

Revision ID: 20261001_000002
Revises: 20261001_000001
Create Date: 2026-10-01 12:00:00

Promotes metadata.serviceRequestId to a typed column. Rows whose metadata
points at a missing request, or whose backfill would break the
one-accepted-lead or one-lead-per-provider rules, keep a NULL column and
stay reachable through the metadata fallback.
"""

import json
import logging

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261001_000002"
down_revision = "20261001_000001"
branch_labels = None
depends_on = None

logger = logging.getLogger("alembic.runtime.migration")


def _metadata_request_id(raw):
    if raw is None:
        return None
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return None
    if not isinstance(raw, dict):
        return None
    value = raw.get("serviceRequestId")
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _backfill_service_request_ids(conn) -> None:
    request_ids = {row[0] for row in conn.execute(sa.text("SELECT id FROM service_requests"))}
    rows = conn.execute(sa.text("SELECT id, provider_id, status, metadata FROM leads ORDER BY id")).fetchall()

    seen_pairs = set()
    accepted_requests = set()
    skipped = 0
    for lead_id, provider_id, status, raw_metadata in rows:
        sr_id = _metadata_request_id(raw_metadata)
        if sr_id is None or sr_id not in request_ids:
            continue
        pair = (sr_id, provider_id)
        if pair in seen_pairs or (status == "accepted" and sr_id in accepted_requests):
            skipped += 1
            logger.warning("Lead %s left unlinked: backfill would violate lead uniqueness", lead_id)
            continue
        seen_pairs.add(pair)
        if status == "accepted":
            accepted_requests.add(sr_id)
        conn.execute(
            sa.text("UPDATE leads SET service_request_id = :sr_id WHERE id = :lead_id"),
            {"sr_id": sr_id, "lead_id": lead_id},
        )

    if skipped:
        logger.warning("Skipped %s leads during service_request_id backfill", skipped)


def upgrade() -> None:
    with op.batch_alter_table("leads") as batch_op:
        batch_op.add_column(sa.Column("service_request_id", sa.Integer(), nullable=True))
        batch_op.create_foreign_key(
            "fk_leads_service_request_id",
            "service_requests",
            ["service_request_id"],
            ["id"],
            ondelete="CASCADE",
        )
        batch_op.create_index("ix_leads_service_request_id", ["service_request_id"])

    conn = op.get_bind()
    _backfill_service_request_ids(conn)

    with op.batch_alter_table("leads") as batch_op:
        batch_op.create_unique_constraint("uniq_leads_request_provider", ["service_request_id", "provider_id"])

    op.create_index(
        "uniq_leads_one_accepted_per_request",
        "leads",
        ["service_request_id"],
        unique=True,
        postgresql_where=sa.text("status = 'accepted'"),
        sqlite_where=sa.text("status = 'accepted'"),
    )


def downgrade() -> None:
    op.drop_index("uniq_leads_one_accepted_per_request", table_name="leads")
    with op.batch_alter_table("leads") as batch_op:
        batch_op.drop_constraint("uniq_leads_request_provider", type_="unique")
        batch_op.drop_index("ix_leads_service_request_id")
        batch_op.drop_constraint("fk_leads_service_request_id", type_="foreignkey")
        batch_op.drop_column("service_request_id")
