from __future__ import annotations

import logging

import pytest
from sqlalchemy import select

from leadflow.core.config import get_settings
from leadflow.utils.alerting import AuditAlertTracker


@pytest.mark.asyncio
async def test_audit_log_redacts_contact_details(session_factory):
    from leadflow.models.marketplace import AuditLog
    from leadflow.services.audit import create_audit_log

    async with session_factory() as db:
        create_audit_log(
            db,
            entity_type="lead",
            entity_id=7,
            action="LEAD_ACCEPTED",
            old_value={"status": "submitted"},
            new_value={"status": "accepted", "contact": {"customer_phone": "+14155550100"}},
            actor_type="SYSTEM",
            metadata={"email": "casey@example.com", "items": [{"Phone": "555"}]},
        )
        await db.commit()
        row = (await db.execute(select(AuditLog))).scalar_one()

    assert row.entity_id == "7"
    assert row.new_value == {"status": "accepted", "contact": {"customer_phone": "[REDACTED]"}}
    assert row.audit_meta == {"email": "[REDACTED]", "items": [{"Phone": "[REDACTED]"}]}


@pytest.mark.asyncio
async def test_redaction_can_be_switched_off(session_factory, monkeypatch):
    from leadflow.models.marketplace import AuditLog
    from leadflow.services.audit import create_audit_log

    monkeypatch.setenv("PII_REDACTION_ENABLED", "false")
    get_settings.cache_clear()

    async with session_factory() as db:
        create_audit_log(
            db,
            entity_type="user",
            entity_id=1,
            action="USER_UPDATED",
            old_value=None,
            new_value={"email": "casey@example.com"},
            actor_type="ADMIN",
        )
        await db.commit()
        row = (await db.execute(select(AuditLog))).scalar_one()

    assert row.new_value == {"email": "casey@example.com"}


def test_alert_fires_at_threshold_multiples(monkeypatch, caplog):
    tracker = AuditAlertTracker(60, {"PAYOUT_FAILED": 2})
    monkeypatch.setattr("leadflow.utils.alerting.time.monotonic", lambda: 100.0)

    with caplog.at_level(logging.WARNING, logger="leadflow.utils.alerting"):
        fired = [tracker.record("PAYOUT_FAILED", {"proposal_id": i}) for i in range(4)]

    assert fired == [False, True, False, True]
    assert "ALERT audit_action=PAYOUT_FAILED count=2" in caplog.text
    assert tracker.record("LEAD_ACCEPTED") is False


def test_alert_window_expires(monkeypatch):
    tracker = AuditAlertTracker(60, {"LEAD_PAYMENT_ORPHANED": 2})
    t = {"now": 0.0}
    monkeypatch.setattr("leadflow.utils.alerting.time.monotonic", lambda: t["now"])

    assert tracker.record("LEAD_PAYMENT_ORPHANED") is False
    t["now"] = 61.0
    assert tracker.record("LEAD_PAYMENT_ORPHANED") is False
