from __future__ import annotations

import pytest

from leadflow.services.email_templates import (
    NotificationType,
    build_email_payload,
    coerce_notification_type,
    render_notification,
)


@pytest.mark.parametrize("notification_type", list(NotificationType))
def test_every_type_renders_with_empty_data(notification_type):
    rendered = render_notification(notification_type, {})
    assert rendered.subject
    assert rendered.body_text.endswith("The LeadFlow team")
    assert "<html" in rendered.body_html


def test_new_lead_payload():
    payload = build_email_payload(
        NotificationType.NEW_LEAD,
        to="pro@example.com",
        project_title="Leaky sink",
        category="plumbing",
        city="San Francisco",
        zip_code="94103",
        lead_id=42,
    )
    assert payload["to"] == "pro@example.com"
    assert payload["subject"] == "New lead: Leaky sink"
    assert "Location: San Francisco, 94103" in payload["body_text"]
    assert "/provider/leads/42" in payload["body_text"]


def test_lead_accepted_provider_includes_contact():
    payload = build_email_payload(
        "lead_accepted_provider",
        to="pro@example.com",
        customer_name="Casey",
        customer_email="casey@example.com",
        customer_phone="+14155550100",
    )
    assert "Name: Casey" in payload["body_text"]
    assert "Phone: +14155550100" in payload["body_text"]


def test_proposal_accepted_provider_shows_split():
    payload = build_email_payload(
        NotificationType.PROPOSAL_ACCEPTED_PROVIDER,
        to="pro@example.com",
        price=150,
        provider_payout=135,
        platform_fee=15,
    )
    assert "Price: $150.00" in payload["body_text"]
    assert "Your payout: $135.00" in payload["body_text"]
    assert "Platform fee: $15.00" in payload["body_text"]


def test_user_values_are_escaped_in_html():
    payload = build_email_payload(
        NotificationType.NEW_PROPOSAL,
        to="c@example.com",
        proposal_description="<b>cheap</b>",
    )
    assert "&lt;b&gt;cheap&lt;/b&gt;" in payload["body_html"]
    assert "<b>cheap</b>" not in payload["body_html"]


def test_payment_failed_mentions_reason():
    payload = build_email_payload(
        NotificationType.LEAD_PAYMENT_FAILED,
        to="pro@example.com",
        error_message="Card expired",
    )
    assert "Reason: Card expired" in payload["body_text"]


def test_unknown_type_raises_template_not_found():
    from leadflow.services.errors import TemplateNotFound

    with pytest.raises(TemplateNotFound):
        coerce_notification_type("WEEKLY_DIGEST")
    with pytest.raises(TemplateNotFound):
        build_email_payload("WEEKLY_DIGEST", to="x@example.com")


def test_string_type_is_coerced():
    assert coerce_notification_type("work_completed") is NotificationType.WORK_COMPLETED
