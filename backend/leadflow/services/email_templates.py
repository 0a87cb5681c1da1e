from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from html import escape as html_escape
from typing import Any, Callable, Optional

from leadflow.services.email_html_base import (
    COLOR_DANGER,
    base_url,
    render_branded_email,
    render_cta_button,
    render_info_box,
    render_paragraph,
)
from leadflow.services.errors import TemplateNotFound


class NotificationType(str, Enum):
    REQUEST_CREATED = "request_created"
    NEW_LEAD = "new_lead"
    LEAD_ACCEPTED_CUSTOMER = "lead_accepted_customer"
    LEAD_ACCEPTED_PROVIDER = "lead_accepted_provider"
    LEAD_PAYMENT_FAILED = "lead_payment_failed"
    LEAD_MOVED_TO_ALTERNATIVE = "lead_moved_to_alternative"
    NO_PROVIDER_AVAILABLE = "no_provider_available"
    NEW_PROPOSAL = "new_proposal"
    PROPOSAL_ACCEPTED_CUSTOMER = "proposal_accepted_customer"
    PROPOSAL_ACCEPTED_PROVIDER = "proposal_accepted_provider"
    PROPOSAL_PAYMENT_FAILED = "proposal_payment_failed"
    WORK_COMPLETED = "work_completed"
    REVIEW_REQUEST = "review_request"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_PAYMENT_FAILED = "subscription_payment_failed"


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    body_text: str
    body_html: str


@dataclass(frozen=True)
class _Section:
    title: str
    subject: str
    paragraphs: tuple[str, ...]
    details: tuple[tuple[str, str], ...] = ()
    cta: Optional[tuple[str, str]] = None
    cta_color: Optional[str] = None


def _s(data: dict[str, Any], key: str, default: str = "") -> str:
    value = data.get(key)
    if value is None:
        return default
    return str(value).strip() or default


def _money(value: Any) -> str:
    try:
        return f"${float(value):,.2f}"
    except (TypeError, ValueError):
        return "$0.00"


def _title(data: dict[str, Any]) -> str:
    return _s(data, "project_title", "your service request")


def _compose(section: _Section, *, unsubscribe_url: str = "") -> RenderedEmail:
    text_lines = list(section.paragraphs)
    if section.details:
        text_lines.append("\n".join(f"  {label}: {value}" for label, value in section.details))
    if section.cta:
        text_lines.append(f"{section.cta[1]}: {section.cta[0]}")
    text_lines.append("The LeadFlow team")

    html_parts = [render_paragraph(html_escape(p)) for p in section.paragraphs]
    if section.details:
        rows = "<br/>".join(
            f"<strong>{html_escape(label)}:</strong> {html_escape(value)}" for label, value in section.details
        )
        html_parts.append(render_info_box(rows))
    if section.cta:
        url, label = section.cta
        if section.cta_color:
            html_parts.append(render_cta_button(url=url, label=label, color=section.cta_color))
        else:
            html_parts.append(render_cta_button(url=url, label=label))

    return RenderedEmail(
        subject=section.subject,
        body_text="\n\n".join(text_lines),
        body_html=render_branded_email(
            title=section.title,
            body_content="".join(html_parts),
            preheader=section.paragraphs[0] if section.paragraphs else "",
            unsubscribe_url=unsubscribe_url,
        ),
    )


def _request_created(data: dict[str, Any]) -> _Section:
    return _Section(
        title="Request received",
        subject=f"We received your request: {_title(data)}",
        paragraphs=(
            f"Hi {_s(data, 'customer_name', 'there')},",
            "Thanks for your request. We are matching you with local providers now.",
        ),
        details=(("Category", _s(data, "category")), ("Zip code", _s(data, "zip_code"))),
        cta=(f"{base_url()}/requests/{_s(data, 'service_request_id')}", "View request"),
    )


def _new_lead(data: dict[str, Any]) -> _Section:
    return _Section(
        title="New lead",
        subject=f"New lead: {_title(data)}",
        paragraphs=(
            f"Hi {_s(data, 'provider_name', 'there')},",
            "A customer near you is looking for help. Accept the lead to see their contact details.",
        ),
        details=(
            ("Category", _s(data, "category")),
            ("Location", ", ".join(p for p in (_s(data, "city"), _s(data, "zip_code")) if p)),
            ("Details", _s(data, "description", "-")),
        ),
        cta=(f"{base_url()}/provider/leads/{_s(data, 'lead_id')}", "View lead"),
    )


def _lead_accepted_customer(data: dict[str, Any]) -> _Section:
    return _Section(
        title="Provider assigned",
        subject=f"Provider assigned for {_title(data)}",
        paragraphs=(
            f"Hi {_s(data, 'customer_name', 'there')},",
            f"{_s(data, 'business_name', 'A provider')} accepted your request and will be in touch shortly.",
        ),
        cta=(f"{base_url()}/requests/{_s(data, 'service_request_id')}", "View request"),
    )


def _lead_accepted_provider(data: dict[str, Any]) -> _Section:
    return _Section(
        title="Lead confirmed",
        subject=f"Lead confirmed: {_title(data)}",
        paragraphs=(
            f"Hi {_s(data, 'provider_name', 'there')},",
            "Your payment went through and the lead is yours. Here are the customer's details.",
        ),
        details=(
            ("Name", _s(data, "customer_name", "-")),
            ("Email", _s(data, "customer_email", "-")),
            ("Phone", _s(data, "customer_phone", "-")),
        ),
        cta=(f"{base_url()}/provider/leads/{_s(data, 'lead_id')}", "Open lead"),
    )


def _lead_payment_failed(data: dict[str, Any]) -> _Section:
    return _Section(
        title="Payment failed",
        subject="Payment failed: lead acceptance",
        paragraphs=(
            f"Hi {_s(data, 'provider_name', 'there')},",
            "We could not process the payment for this lead. You can retry with another payment method "
            "while the lead is still open.",
        ),
        details=(("Lead", _title(data)), ("Reason", _s(data, "error_message", "Payment declined"))),
        cta=(f"{base_url()}/provider/leads/{_s(data, 'lead_id')}", "Retry payment"),
        cta_color=COLOR_DANGER,
    )


def _lead_moved_to_alternative(data: dict[str, Any]) -> _Section:
    return _Section(
        title="Update on your request",
        subject=f"Update on your request: {_title(data)}",
        paragraphs=(
            f"Hi {_s(data, 'customer_name', 'there')},",
            "The first provider did not take your request, so we passed it to the next best match.",
        ),
        cta=(f"{base_url()}/requests/{_s(data, 'service_request_id')}", "View request"),
    )


def _no_provider_available(data: dict[str, Any]) -> _Section:
    return _Section(
        title="No provider available yet",
        subject=f"No provider available yet for {_title(data)}",
        paragraphs=(
            f"Hi {_s(data, 'customer_name', 'there')},",
            "No provider is available for your request yet. We will keep looking and let you know "
            "as soon as someone can help.",
        ),
        details=(("Category", _s(data, "category")), ("Zip code", _s(data, "zip_code"))),
    )


def _new_proposal(data: dict[str, Any]) -> _Section:
    return _Section(
        title="New proposal",
        subject=f"New proposal from {_s(data, 'business_name', 'your provider')} for {_title(data)}",
        paragraphs=(
            f"Hi {_s(data, 'customer_name', 'there')},",
            "You received a proposal for your request.",
        ),
        details=(("Price", _money(data.get("price"))), ("Details", _s(data, "proposal_description", "-"))),
        cta=(f"{base_url()}/proposals/{_s(data, 'proposal_id')}", "Review proposal"),
    )


def _proposal_accepted_customer(data: dict[str, Any]) -> _Section:
    return _Section(
        title="Work started",
        subject=f"Proposal accepted, work started: {_title(data)}",
        paragraphs=(
            f"Hi {_s(data, 'customer_name', 'there')},",
            "Your payment was received and the work order is now in progress.",
        ),
        details=(("Amount paid", _money(data.get("price"))),),
    )


def _proposal_accepted_provider(data: dict[str, Any]) -> _Section:
    return _Section(
        title="New work order",
        subject=f"Proposal accepted, new work order: {_title(data)}",
        paragraphs=(
            f"Hi {_s(data, 'provider_name', 'there')},",
            "The customer accepted and paid your proposal. You can start the work.",
        ),
        details=(
            ("Price", _money(data.get("price"))),
            ("Your payout", _money(data.get("provider_payout"))),
            ("Platform fee", _money(data.get("platform_fee"))),
        ),
        cta=(f"{base_url()}/provider/work-orders/{_s(data, 'work_order_id')}", "Open work order"),
    )


def _proposal_payment_failed(data: dict[str, Any]) -> _Section:
    return _Section(
        title="Payment failed",
        subject=f"Payment failed for {_title(data)}",
        paragraphs=(
            f"Hi {_s(data, 'customer_name', 'there')},",
            "Your payment for this proposal did not go through. Please try again with another payment method.",
        ),
        details=(("Reason", _s(data, "error_message", "Payment declined")),),
        cta=(f"{base_url()}/proposals/{_s(data, 'proposal_id')}", "Retry payment"),
        cta_color=COLOR_DANGER,
    )


def _work_completed(data: dict[str, Any]) -> _Section:
    return _Section(
        title="Work completed",
        subject=f"Work completed: {_title(data)}",
        paragraphs=(
            f"Hi {_s(data, 'customer_name', 'there')},",
            f"{_s(data, 'business_name', 'Your provider')} marked the work as completed. "
            "Please review and approve it.",
        ),
        cta=(f"{base_url()}/work-orders/{_s(data, 'work_order_id')}", "Approve work"),
    )


def _review_request(data: dict[str, Any]) -> _Section:
    return _Section(
        title="How did it go?",
        subject=f"Please review your completed service: {_title(data)}",
        paragraphs=(
            f"Hi {_s(data, 'customer_name', 'there')},",
            f"Tell others about your experience with {_s(data, 'business_name', 'your provider')}.",
        ),
        cta=(f"{base_url()}/reviews/new?request={_s(data, 'service_request_id')}", "Leave a review"),
    )


def _subscription_activated(data: dict[str, Any]) -> _Section:
    return _Section(
        title="Subscription active",
        subject=f"Your {_s(data, 'plan_name', 'LeadFlow')} subscription is active",
        paragraphs=(
            f"Hi {_s(data, 'user_name', 'there')},",
            "Thanks for subscribing. Your plan benefits apply immediately.",
        ),
        details=(("Plan", _s(data, "plan_name")), ("Renews", _s(data, "period_end"))),
    )


def _subscription_payment_failed(data: dict[str, Any]) -> _Section:
    return _Section(
        title="Subscription payment failed",
        subject="Subscription payment failed",
        paragraphs=(
            f"Hi {_s(data, 'user_name', 'there')},",
            "We could not charge your subscription. Update your payment method to keep your benefits.",
        ),
        details=(("Reason", _s(data, "error_message", "Payment declined")),),
        cta=(f"{base_url()}/account/subscription", "Update payment method"),
        cta_color=COLOR_DANGER,
    )


_RENDERERS: dict[NotificationType, Callable[[dict[str, Any]], _Section]] = {
    NotificationType.REQUEST_CREATED: _request_created,
    NotificationType.NEW_LEAD: _new_lead,
    NotificationType.LEAD_ACCEPTED_CUSTOMER: _lead_accepted_customer,
    NotificationType.LEAD_ACCEPTED_PROVIDER: _lead_accepted_provider,
    NotificationType.LEAD_PAYMENT_FAILED: _lead_payment_failed,
    NotificationType.LEAD_MOVED_TO_ALTERNATIVE: _lead_moved_to_alternative,
    NotificationType.NO_PROVIDER_AVAILABLE: _no_provider_available,
    NotificationType.NEW_PROPOSAL: _new_proposal,
    NotificationType.PROPOSAL_ACCEPTED_CUSTOMER: _proposal_accepted_customer,
    NotificationType.PROPOSAL_ACCEPTED_PROVIDER: _proposal_accepted_provider,
    NotificationType.PROPOSAL_PAYMENT_FAILED: _proposal_payment_failed,
    NotificationType.WORK_COMPLETED: _work_completed,
    NotificationType.REVIEW_REQUEST: _review_request,
    NotificationType.SUBSCRIPTION_ACTIVATED: _subscription_activated,
    NotificationType.SUBSCRIPTION_PAYMENT_FAILED: _subscription_payment_failed,
}

_unrendered = set(NotificationType) - set(_RENDERERS)
if _unrendered:
    raise RuntimeError(f"Notification types without a renderer: {sorted(t.value for t in _unrendered)}")


def coerce_notification_type(value: NotificationType | str) -> NotificationType:
    if isinstance(value, NotificationType):
        return value
    try:
        return NotificationType(str(value))
    except ValueError as exc:
        raise TemplateNotFound(f"Unknown notification type: {value!r}") from exc


def render_notification(
    notification_type: NotificationType,
    data: dict[str, Any],
    *,
    unsubscribe_url: str = "",
) -> RenderedEmail:
    return _compose(_RENDERERS[notification_type](data or {}), unsubscribe_url=unsubscribe_url)


def build_email_payload(
    notification_type: NotificationType | str,
    *,
    to: str,
    unsubscribe_url: str = "",
    **context: Any,
) -> dict[str, Any]:
    rendered = render_notification(
        coerce_notification_type(notification_type),
        context,
        unsubscribe_url=unsubscribe_url,
    )
    return {
        "to": to,
        "subject": rendered.subject,
        "body_text": rendered.body_text,
        "body_html": rendered.body_html,
    }
