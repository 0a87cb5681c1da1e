"""
Notification delivery: preferences, rendering, audit, bounded retry.

Every email in the system goes through ``send_notification``. Delivery
failures never raise into the caller; they end in a ``failed`` audit row
that an admin can retry later.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.core.config import get_settings
from leadflow.models.marketplace import NotificationAudit, NotificationPreference
from leadflow.schemas.marketplace import NotificationStatus
from leadflow.services.audit import create_audit_log
from leadflow.services.email_channel import deliver_email
from leadflow.services.email_html_base import base_url
from leadflow.services.email_templates import NotificationType, build_email_payload, coerce_notification_type
from leadflow.services.errors import ConfigurationError, NotFound, PreconditionFailed
from leadflow.utils.clock import now_utc

logger = logging.getLogger(__name__)

# Which preference flag gates each type. Types mapped to None are transactional and always sent
# (still subject to the global email_enabled switch).
PREFERENCE_FOR_TYPE: dict[NotificationType, Optional[str]] = {
    NotificationType.REQUEST_CREATED: "lead_updates",
    NotificationType.NEW_LEAD: "new_lead_alerts",
    NotificationType.LEAD_ACCEPTED_CUSTOMER: "lead_updates",
    NotificationType.LEAD_ACCEPTED_PROVIDER: "lead_updates",
    NotificationType.LEAD_PAYMENT_FAILED: None,
    NotificationType.LEAD_MOVED_TO_ALTERNATIVE: "lead_updates",
    NotificationType.NO_PROVIDER_AVAILABLE: "lead_updates",
    NotificationType.NEW_PROPOSAL: "proposal_updates",
    NotificationType.PROPOSAL_ACCEPTED_CUSTOMER: "proposal_updates",
    NotificationType.PROPOSAL_ACCEPTED_PROVIDER: "proposal_updates",
    NotificationType.PROPOSAL_PAYMENT_FAILED: None,
    NotificationType.WORK_COMPLETED: "work_order_updates",
    NotificationType.REVIEW_REQUEST: "review_requests",
    NotificationType.SUBSCRIPTION_ACTIVATED: None,
    NotificationType.SUBSCRIPTION_PAYMENT_FAILED: None,
}


@dataclass(frozen=True)
class NotificationRequest:
    notification_type: NotificationType
    recipient_email: Optional[str]
    user_id: Optional[int] = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SendResult:
    status: str
    audit_id: Optional[int] = None
    error: Optional[str] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in {NotificationStatus.SENT.value, "skipped"}


def compute_retry_delay(attempt: int, base_delay_seconds: float) -> float:
    """Exponential backoff: base, 2*base, 4*base ..."""
    return float(base_delay_seconds) * (2 ** max(0, int(attempt)))


async def get_or_create_preferences(db: AsyncSession, user_id: int) -> NotificationPreference:
    prefs = (
        await db.execute(select(NotificationPreference).where(NotificationPreference.user_id == user_id))
    ).scalar_one_or_none()
    if prefs is None:
        prefs = NotificationPreference(user_id=user_id, unsubscribe_token=secrets.token_hex(32))
        db.add(prefs)
        await db.flush()
    return prefs


def _preference_allows(prefs: NotificationPreference, notification_type: NotificationType) -> tuple[bool, str]:
    if not prefs.email_enabled:
        return False, "email_disabled"
    flag = PREFERENCE_FOR_TYPE.get(notification_type)
    if flag and not getattr(prefs, flag, True):
        return False, f"{flag}_disabled"
    return True, ""


async def _attempt_delivery(db: AsyncSession, audit: NotificationAudit, payload: dict[str, Any]) -> SendResult:
    settings = get_settings()
    base_delay = settings.notification_retry_base_delay_seconds
    max_retries = int(audit.max_retries)

    attempt = 0
    while True:
        try:
            await deliver_email(payload)
        except ConfigurationError as exc:
            # Retrying cannot fix a missing or disabled channel; fail the row now.
            audit.status = NotificationStatus.FAILED.value
            audit.error_message = str(exc)[:2000]
            await db.commit()
            logger.warning("Notification %s (%s) not sent: %s", audit.id, audit.notification_type, exc)
            return SendResult(status=audit.status, audit_id=audit.id, error=audit.error_message)
        except Exception as exc:
            audit.error_message = str(exc)[:2000]
            if attempt >= max_retries:
                audit.status = NotificationStatus.FAILED.value
                create_audit_log(
                    db,
                    entity_type="notification",
                    entity_id=audit.id,
                    action="NOTIFICATION_FAILED",
                    old_value=None,
                    new_value={"status": audit.status, "retry_count": audit.retry_count},
                    actor_type="SYSTEM",
                    metadata={"notification_type": audit.notification_type, "error": audit.error_message},
                )
                await db.commit()
                logger.warning(
                    "Notification %s (%s) failed after %s attempts: %s",
                    audit.id,
                    audit.notification_type,
                    attempt + 1,
                    audit.error_message,
                )
                return SendResult(status=audit.status, audit_id=audit.id, error=audit.error_message)

            audit.status = NotificationStatus.RETRYING.value
            audit.retry_count = attempt + 1
            await db.commit()
            await asyncio.sleep(compute_retry_delay(attempt, base_delay))
            attempt += 1
            continue

        audit.status = NotificationStatus.SENT.value
        audit.sent_at = now_utc()
        audit.error_message = None
        await db.commit()
        return SendResult(status=audit.status, audit_id=audit.id)


async def send_notification(
    db: AsyncSession,
    *,
    recipient_email: Optional[str],
    notification_type: NotificationType | str,
    template_data: Optional[dict[str, Any]] = None,
    user_id: Optional[int] = None,
) -> SendResult:
    """Render, audit and deliver one email.

    Commits its own audit rows, so callers must have committed their
    business changes first. Unknown types raise ``TemplateNotFound``.
    """
    ntype = coerce_notification_type(notification_type)
    data = dict(template_data or {})

    unsubscribe_url = ""
    if user_id is not None:
        prefs = await get_or_create_preferences(db, user_id)
        allowed, reason = _preference_allows(prefs, ntype)
        if not allowed:
            await db.commit()
            logger.info("Notification %s to user %s skipped: %s", ntype.value, user_id, reason)
            return SendResult(status="skipped", reason=reason)
        unsubscribe_url = f"{base_url()}/api/v1/notifications/unsubscribe/{prefs.unsubscribe_token}"

    if not recipient_email:
        logger.warning("Notification %s has no recipient (user_id=%s); skipped", ntype.value, user_id)
        return SendResult(status="skipped", reason="no_recipient")

    payload = build_email_payload(ntype, to=recipient_email, unsubscribe_url=unsubscribe_url, **data)

    audit = NotificationAudit(
        user_id=user_id,
        notification_type=ntype.value,
        recipient_email=recipient_email,
        subject=payload["subject"][:255],
        template_data=data,
        status=NotificationStatus.PENDING.value,
        retry_count=0,
        max_retries=max(0, int(get_settings().notification_max_retries)),
    )
    db.add(audit)
    await db.commit()

    return await _attempt_delivery(db, audit, payload)


async def deliver_all(db: AsyncSession, requests: Iterable[NotificationRequest]) -> list[SendResult]:
    results = []
    for request in requests:
        results.append(
            await send_notification(
                db,
                recipient_email=request.recipient_email,
                notification_type=request.notification_type,
                template_data=request.data,
                user_id=request.user_id,
            )
        )
    return results


async def retry_failed_notification(db: AsyncSession, audit_id: int) -> SendResult:
    audit = await db.get(NotificationAudit, audit_id)
    if audit is None:
        raise NotFound(f"Notification {audit_id} not found")
    if audit.status != NotificationStatus.FAILED.value:
        raise PreconditionFailed(f"Only failed notifications can be retried (status is {audit.status})")

    ntype = coerce_notification_type(audit.notification_type)
    unsubscribe_url = ""
    if audit.user_id is not None:
        prefs = await get_or_create_preferences(db, audit.user_id)
        unsubscribe_url = f"{base_url()}/api/v1/notifications/unsubscribe/{prefs.unsubscribe_token}"
    payload = build_email_payload(
        ntype,
        to=audit.recipient_email,
        unsubscribe_url=unsubscribe_url,
        **(audit.template_data or {}),
    )

    audit.status = NotificationStatus.PENDING.value
    audit.retry_count = 0
    audit.error_message = None
    await db.commit()
    return await _attempt_delivery(db, audit, payload)


async def list_failed_notifications(db: AsyncSession, *, limit: int = 100) -> list[NotificationAudit]:
    return list(
        (
            await db.execute(
                select(NotificationAudit)
                .where(NotificationAudit.status == NotificationStatus.FAILED.value)
                .order_by(NotificationAudit.created_at.desc(), NotificationAudit.id.desc())
                .limit(int(max(1, min(500, limit))))
            )
        ).scalars().all()
    )


async def unsubscribe(db: AsyncSession, token: str) -> NotificationPreference:
    prefs = (
        await db.execute(select(NotificationPreference).where(NotificationPreference.unsubscribe_token == token))
    ).scalar_one_or_none()
    if prefs is None:
        raise NotFound("Unknown unsubscribe token")
    prefs.email_enabled = False
    await db.commit()
    return prefs
