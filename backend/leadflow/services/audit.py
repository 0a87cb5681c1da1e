import logging
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.core.config import get_settings
from leadflow.models.marketplace import AuditLog
from leadflow.utils.alerting import alert_tracker

logger = logging.getLogger(__name__)

PII_REDACTION_FALLBACK_FIELDS = {
    "phone",
    "email",
    "address",
    "customer_name",
    "customer_email",
    "customer_phone",
}


def _redact_pii(value: Any, redact_keys: set[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, dict):
        redacted = {}
        for key, item in value.items():
            if isinstance(key, str) and key.lower() in redact_keys:
                redacted[key] = "[REDACTED]"
            else:
                redacted[key] = _redact_pii(item, redact_keys)
        return redacted
    if isinstance(value, list):
        return [_redact_pii(item, redact_keys) for item in value]
    return value


def create_audit_log(
    db: AsyncSession,
    *,
    entity_type: str,
    entity_id: Any,
    action: str,
    old_value: Optional[dict[str, Any]],
    new_value: Optional[dict[str, Any]],
    actor_type: str,
    actor_id: Optional[Any] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> None:
    """Stage an audit row on the caller's transaction."""
    settings = get_settings()
    if settings.pii_redaction_enabled:
        configured = {item.lower() for item in settings.pii_redaction_fields}
        redact_keys = configured or set(PII_REDACTION_FALLBACK_FIELDS)
        old_value = _redact_pii(old_value, redact_keys)
        new_value = _redact_pii(new_value, redact_keys)
        if metadata is not None:
            metadata = _redact_pii(metadata, redact_keys)

    db.add(
        AuditLog(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action,
            old_value=old_value,
            new_value=new_value,
            actor_type=actor_type,
            actor_id=str(actor_id) if actor_id is not None else None,
            ip_address=ip_address,
            user_agent=user_agent,
            audit_meta=metadata,
        )
    )
    try:
        alert_tracker.record(action, metadata)
    except Exception:
        logger.exception("Alert tracker failed for action=%s", action)
