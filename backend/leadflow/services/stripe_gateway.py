"""Thin async wrappers over the blocking Stripe SDK calls we use."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import stripe

from leadflow.core.config import get_settings
from leadflow.services.errors import ConfigurationError, PaymentProviderError

logger = logging.getLogger(__name__)

REUSABLE_INTENT_STATUSES = {"requires_payment_method", "requires_confirmation", "requires_action"}


def configure_stripe() -> None:
    settings = get_settings()
    if not settings.stripe_enabled:
        raise ConfigurationError("Stripe is not configured (STRIPE_SECRET_KEY)")
    stripe.api_key = settings.stripe_secret_key


async def create_payment_intent(*, amount_cents: int, metadata: dict[str, str], description: str = ""):
    configure_stripe()
    try:
        return await asyncio.to_thread(
            stripe.PaymentIntent.create,
            amount=int(amount_cents),
            currency=get_settings().stripe_currency,
            automatic_payment_methods={"enabled": True},
            description=description or None,
            metadata=metadata,
        )
    except stripe.StripeError as exc:
        logger.warning("PaymentIntent creation failed (%s): %s", metadata.get("type"), exc)
        raise PaymentProviderError("Payment provider error") from exc


async def reuse_payment_intent(
    payment_intent_id: Optional[str],
    *,
    amount_cents: int,
    metadata: dict[str, str],
):
    """Return the existing intent refreshed with ``metadata`` if it can still be paid, else None."""
    if not payment_intent_id:
        return None
    configure_stripe()
    try:
        intent = await asyncio.to_thread(stripe.PaymentIntent.retrieve, payment_intent_id)
        if intent.get("status") not in REUSABLE_INTENT_STATUSES or int(intent.get("amount") or 0) != int(amount_cents):
            return None
        return await asyncio.to_thread(stripe.PaymentIntent.modify, payment_intent_id, metadata=metadata)
    except stripe.StripeError as exc:
        logger.warning("Could not reuse PaymentIntent %s: %s", payment_intent_id, exc)
        return None


async def create_transfer(
    *,
    amount_cents: int,
    destination: str,
    metadata: dict[str, Any],
    idempotency_key: Optional[str] = None,
) -> Any:
    """Raises ``stripe.StripeError`` on failure; the payout flow records it."""
    configure_stripe()
    return await asyncio.to_thread(
        stripe.Transfer.create,
        amount=int(amount_cents),
        currency=get_settings().stripe_currency,
        destination=destination,
        metadata={key: str(value) for key, value in metadata.items()},
        idempotency_key=idempotency_key,
    )


async def cancel_payment_intent(payment_intent_id: Optional[str]) -> bool:
    """Cancel an intent nobody will confirm. False when it could not be cancelled."""
    if not payment_intent_id:
        return False
    if not get_settings().stripe_enabled:
        logger.info("Stripe not configured; PaymentIntent %s left as is", payment_intent_id)
        return False
    configure_stripe()
    try:
        await asyncio.to_thread(stripe.PaymentIntent.cancel, payment_intent_id)
    except stripe.StripeError as exc:
        logger.warning("Could not cancel PaymentIntent %s: %s", payment_intent_id, exc)
        return False
    return True
