"""Stripe SDK wrapper for checkout sessions and subscription management."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

import stripe
from chartsense.config import get_settings

from api.services.billing_errors import ExternalProviderError

logger = logging.getLogger(__name__)


def _get_stripe_client(*, require_secret_key: bool = True):
    settings = get_settings()
    if require_secret_key and not settings.stripe_secret_key:
        raise RuntimeError("Stripe is not configured")
    if settings.stripe_secret_key:
        stripe.api_key = settings.stripe_secret_key
    # Retries happen at the caller boundary, not inside a request.
    stripe.max_network_retries = 0
    return stripe


def _require_stripe_client():
    try:
        return _get_stripe_client()
    except RuntimeError as exc:
        raise ExternalProviderError(str(exc)) from exc


def _as_plain_dict(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    # StripeObject renders itself as JSON.
    return json.loads(str(obj))


async def _call_stripe(operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run a blocking SDK call in a worker thread with a bounded timeout."""
    settings = get_settings()
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args, **kwargs),
            timeout=settings.stripe_timeout_seconds,
        )
    except TimeoutError as exc:
        logger.warning("Stripe %s timed out after %ss", operation, settings.stripe_timeout_seconds)
        raise ExternalProviderError(
            "Payment provider timed out. Please try again shortly.",
            details={"operation": operation},
        ) from exc
    except stripe.StripeError as exc:
        logger.warning("Stripe %s failed: %s", operation, exc.user_message or str(exc))
        raise ExternalProviderError(
            "Payment provider request failed. Please try again shortly.",
            details={"operation": operation},
        ) from exc


async def create_checkout_session(
    *,
    mode: str,
    line_items: list[dict[str, Any]],
    success_url: str,
    cancel_url: str,
    metadata: dict[str, str],
    customer_email: str | None = None,
    customer_id: str | None = None,
    subscription_data: dict[str, Any] | None = None,
    client_reference_id: str | None = None,
) -> dict[str, Any]:
    """Create a Stripe Checkout session, return ``{"id", "url"}``."""
    stripe_client = _require_stripe_client()

    session_payload: dict[str, Any] = {
        "mode": mode,
        "payment_method_types": ["card"],
        "line_items": line_items,
        "success_url": success_url,
        "cancel_url": cancel_url,
        "metadata": metadata,
    }
    if customer_id:
        session_payload["customer"] = customer_id
    elif customer_email:
        session_payload["customer_email"] = customer_email
    if subscription_data:
        session_payload["subscription_data"] = subscription_data
    if client_reference_id:
        session_payload["client_reference_id"] = client_reference_id

    session = await _call_stripe(
        "checkout.create",
        stripe_client.checkout.Session.create,
        **session_payload,
    )
    return {"id": str(session["id"]), "url": str(session["url"])}


async def retrieve_checkout_session(session_id: str) -> dict[str, Any]:
    stripe_client = _require_stripe_client()
    session = await _call_stripe(
        "checkout.retrieve",
        stripe_client.checkout.Session.retrieve,
        session_id,
    )
    return _as_plain_dict(session)


async def retrieve_subscription(stripe_subscription_id: str) -> dict[str, Any]:
    stripe_client = _require_stripe_client()
    subscription = await _call_stripe(
        "subscription.retrieve",
        stripe_client.Subscription.retrieve,
        stripe_subscription_id,
    )
    return _as_plain_dict(subscription)


async def cancel_subscription(stripe_subscription_id: str, *, at_period_end: bool) -> None:
    stripe_client = _require_stripe_client()
    if at_period_end:
        await _call_stripe(
            "subscription.cancel_at_period_end",
            stripe_client.Subscription.modify,
            stripe_subscription_id,
            cancel_at_period_end=True,
        )
    else:
        await _call_stripe(
            "subscription.cancel",
            stripe_client.Subscription.cancel,
            stripe_subscription_id,
        )


async def resume_subscription(stripe_subscription_id: str) -> None:
    stripe_client = _require_stripe_client()
    await _call_stripe(
        "subscription.resume",
        stripe_client.Subscription.modify,
        stripe_subscription_id,
        cancel_at_period_end=False,
    )


def verify_webhook_signature(payload: bytes, sig_header: str) -> dict[str, Any]:
    """Verify Stripe webhook signature and return the parsed event."""
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        raise RuntimeError("Stripe webhook secret is not configured")
    stripe_client = _get_stripe_client(require_secret_key=False)
    stripe_client.WebhookSignature.verify_header(
        payload.decode("utf-8"),
        sig_header,
        settings.stripe_webhook_secret,
        tolerance=300,
    )
    event = json.loads(payload)
    if not isinstance(event, dict):
        raise ValueError("Webhook payload is not an object")
    return event

