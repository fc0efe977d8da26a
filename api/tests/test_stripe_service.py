"""Tests for the Stripe SDK wrapper."""

from unittest.mock import MagicMock, patch

import pytest
import stripe
from api.services import stripe_service
from api.services.billing_errors import ExternalProviderError
from chartsense.config import reset_settings_cache


async def test_checkout_session_payload_prefers_customer_id():
    create = MagicMock(return_value={"id": "cs_1", "url": "https://checkout.stripe.com/cs_1"})
    with patch("stripe.checkout.Session.create", new=create):
        session = await stripe_service.create_checkout_session(
            mode="subscription",
            line_items=[{"price_data": {"unit_amount": 3900}, "quantity": 1}],
            success_url="https://chartsense.app/ok",
            cancel_url="https://chartsense.app/cancel",
            metadata={"user_id": "u1"},
            customer_email="ada@example.com",
            customer_id="cus_1",
            subscription_data={"metadata": {"user_id": "u1"}},
        )

    assert session == {"id": "cs_1", "url": "https://checkout.stripe.com/cs_1"}
    kwargs = create.call_args.kwargs
    assert kwargs["customer"] == "cus_1"
    assert "customer_email" not in kwargs
    assert kwargs["subscription_data"] == {"metadata": {"user_id": "u1"}}
    assert "client_reference_id" not in kwargs
    assert stripe.max_network_retries == 0


async def test_provider_errors_are_wrapped():
    with patch(
        "stripe.Subscription.retrieve", side_effect=stripe.StripeError("card network down")
    ):
        with pytest.raises(ExternalProviderError) as exc_info:
            await stripe_service.retrieve_subscription("sub_1")
    assert exc_info.value.details == {"operation": "subscription.retrieve"}


async def test_missing_secret_key_is_a_provider_error(monkeypatch):
    monkeypatch.setenv("STRIPE_SECRET_KEY", "")
    reset_settings_cache()
    with pytest.raises(ExternalProviderError):
        await stripe_service.cancel_subscription("sub_1", at_period_end=True)


async def test_cancel_at_period_end_modifies_instead_of_cancelling():
    with (
        patch("stripe.Subscription.modify") as modify,
        patch("stripe.Subscription.cancel") as cancel,
    ):
        await stripe_service.cancel_subscription("sub_1", at_period_end=True)
    modify.assert_called_once_with("sub_1", cancel_at_period_end=True)
    cancel.assert_not_called()


def test_webhook_verification_requires_secret(monkeypatch):
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "")
    reset_settings_cache()
    with pytest.raises(RuntimeError):
        stripe_service.verify_webhook_signature(b"{}", "t=1,v1=abc")
