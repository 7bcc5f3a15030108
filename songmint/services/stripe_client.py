from functools import wraps
from typing import Any, Dict, Optional
import logging

import stripe

from songmint.config import Settings
from songmint.exceptions import ExternalServiceError, WebhookValidationError

logger = logging.getLogger(__name__)


def _stripe_call(func):
    """Convert Stripe SDK errors into ExternalServiceError."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except stripe.StripeError as e:
            raise ExternalServiceError("stripe", e.user_message or str(e), getattr(e, "http_status", None))
    return wrapper


class StripeGateway:
    """Thin wrapper over the Stripe SDK.

    Every request passes its own api key and API version, so several
    gateways (test/live) can coexist without touching `stripe.api_key`.
    """

    def __init__(self, api_key: str, webhook_secret: str, api_version: Optional[str] = None,
                 webhook_tolerance: int = 300):
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._api_version = api_version
        self._webhook_tolerance = webhook_tolerance

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeGateway":
        return cls(
            api_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            api_version=settings.stripe_api_version,
            webhook_tolerance=settings.stripe_webhook_tolerance,
        )

    @property
    def _opts(self) -> Dict[str, Any]:
        opts: Dict[str, Any] = {"api_key": self._api_key}
        if self._api_version:
            opts["stripe_version"] = self._api_version
        return opts

    def construct_event(self, payload: bytes, signature: str):
        """Verify the webhook signature and return the parsed event."""
        try:
            return stripe.Webhook.construct_event(
                payload,
                signature,
                self._webhook_secret,
                tolerance=self._webhook_tolerance,
            )
        except ValueError as e:
            logger.error(f"Invalid payload in webhook: {e}")
            raise WebhookValidationError("stripe", "Invalid payload")
        except stripe.SignatureVerificationError as e:
            logger.error(f"Invalid signature in webhook: {e}")
            raise WebhookValidationError("stripe", "Invalid signature")

    @_stripe_call
    def retrieve_subscription(self, subscription_id: str):
        return stripe.Subscription.retrieve(subscription_id, **self._opts)

    @_stripe_call
    def retrieve_customer(self, customer_id: str):
        return stripe.Customer.retrieve(customer_id, **self._opts)

    @_stripe_call
    def create_customer(self, email: str, user_id: str):
        return stripe.Customer.create(email=email, metadata={"userId": user_id}, **self._opts)

    @_stripe_call
    def retrieve_payment_intent(self, payment_intent_id: str):
        return stripe.PaymentIntent.retrieve(payment_intent_id, **self._opts)

    @_stripe_call
    def retrieve_product(self, product_id: str):
        """Product with its default price expanded."""
        return stripe.Product.retrieve(product_id, expand=["default_price"], **self._opts)

    @_stripe_call
    def retrieve_checkout_session(self, session_id: str):
        return stripe.checkout.Session.retrieve(
            session_id,
            expand=["subscription", "subscription.items.data.price.product"],
            **self._opts,
        )

    @_stripe_call
    def create_payment_checkout(self, *, user_id: str, email: Optional[str], name: str, credits: int,
                                unit_amount: int, currency: str, success_url: str, cancel_url: str):
        return stripe.checkout.Session.create(
            payment_method_types=["card"],
            line_items=[{
                "price_data": {
                    "currency": currency,
                    "product_data": {
                        "name": name,
                        "description": f"{credits} song creation credit{'s' if credits > 1 else ''} for Song Mint",
                    },
                    "unit_amount": unit_amount,
                },
                "quantity": 1,
            }],
            mode="payment",
            success_url=success_url,
            cancel_url=cancel_url,
            customer_email=email,
            metadata={"userId": user_id, "credits": str(credits)},
            **self._opts,
        )

    @_stripe_call
    def create_subscription_checkout(self, *, customer_id: str, price_id: str, user_id: str, plan: str,
                                     success_url: str, cancel_url: str):
        return stripe.checkout.Session.create(
            customer=customer_id,
            payment_method_types=["card"],
            line_items=[{"price": price_id, "quantity": 1}],
            mode="subscription",
            success_url=success_url,
            cancel_url=cancel_url,
            subscription_data={"metadata": {"userId": user_id, "planId": plan}},
            customer_update={"address": "auto"},
            tax_id_collection={"enabled": True},
            automatic_tax={"enabled": True},
            **self._opts,
        )

    @_stripe_call
    def create_billing_portal_session(self, customer_id: str, return_url: str):
        return stripe.billing_portal.Session.create(customer=customer_id, return_url=return_url, **self._opts)
