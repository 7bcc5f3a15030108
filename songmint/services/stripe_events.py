from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Any, Dict, Optional, Tuple
import logging
import math
import time

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from songmint.config import Settings, settings as default_settings
from songmint.exceptions import (
    CreditOperationError, ProfileUpdateError, WebhookProcessingError, WebhookValidationError,
)
from songmint.models import Order, Profile, SubscriptionStatus, WebhookEventStatus, utcnow
from songmint.services.billing_history import cents_to_amount, record_billing_transaction
from songmint.services.credits import update_user_credits
from songmint.services.notifications import EmailNotifier
from songmint.services.plans import PlanCatalog
from songmint.services.stripe_client import StripeGateway
from songmint.services.webhook_ledger import (
    check_stripe_event_processed, complete_stripe_event, fail_stripe_event,
    log_webhook_attempt, mark_stripe_event_processed,
)

logger = logging.getLogger(__name__)

# 9999-12-31T23:59:59Z
MAX_EPOCH_SECONDS = 253402300799

SUBSCRIPTION_BILLING_REASONS = {"subscription_create", "subscription_cycle"}

# Errors that a redelivery cannot fix
NON_RETRYABLE_MARKERS = ("User not found",)


class EventKind(str, Enum):
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"

    @classmethod
    def parse(cls, event_type: str) -> Optional["EventKind"]:
        try:
            return cls(event_type)
        except ValueError:
            return None


class Outcome:
    PROCESSED = "processed"
    IGNORED = "ignored"
    ALREADY_PROCESSED = "already_processed"
    IN_PROGRESS = "in_progress"


@dataclass
class WebhookResult:
    event_id: str
    event_type: str
    attempt: int
    status: str

    @property
    def duplicate(self) -> bool:
        return self.status in (Outcome.ALREADY_PROCESSED, Outcome.IN_PROGRESS)


def epoch_to_datetime(value: Any) -> Optional[datetime]:
    """UTC datetime for a positive epoch-seconds value, None for anything else."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    # Compared before isfinite: huge ints overflow the float conversion
    if value <= 0 or value > MAX_EPOCH_SECONDS or not math.isfinite(value):
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def should_retry(error_message: str, attempt: int, max_attempts: int = 3) -> bool:
    if attempt >= max_attempts:
        return False
    return not any(marker in error_message for marker in NON_RETRYABLE_MARKERS)


def _object_id(ref: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if ref is None or isinstance(ref, str):
        return ref
    return ref.get("id")


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    ref = invoice.get("subscription")
    if not ref:
        # Newer API versions nest the subscription under the invoice parent
        parent = invoice.get("parent") or {}
        ref = (parent.get("subscription_details") or {}).get("subscription")
    return _object_id(ref)


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def subscription_product_id(subscription: Dict[str, Any]) -> Optional[str]:
    price = _first_item(subscription).get("price") or {}
    return _object_id(price.get("product"))


def subscription_period(subscription: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    item = _first_item(subscription)
    start = subscription.get("current_period_start") or item.get("current_period_start")
    end = subscription.get("current_period_end") or item.get("current_period_end")
    return epoch_to_datetime(start), epoch_to_datetime(end)


def resolve_subscription_status(stripe_status: Optional[str], product_id: Optional[str],
                                catalog: PlanCatalog, subscription_id: str = None) -> str:
    """Local subscription_status for a Stripe subscription status.

    Only `active` grants a paid tier; every other state, known or not,
    loses access.
    """
    if stripe_status == "active":
        return catalog.tier_for_product(product_id)
    if stripe_status in ("past_due", "unpaid"):
        logger.warning(f"Subscription {subscription_id} has payment issues: {stripe_status}")
        return SubscriptionStatus.CANCELLED
    if stripe_status in ("canceled", "incomplete_expired"):
        return SubscriptionStatus.CANCELLED
    logger.warning(f"Unknown subscription status for {subscription_id}: {stripe_status}")
    return SubscriptionStatus.CANCELLED


class StripeEventProcessor:
    """Process Stripe webhook events at most once per event id."""

    def __init__(self, db: Session, gateway: StripeGateway, notifier: EmailNotifier,
                 catalog: Optional[PlanCatalog] = None, settings: Settings = default_settings):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier
        self.catalog = catalog or PlanCatalog(settings)
        self.settings = settings
        self._handlers = {
            EventKind.INVOICE_PAYMENT_SUCCEEDED: self._handle_invoice_paid,
            EventKind.SUBSCRIPTION_CREATED: self._handle_subscription_created,
            EventKind.SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            EventKind.SUBSCRIPTION_DELETED: self._handle_subscription_cancelled,
            EventKind.CHECKOUT_SESSION_COMPLETED: self._handle_checkout_completed,
        }

    async def process_event(self, event: Dict[str, Any], attempt: Optional[int] = None) -> WebhookResult:
        """
        Process a verified Stripe event.

        `attempt` is the delivery attempt reported by the caller; when absent
        the counter kept on the dedup record is used.

        Raises:
            WebhookProcessingError: a handler failed; `retry` says whether
                the provider should redeliver.
        """
        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            raise WebhookValidationError("stripe", "Invalid event data - missing id or type")

        started = time.perf_counter()

        if check_stripe_event_processed(self.db, event_id):
            logger.info(f"Event {event_id} already processed successfully")
            attempt = attempt or 1
            self._log_attempt(event_id, event_type, attempt, True, "Event already processed", started)
            return WebhookResult(event_id, event_type, attempt, Outcome.ALREADY_PROCESSED)

        obj = (event.get("data") or {}).get("object") or {}
        claim = mark_stripe_event_processed(
            self.db,
            event_id,
            event_type,
            user_id=(obj.get("metadata") or {}).get("userId"),
            event_metadata={
                "event_type": event_type,
                "created": event.get("created"),
                "attempt": attempt,
                "object_id": obj.get("id"),
            },
            stale_after=timedelta(seconds=self.settings.webhook_processing_timeout_seconds),
        )
        attempt = attempt or claim.attempts or 1

        if not claim.claimed:
            outcome = Outcome.ALREADY_PROCESSED if claim.status == WebhookEventStatus.PROCESSED else Outcome.IN_PROGRESS
            logger.info(f"Event {event_id} not claimed ({claim.status}); skipping handlers")
            self._log_attempt(event_id, event_type, attempt, True, f"Event {outcome.replace('_', ' ')}", started)
            return WebhookResult(event_id, event_type, attempt, outcome)

        try:
            handled = await self._dispatch(event_type, obj)
        except Exception as e:
            self.db.rollback()
            error = str(e) or e.__class__.__name__
            retry = should_retry(error, attempt, self.settings.webhook_max_attempts)
            self._best_effort("release event claim", fail_stripe_event, self.db, event_id, error, not retry)
            self._log_attempt(event_id, event_type, attempt, False, error, started)
            logger.error(f"Failed to process event {event_id} ({event_type}) on attempt {attempt}: {error}")
            raise WebhookProcessingError(event_id, event_type, attempt, retry, error) from e

        self._best_effort("mark event processed", complete_stripe_event, self.db, event_id)
        self._log_attempt(event_id, event_type, attempt, True, None, started)
        logger.info(f"Successfully processed Stripe event {event_id} ({event_type})")
        return WebhookResult(event_id, event_type, attempt, Outcome.PROCESSED if handled else Outcome.IGNORED)

    async def _dispatch(self, event_type: str, obj: Dict[str, Any]) -> bool:
        kind = EventKind.parse(event_type)
        if kind is None:
            logger.info(f"Unhandled event type: {event_type}")
            return False
        await self._handlers[kind](obj)
        return True

    def _log_attempt(self, event_id: str, event_type: str, attempt: int, success: bool,
                     error: Optional[str], started: float) -> None:
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        self._best_effort(
            "log webhook attempt",
            log_webhook_attempt, self.db, event_id, event_type, attempt, success, error, elapsed_ms,
        )

    def _best_effort(self, description: str, func, *args, **kwargs):
        """Run a non-critical step; failures are logged and swallowed."""
        try:
            return func(*args, **kwargs)
        except Exception as e:
            if isinstance(e, SQLAlchemyError):
                self.db.rollback()
            logger.error(f"Non-critical step '{description}' failed: {e}")
            return None

    def _update_profile(self, criterion, values: Dict[str, Any], operation: str) -> int:
        try:
            result = self.db.execute(
                update(Profile).where(criterion).values(**values).execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise ProfileUpdateError(operation, str(e)) from e
        return result.rowcount

    async def _handle_invoice_paid(self, invoice: Dict[str, Any]):
        subscription_id = invoice_subscription_id(invoice)
        billing_reason = invoice.get("billing_reason")
        if not subscription_id or billing_reason not in SUBSCRIPTION_BILLING_REASONS:
            logger.info(
                f"Skipping invoice {invoice.get('id')}: subscription={subscription_id}, "
                f"billing_reason={billing_reason}"
            )
            return
        await self._handle_subscription_payment(invoice, subscription_id)

    async def _handle_subscription_payment(self, invoice: Dict[str, Any], subscription_id: str):
        """Credit a paid subscription invoice (first payment or renewal)."""
        invoice_id = invoice.get("id")
        subscription = self.gateway.retrieve_subscription(subscription_id)
        customer_id = _object_id(subscription.get("customer"))
        customer = self.gateway.retrieve_customer(customer_id)

        email = customer.get("email")
        if not email:
            logger.error(f"No customer email found for subscription payment (invoice {invoice_id})")
            return

        product_id = subscription_product_id(subscription)
        plan = self.catalog.plan_for_product(product_id)
        if plan is None:
            logger.error(f"Unknown product ID {product_id} on subscription {subscription_id}")
            return

        profile = self.db.query(Profile).filter(Profile.stripe_customer_id == customer_id).first()
        if profile is None:
            logger.error(f"User not found for subscription payment. Customer ID: {customer_id}")
            return
        user_id = profile.id

        result = update_user_credits(
            self.db, user_id, plan.credits, "subscription_billing",
            payment_reference=invoice_id,
            context={"subscription_id": subscription_id, "billing_reason": invoice.get("billing_reason")},
        )
        if not result.success:
            raise CreditOperationError(user_id, "subscription_billing", result.error)

        self._update_profile(Profile.id == user_id, {"subscription_status": plan.tier}, "Subscription status update")

        amount = cents_to_amount(invoice.get("amount_paid"))
        period_start, period_end = subscription_period(subscription)
        self._best_effort(
            "record billing history",
            record_billing_transaction, self.db, user_id, amount, plan.credits, period_start, period_end,
            invoice_id=invoice_id, subscription_id=subscription.get("id") or subscription_id,
        )

        if invoice.get("billing_reason") == "subscription_create":
            self._best_effort("send welcome email",
                              self.notifier.send_subscription_welcome, email, plan.name, plan.credits, amount)
        else:
            self._best_effort("send billing success email",
                              self.notifier.send_billing_success, email, plan.credits, amount)

        logger.info(f"Processed subscription payment for {email}: +{plan.credits} credits (Invoice: {invoice_id})")

    async def _handle_subscription_created(self, subscription: Dict[str, Any]):
        subscription_id = subscription.get("id")
        customer_id = _object_id(subscription.get("customer"))
        customer = self.gateway.retrieve_customer(customer_id)
        if not customer.get("email"):
            logger.error(f"No customer email found for new subscription {subscription_id}")
            return

        product_id = subscription_product_id(subscription)
        _, period_end = subscription_period(subscription)
        rows = self._update_profile(
            Profile.stripe_customer_id == customer_id,
            {
                "stripe_subscription_id": subscription_id,
                "stripe_customer_id": customer_id,
                "subscription_plan_id": product_id,
                "subscription_status": self.catalog.tier_for_product(product_id),
                "billing_cycle_anchor": epoch_to_datetime(subscription.get("billing_cycle_anchor")),
                "next_billing_date": period_end,
            },
            "Subscription creation update",
        )
        if rows == 0:
            logger.warning(f"No profile matched customer {customer_id} for subscription {subscription_id}")
            return
        logger.info(f"Subscription created for {customer.get('email')}: {subscription_id}")

    async def _handle_subscription_updated(self, subscription: Dict[str, Any]):
        subscription_id = subscription.get("id")
        stripe_status = subscription.get("status")
        product_id = subscription_product_id(subscription)
        status = resolve_subscription_status(stripe_status, product_id, self.catalog, subscription_id)
        _, period_end = subscription_period(subscription)

        self._update_profile(
            Profile.stripe_subscription_id == subscription_id,
            {
                "subscription_plan_id": product_id,
                "subscription_status": status,
                "next_billing_date": period_end if stripe_status == "active" else None,
            },
            "Subscription update",
        )
        logger.info(f"Subscription updated: {subscription_id} - Status: {stripe_status} -> {status}")

    async def _handle_subscription_cancelled(self, subscription: Dict[str, Any]):
        subscription_id = subscription.get("id")
        # stripe_customer_id is kept so a re-subscription reuses the customer
        self._update_profile(
            Profile.stripe_subscription_id == subscription_id,
            {
                "subscription_status": SubscriptionStatus.CANCELLED,
                "stripe_subscription_id": None,
                "subscription_plan_id": None,
                "next_billing_date": None,
            },
            "Subscription cancellation",
        )
        logger.info(f"Subscription cancelled: {subscription_id} (customer ID preserved for re-subscription)")

    async def _handle_checkout_completed(self, session: Dict[str, Any]):
        mode = session.get("mode")
        if mode == "subscription":
            # Credited through invoice.payment_succeeded
            logger.info(f"Subscription checkout {session.get('id')} completed; credits follow the invoice event")
            return
        if mode == "payment" and session.get("payment_status") == "paid":
            await self._handle_one_time_purchase(session)
            return
        logger.info(
            f"Skipping checkout session {session.get('id')}: mode={mode}, "
            f"payment_status={session.get('payment_status')}"
        )

    async def _handle_one_time_purchase(self, session: Dict[str, Any]):
        session_id = session.get("id")
        metadata = session.get("metadata") or {}
        user_id = metadata.get("userId")
        credits_value = metadata.get("credits")
        if not user_id or not credits_value:
            logger.error(f"Missing userId or credits in checkout session metadata: {session_id}")
            return
        try:
            credits = int(credits_value)
        except (TypeError, ValueError):
            logger.error(f"Invalid credits value {credits_value!r} in checkout session {session_id}")
            return
        if credits <= 0:
            logger.error(f"Non-positive credits {credits} in checkout session {session_id}")
            return

        payment_intent_id = _object_id(session.get("payment_intent"))
        if not payment_intent_id:
            logger.error(f"Checkout session {session_id} has no payment intent")
            return
        payment_intent = self.gateway.retrieve_payment_intent(payment_intent_id)
        if payment_intent.get("status") != "succeeded":
            logger.warning(
                f"Payment intent {payment_intent_id} for session {session_id} is "
                f"{payment_intent.get('status')}; not crediting"
            )
            return

        profile = self.db.get(Profile, user_id)
        if profile is None:
            logger.error(f"User {user_id} not found for one-time purchase {session_id}")
            return
        profile_email = profile.email

        result = update_user_credits(
            self.db, user_id, credits, "one_time_purchase",
            payment_reference=payment_intent_id,
            context={"session_id": session_id},
        )
        if not result.success:
            raise CreditOperationError(user_id, "one_time_purchase", result.error)

        amount = cents_to_amount(payment_intent.get("amount_received"))
        self._best_effort(
            "record billing history",
            record_billing_transaction, self.db, user_id, amount, credits, utcnow(), None,
            payment_intent_id=payment_intent_id, session_id=session_id,
        )
        self._best_effort(
            "record order",
            self._record_order, user_id, amount, payment_intent.get("currency") or self.settings.currency,
            payment_intent_id,
        )

        recipient = (session.get("customer_details") or {}).get("email") or session.get("customer_email") or profile_email
        if recipient:
            self._best_effort("send purchase confirmation",
                              self.notifier.send_purchase_confirmation, recipient, credits, amount)

        logger.info(f"Added {credits} credits to user {user_id} from checkout {session_id}")

    def _record_order(self, user_id: str, amount, currency: str, payment_intent_id: str):
        try:
            self.db.add(Order(
                user_id=user_id,
                amount=amount,
                currency=currency,
                payment_provider_id=payment_intent_id,
                status="completed",
            ))
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Order for payment {payment_intent_id} already recorded")
