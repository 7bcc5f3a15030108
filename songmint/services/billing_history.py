from datetime import datetime
from decimal import Decimal
from typing import Optional
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from songmint.models import BillingHistory

logger = logging.getLogger(__name__)


def cents_to_amount(cents: Optional[int]) -> Decimal:
    """Minor currency units (cents) to major units with two decimals."""
    return (Decimal(cents or 0) / 100).quantize(Decimal("0.01"))


def record_billing_transaction(
    db: Session,
    user_id: str,
    amount: Decimal,
    credits_added: int,
    billing_period_start: Optional[datetime],
    billing_period_end: Optional[datetime],
    invoice_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
    payment_intent_id: Optional[str] = None,
    session_id: Optional[str] = None,
) -> BillingHistory:
    """Append a billing history row.

    Invoice and payment intent ids are unique; recording the same payment
    twice returns the existing row instead of inserting a second one.
    """
    row = BillingHistory(
        user_id=user_id,
        amount=amount,
        credits_added=credits_added,
        stripe_invoice_id=invoice_id,
        stripe_subscription_id=subscription_id,
        stripe_payment_intent_id=payment_intent_id,
        stripe_session_id=session_id,
        billing_period_start=billing_period_start,
        billing_period_end=billing_period_end,
    )
    try:
        db.add(row)
        db.commit()
    except IntegrityError:
        db.rollback()
        query = db.query(BillingHistory)
        if invoice_id:
            existing = query.filter(BillingHistory.stripe_invoice_id == invoice_id).first()
        else:
            existing = query.filter(BillingHistory.stripe_payment_intent_id == payment_intent_id).first()
        if existing is None:
            raise
        logger.info(f"Billing history for {invoice_id or payment_intent_id} already recorded")
        return existing

    logger.info(f"Recorded billing transaction for user {user_id}: {amount} / +{credits_added} credits")
    return row
