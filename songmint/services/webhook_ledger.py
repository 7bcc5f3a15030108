"""Dedup ledger and attempt log for Stripe webhook events.

An event id is claimed with a single insert against a unique column, so two
concurrent deliveries of the same event cannot both run the handlers. Failed
events (and events abandoned mid-processing) can be reclaimed by a later
delivery with one conditional UPDATE.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional
import logging

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from songmint.models import StripeWebhookEvent, WebhookAttempt, WebhookEventStatus, utcnow

logger = logging.getLogger(__name__)


@dataclass
class EventClaim:
    claimed: bool
    status: str
    attempts: int


def check_stripe_event_processed(db: Session, event_id: str) -> bool:
    status = db.execute(
        select(StripeWebhookEvent.status).where(StripeWebhookEvent.stripe_event_id == event_id)
    ).scalar_one_or_none()
    return status == WebhookEventStatus.PROCESSED


def get_event(db: Session, event_id: str) -> Optional[StripeWebhookEvent]:
    return db.execute(
        select(StripeWebhookEvent).where(StripeWebhookEvent.stripe_event_id == event_id)
    ).scalar_one_or_none()


def mark_stripe_event_processed(
    db: Session,
    event_id: str,
    event_type: str,
    user_id: Optional[str],
    event_metadata: Dict[str, Any],
    stale_after: timedelta = timedelta(minutes=10),
) -> EventClaim:
    """Claim an event for processing.

    Returns claimed=False with the current status when another delivery has
    already processed the event or is still working on it.
    """
    now = utcnow()
    try:
        db.add(StripeWebhookEvent(
            stripe_event_id=event_id,
            event_type=event_type,
            user_id=user_id,
            event_metadata=event_metadata,
            status=WebhookEventStatus.PROCESSING,
            attempts=1,
            created_at=now,
            updated_at=now,
        ))
        db.commit()
        return EventClaim(claimed=True, status=WebhookEventStatus.PROCESSING, attempts=1)
    except IntegrityError:
        db.rollback()

    # Reclaim only failed events or processing markers that went stale
    result = db.execute(
        update(StripeWebhookEvent)
        .where(
            StripeWebhookEvent.stripe_event_id == event_id,
            or_(
                StripeWebhookEvent.status == WebhookEventStatus.FAILED,
                and_(
                    StripeWebhookEvent.status == WebhookEventStatus.PROCESSING,
                    StripeWebhookEvent.updated_at < now - stale_after,
                ),
            ),
        )
        .values(
            status=WebhookEventStatus.PROCESSING,
            attempts=StripeWebhookEvent.attempts + 1,
            event_metadata=event_metadata,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()

    event = get_event(db, event_id)
    if event is None:
        # Row vanished between the insert and the reclaim; treat as busy
        return EventClaim(claimed=False, status=WebhookEventStatus.PROCESSING, attempts=0)

    if result.rowcount == 1:
        logger.info(f"Reclaimed event {event_id} for attempt {event.attempts}")
        return EventClaim(claimed=True, status=WebhookEventStatus.PROCESSING, attempts=event.attempts)
    return EventClaim(claimed=False, status=event.status, attempts=event.attempts)


def complete_stripe_event(db: Session, event_id: str) -> None:
    db.execute(
        update(StripeWebhookEvent)
        .where(StripeWebhookEvent.stripe_event_id == event_id)
        .values(
            status=WebhookEventStatus.PROCESSED,
            processed_at=utcnow(),
            updated_at=utcnow(),
            error_message=None,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()


def fail_stripe_event(db: Session, event_id: str, error: str, dead_letter: bool) -> None:
    """Release the claim so a provider retry can reclaim the event."""
    db.execute(
        update(StripeWebhookEvent)
        .where(StripeWebhookEvent.stripe_event_id == event_id)
        .values(
            status=WebhookEventStatus.FAILED,
            error_message=error,
            dead_letter=dead_letter,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if dead_letter:
        logger.error(f"Event {event_id} marked as dead letter: {error}")


def log_webhook_attempt(
    db: Session,
    event_id: str,
    event_type: str,
    attempt_number: int,
    success: bool,
    error_details: Optional[str],
    processing_time_ms: int,
) -> None:
    db.add(WebhookAttempt(
        event_id=event_id,
        event_type=event_type,
        attempt_number=attempt_number,
        success=success,
        error_details=error_details,
        processing_time_ms=processing_time_ms,
    ))
    db.commit()
