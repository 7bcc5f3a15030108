import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from songmint.config import settings
from songmint.db import get_db
from songmint.dependencies import get_notifier, get_plan_catalog, get_stripe_gateway, get_webhook_limiter
from songmint.exceptions import NotFoundError, RateLimitExceeded, WebhookProcessingError, WebhookValidationError
from songmint.models import SecuritySeverity, WebhookEventStatus
from songmint.schemas import EventStatusOut
from songmint.services.notifications import EmailNotifier
from songmint.services.plans import PlanCatalog
from songmint.services.rate_limit import RateLimiter, client_identifier
from songmint.services.security_events import SecurityEventType, log_security_event
from songmint.services.stripe_client import StripeGateway
from songmint.services.stripe_events import StripeEventProcessor, should_retry
from songmint.services.webhook_ledger import get_event

router = APIRouter()
logger = logging.getLogger(__name__)


def _parse_attempt(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        attempt = int(value)
    except ValueError:
        logger.warning(f"Ignoring malformed webhook attempt header: {value!r}")
        return None
    return attempt if attempt >= 1 else None


def _failure_response(event_id: Optional[str], attempt: int, retry: bool) -> JSONResponse:
    return JSONResponse(
        status_code=500 if retry else 400,
        content={
            "received": False,
            "error": "Webhook processing failed",
            "eventId": event_id,
            "retry": retry,
            "attempt": attempt,
        },
    )


def _log_rejected_webhook(db: Session, request: Request, reason: str) -> None:
    log_security_event(
        db, SecurityEventType.REJECTED_WEBHOOK, SecuritySeverity.HIGH, f"Stripe webhook rejected: {reason}",
        metadata={"path": request.url.path}, request=request,
    )


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    notifier: EmailNotifier = Depends(get_notifier),
    catalog: PlanCatalog = Depends(get_plan_catalog),
    limiter: RateLimiter = Depends(get_webhook_limiter),
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
    webhook_attempt: Optional[str] = Header(None, alias="x-webhook-attempt"),
):
    """Stripe webhook receiver with database-level idempotency."""
    try:
        limiter.enforce(client_identifier(request))
    except RateLimitExceeded as e:
        log_security_event(
            db, SecurityEventType.RATE_LIMIT_EXCEEDED, SecuritySeverity.MEDIUM, e.message,
            metadata={"path": request.url.path}, request=request,
        )
        raise

    if not stripe_signature:
        logger.error("No Stripe signature found")
        _log_rejected_webhook(db, request, "Missing Stripe signature")
        return JSONResponse(status_code=400, content={"received": False, "error": "Missing Stripe signature"})

    body = await request.body()

    try:
        gateway.construct_event(body, stripe_signature)
        # Signature verified; handlers work on the plain JSON payload
        event = json.loads(body)
    except WebhookValidationError as e:
        _log_rejected_webhook(db, request, e.reason)
        return JSONResponse(status_code=400, content={"received": False, "error": e.reason})

    logger.info(f"Received Stripe webhook: {event.get('id')} ({event.get('type')})")

    processor = StripeEventProcessor(db, gateway, notifier, catalog)
    try:
        result = await processor.process_event(event, attempt=_parse_attempt(webhook_attempt))
    except WebhookValidationError as e:
        return JSONResponse(status_code=400, content={"received": False, "error": e.reason})
    except WebhookProcessingError as e:
        return _failure_response(e.event_id, e.attempt, e.retry)
    except SQLAlchemyError as e:
        # Dedup lookup or claim failed before any handler ran
        db.rollback()
        attempt = _parse_attempt(webhook_attempt) or 1
        retry = should_retry(str(e), attempt, settings.webhook_max_attempts)
        logger.error(f"Store error while processing event {event.get('id')} on attempt {attempt}: {e}")
        return _failure_response(event.get("id"), attempt, retry)

    if result.duplicate:
        return {"received": True, "status": result.status}
    return {"received": True}


@router.get("/events/{event_id}/status", response_model=EventStatusOut)
def get_event_status(event_id: str, db: Session = Depends(get_db)):
    """Processing status of a Stripe event."""
    event = get_event(db, event_id)
    if event is None:
        raise NotFoundError("Event", event_id)

    return EventStatusOut(
        event_id=event_id,
        event_type=event.event_type,
        status=event.status,
        processed=event.status == WebhookEventStatus.PROCESSED,
        attempts=event.attempts,
        dead_letter=event.dead_letter,
        error_message=event.error_message,
        processed_at=event.processed_at,
        created_at=event.created_at,
    )
