from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.orm import Session
from sqlalchemy import func, text
import time
import psutil
import logging
from datetime import datetime, timedelta, timezone

from songmint.db import get_db, get_redis
from songmint.config import settings
from songmint.models import Profile, SecurityEvent, StripeWebhookEvent, WebhookAttempt, WebhookEventStatus

router = APIRouter()
logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@router.get("/health")
async def basic_health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "timestamp": _now().isoformat()}


@router.get("/readyz")
def readiness_check(db: Session = Depends(get_db)):
    """
    Readiness check for container orchestration.
    Returns 200 if all critical dependencies are available.
    """
    checks = {}
    all_healthy = True

    # Database connectivity with latency measurement
    try:
        start_time = time.time()
        db.execute(text("SELECT 1"))
        latency_ms = int((time.time() - start_time) * 1000)
        checks["database"] = {"status": "healthy", "latency_ms": latency_ms}
    except Exception as e:
        checks["database"] = {"status": "unhealthy", "error": str(e)}
        all_healthy = False

    # Redis only backs the shared rate limiter
    if settings.rate_limit_backend == "redis":
        try:
            start_time = time.time()
            get_redis().ping()
            latency_ms = int((time.time() - start_time) * 1000)
            checks["redis"] = {"status": "healthy", "latency_ms": latency_ms}
        except Exception as e:
            checks["redis"] = {"status": "unhealthy", "error": str(e)}
            all_healthy = False

    checks["stripe"] = {"status": "configured" if settings.stripe_webhook_secret else "missing_webhook_secret"}
    checks["email"] = {"status": "configured" if settings.resend_api_key else "disabled"}

    response_data = {
        "status": "ready" if all_healthy else "not_ready",
        "checks": checks,
        "timestamp": _now().isoformat()
    }

    if not all_healthy:
        raise HTTPException(status_code=503, detail=response_data)

    return response_data


@router.get("/metrics")
def prometheus_metrics(db: Session = Depends(get_db)):
    """Prometheus-style metrics with Stripe webhook tracking."""
    try:
        since = _now() - timedelta(hours=24)

        total_profiles = db.query(Profile).count()
        subscribers = db.query(Profile).filter(
            Profile.subscription_status.in_(["lite", "plus", "max"])
        ).count()

        events_by_status = dict(
            db.query(StripeWebhookEvent.status, func.count(StripeWebhookEvent.id))
            .filter(StripeWebhookEvent.created_at >= since)
            .group_by(StripeWebhookEvent.status)
            .all()
        )
        dead_letters = db.query(StripeWebhookEvent).filter(StripeWebhookEvent.dead_letter.is_(True)).count()
        failed_attempts = db.query(WebhookAttempt).filter(
            WebhookAttempt.created_at >= since,
            WebhookAttempt.success.is_(False)
        ).count()
        security_events = db.query(SecurityEvent).filter(SecurityEvent.created_at >= since).count()

        memory = psutil.virtual_memory()

        metrics = f"""# HELP songmint_profiles_total Total number of user profiles
# TYPE songmint_profiles_total gauge
songmint_profiles_total {total_profiles}

# HELP songmint_subscribers_active Profiles on a paid subscription tier
# TYPE songmint_subscribers_active gauge
songmint_subscribers_active {subscribers}

# HELP songmint_stripe_events_processed Stripe events processed successfully in last 24h
# TYPE songmint_stripe_events_processed counter
songmint_stripe_events_processed {events_by_status.get(WebhookEventStatus.PROCESSED, 0)}

# HELP songmint_stripe_events_failed Stripe events awaiting redelivery in last 24h
# TYPE songmint_stripe_events_failed counter
songmint_stripe_events_failed {events_by_status.get(WebhookEventStatus.FAILED, 0)}

# HELP songmint_stripe_events_in_progress Stripe events currently claimed by a worker
# TYPE songmint_stripe_events_in_progress gauge
songmint_stripe_events_in_progress {events_by_status.get(WebhookEventStatus.PROCESSING, 0)}

# HELP songmint_stripe_events_dead_letter Stripe events that will not be retried
# TYPE songmint_stripe_events_dead_letter gauge
songmint_stripe_events_dead_letter {dead_letters}

# HELP songmint_webhook_attempts_failed Failed webhook deliveries in last 24h
# TYPE songmint_webhook_attempts_failed counter
songmint_webhook_attempts_failed {failed_attempts}

# HELP songmint_security_events Security audit events recorded in last 24h
# TYPE songmint_security_events counter
songmint_security_events {security_events}

# HELP songmint_memory_usage_percent Memory usage percentage
# TYPE songmint_memory_usage_percent gauge
songmint_memory_usage_percent {memory.percent}
"""

        return Response(content=metrics, media_type="text/plain")

    except Exception as e:
        logger.error(f"Failed to generate metrics: {e}")
        raise HTTPException(status_code=500, detail="Metrics generation failed")
