"""Security audit trail.

Writes never raise: a store failure is logged and the caller carries on,
so an audit outage cannot turn a rejected request into a 500.
"""
from typing import Any, Dict, Optional
import logging

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from songmint.models import SecurityEvent, SecuritySeverity
from songmint.services.rate_limit import client_identifier

logger = logging.getLogger(__name__)


class SecurityEventType:
    INVALID_ACCESS_ATTEMPT = "INVALID_ACCESS_ATTEMPT"
    PRIVILEGE_ESCALATION = "PRIVILEGE_ESCALATION"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    REJECTED_WEBHOOK = "REJECTED_WEBHOOK"
    ADMIN_CREDIT_GRANT = "ADMIN_CREDIT_GRANT"


def log_security_event(
    db: Session,
    event_type: str,
    severity: str,
    description: str,
    user_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> Optional[SecurityEvent]:
    ip_address = user_agent = None
    if request is not None:
        ip_address = client_identifier(request)
        user_agent = (request.headers.get("user-agent") or "")[:512] or None

    event = SecurityEvent(
        user_id=user_id,
        event_type=event_type,
        severity=severity,
        description=description,
        event_metadata=metadata,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    try:
        db.add(event)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to log security event {event_type}: {e}")
        return None

    log = logger.warning if severity in (SecuritySeverity.HIGH, SecuritySeverity.CRITICAL) else logger.info
    log(f"Security event {event_type} [{severity}] user={user_id} ip={ip_address}: {description}")
    return event
