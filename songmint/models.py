import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, DateTime, Integer, Boolean, ForeignKey, Text, Numeric, JSON,
    Index, UniqueConstraint, CheckConstraint,
)
from sqlalchemy.sql import func
from .db import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionStatus:
    FREE = "free"
    LITE = "lite"
    PLUS = "plus"
    MAX = "max"
    CANCELLED = "cancelled"


class SongStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Profile(Base):
    """One row per auth user; created by the signup trigger."""
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True)
    email = Column(String(255), index=True)
    full_name = Column(String(255))
    credits_remaining = Column(Integer, nullable=False, default=0)
    subscription_status = Column(String(20), nullable=False, default=SubscriptionStatus.FREE)
    stripe_customer_id = Column(String(255), index=True)
    stripe_subscription_id = Column(String(255), index=True)
    subscription_plan_id = Column(String(255))
    billing_cycle_anchor = Column(DateTime(timezone=True))
    next_billing_date = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("credits_remaining >= 0", name="ck_profiles_credits_non_negative"),
    )


class Song(Base):
    __tablename__ = "songs"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default=SongStatus.PENDING)
    questionnaire_data = Column(JSON, nullable=False)
    generated_lyrics = Column(Text)
    audio_url = Column(Text)
    backup_audio_url = Column(Text)
    mureka_task_id = Column(String(255))
    mureka_data = Column(JSON)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    completed_at = Column(DateTime(timezone=True))


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    song_id = Column(String(36), ForeignKey("songs.id", ondelete="SET NULL"))
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    payment_provider_id = Column(String(255), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default="completed")
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class CreditTransaction(Base):
    """Audit trail of every credit ledger mutation."""
    __tablename__ = "credit_transactions"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)  # +/- credits
    operation_type = Column(String(50), nullable=False)
    payment_reference = Column(String(255))
    balance_before = Column(Integer)
    balance_after = Column(Integer)
    context = Column(JSON)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("operation_type", "payment_reference", name="uq_credit_tx_operation_reference"),
    )


class BillingHistory(Base):
    """Append-only record of successful payments."""
    __tablename__ = "billing_history"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    credits_added = Column(Integer, nullable=False)
    stripe_invoice_id = Column(String(255), unique=True)
    stripe_subscription_id = Column(String(255))
    stripe_payment_intent_id = Column(String(255), unique=True)
    stripe_session_id = Column(String(255))
    billing_period_start = Column(DateTime(timezone=True))
    billing_period_end = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class WebhookEventStatus:
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class StripeWebhookEvent(Base):
    """Dedup ledger keyed by the Stripe event id."""
    __tablename__ = "stripe_webhook_events"

    id = Column(String(36), primary_key=True, default=_uuid)
    stripe_event_id = Column(String(255), unique=True, index=True, nullable=False)
    event_type = Column(String(100), nullable=False)
    user_id = Column(String(36))
    event_metadata = Column(JSON)
    status = Column(String(20), nullable=False, default=WebhookEventStatus.PROCESSING)
    attempts = Column(Integer, nullable=False, default=1)
    error_message = Column(Text)
    dead_letter = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_stripe_webhook_events_status", "status", "created_at"),
        CheckConstraint("attempts >= 0", name="ck_webhook_attempts_non_negative"),
    )


class WebhookAttempt(Base):
    __tablename__ = "webhook_attempts"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(String(255), nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    attempt_number = Column(Integer, nullable=False)
    success = Column(Boolean, nullable=False)
    error_details = Column(Text)
    processing_time_ms = Column(Integer)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class SecuritySeverity:
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class SecurityEvent(Base):
    """Audit trail of access failures and privileged actions."""
    __tablename__ = "security_events"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), index=True)
    event_type = Column(String(50), nullable=False)
    severity = Column(String(10), nullable=False, default=SecuritySeverity.LOW)
    description = Column(Text, nullable=False)
    event_metadata = Column(JSON)
    ip_address = Column(String(64))
    user_agent = Column(String(512))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_security_events_type_created", "event_type", "created_at"),
    )
