from dataclasses import dataclass
from typing import Any, Dict, Optional
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..exceptions import InsufficientCreditsError, InvalidCreditAmountError
from ..models import Profile, CreditTransaction

logger = logging.getLogger(__name__)

MAX_CREDITS_PER_GRANT = 1000

USER_NOT_FOUND = "User not found"
INSUFFICIENT_CREDITS = "Insufficient credits"


@dataclass
class CreditUpdateResult:
    success: bool
    old_credits: Optional[int] = None
    new_credits: Optional[int] = None
    change: int = 0
    duplicate: bool = False
    error: Optional[str] = None


def get_balance(db: Session, user_id: str) -> int:
    credits = db.execute(
        select(Profile.credits_remaining).where(Profile.id == user_id)
    ).scalar_one_or_none()
    return credits or 0


def update_user_credits(
    db: Session,
    target_user_id: str,
    credit_change: int,
    operation_type: str,
    payment_reference: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
) -> CreditUpdateResult:
    """Apply a signed credit change atomically and record it in the audit trail.

    The balance is changed by a single conditional UPDATE so concurrent
    writers cannot lose updates and the balance never goes negative. A
    change already applied under the same (operation_type, payment_reference)
    is reported as a duplicate success and rolled back.
    """
    result = db.execute(
        update(Profile)
        .where(
            Profile.id == target_user_id,
            Profile.credits_remaining + credit_change >= 0,
        )
        .values(credits_remaining=Profile.credits_remaining + credit_change)
        .execution_options(synchronize_session=False)
    )

    if result.rowcount == 0:
        db.rollback()
        exists = db.execute(select(Profile.id).where(Profile.id == target_user_id)).first()
        error = INSUFFICIENT_CREDITS if exists else USER_NOT_FOUND
        logger.warning(f"Credit change {credit_change:+d} ({operation_type}) rejected for user {target_user_id}: {error}")
        return CreditUpdateResult(success=False, change=credit_change, error=error)

    new_credits = get_balance(db, target_user_id)
    try:
        db.add(CreditTransaction(
            user_id=target_user_id,
            amount=credit_change,
            operation_type=operation_type,
            payment_reference=payment_reference,
            balance_before=new_credits - credit_change,
            balance_after=new_credits,
            context=context,
        ))
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.info(
            f"Credit change {operation_type}/{payment_reference} already applied for user {target_user_id}"
        )
        balance = get_balance(db, target_user_id)
        return CreditUpdateResult(success=True, old_credits=balance, new_credits=balance, duplicate=True)

    db.commit()

    logger.info(
        f"Credits {credit_change:+d} for user {target_user_id} ({operation_type}, ref={payment_reference}): "
        f"{new_credits - credit_change} -> {new_credits}"
    )
    return CreditUpdateResult(
        success=True,
        old_credits=new_credits - credit_change,
        new_credits=new_credits,
        change=credit_change,
    )


def _validate_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidCreditAmountError(amount, "must be an integer")
    if amount <= 0:
        raise InvalidCreditAmountError(amount, "must be positive")
    return amount


def add_credits(
    db: Session,
    user_id: str,
    credits: int,
    operation_type: str = "credit_grant",
    payment_reference: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
) -> CreditUpdateResult:
    """Grant credits to a user. At most MAX_CREDITS_PER_GRANT per call."""
    _validate_amount(credits)
    if credits > MAX_CREDITS_PER_GRANT:
        raise InvalidCreditAmountError(credits, f"cannot add more than {MAX_CREDITS_PER_GRANT} credits at once")
    return update_user_credits(db, user_id, credits, operation_type, payment_reference, context)


def deduct_credits(
    db: Session,
    user_id: str,
    credits: int,
    operation_type: str = "credit_spend",
    payment_reference: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
) -> CreditUpdateResult:
    """Spend credits; raises InsufficientCreditsError when the balance is too low."""
    _validate_amount(credits)
    result = update_user_credits(db, user_id, -credits, operation_type, payment_reference, context)
    if not result.success and result.error == INSUFFICIENT_CREDITS:
        raise InsufficientCreditsError(required=credits, available=get_balance(db, user_id), user_id=user_id)
    return result
