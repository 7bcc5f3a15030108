from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ..auth import CurrentUser, get_current_user, require_admin
from ..db import get_db
from ..models import SecuritySeverity
from ..schemas import CreditBalance, CreditGrant, CreditGrantResult
from ..services.credits import USER_NOT_FOUND, add_credits, get_balance
from ..services.security_events import SecurityEventType, log_security_event

router = APIRouter()


@router.get('/balance', response_model=CreditBalance)
def balance(user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    return CreditBalance(credits=get_balance(db, user.id))


@router.post('/{user_id}/add', response_model=CreditGrantResult, dependencies=[Depends(require_admin)])
def add(user_id: str, grant: CreditGrant, request: Request, db: Session = Depends(get_db)):
    result = add_credits(db, user_id, grant.credits, operation_type="admin_grant", context={"reason": grant.reason})
    if not result.success:
        raise HTTPException(status_code=404 if result.error == USER_NOT_FOUND else 400, detail=result.error)

    log_security_event(
        db, SecurityEventType.ADMIN_CREDIT_GRANT, SecuritySeverity.MEDIUM,
        f"Admin granted {result.change} credits",
        user_id=user_id,
        metadata={"reason": grant.reason, "old_credits": result.old_credits, "new_credits": result.new_credits},
        request=request,
    )
    return CreditGrantResult(oldCredits=result.old_credits, newCredits=result.new_credits, change=result.change)
