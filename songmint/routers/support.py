import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import CurrentUser, get_current_user
from ..db import get_db
from ..dependencies import get_notifier
from ..exceptions import ExternalServiceError, NotFoundError
from ..models import Song
from ..schemas import IssueReport, SupportRequest, SupportResult
from ..services.notifications import EmailNotifier
from ..services.support import load_account_snapshot

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post('/contact', response_model=SupportResult)
def contact_support(
    payload: SupportRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: EmailNotifier = Depends(get_notifier),
):
    """Forward a support request, with the user's account details, to the support inbox."""
    account = load_account_snapshot(db, user.id, user.email)
    if not notifier.send_support_request(account, payload.subject, payload.message):
        raise ExternalServiceError("resend", "Failed to send support email")
    logger.info(f"Support request from user {user.id}: {payload.subject}")
    return SupportResult(message="Support request sent")


@router.post('/report-issue', response_model=SupportResult)
def report_issue(
    payload: IssueReport,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: EmailNotifier = Depends(get_notifier),
):
    song = db.get(Song, payload.songId)
    if song is None or song.user_id != user.id:
        raise NotFoundError("Song", payload.songId)

    account = load_account_snapshot(db, user.id, user.email)
    if not notifier.send_issue_report(account, song, payload.issueDescription, payload.songUrl):
        raise ExternalServiceError("resend", "Failed to send issue report")
    logger.info(f"Issue report from user {user.id} for song {song.id}")
    return SupportResult(message="Issue report sent successfully")
