import logging

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..auth import CurrentUser, get_current_user
from ..db import get_db
from ..exceptions import NotFoundError
from ..models import Song, SongStatus, _uuid
from ..schemas import SongCreate, SongList, SongOut
from ..services.credits import USER_NOT_FOUND, deduct_credits, update_user_credits

router = APIRouter()
logger = logging.getLogger(__name__)

SONG_CREDIT_COST = 1


def _owned_song(db: Session, song_id: str, user_id: str) -> Song:
    song = db.get(Song, song_id)
    if song is None or song.user_id != user_id:
        raise NotFoundError("Song", song_id)
    return song


@router.post('', response_model=SongOut, status_code=201)
def create_song(payload: SongCreate, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    """Spend one credit and queue a song for generation."""
    song_id = _uuid()
    result = deduct_credits(
        db, user.id, SONG_CREDIT_COST,
        operation_type="song_creation",
        payment_reference=song_id,
        context={"title": payload.title},
    )
    if not result.success:
        raise HTTPException(status_code=404 if result.error == USER_NOT_FOUND else 400, detail=result.error)

    song = Song(
        id=song_id,
        user_id=user.id,
        title=payload.title,
        status=SongStatus.PENDING,
        questionnaire_data=payload.questionnaire_data,
    )
    try:
        db.add(song)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to store song {song_id} for user {user.id}: {e}")
        refund = update_user_credits(
            db, user.id, SONG_CREDIT_COST, "song_creation_refund", payment_reference=song_id,
        )
        if not refund.success:
            logger.error(f"Refund for song {song_id} failed: {refund.error}")
        raise HTTPException(status_code=500, detail="Song could not be saved") from e
    db.refresh(song)
    logger.info(f"Song {song_id} created for user {user.id}")
    return song


@router.get('', response_model=SongList)
def list_songs(user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    songs = (
        db.query(Song)
        .filter(Song.user_id == user.id)
        .order_by(Song.created_at.desc())
        .all()
    )
    return SongList(songs=[SongOut.model_validate(song) for song in songs])


@router.get('/{song_id}', response_model=SongOut)
def get_song(song_id: str, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    return _owned_song(db, song_id, user.id)


@router.delete('/{song_id}', status_code=204)
def delete_song(song_id: str, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    song = _owned_song(db, song_id, user.id)
    db.delete(song)
    db.commit()
    logger.info(f"Song {song_id} deleted by user {user.id}")
    return Response(status_code=204)
