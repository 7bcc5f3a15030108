from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from songmint.models import Profile, Song

RECENT_SONGS_LIMIT = 5


@dataclass
class SongSummary:
    title: str
    status: str
    created_at: Optional[datetime]


@dataclass
class AccountSnapshot:
    """What support sees about the requesting user."""
    user_id: str
    email: Optional[str]
    full_name: Optional[str] = None
    credits_remaining: Optional[int] = None
    subscription_status: Optional[str] = None
    created_at: Optional[datetime] = None
    total_songs: int = 0
    recent_songs: List[SongSummary] = field(default_factory=list)


def load_account_snapshot(db: Session, user_id: str, email: Optional[str]) -> AccountSnapshot:
    snapshot = AccountSnapshot(user_id=user_id, email=email)

    profile = db.get(Profile, user_id)
    if profile is not None:
        snapshot.email = email or profile.email
        snapshot.full_name = profile.full_name
        snapshot.credits_remaining = profile.credits_remaining
        snapshot.subscription_status = profile.subscription_status
        snapshot.created_at = profile.created_at

    snapshot.total_songs = db.execute(
        select(func.count(Song.id)).where(Song.user_id == user_id)
    ).scalar_one()
    songs = db.execute(
        select(Song).where(Song.user_id == user_id).order_by(Song.created_at.desc()).limit(RECENT_SONGS_LIMIT)
    ).scalars()
    snapshot.recent_songs = [SongSummary(song.title, song.status, song.created_at) for song in songs]
    return snapshot
