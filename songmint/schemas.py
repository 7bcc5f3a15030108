from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CreditBalance(BaseModel):
    credits: int


class CreditGrant(BaseModel):
    credits: int
    reason: str = "Credit addition"


class CreditGrantResult(BaseModel):
    success: bool = True
    oldCredits: Optional[int] = None
    newCredits: Optional[int] = None
    change: int


class CheckoutRequest(BaseModel):
    pack: str


class SubscriptionCheckoutRequest(BaseModel):
    plan: str


class CheckoutSessionOut(BaseModel):
    sessionId: Optional[str] = None
    url: Optional[str] = None
    redirectToPortal: bool = False


class PortalSessionOut(BaseModel):
    url: str


class SubscriptionSummary(BaseModel):
    planName: str
    creditsPerMonth: int
    amount: Optional[str] = None
    nextBilling: Optional[datetime] = None
    status: Optional[str] = None


class SubscriptionVerification(BaseModel):
    success: bool = True
    subscription: SubscriptionSummary


class SongCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    questionnaire_data: Dict[str, Any]


class SongOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    status: str
    questionnaire_data: Dict[str, Any]
    generated_lyrics: Optional[str] = None
    audio_url: Optional[str] = None
    backup_audio_url: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class SongList(BaseModel):
    songs: List[SongOut]


class EventStatusOut(BaseModel):
    event_id: str
    event_type: str
    status: str
    processed: bool
    attempts: int
    dead_letter: bool
    error_message: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class SupportRequest(BaseModel):
    subject: str = Field(min_length=1, max_length=200)
    message: str = Field(min_length=1, max_length=5000)


class IssueReport(BaseModel):
    songId: str = Field(min_length=1)
    songUrl: Optional[str] = None
    issueDescription: str = Field(min_length=1, max_length=5000)


class SupportResult(BaseModel):
    success: bool = True
    message: str
