from typing import Optional, List
from datetime import datetime, timezone
from sqlalchemy import JSON, UniqueConstraint
from sqlmodel import SQLModel, Field, Column

from .status import (
    SessionStatus, EncounterStatus, GuardianStatus, TriggerType, EventStatus,
    CloseReason, MessageType, TaskType,
)


def utcnow() -> datetime:
    # Naive UTC throughout; SQLite drops tzinfo on the way back anyway
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, unique=True)
    name: str
    phone: Optional[str] = None
    vai_number: Optional[str] = None


class Guardian(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)  # owner
    name: str
    phone: Optional[str] = None
    status: GuardianStatus = Field(default=GuardianStatus.PENDING)
    invitation_token: Optional[str] = Field(default=None, index=True, unique=True)
    invited_at: datetime = Field(default_factory=utcnow)
    accepted_at: Optional[datetime] = None


class GuardianGroup(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    name: str
    region: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class GuardianGroupMember(SQLModel, table=True):
    group_id: int = Field(foreign_key="guardiangroup.id", primary_key=True)
    guardian_id: int = Field(foreign_key="guardian.id", primary_key=True)


class SafetyCodes(SQLModel, table=True):
    user_id: int = Field(foreign_key="user.id", primary_key=True)
    safe_code_hash: str
    decoy_code_hash: str
    updated_at: datetime = Field(default_factory=utcnow)


class SafetySession(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    status: SessionStatus = Field(default=SessionStatus.ACTIVE, index=True)
    started_at: datetime = Field(default_factory=utcnow)
    scheduled_end_at: datetime = Field(index=True)
    ended_at: Optional[datetime] = None
    last_checkin_at: Optional[datetime] = None
    gps_lat: Optional[float] = None
    gps_lng: Optional[float] = None
    last_gps_update: Optional[datetime] = None
    location_address: Optional[str] = None
    selected_group_ids: List[int] = Field(default_factory=list, sa_column=Column(JSON))
    emergency_activated: bool = False
    encounter_id: Optional[int] = Field(default=None, foreign_key="encounter.id", index=True)
    memo: Optional[str] = None
    pre_activation_notes: Optional[str] = None
    nearest_police: Optional[dict] = Field(default=None, sa_column=Column(JSON))


class EmergencyEvent(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    # unique: one event per session, NULLs allowed for direct panics
    session_id: Optional[int] = Field(default=None, foreign_key="safetysession.id", unique=True)
    trigger_type: TriggerType
    location_lat: Optional[float] = None
    location_lng: Optional[float] = None
    location_address: Optional[str] = None
    # recipients the alert went out to; per-recipient outcome is in AlertDelivery
    guardians_notified: List[int] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, index=True)
    status: EventStatus = Field(default=EventStatus.ACTIVE)


class AlertDelivery(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    event_id: Optional[int] = Field(default=None, foreign_key="emergencyevent.id", index=True)
    session_id: Optional[int] = Field(default=None, foreign_key="safetysession.id", index=True)
    guardian_id: int = Field(index=True)  # no FK: guardians can be removed, history stays
    phone: str
    success: bool
    simulated: bool = False
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    sent_at: datetime = Field(default_factory=utcnow)


class CommandCenterMessage(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: int = Field(foreign_key="safetysession.id", index=True)
    message_type: MessageType
    content: str
    sent_at: datetime = Field(default_factory=utcnow)


class EmergencyTask(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: int = Field(foreign_key="safetysession.id", index=True)
    task_type: TaskType
    claimed_by: Optional[int] = None  # guardian id
    claimed_at: Optional[datetime] = None


class Encounter(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    verification_session_id: Optional[str] = None
    provider_id: int = Field(foreign_key="user.id")
    client_id: int = Field(foreign_key="user.id")
    status: EncounterStatus = Field(default=EncounterStatus.ACTIVE, index=True)
    accepted_at: datetime = Field(default_factory=utcnow, index=True)
    completed_at: Optional[datetime] = None
    reviews_window_open: bool = True
    reviews_window_closed_at: Optional[datetime] = None
    reviews_window_closed_reason: Optional[CloseReason] = None
    dateguard_window_open: bool = True
    dateguard_window_closed_at: Optional[datetime] = None
    dateguard_window_closed_reason: Optional[CloseReason] = None
    provider_review_submitted: bool = False
    client_review_submitted: bool = False
    reviews_publish_scheduled_for: Optional[datetime] = None
    reviews_published: bool = False
    reviews_published_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None


class Review(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("encounter_id", "reviewer_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    encounter_id: int = Field(foreign_key="encounter.id", index=True)
    reviewer_id: int = Field(foreign_key="user.id")
    reviewed_user_id: int = Field(foreign_key="user.id")
    overall_rating: int
    review_text: Optional[str] = None
    submitted: bool = True
    submitted_at: datetime = Field(default_factory=utcnow)
    published: bool = False
    published_at: Optional[datetime] = None
