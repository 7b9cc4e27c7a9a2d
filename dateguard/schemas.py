"""
Request bodies for the DateGuard API.

Responses are the SQLModel rows themselves or small dicts built in main.py.
"""
from typing import List, Optional
from pydantic import BaseModel, Field


class UserCreate(BaseModel):
    email: str
    name: str
    phone: Optional[str] = None
    vai_number: Optional[str] = None


class SafetyCodesRequest(BaseModel):
    safe_code: str = Field(..., description="Code that ends a session normally")
    decoy_code: str = Field(..., description="Duress code: looks like a normal end, raises an emergency")


class StartSessionRequest(BaseModel):
    duration_minutes: int = Field(..., description="Length of the monitored window")
    group_ids: List[int] = Field(default_factory=list, description="Guardian groups to alert; empty means all guardians")
    encounter_id: Optional[int] = None
    notes: Optional[str] = Field(None, description="Pre-meeting intel shared with guardians on emergency")
    lat: Optional[float] = None
    lng: Optional[float] = None
    address: Optional[str] = None


class LocationUpdate(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class ExitCodeRequest(BaseModel):
    code: str


class StatusUpdateRequest(BaseModel):
    status_type: str = Field(..., description="checkin, extended, ended or user_activity")
    message: str


class PanicRequest(BaseModel):
    session_id: Optional[int] = None
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)
    address: Optional[str] = None


class AuthorityQuery(BaseModel):
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)


class GuardianInvite(BaseModel):
    name: str
    phone: Optional[str] = None


class InvitationAccept(BaseModel):
    token: str


class GroupCreate(BaseModel):
    name: str
    region: Optional[str] = None
    guardian_ids: List[int] = Field(default_factory=list)


class GroupMemberAdd(BaseModel):
    guardian_id: int


class TaskClaim(BaseModel):
    guardian_token: str


class EncounterCreate(BaseModel):
    provider_id: int
    client_id: int
    verification_session_id: Optional[str] = None


class ReviewCreate(BaseModel):
    overall_rating: int = Field(..., description="1-5")
    review_text: Optional[str] = None
