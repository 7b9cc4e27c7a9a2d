"""Classify inbound signals into canonical emergency triggers."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .codes import CodeMatch, match_code
from .errors import ValidationError
from .models import SafetyCodes, SafetySession, utcnow
from .status import SessionStatus, TriggerType, next_session_status

CLIENT_TRIGGERS = frozenset({TriggerType.PANIC_BUTTON, TriggerType.DECOY_CODE, TriggerType.MANUAL})


@dataclass(frozen=True)
class Location:
    lat: Optional[float] = None
    lng: Optional[float] = None
    address: Optional[str] = None


@dataclass(frozen=True)
class Trigger:
    trigger_type: TriggerType
    session_id: Optional[int] = None
    location: Location = field(default_factory=Location)
    at: datetime = field(default_factory=utcnow)


def session_location(session: SafetySession) -> Location:
    return Location(lat=session.gps_lat, lng=session.gps_lng, address=session.location_address)


def panic_trigger(session: Optional[SafetySession], location: Optional[Location] = None,
                  trigger_type: TriggerType = TriggerType.PANIC_BUTTON) -> Trigger:
    if trigger_type not in CLIENT_TRIGGERS:
        raise ValidationError(f"{trigger_type.value} cannot be raised by a client")
    if session is None:
        return Trigger(trigger_type=trigger_type, location=location or Location())
    next_session_status(session.status, SessionStatus.EMERGENCY)
    return Trigger(trigger_type=trigger_type, session_id=session.id,
                   location=location or session_location(session))


def code_trigger(session: SafetySession, code: str, codes: Optional[SafetyCodes], key: str) -> Optional[Trigger]:
    """Return None for the safe code, a decoy Trigger for the duress code.

    An unrecognised code raises ValidationError.
    """
    next_session_status(session.status, SessionStatus.COMPLETED)
    result = match_code(code, codes, key)
    if result is CodeMatch.NONE:
        raise ValidationError("Invalid code")
    if result is CodeMatch.DECOY:
        return Trigger(trigger_type=TriggerType.DECOY_CODE, session_id=session.id,
                       location=session_location(session))
    return None


def expiry_trigger(session: SafetySession, at: datetime) -> Trigger:
    """Watchdog-only: an absent or stale check-in past the grace period."""
    return Trigger(trigger_type=TriggerType.TIMER_EXPIRED, session_id=session.id,
                   location=session_location(session), at=at)
