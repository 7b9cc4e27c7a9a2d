"""Closed status vocabularies and the session transition table."""
import enum

from .errors import ConflictError


class SessionStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    EMERGENCY = "emergency"


class EncounterStatus(str, enum.Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class GuardianStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"


class TriggerType(str, enum.Enum):
    PANIC_BUTTON = "panic_button"
    DECOY_CODE = "decoy_code"
    MISSED_CHECKIN = "missed_checkin"
    TIMER_EXPIRED = "timer_expired"
    MANUAL = "manual"


class EventStatus(str, enum.Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"


class CloseReason(str, enum.Enum):
    DEADLINE_PASSED = "deadline_passed"
    REVIEWS_POSTED = "reviews_posted"


class MessageType(str, enum.Enum):
    INITIAL = "initial"
    GPS_UPDATE = "gps_update"
    STATUS_CHANGE = "status_change"


class TaskType(str, enum.Enum):
    CALL_USER = "call_user"
    CHECK_LOCATION = "check_location"
    CONTACT_AUTHORITIES = "contact_authorities"


class InvalidTransition(ConflictError):
    def __init__(self, current: SessionStatus, target: SessionStatus):
        # Same text for every state: a decoy-ended session must read like a completed one
        super().__init__("Session is no longer active")
        self.current = current
        self.target = target


SESSION_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.ACTIVE: frozenset({SessionStatus.COMPLETED, SessionStatus.EMERGENCY}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.EMERGENCY: frozenset(),
}


def next_session_status(current: SessionStatus, target: SessionStatus) -> SessionStatus:
    """Return ``target`` if the move is legal, otherwise raise InvalidTransition."""
    if target not in SESSION_TRANSITIONS[SessionStatus(current)]:
        raise InvalidTransition(SessionStatus(current), target)
    return target


def is_terminal(status: SessionStatus) -> bool:
    return not SESSION_TRANSITIONS[SessionStatus(status)]
