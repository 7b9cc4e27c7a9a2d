"""DateGuard session lifecycle.

Status moves only through compare-and-set updates conditioned on the row still
being ``active``; whoever loses the race gets ``None`` back and must treat the
session as already handled.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .codes import hash_code, validate_code_pair
from .command_center import open_command_center
from .config import Settings
from .errors import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from .models import EmergencyEvent, Encounter, GuardianGroup, SafetyCodes, SafetySession, utcnow
from .notifications import resolve_recipients
from .status import SessionStatus, TriggerType, next_session_status
from .triggers import Trigger, code_trigger

log = logging.getLogger(__name__)

MAX_DURATION_MINUTES = 24 * 60


def get_owned_session(db: Session, session_id: int, user_id: int) -> SafetySession:
    session = db.get(SafetySession, session_id)
    if session is None:
        raise NotFoundError("Session not found")
    if session.user_id != user_id:
        raise UnauthorizedError()
    return session


def set_safety_codes(db: Session, user_id: int, safe_code: str, decoy_code: str, key: str) -> SafetyCodes:
    validate_code_pair(safe_code, decoy_code)
    codes = db.get(SafetyCodes, user_id) or SafetyCodes(user_id=user_id, safe_code_hash="", decoy_code_hash="")
    codes.safe_code_hash = hash_code(safe_code, key)
    codes.decoy_code_hash = hash_code(decoy_code, key)
    codes.updated_at = utcnow()
    db.add(codes)
    db.commit()
    log.info("safety codes updated for user %s", user_id)
    return codes


def start_session(db: Session, user_id: int, duration_minutes: int, group_ids: Sequence[int] = (),
                  encounter_id: Optional[int] = None, notes: Optional[str] = None,
                  lat: Optional[float] = None, lng: Optional[float] = None,
                  address: Optional[str] = None, now: Optional[datetime] = None) -> SafetySession:
    if not 1 <= duration_minutes <= MAX_DURATION_MINUTES:
        raise ValidationError(f"duration_minutes must be between 1 and {MAX_DURATION_MINUTES}")
    if (lat is None) != (lng is None):
        raise ValidationError("lat and lng must be given together")

    group_ids = sorted(set(group_ids))
    if group_ids:
        owned = db.exec(select(GuardianGroup.id).where(
            GuardianGroup.id.in_(group_ids), GuardianGroup.user_id == user_id)).all()
        if len(owned) != len(group_ids):
            raise ValidationError("Unknown guardian group selected")
    if encounter_id is not None:
        enc = db.get(Encounter, encounter_id)
        if enc is None:
            raise NotFoundError("Encounter not found")
        if user_id not in (enc.provider_id, enc.client_id):
            raise UnauthorizedError()
        if not enc.dateguard_window_open:
            raise ConflictError("DateGuard window for this encounter is closed")

    now = now or utcnow()
    session = SafetySession(
        user_id=user_id, started_at=now, scheduled_end_at=now + timedelta(minutes=duration_minutes),
        selected_group_ids=group_ids, encounter_id=encounter_id, pre_activation_notes=notes,
        gps_lat=lat, gps_lng=lng, last_gps_update=now if lat is not None else None,
        location_address=address,
    )
    db.add(session)
    db.commit()
    db.refresh(session)
    log.info("session %s started for user %s, ends %s", session.id, user_id, session.scheduled_end_at)
    return session


def check_in(db: Session, session: SafetySession, now: Optional[datetime] = None) -> SafetySession:
    if session.status != SessionStatus.ACTIVE:
        raise ConflictError("Session is no longer active")
    session.last_checkin_at = now or utcnow()
    db.add(session)
    db.commit()
    db.refresh(session)
    return session


def record_location(db: Session, session: SafetySession, lat: float, lng: float,
                    now: Optional[datetime] = None) -> SafetySession:
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        raise ValidationError("lat/lng out of range")
    # Location keeps flowing while an emergency is live; after a normal end it
    # is dropped without complaint so both endings look the same to the client
    if session.status == SessionStatus.COMPLETED:
        log.info("session %s completed, location update dropped", session.id)
        return session
    session.gps_lat = lat
    session.gps_lng = lng
    session.last_gps_update = now or utcnow()
    db.add(session)
    db.commit()
    db.refresh(session)
    return session


def _compare_and_set(db: Session, session_id: int, target: SessionStatus, **values) -> bool:
    res = db.exec(
        update(SafetySession)
        .where(SafetySession.id == session_id, SafetySession.status == SessionStatus.ACTIVE)
        .values(status=next_session_status(SessionStatus.ACTIVE, target), **values)
    )
    return res.rowcount == 1


def complete_session(db: Session, session_id: int, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    done = _compare_and_set(db, session_id, SessionStatus.COMPLETED, ended_at=now)
    db.commit()
    if done:
        log.info("session %s completed", session_id)
    return done


def escalate(db: Session, trigger: Trigger, now: Optional[datetime] = None,
             ended: bool = False) -> Optional[EmergencyEvent]:
    """Flip an active session to emergency and record its single event.

    The status change, the event, the task board and the initial command-center
    message commit together, before anyone is notified. Returns None when the
    session was no longer active.
    """
    now = now or trigger.at
    values = {"emergency_activated": True}
    if ended:
        values["ended_at"] = now
    if not _compare_and_set(db, trigger.session_id, SessionStatus.EMERGENCY, **values):
        db.rollback()
        log.info("session %s no longer active, %s ignored", trigger.session_id, trigger.trigger_type.value)
        return None

    session = db.get(SafetySession, trigger.session_id)
    db.refresh(session)
    recipients = resolve_recipients(db, session.user_id, session.selected_group_ids)
    event = EmergencyEvent(
        user_id=session.user_id, session_id=session.id, trigger_type=trigger.trigger_type,
        location_lat=trigger.location.lat, location_lng=trigger.location.lng,
        location_address=trigger.location.address,
        guardians_notified=[g.id for g in recipients], created_at=now,
    )
    db.add(event)
    open_command_center(db, session, trigger.trigger_type, now)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        log.warning("session %s already has an emergency event", trigger.session_id)
        return None
    db.refresh(event)
    log.warning("session %s -> emergency (%s), event %s, %d guardians",
                session.id, trigger.trigger_type.value, event.id, len(recipients))
    return event


def raise_direct_emergency(db: Session, user_id: int, trigger: Trigger,
                           now: Optional[datetime] = None) -> EmergencyEvent:
    """Emergency outside any session: every active guardian of the user is alerted."""
    recipients = resolve_recipients(db, user_id)
    event = EmergencyEvent(
        user_id=user_id, trigger_type=trigger.trigger_type,
        location_lat=trigger.location.lat, location_lng=trigger.location.lng,
        location_address=trigger.location.address,
        guardians_notified=[g.id for g in recipients], created_at=now or trigger.at,
    )
    db.add(event)
    db.commit()
    db.refresh(event)
    log.warning("direct emergency for user %s (%s), event %s", user_id, trigger.trigger_type.value, event.id)
    return event


def submit_exit_code(db: Session, session: SafetySession, code: str, settings: Settings,
                     now: Optional[datetime] = None) -> Optional[EmergencyEvent]:
    """End the session with the safe code, or covertly escalate on the decoy code.

    Returns the event on the decoy path so the caller can dispatch it out of band.
    Callers must not let the return value shape their response.
    """
    now = now or utcnow()
    codes = db.get(SafetyCodes, session.user_id)
    if codes is None:
        raise ValidationError("Safety codes not set up")
    trigger = code_trigger(session, code, codes, settings.secret_key)
    if trigger is None:
        if not complete_session(db, session.id, now):
            raise ConflictError("Session is no longer active")
        return None
    event = escalate(db, trigger, now, ended=True)
    if event is None:
        raise ConflictError("Session is no longer active")
    return event


def is_covert(db: Session, session: SafetySession) -> bool:
    """True when the session was escalated by the decoy code."""
    if session.status != SessionStatus.EMERGENCY:
        return False
    event = db.exec(select(EmergencyEvent).where(EmergencyEvent.session_id == session.id)).first()
    return event is not None and event.trigger_type == TriggerType.DECOY_CODE


def client_view(db: Session, session: SafetySession) -> dict:
    # The owner sees a decoy-ended session exactly as a normally completed one
    data = session.model_dump()
    if is_covert(db, session):
        data.update(status=SessionStatus.COMPLETED, emergency_activated=False, nearest_police=None)
    return data
