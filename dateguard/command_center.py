"""Emergency Command Center.

Everything here acts only once a session has flipped to emergency: the
activation alert, GPS broadcasts, status relays, the nearest-police lookup and
the task board guardians claim work from. Sends go through whatever
``MessagingProvider`` was injected, so an unconfigured deployment logs instead
of texting.
"""
import logging
from datetime import datetime
from typing import Optional

import httpx
from sqlalchemy import update
from sqlmodel import Session, select

from .directory import AuthorityContact, AuthorityDirectory, DirectoryError, maps_search_link
from .encounters import VAI_EXPIRED_MEMO
from .errors import DependencyError, NotFoundError, ConflictError, UnauthorizedError, ValidationError
from .messaging import MessagingProvider
from .models import (
    AlertDelivery, CommandCenterMessage, EmergencyEvent, EmergencyTask, Encounter, Guardian,
    SafetySession, User, utcnow,
)
from .notifications import FanOutResult, compose_emergency_alert, fan_out, resolve_recipients
from .status import GuardianStatus, MessageType, TaskType, TriggerType

log = logging.getLogger(__name__)

STATUS_TYPES = frozenset({"checkin", "extended", "ended", "user_activity"})
EMERGENCY_TASKS = (TaskType.CALL_USER, TaskType.CHECK_LOCATION, TaskType.CONTACT_AUTHORITIES)


def format_gps(lat: Optional[float], lng: Optional[float]) -> str:
    if lat is None or lng is None:
        return "Unknown"
    ns = "N" if lat >= 0 else "S"
    ew = "E" if lng >= 0 else "W"
    return f"{abs(lat):.4f}°{ns}, {abs(lng):.4f}°{ew}"


def _clock(dt: datetime) -> str:
    return dt.strftime("%I:%M %p").lstrip("0")


def partner_vai(db: Session, session: SafetySession) -> str:
    """The other party's V.A.I., reduced to its last three characters.

    Expired once the encounter's DateGuard window has closed.
    """
    if session.memo in VAI_EXPIRED_MEMO.values():
        return session.memo
    if not session.encounter_id:
        return "Not available"
    enc = db.get(Encounter, session.encounter_id)
    if enc is None:
        return "Not available"
    if not enc.dateguard_window_open:
        return VAI_EXPIRED_MEMO.get(enc.dateguard_window_closed_reason, "Not available")
    other_id = enc.client_id if enc.provider_id == session.user_id else enc.provider_id
    other = db.get(User, other_id)
    if other is None or not other.vai_number:
        return "Not available"
    return f"LEO-{other.vai_number[-3:]}"


def trigger_line(trigger_type: TriggerType, session: SafetySession, now: datetime) -> str:
    if trigger_type is TriggerType.TIMER_EXPIRED:
        return f"Timer expired: {_clock(session.scheduled_end_at)} (NO RESPONSE)"
    if trigger_type is TriggerType.DECOY_CODE:
        return f"DECOY CODE ACTIVATED at {_clock(now)}"
    if trigger_type is TriggerType.PANIC_BUTTON:
        return f"PANIC BUTTON PRESSED at {_clock(now)}"
    return f"Emergency raised manually at {_clock(now)}"


def build_activation_message(db: Session, session: SafetySession, trigger_type: TriggerType,
                             now: datetime) -> str:
    user = db.get(User, session.user_id)
    name = user.name if user else "User"
    police = session.nearest_police or {}
    if police.get("name"):
        police_info = (f"👮 NEAREST POLICE:\n{police['name']}\n{police.get('address', '')}\n"
                       f"{police.get('phone', '')}\n{police.get('distance', 0)} miles away")
    else:
        police_info = "👮 NEAREST POLICE: Not available"
    notes = f'Note: "{session.pre_activation_notes}"' if session.pre_activation_notes else "No notes provided"
    link = maps_search_link(session.gps_lat, session.gps_lng) if session.gps_lat is not None else ""

    lines = [
        "🚨 EMERGENCY COMMAND CENTER ACTIVATED",
        f"User: {name}",
        f"Meeting: {_clock(session.started_at)}-{_clock(session.scheduled_end_at)}",
        trigger_line(trigger_type, session, now),
        "",
        "📍 CURRENT LOCATION:",
        format_gps(session.gps_lat, session.gps_lng),
    ]
    if session.location_address:
        lines.append(session.location_address)
    if link:
        lines.append(link)
    lines += [
        "",
        "🏨 PRE-MEETING INTEL:",
        notes,
        "",
        police_info,
        "",
        "👤 PARTNER INFO:",
        f"VAI: {partner_vai(db, session)}",
        "",
        "⚠️ ACTIONS:",
        f"Reply SAFE if you reach {name}",
        "Reply 911 to dispatch police",
    ]
    return "\n".join(lines)


def open_command_center(db: Session, session: SafetySession, trigger_type: TriggerType, now: datetime):
    """Stage the task board and the initial alert. Caller commits."""
    for task_type in EMERGENCY_TASKS:
        db.add(EmergencyTask(session_id=session.id, task_type=task_type))
    db.add(CommandCenterMessage(
        session_id=session.id, message_type=MessageType.INITIAL,
        content=build_activation_message(db, session, trigger_type, now), sent_at=now,
    ))


def dispatch_emergency(db: Session, provider: MessagingProvider, event_id: int,
                       now: Optional[datetime] = None) -> FanOutResult:
    """Send the alert for a recorded event to the guardians captured on it.

    Runs at most once per event; a second call is logged and skipped.
    """
    event = db.get(EmergencyEvent, event_id)
    if event is None:
        raise NotFoundError("Emergency event not found")
    if db.exec(select(AlertDelivery).where(AlertDelivery.event_id == event_id)).first():
        log.warning("event %s already dispatched, not sending again", event_id)
        return FanOutResult(skipped=True)

    guardians = [db.get(Guardian, gid) for gid in event.guardians_notified]
    guardians = [g for g in guardians if g is not None]
    body = None
    if event.session_id:
        msg = db.exec(select(CommandCenterMessage).where(
            CommandCenterMessage.session_id == event.session_id,
            CommandCenterMessage.message_type == MessageType.INITIAL,
        )).first()
        body = msg.content if msg else None
    if body is None:
        body = compose_emergency_alert(db.get(User, event.user_id), event)
    if not guardians:
        log.warning("event %s: no active guardians to notify", event_id)
        return FanOutResult()
    return fan_out(db, provider, guardians, body, event_id=event.id, session_id=event.session_id, now=now)


def _relay(db: Session, provider: MessagingProvider, session: SafetySession, body: str,
           message_type: MessageType, content: str, now: datetime) -> FanOutResult:
    recipients = resolve_recipients(db, session.user_id, session.selected_group_ids)
    result = fan_out(db, provider, recipients, body, session_id=session.id, now=now)
    db.add(CommandCenterMessage(session_id=session.id, message_type=message_type, content=content, sent_at=now))
    db.commit()
    return result


def broadcast_location(db: Session, provider: MessagingProvider, session: SafetySession,
                       now: Optional[datetime] = None) -> Optional[FanOutResult]:
    if not session.emergency_activated or session.gps_lat is None or session.gps_lng is None:
        return None
    now = now or utcnow()
    body = f"📍 GPS Update: {format_gps(session.gps_lat, session.gps_lng)}\n{maps_search_link(session.gps_lat, session.gps_lng)}"
    return _relay(db, provider, session, body, MessageType.GPS_UPDATE, body, now)


def send_status_update(db: Session, provider: MessagingProvider, session: SafetySession,
                       status_type: str, message: str, now: Optional[datetime] = None) -> Optional[FanOutResult]:
    if status_type not in STATUS_TYPES:
        raise ValidationError(f"status_type must be one of {sorted(STATUS_TYPES)}")
    if not message or not message.strip():
        raise ValidationError("message is required")
    if not session.emergency_activated:
        log.info("session %s status update (%s) logged only: %s", session.id, status_type, message)
        return None
    now = now or utcnow()
    return _relay(db, provider, session, f"📱 DateGuard Update: {message}",
                  MessageType.STATUS_CHANGE, message, now)


def lookup_nearest_authority(db: Session, directory: AuthorityDirectory, lat: float, lng: float,
                             session: Optional[SafetySession] = None) -> AuthorityContact:
    try:
        contact = directory.nearest(lat, lng)
    except (DirectoryError, httpx.HTTPError) as e:
        log.error("authority lookup failed at %s,%s: %s", lat, lng, e)
        raise DependencyError("Authority lookup unavailable") from e
    if contact is None:
        raise NotFoundError("No police stations found nearby")
    if session is not None:
        session.nearest_police = contact.to_dict()
        db.add(session)
        db.commit()
    return contact


def claim_task(db: Session, task_id: int, guardian_token: str, now: Optional[datetime] = None) -> EmergencyTask:
    task = db.get(EmergencyTask, task_id)
    if task is None:
        raise NotFoundError("Task not found")
    guardian = db.exec(select(Guardian).where(Guardian.invitation_token == guardian_token)).first()
    session = db.get(SafetySession, task.session_id)
    if (guardian is None or guardian.status != GuardianStatus.ACTIVE
            or session is None or guardian.user_id != session.user_id):
        raise UnauthorizedError()

    res = db.exec(
        update(EmergencyTask)
        .where(EmergencyTask.id == task_id, EmergencyTask.claimed_by.is_(None))
        .values(claimed_by=guardian.id, claimed_at=now or utcnow())
    )
    db.commit()
    if res.rowcount == 0:
        raise ConflictError("Task already claimed")
    db.refresh(task)
    log.info("task %s (%s) claimed by guardian %s", task.id, task.task_type.value, guardian.id)
    return task
