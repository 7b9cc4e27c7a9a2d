"""Expiry watchdog for DateGuard sessions.

Meant to be driven every five minutes by an external scheduler. A check-in
counts if it landed no earlier than ``grace`` before the scheduled end; the
session is only escalated once ``grace`` has also run out after the end.
"""
import enum
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlmodel import Session, select

from .command_center import dispatch_emergency
from .messaging import MessagingProvider
from .models import SafetySession, utcnow
from .sessions import complete_session, escalate
from .status import SessionStatus
from .sweeps import SweepItem, SweepReport
from .triggers import expiry_trigger

log = logging.getLogger(__name__)


WATCHDOG_OUTCOMES = ("completed", "triggered", "pending", "skipped")


class Verdict(str, enum.Enum):
    PENDING = "pending"
    COMPLETE = "complete"
    EMERGENCY = "emergency"


def checkin_is_valid(scheduled_end: datetime, last_checkin: Optional[datetime], grace: timedelta) -> bool:
    return last_checkin is not None and last_checkin >= scheduled_end - grace


def evaluate_expiry(scheduled_end: datetime, last_checkin: Optional[datetime], now: datetime,
                    grace: timedelta) -> Verdict:
    if checkin_is_valid(scheduled_end, last_checkin, grace):
        return Verdict.COMPLETE
    if now > scheduled_end + grace:
        return Verdict.EMERGENCY
    return Verdict.PENDING


def _handle(db: Session, provider: MessagingProvider, session: SafetySession, now: datetime,
            grace: timedelta) -> SweepItem:
    verdict = evaluate_expiry(session.scheduled_end_at, session.last_checkin_at, now, grace)
    if verdict is Verdict.PENDING:
        return SweepItem(session.id, "pending")
    if verdict is Verdict.COMPLETE:
        done = complete_session(db, session.id, now)
        return SweepItem(session.id, "completed" if done else "skipped")

    log.warning("session %s expired without check-in", session.id)
    event = escalate(db, expiry_trigger(session, now), now)
    if event is None:
        return SweepItem(session.id, "skipped")
    result = dispatch_emergency(db, provider, event.id, now)
    return SweepItem(session.id, "triggered", guardians_notified=result.delivered)


def run_watchdog_sweep(db: Session, provider: MessagingProvider, grace_minutes: int = 5,
                       now: Optional[datetime] = None) -> SweepReport:
    now = now or utcnow()
    grace = timedelta(minutes=grace_minutes)
    expired = db.exec(
        select(SafetySession)
        .where(SafetySession.status == SessionStatus.ACTIVE, SafetySession.scheduled_end_at < now)
        .order_by(SafetySession.scheduled_end_at)
    ).all()

    report = SweepReport()
    for session in expired:
        sid = session.id
        try:
            report.items.append(_handle(db, provider, session, now, grace))
        except Exception as e:
            db.rollback()
            log.exception("watchdog failed on session %s", sid)
            report.items.append(SweepItem(sid, "failed", error=str(e)))

    s = report.summary(*WATCHDOG_OUTCOMES)
    log.info("watchdog: checked %d, completed %d, triggered %d, pending %d, failed %d",
             s["checked"], s["completed"], s["triggered"], s["pending"], s["failed"])
    return report
