"""Guardian resolution and best-effort SMS fan-out."""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Sequence

from sqlmodel import Session, select

from .messaging import MessagingProvider
from .models import AlertDelivery, EmergencyEvent, Guardian, GuardianGroupMember, User, utcnow
from .status import GuardianStatus

log = logging.getLogger(__name__)


@dataclass
class DeliveryOutcome:
    guardian_id: int
    phone: Optional[str]
    success: bool
    simulated: bool = False
    error: Optional[str] = None


@dataclass
class FanOutResult:
    outcomes: list[DeliveryOutcome] = field(default_factory=list)
    skipped: bool = False

    @property
    def attempted(self) -> int:
        return len(self.outcomes)

    @property
    def delivered(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failed(self) -> int:
        return self.attempted - self.delivered

    def summary(self) -> dict:
        return {
            "attempted": self.attempted,
            "delivered": self.delivered,
            "failed": self.failed,
            "results": [o.__dict__ for o in self.outcomes],
        }


def resolve_recipients(db: Session, user_id: int, group_ids: Optional[Sequence[int]] = None) -> list[Guardian]:
    """Active guardians of ``user_id`` that have a phone; restricted to ``group_ids`` members when given."""
    q = select(Guardian).where(Guardian.user_id == user_id, Guardian.status == GuardianStatus.ACTIVE,
                               Guardian.phone.is_not(None), Guardian.phone != "")
    if group_ids:
        q = q.join(GuardianGroupMember, GuardianGroupMember.guardian_id == Guardian.id).where(
            GuardianGroupMember.group_id.in_(list(group_ids)))
    seen, out = set(), []
    for g in db.exec(q.order_by(Guardian.id)).all():
        if g.id not in seen:
            seen.add(g.id)
            out.append(g)
    return out


def compose_emergency_alert(user: Optional[User], event: EmergencyEvent) -> str:
    name = user.name if user else "User"
    where = event.location_address or (
        f"{event.location_lat:.4f}, {event.location_lng:.4f}" if event.location_lat is not None
        and event.location_lng is not None else "Unknown")
    return (
        "🚨 EMERGENCY ALERT\n\n"
        f"{name} has triggered an emergency alert.\n\n"
        f"📍 Location: {where}\n"
        f"🕐 Time: {event.created_at:%Y-%m-%d %H:%M} UTC\n\n"
        "⚠️ This is a real emergency. Check on them immediately."
    )


def fan_out(db: Session, provider: MessagingProvider, recipients: Iterable[Guardian], body: str,
            event_id: Optional[int] = None, session_id: Optional[int] = None,
            now: Optional[datetime] = None) -> FanOutResult:
    """Send ``body`` to every guardian with a phone. One failure never stops the rest."""
    result = FanOutResult()
    for g in recipients:
        if not g.phone:
            log.info("guardian %s has no phone, skipping", g.id)
            continue
        try:
            receipt = provider.send_sms(g.phone, body)
            outcome = DeliveryOutcome(g.id, g.phone, True, simulated=receipt.simulated)
            message_id = receipt.message_id
        except Exception as e:
            log.error("SMS to guardian %s (%s) failed: %s", g.id, g.phone, e)
            outcome = DeliveryOutcome(g.id, g.phone, False, error=str(e))
            message_id = None
        result.outcomes.append(outcome)
        db.add(AlertDelivery(
            event_id=event_id, session_id=session_id, guardian_id=g.id, phone=g.phone,
            success=outcome.success, simulated=outcome.simulated, provider_message_id=message_id,
            error=outcome.error, sent_at=now or utcnow(),
        ))
    db.commit()
    log.info("fan-out event=%s session=%s: %d/%d delivered", event_id, session_id,
             result.delivered, result.attempted)
    return result
