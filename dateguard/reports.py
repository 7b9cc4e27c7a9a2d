import pandas as pd
from sqlmodel import Session, select

from .models import EmergencyEvent
from .status import TriggerType

COLUMNS = ["id", "created_at", "trigger_type", "status", "session_id",
           "lat", "lng", "address", "guardians_notified"]


def emergency_history(db: Session, user_id: int, include_covert: bool = False) -> pd.DataFrame:
    q = select(EmergencyEvent).where(EmergencyEvent.user_id == user_id)
    if not include_covert:
        # decoy-code events never show up on the owner's own history
        q = q.where(EmergencyEvent.trigger_type != TriggerType.DECOY_CODE)
    events = db.exec(q.order_by(EmergencyEvent.created_at, EmergencyEvent.id)).all()
    rows = [{
        "id": e.id,
        "created_at": e.created_at.isoformat(),
        "trigger_type": e.trigger_type.value,
        "status": e.status.value,
        "session_id": e.session_id,
        "lat": e.location_lat,
        "lng": e.location_lng,
        "address": e.location_address,
        "guardians_notified": len(e.guardians_notified or []),
    } for e in events]
    return pd.DataFrame(rows, columns=COLUMNS)

