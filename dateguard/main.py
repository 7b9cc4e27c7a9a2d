import logging
from fastapi import FastAPI, Depends, BackgroundTasks, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Session, select

from . import command_center, encounters, guardians, reports, sessions
from .auth import current_user, get_settings, require_api_key
from .config import Settings, configure_logging
from .database import get_session, init_db
from .directory import AuthorityDirectory, build_directory
from .errors import ConflictError, DateGuardError, UnauthorizedError, ValidationError
from .messaging import MessagingProvider, build_messaging_provider
from .models import EmergencyEvent, EmergencyTask, Encounter, User
from .status import TriggerType
from .schemas import (
    AuthorityQuery, EncounterCreate, ExitCodeRequest, GroupCreate, GroupMemberAdd, GuardianInvite,
    InvitationAccept, LocationUpdate, PanicRequest, ReviewCreate, SafetyCodesRequest,
    StartSessionRequest, StatusUpdateRequest, TaskClaim, UserCreate,
)
from .triggers import Location, panic_trigger
from .watchdog import WATCHDOG_OUTCOMES, run_watchdog_sweep

log = logging.getLogger(__name__)

app = FastAPI(title="DateGuard API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DateGuardError)
def dateguard_error(request: Request, exc: DateGuardError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.on_event("startup")
def on_startup():
    configure_logging()
    init_db()


def get_messaging(request: Request, cfg: Settings = Depends(get_settings)) -> MessagingProvider:
    if getattr(request.app.state, "messaging", None) is None:
        request.app.state.messaging = build_messaging_provider(cfg)
    return request.app.state.messaging


def get_directory(request: Request, cfg: Settings = Depends(get_settings)) -> AuthorityDirectory:
    if getattr(request.app.state, "directory", None) is None:
        request.app.state.directory = build_directory(cfg)
    return request.app.state.directory


def _dispatch_later(bind, provider: MessagingProvider, event_id: int):
    # Runs after the response is sent, on its own DB session
    with Session(bind) as s:
        try:
            command_center.dispatch_emergency(s, provider, event_id)
        except Exception:
            log.exception("deferred dispatch for event %s failed", event_id)


# --- Health ---
@app.get("/health")
def health(provider: MessagingProvider = Depends(get_messaging)):
    return {"status": "healthy", "messaging": "simulation" if provider.simulated else "twilio"}


# --- Users ---
@app.post("/api/v1/users", dependencies=[Depends(require_api_key)])
def create_user(payload: UserCreate, db: Session = Depends(get_session)):
    if db.exec(select(User).where(User.email == payload.email)).first():
        raise ConflictError("Email exists")
    u = User(**payload.model_dump())
    db.add(u)
    db.commit()
    db.refresh(u)
    return u


@app.put("/api/v1/safety-codes")
def set_safety_codes(payload: SafetyCodesRequest, caller: int = Depends(current_user),
                     db: Session = Depends(get_session), cfg: Settings = Depends(get_settings)):
    guardians.get_user(db, caller)
    sessions.set_safety_codes(db, caller, payload.safe_code, payload.decoy_code, cfg.secret_key)
    return {"ok": True}


# --- Guardians & groups ---
@app.post("/api/v1/guardians")
def invite_guardian(payload: GuardianInvite, caller: int = Depends(current_user),
                    db: Session = Depends(get_session)):
    g = guardians.invite_guardian(db, caller, payload.name, payload.phone)
    return {"id": g.id, "status": g.status, "invitation_token": g.invitation_token}


@app.get("/api/v1/guardians")
def list_guardians(caller: int = Depends(current_user), db: Session = Depends(get_session)):
    return [g.model_dump(exclude={"invitation_token"}) for g in guardians.list_guardians(db, caller)]


@app.post("/api/v1/guardians/accept")
def accept_invitation(payload: InvitationAccept, db: Session = Depends(get_session)):
    g = guardians.accept_invitation(db, payload.token)
    return {"id": g.id, "status": g.status}


@app.delete("/api/v1/guardians/{guardian_id}")
def remove_guardian(guardian_id: int, caller: int = Depends(current_user), db: Session = Depends(get_session)):
    return {"ok": True, "outcome": guardians.remove_guardian(db, caller, guardian_id)}


@app.post("/api/v1/groups")
def create_group(payload: GroupCreate, caller: int = Depends(current_user), db: Session = Depends(get_session)):
    grp = guardians.create_group(db, caller, payload.name, payload.region, tuple(payload.guardian_ids))
    return {"id": grp.id, "name": grp.name, "region": grp.region,
            "guardian_ids": [g.id for g in guardians.group_members(db, grp.id)]}


@app.get("/api/v1/groups")
def list_groups(caller: int = Depends(current_user), db: Session = Depends(get_session)):
    return [{"id": grp.id, "name": grp.name, "region": grp.region,
             "guardian_ids": [g.id for g in guardians.group_members(db, grp.id)]}
            for grp in guardians.list_groups(db, caller)]


@app.post("/api/v1/groups/{group_id}/members")
def add_group_member(group_id: int, payload: GroupMemberAdd, caller: int = Depends(current_user),
                     db: Session = Depends(get_session)):
    guardians.add_member(db, caller, group_id, payload.guardian_id)
    return {"ok": True}


@app.delete("/api/v1/groups/{group_id}/members/{guardian_id}")
def remove_group_member(group_id: int, guardian_id: int, caller: int = Depends(current_user),
                        db: Session = Depends(get_session)):
    guardians.remove_member(db, caller, group_id, guardian_id)
    return {"ok": True}


# --- Sessions ---
@app.post("/api/v1/sessions")
def start_session(payload: StartSessionRequest, caller: int = Depends(current_user),
                  db: Session = Depends(get_session)):
    guardians.get_user(db, caller)
    s = sessions.start_session(
        db, caller, payload.duration_minutes, payload.group_ids, encounter_id=payload.encounter_id,
        notes=payload.notes, lat=payload.lat, lng=payload.lng, address=payload.address,
    )
    return {"session_id": s.id, "status": s.status, "scheduled_end_at": s.scheduled_end_at}


@app.get("/api/v1/sessions/{session_id}")
def get_session_detail(session_id: int, caller: int = Depends(current_user), db: Session = Depends(get_session)):
    return sessions.client_view(db, sessions.get_owned_session(db, session_id, caller))


@app.post("/api/v1/sessions/{session_id}/checkin")
def check_in(session_id: int, caller: int = Depends(current_user), db: Session = Depends(get_session)):
    s = sessions.check_in(db, sessions.get_owned_session(db, session_id, caller))
    return {"ok": True, "last_checkin_at": s.last_checkin_at}


@app.post("/api/v1/sessions/{session_id}/location")
def update_location(session_id: int, payload: LocationUpdate, caller: int = Depends(current_user),
                    db: Session = Depends(get_session), provider: MessagingProvider = Depends(get_messaging)):
    s = sessions.get_owned_session(db, session_id, caller)
    s = sessions.record_location(db, s, payload.lat, payload.lng)
    command_center.broadcast_location(db, provider, s)
    return {"ok": True, "gps": {"lat": payload.lat, "lng": payload.lng}}


@app.post("/api/v1/sessions/{session_id}/exit")
def submit_exit_code(session_id: int, payload: ExitCodeRequest, background_tasks: BackgroundTasks,
                     caller: int = Depends(current_user), db: Session = Depends(get_session),
                     cfg: Settings = Depends(get_settings), provider: MessagingProvider = Depends(get_messaging)):
    s = sessions.get_owned_session(db, session_id, caller)
    event = sessions.submit_exit_code(db, s, payload.code, cfg)
    if event is not None:
        background_tasks.add_task(_dispatch_later, db.get_bind(), provider, event.id)
    # Same body for the safe and the decoy code
    return {"ok": True, "session_id": session_id, "status": "ended"}


@app.post("/api/v1/sessions/{session_id}/status-update")
def status_update(session_id: int, payload: StatusUpdateRequest, caller: int = Depends(current_user),
                  db: Session = Depends(get_session), provider: MessagingProvider = Depends(get_messaging)):
    s = sessions.get_owned_session(db, session_id, caller)
    covert = sessions.is_covert(db, s)
    result = command_center.send_status_update(db, provider, s, payload.status_type, payload.message)
    if result is None or covert:
        return {"ok": True, "sent": False, "message": "Status update logged (emergency not active)"}
    return {"ok": True, "sent": True, "test_mode": provider.simulated, "guardians_notified": result.delivered}


@app.post("/api/v1/sessions/{session_id}/police")
def session_police(session_id: int, payload: AuthorityQuery, caller: int = Depends(current_user),
                   db: Session = Depends(get_session), directory: AuthorityDirectory = Depends(get_directory)):
    s = sessions.get_owned_session(db, session_id, caller)
    lat = payload.lat if payload.lat is not None else s.gps_lat
    lng = payload.lng if payload.lng is not None else s.gps_lng
    if lat is None or lng is None:
        raise ValidationError("Latitude and longitude are required")
    contact = command_center.lookup_nearest_authority(db, directory, lat, lng, session=s)
    return {"ok": True, "test_mode": contact.test_mode, "police_station": contact.to_dict()}


@app.get("/api/v1/sessions/{session_id}/tasks")
def session_tasks(session_id: int, caller: int = Depends(current_user), db: Session = Depends(get_session)):
    s = sessions.get_owned_session(db, session_id, caller)
    if sessions.is_covert(db, s):
        return []
    return db.exec(select(EmergencyTask).where(EmergencyTask.session_id == session_id)
                   .order_by(EmergencyTask.id)).all()


@app.post("/api/v1/tasks/{task_id}/claim")
def claim_task(task_id: int, payload: TaskClaim, db: Session = Depends(get_session)):
    return command_center.claim_task(db, task_id, payload.guardian_token)


@app.post("/api/v1/authorities/nearest")
def nearest_authority(payload: AuthorityQuery, caller: int = Depends(current_user),
                      db: Session = Depends(get_session), directory: AuthorityDirectory = Depends(get_directory)):
    if payload.lat is None or payload.lng is None:
        raise ValidationError("Latitude and longitude are required")
    contact = command_center.lookup_nearest_authority(db, directory, payload.lat, payload.lng)
    return {"ok": True, "test_mode": contact.test_mode, "police_station": contact.to_dict()}


# --- Panic ---
@app.post("/api/v1/panic")
def trigger_panic(payload: PanicRequest, caller: int = Depends(current_user), db: Session = Depends(get_session),
                  provider: MessagingProvider = Depends(get_messaging)):
    if (payload.lat is None) != (payload.lng is None):
        raise ValidationError("lat and lng must be given together")
    loc = Location(payload.lat, payload.lng, payload.address) if payload.lat is not None else None

    if payload.session_id is not None:
        s = sessions.get_owned_session(db, payload.session_id, caller)
        trigger = panic_trigger(s, loc)
        if loc is not None:
            sessions.record_location(db, s, loc.lat, loc.lng)
        event = sessions.escalate(db, trigger)
        if event is None:
            raise ConflictError("Session is no longer active")
    else:
        guardians.get_user(db, caller)
        event = sessions.raise_direct_emergency(db, caller, panic_trigger(None, loc))

    result = command_center.dispatch_emergency(db, provider, event.id)
    return {
        "ok": True,
        "emergency_event_id": event.id,
        "guardians_notified": result.delivered,
        "total_guardians": len(event.guardians_notified),
        "test_mode": provider.simulated,
        "results": result.summary()["results"],
    }


# --- Scheduled sweeps ---
@app.post("/api/v1/sweeps/watchdog", dependencies=[Depends(require_api_key)])
def watchdog_sweep(db: Session = Depends(get_session), cfg: Settings = Depends(get_settings),
                   provider: MessagingProvider = Depends(get_messaging)):
    report = run_watchdog_sweep(db, provider, cfg.grace_period_minutes)
    return {"ok": True, **report.summary(*WATCHDOG_OUTCOMES)}


@app.post("/api/v1/sweeps/publish", dependencies=[Depends(require_api_key)])
def publish_sweep(db: Session = Depends(get_session)):
    report = encounters.run_publish_sweep(db)
    return {"ok": True, **report.summary("processed")}


@app.post("/api/v1/sweeps/expiry", dependencies=[Depends(require_api_key)])
def expiry_sweep(db: Session = Depends(get_session), cfg: Settings = Depends(get_settings)):
    report = encounters.run_expiry_sweep(db, cfg.review_deadline_days)
    return {"ok": True, **report.summary("processed")}


# --- Encounters & reviews ---
@app.post("/api/v1/encounters")
def create_encounter(payload: EncounterCreate, caller: int = Depends(current_user),
                     db: Session = Depends(get_session)):
    if caller not in (payload.provider_id, payload.client_id):
        raise UnauthorizedError()
    return encounters.create_encounter(db, payload.provider_id, payload.client_id,
                                       payload.verification_session_id)


@app.get("/api/v1/encounters/{encounter_id}")
def get_encounter(encounter_id: int, caller: int = Depends(current_user), db: Session = Depends(get_session)):
    enc = db.get(Encounter, encounter_id)
    if enc is None or caller not in (enc.provider_id, enc.client_id):
        raise UnauthorizedError()
    return enc


@app.post("/api/v1/encounters/{encounter_id}/reviews")
def submit_review(encounter_id: int, payload: ReviewCreate, caller: int = Depends(current_user),
                  db: Session = Depends(get_session), cfg: Settings = Depends(get_settings)):
    return encounters.submit_review(db, encounter_id, caller, payload.overall_rating, payload.review_text,
                                    publish_delay_hours=cfg.publish_delay_hours)


# --- Reports ---
@app.get("/api/v1/reports/{user_id}/emergencies")
def emergency_report(user_id: int, caller: int = Depends(current_user), db: Session = Depends(get_session)):
    if caller != user_id:
        raise UnauthorizedError()
    df = reports.emergency_history(db, user_id)
    return JSONResponse({"type": "csv", "user_id": user_id, "data": df.to_csv(index=False), "rows": len(df)})


@app.get("/api/v1/emergencies/{event_id}")
def get_emergency(event_id: int, caller: int = Depends(current_user), db: Session = Depends(get_session)):
    event = db.get(EmergencyEvent, event_id)
    if event is None or event.user_id != caller or event.trigger_type == TriggerType.DECOY_CODE:
        raise UnauthorizedError()
    return event


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
