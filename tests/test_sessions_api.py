from sqlmodel import select

from conftest import DECOY, SAFE, RecordingProvider, headers, make_user
from dateguard.main import app, get_messaging
from dateguard.models import AlertDelivery, CommandCenterMessage, EmergencyEvent, EmergencyTask, SafetySession
from dateguard.status import MessageType, SessionStatus, TriggerType


def _start(client, user, **body):
    body.setdefault("duration_minutes", 60)
    r = client.post("/api/v1/sessions", json=body, headers=headers(user))
    assert r.status_code == 200, r.text
    return r.json()["session_id"]


def test_start_and_read_session(client, owner):
    sid = _start(client, owner, lat=40.7128, lng=-74.006, notes="Lobby bar, room 1204")
    r = client.get(f"/api/v1/sessions/{sid}", headers=headers(owner))
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "active"
    assert body["gps_lat"] == 40.7128
    assert body["pre_activation_notes"] == "Lobby bar, room 1204"


def test_duration_bounds(client, owner):
    for minutes in (0, 24 * 60 + 1):
        r = client.post("/api/v1/sessions", json={"duration_minutes": minutes}, headers=headers(owner))
        assert r.status_code == 400


def test_missing_identity_is_forbidden(client, owner):
    assert client.post("/api/v1/sessions", json={"duration_minutes": 30}).status_code == 403


def test_other_users_session_is_forbidden(client, db, owner):
    sid = _start(client, owner)
    stranger = make_user(db, email="stranger@example.com", name="Stranger")
    for method, path, body in [
        ("get", f"/api/v1/sessions/{sid}", None),
        ("post", f"/api/v1/sessions/{sid}/checkin", None),
        ("post", f"/api/v1/sessions/{sid}/exit", {"code": SAFE}),
        ("post", f"/api/v1/sessions/{sid}/location", {"lat": 1.0, "lng": 1.0}),
    ]:
        r = client.request(method.upper(), path, json=body, headers=headers(stranger))
        assert r.status_code == 403, path


def test_unknown_group_rejected(client, owner):
    r = client.post("/api/v1/sessions", json={"duration_minutes": 30, "group_ids": [999]}, headers=headers(owner))
    assert r.status_code == 400


def test_safe_code_completes(client, db, owner, guardians, provider):
    sid = _start(client, owner)
    r = client.post(f"/api/v1/sessions/{sid}/exit", json={"code": SAFE}, headers=headers(owner))
    assert r.status_code == 200
    assert r.json() == {"ok": True, "session_id": sid, "status": "ended"}
    assert db.get(SafetySession, sid).status == SessionStatus.COMPLETED
    assert db.exec(select(EmergencyEvent)).all() == []
    assert provider.sent == []


def test_wrong_code_is_rejected_and_session_stays_active(client, db, owner):
    sid = _start(client, owner)
    r = client.post(f"/api/v1/sessions/{sid}/exit", json={"code": "5555"}, headers=headers(owner))
    assert r.status_code == 400
    assert db.get(SafetySession, sid).status == SessionStatus.ACTIVE


def test_decoy_code_looks_exactly_like_the_safe_code(client, db, owner, guardians, provider):
    # Covert duress is intended: a coerced user must get no visible sign that
    # help was called. Do not add a distinguishing message to either path.
    safe_sid = _start(client, owner)
    decoy_sid = _start(client, owner, lat=40.7128, lng=-74.006)

    safe = client.post(f"/api/v1/sessions/{safe_sid}/exit", json={"code": SAFE}, headers=headers(owner))
    decoy = client.post(f"/api/v1/sessions/{decoy_sid}/exit", json={"code": DECOY}, headers=headers(owner))

    assert safe.status_code == decoy.status_code == 200
    assert set(safe.json()) == set(decoy.json())
    assert {k: v for k, v in safe.json().items() if k != "session_id"} == \
        {k: v for k, v in decoy.json().items() if k != "session_id"}

    # internally the decoy session is an emergency with a single event
    db.expire_all()
    assert db.get(SafetySession, safe_sid).status == SessionStatus.COMPLETED
    assert db.get(SafetySession, decoy_sid).status == SessionStatus.EMERGENCY
    event = db.exec(select(EmergencyEvent)).one()
    assert event.trigger_type == TriggerType.DECOY_CODE
    assert event.session_id == decoy_sid

    # guardians were alerted after the response went out
    deliveries = db.exec(select(AlertDelivery).where(AlertDelivery.event_id == event.id)).all()
    assert len(deliveries) == 2
    assert all("DECOY CODE ACTIVATED" in b for _, b in provider.sent)


def test_decoy_ended_session_reads_as_completed_to_the_owner(client, db, owner, guardians):
    safe_sid = _start(client, owner)
    decoy_sid = _start(client, owner)
    client.post(f"/api/v1/sessions/{safe_sid}/exit", json={"code": SAFE}, headers=headers(owner))
    client.post(f"/api/v1/sessions/{decoy_sid}/exit", json={"code": DECOY}, headers=headers(owner))

    views = [client.get(f"/api/v1/sessions/{sid}", headers=headers(owner)).json()
             for sid in (safe_sid, decoy_sid)]
    for v in views:
        assert v["status"] == "completed"
        assert v["emergency_activated"] is False

    for sid in (safe_sid, decoy_sid):
        assert client.get(f"/api/v1/sessions/{sid}/tasks", headers=headers(owner)).json() == []
        again = client.post(f"/api/v1/sessions/{sid}/exit", json={"code": SAFE}, headers=headers(owner))
        checkin = client.post(f"/api/v1/sessions/{sid}/checkin", headers=headers(owner))
        assert again.status_code == checkin.status_code == 409
        assert again.json() == checkin.json() == {"detail": "Session is no longer active"}
        loc = client.post(f"/api/v1/sessions/{sid}/location", json={"lat": 1.5, "lng": 2.5},
                          headers=headers(owner))
        assert loc.json() == {"ok": True, "gps": {"lat": 1.5, "lng": 2.5}}

    report = client.get(f"/api/v1/reports/{owner.id}/emergencies", headers=headers(owner)).json()
    assert report["rows"] == 0


def test_checkin_and_location(client, db, owner):
    sid = _start(client, owner)
    r = client.post(f"/api/v1/sessions/{sid}/checkin", headers=headers(owner))
    assert r.status_code == 200
    assert db.get(SafetySession, sid).last_checkin_at is not None

    r = client.post(f"/api/v1/sessions/{sid}/location", json={"lat": 91, "lng": 0}, headers=headers(owner))
    assert r.status_code == 422


def test_panic_on_session_notifies_guardians_even_when_one_fails(client, db, owner, guardians):
    flaky = RecordingProvider(fail_for={"+15550100101"})
    app.dependency_overrides[get_messaging] = lambda: flaky
    sid = _start(client, owner)

    r = client.post("/api/v1/panic", json={"session_id": sid, "lat": 40.7, "lng": -74.0},
                    headers=headers(owner))
    assert r.status_code == 200
    body = r.json()
    assert body["guardians_notified"] == 1
    assert body["total_guardians"] == 2
    assert body["test_mode"] is True
    assert [o["success"] for o in body["results"]] == [False, True]

    db.expire_all()
    s = db.get(SafetySession, sid)
    assert s.status == SessionStatus.EMERGENCY
    assert s.gps_lat == 40.7
    event = db.get(EmergencyEvent, body["emergency_event_id"])
    assert event.trigger_type == TriggerType.PANIC_BUTTON
    failed = db.exec(select(AlertDelivery).where(AlertDelivery.success == False)).one()  # noqa: E712
    assert failed.error == "carrier rejected"

    # the session is terminal now
    again = client.post("/api/v1/panic", json={"session_id": sid}, headers=headers(owner))
    assert again.status_code == 409
    assert len(db.exec(select(EmergencyEvent)).all()) == 1


def test_panic_without_session_alerts_every_active_guardian(client, db, owner, guardians, provider):
    r = client.post("/api/v1/panic", json={"lat": 40.7, "lng": -74.0, "address": "5th Ave"},
                    headers=headers(owner))
    assert r.status_code == 200
    assert r.json()["guardians_notified"] == 2
    event = db.exec(select(EmergencyEvent)).one()
    assert event.session_id is None
    assert "5th Ave" in provider.sent[0][1]


def test_panic_needs_both_coordinates(client, owner):
    r = client.post("/api/v1/panic", json={"lat": 40.7}, headers=headers(owner))
    assert r.status_code == 400


def test_gps_is_broadcast_only_during_emergency(client, db, owner, guardians, provider):
    sid = _start(client, owner)
    client.post(f"/api/v1/sessions/{sid}/location", json={"lat": 10.0, "lng": 20.0}, headers=headers(owner))
    assert provider.sent == []

    client.post("/api/v1/panic", json={"session_id": sid}, headers=headers(owner))
    provider.sent.clear()
    r = client.post(f"/api/v1/sessions/{sid}/location", json={"lat": -33.8688, "lng": 151.2093},
                    headers=headers(owner))
    assert r.status_code == 200
    assert len(provider.sent) == 2
    assert "33.8688°S, 151.2093°E" in provider.sent[0][1]
    kinds = [m.message_type for m in db.exec(select(CommandCenterMessage)
                                             .where(CommandCenterMessage.session_id == sid)).all()]
    assert kinds == [MessageType.INITIAL, MessageType.GPS_UPDATE]


def test_status_update_is_only_logged_outside_emergency(client, owner, guardians, provider):
    sid = _start(client, owner)
    body = {"status_type": "checkin", "message": "All good"}
    r = client.post(f"/api/v1/sessions/{sid}/status-update", json=body, headers=headers(owner))
    assert r.json()["sent"] is False
    assert provider.sent == []

    client.post("/api/v1/panic", json={"session_id": sid}, headers=headers(owner))
    provider.sent.clear()
    r = client.post(f"/api/v1/sessions/{sid}/status-update", json=body, headers=headers(owner))
    assert r.json()["sent"] is True
    assert provider.bodies_to("+15550100101") == ["📱 DateGuard Update: All good"]


def test_status_update_type_is_checked(client, owner):
    sid = _start(client, owner)
    r = client.post(f"/api/v1/sessions/{sid}/status-update", json={"status_type": "bogus", "message": "x"},
                    headers=headers(owner))
    assert r.status_code == 400


def test_police_lookup_is_cached_on_session(client, db, owner, directory):
    sid = _start(client, owner, lat=40.7, lng=-74.0)
    r = client.post(f"/api/v1/sessions/{sid}/police", json={}, headers=headers(owner))
    assert r.status_code == 200
    assert r.json()["police_station"]["name"] == "Central Precinct"
    assert directory.calls == 1
    db.expire_all()
    assert db.get(SafetySession, sid).nearest_police["phone"] == "(555) 010-0911"


def test_police_lookup_without_results(client, owner, directory):
    directory.contact = None
    r = client.post("/api/v1/authorities/nearest", json={"lat": 0.0, "lng": 0.0}, headers=headers(owner))
    assert r.status_code == 404


def test_tasks_can_be_claimed_once(client, db, owner, guardians):
    sid = _start(client, owner)
    client.post("/api/v1/panic", json={"session_id": sid}, headers=headers(owner))
    tasks = client.get(f"/api/v1/sessions/{sid}/tasks", headers=headers(owner)).json()
    assert [t["task_type"] for t in tasks] == ["call_user", "check_location", "contact_authorities"]

    first = client.post(f"/api/v1/tasks/{tasks[0]['id']}/claim", json={"guardian_token": "tok-jordan"})
    assert first.status_code == 200
    assert first.json()["claimed_by"] == guardians[0].id
    second = client.post(f"/api/v1/tasks/{tasks[0]['id']}/claim", json={"guardian_token": "tok-riley"})
    assert second.status_code == 409
    pending = client.post(f"/api/v1/tasks/{tasks[1]['id']}/claim", json={"guardian_token": "tok-pending"})
    assert pending.status_code == 403
    assert db.get(EmergencyTask, tasks[1]["id"]).claimed_by is None


def test_panic_with_no_guardians_still_succeeds(client, db, owner, provider):
    sid = _start(client, owner)
    r = client.post("/api/v1/panic", json={"session_id": sid}, headers=headers(owner))
    assert r.status_code == 200
    body = r.json()
    assert body["guardians_notified"] == 0
    assert body["total_guardians"] == 0
    assert body["results"] == []
    assert provider.sent == []
    assert len(db.exec(select(EmergencyEvent).where(EmergencyEvent.session_id == sid)).all()) == 1
    db.expire_all()
    assert db.get(SafetySession, sid).status == SessionStatus.EMERGENCY


def test_direct_panic_with_no_guardians_still_succeeds(client, db, owner, provider):
    r = client.post("/api/v1/panic", json={"lat": 1.0, "lng": 2.0}, headers=headers(owner))
    assert r.status_code == 200
    assert r.json()["guardians_notified"] == 0
    assert provider.sent == []
    (event,) = db.exec(select(EmergencyEvent)).all()
    assert event.session_id is None
    assert event.guardians_notified == []
