from datetime import timedelta

import httpx
import pytest
from sqlmodel import select

from conftest import T0, headers, make_guardian
from dateguard.command_center import (
    build_activation_message, dispatch_emergency, format_gps, lookup_nearest_authority, partner_vai,
)
from dateguard.directory import DirectoryError, NullAuthorityDirectory, approx_distance_km
from dateguard.encounters import close_encounter_windows, create_encounter, run_expiry_sweep
from dateguard.errors import DependencyError
from dateguard.messaging import NullMessagingProvider, normalize_phone
from dateguard.models import AlertDelivery, User
from dateguard.sessions import escalate, start_session
from dateguard.status import CloseReason, TriggerType
from dateguard.triggers import panic_trigger


def test_format_gps():
    assert format_gps(40.7128, -74.006) == "40.7128°N, 74.0060°W"
    assert format_gps(-33.8688, 151.2093) == "33.8688°S, 151.2093°E"
    assert format_gps(None, 1.0) == "Unknown"


@pytest.mark.parametrize("raw,out", [
    ("555-010-0101", "+15550100101"),
    ("(555) 010 0101", "+15550100101"),
    ("+44 20 7946 0958", "+442079460958"),
])
def test_normalize_phone(raw, out):
    assert normalize_phone(raw) == out


def test_distance_is_roughly_right():
    # Times Square to Empire State, about 1 km
    assert 0.8 < approx_distance_km(40.7580, -73.9855, 40.7484, -73.9857) < 1.3


def test_activation_message(db, owner):
    partner = User(email="p@example.com", name="Partner", vai_number="VAI-000789")
    db.add(partner)
    db.commit()
    enc = create_encounter(db, owner.id, partner.id, now=T0)
    s = start_session(db, owner.id, 90, encounter_id=enc.id, notes="Hotel bar", lat=40.7128, lng=-74.006,
                      address="123 Main St", now=T0)
    s.nearest_police = {"name": "Central Precinct", "address": "1 Plaza", "phone": "911", "distance": 0.4}
    msg = build_activation_message(db, s, TriggerType.TIMER_EXPIRED, T0 + timedelta(minutes=96))

    assert msg.startswith("🚨 EMERGENCY COMMAND CENTER ACTIVATED")
    assert "User: Ava" in msg
    assert "Meeting: 8:00 PM-9:30 PM" in msg
    assert "Timer expired: 9:30 PM (NO RESPONSE)" in msg
    assert "40.7128°N, 74.0060°W" in msg
    assert 'Note: "Hotel bar"' in msg
    assert "Central Precinct" in msg
    assert "VAI: LEO-789" in msg


def test_dispatch_runs_once_per_event(db, owner, guardians, provider):
    s = start_session(db, owner.id, 60, now=T0)
    event = escalate(db, panic_trigger(s), T0)
    dispatch_emergency(db, provider, event.id)
    second = dispatch_emergency(db, provider, event.id)

    assert second.skipped
    assert len(provider.sent) == 2
    assert len(db.exec(select(AlertDelivery).where(AlertDelivery.event_id == event.id)).all()) == 2


def test_simulation_provider_reports_simulated(db, owner, guardians):
    s = start_session(db, owner.id, 60, now=T0)
    event = escalate(db, panic_trigger(s), T0)
    result = dispatch_emergency(db, NullMessagingProvider(), event.id)
    assert result.delivered == 2
    assert all(o.simulated for o in result.outcomes)


def test_null_directory_points_at_emergency_services(db):
    contact = lookup_nearest_authority(db, NullAuthorityDirectory(), 40.7, -74.0)
    assert contact.phone == "911"
    assert contact.test_mode


@pytest.mark.parametrize("err", [DirectoryError("REQUEST_DENIED"), httpx.ConnectError("down")])
def test_directory_failures_become_dependency_errors(db, err):
    class Broken:
        def nearest(self, lat, lng):
            raise err

    with pytest.raises(DependencyError):
        lookup_nearest_authority(db, Broken(), 40.7, -74.0)


def test_partner_vai_is_withheld_after_the_encounter_closes(client, db, owner, guardians, provider):
    partner = User(email="p@example.com", name="Partner", vai_number="VAI-000456")
    db.add(partner)
    db.commit()
    enc = create_encounter(db, owner.id, partner.id, now=T0)
    s = start_session(db, owner.id, 60, encounter_id=enc.id, now=T0)
    run_expiry_sweep(db, 7, now=T0 + timedelta(days=8))

    r = client.post("/api/v1/panic", json={"session_id": s.id}, headers=headers(owner))
    assert r.status_code == 200
    assert len(provider.sent) == 2
    for _, body in provider.sent:
        assert "VAI: [V.A.I. INFO EXPIRED - Review Window Closed]" in body
        assert "LEO-456" not in body


def test_partner_vai_while_window_open(db, owner):
    partner = User(email="p@example.com", name="Partner", vai_number="VAI-000456")
    db.add(partner)
    db.commit()
    enc = create_encounter(db, owner.id, partner.id, now=T0)
    s = start_session(db, owner.id, 60, encounter_id=enc.id, now=T0)
    assert partner_vai(db, s) == "LEO-456"
    close_encounter_windows(db, enc, CloseReason.REVIEWS_POSTED, T0 + timedelta(days=2))
    db.refresh(s)
    assert partner_vai(db, s) == "[V.A.I. INFO EXPIRED - Reviews Posted]"


def test_guardian_without_phone_is_not_recorded_as_notified(db, owner, guardians, provider):
    no_phone = make_guardian(db, owner, "nophone", None)
    s = start_session(db, owner.id, 60, now=T0)
    event = escalate(db, panic_trigger(s), T0)
    assert no_phone.id not in event.guardians_notified
    assert event.guardians_notified == [guardians[0].id, guardians[1].id]
    result = dispatch_emergency(db, provider, event.id)
    assert result.attempted == 2
