"""Encounter review windows.

An encounter opens two windows on acceptance, one for reviews and one for
DateGuard. Both close together and for good, either when both parties'
reviews go live or when the review deadline passes.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import update
from sqlmodel import Session, select

from .errors import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from .models import Encounter, Review, SafetySession, User, utcnow
from .status import CloseReason, EncounterStatus, SessionStatus
from .sweeps import SweepItem, SweepReport

log = logging.getLogger(__name__)

VAI_EXPIRED_MEMO = {
    CloseReason.REVIEWS_POSTED: "[V.A.I. INFO EXPIRED - Reviews Posted]",
    CloseReason.DEADLINE_PASSED: "[V.A.I. INFO EXPIRED - Review Window Closed]",
}


def create_encounter(db: Session, provider_id: int, client_id: int,
                     verification_session_id: Optional[str] = None,
                     now: Optional[datetime] = None) -> Encounter:
    if provider_id == client_id:
        raise ValidationError("An encounter needs two different parties")
    for uid in (provider_id, client_id):
        if db.get(User, uid) is None:
            raise NotFoundError(f"User {uid} not found")
    now = now or utcnow()
    enc = Encounter(provider_id=provider_id, client_id=client_id,
                    verification_session_id=verification_session_id,
                    accepted_at=now, completed_at=now)
    db.add(enc)
    db.commit()
    db.refresh(enc)
    log.info("encounter %s opened between %s and %s", enc.id, provider_id, client_id)
    return enc


def submit_review(db: Session, encounter_id: int, reviewer_id: int, overall_rating: int,
                  review_text: Optional[str] = None, publish_delay_hours: int = 24,
                  now: Optional[datetime] = None) -> Review:
    if not 1 <= overall_rating <= 5:
        raise ValidationError("Overall rating must be between 1 and 5")
    enc = db.get(Encounter, encounter_id)
    if enc is None:
        raise NotFoundError("Encounter not found")
    if reviewer_id not in (enc.provider_id, enc.client_id):
        raise UnauthorizedError()
    if enc.status == EncounterStatus.CLOSED or not enc.reviews_window_open:
        raise ConflictError("Review window is closed")
    existing = db.exec(select(Review).where(
        Review.encounter_id == encounter_id, Review.reviewer_id == reviewer_id)).first()
    if existing:
        raise ConflictError("You have already submitted a review for this encounter")

    now = now or utcnow()
    is_provider = reviewer_id == enc.provider_id
    review = Review(
        encounter_id=encounter_id, reviewer_id=reviewer_id,
        reviewed_user_id=enc.client_id if is_provider else enc.provider_id,
        overall_rating=overall_rating, review_text=review_text, submitted=True, submitted_at=now,
    )
    if is_provider:
        enc.provider_review_submitted = True
    else:
        enc.client_review_submitted = True
    if enc.provider_review_submitted and enc.client_review_submitted:
        enc.reviews_publish_scheduled_for = now + timedelta(hours=publish_delay_hours)
    db.add(review)
    db.add(enc)
    db.commit()
    db.refresh(review)
    return review


def close_encounter_windows(db: Session, encounter: Encounter, reason: CloseReason, now: datetime,
                            publish_submitted: bool = True) -> int:
    """Close both windows and the encounter; returns how many reviews went live.

    Also blanks V.A.I. details on linked sessions that are still running.
    Windows are only ever switched off here.
    """
    if encounter.status == EncounterStatus.CLOSED:
        raise ConflictError("Encounter is already closed")
    published = 0
    if publish_submitted:
        res = db.exec(
            update(Review)
            .where(Review.encounter_id == encounter.id, Review.submitted == True,  # noqa: E712
                   Review.published == False)  # noqa: E712
            .values(published=True, published_at=now)
        )
        published = res.rowcount

    encounter.reviews_window_open = False
    encounter.reviews_window_closed_at = now
    encounter.reviews_window_closed_reason = reason
    encounter.dateguard_window_open = False
    encounter.dateguard_window_closed_at = now
    encounter.dateguard_window_closed_reason = reason
    encounter.status = EncounterStatus.CLOSED
    encounter.closed_at = now
    if published:
        encounter.reviews_published = True
        encounter.reviews_published_at = now
    db.add(encounter)

    db.exec(
        update(SafetySession)
        .where(SafetySession.encounter_id == encounter.id, SafetySession.status == SessionStatus.ACTIVE)
        .values(memo=VAI_EXPIRED_MEMO[reason])
    )
    db.commit()
    log.info("encounter %s closed (%s), %d review(s) published", encounter.id, reason.value, published)
    return published


def _sweep(db: Session, encounters: list[Encounter], reason: CloseReason, now: datetime) -> SweepReport:
    report = SweepReport()
    for enc in encounters:
        eid = enc.id
        try:
            close_encounter_windows(db, enc, reason, now)
            report.items.append(SweepItem(eid, "processed"))
        except Exception as e:
            db.rollback()
            log.exception("could not close encounter %s", eid)
            report.items.append(SweepItem(eid, "failed", error=str(e)))
    return report


def run_publish_sweep(db: Session, now: Optional[datetime] = None) -> SweepReport:
    """Publish encounters whose two reviews have sat out the publish delay."""
    now = now or utcnow()
    ready = db.exec(select(Encounter).where(
        Encounter.status != EncounterStatus.CLOSED,
        Encounter.provider_review_submitted == True,  # noqa: E712
        Encounter.client_review_submitted == True,  # noqa: E712
        Encounter.reviews_published == False,  # noqa: E712
        Encounter.reviews_publish_scheduled_for <= now,
    )).all()
    report = _sweep(db, ready, CloseReason.REVIEWS_POSTED, now)
    log.info("publish sweep: %d processed, %d failed", report.count("processed"), report.count("failed"))
    return report


def run_expiry_sweep(db: Session, deadline_days: int = 7, now: Optional[datetime] = None) -> SweepReport:
    """Close encounters past the review deadline, publishing a lone review if there is one."""
    now = now or utcnow()
    cutoff = now - timedelta(days=deadline_days)
    expired = db.exec(select(Encounter).where(
        Encounter.status != EncounterStatus.CLOSED,
        Encounter.accepted_at <= cutoff,
        Encounter.reviews_window_open == True,  # noqa: E712
        Encounter.reviews_published == False,  # noqa: E712
    )).all()
    report = _sweep(db, expired, CloseReason.DEADLINE_PASSED, now)
    log.info("expiry sweep: %d processed, %d failed", report.count("processed"), report.count("failed"))
    return report
