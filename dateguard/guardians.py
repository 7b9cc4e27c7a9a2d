import logging
import secrets
from datetime import datetime
from typing import Optional

from sqlalchemy import delete
from sqlmodel import Session, select

from .errors import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from .models import Guardian, GuardianGroup, GuardianGroupMember, User, utcnow
from .status import GuardianStatus

log = logging.getLogger(__name__)


def get_user(db: Session, user_id: int) -> User:
    u = db.get(User, user_id)
    if not u:
        raise NotFoundError("User not found")
    return u


def _owned_guardian(db: Session, user_id: int, guardian_id: int) -> Guardian:
    g = db.get(Guardian, guardian_id)
    if g is None:
        raise NotFoundError("Guardian not found")
    if g.user_id != user_id:
        raise UnauthorizedError()
    return g


def _owned_group(db: Session, user_id: int, group_id: int) -> GuardianGroup:
    grp = db.get(GuardianGroup, group_id)
    if grp is None:
        raise NotFoundError("Group not found")
    if grp.user_id != user_id:
        raise UnauthorizedError()
    return grp


def invite_guardian(db: Session, user_id: int, name: str, phone: Optional[str]) -> Guardian:
    get_user(db, user_id)
    if not name or not name.strip():
        raise ValidationError("Guardian name is required")
    g = Guardian(user_id=user_id, name=name.strip(), phone=phone,
                 invitation_token=secrets.token_urlsafe(24))
    db.add(g)
    db.commit()
    db.refresh(g)
    log.info("user %s invited guardian %s", user_id, g.id)
    return g


def accept_invitation(db: Session, token: str, now: Optional[datetime] = None) -> Guardian:
    g = db.exec(select(Guardian).where(Guardian.invitation_token == token)).first()
    if g is None:
        raise NotFoundError("Invitation not found")
    if g.status == GuardianStatus.ACTIVE:
        raise ConflictError("Invitation already accepted")
    g.status = GuardianStatus.ACTIVE
    g.accepted_at = now or utcnow()
    db.add(g)
    db.commit()
    db.refresh(g)
    log.info("guardian %s accepted invitation from user %s", g.id, g.user_id)
    return g


def remove_guardian(db: Session, user_id: int, guardian_id: int) -> str:
    """Drop a guardian. Returns ``cancelled`` for a pending invite, ``removed`` otherwise."""
    g = _owned_guardian(db, user_id, guardian_id)
    outcome = "cancelled" if g.status == GuardianStatus.PENDING else "removed"
    db.exec(delete(GuardianGroupMember).where(GuardianGroupMember.guardian_id == g.id))
    db.delete(g)
    db.commit()
    log.info("user %s %s guardian %s", user_id, outcome, guardian_id)
    return outcome


def list_guardians(db: Session, user_id: int) -> list[Guardian]:
    return db.exec(select(Guardian).where(Guardian.user_id == user_id).order_by(Guardian.id)).all()


def create_group(db: Session, user_id: int, name: str, region: Optional[str] = None,
                 guardian_ids: tuple[int, ...] = ()) -> GuardianGroup:
    get_user(db, user_id)
    if not name or not name.strip():
        raise ValidationError("Group name is required")
    members = [_owned_guardian(db, user_id, gid) for gid in set(guardian_ids)]
    grp = GuardianGroup(user_id=user_id, name=name.strip(), region=region)
    db.add(grp)
    db.flush()
    for g in members:
        db.add(GuardianGroupMember(group_id=grp.id, guardian_id=g.id))
    db.commit()
    db.refresh(grp)
    return grp


def add_member(db: Session, user_id: int, group_id: int, guardian_id: int):
    grp = _owned_group(db, user_id, group_id)
    g = _owned_guardian(db, user_id, guardian_id)
    if db.get(GuardianGroupMember, (grp.id, g.id)) is None:
        db.add(GuardianGroupMember(group_id=grp.id, guardian_id=g.id))
        db.commit()


def remove_member(db: Session, user_id: int, group_id: int, guardian_id: int):
    grp = _owned_group(db, user_id, group_id)
    link = db.get(GuardianGroupMember, (grp.id, guardian_id))
    if link is None:
        raise NotFoundError("Guardian is not in this group")
    db.delete(link)
    db.commit()


def group_members(db: Session, group_id: int) -> list[Guardian]:
    return db.exec(
        select(Guardian)
        .join(GuardianGroupMember, GuardianGroupMember.guardian_id == Guardian.id)
        .where(GuardianGroupMember.group_id == group_id)
        .order_by(Guardian.id)
    ).all()


def list_groups(db: Session, user_id: int) -> list[GuardianGroup]:
    return db.exec(select(GuardianGroup).where(GuardianGroup.user_id == user_id).order_by(GuardianGroup.id)).all()
