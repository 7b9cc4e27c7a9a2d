from sqlmodel import Session, select
from .config import settings
from .database import engine, init_db
from .models import Guardian, GuardianGroup, GuardianGroupMember, SafetyCodes, User, utcnow
from .codes import hash_code
from .status import GuardianStatus

USERS = [
    {"email": "provider1@example.com", "name": "Ava Provider", "phone": "5550100001", "vai_number": "VAI-000123"},
    {"email": "client1@example.com", "name": "Sam Client", "phone": "5550100002", "vai_number": "VAI-000456"},
]

GUARDIANS = [
    {"name": "Jordan", "phone": "5550100101"},
    {"name": "Riley", "phone": "5550100102"},
]

# Demo codes only
SAFE_CODE, DECOY_CODE = "1234", "4321"


def run():
    init_db()
    with Session(engine) as s:
        for u in USERS:
            if s.exec(select(User).where(User.email == u["email"])).first():
                continue
            s.add(User(**u))
        s.commit()

        owner = s.exec(select(User).where(User.email == USERS[0]["email"])).one()
        if not s.exec(select(Guardian).where(Guardian.user_id == owner.id)).first():
            members = []
            for g in GUARDIANS:
                guardian = Guardian(user_id=owner.id, status=GuardianStatus.ACTIVE, accepted_at=utcnow(), **g)
                s.add(guardian)
                members.append(guardian)
            group = GuardianGroup(user_id=owner.id, name="Close friends", region="Local")
            s.add(group)
            s.flush()
            for g in members:
                s.add(GuardianGroupMember(group_id=group.id, guardian_id=g.id))
        if s.get(SafetyCodes, owner.id) is None:
            s.add(SafetyCodes(user_id=owner.id, safe_code_hash=hash_code(SAFE_CODE, settings.secret_key),
                              decoy_code_hash=hash_code(DECOY_CODE, settings.secret_key)))
        s.commit()
    print("Seed complete")


if __name__ == "__main__":
    run()
