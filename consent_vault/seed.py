# consent_vault/seed.py
import structlog

from . import crud
from .config import load_settings
from .consent import ConsentLedger
from .db import Base, make_engine, make_session_factory
from .encryption_utils import build_cipher
from .logging_config import configure_logging
from .profile_codec import encrypt_profile_fields

logger = structlog.get_logger()

DEMO_PARENT = {
    "email": "parent.demo@example.com",
    "role": "parent",
    "full_name": "Anita Sharma",
    "phone": "+353 87 123 4567",
    "address_line_1": "12 Gurukul Lane",
    "city": "Dublin",
    "zip_code": "D02 X285",
    "state": "Leinster",
    "country": "IE",
}

DEMO_STUDENTS = [
    {"email": "arjun.demo@example.com", "student_id": "EYG-IE-0001", "full_name": "Arjun Sharma"},
    {"email": "meera.demo@example.com", "student_id": "EYG-IE-0002", "full_name": "Meera Sharma"},
]


def seed_demo(session_factory, cipher) -> bool:
    """Insert one parent with two children and parental consent for the first. Returns False if data exists."""
    with session_factory() as db:
        if crud.list_profiles(db):
            logger.info("seed_skipped", reason="profiles already exist")
            return False

        parent = crud.insert_profile(db, encrypt_profile_fields(DEMO_PARENT, cipher))
        children = []
        for student in DEMO_STUDENTS:
            row = {
                **student,
                "role": "student",
                "parent_id": parent.id,
                "state": DEMO_PARENT["state"],
                "country": DEMO_PARENT["country"],
            }
            children.append(crud.insert_profile(db, encrypt_profile_fields(row, cipher)))

    ledger = ConsentLedger(session_factory, cipher)
    ledger.give_consent(children[0].id, parent.id, user_agent="seed-script")
    logger.info("seed_done", profiles=1 + len(children))
    return True


if __name__ == "__main__":
    settings = load_settings()
    configure_logging(settings.log_level, settings.log_json)
    engine = make_engine(settings)
    Base.metadata.create_all(bind=engine)
    seed_demo(make_session_factory(engine), build_cipher(settings))
