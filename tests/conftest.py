"""
Consent Vault - Test Configuration and Fixtures
"""
from datetime import datetime, timedelta, timezone

import pytest
from faker import Faker
from fastapi.testclient import TestClient

from consent_vault import crud
from consent_vault import models  # noqa: F401  registers tables on Base
from consent_vault.config import Settings
from consent_vault.consent import ConsentLedger
from consent_vault.db import Base, make_engine, make_session_factory
from consent_vault.encryption_utils import build_cipher
from consent_vault.main import create_app
from consent_vault.profile_codec import encrypt_profile_fields

fake = Faker()

TEST_KEY = "test-encryption-key-for-testing-only"
OTHER_KEY = "another-test-key-that-does-not-match"


class SteppingClock:
    """Returns a strictly increasing time on every call."""

    def __init__(self, start=None, step=timedelta(minutes=1)):
        self.current = start or datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self):
        self.current += self.step
        return self.current


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite:///:memory:",
        encryption_key=TEST_KEY,
        kdf_iterations=1_000,
        ip_lookup_url=None,
        environment="test",
    )


@pytest.fixture
def cipher(settings):
    return build_cipher(settings)


@pytest.fixture
def other_cipher(settings):
    return build_cipher(Settings(encryption_key=OTHER_KEY, kdf_iterations=settings.kdf_iterations))


@pytest.fixture
def engine(settings):
    engine = make_engine(settings)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def clock():
    return SteppingClock()


@pytest.fixture
def ledger(session_factory, cipher, clock):
    return ConsentLedger(session_factory, cipher, clock=clock)


@pytest.fixture
def make_profile(session_factory, cipher):
    """Insert an encrypted profile and return its id."""

    def _make(role="student", **fields):
        row = {
            "email": fake.unique.email(),
            "role": role,
            "full_name": fake.name(),
            "phone": fake.phone_number(),
            "address_line_1": fake.street_address(),
            "city": fake.city(),
            "zip_code": fake.postcode(),
            "state": "Leinster",
            "country": "IE",
        }
        row.update(fields)
        with session_factory() as db:
            return crud.insert_profile(db, encrypt_profile_fields(row, cipher)).id

    return _make


@pytest.fixture
def client(settings):
    app = create_app(settings)
    with TestClient(app) as c:
        yield c
