# consent_vault/crud.py
from __future__ import annotations

from typing import Iterable, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .models import ConsentEvent, Profile, StudentConsent

GIVEN = "given"
NOT_GIVEN = "not_given"
WITHDRAWN = "withdrawn"
ALL = "all"
CONSENT_STATUSES = (GIVEN, NOT_GIVEN, WITHDRAWN, ALL)


# ---------------- PROFILES ----------------
def get_profile(db: Session, profile_id: str) -> Optional[Profile]:
    return db.get(Profile, profile_id)


def get_profile_by_email(db: Session, email: str) -> Optional[Profile]:
    return db.execute(select(Profile).where(Profile.email == email)).scalar_one_or_none()


def insert_profile(db: Session, row: dict) -> Profile:
    profile = Profile(**row)
    db.add(profile)
    db.commit()
    db.refresh(profile)
    return profile


def update_profile(db: Session, profile: Profile, patch: dict) -> Profile:
    # only columns present in the patch are touched
    for key, value in patch.items():
        setattr(profile, key, value)
    db.commit()
    db.refresh(profile)
    return profile


def list_profiles(db: Session) -> Sequence[Profile]:
    return db.execute(select(Profile).order_by(Profile.created_at)).scalars().all()


def count_students(db: Session) -> int:
    return db.execute(select(func.count()).select_from(Profile).where(Profile.role == "student")).scalar_one()


def children_of(db: Session, parent_id: str) -> set[str]:
    rows = db.execute(select(Profile.id).where(Profile.parent_id == parent_id)).scalars().all()
    return set(rows)


# ---------------- CONSENT ----------------
def get_consent(db: Session, student_id: str) -> Optional[StudentConsent]:
    stmt = select(StudentConsent).where(StudentConsent.student_id == student_id)
    return db.execute(stmt).unique().scalar_one_or_none()


def get_consents(db: Session, student_ids: Iterable[str]) -> Sequence[StudentConsent]:
    ids = list(student_ids)
    if not ids:
        return []
    stmt = select(StudentConsent).where(StudentConsent.student_id.in_(ids))
    return db.execute(stmt).unique().scalars().all()


def _status_filter(stmt, consent_status: str):
    if consent_status == GIVEN:
        return stmt.where(StudentConsent.consent_given.is_(True), StudentConsent.withdrawn.is_(False))
    if consent_status == NOT_GIVEN:
        return stmt.where(StudentConsent.consent_given.is_(False))
    if consent_status == WITHDRAWN:
        return stmt.where(StudentConsent.withdrawn.is_(True))
    return stmt


def page_consents(
    db: Session,
    *,
    limit: Optional[int] = None,
    offset: int = 0,
    consent_status: str = ALL,
) -> tuple[Sequence[StudentConsent], int]:
    count_stmt = _status_filter(select(func.count()).select_from(StudentConsent), consent_status)
    total = db.execute(count_stmt).scalar_one()

    stmt = _status_filter(select(StudentConsent), consent_status).order_by(
        StudentConsent.consent_date.desc().nulls_last(),
        StudentConsent.id,
    )
    if offset:
        stmt = stmt.offset(offset)
    if limit is not None:
        stmt = stmt.limit(limit)
    rows = db.execute(stmt).unique().scalars().all()
    return rows, total


def count_consents(db: Session, consent_status: str) -> int:
    stmt = _status_filter(select(func.count()).select_from(StudentConsent), consent_status)
    return db.execute(stmt).scalar_one()


def save_consent(db: Session, row: StudentConsent, event: ConsentEvent) -> StudentConsent:
    """Write the consent row and its history event in one commit."""
    db.add(row)
    db.add(event)
    db.commit()
    db.refresh(row)
    return row


def list_events(db: Session, student_id: str) -> Sequence[ConsentEvent]:
    stmt = (
        select(ConsentEvent)
        .where(ConsentEvent.student_id == student_id)
        .order_by(ConsentEvent.occurred_at, ConsentEvent.id)
    )
    return db.execute(stmt).scalars().all()
