# consent_vault/consent.py
"""
Student consent ledger.

One ``student_consent`` row per student holds the current state; every
give/withdraw also appends a ``consent_events`` row so earlier cycles stay
auditable. Each mutation is written in a single commit. Concurrent writes
for the same student are last-writer-wins.

Persistence errors never reach the caller: reads return None or empty
results, writes return None, and the failure is logged.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Sequence

import structlog
from sqlalchemy.exc import SQLAlchemyError

from . import crud
from .errors import ConsentStateError, PersistenceFailure
from .models import ConsentEvent, Profile, StudentConsent
from .profile_codec import decrypt_profile_fields
from .schemas import (
    ConsentEventOut,
    ConsentHistory,
    ConsentOut,
    ConsentPage,
    ConsentStats,
    ProfileSummary,
)

logger = structlog.get_logger()

CONSENT_TEXT = """I/ my children(s) wish to voluntarily participate in eYogi Gurukul ('eYogi') activities and for this purpose, I agree that, I grant the absolute rights to eYogi as below:

• eYogi has right to photograph, film and otherwise record my/ my children(s) voice, image, conversations, sounds, performance(s) in connection with any participation, preparation, filming, or recordings (collectively 'recordings');
• eYogi has right to edit and change such recordings and to produce, distribute, promote, maintain or publish such recordings in any print or digital media including website and social media;
• eYogi has right to transfer or give any of all of benefits under this agreement to designated third party for processing and accreditation to achieve objectives of organisation;
• eYogi has right to copyright the recordings in its own name.

I understand that eYogi is volunteer-based charity and may not have insurance to cover for any personal injury or damage to any property that may occur during eYogi activities.

I consent that eYogi may contact me via text messages, phone calls, emails and postal letters for the promotion and organisation of its activities.

I consent for eYogi to process my personal data as per its data privacy policy and applicable laws governing the privacy and security of personal data. I retain the right to withdraw my personal data at any time by sending formal request at info@eyogigurukul.com

I shall not disclose any Intellectual Property and information relating to eYogi, to any third party without eYogi' prior written consent and shall not use any Information for any purpose other than for the performance of the Services."""

ACTION_GIVEN = "given"
ACTION_WITHDRAWN = "withdrawn"

STAFF_ROLES = ("admin", "business_admin", "super_admin", "teacher")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Viewer:
    """Who is asking. ``None`` in place of a Viewer means a trusted internal caller."""

    user_id: str
    role: str

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


@dataclass
class ConsentProjection:
    state: str = "no_record"
    consent_given: bool = False
    withdrawn: bool = False
    consent_date: Optional[datetime] = None
    consented_by: Optional[str] = None
    withdrawn_date: Optional[datetime] = None
    withdrawn_reason: Optional[str] = None


def project_state(events: Iterable) -> ConsentProjection:
    """Fold the event log (oldest first) into the current consent state."""
    state = ConsentProjection()
    for event in events:
        if event.action == ACTION_GIVEN:
            state.state = "consented"
            state.consent_given = True
            state.withdrawn = False
            state.consent_date = event.occurred_at
            state.consented_by = event.actor_id
            state.withdrawn_date = None
            state.withdrawn_reason = None
        elif event.action == ACTION_WITHDRAWN:
            state.state = "withdrawn"
            state.consent_given = False
            state.withdrawn = True
            state.withdrawn_date = event.occurred_at
            state.withdrawn_reason = event.reason
    return state


class ConsentLedger:
    def __init__(
        self,
        session_factory,
        cipher,
        clock: Callable[[], datetime] = utcnow,
        ip_resolver: Optional[Callable[[], Optional[str]]] = None,
        consent_text: str = CONSENT_TEXT,
    ):
        self._session_factory = session_factory
        self._cipher = cipher
        self._clock = clock
        self._ip_resolver = ip_resolver
        self.consent_text = consent_text

    # ---------------- HELPERS ----------------
    def _summary(self, profile: Optional[Profile]) -> Optional[ProfileSummary]:
        if profile is None:
            return None
        data = decrypt_profile_fields(profile, self._cipher)
        return ProfileSummary(
            id=data["id"],
            full_name=data.get("full_name"),
            email=data["email"],
            student_id=data.get("student_id"),
        )

    def _view(self, row: StudentConsent) -> ConsentOut:
        return ConsentOut(
            id=row.id,
            student_id=row.student_id,
            consent_given=row.consent_given,
            consent_text=row.consent_text,
            consent_date=row.consent_date,
            consented_by=row.consented_by,
            ip_address=row.ip_address,
            user_agent=row.user_agent,
            withdrawn=row.withdrawn,
            withdrawn_date=row.withdrawn_date,
            withdrawn_reason=row.withdrawn_reason,
            created_at=row.created_at,
            updated_at=row.updated_at,
            student=self._summary(row.student),
            consented_by_user=self._summary(row.consented_by_user),
        )

    def _can_see(self, db, viewer: Optional[Viewer], student_id: str, consented_by: Optional[str]) -> bool:
        if viewer is None or viewer.is_staff:
            return True
        if viewer.user_id in (student_id, consented_by):
            return True
        if viewer.role == "parent":
            return student_id in crud.children_of(db, viewer.user_id)
        return False

    def _resolve_ip(self) -> Optional[str]:
        if self._ip_resolver is None:
            return None
        try:
            return self._ip_resolver()
        except Exception as e:
            # audit metadata only; consent is recorded without it
            logger.info("ip_lookup_failed", error=str(e))
            return None

    @staticmethod
    def _persistence_error(operation: str, e: SQLAlchemyError, **kw) -> None:
        failure = PersistenceFailure(operation, e.__class__.__name__)
        logger.error("consent_persistence_failed", error=str(e), **failure.to_dict(), **kw)

    # ---------------- READS ----------------
    def get_student_consent(self, student_id: str, viewer: Optional[Viewer] = None) -> Optional[ConsentOut]:
        """Decrypted consent record, or None when absent or not visible to ``viewer``."""
        try:
            with self._session_factory() as db:
                row = crud.get_consent(db, student_id)
                if row is None:
                    return None
                if not self._can_see(db, viewer, row.student_id, row.consented_by):
                    # reported exactly like a missing record
                    logger.debug("consent_hidden_from_viewer", student_id=student_id)
                    return None
                return self._view(row)
        except SQLAlchemyError as e:
            self._persistence_error("get_student_consent", e, student_id=student_id)
            return None

    def get_students_consent(
        self, student_ids: Sequence[str], viewer: Optional[Viewer] = None
    ) -> List[ConsentOut]:
        try:
            with self._session_factory() as db:
                rows = crud.get_consents(db, student_ids)
                return [
                    self._view(row)
                    for row in rows
                    if self._can_see(db, viewer, row.student_id, row.consented_by)
                ]
        except SQLAlchemyError as e:
            self._persistence_error("get_students_consent", e, count=len(student_ids))
            return []

    def get_all_consents(
        self,
        limit: Optional[int] = None,
        offset: int = 0,
        consent_status: str = crud.ALL,
    ) -> ConsentPage:
        """Admin listing ordered by consent_date, newest first, unset dates last."""
        if consent_status not in crud.CONSENT_STATUSES:
            raise ValueError(f"consent_status must be one of {crud.CONSENT_STATUSES}")
        try:
            with self._session_factory() as db:
                rows, total = crud.page_consents(db, limit=limit, offset=offset, consent_status=consent_status)
                return ConsentPage(data=[self._view(row) for row in rows], count=total)
        except SQLAlchemyError as e:
            self._persistence_error("get_all_consents", e)
            return ConsentPage(data=[], count=0)

    def get_consent_stats(self) -> ConsentStats:
        try:
            with self._session_factory() as db:
                total = crud.count_students(db)
                consented = crud.count_consents(db, crud.GIVEN)
                withdrawn = crud.count_consents(db, crud.WITHDRAWN)
        except SQLAlchemyError as e:
            self._persistence_error("get_consent_stats", e)
            return ConsentStats()
        return ConsentStats(
            total_students=total,
            consented=consented,
            not_consented=total - consented,
            withdrawn=withdrawn,
        )

    def get_consent_history(self, student_id: str, viewer: Optional[Viewer] = None) -> Optional[ConsentHistory]:
        """Event log for one student, or None when there is no record or it is not visible."""
        try:
            with self._session_factory() as db:
                row = crud.get_consent(db, student_id)
                if row is None:
                    return None
                if not self._can_see(db, viewer, row.student_id, row.consented_by):
                    logger.debug("consent_hidden_from_viewer", student_id=student_id)
                    return None
                events = crud.list_events(db, student_id)
                return ConsentHistory(
                    student_id=student_id,
                    state=project_state(events).state,
                    events=[ConsentEventOut.model_validate(e) for e in events],
                )
        except SQLAlchemyError as e:
            self._persistence_error("get_consent_history", e, student_id=student_id)
            return None

    def can_act_for(self, student_id: str, viewer: Optional[Viewer] = None) -> bool:
        """Whether ``viewer`` may give or withdraw consent for ``student_id``.

        Same rule as reads; the previous consenter counts once a record exists.
        """
        if viewer is None or viewer.is_staff:
            return True
        try:
            with self._session_factory() as db:
                row = crud.get_consent(db, student_id)
                consented_by = row.consented_by if row is not None else None
                return self._can_see(db, viewer, student_id, consented_by)
        except SQLAlchemyError as e:
            self._persistence_error("can_act_for", e, student_id=student_id)
            return False

    # ---------------- WRITES ----------------
    def give_consent(
        self,
        student_id: str,
        consented_by: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        viewer: Optional[Viewer] = None,
    ) -> Optional[ConsentOut]:
        """Record consent, creating the row or updating it in place.

        Returns None if nothing was recorded (including when ``viewer`` may
        not act for the student); callers must not assume success.
        """
        if not self.can_act_for(student_id, viewer):
            logger.warning("consent_give_denied", student_id=student_id, viewer=viewer.user_id)
            return None
        now = self._clock()
        if not ip_address:
            ip_address = self._resolve_ip()
        try:
            with self._session_factory() as db:
                row = crud.get_consent(db, student_id)
                if row is None:
                    row = StudentConsent(
                        student_id=student_id,
                        consent_text=self.consent_text,
                        created_at=now,
                    )
                row.consent_given = True
                row.consent_date = now
                row.consented_by = consented_by
                row.ip_address = ip_address or None
                row.user_agent = user_agent or None
                row.withdrawn = False
                row.withdrawn_date = None
                row.withdrawn_reason = None
                row.updated_at = now

                event = ConsentEvent(
                    student_id=student_id,
                    action=ACTION_GIVEN,
                    actor_id=consented_by,
                    occurred_at=now,
                    ip_address=row.ip_address,
                    user_agent=row.user_agent,
                    consent_text=self.consent_text,
                )
                row = crud.save_consent(db, row, event)
                logger.info("consent_given", student_id=student_id, consented_by=consented_by)
                return self._view(row)
        except SQLAlchemyError as e:
            self._persistence_error("give_consent", e, student_id=student_id)
            return None

    def withdraw_consent(
        self,
        student_id: str,
        reason: Optional[str] = None,
        withdrawn_by: Optional[str] = None,
        viewer: Optional[Viewer] = None,
    ) -> Optional[ConsentOut]:
        """Withdraw an existing consent.

        Returns None when the student has no consent record, when ``viewer``
        may not act for the student, or on persistence failure. The event's
        actor is ``withdrawn_by`` and stays unset when that is not known.
        """
        if not self.can_act_for(student_id, viewer):
            logger.warning("consent_withdraw_denied", student_id=student_id, viewer=viewer.user_id)
            return None
        now = self._clock()
        try:
            with self._session_factory() as db:
                row = crud.get_consent(db, student_id)
                if row is None:
                    failure = ConsentStateError(student_id, "Cannot withdraw consent that was never given")
                    logger.warning("consent_withdraw_rejected", **failure.to_dict())
                    return None
                row.consent_given = False
                row.withdrawn = True
                row.withdrawn_date = now
                row.withdrawn_reason = reason or None
                row.updated_at = now

                event = ConsentEvent(
                    student_id=student_id,
                    action=ACTION_WITHDRAWN,
                    actor_id=withdrawn_by or None,
                    occurred_at=now,
                    reason=row.withdrawn_reason,
                )
                row = crud.save_consent(db, row, event)
                logger.info("consent_withdrawn", student_id=student_id, withdrawn_by=withdrawn_by)
                return self._view(row)
        except SQLAlchemyError as e:
            self._persistence_error("withdraw_consent", e, student_id=student_id)
            return None
