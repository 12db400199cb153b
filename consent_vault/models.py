# consent_vault/models.py
import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .db import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=_uuid)
    role = Column(String(20), nullable=False, default="student", index=True)
    email = Column(String(256), nullable=False, unique=True, index=True)  # plaintext: login lookups
    student_id = Column(String(64), nullable=True, unique=True)
    parent_id = Column(String(36), ForeignKey("profiles.id"), nullable=True, index=True)

    # AES-GCM tokens as base64 text
    full_name = Column(Text, nullable=True)
    phone = Column(Text, nullable=True)
    address_line_1 = Column(Text, nullable=True)
    address_line_2 = Column(Text, nullable=True)
    city = Column(Text, nullable=True)
    zip_code = Column(Text, nullable=True)

    # kept in plaintext for reporting and ID generation
    state = Column(String(64), nullable=True)
    country = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class StudentConsent(Base):
    __tablename__ = "student_consent"

    id = Column(String(36), primary_key=True, default=_uuid)
    student_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)
    consent_given = Column(Boolean, nullable=False, default=False)
    consent_text = Column(Text, nullable=False)
    consent_date = Column(DateTime(timezone=True), nullable=True)
    consented_by = Column(String(36), ForeignKey("profiles.id"), nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    withdrawn = Column(Boolean, nullable=False, default=False)
    withdrawn_date = Column(DateTime(timezone=True), nullable=True)
    withdrawn_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    student = relationship(Profile, foreign_keys=[student_id], lazy="joined")
    consented_by_user = relationship(Profile, foreign_keys=[consented_by], lazy="joined")

    __table_args__ = (
        UniqueConstraint("student_id", name="uq_consent_student"),
    )


class ConsentEvent(Base):
    """Append-only history of consent actions; rows are never updated."""

    __tablename__ = "consent_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    student_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    action = Column(String(16), nullable=False)  # given | withdrawn
    actor_id = Column(String(36), nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    reason = Column(Text, nullable=True)
    consent_text = Column(Text, nullable=True)
