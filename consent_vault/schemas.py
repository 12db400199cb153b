# consent_vault/schemas.py
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

ConsentStatus = Literal["given", "not_given", "withdrawn", "all"]


# ---------------- PROFILES ----------------
class ProfileIn(BaseModel):
    email: EmailStr
    role: Literal["student", "parent", "teacher", "admin"] = "student"
    student_id: Optional[str] = None
    parent_id: Optional[str] = None
    full_name: Optional[str] = None
    phone: Optional[str] = None
    address_line_1: Optional[str] = None
    address_line_2: Optional[str] = None
    city: Optional[str] = None
    zip_code: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None


class ProfilePatch(BaseModel):
    """Only the fields sent are written; everything else stays as stored."""

    full_name: Optional[str] = None
    phone: Optional[str] = None
    address_line_1: Optional[str] = None
    address_line_2: Optional[str] = None
    city: Optional[str] = None
    zip_code: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    parent_id: Optional[str] = None


class ProfileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    role: str
    email: str
    student_id: Optional[str] = None
    parent_id: Optional[str] = None
    full_name: Optional[str] = None
    phone: Optional[str] = None
    address_line_1: Optional[str] = None
    address_line_2: Optional[str] = None
    city: Optional[str] = None
    zip_code: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None


# ---------------- CONSENT ----------------
class ProfileSummary(BaseModel):
    id: str
    full_name: Optional[str] = None
    email: str
    student_id: Optional[str] = None


class ConsentOut(BaseModel):
    id: str
    student_id: str
    consent_given: bool
    consent_text: str
    consent_date: Optional[datetime] = None
    consented_by: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    withdrawn: bool
    withdrawn_date: Optional[datetime] = None
    withdrawn_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    student: Optional[ProfileSummary] = None
    consented_by_user: Optional[ProfileSummary] = None


class GiveConsentIn(BaseModel):
    student_id: str = Field(min_length=1)
    consented_by: str = Field(min_length=1)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class WithdrawConsentIn(BaseModel):
    reason: Optional[str] = None


class BatchConsentIn(BaseModel):
    student_ids: List[str]


class ConsentPage(BaseModel):
    data: List[ConsentOut]
    count: int


class ConsentStats(BaseModel):
    total_students: int = 0
    consented: int = 0
    not_consented: int = 0
    withdrawn: int = 0


class ConsentEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    action: str
    actor_id: Optional[str] = None
    occurred_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    reason: Optional[str] = None


class ConsentHistory(BaseModel):
    student_id: str
    state: Literal["no_record", "consented", "withdrawn"]
    events: List[ConsentEventOut]
