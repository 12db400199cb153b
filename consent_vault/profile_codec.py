# consent_vault/profile_codec.py
"""
Apply the field cipher to the sensitive columns of a profile record.

Encrypted: full_name, phone, address_line_1, address_line_2, city, zip_code.
Left as-is: email (needed for login lookups), state and country (needed
for reporting and ID generation), and every other column.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping, Optional

import structlog

from .encryption_utils import has_token_prefix, looks_encrypted

logger = structlog.get_logger()

ENCRYPTED_FIELDS = (
    "full_name",
    "phone",
    "address_line_1",
    "address_line_2",
    "city",
    "zip_code",
)
PLAINTEXT_FIELDS = ("id", "role", "email", "state", "country")


@dataclass
class ProfileFields:
    id: Optional[str] = None
    role: Optional[str] = None
    email: Optional[str] = None
    full_name: Optional[str] = None
    phone: Optional[str] = None
    address_line_1: Optional[str] = None
    address_line_2: Optional[str] = None
    city: Optional[str] = None
    zip_code: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ProfileFields":
        known = {f.name for f in fields(cls)} - {"extra"}
        return cls(
            **{k: v for k, v in data.items() if k in known},
            extra={k: v for k, v in data.items() if k not in known},
        )

    def to_mapping(self) -> Dict[str, Any]:
        out = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "extra"}
        out.update(self.extra)
        return out


def _as_dict(profile) -> Dict[str, Any]:
    if isinstance(profile, ProfileFields):
        return profile.to_mapping()
    if isinstance(profile, Mapping):
        return dict(profile)
    # ORM row: read the mapped columns
    table = getattr(profile, "__table__", None)
    if table is not None:
        return {c.name: getattr(profile, c.name) for c in table.columns}
    raise TypeError(f"unsupported profile type: {type(profile).__name__}")


def encrypt_profile_fields(profile, cipher) -> Dict[str, Any]:
    """Shallow copy with every present, non-empty sensitive field encrypted.

    Values that already look like ciphertext are kept so a record saved
    twice without decrypting is not double-encrypted.
    """
    out = _as_dict(profile)
    for name in ENCRYPTED_FIELDS:
        value = out.get(name)
        if value is None or (isinstance(value, str) and value.strip() == ""):
            continue
        if looks_encrypted(value):
            logger.debug("profile_field_already_encrypted", field=name)
            continue
        out[name] = cipher.encrypt(value)
    return out


def decrypt_profile_fields(profile, cipher) -> Dict[str, Any]:
    """Inverse of encrypt_profile_fields.

    A field that fails to decrypt becomes None; the remaining fields are
    still decrypted. Anything carrying a token prefix is treated as
    ciphertext, so a truncated token also comes back as None; other values
    are legacy plaintext and returned unchanged.
    """
    out = _as_dict(profile)
    for name in ENCRYPTED_FIELDS:
        value = out.get(name)
        if not value:
            continue
        if not (has_token_prefix(value) or looks_encrypted(value)):
            continue
        out[name] = cipher.decrypt(value, field=name)
    return out


def reencrypt_profile_fields(profile, old, new):
    """Rotate sensitive fields from ``old`` to ``new``.

    Returns ``(record, failed)`` where ``failed`` lists fields that could not
    be decrypted with ``old``; those keep their stored value untouched.
    """
    out = _as_dict(profile)
    failed = []
    for name in ENCRYPTED_FIELDS:
        value = out.get(name)
        if not value:
            continue
        if has_token_prefix(value) or looks_encrypted(value):
            plain = old.decrypt(value, field=name)
        else:
            plain = value
        if plain is None:
            failed.append(name)
            continue
        out[name] = new.encrypt(plain)
    return out, failed
