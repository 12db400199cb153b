# consent_vault/rotate_keys.py
"""
Re-encrypt every profile's sensitive columns under a new key.

    OLD_ENCRYPTION_KEY=<current> ENCRYPTION_KEY=<new> python -m consent_vault.rotate_keys

Fields that do not decrypt under the old key are left untouched and
reported; nothing is overwritten with a value that cannot be read back.
"""
import os
import sys
from dataclasses import dataclass, field

import structlog

from . import crud
from .config import load_settings
from .db import make_engine, make_session_factory
from .encryption_utils import FieldCipher
from .errors import ConfigurationError
from .logging_config import configure_logging
from .profile_codec import reencrypt_profile_fields, ENCRYPTED_FIELDS

logger = structlog.get_logger()


@dataclass
class RotationReport:
    profiles: int = 0
    fields_rotated: int = 0
    failed: dict = field(default_factory=dict)  # profile id -> [field names]


def rotate_profiles(session_factory, old: FieldCipher, new: FieldCipher) -> RotationReport:
    report = RotationReport()
    with session_factory() as db:
        for profile in crud.list_profiles(db):
            rotated, failed = reencrypt_profile_fields(profile, old, new)
            patch = {
                name: rotated[name]
                for name in ENCRYPTED_FIELDS
                if name not in failed and rotated.get(name) != getattr(profile, name)
            }
            if patch:
                crud.update_profile(db, profile, patch)
                report.fields_rotated += len(patch)
            if failed:
                report.failed[profile.id] = failed
                logger.warning("rotation_field_unreadable", profile_id=profile.id, fields=failed)
            report.profiles += 1
    logger.info(
        "rotation_done",
        profiles=report.profiles,
        fields_rotated=report.fields_rotated,
        profiles_with_failures=len(report.failed),
    )
    return report


def main() -> int:
    settings = load_settings()
    configure_logging(settings.log_level, settings.log_json)
    old_key = os.getenv("OLD_ENCRYPTION_KEY", "")
    if not old_key or not settings.encryption_key:
        raise ConfigurationError("Both OLD_ENCRYPTION_KEY and ENCRYPTION_KEY must be set")
    if old_key == settings.encryption_key:
        raise ConfigurationError("OLD_ENCRYPTION_KEY and ENCRYPTION_KEY are identical")

    old = FieldCipher(old_key, salt_b64=settings.kdf_salt_b64, iterations=settings.kdf_iterations)
    new = FieldCipher(settings.encryption_key, salt_b64=settings.kdf_salt_b64, iterations=settings.kdf_iterations)
    report = rotate_profiles(make_session_factory(make_engine(settings)), old, new)
    return 1 if report.failed else 0


if __name__ == "__main__":
    sys.exit(main())
