# consent_vault/errors.py
"""
Error taxonomy for the encryption and consent layers.

Cipher and codec code reports these through the logger and degrades to
``None``; the ledger logs them and returns ``None``/empty results; only
configuration problems are raised to the caller.
"""
from typing import Any, Dict, Optional


class ConsentVaultError(Exception):
    """Base exception for consent-vault errors"""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(ConsentVaultError):
    """Encryption key (or another required setting) is missing or invalid"""

    def __init__(self, message: str = "ENCRYPTION_KEY is not configured"):
        super().__init__(message, code="CONFIG_ERROR")


class DecryptionFailure(ConsentVaultError):
    """Ciphertext present but the key does not match or the data is corrupt"""

    def __init__(self, reason: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(f"Decryption failed: {reason}", code="DECRYPTION_FAILED", details=details)
        self.field = field


class PersistenceFailure(ConsentVaultError):
    """Read or write against the backing store failed"""

    def __init__(self, operation: str, reason: str):
        super().__init__(
            f"{operation} failed: {reason}",
            code="PERSISTENCE_ERROR",
            details={"operation": operation},
        )
        self.operation = operation


class ConsentStateError(ConsentVaultError):
    """Requested consent transition is not valid for the current state"""

    def __init__(self, student_id: str, message: str = "No consent record exists for this student"):
        super().__init__(message, code="CONSENT_STATE_ERROR", details={"student_id": student_id})
        self.student_id = student_id
