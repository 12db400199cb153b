# consent_vault/encryption_utils.py
"""
Field-level encryption for personal profile data.

Tokens are AES-256-GCM with a fresh 12-byte nonce per call, stored as a
single base64 string: HEADER || nonce || ciphertext+tag. The header is also
bound as associated data so a token cannot be replayed under another
version.

Values written by the previous application (CryptoJS passphrase mode,
OpenSSL "Salted__" framing, AES-256-CBC) can still be read but are never
produced.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import os
import re
from functools import lru_cache

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import DEFAULT_KDF_ITERATIONS, DEFAULT_SALT_B64, Settings
from .errors import ConfigurationError, DecryptionFailure

logger = structlog.get_logger()

HEADER = b"FC1"
NONCE_LEN = 12
TAG_LEN = 16
KEY_LEN = 32  # 256-bit

TOKEN_PREFIX = base64.b64encode(HEADER).decode()
# header + nonce + tag + at least one byte of payload
MIN_TOKEN_LEN = len(base64.b64encode(b"\0" * (len(HEADER) + NONCE_LEN + TAG_LEN + 1)))

# base64("Salted__"), the OpenSSL framing CryptoJS emits
LEGACY_PREFIX = "U2FsdGVkX1"
LEGACY_MIN_LEN = 24

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")


def _derive_key(password: str, salt_b64: str, iterations: int = DEFAULT_KDF_ITERATIONS) -> bytes:
    salt = base64.b64decode(salt_b64)
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_LEN, salt=salt, iterations=iterations)
    return kdf.derive(password.encode())


def _is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def looks_encrypted(value) -> bool:
    """Best-effort guess whether ``value`` is a stored ciphertext token.

    Checks base64 shape, minimum length and a known prefix (current header
    or legacy "Salted__"). A plaintext value can still match by accident;
    use this only to keep legacy rows readable, not for security decisions.
    """
    if not isinstance(value, str) or not value:
        return False
    if len(value) % 4 != 0 or not _BASE64_RE.match(value):
        return False
    if value.startswith(TOKEN_PREFIX):
        return len(value) >= MIN_TOKEN_LEN
    if value.startswith(LEGACY_PREFIX):
        return len(value) >= LEGACY_MIN_LEN
    return False


def has_token_prefix(value) -> bool:
    """True for anything that starts like a stored token, well-formed or not.

    Such values are always sent through decryption so a damaged token
    resolves to None instead of being mistaken for legacy plaintext.
    """
    return isinstance(value, str) and value.startswith((TOKEN_PREFIX, LEGACY_PREFIX))


def _evp_bytes_to_key(passphrase: bytes, salt: bytes, key_len: int = 32, iv_len: int = 16):
    """OpenSSL EVP_BytesToKey with MD5, one iteration (CryptoJS default)."""
    derived = b""
    block = b""
    while len(derived) < key_len + iv_len:
        block = hashlib.md5(block + passphrase + salt).digest()
        derived += block
    return derived[:key_len], derived[key_len:key_len + iv_len]


def decrypt_legacy(token: str, passphrase: str) -> str:
    """Decrypt a CryptoJS ``AES.encrypt(value, passphrase)`` output.

    Raises DecryptionFailure on any mismatch; callers in this module turn
    that into ``None``.
    """
    try:
        raw = base64.b64decode(token, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptionFailure(f"legacy token is not base64: {e}")
    if len(raw) < 32 or raw[:8] != b"Salted__" or (len(raw) - 16) % 16 != 0:
        raise DecryptionFailure("legacy token has an invalid frame")

    key, iv = _evp_bytes_to_key(passphrase.encode(), raw[8:16])
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(raw[16:]) + decryptor.finalize()
    try:
        unpadder = padding.PKCS7(128).unpadder()
        plain = unpadder.update(padded) + unpadder.finalize()
        return plain.decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        # CBC has no integrity check; bad padding or non-UTF-8 output means wrong key
        raise DecryptionFailure("legacy token did not decrypt under this key")


class FieldCipher:
    """Symmetric encrypt/decrypt of single string values.

    The key is derived once at construction; instances are read-only
    afterwards and safe to share between requests and threads.
    """

    is_configured = True

    def __init__(
        self,
        secret: str,
        salt_b64: str = DEFAULT_SALT_B64,
        iterations: int = DEFAULT_KDF_ITERATIONS,
    ):
        if not secret:
            raise ConfigurationError()
        self._secret = secret
        self._aes = AESGCM(_derive_key(secret, salt_b64, iterations))

    def encrypt(self, plaintext: str | None) -> str | None:
        if _is_blank(plaintext):
            return None
        nonce = os.urandom(NONCE_LEN)
        ct = self._aes.encrypt(nonce, str(plaintext).encode("utf-8"), HEADER)
        return base64.b64encode(HEADER + nonce + ct).decode()

    def decrypt(self, token: str | None, field: str | None = None) -> str | None:
        if _is_blank(token):
            return None
        try:
            return self._decrypt(str(token))
        except DecryptionFailure as e:
            logger.warning("field_decrypt_failed", code=e.code, field=field, reason=e.message)
            return None

    def _decrypt(self, token: str) -> str:
        if token.startswith(LEGACY_PREFIX):
            return decrypt_legacy(token, self._secret)
        try:
            raw = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError):
            raise DecryptionFailure("value is not base64")
        if len(raw) < len(HEADER) + NONCE_LEN + TAG_LEN or raw[:len(HEADER)] != HEADER:
            raise DecryptionFailure("value is not a ciphertext token")
        nonce = raw[len(HEADER):len(HEADER) + NONCE_LEN]
        try:
            plain = self._aes.decrypt(nonce, raw[len(HEADER) + NONCE_LEN:], HEADER)
        except InvalidTag:
            raise DecryptionFailure("authentication tag mismatch (wrong key or corrupted data)")
        try:
            return plain.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionFailure("plaintext is not valid UTF-8")

    def looks_encrypted(self, value) -> bool:
        return looks_encrypted(value)


class PlaintextCipher:
    """Explicit passthrough used only when ALLOW_PLAINTEXT_FIELDS is set outside production.

    Stored tokens cannot be read without a key, so ``decrypt`` returns None
    for anything that looks encrypted instead of surfacing ciphertext.
    """

    is_configured = False

    def encrypt(self, plaintext: str | None) -> str | None:
        if _is_blank(plaintext):
            return None
        return str(plaintext)

    def decrypt(self, token: str | None, field: str | None = None) -> str | None:
        if _is_blank(token):
            return None
        if looks_encrypted(token) or has_token_prefix(token):
            logger.warning("field_decrypt_skipped_no_key", field=field)
            return None
        return str(token)

    def looks_encrypted(self, value) -> bool:
        return looks_encrypted(value)


def build_cipher(settings: Settings):
    key = settings.require_key()
    if key is None:
        logger.warning(
            "encryption_disabled",
            environment=settings.environment,
            hint="set ENCRYPTION_KEY; profile fields will be stored as plaintext",
        )
        return PlaintextCipher()
    return FieldCipher(key, salt_b64=settings.kdf_salt_b64, iterations=settings.kdf_iterations)


def reencrypt(token: str | None, old: FieldCipher, new: FieldCipher) -> str | None:
    """Move one stored value from ``old`` to ``new``; None if it cannot be read."""
    plain = old.decrypt(token)
    if plain is None:
        return None
    return new.encrypt(plain)


@lru_cache(maxsize=8)
def _cipher_for(key: str) -> FieldCipher:
    return FieldCipher(key)


def encrypt_field(value: str | None, key: str) -> str | None:
    if _is_blank(value):
        return None
    return _cipher_for(key).encrypt(value)


def decrypt_field(value: str | None, key: str) -> str | None:
    if _is_blank(value):
        return None
    return _cipher_for(key).decrypt(value)
