"""
Legacy Migration — re-encrypt keys stored in the old reversible encodings.

Two legacy encodings are recognised:

- ``base64``: the key itself, base64-encoded (standard or URL-safe alphabet)
- ``xor-base64``: the key XOR-ed with a fixed obfuscation key, then base64

Neither is encryption. Detection is a best-effort heuristic (the decoded text
must look like an API key), not a security boundary.

Migration is one-way and idempotent: feeding an already-migrated envelope
back in returns it unchanged. ``migrate_legacy_batch`` imports many values
through the vault and can be re-run after a crash; items already present
are skipped.

Security Note:
    Plaintext exists in memory only while each value is re-encrypted.
    Never log raw legacy values or decoded keys.
"""
import base64
import binascii
import logging
from enum import Enum
from typing import TYPE_CHECKING, Iterable, Optional, Union

from pydantic import BaseModel, Field

from .crypto import EncryptionEngine, Envelope, MasterSecret
from .exceptions import CredentialVaultError, UnsupportedFormatError, ValidationError
from .models import ServiceName

if TYPE_CHECKING:
    from .vault import CredentialVault

logger = logging.getLogger("credential_vault")

LEGACY_PREFIXES = ("sk-",)
LEGACY_MARKERS = ("api_key",)
LEGACY_XOR_KEY = b"describe-it-key-store-2024"


class LegacyEncoding(str, Enum):
    BASE64 = "base64"
    XOR_BASE64 = "xor-base64"


def _b64decode(raw: str) -> Optional[bytes]:
    value = raw.strip()
    if not value:
        return None
    for altchars in (None, b"-_"):
        try:
            return base64.b64decode(value, altchars=altchars, validate=True)
        except (binascii.Error, ValueError):
            continue
    return None


def _xor(data: bytes, key: bytes = LEGACY_XOR_KEY) -> bytes:
    return bytes(b ^ key[i % len(key)] for i, b in enumerate(data))


def _looks_like_secret(text: str) -> bool:
    return text.startswith(LEGACY_PREFIXES) or any(m in text for m in LEGACY_MARKERS)


def decode_legacy(raw: str) -> Optional[tuple[LegacyEncoding, str]]:
    """Decode ``raw`` with each legacy scheme.

    Returns:
        (encoding, plaintext) for the first scheme whose output looks like
        a secret, or None.
    """
    if not isinstance(raw, str):
        return None
    data = _b64decode(raw)
    if data is None:
        return None
    for encoding, candidate in (
        (LegacyEncoding.BASE64, data),
        (LegacyEncoding.XOR_BASE64, _xor(data)),
    ):
        try:
            text = candidate.decode("utf-8")
        except UnicodeDecodeError:
            continue
        if _looks_like_secret(text):
            return encoding, text
    return None


def encode_legacy(plaintext: str, encoding: LegacyEncoding = LegacyEncoding.BASE64) -> str:
    """Produce a legacy-encoded value. Used to build fixtures and test data."""
    data = plaintext.encode("utf-8")
    if encoding is LegacyEncoding.XOR_BASE64:
        data = _xor(data)
    return base64.b64encode(data).decode("ascii")


def as_envelope(raw: Union[Envelope, str, bytes]) -> Optional[Envelope]:
    """Return ``raw`` as an Envelope if it already is one (object or JSON)."""
    if isinstance(raw, Envelope):
        return raw
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str) and raw.lstrip().startswith("{"):
        return Envelope.from_json(raw)
    return None


class LegacyMigrator:
    """Detects legacy values and converts them to envelopes."""

    def __init__(self, engine: EncryptionEngine):
        self._engine = engine

    def detect(self, raw: Union[Envelope, str, bytes]) -> bool:
        """True if ``raw`` is a legacy-encoded secret."""
        if isinstance(raw, Envelope):
            return False
        if isinstance(raw, bytes):
            try:
                raw = raw.decode("ascii")
            except UnicodeDecodeError:
                return False
        return decode_legacy(raw) is not None

    def migrate(self, raw: Union[Envelope, str, bytes], master_secret: MasterSecret) -> Envelope:
        """Re-encrypt a legacy value into an envelope.

        Already-migrated input with a supported format is returned unchanged.

        Raises:
            UnsupportedFormatError: Input is an envelope of an unknown format.
            ValidationError: Input is neither legacy-encoded nor an envelope.
        """
        envelope = as_envelope(raw)
        if envelope is not None:
            if not envelope.is_supported:
                raise UnsupportedFormatError(
                    f"unsupported envelope version {envelope.format_version}"
                )
            logger.debug("Legacy migration skipped: value is already an envelope")
            return envelope
        encoding, plaintext = self._decode(raw)
        envelope = self._engine.encrypt(plaintext, master_secret)
        logger.info("Migrated legacy %s value to envelope v%d", encoding.value, envelope.format_version)
        return envelope

    def recover(self, raw: Union[Envelope, str, bytes], master_secret: MasterSecret) -> str:
        """Return the plaintext behind a legacy value or an envelope.

        Raises:
            ValidationError: Input is neither legacy-encoded nor an envelope.
            AuthenticationFailure: Input is an envelope that does not open.
        """
        envelope = as_envelope(raw)
        if envelope is not None:
            return self._engine.decrypt(envelope, master_secret)
        return self._decode(raw)[1]

    def _decode(self, raw: Union[str, bytes]) -> tuple[LegacyEncoding, str]:
        if isinstance(raw, bytes):
            raw = raw.decode("ascii", errors="replace")
        decoded = decode_legacy(raw)
        if decoded is None:
            raise ValidationError("value is not in a recognised legacy encoding")
        return decoded


class LegacyCredential(BaseModel):
    """One legacy value to import into the vault."""

    owner_id: str
    service: ServiceName
    key_name: str
    raw: str = Field(repr=False)


async def migrate_legacy_batch(
    vault: "CredentialVault",
    items: Iterable[LegacyCredential],
    master_secret: MasterSecret,
    ttl_days: Optional[int] = None,
) -> dict:
    """Import legacy values through the vault, one record at a time.

    Each item is independent: a failure is logged and counted, and the batch
    continues. Items whose record already exists are skipped, so the batch
    can be re-run after a partial failure.

    Returns:
        Stats dict with keys: total, migrated, skipped, errors.
    """
    stats = {"total": 0, "migrated": 0, "skipped": 0, "errors": 0}
    logger.info("Starting legacy credential migration")
    for item in items:
        stats["total"] += 1
        try:
            _, migrated = await vault.import_legacy(
                item.owner_id,
                item.service,
                item.key_name,
                item.raw,
                master_secret,
                ttl_days=ttl_days,
            )
        except CredentialVaultError as err:
            logger.error(
                "Error migrating credential owner=%s key=%s: %s",
                item.owner_id, item.key_name, type(err).__name__,
            )
            stats["errors"] += 1
            continue
        stats["migrated" if migrated else "skipped"] += 1
    logger.info("Legacy migration complete: %s", stats)
    return stats
