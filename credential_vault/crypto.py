"""
Vault Crypto Core — Key derivation, authenticated encryption and envelopes.

Every credential is sealed independently:
    PBKDF2-HMAC-SHA256(master_secret, salt[32B], >=100k iterations) → key[32B]
    AES-256-GCM(key, nonce[12B], aad=header) → ciphertext + tag[16B]

The result is an ``Envelope`` carrying everything needed to open it again
except the master secret: ``{ciphertext, salt, nonce, auth_tag,
algorithm_id, format_version, kdf_iterations}``.

Security Note:
    Never log plaintext, ciphertext, derived keys or master secrets.
    Derived keys are held in a bytearray and zeroed in ``finally`` blocks.
    All decrypt failures collapse into ``AuthenticationFailure``.
"""
import os
import base64
import binascii
import logging
from typing import Any, Optional, Union

import orjson
from pydantic import BaseModel, ConfigDict
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .exceptions import (
    AuthenticationFailure,
    UnsupportedFormatError,
    ValidationError,
)

logger = logging.getLogger("credential_vault")

KEY_LENGTH = 32  # AES-256
MIN_SALT_SIZE = 32
NONCE_SIZE = 12  # 96-bit GCM nonce
TAG_SIZE = 16
MIN_KDF_ITERATIONS = 100_000
MAX_KDF_ITERATIONS = 10_000_000
DEFAULT_MAX_PLAINTEXT_SIZE = 64 * 1024

ALGORITHM_ID = "aes-256-gcm"
KDF_ID = "pbkdf2-sha256"
FORMAT_VERSION = 1

SUPPORTED_ALGORITHMS = frozenset({ALGORITHM_ID})
SUPPORTED_FORMAT_VERSIONS = frozenset({FORMAT_VERSION})

_BINARY_FIELDS = ("ciphertext", "salt", "nonce", "auth_tag")

MasterSecret = Union[str, bytes]


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def secret_bytes(master_secret: MasterSecret) -> bytes:
    """Normalize a master secret to bytes.

    Raises:
        ValidationError: If the secret is empty.
        TypeError: If the secret is neither str nor bytes.
    """
    if isinstance(master_secret, str):
        master_secret = master_secret.encode("utf-8")
    elif not isinstance(master_secret, (bytes, bytearray)):
        raise TypeError("master secret must be str or bytes")
    if not master_secret:
        raise ValidationError("master secret cannot be empty")
    return bytes(master_secret)


def derive_key(
    master_secret: bytes,
    salt: bytes,
    iterations: int = MIN_KDF_ITERATIONS,
) -> bytearray:
    """Derive a 32-byte encryption key using PBKDF2-HMAC-SHA256.

    The caller owns the returned buffer and must ``zero_buffer`` it as soon
    as it has been consumed, including on error paths.

    Args:
        master_secret: Low-entropy master secret bytes.
        salt: Per-envelope random salt (at least 32 bytes).
        iterations: PBKDF2 iteration count (100,000 to 10,000,000).

    Returns:
        Mutable 32-byte derived key.
    """
    if len(salt) < MIN_SALT_SIZE:
        raise ValueError(
            f"salt too short: {len(salt)} bytes (minimum {MIN_SALT_SIZE})"
        )
    if not MIN_KDF_ITERATIONS <= iterations <= MAX_KDF_ITERATIONS:
        raise ValueError(
            f"iterations out of range: {iterations} "
            f"(allowed {MIN_KDF_ITERATIONS}..{MAX_KDF_ITERATIONS})"
        )
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return bytearray(kdf.derive(master_secret))


def zero_buffer(buffer: Optional[bytearray]) -> None:
    """Overwrite a key buffer with zeros in place."""
    if buffer is not None:
        buffer[:] = b"\x00" * len(buffer)


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

class Envelope(BaseModel):
    """Self-describing bundle produced by ``EncryptionEngine.encrypt``."""

    model_config = ConfigDict(frozen=True)

    ciphertext: bytes
    salt: bytes
    nonce: bytes
    auth_tag: bytes
    algorithm_id: str = ALGORITHM_ID
    format_version: int = FORMAT_VERSION
    kdf_iterations: int = MIN_KDF_ITERATIONS

    @property
    def is_supported(self) -> bool:
        return (
            self.algorithm_id in SUPPORTED_ALGORITHMS
            and self.format_version in SUPPORTED_FORMAT_VERSIONS
            and MIN_KDF_ITERATIONS <= self.kdf_iterations <= MAX_KDF_ITERATIONS
        )

    def associated_data(self) -> bytes:
        """Header bytes bound to the ciphertext as AEAD associated data."""
        return header_bytes(
            self.algorithm_id, self.format_version, self.kdf_iterations
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-safe dictionary with base64 binary fields."""
        data = self.model_dump()
        for name in _BINARY_FIELDS:
            data[name] = base64.b64encode(data[name]).decode("ascii")
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "Envelope":
        """Rebuild an envelope from ``to_dict`` output.

        Raises:
            UnsupportedFormatError: If the structure is not an envelope.
        """
        if not isinstance(data, dict):
            raise UnsupportedFormatError("envelope must be a mapping")
        try:
            values = dict(data)
            for name in _BINARY_FIELDS:
                values[name] = base64.b64decode(values[name], validate=True)
            return cls(
                ciphertext=values["ciphertext"],
                salt=values["salt"],
                nonce=values["nonce"],
                auth_tag=values["auth_tag"],
                algorithm_id=values["algorithm_id"],
                format_version=values["format_version"],
                kdf_iterations=values.get("kdf_iterations", MIN_KDF_ITERATIONS),
            )
        except (KeyError, TypeError, ValueError, binascii.Error) as err:
            raise UnsupportedFormatError("unrecognized envelope structure") from err

    def to_json(self) -> bytes:
        """Serialize to orjson bytes."""
        return orjson.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: Union[bytes, str]) -> "Envelope":
        """Parse ``to_json`` output.

        Raises:
            UnsupportedFormatError: If ``raw`` is not a serialized envelope.
        """
        try:
            parsed = orjson.loads(raw)
        except orjson.JSONDecodeError as err:
            raise UnsupportedFormatError("unrecognized envelope encoding") from err
        return cls.from_dict(parsed)


def header_bytes(algorithm_id: str, format_version: int, kdf_iterations: int) -> bytes:
    return f"{algorithm_id}|{format_version}|{kdf_iterations}".encode("utf-8")


# ---------------------------------------------------------------------------
# Encryption engine
# ---------------------------------------------------------------------------

class EncryptionEngine:
    """Authenticated encryption of credential plaintexts.

    The engine is stateless apart from its tuning parameters and is safe to
    share between tasks and threads.
    """

    def __init__(
        self,
        kdf_iterations: int = MIN_KDF_ITERATIONS,
        salt_size: int = MIN_SALT_SIZE,
        max_plaintext_size: int = DEFAULT_MAX_PLAINTEXT_SIZE,
    ):
        if not MIN_KDF_ITERATIONS <= kdf_iterations <= MAX_KDF_ITERATIONS:
            raise ValueError(
                f"kdf_iterations must be between {MIN_KDF_ITERATIONS} "
                f"and {MAX_KDF_ITERATIONS}"
            )
        if salt_size < MIN_SALT_SIZE:
            raise ValueError(f"salt_size must be at least {MIN_SALT_SIZE}")
        self.kdf_iterations = kdf_iterations
        self.salt_size = salt_size
        self.max_plaintext_size = max_plaintext_size

    @classmethod
    def from_config(cls, config: Any) -> "EncryptionEngine":
        return cls(
            kdf_iterations=config.kdf_iterations,
            salt_size=config.salt_size,
            max_plaintext_size=config.max_plaintext_size,
        )

    def encrypt(self, plaintext: str, master_secret: MasterSecret) -> Envelope:
        """Seal ``plaintext`` under a key derived from ``master_secret``.

        A fresh salt and nonce are drawn on every call, so two encryptions of
        the same plaintext under the same secret never share bytes.

        Args:
            plaintext: Credential value (may be empty).
            master_secret: Caller-supplied master secret.

        Returns:
            A new Envelope.

        Raises:
            TypeError: If plaintext is not a string.
            ValidationError: If plaintext exceeds ``max_plaintext_size`` or the
                master secret is empty.
        """
        if not isinstance(plaintext, str):
            raise TypeError("plaintext must be a string")
        data = plaintext.encode("utf-8")
        if len(data) > self.max_plaintext_size:
            raise ValidationError(
                f"plaintext exceeds {self.max_plaintext_size} bytes"
            )
        secret = secret_bytes(master_secret)
        salt = os.urandom(self.salt_size)
        nonce = os.urandom(NONCE_SIZE)
        aad = header_bytes(ALGORITHM_ID, FORMAT_VERSION, self.kdf_iterations)
        key = None
        try:
            key = derive_key(secret, salt, self.kdf_iterations)
            sealed = AESGCM(key).encrypt(nonce, data, aad)
        finally:
            zero_buffer(key)
        return Envelope(
            ciphertext=sealed[:-TAG_SIZE],
            salt=salt,
            nonce=nonce,
            auth_tag=sealed[-TAG_SIZE:],
            algorithm_id=ALGORITHM_ID,
            format_version=FORMAT_VERSION,
            kdf_iterations=self.kdf_iterations,
        )

    def decrypt(self, envelope: Envelope, master_secret: MasterSecret) -> str:
        """Open an envelope and return the plaintext.

        Raises:
            UnsupportedFormatError: Unknown algorithm, version or KDF cost.
            AuthenticationFailure: Any authentication mismatch.
        """
        if not envelope.is_supported:
            raise UnsupportedFormatError(
                f"unsupported envelope: algorithm={envelope.algorithm_id!r} "
                f"version={envelope.format_version} "
                f"kdf_iterations={envelope.kdf_iterations}"
            )
        secret = secret_bytes(master_secret)
        if (
            len(envelope.nonce) != NONCE_SIZE
            or len(envelope.auth_tag) != TAG_SIZE
            or len(envelope.salt) < MIN_SALT_SIZE
        ):
            raise AuthenticationFailure() from None
        key = None
        try:
            key = derive_key(secret, envelope.salt, envelope.kdf_iterations)
            data = AESGCM(key).decrypt(
                envelope.nonce,
                envelope.ciphertext + envelope.auth_tag,
                envelope.associated_data(),
            )
        except (InvalidTag, ValueError):
            raise AuthenticationFailure() from None
        finally:
            zero_buffer(key)
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            raise AuthenticationFailure() from None
