"""
Vault Configuration — validated settings and master secret helpers.

Non-secret settings are read from environment variables prefixed ``VAULT_``:
    VAULT_KDF_ITERATIONS = <int, 100000..10000000>
    VAULT_SALT_SIZE = <int, >= 32>
    VAULT_MAX_KEYS_PER_OWNER = <int>
    VAULT_DEFAULT_TTL_DAYS = <int>
    VAULT_ROTATION_REMINDER_DAYS = <int>
    VAULT_MAX_PLAINTEXT_SIZE = <int, bytes>

The master secret is never part of VaultConfig. It is supplied by the caller
on every vault operation that needs it.

Security Note:
    Never log secret material. Only log setting names and numeric values.
"""
import os
import base64
import secrets
import logging
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .crypto import MAX_KDF_ITERATIONS, MIN_KDF_ITERATIONS, MIN_SALT_SIZE

logger = logging.getLogger("credential_vault")

_ENV_SETTINGS = {
    "kdf_iterations": "VAULT_KDF_ITERATIONS",
    "salt_size": "VAULT_SALT_SIZE",
    "max_keys_per_owner": "VAULT_MAX_KEYS_PER_OWNER",
    "default_ttl_days": "VAULT_DEFAULT_TTL_DAYS",
    "rotation_reminder_days": "VAULT_ROTATION_REMINDER_DAYS",
    "max_plaintext_size": "VAULT_MAX_PLAINTEXT_SIZE",
}


def generate_master_secret() -> str:
    """Generate a random 32-byte master secret and return it as base64.

    This is a utility for operators provisioning a secret manager entry.

    Returns:
        Base64-encoded 32-byte secret string.
    """
    return base64.b64encode(secrets.token_bytes(32)).decode("ascii")


def load_master_secret(name: str = "VAULT_MASTER_SECRET") -> str:
    """Read a master secret from the named environment variable.

    Callers that keep the secret in the process environment use this to
    obtain it and then pass it explicitly to the vault. The vault itself
    never calls this function.

    Raises:
        RuntimeError: If the variable is missing or empty.
    """
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(
            f"{name} environment variable is not set"
        )
    return value


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    kdf_iterations: int = Field(default=MIN_KDF_ITERATIONS)
    salt_size: int = Field(default=MIN_SALT_SIZE)
    max_keys_per_owner: int = Field(default=50, ge=1, le=1000)
    max_key_name_length: int = Field(default=100, ge=1, le=255)
    max_plaintext_size: int = Field(default=64 * 1024, ge=1024)
    default_ttl_days: Optional[int] = Field(default=None, ge=1, le=3650)
    rotation_reminder_days: int = Field(default=7, ge=0, le=365)
    max_cas_retries: int = Field(default=5, ge=1, le=100)

    @field_validator("kdf_iterations")
    @classmethod
    def validate_iterations(cls, v: int) -> int:
        """Reject iteration counts outside the accepted derivation range."""
        if not MIN_KDF_ITERATIONS <= v <= MAX_KDF_ITERATIONS:
            raise ValueError(
                f"kdf_iterations must be between {MIN_KDF_ITERATIONS} and "
                f"{MAX_KDF_ITERATIONS}, got {v}"
            )
        return v

    @field_validator("salt_size")
    @classmethod
    def validate_salt_size(cls, v: int) -> int:
        """Reject salts shorter than 32 bytes."""
        if v < MIN_SALT_SIZE:
            raise ValueError(
                f"salt_size must be at least {MIN_SALT_SIZE} bytes, got {v}"
            )
        return v

    @model_validator(mode="after")
    def validate_reminder_window(self) -> "VaultConfig":
        """A reminder window longer than the default TTL is never useful."""
        if (
            self.default_ttl_days is not None
            and self.rotation_reminder_days >= self.default_ttl_days
        ):
            raise ValueError(
                f"rotation_reminder_days ({self.rotation_reminder_days}) must be "
                f"shorter than default_ttl_days ({self.default_ttl_days})"
            )
        return self

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create VaultConfig by loading values from environment.

        Returns:
            Populated VaultConfig instance.
        """
        values = {}
        for field, env_name in _ENV_SETTINGS.items():
            raw = os.environ.get(env_name)
            if raw is not None and raw != "":
                values[field] = int(raw)
        logger.debug("Loaded vault settings from environment: %s", sorted(values))
        return cls(**values)
