"""Credential Vault — Encrypted, lifecycle-managed storage of API keys.

Security Note (Threat Model):
    Plaintext keys exist in process memory only while a single encrypt or
    decrypt call runs. The master secret is supplied by the caller on each
    call and is never persisted. Anyone holding the master secret and the
    stored envelopes can recover every credential; protecting the secret
    (secret manager, HSM) is out of scope.
"""

from .version import __version__
from .vault import CredentialVault
from .config import VaultConfig, generate_master_secret, load_master_secret
from .crypto import EncryptionEngine, Envelope
from .key_rotation import rotate_master_secret
from .legacy import LegacyCredential, LegacyMigrator, migrate_legacy_batch
from .models import (
    CredentialMetadata,
    CredentialRecord,
    CredentialStats,
    CredentialStatus,
    ServiceName,
)
from .repository import (
    CredentialRepository,
    MemoryCredentialRepository,
    PgCredentialRepository,
)
from .usage import UsageResult
from .exceptions import (
    AuthenticationFailure,
    CredentialVaultError,
    DuplicateCredentialError,
    NotAvailableError,
    NotFoundError,
    RateLimitExceeded,
    StateConflictError,
    UnsupportedFormatError,
    ValidationError,
)

__all__ = [
    "__version__",
    "CredentialVault",
    "VaultConfig",
    "generate_master_secret",
    "load_master_secret",
    "EncryptionEngine",
    "Envelope",
    "rotate_master_secret",
    "LegacyCredential",
    "LegacyMigrator",
    "migrate_legacy_batch",
    "CredentialMetadata",
    "CredentialRecord",
    "CredentialStats",
    "CredentialStatus",
    "ServiceName",
    "CredentialRepository",
    "MemoryCredentialRepository",
    "PgCredentialRepository",
    "UsageResult",
    "AuthenticationFailure",
    "CredentialVaultError",
    "DuplicateCredentialError",
    "NotAvailableError",
    "NotFoundError",
    "RateLimitExceeded",
    "StateConflictError",
    "UnsupportedFormatError",
    "ValidationError",
]
