"""
Vault Exceptions — typed error contract for every vault operation.

Cryptographic failures are deliberately undifferentiated: a wrong master
secret, a corrupted ciphertext, nonce, salt or tag all surface as the same
``AuthenticationFailure`` with the same generic message. Lifecycle and
validation errors may be specific, they reveal no secret material.
"""
from typing import Any, Optional

GENERIC_UNAVAILABLE = "credential unavailable"


class CredentialVaultError(Exception):
    """Base class for all vault errors."""


class ValidationError(CredentialVaultError, ValueError):
    """Malformed owner/service/key name, unsupported service or bad input."""


class AuthenticationFailure(CredentialVaultError):
    """Tag, key or ciphertext mismatch."""

    def __init__(self, message: str = GENERIC_UNAVAILABLE):
        super().__init__(message)


class UnsupportedFormatError(CredentialVaultError):
    """Unknown algorithm, envelope version or unparseable envelope."""


class NotFoundError(CredentialVaultError, LookupError):
    """No such record (or the record belongs to another owner)."""


class StateConflictError(CredentialVaultError):
    """Operation invalid for the current lifecycle state."""


class DuplicateCredentialError(StateConflictError):
    """A live credential already exists for (owner, service, key name)."""


class NotAvailableError(CredentialVaultError):
    """The credential exists but is not active.

    Attributes:
        reason: the record status that prevents the read
            (``expired``, ``revoked`` or ``inactive``).
    """

    def __init__(self, reason: Any, record_id: Optional[str] = None):
        self.reason = reason
        self.record_id = record_id
        label = getattr(reason, "value", reason)
        super().__init__(f"{GENERIC_UNAVAILABLE}: {label}")


class RateLimitExceeded(CredentialVaultError):
    """Advisory daily limit exceeded (raised only on caller request)."""

    def __init__(self, record_id: str, daily_used: int, daily_limit: int):
        self.record_id = record_id
        self.daily_used = daily_used
        self.daily_limit = daily_limit
        super().__init__(
            f"Daily limit exceeded for credential {record_id}: "
            f"{daily_used}/{daily_limit}"
        )
