"""
Credential Lifecycle — status state machine, validity windows and expiry.

States::

    active   → expired | inactive | revoked
    inactive → active | revoked
    expired  → revoked
    revoked  (terminal)

Rotation is handled by the vault: any non-revoked record goes back to
``active`` with a fresh envelope and validity window.

Every transition is a compare-and-set against the persisted version. When a
write loses a race the record is re-read and the transition re-evaluated,
which gives revocation priority: revoke keeps retrying, while expiry and
rotation give up as soon as they observe ``revoked``.
"""
import logging
from typing import Callable, Optional
from datetime import datetime, timedelta, timezone

from .exceptions import NotFoundError, StateConflictError
from .models import CredentialRecord, CredentialStatus, Validity
from .repository import CredentialRepository

logger = logging.getLogger("credential_vault")

Clock = Callable[[], datetime]

ALLOWED_TRANSITIONS: dict[CredentialStatus, frozenset] = {
    CredentialStatus.ACTIVE: frozenset({
        CredentialStatus.EXPIRED,
        CredentialStatus.INACTIVE,
        CredentialStatus.REVOKED,
    }),
    CredentialStatus.INACTIVE: frozenset({
        CredentialStatus.ACTIVE,
        CredentialStatus.REVOKED,
    }),
    CredentialStatus.EXPIRED: frozenset({CredentialStatus.REVOKED}),
    CredentialStatus.REVOKED: frozenset(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: CredentialStatus, target: CredentialStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(current: CredentialStatus, target: CredentialStatus) -> None:
    """Raise StateConflictError if ``current → target`` is not allowed."""
    if not can_transition(current, target):
        raise StateConflictError(
            f"Cannot move credential from {current.value} to {target.value}"
        )


def new_validity(
    now: datetime,
    ttl_days: Optional[int],
    reminder_days: int,
    created_at: Optional[datetime] = None,
) -> Validity:
    """Build a validity window starting at ``now``.

    The rotation reminder falls ``reminder_days`` before expiry, but never
    before the window opens.
    """
    expires_at = None
    reminder_at = None
    if ttl_days is not None:
        expires_at = now + timedelta(days=ttl_days)
        reminder_at = max(now, expires_at - timedelta(days=reminder_days))
    return Validity(
        created_at=created_at or now,
        rotated_at=now if created_at is not None else None,
        expires_at=expires_at,
        rotation_reminder_at=reminder_at,
    )


class CredentialLifecycle:
    """Applies status transitions to persisted records."""

    def __init__(
        self,
        repository: CredentialRepository,
        clock: Clock = utcnow,
        max_retries: int = 5,
    ):
        self._repo = repository
        self._clock = clock
        self._max_retries = max_retries

    async def _load(self, record_id: str, owner_id: Optional[str]) -> CredentialRecord:
        record = await self._repo.get(record_id)
        if record is None or (owner_id is not None and record.owner_id != owner_id):
            raise NotFoundError(f"Credential {record_id} not found")
        return record

    async def transition(
        self,
        record_id: str,
        target: CredentialStatus,
        owner_id: Optional[str] = None,
    ) -> CredentialRecord:
        """Move a record to ``target``.

        Idempotent when the record is already in ``target``.

        Raises:
            NotFoundError: Unknown record or owner mismatch.
            StateConflictError: Transition not allowed, or retries exhausted.
        """
        for _ in range(self._max_retries):
            record = await self.expire_if_due(
                await self._load(record_id, owner_id)
            )
            if record.status is target:
                return record
            ensure_transition(record.status, target)
            now = self._clock()
            if (
                target is CredentialStatus.ACTIVE
                and record.is_past_expiry(now)
            ):
                raise StateConflictError(
                    f"Credential {record_id} is past its expiry and cannot be activated"
                )
            updated = record.model_copy(update={"status": target, "updated_at": now})
            stored = await self._repo.compare_and_set(updated, record.version)
            if stored is not None:
                logger.info(
                    "Credential %s: %s -> %s",
                    record_id, record.status.value, target.value,
                )
                return stored
            logger.debug("Transition conflict on %s, retrying", record_id)
        raise StateConflictError(
            f"Credential {record_id} is being modified concurrently"
        )

    async def revoke(self, record_id: str, owner_id: Optional[str] = None) -> CredentialRecord:
        """Revoke a record. Idempotent and terminal.

        Revocation is allowed from every non-revoked state, so a conflict
        only ever means another writer got there first: re-read and retry.
        """
        for _ in range(self._max_retries * 4):
            record = await self._load(record_id, owner_id)
            if record.status is CredentialStatus.REVOKED:
                return record
            updated = record.model_copy(update={
                "status": CredentialStatus.REVOKED,
                "updated_at": self._clock(),
            })
            stored = await self._repo.compare_and_set(updated, record.version)
            if stored is not None:
                logger.info("Credential %s revoked", record_id)
                return stored
        raise StateConflictError(
            f"Credential {record_id} is being modified concurrently"
        )

    async def expire_if_due(self, record: CredentialRecord) -> CredentialRecord:
        """Persist lazy expiry for an active record past ``expires_at``.

        Returns the current record, which may have been changed by a
        concurrent writer (e.g. revoked) in the meantime.
        """
        for _ in range(self._max_retries):
            now = self._clock()
            if record.status is not CredentialStatus.ACTIVE or not record.is_past_expiry(now):
                return record
            updated = record.model_copy(update={
                "status": CredentialStatus.EXPIRED,
                "updated_at": now,
            })
            stored = await self._repo.compare_and_set(updated, record.version)
            if stored is not None:
                logger.info("Credential %s expired", record.id)
                return stored
            current = await self._repo.get(record.id)
            if current is None:
                raise NotFoundError(f"Credential {record.id} not found")
            record = current
        return record

    async def sweep_expired(self, batch_size: int = 100) -> int:
        """Mark every active record past its expiry as expired.

        Returns:
            Number of records transitioned.
        """
        expired = 0
        offset = 0
        while True:
            page = await self._repo.list_page(offset, batch_size)
            if not page:
                break
            for record in page:
                if record.status is not CredentialStatus.ACTIVE:
                    continue
                result = await self.expire_if_due(record)
                if result.status is CredentialStatus.EXPIRED and record.status is CredentialStatus.ACTIVE:
                    expired += 1
            offset += len(page)
        logger.info("Expiry sweep complete: %d credential(s) expired", expired)
        return expired
