"""
CredentialVault — Encrypted storage of third-party API keys.

Provides the public API of the Credential Vault:
- ``store_credential(...)`` — encrypt and persist a key (upsert = rotation)
- ``retrieve_credential(...)`` — decrypt an active key
- ``revoke_credential(...)`` — terminal, idempotent revocation
- ``record_usage(...)`` — consumption counters with advisory daily limits
- ``list_credentials(...)`` — metadata listing, never plaintext
- ``migrate_legacy(...)`` / ``import_legacy(...)`` — legacy format conversion

The master secret is a parameter of every call that needs it. The vault
never stores it, logs it or returns it.

Security Note:
    Never log plaintext or envelope contents. Only log owner ids, record ids,
    key names, services and statuses.
"""
import logging
from typing import Callable, Optional, Union

from .config import VaultConfig
from .crypto import EncryptionEngine, Envelope, MasterSecret
from .exceptions import (
    DuplicateCredentialError,
    NotAvailableError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from .legacy import LegacyMigrator
from .lifecycle import Clock, CredentialLifecycle, new_validity, utcnow
from .models import (
    AuditInfo,
    CredentialMetadata,
    CredentialRecord,
    CredentialStats,
    CredentialStatus,
    ServiceName,
    UsageStats,
    validate_annotations,
)
from .repository import CredentialRepository, MemoryCredentialRepository
from .usage import UsageResult, UsageTracker

logger = logging.getLogger("credential_vault")

# Vendor prefixes kept for identification in listings, longest first.
KNOWN_KEY_PREFIXES = ("sk-ant-", "sk-proj-", "sk-")

_MAX_OWNER_ID_LENGTH = 128
_MAX_ADDRESS_LENGTH = 64


def key_prefix(plaintext: str) -> Optional[str]:
    """Return the public vendor prefix of a key, if it has a known one."""
    for prefix in KNOWN_KEY_PREFIXES:
        if plaintext.startswith(prefix):
            return prefix
    return None


class CredentialVault:
    """Lifecycle-managed vault of encrypted credentials.

    The vault composes the encryption engine, the lifecycle manager, the
    usage tracker and the legacy migrator over a single repository. All
    persistence goes through conditional writes on the record version.
    """

    def __init__(
        self,
        repository: Optional[CredentialRepository] = None,
        config: Optional[VaultConfig] = None,
        clock: Clock = utcnow,
    ):
        self._config = config or VaultConfig()
        self._repo = repository if repository is not None else MemoryCredentialRepository()
        self._clock = clock
        self._engine = EncryptionEngine.from_config(self._config)
        self._lifecycle = CredentialLifecycle(
            self._repo, clock=clock, max_retries=self._config.max_cas_retries,
        )
        self._usage = UsageTracker(
            self._repo, clock=clock, max_retries=self._config.max_cas_retries,
        )
        self._migrator = LegacyMigrator(self._engine)

    @property
    def engine(self) -> EncryptionEngine:
        return self._engine

    @property
    def repository(self) -> CredentialRepository:
        return self._repo

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_owner(self, owner_id: str) -> str:
        if not isinstance(owner_id, str) or not owner_id.strip():
            raise ValidationError("Owner id cannot be empty")
        if len(owner_id) > _MAX_OWNER_ID_LENGTH:
            raise ValidationError(
                f"Owner id cannot exceed {_MAX_OWNER_ID_LENGTH} characters"
            )
        return owner_id

    def _validate_service(self, service: Union[ServiceName, str]) -> ServiceName:
        try:
            return ServiceName(service)
        except ValueError:
            raise ValidationError(f"Unsupported service: {service!r}") from None

    def _validate_key_name(self, key_name: str) -> str:
        """Validate a credential key name.

        Raises:
            ValidationError: If key_name is empty, too long or contains
                control characters.
        """
        if not isinstance(key_name, str) or not key_name.strip():
            raise ValidationError("Key name cannot be empty")
        if len(key_name) > self._config.max_key_name_length:
            raise ValidationError(
                f"Key name cannot exceed {self._config.max_key_name_length} characters"
            )
        if any(not ch.isprintable() for ch in key_name):
            raise ValidationError("Key name cannot contain control characters")
        return key_name

    def _validate_ttl(self, ttl_days: Optional[int]) -> Optional[int]:
        if ttl_days is None:
            return self._config.default_ttl_days
        if isinstance(ttl_days, bool) or not isinstance(ttl_days, int) or not 1 <= ttl_days <= 3650:
            raise ValidationError("ttl_days must be an integer between 1 and 3650")
        return ttl_days

    def _validate_limit(self, daily_limit: Optional[int]) -> Optional[int]:
        if daily_limit is None:
            return None
        if isinstance(daily_limit, bool) or not isinstance(daily_limit, int) or daily_limit < 0:
            raise ValidationError("daily_limit must be a non-negative integer")
        return daily_limit

    def _validate_address(self, address: Optional[str]) -> Optional[str]:
        if address is not None and len(address) > _MAX_ADDRESS_LENGTH:
            raise ValidationError("source address is too long")
        return address

    async def _owned(self, owner_id: str, record_id: str) -> CredentialRecord:
        record = await self._repo.get(record_id)
        if record is None or record.owner_id != owner_id:
            raise NotFoundError(f"Credential {record_id} not found")
        return record

    # ------------------------------------------------------------------
    # Store / rotate
    # ------------------------------------------------------------------

    async def store_credential(
        self,
        owner_id: str,
        service: Union[ServiceName, str],
        key_name: str,
        plaintext: str,
        master_secret: MasterSecret,
        ttl_days: Optional[int] = None,
        *,
        daily_limit: Optional[int] = None,
        annotations: Optional[list] = None,
        source_address: Optional[str] = None,
    ) -> str:
        """Encrypt and persist a credential.

        Storing under an existing (owner, service, key_name) rotates the live
        record in place: fresh envelope, ``active`` status and a new validity
        window. If only a revoked record exists, a new record is created.

        Args:
            owner_id: Owner of the credential.
            service: Provider the key belongs to.
            key_name: Caller-chosen name, unique per owner and service.
            plaintext: The API key.
            master_secret: Secret the envelope key is derived from.
            ttl_days: Validity window in days (None = no expiry).
            daily_limit: Advisory daily unit limit.
            annotations: Tagged metadata (label/environment/provider/extension).
            source_address: Client address recorded for audit.

        Returns:
            The record id.

        Raises:
            ValidationError: Invalid input or per-owner limit reached.
            StateConflictError: The record was revoked while rotating.
        """
        owner_id = self._validate_owner(owner_id)
        service = self._validate_service(service)
        key_name = self._validate_key_name(key_name)
        ttl_days = self._validate_ttl(ttl_days)
        daily_limit = self._validate_limit(daily_limit)
        source_address = self._validate_address(source_address)
        items = validate_annotations(annotations)

        envelope = self._engine.encrypt(plaintext, master_secret)
        prefix = key_prefix(plaintext)

        for _ in range(self._config.max_cas_retries):
            now = self._clock()
            existing = await self._repo.find(owner_id, service, key_name)
            if existing is None or not existing.is_live:
                record = CredentialRecord(
                    owner_id=owner_id,
                    service=service,
                    key_name=key_name,
                    envelope=envelope,
                    status=CredentialStatus.ACTIVE,
                    validity=new_validity(now, ttl_days, self._config.rotation_reminder_days),
                    usage=UsageStats(daily_limit=daily_limit),
                    audit=AuditInfo(created_from_address=source_address),
                    key_prefix=prefix,
                    annotations=items,
                    updated_at=now,
                )
                try:
                    stored = await self._repo.insert(
                        record, max_live=self._config.max_keys_per_owner,
                    )
                except DuplicateCredentialError:
                    logger.debug(
                        "Concurrent insert for owner=%s key=%s, retrying as rotation",
                        owner_id, key_name,
                    )
                    continue
                logger.info(
                    "Credential stored: owner=%s service=%s key=%s id=%s",
                    owner_id, service.value, key_name, stored.id,
                )
                return stored.id

            update = {
                "envelope": envelope,
                "status": CredentialStatus.ACTIVE,
                "validity": new_validity(
                    now, ttl_days, self._config.rotation_reminder_days,
                    created_at=existing.validity.created_at,
                ),
                "audit": existing.audit.model_copy(
                    update={"last_validation_error": None}
                ),
                "key_prefix": prefix,
                "updated_at": now,
            }
            if annotations is not None:
                update["annotations"] = items
            if daily_limit is not None:
                update["usage"] = existing.usage.model_copy(
                    update={"daily_limit": daily_limit}
                )
            stored = await self._repo.compare_and_set(
                existing.model_copy(update=update), existing.version,
            )
            if stored is not None:
                logger.info(
                    "Credential rotated: owner=%s service=%s key=%s id=%s",
                    owner_id, service.value, key_name, stored.id,
                )
                return stored.id
            current = await self._repo.get(existing.id)
            if current is not None and current.status is CredentialStatus.REVOKED:
                raise StateConflictError(
                    f"Credential {existing.id} was revoked during rotation"
                )
        raise StateConflictError(
            f"Credential {service.value}/{key_name} is being modified concurrently"
        )

    # ------------------------------------------------------------------
    # Retrieve
    # ------------------------------------------------------------------

    async def _resolve(
        self, owner_id: str, service: ServiceName, key_name: Optional[str],
    ) -> CredentialRecord:
        if key_name is not None:
            record = await self._repo.find(owner_id, service, key_name)
            if record is None:
                raise NotFoundError(
                    f"No credential {service.value}/{key_name} for owner {owner_id}"
                )
            return record
        records = await self._repo.find_for_service(owner_id, service)
        if not records:
            raise NotFoundError(
                f"No {service.value} credential for owner {owner_id}"
            )
        now = self._clock()
        for record in records:
            if record.effective_status(now) is CredentialStatus.ACTIVE:
                return record
        live = [r for r in records if r.is_live]
        return live[0] if live else records[0]

    async def retrieve_credential(
        self,
        owner_id: str,
        service: Union[ServiceName, str],
        master_secret: MasterSecret,
        key_name: Optional[str] = None,
    ) -> str:
        """Decrypt and return an active credential.

        Without ``key_name`` the newest active record for the service is used.

        Raises:
            NotFoundError: No matching record.
            NotAvailableError: The record is expired, revoked or inactive.
            AuthenticationFailure: The envelope does not open with this secret.
        """
        owner_id = self._validate_owner(owner_id)
        service = self._validate_service(service)
        if key_name is not None:
            key_name = self._validate_key_name(key_name)
        record = await self._resolve(owner_id, service, key_name)
        record = await self._lifecycle.expire_if_due(record)
        if record.status is not CredentialStatus.ACTIVE:
            logger.info(
                "Credential %s not available: %s", record.id, record.status.value,
            )
            raise NotAvailableError(record.status, record_id=record.id)
        return self._engine.decrypt(record.envelope, master_secret)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def revoke_credential(self, owner_id: str, record_id: str) -> None:
        """Revoke a credential. Idempotent; revocation is terminal."""
        self._validate_owner(owner_id)
        await self._lifecycle.revoke(record_id, owner_id=owner_id)

    async def deactivate_credential(self, owner_id: str, record_id: str) -> None:
        """Suspend an active credential without revoking it."""
        self._validate_owner(owner_id)
        await self._lifecycle.transition(
            record_id, CredentialStatus.INACTIVE, owner_id=owner_id,
        )

    async def activate_credential(self, owner_id: str, record_id: str) -> None:
        """Re-enable an inactive credential that is still within its window."""
        self._validate_owner(owner_id)
        await self._lifecycle.transition(
            record_id, CredentialStatus.ACTIVE, owner_id=owner_id,
        )

    async def delete_credential(self, owner_id: str, record_id: str) -> None:
        """Permanently remove a credential record."""
        self._validate_owner(owner_id)
        await self._owned(owner_id, record_id)
        await self._repo.delete(record_id)
        logger.info("Credential deleted: owner=%s id=%s", owner_id, record_id)

    async def sweep_expired(self) -> int:
        """Persist expiry for every active credential past its window."""
        return await self._lifecycle.sweep_expired()

    # ------------------------------------------------------------------
    # Usage and audit
    # ------------------------------------------------------------------

    async def record_usage(
        self,
        record_id: str,
        units: int,
        source_address: Optional[str] = None,
    ) -> UsageResult:
        """Count a use of the credential. Advisory only, never blocks."""
        source_address = self._validate_address(source_address)
        return await self._usage.track_usage(record_id, units, source_address)

    async def _update_owned(
        self,
        owner_id: str,
        record_id: str,
        build: Callable[[CredentialRecord], CredentialRecord],
    ) -> CredentialRecord:
        self._validate_owner(owner_id)
        for _ in range(self._config.max_cas_retries):
            record = await self._owned(owner_id, record_id)
            stored = await self._repo.compare_and_set(build(record), record.version)
            if stored is not None:
                return stored
        raise StateConflictError(
            f"Credential {record_id} is being modified concurrently"
        )

    async def set_daily_limit(
        self, owner_id: str, record_id: str, daily_limit: Optional[int],
    ) -> None:
        """Set or clear (None) the advisory daily limit."""
        daily_limit = self._validate_limit(daily_limit)

        def build(record: CredentialRecord) -> CredentialRecord:
            return record.model_copy(update={
                "usage": record.usage.model_copy(update={"daily_limit": daily_limit}),
                "updated_at": self._clock(),
            })

        await self._update_owned(owner_id, record_id, build)

    async def record_validation(
        self, owner_id: str, record_id: str, error: Optional[str] = None,
    ) -> None:
        """Record the outcome of a provider-side key validation."""
        if error is not None:
            error = error[:500]

        def build(record: CredentialRecord) -> CredentialRecord:
            now = self._clock()
            return record.model_copy(update={
                "audit": record.audit.model_copy(update={
                    "last_validation_at": now,
                    "last_validation_error": error,
                }),
                "updated_at": now,
            })

        await self._update_owned(owner_id, record_id, build)
        logger.info(
            "Credential %s validation recorded: %s",
            record_id, "failed" if error else "ok",
        )

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def list_credentials(self, owner_id: str) -> list[CredentialMetadata]:
        """List an owner's credentials without any secret material."""
        owner_id = self._validate_owner(owner_id)
        now = self._clock()
        return [r.to_metadata(now) for r in await self._repo.list_by_owner(owner_id)]

    async def credential_stats(self, owner_id: str) -> CredentialStats:
        """Aggregate counters over an owner's credentials."""
        owner_id = self._validate_owner(owner_id)
        now = self._clock()
        stats = CredentialStats()
        for record in await self._repo.list_by_owner(owner_id):
            status = record.effective_status(now)
            stats.total_keys += 1
            if status is CredentialStatus.ACTIVE:
                stats.active_keys += 1
            elif status is CredentialStatus.EXPIRED:
                stats.expired_keys += 1
            elif status is CredentialStatus.REVOKED:
                stats.revoked_keys += 1
            stats.total_usage += record.usage.usage_count
            stats.total_units += record.usage.total_units_consumed
            service = record.service.value
            stats.keys_by_service[service] = stats.keys_by_service.get(service, 0) + 1
            last_used = record.usage.last_used_at
            if last_used is not None and (
                stats.last_used_at is None or last_used > stats.last_used_at
            ):
                stats.last_used_at = last_used
        return stats

    async def rotation_due(self, owner_id: str) -> list[CredentialMetadata]:
        """Active credentials whose rotation reminder has been reached."""
        owner_id = self._validate_owner(owner_id)
        now = self._clock()
        due = []
        for record in await self._repo.list_by_owner(owner_id):
            reminder = record.validity.rotation_reminder_at
            if (
                reminder is not None
                and reminder <= now
                and record.effective_status(now) is CredentialStatus.ACTIVE
            ):
                due.append(record.to_metadata(now))
        return due

    # ------------------------------------------------------------------
    # Legacy migration
    # ------------------------------------------------------------------

    async def migrate_legacy(
        self, raw: Union[Envelope, str, bytes], master_secret: MasterSecret,
    ) -> Envelope:
        """Convert a legacy-encoded value into an envelope (no persistence)."""
        return self._migrator.migrate(raw, master_secret)

    def detect_legacy(self, raw: Union[Envelope, str, bytes]) -> bool:
        return self._migrator.detect(raw)

    async def import_legacy(
        self,
        owner_id: str,
        service: Union[ServiceName, str],
        key_name: str,
        raw: str,
        master_secret: MasterSecret,
        ttl_days: Optional[int] = None,
    ) -> tuple[str, bool]:
        """Migrate a legacy value and store it as a credential.

        Idempotent per (owner, service, key_name): if a record already exists
        with a supported envelope format, nothing is written.

        Returns:
            (record_id, migrated) where migrated is False when skipped.
        """
        owner_id = self._validate_owner(owner_id)
        service = self._validate_service(service)
        key_name = self._validate_key_name(key_name)
        existing = await self._repo.find(owner_id, service, key_name)
        if existing is not None and existing.envelope.is_supported:
            logger.debug(
                "Legacy import skipped: owner=%s key=%s already migrated",
                owner_id, key_name,
            )
            return existing.id, False
        plaintext = self._migrator.recover(raw, master_secret)
        record_id = await self.store_credential(
            owner_id, service, key_name, plaintext, master_secret, ttl_days,
        )
        return record_id, True

