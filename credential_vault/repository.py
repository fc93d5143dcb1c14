"""
Vault Repository — persistence collaborator contract and implementations.

The vault never holds state of its own; every record lives behind a
``CredentialRepository``. Implementations must provide:

- durable storage keyed by record id
- conditional writes: ``compare_and_set(record, expected_version)`` stores
  the record only if the persisted version still equals ``expected_version``
  and bumps the version by one
- a uniqueness constraint on (owner_id, service, key_name) among live
  (non-revoked) records, enforced by ``insert``
- an optional per-owner cap on live records, checked by ``insert`` in the
  same critical section as the write

Two implementations ship with the package: an in-process store for tests
and embedded use, and an asyncpg-compatible PostgreSQL store that keeps
envelopes as opaque bytes.

Security Note:
    Repositories persist envelopes only. They never see master secrets,
    derived keys or plaintext.
"""
import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Optional

import orjson

from .crypto import Envelope
from .exceptions import DuplicateCredentialError, ValidationError
from .models import CredentialRecord, ServiceName

logger = logging.getLogger("credential_vault")


class CredentialRepository(ABC):
    """Abstract persistence collaborator."""

    @abstractmethod
    async def get(self, record_id: str) -> Optional[CredentialRecord]:
        """Return the record with ``record_id`` or None."""

    @abstractmethod
    async def find(
        self, owner_id: str, service: ServiceName, key_name: str,
    ) -> Optional[CredentialRecord]:
        """Return the live record for the key, else the newest revoked one."""

    @abstractmethod
    async def find_for_service(
        self, owner_id: str, service: ServiceName,
    ) -> list[CredentialRecord]:
        """Return the owner's records for a service, newest first."""

    @abstractmethod
    async def list_by_owner(self, owner_id: str) -> list[CredentialRecord]:
        """Return every record of an owner, newest first."""

    @abstractmethod
    async def count_live(self, owner_id: str) -> int:
        """Count the owner's non-revoked records."""

    @abstractmethod
    async def list_page(self, offset: int, limit: int) -> list[CredentialRecord]:
        """Return a stable page of all records ordered by id."""

    @abstractmethod
    async def insert(
        self, record: CredentialRecord, max_live: Optional[int] = None,
    ) -> CredentialRecord:
        """Insert a new record.

        Raises:
            DuplicateCredentialError: If a live record already exists for
                (owner_id, service, key_name).
            ValidationError: If the owner already holds ``max_live`` live
                records.
        """

    @abstractmethod
    async def compare_and_set(
        self, record: CredentialRecord, expected_version: int,
    ) -> Optional[CredentialRecord]:
        """Persist ``record`` if the stored version equals ``expected_version``.

        Returns:
            The stored record (with its new version), or None on conflict.
        """

    @abstractmethod
    async def delete(self, record_id: str) -> bool:
        """Remove a record permanently. Returns False if it did not exist."""


def _newest_first(record: CredentialRecord):
    return record.validity.created_at


def _limit_exceeded(max_live: int) -> ValidationError:
    return ValidationError(f"Max credentials per owner ({max_live}) exceeded")


class MemoryCredentialRepository(CredentialRepository):
    """In-process repository.

    Records are deep-copied on the way in and out so callers can never mutate
    stored state without going through ``compare_and_set``.
    """

    def __init__(self):
        self._records: dict[str, CredentialRecord] = {}
        self._lock = asyncio.Lock()

    def _copy(self, record: Optional[CredentialRecord]) -> Optional[CredentialRecord]:
        if record is None:
            return None
        return record.model_copy(deep=True)

    def _live_for_key(
        self, owner_id: str, service: ServiceName, key_name: str,
    ) -> Optional[CredentialRecord]:
        for record in self._records.values():
            if (
                record.owner_id == owner_id
                and record.service == service
                and record.key_name == key_name
                and record.is_live
            ):
                return record
        return None

    async def get(self, record_id: str) -> Optional[CredentialRecord]:
        return self._copy(self._records.get(record_id))

    async def find(
        self, owner_id: str, service: ServiceName, key_name: str,
    ) -> Optional[CredentialRecord]:
        live = self._live_for_key(owner_id, service, key_name)
        if live is not None:
            return self._copy(live)
        revoked = [
            r for r in self._records.values()
            if r.owner_id == owner_id and r.service == service and r.key_name == key_name
        ]
        if not revoked:
            return None
        return self._copy(max(revoked, key=_newest_first))

    async def find_for_service(
        self, owner_id: str, service: ServiceName,
    ) -> list[CredentialRecord]:
        records = [
            r for r in self._records.values()
            if r.owner_id == owner_id and r.service == service
        ]
        records.sort(key=_newest_first, reverse=True)
        return [self._copy(r) for r in records]

    async def list_by_owner(self, owner_id: str) -> list[CredentialRecord]:
        records = [r for r in self._records.values() if r.owner_id == owner_id]
        records.sort(key=_newest_first, reverse=True)
        return [self._copy(r) for r in records]

    def _count_live(self, owner_id: str) -> int:
        return sum(
            1 for r in self._records.values() if r.owner_id == owner_id and r.is_live
        )

    async def count_live(self, owner_id: str) -> int:
        return self._count_live(owner_id)

    async def list_page(self, offset: int, limit: int) -> list[CredentialRecord]:
        ids = sorted(self._records)[offset:offset + limit]
        return [self._copy(self._records[i]) for i in ids]

    async def insert(
        self, record: CredentialRecord, max_live: Optional[int] = None,
    ) -> CredentialRecord:
        async with self._lock:
            if record.is_live and self._live_for_key(
                record.owner_id, record.service, record.key_name,
            ) is not None:
                raise DuplicateCredentialError(
                    f"Credential {record.service.value}/{record.key_name} "
                    f"already exists for owner {record.owner_id}"
                )
            if max_live is not None and self._count_live(record.owner_id) >= max_live:
                raise _limit_exceeded(max_live)
            stored = record.model_copy(deep=True, update={"version": 1})
            self._records[stored.id] = stored
            return self._copy(stored)

    async def compare_and_set(
        self, record: CredentialRecord, expected_version: int,
    ) -> Optional[CredentialRecord]:
        async with self._lock:
            current = self._records.get(record.id)
            if current is None or current.version != expected_version:
                return None
            stored = record.model_copy(
                deep=True, update={"version": expected_version + 1},
            )
            self._records[stored.id] = stored
            return self._copy(stored)

    async def delete(self, record_id: str) -> bool:
        async with self._lock:
            return self._records.pop(record_id, None) is not None


# ---------------------------------------------------------------------------
# PostgreSQL (asyncpg-compatible pool)
# ---------------------------------------------------------------------------

_CREATE_SCHEMA = """
CREATE SCHEMA IF NOT EXISTS vault;
CREATE TABLE IF NOT EXISTS vault.credentials (
    id UUID PRIMARY KEY,
    owner_id TEXT NOT NULL,
    service_name TEXT NOT NULL
        CHECK (service_name IN ('anthropic', 'openai', 'google', 'custom')),
    key_name TEXT NOT NULL,
    key_status TEXT NOT NULL
        CHECK (key_status IN ('active', 'inactive', 'expired', 'revoked')),
    version INTEGER NOT NULL DEFAULT 1,
    envelope BYTEA NOT NULL,
    record JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_credentials_live_key
    ON vault.credentials (owner_id, service_name, key_name)
    WHERE key_status <> 'revoked';
CREATE INDEX IF NOT EXISTS idx_credentials_owner
    ON vault.credentials (owner_id);
"""

_COLUMNS = "id, owner_id, service_name, key_name, key_status, version, envelope, record"

_INSERT = f"""
INSERT INTO vault.credentials ({_COLUMNS}, created_at)
VALUES ($1, $2, $3, $4, $5, 1, $6, $7, $8)
ON CONFLICT (owner_id, service_name, key_name) WHERE key_status <> 'revoked'
DO NOTHING
RETURNING id
"""

_COMPARE_AND_SET = """
UPDATE vault.credentials
SET key_status = $3, version = $2 + 1, envelope = $4, record = $5,
    updated_at = NOW()
WHERE id = $1 AND version = $2
"""

_SELECT_BY_ID = f"SELECT {_COLUMNS} FROM vault.credentials WHERE id = $1"

_SELECT_BY_KEY = f"""
SELECT {_COLUMNS} FROM vault.credentials
WHERE owner_id = $1 AND service_name = $2 AND key_name = $3
ORDER BY (key_status = 'revoked'), created_at DESC
LIMIT 1
"""

_SELECT_BY_SERVICE = f"""
SELECT {_COLUMNS} FROM vault.credentials
WHERE owner_id = $1 AND service_name = $2
ORDER BY created_at DESC
"""

_SELECT_BY_OWNER = f"""
SELECT {_COLUMNS} FROM vault.credentials
WHERE owner_id = $1
ORDER BY created_at DESC
"""

_COUNT_LIVE = """
SELECT COUNT(*) FROM vault.credentials
WHERE owner_id = $1 AND key_status <> 'revoked'
"""

_SELECT_PAGE = f"""
SELECT {_COLUMNS} FROM vault.credentials
ORDER BY id
LIMIT $1
OFFSET $2
"""

_DELETE = "DELETE FROM vault.credentials WHERE id = $1"

# serializes inserts per owner until the enclosing transaction ends
_LOCK_OWNER = "SELECT pg_advisory_xact_lock(hashtext($1))"


def _affected_rows(status: str) -> int:
    """Parse an asyncpg command status such as ``'UPDATE 1'``."""
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


def _record_uuid(record_id: Any) -> Optional[uuid.UUID]:
    """Parse a record id, returning None for anything that is not a UUID."""
    try:
        return uuid.UUID(str(record_id))
    except ValueError:
        return None


class PgCredentialRepository(CredentialRepository):
    """PostgreSQL repository over an asyncpg-compatible connection pool.

    Scalar columns carry what the database filters and constrains on; the
    rest of the record is a JSONB document and the envelope is stored as
    opaque bytes. No encryption happens inside the database.
    """

    def __init__(self, db_pool: Any):
        self._db = db_pool

    async def ensure_schema(self) -> None:
        async with self._db.acquire() as conn:
            await conn.execute(_CREATE_SCHEMA)

    @staticmethod
    def _document(record: CredentialRecord) -> str:
        data = record.model_dump(
            mode="json", exclude={"envelope", "version", "id"},
        )
        return orjson.dumps(data).decode("utf-8")

    @staticmethod
    def _from_row(row: Any) -> CredentialRecord:
        document = row["record"]
        if isinstance(document, (str, bytes)):
            document = orjson.loads(document)
        return CredentialRecord.model_validate({
            **document,
            "id": str(row["id"]),
            "status": row["key_status"],
            "version": row["version"],
            "envelope": Envelope.from_json(row["envelope"]),
        })

    async def get(self, record_id: str) -> Optional[CredentialRecord]:
        key = _record_uuid(record_id)
        if key is None:
            return None
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(_SELECT_BY_ID, key)
        return self._from_row(row) if row is not None else None

    async def find(
        self, owner_id: str, service: ServiceName, key_name: str,
    ) -> Optional[CredentialRecord]:
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(
                _SELECT_BY_KEY, owner_id, ServiceName(service).value, key_name,
            )
        return self._from_row(row) if row is not None else None

    async def find_for_service(
        self, owner_id: str, service: ServiceName,
    ) -> list[CredentialRecord]:
        async with self._db.acquire() as conn:
            rows = await conn.fetch(
                _SELECT_BY_SERVICE, owner_id, ServiceName(service).value,
            )
        return [self._from_row(row) for row in rows]

    async def list_by_owner(self, owner_id: str) -> list[CredentialRecord]:
        async with self._db.acquire() as conn:
            rows = await conn.fetch(_SELECT_BY_OWNER, owner_id)
        return [self._from_row(row) for row in rows]

    async def count_live(self, owner_id: str) -> int:
        async with self._db.acquire() as conn:
            return int(await conn.fetchval(_COUNT_LIVE, owner_id))

    async def list_page(self, offset: int, limit: int) -> list[CredentialRecord]:
        async with self._db.acquire() as conn:
            rows = await conn.fetch(_SELECT_PAGE, limit, offset)
        return [self._from_row(row) for row in rows]

    async def insert(
        self, record: CredentialRecord, max_live: Optional[int] = None,
    ) -> CredentialRecord:
        async with self._db.acquire() as conn:
            async with conn.transaction():
                if max_live is not None:
                    await conn.execute(_LOCK_OWNER, record.owner_id)
                    live = await conn.fetchval(_COUNT_LIVE, record.owner_id)
                    if int(live or 0) >= max_live:
                        raise _limit_exceeded(max_live)
                inserted = await conn.fetchval(
                    _INSERT,
                    uuid.UUID(record.id),
                    record.owner_id,
                    record.service.value,
                    record.key_name,
                    record.status.value,
                    record.envelope.to_json(),
                    self._document(record),
                    record.validity.created_at,
                )
        if inserted is None:
            raise DuplicateCredentialError(
                f"Credential {record.service.value}/{record.key_name} "
                f"already exists for owner {record.owner_id}"
            )
        return record.model_copy(update={"version": 1})

    async def compare_and_set(
        self, record: CredentialRecord, expected_version: int,
    ) -> Optional[CredentialRecord]:
        key = _record_uuid(record.id)
        if key is None:
            return None
        async with self._db.acquire() as conn:
            status = await conn.execute(
                _COMPARE_AND_SET,
                key,
                expected_version,
                record.status.value,
                record.envelope.to_json(),
                self._document(record),
            )
        if _affected_rows(status) != 1:
            logger.debug(
                "Conditional update lost: record=%s expected_version=%d",
                record.id, expected_version,
            )
            return None
        return record.model_copy(update={"version": expected_version + 1})

    async def delete(self, record_id: str) -> bool:
        key = _record_uuid(record_id)
        if key is None:
            return False
        async with self._db.acquire() as conn:
            status = await conn.execute(_DELETE, key)
        return _affected_rows(status) == 1
