"""
Master Secret Rotation — Batch re-encryption of envelopes under a new secret.

Re-encrypts every live credential from the old master secret to the new one
in configurable batches. Each record is written with a conditional update,
so the job never overwrites a concurrent revocation or rotation. The
operation is idempotent: envelopes that already open under the new secret
are skipped, and a crashed run can simply be started again.

Only the envelope changes. Status, validity and usage are left alone.

Security Note:
    Plaintext exists in memory only during re-encryption of each record.
    Never log plaintext, ciphertext or either secret.
"""
import logging
from typing import Optional

from .crypto import EncryptionEngine, MasterSecret
from .exceptions import AuthenticationFailure, CredentialVaultError
from .lifecycle import Clock, utcnow
from .models import CredentialRecord
from .repository import CredentialRepository

logger = logging.getLogger("credential_vault")


def _opens_with(engine: EncryptionEngine, record: CredentialRecord, secret: MasterSecret) -> Optional[str]:
    try:
        return engine.decrypt(record.envelope, secret)
    except AuthenticationFailure:
        return None


async def rotate_master_secret(
    repository: CredentialRepository,
    engine: EncryptionEngine,
    old_secret: MasterSecret,
    new_secret: MasterSecret,
    batch_size: int = 100,
    clock: Clock = utcnow,
) -> dict:
    """Re-encrypt all live credentials from ``old_secret`` to ``new_secret``.

    Args:
        repository: Credential repository to walk.
        engine: Encryption engine used for both sides.
        old_secret: Master secret the envelopes are currently sealed with.
        new_secret: Master secret to seal them with.
        batch_size: Number of records fetched per page.
        clock: Time source for ``updated_at``.

    Returns:
        Stats dict with keys: total, rotated, skipped, errors.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be positive")
    stats = {"total": 0, "rotated": 0, "skipped": 0, "errors": 0}
    offset = 0

    logger.info("Starting master secret rotation (batch_size=%d)", batch_size)

    while True:
        rows = await repository.list_page(offset, batch_size)
        if not rows:
            break

        batch_num = (offset // batch_size) + 1
        logger.info("Processing batch %d (%d records)", batch_num, len(rows))

        for record in rows:
            if not record.is_live:
                continue
            stats["total"] += 1
            try:
                plaintext = _opens_with(engine, record, old_secret)
                if plaintext is None:
                    if _opens_with(engine, record, new_secret) is not None:
                        stats["skipped"] += 1
                        continue
                    raise AuthenticationFailure()
                updated = record.model_copy(update={
                    "envelope": engine.encrypt(plaintext, new_secret),
                    "updated_at": clock(),
                })
                stored = await repository.compare_and_set(updated, record.version)
                if stored is None:
                    logger.warning(
                        "Record %s changed during rotation; re-run to retry", record.id,
                    )
                    stats["errors"] += 1
                    continue
                stats["rotated"] += 1
            except CredentialVaultError as err:
                logger.error(
                    "Error rotating credential id=%s key=%s: %s",
                    record.id, record.key_name, type(err).__name__,
                )
                stats["errors"] += 1

        offset += len(rows)

    logger.info("Master secret rotation complete: %s", stats)
    return stats
