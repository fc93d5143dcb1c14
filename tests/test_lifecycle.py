"""
Tests for the credential lifecycle state machine.

Tests cover:
- Allowed and forbidden transitions
- Lazy expiry on read and the expiry sweep
- Revocation precedence over concurrent rotation and expiry
- Validity windows and rotation reminders
"""
import pytest
from datetime import timedelta

from credential_vault import CredentialVault
from credential_vault.exceptions import (
    NotAvailableError,
    NotFoundError,
    StateConflictError,
)
from credential_vault.lifecycle import (
    ALLOWED_TRANSITIONS,
    CredentialLifecycle,
    can_transition,
    new_validity,
)
from credential_vault.models import CredentialStatus
from credential_vault.repository import MemoryCredentialRepository

from .conftest import MASTER_A, OTHER_OWNER, OWNER


class RevokingRepository(MemoryCredentialRepository):
    """Repository that revokes a record right before the next conditional write.

    Simulates a revoke landing between a writer's read and its write.
    """

    def __init__(self):
        super().__init__()
        self.revoke_next = None

    async def compare_and_set(self, record, expected_version):
        if self.revoke_next is not None and record.status is not CredentialStatus.REVOKED:
            target, self.revoke_next = self.revoke_next, None
            current = await self.get(target)
            await super().compare_and_set(
                current.model_copy(update={"status": CredentialStatus.REVOKED}),
                current.version,
            )
        return await super().compare_and_set(record, expected_version)


class TestTransitions:
    """The transition table."""

    @pytest.mark.parametrize("current,target", [
        (CredentialStatus.ACTIVE, CredentialStatus.EXPIRED),
        (CredentialStatus.ACTIVE, CredentialStatus.INACTIVE),
        (CredentialStatus.ACTIVE, CredentialStatus.REVOKED),
        (CredentialStatus.INACTIVE, CredentialStatus.ACTIVE),
        (CredentialStatus.INACTIVE, CredentialStatus.REVOKED),
        (CredentialStatus.EXPIRED, CredentialStatus.REVOKED),
    ])
    def test_allowed(self, current, target):
        """Test the allowed transitions."""
        assert can_transition(current, target)

    def test_revoked_is_terminal(self):
        """Test that nothing leaves the revoked state."""
        assert ALLOWED_TRANSITIONS[CredentialStatus.REVOKED] == frozenset()
        for status in CredentialStatus:
            assert not can_transition(CredentialStatus.REVOKED, status)

    def test_expired_cannot_reactivate(self):
        """Test that expired records only move to revoked."""
        assert not can_transition(CredentialStatus.EXPIRED, CredentialStatus.ACTIVE)
        assert not can_transition(CredentialStatus.EXPIRED, CredentialStatus.INACTIVE)

    async def test_deactivate_and_activate(self, vault):
        """Test suspending and re-enabling a credential."""
        record_id = await vault.store_credential(OWNER, "openai", "k", "sk-1", MASTER_A)
        await vault.deactivate_credential(OWNER, record_id)
        with pytest.raises(NotAvailableError) as exc:
            await vault.retrieve_credential(OWNER, "openai", MASTER_A, "k")
        assert exc.value.reason is CredentialStatus.INACTIVE
        await vault.activate_credential(OWNER, record_id)
        assert await vault.retrieve_credential(OWNER, "openai", MASTER_A, "k") == "sk-1"

    async def test_activate_past_expiry_refused(self, vault, clock):
        """Test that an inactive record past its window cannot be re-enabled."""
        record_id = await vault.store_credential(OWNER, "openai", "k", "sk-1", MASTER_A, 10)
        await vault.deactivate_credential(OWNER, record_id)
        clock.advance(days=11)
        with pytest.raises(StateConflictError):
            await vault.activate_credential(OWNER, record_id)

    async def test_deactivate_past_expiry_reports_expired(self, vault, clock):
        """Test that deactivating a lapsed but unswept record persists expiry instead."""
        record_id = await vault.store_credential(OWNER, "openai", "k", "sk-1", MASTER_A, 5)
        clock.advance(days=6)
        with pytest.raises(StateConflictError):
            await vault.deactivate_credential(OWNER, record_id)
        record = await vault.repository.get(record_id)
        assert record.status is CredentialStatus.EXPIRED
        with pytest.raises(NotAvailableError) as exc:
            await vault.retrieve_credential(OWNER, "openai", MASTER_A, "k")
        assert exc.value.reason is CredentialStatus.EXPIRED

    async def test_transition_is_idempotent(self, repository, vault, clock):
        """Test that moving to the current status is a no-op."""
        record_id = await vault.store_credential(OWNER, "openai", "k", "sk-1", MASTER_A)
        lifecycle = CredentialLifecycle(repository, clock=clock)
        record = await lifecycle.transition(record_id, CredentialStatus.ACTIVE)
        assert record.version == 1

    async def test_owner_mismatch_is_not_found(self, vault):
        """Test that another owner's record is reported as missing."""
        record_id = await vault.store_credential(OWNER, "openai", "k", "sk-1", MASTER_A)
        with pytest.raises(NotFoundError):
            await vault.revoke_credential(OTHER_OWNER, record_id)
        with pytest.raises(NotFoundError):
            await vault.deactivate_credential(OTHER_OWNER, record_id)


class TestExpiry:
    """Validity windows and expiry."""

    async def test_expired_after_ttl(self, vault, clock):
        """Test that a 30-day credential is unavailable after 31 days."""
        record_id = await vault.store_credential(OWNER, "openai", "k", "sk-1", MASTER_A, 30)
        clock.advance(days=31)
        with pytest.raises(NotAvailableError) as exc:
            await vault.retrieve_credential(OWNER, "openai", MASTER_A)
        assert exc.value.reason is CredentialStatus.EXPIRED
        record = await vault.repository.get(record_id)
        assert record.status is CredentialStatus.EXPIRED

    async def test_available_before_expiry(self, vault, clock):
        """Test that a credential is readable inside its window."""
        await vault.store_credential(OWNER, "openai", "k", "sk-1", MASTER_A, 30)
        clock.advance(days=29, hours=23)
        assert await vault.retrieve_credential(OWNER, "openai", MASTER_A) == "sk-1"

    async def test_expiry_boundary_is_inclusive(self, vault, clock):
        """Test that a credential is expired exactly at expires_at."""
        await vault.store_credential(OWNER, "openai", "k", "sk-1", MASTER_A, 1)
        clock.advance(days=1)
        with pytest.raises(NotAvailableError):
            await vault.retrieve_credential(OWNER, "openai", MASTER_A)

    async def test_sweep_expired(self, vault, clock):
        """Test that the sweep persists expiry only for overdue records."""
        await vault.store_credential(OWNER, "openai", "short", "sk-1", MASTER_A, 5)
        await vault.store_credential(OWNER, "openai", "long", "sk-2", MASTER_A, 60)
        await vault.store_credential(OWNER, "google", "none", "sk-3", MASTER_A)
        clock.advance(days=6)
        assert await vault.sweep_expired() == 1
        assert await vault.sweep_expired() == 0
        statuses = {m.key_name: m.status for m in await vault.list_credentials(OWNER)}
        assert statuses == {
            "short": CredentialStatus.EXPIRED,
            "long": CredentialStatus.ACTIVE,
            "none": CredentialStatus.ACTIVE,
        }

    async def test_expired_record_can_be_rotated(self, vault, clock):
        """Test that storing again revives an expired key in place."""
        record_id = await vault.store_credential(OWNER, "openai", "k", "sk-1", MASTER_A, 5)
        clock.advance(days=6)
        await vault.sweep_expired()
        again = await vault.store_credential(OWNER, "openai", "k", "sk-2", MASTER_A, 5)
        assert again == record_id
        assert await vault.retrieve_credential(OWNER, "openai", MASTER_A) == "sk-2"

    def test_validity_window(self, clock):
        """Test the reminder is seven days before expiry."""
        now = clock()
        validity = new_validity(now, 30, 7)
        assert validity.expires_at == now + timedelta(days=30)
        assert validity.rotation_reminder_at == now + timedelta(days=23)
        assert validity.rotated_at is None

    def test_short_window_reminder_not_before_start(self, clock):
        """Test the reminder never precedes the window start."""
        now = clock()
        validity = new_validity(now, 3, 7)
        assert validity.rotation_reminder_at == now

    def test_no_ttl(self, clock):
        """Test that no TTL means no expiry and no reminder."""
        validity = new_validity(clock(), None, 7)
        assert validity.expires_at is None
        assert validity.rotation_reminder_at is None


class TestRevocation:
    """Revocation is terminal and wins races."""

    async def test_revoke_is_idempotent(self, vault):
        """Test that revoking twice succeeds."""
        record_id = await vault.store_credential(OWNER, "openai", "k", "sk-1", MASTER_A)
        await vault.revoke_credential(OWNER, record_id)
        await vault.revoke_credential(OWNER, record_id)
        record = await vault.repository.get(record_id)
        assert record.status is CredentialStatus.REVOKED
        with pytest.raises(NotAvailableError) as exc:
            await vault.retrieve_credential(OWNER, "openai", MASTER_A, "k")
        assert exc.value.reason is CredentialStatus.REVOKED

    async def test_revoked_cannot_be_reactivated(self, vault):
        """Test that activate on a revoked record is a conflict."""
        record_id = await vault.store_credential(OWNER, "openai", "k", "sk-1", MASTER_A)
        await vault.revoke_credential(OWNER, record_id)
        with pytest.raises(StateConflictError):
            await vault.activate_credential(OWNER, record_id)

    async def test_revoke_expired(self, vault, clock):
        """Test that expired records can still be revoked."""
        record_id = await vault.store_credential(OWNER, "openai", "k", "sk-1", MASTER_A, 1)
        clock.advance(days=2)
        await vault.sweep_expired()
        await vault.revoke_credential(OWNER, record_id)
        record = await vault.repository.get(record_id)
        assert record.status is CredentialStatus.REVOKED

    async def test_revoke_wins_over_rotation(self, config, clock):
        """Test that a rotation racing a revoke does not resurrect the key."""
        repository = RevokingRepository()
        vault = CredentialVault(repository=repository, config=config, clock=clock)
        record_id = await vault.store_credential(OWNER, "openai", "k", "sk-1", MASTER_A)
        repository.revoke_next = record_id
        with pytest.raises(StateConflictError):
            await vault.store_credential(OWNER, "openai", "k", "sk-2", MASTER_A)
        record = await repository.get(record_id)
        assert record.status is CredentialStatus.REVOKED

    async def test_revoke_wins_over_expiry(self, config, clock):
        """Test that lazy expiry racing a revoke leaves the record revoked."""
        repository = RevokingRepository()
        vault = CredentialVault(repository=repository, config=config, clock=clock)
        record_id = await vault.store_credential(OWNER, "openai", "k", "sk-1", MASTER_A, 1)
        clock.advance(days=2)
        repository.revoke_next = record_id
        with pytest.raises(NotAvailableError) as exc:
            await vault.retrieve_credential(OWNER, "openai", MASTER_A, "k")
        assert exc.value.reason is CredentialStatus.REVOKED

    async def test_store_after_revoke_creates_new_record(self, vault):
        """Test that a revoked key name can be reused with a new identity."""
        first = await vault.store_credential(OWNER, "openai", "k", "sk-1", MASTER_A)
        await vault.revoke_credential(OWNER, first)
        second = await vault.store_credential(OWNER, "openai", "k", "sk-2", MASTER_A)
        assert second != first
        assert await vault.retrieve_credential(OWNER, "openai", MASTER_A, "k") == "sk-2"
        old = await vault.repository.get(first)
        assert old.status is CredentialStatus.REVOKED
