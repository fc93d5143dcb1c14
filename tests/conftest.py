"""Shared fixtures for the credential vault tests."""
import pytest
from datetime import datetime, timedelta, timezone

from credential_vault import CredentialVault, EncryptionEngine, VaultConfig
from credential_vault.repository import MemoryCredentialRepository


MASTER_A = "master-A"
MASTER_B = "master-B"
OWNER = "owner-1"
OTHER_OWNER = "owner-2"


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    """Clock starting at 2024-03-10 12:00 UTC."""
    return FakeClock()


@pytest.fixture
def repository():
    """Empty in-memory repository."""
    return MemoryCredentialRepository()


@pytest.fixture
def config():
    """Default vault configuration."""
    return VaultConfig()


@pytest.fixture
def engine(config):
    """Encryption engine with default parameters."""
    return EncryptionEngine.from_config(config)


@pytest.fixture
def vault(repository, config, clock):
    """Vault over an in-memory repository and a fake clock."""
    return CredentialVault(repository=repository, config=config, clock=clock)
