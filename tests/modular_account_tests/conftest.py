"""
Test configuration and fixtures for the modular account.
"""

import pytest

from modular_account.core.config import AccountConfig
from modular_account.core.contracts.account import ModularAccount
from modular_account.core.contracts.entry_point import EntryPoint
from modular_account.core.ledger import Ledger

from account_stubs import CallRecorder, RecordingHook, StubModule

# Outsider with no role on any account
STRANGER = "0x" + "5a" * 20


@pytest.fixture
def ledger():
    """A fresh in-process ledger."""
    return Ledger()


@pytest.fixture
def entry_point(ledger):
    return ledger.deploy(EntryPoint(address="0x" + "e7" * 20))


@pytest.fixture
def account_config(entry_point):
    return AccountConfig(entry_point_address=entry_point.address)


@pytest.fixture
def account(ledger, account_config):
    """A funded account trusting the test entry point."""
    account = ledger.deploy(ModularAccount(config=account_config))
    ledger.mint(account.address, 1_000_000)
    return account


@pytest.fixture
def ep(entry_point):
    """Caller address of the entry point."""
    return entry_point.address


@pytest.fixture
def stranger():
    return STRANGER


@pytest.fixture
def target(ledger):
    return ledger.deploy(CallRecorder())


@pytest.fixture
def deploy(ledger):
    """Deploy a contract on the test ledger and return it."""

    def _deploy(contract):
        return ledger.deploy(contract)

    return _deploy


@pytest.fixture
def validator(ledger):
    return ledger.deploy(StubModule(declared_types=(1,)))


@pytest.fixture
def executor(ledger):
    return ledger.deploy(StubModule(declared_types=(2,)))


@pytest.fixture
def hook(ledger):
    return ledger.deploy(RecordingHook())


@pytest.fixture
def installed_validator(account, ep, validator):
    """Account with one validator installed, so other validators can come and go."""
    account.install_validator(ep, validator.address, b"")
    return validator
