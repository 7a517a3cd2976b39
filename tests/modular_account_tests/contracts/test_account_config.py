"""
Tests for module installation and removal on the modular account.

Covers per-type install records, lifecycle ordering, payload sanitisation,
atomic rollback on lifecycle and hook failures, singleton slots, the last
validator guard, forced removal and reentrancy during configuration.
"""

import pytest
from hypothesis import given, settings, strategies as st
from unittest.mock import Mock, call

from modular_account.core.config import AccountConfig
from modular_account.core.contracts.account import ModularAccount
from modular_account.core.contracts.policy import OwnerPolicy
from modular_account.core.contracts.types import (
    ModuleType,
    encode_module_call,
    encode_selection_envelope,
)
from modular_account.core.exceptions import (
    AuthorizationDenied,
    HookRejected,
    InvalidModuleTypeError,
    LastValidatorRemovalError,
    ModularAccountError,
    ModuleAlreadyInstalledError,
    ModuleLifecycleFailed,
    ModuleNotInstalledError,
    ReentrancyError,
    UnsupportedOperation,
)
from modular_account.core.ledger import Ledger

from account_stubs import RecordingHook, ReentrantModule, StubModule, stored

QUERIES = {
    ModuleType.VALIDATOR: "is_validator_installed",
    ModuleType.EXECUTOR: "is_executor_installed",
    ModuleType.FALLBACK: "is_fallback_installed",
    ModuleType.HOOK: "is_hook_installed",
}


class TestInstallScenario:
    """Install and uninstall a validator end to end."""

    def test_validator_install_uninstall_round_trip(self, account, ep, deploy, ledger):
        observer = Mock()
        first = deploy(StubModule(declared_types=(1,)))
        account.install_validator(ep, first.address)
        validator = deploy(StubModule(declared_types=(1,), observer=observer))

        account.install_validator(ep, validator.address, b"payload-P")

        observer.on_install.assert_called_once_with(account.address, b"payload-P")
        assert account.is_validator_installed(validator.address)
        event = account.events[-1]
        assert event.name == "InstallValidator"
        assert event.module == validator.address

        account.uninstall_validator(ep, validator.address, b"bye")

        observer.on_uninstall.assert_called_once_with(account.address, b"bye")
        assert not account.is_validator_installed(validator.address)
        assert account.events[-1].name == "UninstallValidator"
        assert account.events[-1].module == validator.address

    def test_only_validator_install_uninstall(self, account, ep, deploy):
        observer = Mock()
        validator = deploy(StubModule(declared_types=(1,), observer=observer))

        account.install_validator(ep, validator.address, b"P")

        observer.on_install.assert_called_once_with(account.address, b"P")
        assert account.is_validator_installed(validator.address)
        assert account.events[-1].name == "InstallValidator"

        account.uninstall_validator(ep, validator.address, b"")

        observer.on_uninstall.assert_called_once_with(account.address, b"")
        assert not account.is_validator_installed(validator.address)
        assert account.get_modules(ModuleType.VALIDATOR) == []

    def test_lifecycle_callback_receives_account_as_caller(self, account, ep, validator, ledger):
        account.install_validator(ep, validator.address, b"init")

        assert stored(ledger, validator, "lifecycle") == [("on_install", account.address, b"init")]

    def test_install_records_init_data(self, account, ep, executor):
        account.install_executor(ep, executor.address, b"cfg")

        record = account.registry.get_record(ModuleType.EXECUTOR, executor.address)
        assert record.init_data == b"cfg"
        assert record.installed

    def test_generic_install_accepts_raw_type_id(self, account, ep, executor):
        account.install_module(ep, 2, executor.address)

        assert account.is_module_installed(2, executor.address)
        assert account.get_modules(ModuleType.EXECUTOR) == [executor.address]

    def test_events_are_type_specific(self, account, ep, deploy):
        for module_type in ModuleType:
            module = deploy(StubModule(declared_types=(int(module_type),)))
            account.install_module(ep, module_type, module.address)

        assert [e.name for e in account.events] == [
            "InstallValidator",
            "InstallExecutor",
            "InstallFallback",
            "InstallHook",
        ]


class TestPerTypeRecords:
    """A module installed under one type is invisible to the other types."""

    @pytest.mark.parametrize("installed_type", list(ModuleType))
    def test_only_installed_type_reports_true(self, account, ep, deploy, installed_type):
        module = deploy(StubModule(declared_types=tuple(int(t) for t in ModuleType)))

        account.install_module(ep, installed_type, module.address)

        for module_type, query in QUERIES.items():
            assert getattr(account, query)(module.address) is (module_type == installed_type)

    def test_executor_query_false_for_validator_only_module(self, account, ep, validator):
        account.install_validator(ep, validator.address)

        assert account.is_validator_installed(validator.address)
        assert not account.is_executor_installed(validator.address)

    def test_two_types_have_independent_lifecycles(self, account, ep, deploy, installed_validator):
        module = deploy(StubModule(declared_types=(1, 2)))
        account.install_validator(ep, module.address, b"v")
        account.install_executor(ep, module.address, b"e")

        account.uninstall_executor(ep, module.address)

        assert account.is_validator_installed(module.address)
        assert not account.is_executor_installed(module.address)
        assert account.registry.get_record(ModuleType.VALIDATOR, module.address).init_data == b"v"

    def test_installed_module_declares_its_type(self, account, ep, deploy, ledger):
        module = deploy(StubModule(declared_types=(2, 4)))
        account.install_executor(ep, module.address)

        assert ledger.invoke(account.address, module.address, "is_module_type", 2, static=True)
        assert account.is_executor_installed(module.address)

    def test_queries_are_idempotent(self, account, ep, executor, ledger):
        account.install_executor(ep, executor.address)
        before = ledger.snapshot()

        answers = [account.is_executor_installed(executor.address) for _ in range(5)]

        assert answers == [True] * 5
        assert ledger.snapshot()["storage"] == before["storage"]
        assert len(account.events) == 1

    @pytest.mark.parametrize("bad_type", [0, 5, -1, "validator", None])
    def test_query_with_unknown_type_is_false(self, account, ep, validator, bad_type):
        account.install_validator(ep, validator.address)

        assert account.is_module_installed(bad_type, validator.address) is False

    def test_query_with_invalid_address_is_false(self, account):
        assert account.is_module_installed(1, "not-an-address") is False

    @settings(max_examples=25, deadline=None)
    @given(st.lists(st.sampled_from(list(ModuleType)), min_size=1, max_size=4, unique=True))
    def test_queries_match_installed_types(self, types):
        ledger = Ledger()
        account = ledger.deploy(ModularAccount(config=AccountConfig(entry_point_address="0x" + "e7" * 20)))
        module = ledger.deploy(StubModule(declared_types=(1, 2, 3, 4)))

        for module_type in types:
            account.install_module("0x" + "e7" * 20, module_type, module.address)

        for module_type, query in QUERIES.items():
            assert getattr(account, query)(module.address) is (module_type in types)


class TestInstallPreconditions:

    def test_unauthorized_caller_rejected(self, account, validator, stranger):
        with pytest.raises(AuthorizationDenied):
            account.install_validator(stranger, validator.address)

        assert not account.is_validator_installed(validator.address)
        assert account.events == []

    def test_authorization_checked_before_type(self, account, validator, stranger):
        with pytest.raises(AuthorizationDenied):
            account.install_module(stranger, 99, validator.address)

    def test_self_call_allowed_when_enabled(self, account, validator):
        account.install_validator(account.address, validator.address)

        assert account.is_validator_installed(validator.address)

    def test_self_call_rejected_when_disabled(self, ledger, entry_point, validator):
        config = AccountConfig(entry_point_address=entry_point.address, allow_self_config=False)
        account = ledger.deploy(ModularAccount(config=config))

        with pytest.raises(AuthorizationDenied):
            account.install_validator(account.address, validator.address)

    def test_owner_policy_admits_owner(self, ledger, account_config, validator):
        owner = "0x" + "0a" * 20
        account = ledger.deploy(ModularAccount(config=account_config, policy=OwnerPolicy([owner])))

        account.install_validator(owner, validator.address)

        assert account.is_validator_installed(validator.address)

    def test_unknown_type_rejected(self, account, ep, validator):
        with pytest.raises(InvalidModuleTypeError):
            account.install_module(ep, 7, validator.address)

    def test_module_must_declare_type(self, account, ep, validator, ledger):
        with pytest.raises(InvalidModuleTypeError):
            account.install_executor(ep, validator.address)

        assert stored(ledger, validator, "lifecycle") is None

    def test_address_without_code_rejected(self, account, ep):
        with pytest.raises(InvalidModuleTypeError):
            account.install_executor(ep, "0x" + "11" * 20)

    def test_duplicate_install_rejected_before_callback(self, account, ep, deploy):
        observer = Mock()
        executor = deploy(StubModule(declared_types=(2,), observer=observer))
        account.install_executor(ep, executor.address)
        observer.reset_mock()

        with pytest.raises(ModuleAlreadyInstalledError):
            account.install_executor(ep, executor.address)

        observer.on_install.assert_not_called()

    @pytest.mark.parametrize("module_type", [ModuleType.FALLBACK, ModuleType.HOOK])
    def test_singleton_slot_rejects_second_module(self, account, ep, deploy, module_type):
        first = deploy(StubModule(declared_types=(int(module_type),)))
        second = deploy(StubModule(declared_types=(int(module_type),)))
        account.install_module(ep, module_type, first.address)

        with pytest.raises(ModuleAlreadyInstalledError) as exc_info:
            account.install_module(ep, module_type, second.address)

        assert exc_info.value.details["occupant"] == first.address
        assert account.get_modules(module_type) == [first.address]

    def test_singleton_slot_can_be_replaced_after_uninstall(self, account, ep, deploy):
        first = deploy(StubModule(declared_types=(3,)))
        second = deploy(StubModule(declared_types=(3,)))
        account.install_fallback(ep, first.address)
        account.uninstall_fallback(ep, first.address)

        account.install_fallback(ep, second.address)

        assert account.registry.active_fallback == second.address

    def test_account_cannot_install_itself(self, account, ep):
        with pytest.raises(ModularAccountError) as exc_info:
            account.install_validator(ep, account.address)

        assert "itself" in str(exc_info.value)


class TestSanitisation:

    def test_selection_envelope_stripped_from_install_payload(self, account, ep, deploy):
        observer = Mock()
        validator = deploy(StubModule(declared_types=(1,), observer=observer))
        wrapped = encode_selection_envelope("0x" + "99" * 20, b"owner-key")

        account.install_validator(ep, validator.address, wrapped)

        observer.on_install.assert_called_once_with(account.address, b"owner-key")
        assert account.registry.get_record(1, validator.address).init_data == b"owner-key"

    def test_selection_envelope_stripped_from_uninstall_payload(self, account, ep, deploy, installed_validator):
        observer = Mock()
        validator = deploy(StubModule(declared_types=(1,), observer=observer))
        account.install_validator(ep, validator.address)

        account.uninstall_validator(ep, validator.address, encode_selection_envelope(validator.address, b"x"))

        observer.on_uninstall.assert_called_once_with(account.address, b"x")

    def test_plain_payload_forwarded_unchanged(self, account, ep, validator, ledger):
        account.install_validator(ep, validator.address, b"\x75\x79\xa1")

        assert stored(ledger, validator, "lifecycle")[0][2] == b"\x75\x79\xa1"


class TestLifecycleFailure:

    def test_failed_install_leaves_no_trace(self, account, ep, deploy, ledger):
        module = deploy(StubModule(declared_types=(2,), fail_install=True))
        storage_before = ledger.snapshot()["storage"]

        with pytest.raises(ModuleLifecycleFailed) as exc_info:
            account.install_executor(ep, module.address)

        assert not account.is_executor_installed(module.address)
        assert account.events == []
        assert ledger.snapshot()["storage"] == storage_before
        assert exc_info.value.details["callback"] == "on_install"

    def test_failed_uninstall_keeps_module(self, account, ep, deploy, installed_validator):
        module = deploy(StubModule(declared_types=(2,)))
        account.install_executor(ep, module.address)
        module.fail_uninstall = True

        with pytest.raises(ModuleLifecycleFailed):
            account.uninstall_executor(ep, module.address)

        assert account.is_executor_installed(module.address)
        assert [e.name for e in account.events][-1] == "InstallExecutor"

    def test_hook_post_check_failure_rolls_back_install(self, account, ep, deploy, ledger):
        hook = deploy(RecordingHook())
        account.install_hook(ep, hook.address)
        executor = deploy(StubModule(declared_types=(2,)))
        hook.reject_post = True

        with pytest.raises(HookRejected):
            account.install_executor(ep, executor.address)

        assert not account.is_executor_installed(executor.address)
        assert stored(ledger, executor, "lifecycle") is None
        assert [e.name for e in account.events] == ["InstallHook"]

    def test_hook_pre_check_failure_blocks_callback(self, account, ep, deploy):
        observer = Mock()
        hook = deploy(RecordingHook(reject_pre=True))
        account.install_hook(ep, hook.address)
        executor = deploy(StubModule(declared_types=(2,), observer=observer))

        with pytest.raises(HookRejected):
            account.install_executor(ep, executor.address)

        observer.on_install.assert_not_called()


class TestUninstall:

    def test_uninstall_missing_module_rejected(self, account, ep, executor):
        with pytest.raises(ModuleNotInstalledError):
            account.uninstall_executor(ep, executor.address)

    def test_uninstall_other_type_rejected(self, account, ep, deploy, installed_validator):
        module = deploy(StubModule(declared_types=(1, 2)))
        account.install_validator(ep, module.address)

        with pytest.raises(ModuleNotInstalledError):
            account.uninstall_executor(ep, module.address)

    def test_last_validator_guard_refuses_removal(self, ledger, entry_point, validator):
        config = AccountConfig(
            entry_point_address=entry_point.address, allow_removing_last_validator=False
        )
        account = ledger.deploy(ModularAccount(config=config))
        ep = entry_point.address
        account.install_validator(ep, validator.address)

        with pytest.raises(LastValidatorRemovalError):
            account.uninstall_validator(ep, validator.address)

        assert account.is_validator_installed(validator.address)

    def test_last_validator_removable_by_default(self, account, ep, validator):
        account.install_validator(ep, validator.address)

        account.uninstall_validator(ep, validator.address)

        assert account.get_modules(ModuleType.VALIDATOR) == []

    def test_unauthorized_uninstall_rejected(self, account, ep, executor, stranger):
        account.install_executor(ep, executor.address)

        with pytest.raises(AuthorizationDenied):
            account.uninstall_executor(stranger, executor.address)

        assert account.is_executor_installed(executor.address)

    def test_removing_active_hook_skips_its_checks(self, account, ep, deploy):
        observer = Mock()
        hook = deploy(RecordingHook(observer=observer, reject_pre=True))
        account.install_hook(ep, hook.address)

        account.uninstall_hook(ep, hook.address)

        observer.pre_check.assert_not_called()
        assert account.registry.active_hook is None

    def test_uninstall_of_other_module_is_hooked(self, account, ep, deploy, installed_validator):
        executor = deploy(StubModule(declared_types=(2,)))
        account.install_executor(ep, executor.address)
        observer = Mock()
        hook = deploy(RecordingHook(observer=observer))
        account.install_hook(ep, hook.address)

        account.uninstall_executor(ep, executor.address, b"t")

        observer.pre_check.assert_called_once_with(
            ep, encode_module_call("uninstallModule", 2, executor.address, b"t")
        )
        observer.post_check.assert_called_once()


class TestForcedRemoval:

    @pytest.fixture
    def forcing_account(self, ledger, entry_point):
        config = AccountConfig(entry_point_address=entry_point.address, allow_forced_removal=True)
        return ledger.deploy(ModularAccount(config=config))

    def test_disabled_by_default(self, account, ep, executor):
        account.install_executor(ep, executor.address)

        with pytest.raises(UnsupportedOperation):
            account.force_uninstall_module(ep, ModuleType.EXECUTOR, executor.address)

    def test_bypasses_failing_callback_and_hook(self, forcing_account, ep, deploy):
        hook = deploy(RecordingHook(reject_pre=True))
        forcing_account.install_hook(ep, hook.address)
        executor = deploy(StubModule(declared_types=(2,), fail_uninstall=True))
        hook.reject_pre = False
        forcing_account.install_executor(ep, executor.address)
        hook.reject_pre = True

        forcing_account.force_uninstall_module(ep, ModuleType.EXECUTOR, executor.address)
        forcing_account.force_uninstall_module(ep, ModuleType.HOOK, hook.address)

        assert not forcing_account.is_executor_installed(executor.address)
        assert forcing_account.registry.active_hook is None
        assert forcing_account.events[-1].forced is True

    def test_requires_authorization(self, forcing_account, ep, executor, stranger):
        forcing_account.install_executor(ep, executor.address)

        with pytest.raises(AuthorizationDenied):
            forcing_account.force_uninstall_module(stranger, ModuleType.EXECUTOR, executor.address)

    def test_owner_policy_reserves_forced_removal_to_owners(self, ledger, entry_point, executor):
        owner = "0x" + "0b" * 20
        config = AccountConfig(entry_point_address=entry_point.address, allow_forced_removal=True)
        account = ledger.deploy(ModularAccount(config=config, policy=OwnerPolicy([owner])))
        account.install_executor(entry_point.address, executor.address)

        with pytest.raises(AuthorizationDenied):
            account.force_uninstall_module(entry_point.address, 2, executor.address)

        account.force_uninstall_module(owner, 2, executor.address)
        assert not account.is_executor_installed(executor.address)


class TestReentrancy:

    def test_install_from_lifecycle_callback_is_rejected(self, ledger, account_config, deploy):
        other = deploy(StubModule(declared_types=(1,)))
        module = ReentrantModule(
            reenter_with=encode_module_call("installModule", 1, other.address, b"")
        )
        account = ledger.deploy(
            ModularAccount(config=account_config, policy=OwnerPolicy([module.address]))
        )
        deploy(module)

        with pytest.raises(ModuleLifecycleFailed) as exc_info:
            account.install_executor(account_config.entry_point_address, module.address)

        assert isinstance(exc_info.value.__cause__, ReentrancyError)
        assert not account.is_validator_installed(other.address)
        assert not account.is_executor_installed(module.address)
        assert account.events == []

    def test_guard_is_released_after_failure(self, ledger, account_config, deploy, validator):
        module = ReentrantModule(
            reenter_with=encode_module_call("installModule", 1, validator.address, b"")
        )
        account = ledger.deploy(
            ModularAccount(config=account_config, policy=OwnerPolicy([module.address]))
        )
        deploy(module)
        with pytest.raises(ModuleLifecycleFailed):
            account.install_executor(account_config.entry_point_address, module.address)

        account.install_validator(account_config.entry_point_address, validator.address)

        assert account.is_validator_installed(validator.address)

    def test_queries_allowed_during_configuration(self, account, ep, deploy):
        seen = []

        class QueryingModule(StubModule):
            def on_install(self, ctx, data):
                seen.append(account.is_executor_installed(self.address))
                super().on_install(ctx, data)

        module = deploy(QueryingModule(declared_types=(2,)))

        account.install_executor(ep, module.address)

        assert seen == [False]
        assert account.is_executor_installed(module.address)

    def test_hook_calls_during_install_observe_nothing_recorded(self, account, ep, deploy):
        executor = deploy(StubModule(declared_types=(2,)))
        observer = Mock()
        hook = deploy(RecordingHook(observer=observer))
        account.install_hook(ep, hook.address)
        observer.pre_check.side_effect = lambda *a: observer.installed_at_pre(
            account.is_executor_installed(executor.address)
        )
        observer.post_check.side_effect = lambda *a: observer.installed_at_post(
            account.is_executor_installed(executor.address)
        )

        account.install_executor(ep, executor.address)

        assert observer.mock_calls[1] == call.installed_at_pre(False)
        assert observer.mock_calls[-1] == call.installed_at_post(True)
