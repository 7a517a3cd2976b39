"""
Modular Account.

A smart account that delegates its behaviour to installable modules:
- Validators check user operations and ERC-1271 signatures
- Executors may execute calls on the account's behalf
- One fallback handler receives calls the account does not recognise
- One hook checks every mutating operation before and after it runs

The account is the only writer of its module registry. Every mutating entry
point follows the same sequence inside one atomic ledger scope:

    authorize caller -> hook pre-check -> body -> hook post-check

and for configuration the body is: lifecycle callback, then registry update,
then event. Nothing is recorded or emitted until the callback returned, and a
failure at any step (including the post-check) rolls back everything,
registry and events included.

Reentrancy: while a configuration operation is in progress the account
refuses every other entry point, so a module cannot re-enter the account from
its lifecycle callback or a hook check. Execution operations may nest (an
executor called by ``execute`` may call ``execute_from_executor``).
"""

from __future__ import annotations

import copy
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

from ..addresses import is_address, normalize_address, short
from ..config import AccountConfig
from ..exceptions import (
    AuthorizationDenied,
    InvalidModuleTypeError,
    LastValidatorRemovalError,
    ModuleLifecycleFailed,
    ModularAccountError,
    ReentrancyError,
    StaticCallViolation,
    UnsupportedOperation,
    VMError,
)
from ..ledger import CallContext, Contract, Ledger
from .execution import ExecutionLike, ExecutionRouter
from .fallback import FallbackDispatcher
from .hooks import HookChain
from .module_registry import ModuleRegistry
from .policy import AuthorizationPolicy
from .types import (
    ACCOUNT_ID,
    ACCOUNT_SELECTORS,
    CALLTYPE_BATCH,
    CALLTYPE_DELEGATECALL,
    CALLTYPE_SINGLE,
    EXECTYPE_DEFAULT,
    INTERFACE_IDS,
    VIEW_SELECTORS,
    ExecutionMode,
    ModuleEvent,
    ModuleType,
    decode_batch_executions,
    decode_delegate_call,
    decode_is_valid_signature_call,
    decode_module_call,
    decode_single_execution,
    encode_bool,
    encode_module_call,
    encode_results,
    strip_selection_metadata,
)
from .validation import ValidatorDispatcher

logger = logging.getLogger(__name__)


@dataclass
class ModularAccount(Contract):
    """
    Modular smart account.

    Deploy it on a ledger before use: ``ledger.deploy(ModularAccount(...))``.
    """

    config: AccountConfig = field(default_factory=AccountConfig)
    policy: AuthorizationPolicy = field(default_factory=AuthorizationPolicy)

    def __post_init__(self) -> None:
        super().__post_init__()
        self.ledger: Optional[Ledger] = None
        self.registry = ModuleRegistry()
        self.events: List[ModuleEvent] = []
        self.hooks = HookChain(self)
        self.router = ExecutionRouter(self)
        self.validators = ValidatorDispatcher(self)
        self.fallback_dispatcher = FallbackDispatcher(self)
        self._config_operation: Optional[str] = None

    def attach(self, ledger: Ledger) -> None:
        """Called by ``Ledger.deploy``."""
        if self.ledger is not None and self.ledger is not ledger:
            raise ModularAccountError("Account is already deployed on another ledger")
        self.ledger = ledger

    @property
    def entry_point(self) -> str:
        return self.config.entry_point_address

    # ==================== Operation scope ====================

    @contextmanager
    def operation(
        self,
        name: str,
        caller: str,
        payload: bytes,
        value: int = 0,
        hooked: bool = True,
        configures: bool = False,
    ) -> Iterator[None]:
        """
        Scope for one account operation, used by all entry points.

        Refuses to start inside a configuration operation, then runs the body
        in an atomic ledger scope wrapped by the hook chain.
        """
        if self.ledger is None:
            raise ModularAccountError(f"Account {short(self.address)} is not deployed")
        if self._config_operation is not None:
            logger.warning(
                "Reentrant call rejected",
                extra={
                    "event": "account.reentrancy_rejected",
                    "account": short(self.address),
                    "operation": name,
                    "in_progress": self._config_operation,
                    "caller": short(caller),
                },
            )
            raise ReentrancyError(
                f"{name} not allowed while {self._config_operation} is in progress",
                details={"operation": name, "in_progress": self._config_operation},
            )

        if configures:
            self._config_operation = name
        try:
            with self.ledger.atomic():
                with self.hooks.around(caller, value, payload, enabled=hooked):
                    yield
        finally:
            if configures:
                self._config_operation = None

    # ==================== Configuration ====================

    def install_module(self, caller: str, module_type: int, module: str, data: bytes = b"") -> None:
        """
        Install ``module`` as ``module_type``.

        Sequence: hook pre-check, type probe, ``on_install`` with the
        sanitised payload, registry record, install event, hook post-check.

        Raises:
            AuthorizationDenied: ``caller`` fails the configuration policy
            InvalidModuleTypeError: Unknown type, or the module does not declare it
            ModuleAlreadyInstalledError: Already installed, or singleton slot taken
            ModuleLifecycleFailed: ``on_install`` terminated abnormally
            HookRejected: A hook check failed
        """
        self._authorize_config(caller, "install_module")
        module_type = ModuleType.parse(module_type)
        module = self._require_module_address(module)
        payload = encode_module_call("installModule", module_type, module, data)

        with self.operation("install_module", caller, payload, configures=True):
            self.registry.check_can_record(module_type, module)
            self._require_declared_type(module_type, module)
            _, init_data = strip_selection_metadata(data)
            self._lifecycle(module_type, module, "on_install", init_data)
            self.registry.record(module_type, module, init_data)
            self._emit(ModuleEvent("ModuleInstalled", module_type, module))

        logger.info(
            "Module installed",
            extra={
                "event": "account.module_installed",
                "account": short(self.address),
                "module_type": module_type.name.lower(),
                "module": short(module),
            },
        )

    def uninstall_module(self, caller: str, module_type: int, module: str, data: bytes = b"") -> None:
        """
        Uninstall ``module`` from ``module_type``.

        Wrapped by the hook chain unless the module is the active hook itself.

        Raises:
            AuthorizationDenied: ``caller`` fails the configuration policy
            ModuleNotInstalledError: Not installed as ``module_type``
            LastValidatorRemovalError: Would remove the last validator while
                the account refuses that
            ModuleLifecycleFailed: ``on_uninstall`` terminated abnormally
            HookRejected: A hook check failed
        """
        self._authorize_config(caller, "uninstall_module")
        module_type = ModuleType.parse(module_type)
        module = self._require_module_address(module)
        payload = encode_module_call("uninstallModule", module_type, module, data)
        removing_active_hook = module_type is ModuleType.HOOK and module == self.registry.active_hook

        with self.operation(
            "uninstall_module", caller, payload, hooked=not removing_active_hook, configures=True
        ):
            self._ensure_removable(module_type, module)
            _, teardown_data = strip_selection_metadata(data)
            self._lifecycle(module_type, module, "on_uninstall", teardown_data)
            self.registry.erase(module_type, module)
            self._emit(ModuleEvent("ModuleUninstalled", module_type, module))

        logger.info(
            "Module uninstalled",
            extra={
                "event": "account.module_uninstalled",
                "account": short(self.address),
                "module_type": module_type.name.lower(),
                "module": short(module),
            },
        )

    def force_uninstall_module(self, caller: str, module_type: int, module: str) -> None:
        """
        Remove a module without calling ``on_uninstall`` and without hooks.

        Escape hatch for modules whose callback or checks fail permanently.
        The module's own state for this account is left behind.

        Raises:
            UnsupportedOperation: Forced removal is disabled in the config
            AuthorizationDenied: ``caller`` fails the forced-removal policy
        """
        if not self.config.allow_forced_removal:
            raise UnsupportedOperation(
                "Forced module removal is not supported by this account",
                details={"operation": "force_uninstall_module"},
            )
        module_type = ModuleType.parse(module_type)
        module = self._require_module_address(module)
        if not self.policy.authorize_forced_removal(self, caller):
            self._deny(caller, "force_uninstall_module", "forced-removal policy")

        with self.operation("force_uninstall_module", caller, b"", hooked=False, configures=True):
            self._ensure_removable(module_type, module)
            self.registry.erase(module_type, module)
            self._emit(ModuleEvent("ModuleUninstalled", module_type, module, forced=True))

        logger.warning(
            "Module forcibly removed",
            extra={
                "event": "account.module_force_removed",
                "account": short(self.address),
                "module_type": module_type.name.lower(),
                "module": short(module),
                "caller": short(caller),
            },
        )

    def install_validator(self, caller: str, module: str, data: bytes = b"") -> None:
        self.install_module(caller, ModuleType.VALIDATOR, module, data)

    def uninstall_validator(self, caller: str, module: str, data: bytes = b"") -> None:
        self.uninstall_module(caller, ModuleType.VALIDATOR, module, data)

    def install_executor(self, caller: str, module: str, data: bytes = b"") -> None:
        self.install_module(caller, ModuleType.EXECUTOR, module, data)

    def uninstall_executor(self, caller: str, module: str, data: bytes = b"") -> None:
        self.uninstall_module(caller, ModuleType.EXECUTOR, module, data)

    def install_fallback(self, caller: str, module: str, data: bytes = b"") -> None:
        self.install_module(caller, ModuleType.FALLBACK, module, data)

    def uninstall_fallback(self, caller: str, module: str, data: bytes = b"") -> None:
        self.uninstall_module(caller, ModuleType.FALLBACK, module, data)

    def install_hook(self, caller: str, module: str, data: bytes = b"") -> None:
        self.install_module(caller, ModuleType.HOOK, module, data)

    def uninstall_hook(self, caller: str, module: str, data: bytes = b"") -> None:
        self.uninstall_module(caller, ModuleType.HOOK, module, data)

    # ==================== Queries ====================

    def is_module_installed(
        self, module_type: int, module: str, additional_context: bytes = b""
    ) -> bool:
        try:
            module_type = ModuleType(int(module_type))
        except (TypeError, ValueError):
            return False
        if not is_address(module):
            return False
        return self.registry.is_installed(module_type, module)

    def is_validator_installed(self, module: str) -> bool:
        return self.is_module_installed(ModuleType.VALIDATOR, module)

    def is_executor_installed(self, module: str) -> bool:
        return self.is_module_installed(ModuleType.EXECUTOR, module)

    def is_fallback_installed(self, module: str) -> bool:
        return self.is_module_installed(ModuleType.FALLBACK, module)

    def is_hook_installed(self, module: str) -> bool:
        return self.is_module_installed(ModuleType.HOOK, module)

    def get_modules(self, module_type: int) -> List[str]:
        return self.registry.modules_of(ModuleType.parse(module_type))

    # ==================== Execution ====================

    def execute(self, caller: str, target: str, value: int = 0, data: bytes = b"") -> List[bytes]:
        return self.router.execute(caller, target, value, data)

    def execute_batch(self, caller: str, executions: Iterable[ExecutionLike]) -> List[bytes]:
        return self.router.execute_batch(caller, executions)

    def execute_from_executor(
        self, caller: str, target: str, value: int = 0, data: bytes = b""
    ) -> List[bytes]:
        return self.router.execute_from_executor(caller, target, value, data)

    def execute_batch_from_executor(
        self, caller: str, executions: Iterable[ExecutionLike]
    ) -> List[bytes]:
        return self.router.execute_batch_from_executor(caller, executions)

    def execute_delegate_call(self, caller: str, target: str, data: bytes = b"") -> List[bytes]:
        return self.router.execute_delegate_call(caller, target, data)

    def execute_delegate_call_from_executor(
        self, caller: str, target: str, data: bytes = b""
    ) -> List[bytes]:
        return self.router.execute_delegate_call_from_executor(caller, target, data)

    def execute_with_mode(
        self, caller: str, mode: Union[ExecutionMode, bytes], execution_calldata: bytes
    ) -> List[bytes]:
        """Mode-encoded execution for the entry point or self."""
        if isinstance(mode, (bytes, bytearray)):
            mode = ExecutionMode.decode(bytes(mode))
        if not self.supports_execution_mode(mode):
            raise UnsupportedOperation(
                f"Execution mode {mode.call_type:#04x}/{mode.exec_type:#04x} is not supported",
                details={"call_type": mode.call_type, "exec_type": mode.exec_type},
            )
        if mode.call_type == CALLTYPE_SINGLE:
            execution = decode_single_execution(execution_calldata)
            return self.execute(caller, execution.target, execution.value, execution.data)
        if mode.call_type == CALLTYPE_BATCH:
            return self.execute_batch(caller, decode_batch_executions(execution_calldata))
        target, data = decode_delegate_call(execution_calldata)
        return self.execute_delegate_call(caller, target, data)

    # ==================== Validation ====================

    def validate_user_op(
        self, caller: str, user_op: Any, user_op_hash: bytes, missing_account_funds: int = 0
    ) -> int:
        return self.validators.validate_user_op(caller, user_op, user_op_hash, missing_account_funds)

    def is_valid_signature(self, caller: str, hash_: bytes, signature: bytes) -> bytes:
        return self.validators.is_valid_signature(caller, hash_, signature)

    # ==================== Fallback ====================

    def fallback(self, caller: str, data: bytes, value: int = 0) -> bytes:
        return self.fallback_dispatcher.fallback(caller, data, value)

    def handle_call(self, ctx: CallContext, data: bytes) -> bytes:
        """
        Raw calls to the account: decode known selectors, forward the rest.

        Empty calldata is a plain value transfer and is accepted. ERC-1271 and
        ERC-165 queries are answered by the account itself, also in read-only
        frames.
        """
        if not data:
            return b""
        selector, body = data[:4], data[4:]
        view = _VIEW_SELECTOR_NAMES.get(selector)
        if view == "isValidSignature":
            hash_, signature = decode_is_valid_signature_call(body)
            return self.is_valid_signature(ctx.caller, hash_, signature)
        if view == "supportsInterface":
            return encode_bool(self.supports_interface(body[:4]))
        name = _SELECTOR_NAMES.get(selector)
        if name is None:
            return self.fallback_dispatcher.fallback(
                ctx.caller, data, value=ctx.value, static=ctx.static
            )
        if ctx.static:
            raise StaticCallViolation(f"{name} not allowed in read-only frame")

        caller = ctx.caller
        if name in ("execute", "executeFromExecutor"):
            execution = decode_single_execution(body)
            method = self.execute if name == "execute" else self.execute_from_executor
            return encode_results(method(caller, execution.target, execution.value, execution.data))
        if name in ("executeBatch", "executeBatchFromExecutor"):
            executions = decode_batch_executions(body)
            method = self.execute_batch if name == "executeBatch" else self.execute_batch_from_executor
            return encode_results(method(caller, executions))
        if name in ("executeDelegateCall", "executeDelegateCallFromExecutor"):
            target, delegate_data = decode_delegate_call(body)
            method = (
                self.execute_delegate_call
                if name == "executeDelegateCall"
                else self.execute_delegate_call_from_executor
            )
            return encode_results(method(caller, target, delegate_data))
        if name == "executeWithMode":
            return encode_results(self.execute_with_mode(caller, body[:32], body[32:]))
        module_type, module, module_data = decode_module_call(body)
        if name == "installModule":
            self.install_module(caller, module_type, module, module_data)
        else:
            self.uninstall_module(caller, module_type, module, module_data)
        return b""

    # ==================== Capability discovery ====================

    def supports_interface(self, interface_id: bytes) -> bool:
        supported = [
            "IERC165",
            "IERC1271",
            "IAccount",
            "IAccountExecute",
            "IExecutorExecute",
            "IAccountConfig",
            "IFallback",
        ]
        if self.config.allow_delegate_calls:
            supported.append("IDelegateExecute")
        return bytes(interface_id) in {INTERFACE_IDS[name] for name in supported}

    def supports_module(self, module_type_id: int) -> bool:
        try:
            ModuleType(int(module_type_id))
        except (TypeError, ValueError):
            return False
        return True

    def supports_execution_mode(self, mode: Union[ExecutionMode, bytes]) -> bool:
        if isinstance(mode, (bytes, bytearray)):
            try:
                mode = ExecutionMode.decode(bytes(mode))
            except ValueError:
                return False
        if mode.exec_type != EXECTYPE_DEFAULT:
            return False
        if mode.call_type in (CALLTYPE_SINGLE, CALLTYPE_BATCH):
            return True
        return mode.call_type == CALLTYPE_DELEGATECALL and self.config.allow_delegate_calls

    def account_id(self) -> str:
        return ACCOUNT_ID

    def get_stats(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "entry_point": self.entry_point,
            "modules": self.registry.to_dict(),
            "events": len(self.events),
            "delegate_calls_enabled": self.config.allow_delegate_calls,
        }

    # ==================== Snapshots ====================

    def snapshot(self) -> Dict[str, Any]:
        return {
            "registry": self.registry.snapshot(),
            "events": copy.deepcopy(self.events),
        }

    def restore(self, snapshot: Dict[str, Any]) -> None:
        self.registry.restore(snapshot["registry"])
        self.events = copy.deepcopy(snapshot["events"])

    # ==================== Internal ====================

    def _authorize_config(self, caller: str, operation: str) -> None:
        if not self.policy.authorize_config(self, caller):
            self._deny(caller, operation, "configuration policy holder")

    def _deny(self, caller: str, operation: str, role: str) -> None:
        logger.warning(
            "Unauthorized configuration attempt",
            extra={
                "event": "account.authorization_denied",
                "account": short(self.address),
                "operation": operation,
                "caller": short(caller),
                "required_role": role,
            },
        )
        raise AuthorizationDenied(
            f"Caller {caller} is not {role} for {operation}",
            details={"caller": caller, "operation": operation, "role": role},
        )

    def _require_module_address(self, module: str) -> str:
        if not is_address(module):
            raise ModularAccountError(
                f"Invalid module address: {module!r}", details={"module": module}
            )
        module = normalize_address(module)
        if module == self.address:
            raise ModularAccountError("Account cannot install itself as a module")
        return module

    def _ensure_removable(self, module_type: ModuleType, module: str) -> None:
        if (
            module_type is ModuleType.VALIDATOR
            and not self.config.allow_removing_last_validator
            and self.registry.modules_of(ModuleType.VALIDATOR) == [module]
        ):
            raise LastValidatorRemovalError(
                f"Cannot remove {module}: it is the last validator",
                details={"module": module},
            )
        self.registry.require_installed(module_type, module)

    def _require_declared_type(self, module_type: ModuleType, module: str) -> None:
        try:
            declared = self.ledger.invoke(
                self.address, module, "is_module_type", int(module_type), static=True
            )
        except VMError as e:
            raise InvalidModuleTypeError(
                f"Module {module} could not be probed for type {module_type.name.lower()}: {e}",
                details={"module": module, "module_type": int(module_type)},
            ) from e
        if declared is not True:
            raise InvalidModuleTypeError(
                f"Module {module} does not declare type {module_type.name.lower()}",
                details={"module": module, "module_type": int(module_type)},
            )

    def _lifecycle(self, module_type: ModuleType, module: str, method: str, data: bytes) -> None:
        try:
            self.ledger.invoke(self.address, module, method, data)
        except VMError as e:
            logger.error(
                "Module lifecycle callback failed",
                extra={
                    "event": "account.module_lifecycle_failed",
                    "account": short(self.address),
                    "module": short(module),
                    "module_type": module_type.name.lower(),
                    "callback": method,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            raise ModuleLifecycleFailed(
                f"{method} of {module} failed: {e}",
                details={"module": module, "module_type": int(module_type), "callback": method},
            ) from e

    def _emit(self, event: ModuleEvent) -> None:
        self.events.append(event)


_SELECTOR_NAMES = {selector: name for name, selector in ACCOUNT_SELECTORS.items()}
_VIEW_SELECTOR_NAMES = {selector: name for name, selector in VIEW_SELECTORS.items()}
