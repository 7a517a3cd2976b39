"""
Execution router.

Four gated execution operations:

                    single                      batch
    entry point     execute                     execute_batch
    executor        execute_from_executor       execute_batch_from_executor

plus the delegated variants ``execute_delegate_call`` and
``execute_delegate_call_from_executor``, which run the target's code against
the account's own storage. They are separate operations rather than a flag so
their higher trust requirement shows at the call site.

Every operation is all-or-nothing: the first failing call aborts the whole
operation with ExecutionFailed and the surrounding atomic scope discards the
effects of the calls before it. On success the result is the list of return
payloads, in call order.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Sequence, Tuple, Union, TYPE_CHECKING

from ..addresses import normalize_address, short
from ..exceptions import (
    AuthorizationDenied,
    ExecutionFailed,
    UnsupportedOperation,
    VMError,
)
from .types import (
    ACCOUNT_SELECTORS,
    Execution,
    ModuleType,
    encode_batch_executions,
    encode_delegate_call,
    encode_execute_call,
    encode_single_execution,
)

if TYPE_CHECKING:
    from .account import ModularAccount

logger = logging.getLogger(__name__)

ExecutionLike = Union[Execution, Tuple[str, int, bytes]]


def as_executions(executions: Iterable[ExecutionLike]) -> List[Execution]:
    """Accept Execution objects or (target, value, data) tuples."""
    return [
        item if isinstance(item, Execution) else Execution(*item)
        for item in executions
    ]


class ExecutionRouter:
    """Direct and delegated calls on behalf of the account."""

    def __init__(self, account: "ModularAccount") -> None:
        self.account = account

    # ==================== Entry point / self ====================

    def execute(self, caller: str, target: str, value: int = 0, data: bytes = b"") -> List[bytes]:
        self._require_entry_point_or_self(caller, "execute")
        execution = Execution(target, value, data)
        payload = encode_execute_call(execution.target, execution.value, execution.data)
        with self.account.operation("execute", caller, payload):
            return self._call_all([execution])

    def execute_batch(self, caller: str, executions: Iterable[ExecutionLike]) -> List[bytes]:
        self._require_entry_point_or_self(caller, "execute_batch")
        executions = as_executions(executions)
        payload = ACCOUNT_SELECTORS["executeBatch"] + encode_batch_executions(executions)
        with self.account.operation("execute_batch", caller, payload):
            return self._call_all(executions)

    def execute_delegate_call(self, caller: str, target: str, data: bytes = b"") -> List[bytes]:
        self._require_delegate_calls("execute_delegate_call")
        self._require_entry_point_or_self(caller, "execute_delegate_call")
        payload = encode_delegate_call(target, data)
        with self.account.operation("execute_delegate_call", caller, payload):
            return [self._delegate(caller, target, data)]

    # ==================== Executor ====================

    def execute_from_executor(
        self, caller: str, target: str, value: int = 0, data: bytes = b""
    ) -> List[bytes]:
        self._require_executor(caller, "execute_from_executor")
        execution = Execution(target, value, data)
        payload = ACCOUNT_SELECTORS["executeFromExecutor"] + encode_single_execution(
            execution.target, execution.value, execution.data
        )
        with self.account.operation("execute_from_executor", caller, payload):
            return self._call_all([execution])

    def execute_batch_from_executor(
        self, caller: str, executions: Iterable[ExecutionLike]
    ) -> List[bytes]:
        self._require_executor(caller, "execute_batch_from_executor")
        executions = as_executions(executions)
        payload = ACCOUNT_SELECTORS["executeBatchFromExecutor"] + encode_batch_executions(
            executions
        )
        with self.account.operation("execute_batch_from_executor", caller, payload):
            return self._call_all(executions)

    def execute_delegate_call_from_executor(
        self, caller: str, target: str, data: bytes = b""
    ) -> List[bytes]:
        self._require_delegate_calls("execute_delegate_call_from_executor")
        self._require_executor(caller, "execute_delegate_call_from_executor")
        payload = encode_delegate_call(target, data, from_executor=True)
        with self.account.operation("execute_delegate_call_from_executor", caller, payload):
            return [self._delegate(caller, target, data)]

    # ==================== Internal ====================

    def _call_all(self, executions: Sequence[Execution]) -> List[bytes]:
        results: List[bytes] = []
        for index, execution in enumerate(executions):
            try:
                results.append(
                    self.account.ledger.call(
                        self.account.address, execution.target, execution.value, execution.data
                    )
                )
            except VMError as e:
                logger.warning(
                    "Execution failed",
                    extra={
                        "event": "account.execution_failed",
                        "account": short(self.account.address),
                        "target": short(execution.target),
                        "index": index,
                        "batch_size": len(executions),
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                raise ExecutionFailed(
                    f"Call {index} to {execution.target} failed: {e}",
                    index=index,
                    details={"target": execution.target, "value": execution.value},
                ) from e

        logger.debug(
            "Executions completed",
            extra={
                "event": "account.executed",
                "account": short(self.account.address),
                "count": len(executions),
            },
        )
        return results

    def _delegate(self, caller: str, target: str, data: bytes) -> bytes:
        target = normalize_address(target)
        logger.warning(
            "Delegated execution: running foreign code against account state",
            extra={
                "event": "account.delegate_call",
                "account": short(self.account.address),
                "target": short(target),
                "caller": short(caller),
            },
        )
        try:
            return self.account.ledger.delegate_call(caller, self.account.address, target, data)
        except VMError as e:
            raise ExecutionFailed(
                f"Delegate call to {target} failed: {e}",
                index=0,
                details={"target": target},
            ) from e

    def _require_entry_point_or_self(self, caller: str, operation: str) -> None:
        caller = normalize_address(caller)
        if caller == self.account.entry_point or caller == self.account.address:
            return
        self._deny(caller, operation, "entry point or self")

    def _require_executor(self, caller: str, operation: str) -> None:
        caller = normalize_address(caller)
        if self.account.registry.is_installed(ModuleType.EXECUTOR, caller):
            return
        self._deny(caller, operation, "installed executor")

    def _require_delegate_calls(self, operation: str) -> None:
        if not self.account.config.allow_delegate_calls:
            raise UnsupportedOperation(
                f"{operation} is not supported by this account",
                details={"operation": operation},
            )

    def _deny(self, caller: str, operation: str, role: str) -> None:
        logger.warning(
            "Unauthorized execution attempt",
            extra={
                "event": "account.authorization_denied",
                "account": short(self.account.address),
                "operation": operation,
                "caller": short(caller),
                "required_role": role,
            },
        )
        raise AuthorizationDenied(
            f"Caller {caller} is not {role} for {operation}",
            details={"caller": caller, "operation": operation, "role": role},
        )
