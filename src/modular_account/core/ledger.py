"""
In-process host ledger.

The ledger is the execution host the account runs on. It provides:
- Deployed contracts addressed by 20-byte hex addresses
- Per-address key/value storage and native balances
- Call frames for normal calls, delegated calls and read-only calls
- All-or-nothing scopes via ``atomic()``

Contract code never touches ledger internals directly; it reads and writes
state through the ``CallContext`` handed to it, so delegated calls write to
the calling account's storage and read-only frames cannot write at all.

Any exception raised by contract code that is not already a ``VMError`` is
converted to ``RevertError``: from the caller's point of view, a bug in a
callee is indistinguishable from a deliberate revert.
"""

from __future__ import annotations

import copy
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional

from .addresses import generate_address, normalize_address, short
from .exceptions import (
    ContractNotFoundError,
    InsufficientBalanceError,
    RevertError,
    StaticCallViolation,
    VMError,
)

logger = logging.getLogger(__name__)

MAX_CALL_DEPTH = 1024

# Errors from contract code that are treated as a revert of that frame
CONTRACT_FAULTS = (
    ValueError,
    TypeError,
    KeyError,
    AttributeError,
    ArithmeticError,
    LookupError,
    RuntimeError,
)


@dataclass
class Contract:
    """Base class for code deployed on the ledger.

    Subclasses keep their persistent state in ledger storage (``ctx.sload`` /
    ``ctx.sstore``) so that it is rolled back together with everything else.
    Python attributes are configuration, not state.
    """

    address: str = ""

    def __post_init__(self) -> None:
        if not self.address:
            self.address = generate_address(type(self).__name__)
        self.address = normalize_address(self.address)

    def handle_call(self, ctx: "CallContext", data: bytes) -> bytes:
        """Entry point for raw calls. Contracts without one reject calls."""
        raise RevertError(
            f"{type(self).__name__} at {short(self.address)} has no call handler",
            reason="no_call_handler",
        )


@dataclass
class CallContext:
    """A single call frame."""

    ledger: "Ledger"
    caller: str
    address: str
    code_address: str
    value: int = 0
    static: bool = False
    delegated: bool = False
    data: bytes = b""
    depth: int = 0

    # ==================== Storage ====================

    def sload(self, key: Any, default: Any = None) -> Any:
        value = self.ledger.storage.get(self.address, {}).get(key, default)
        return copy.deepcopy(value)

    def sstore(self, key: Any, value: Any) -> None:
        self._require_mutable("sstore")
        self.ledger.storage.setdefault(self.address, {})[key] = copy.deepcopy(value)

    def sdelete(self, key: Any) -> None:
        self._require_mutable("sdelete")
        self.ledger.storage.get(self.address, {}).pop(key, None)

    # ==================== Nested calls ====================

    def call(self, target: str, value: int = 0, data: bytes = b"") -> bytes:
        """Call another contract with this frame's address as the sender."""
        return self.ledger.call(
            self.address, target, value, data, static=self.static, depth=self.depth + 1
        )

    def invoke(self, target: str, method: str, *args: Any, value: int = 0) -> Any:
        return self.ledger.invoke(
            self.address, target, method, *args,
            value=value, static=self.static, depth=self.depth + 1,
        )

    def balance(self, address: Optional[str] = None) -> int:
        return self.ledger.balance_of(address or self.address)

    def _require_mutable(self, operation: str) -> None:
        if self.static:
            raise StaticCallViolation(
                f"{operation} not allowed in read-only frame",
                details={"address": self.address, "code": self.code_address},
            )


class Ledger:
    """
    Host for contracts, storage and balances.

    Stateful participants (objects exposing ``snapshot()``/``restore()``, such
    as accounts) are captured by ``snapshot()`` together with ledger storage so
    an ``atomic()`` scope can discard every effect of a failed operation.
    """

    def __init__(self) -> None:
        self.contracts: Dict[str, Contract] = {}
        self.storage: Dict[str, Dict[Any, Any]] = {}
        self.balances: Dict[str, int] = {}
        self._participants: Dict[str, Any] = {}
        self._atomic_depth = 0

    # ==================== Deployment ====================

    def deploy(self, contract: Contract) -> Contract:
        address = normalize_address(contract.address)
        if address in self.contracts:
            raise VMError(f"Address {short(address)} already has code deployed")
        self.contracts[address] = contract
        if callable(getattr(contract, "snapshot", None)) and callable(
            getattr(contract, "restore", None)
        ):
            self._participants[address] = contract
        attach = getattr(contract, "attach", None)
        if callable(attach):
            attach(self)

        logger.debug(
            "Contract deployed",
            extra={
                "event": "ledger.deployed",
                "address": short(address),
                "kind": type(contract).__name__,
            },
        )
        return contract

    def get_contract(self, address: str) -> Optional[Contract]:
        return self.contracts.get(normalize_address(address))

    def has_code(self, address: str) -> bool:
        return normalize_address(address) in self.contracts

    # ==================== Balances ====================

    def balance_of(self, address: str) -> int:
        return self.balances.get(normalize_address(address), 0)

    def mint(self, address: str, amount: int) -> None:
        """Credit native balance out of thin air (test and genesis funding)."""
        if amount < 0:
            raise ValueError("Amount must be non-negative")
        address = normalize_address(address)
        self.balances[address] = self.balances.get(address, 0) + amount

    def transfer(self, sender: str, recipient: str, amount: int, static: bool = False) -> None:
        if amount < 0:
            raise VMError("Transfer amount must be non-negative")
        if amount == 0:
            return
        if static:
            raise StaticCallViolation("Value transfer not allowed in read-only frame")
        sender = normalize_address(sender)
        recipient = normalize_address(recipient)
        available = self.balances.get(sender, 0)
        if amount > available:
            raise InsufficientBalanceError(
                f"Insufficient balance: {short(sender)} has {available}, needs {amount}",
                details={"sender": sender, "available": available, "amount": amount},
            )
        self.balances[sender] = available - amount
        self.balances[recipient] = self.balances.get(recipient, 0) + amount

    # ==================== Calls ====================

    def call(
        self,
        sender: str,
        target: str,
        value: int = 0,
        data: bytes = b"",
        static: bool = False,
        depth: int = 0,
    ) -> bytes:
        """
        Normal call: ``target`` code runs against ``target`` storage.

        Calls to addresses without code only move value and return empty data.
        """
        sender = normalize_address(sender)
        target = normalize_address(target)
        with self.atomic():
            self.transfer(sender, target, value, static=static)
            contract = self.contracts.get(target)
            if contract is None:
                return b""
            ctx = CallContext(
                ledger=self,
                caller=sender,
                address=target,
                code_address=target,
                value=value,
                static=static,
                data=bytes(data),
                depth=depth,
            )
            return self._run(ctx, contract.handle_call, bytes(data))

    def static_call(self, sender: str, target: str, data: bytes = b"", depth: int = 0) -> bytes:
        return self.call(sender, target, 0, data, static=True, depth=depth)

    def delegate_call(
        self,
        sender: str,
        account: str,
        target: str,
        data: bytes = b"",
        depth: int = 0,
    ) -> bytes:
        """
        Delegated call: ``target`` code runs against ``account`` storage.

        ``sender`` is the caller of the account and is preserved as the frame
        caller. A defect in the target code is a defect in the account.
        """
        account = normalize_address(account)
        target = normalize_address(target)
        contract = self.contracts.get(target)
        if contract is None:
            raise ContractNotFoundError(
                f"Delegate target {short(target)} has no code",
                details={"target": target},
            )
        with self.atomic():
            ctx = CallContext(
                ledger=self,
                caller=normalize_address(sender),
                address=account,
                code_address=target,
                delegated=True,
                data=bytes(data),
                depth=depth,
            )
            return self._run(ctx, contract.handle_call, bytes(data))

    def invoke(
        self,
        sender: str,
        target: str,
        method: str,
        *args: Any,
        value: int = 0,
        static: bool = False,
        depth: int = 0,
    ) -> Any:
        """
        Call a named capability method on ``target``.

        Used for typed module interfaces (``on_install``, ``pre_check``, ...)
        where the arguments are structured rather than opaque bytes.
        """
        sender = normalize_address(sender)
        target = normalize_address(target)
        contract = self.contracts.get(target)
        if contract is None:
            raise ContractNotFoundError(
                f"No code at {short(target)} for {method}",
                details={"target": target, "method": method},
            )
        handler = getattr(contract, method, None)
        if not callable(handler) or method.startswith("_"):
            raise RevertError(
                f"{type(contract).__name__} does not implement {method}",
                reason="missing_method",
            )
        with self.atomic():
            self.transfer(sender, target, value, static=static)
            ctx = CallContext(
                ledger=self,
                caller=sender,
                address=target,
                code_address=target,
                value=value,
                static=static,
                depth=depth,
            )
            return self._run(ctx, handler, *args)

    def _run(self, ctx: CallContext, fn: Callable[..., Any], *args: Any) -> Any:
        if ctx.depth > MAX_CALL_DEPTH:
            raise RevertError("Max call depth exceeded", reason="call_depth")
        try:
            return fn(ctx, *args)
        except VMError:
            raise
        except CONTRACT_FAULTS as e:
            logger.debug(
                "Contract code faulted",
                extra={
                    "event": "ledger.contract_fault",
                    "address": short(ctx.code_address),
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            raise RevertError(
                f"Execution reverted in {short(ctx.code_address)}: {e}",
                reason=type(e).__name__,
            ) from e

    # ==================== Atomicity ====================

    def snapshot(self) -> Dict[str, Any]:
        """Deep copy of ledger state and every stateful participant."""
        return {
            "storage": copy.deepcopy(self.storage),
            "balances": dict(self.balances),
            "participants": {
                address: participant.snapshot()
                for address, participant in self._participants.items()
            },
        }

    def restore(self, snapshot: Dict[str, Any]) -> None:
        self.storage = copy.deepcopy(snapshot["storage"])
        self.balances = dict(snapshot["balances"])
        saved = snapshot.get("participants", {})
        for address, participant in self._participants.items():
            if address in saved:
                participant.restore(saved[address])

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """
        Scope whose effects are discarded if it exits with an exception.

        Scopes nest; an inner failure caught by an outer scope only rolls back
        the inner scope.
        """
        saved = self.snapshot()
        self._atomic_depth += 1
        try:
            yield
        except Exception as e:
            self.restore(saved)
            logger.debug(
                "Atomic scope rolled back",
                extra={
                    "event": "ledger.rollback",
                    "depth": self._atomic_depth,
                    "error_type": type(e).__name__,
                },
            )
            raise
        finally:
            self._atomic_depth -= 1

    @property
    def in_atomic_scope(self) -> bool:
        return self._atomic_depth > 0
