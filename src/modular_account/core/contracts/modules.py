"""
Module base classes and reference modules.

Modules are ordinary contracts deployed on the ledger. The account talks to
them through named capability methods (``ledger.invoke``), always as the
immediate caller, so inside a module ``ctx.caller`` is the account the call
is for. Modules keep per-account state in their own storage keyed by that
address; nothing is held in Python attributes.

Reference modules:
- ECDSAValidator: secp256k1 owner key per account
- SpendingLimitHook: cumulative native-value cap per account
- AllowlistExecutor: lets a fixed set of operators run executions
- TokenReceiverFallback: answers token receiver callbacks
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, ClassVar, FrozenSet, Iterable, List

from ..addresses import ADDRESS_BYTES, address_from_bytes, normalize_address, short
from ..crypto_utils import load_public_key_from_hex, verify_signature_hex
from ..exceptions import RevertError
from ..ledger import CallContext, Contract
from .types import (
    ACCOUNT_SELECTORS,
    ERC1271_INVALID,
    ERC1271_MAGIC_VALUE,
    SIG_VALIDATION_FAILED,
    SIG_VALIDATION_SUCCESS,
    Execution,
    ModuleType,
    decode_batch_executions,
    decode_results,
    decode_single_execution,
    encode_batch_executions,
    function_selector,
    split_original_caller,
)

logger = logging.getLogger(__name__)


@dataclass
class Module(Contract):
    """Base module: type declaration and install bookkeeping."""

    MODULE_TYPES: ClassVar[FrozenSet[ModuleType]] = frozenset()

    def is_module_type(self, ctx: CallContext, type_id: int) -> bool:
        return int(type_id) in {int(t) for t in self.MODULE_TYPES}

    def on_install(self, ctx: CallContext, data: bytes) -> None:
        key = ("installs", ctx.caller)
        ctx.sstore(key, ctx.sload(key, 0) + 1)

    def on_uninstall(self, ctx: CallContext, data: bytes) -> None:
        key = ("installs", ctx.caller)
        remaining = ctx.sload(key, 0) - 1
        if remaining > 0:
            ctx.sstore(key, remaining)
        else:
            ctx.sdelete(key)

    def is_initialized(self, ctx: CallContext, account: str) -> bool:
        return ctx.sload(("installs", normalize_address(account)), 0) > 0


@dataclass
class ValidatorModule(Module):
    MODULE_TYPES: ClassVar[FrozenSet[ModuleType]] = frozenset({ModuleType.VALIDATOR})

    def validate_user_op(self, ctx: CallContext, user_op: Any, user_op_hash: bytes) -> int:
        raise NotImplementedError

    def is_valid_signature_with_sender(
        self, ctx: CallContext, sender: str, hash_: bytes, signature: bytes
    ) -> bytes:
        raise NotImplementedError


@dataclass
class ExecutorModule(Module):
    MODULE_TYPES: ClassVar[FrozenSet[ModuleType]] = frozenset({ModuleType.EXECUTOR})


@dataclass
class FallbackModule(Module):
    MODULE_TYPES: ClassVar[FrozenSet[ModuleType]] = frozenset({ModuleType.FALLBACK})


@dataclass
class HookModule(Module):
    """
    Hook interface.

    ``pre_check`` returns opaque hook data; the account hands exactly that
    data back to ``post_check`` of the same operation. Raising in either, or
    returning a false value from ``post_check``, rejects the operation.
    """

    MODULE_TYPES: ClassVar[FrozenSet[ModuleType]] = frozenset({ModuleType.HOOK})

    def pre_check(self, ctx: CallContext, caller: str, value: int, payload: bytes) -> bytes:
        return b""

    def post_check(self, ctx: CallContext, hook_data: bytes) -> bool:
        return True


# ==================== Reference modules ====================


@dataclass
class ECDSAValidator(ValidatorModule):
    """
    Single-owner validator.

    Install data is the owner's 64-byte uncompressed secp256k1 public key
    (x || y). Signatures are 64-byte low-S ``r || s`` over the operation hash.
    """

    def on_install(self, ctx: CallContext, data: bytes) -> None:
        if len(data) != 64:
            raise ValueError(f"ECDSAValidator install data must be a 64-byte public key, got {len(data)}")
        public_hex = bytes(data).hex()
        # Rejects points that are not on the curve
        load_public_key_from_hex(public_hex)
        super().on_install(ctx, data)
        ctx.sstore(("owner_key", ctx.caller), public_hex)

    def on_uninstall(self, ctx: CallContext, data: bytes) -> None:
        super().on_uninstall(ctx, data)
        ctx.sdelete(("owner_key", ctx.caller))

    def owner_key(self, ctx: CallContext, account: str) -> str:
        return ctx.sload(("owner_key", normalize_address(account)), "")

    def validate_user_op(self, ctx: CallContext, user_op: Any, user_op_hash: bytes) -> int:
        if self._verify(ctx, bytes(user_op_hash), bytes(user_op.signature)):
            return SIG_VALIDATION_SUCCESS
        return SIG_VALIDATION_FAILED

    def is_valid_signature_with_sender(
        self, ctx: CallContext, sender: str, hash_: bytes, signature: bytes
    ) -> bytes:
        if self._verify(ctx, bytes(hash_), bytes(signature)):
            return ERC1271_MAGIC_VALUE
        return ERC1271_INVALID

    def _verify(self, ctx: CallContext, message: bytes, signature: bytes) -> bool:
        public_hex = ctx.sload(("owner_key", ctx.caller), "")
        if not public_hex:
            logger.debug(
                "No owner key for account",
                extra={"event": "ecdsa_validator.no_key", "account": short(ctx.caller)},
            )
            return False
        valid = verify_signature_hex(public_hex, message, signature.hex())
        if not valid:
            logger.info(
                "Signature rejected",
                extra={"event": "ecdsa_validator.signature_rejected", "account": short(ctx.caller)},
            )
        return valid


def _values_in_payload(payload: bytes) -> int:
    """Native value moved by an execution payload; 0 for anything else."""
    selector, body = payload[:4], payload[4:]
    if selector in (ACCOUNT_SELECTORS["execute"], ACCOUNT_SELECTORS["executeFromExecutor"]):
        return decode_single_execution(body).value
    if selector in (ACCOUNT_SELECTORS["executeBatch"], ACCOUNT_SELECTORS["executeBatchFromExecutor"]):
        return sum(execution.value for execution in decode_batch_executions(body))
    return 0


@dataclass
class SpendingLimitHook(HookModule):
    """
    Caps the total native value an account sends through execution.

    Install data: the limit as a 32-byte big-endian integer. ``pre_check``
    rejects operations that would exceed the remaining allowance and passes
    the amount to ``post_check``, which books it.
    """

    def on_install(self, ctx: CallContext, data: bytes) -> None:
        if len(data) != 32:
            raise ValueError("SpendingLimitHook install data must be a 32-byte limit")
        super().on_install(ctx, data)
        ctx.sstore(("limit", ctx.caller), int.from_bytes(data, "big"))
        ctx.sstore(("spent", ctx.caller), 0)

    def on_uninstall(self, ctx: CallContext, data: bytes) -> None:
        super().on_uninstall(ctx, data)
        ctx.sdelete(("limit", ctx.caller))
        ctx.sdelete(("spent", ctx.caller))

    def remaining(self, ctx: CallContext, account: str) -> int:
        account = normalize_address(account)
        return ctx.sload(("limit", account), 0) - ctx.sload(("spent", account), 0)

    def pre_check(self, ctx: CallContext, caller: str, value: int, payload: bytes) -> bytes:
        amount = _values_in_payload(payload)
        remaining = self.remaining(ctx, ctx.caller)
        if amount > remaining:
            raise RevertError(
                f"Spending limit exceeded: {amount} requested, {remaining} remaining",
                reason="spending_limit",
            )
        return amount.to_bytes(32, "big")

    def post_check(self, ctx: CallContext, hook_data: bytes) -> bool:
        amount = int.from_bytes(hook_data, "big")
        if amount:
            ctx.sstore(("spent", ctx.caller), ctx.sload(("spent", ctx.caller), 0) + amount)
        return True


@dataclass
class AllowlistExecutor(ExecutorModule):
    """
    Executor that runs executions for allow-listed operators.

    Install data: concatenated 20-byte operator addresses.
    """

    def on_install(self, ctx: CallContext, data: bytes) -> None:
        if not data or len(data) % ADDRESS_BYTES:
            raise ValueError("AllowlistExecutor install data must be one or more 20-byte addresses")
        super().on_install(ctx, data)
        operators = [
            address_from_bytes(data[i:i + ADDRESS_BYTES])
            for i in range(0, len(data), ADDRESS_BYTES)
        ]
        ctx.sstore(("operators", ctx.caller), operators)

    def on_uninstall(self, ctx: CallContext, data: bytes) -> None:
        super().on_uninstall(ctx, data)
        ctx.sdelete(("operators", ctx.caller))

    def operators(self, ctx: CallContext, account: str) -> List[str]:
        return ctx.sload(("operators", normalize_address(account)), [])

    def run(self, ctx: CallContext, account: str, executions: Iterable[Execution]) -> List[bytes]:
        """Called by an operator; executes ``executions`` through ``account``."""
        account = normalize_address(account)
        if ctx.caller not in self.operators(ctx, account):
            raise RevertError(
                f"{short(ctx.caller)} is not an operator for {short(account)}",
                reason="not_operator",
            )
        calldata = ACCOUNT_SELECTORS["executeBatchFromExecutor"] + encode_batch_executions(
            executions
        )
        return decode_results(ctx.call(account, 0, calldata))


# Token receiver callbacks answered by TokenReceiverFallback
TOKEN_RECEIVER_SELECTORS = {
    function_selector(signature): signature
    for signature in (
        "onERC721Received(address,address,uint256,bytes)",
        "onERC1155Received(address,address,uint256,uint256,bytes)",
        "onERC1155BatchReceived(address,address,uint256[],uint256[],bytes)",
    )
}


@dataclass
class TokenReceiverFallback(FallbackModule):
    """
    Accepts token transfer callbacks on behalf of the account.

    Returns the callback's own selector, as token contracts expect, and
    records the token contract that made the callback (the original caller
    appended by the account).
    """

    def handle_call(self, ctx: CallContext, data: bytes) -> bytes:
        payload, original_caller = split_original_caller(data)
        selector = payload[:4]
        if selector not in TOKEN_RECEIVER_SELECTORS:
            raise RevertError(
                f"Unsupported callback selector 0x{selector.hex()}",
                reason="unsupported_selector",
            )
        if not ctx.static:
            key = ("received", ctx.caller)
            log = ctx.sload(key, [])
            log.append((original_caller, TOKEN_RECEIVER_SELECTORS[selector]))
            ctx.sstore(key, log)
        return selector

    def received(self, ctx: CallContext, account: str) -> List[tuple]:
        return ctx.sload(("received", normalize_address(account)), [])
