"""
ERC-4337 style entry point.

Receives batches of user operations from bundlers. For each operation:
1. Check the nonce
2. Ask the account to validate it (the account pays the prefund here)
3. Increment the nonce
4. Call the account with the operation's calldata

Validation failures discard the operation entirely. Execution failures are
reported in the result but keep the nonce increment and the prefund, so a
failing operation cannot be replayed for free.
"""

from __future__ import annotations

import copy
import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..addresses import normalize_address, short
from ..config import ENTRY_POINT_ADDRESS, CHAIN_ID
from ..exceptions import ContractNotFoundError, InsufficientBalanceError, VMError
from ..ledger import Contract, Ledger
from .types import SIG_VALIDATION_SUCCESS

logger = logging.getLogger(__name__)


@dataclass
class UserOperation:
    """A user's signed intent, executed by the entry point on their account."""

    sender: str
    nonce: int
    call_data: bytes = b""
    signature: bytes = b""
    missing_account_funds: int = 0

    def pack(self) -> bytes:
        """Pack for hashing (without signature)."""
        return (
            normalize_address(self.sender).encode()
            + self.nonce.to_bytes(32, "big")
            + hashlib.sha3_256(self.call_data).digest()
            + self.missing_account_funds.to_bytes(32, "big")
        )

    def hash(self, entry_point: str, chain_id: int) -> bytes:
        """
        Hash to be signed.

        Binds the entry point and chain id to prevent cross-chain replay.
        """
        inner_hash = hashlib.sha3_256(self.pack()).digest()
        return hashlib.sha3_256(
            inner_hash + normalize_address(entry_point).encode() + chain_id.to_bytes(32, "big")
        ).digest()


@dataclass
class ExecutionResult:
    """Outcome of one user operation."""

    sender: str
    nonce: int
    success: bool
    validated: bool = True
    return_data: bytes = b""
    error: Optional[str] = None


@dataclass
class EntryPoint(Contract):
    """
    Singleton entry point.

    Deployed at the configured entry point address unless one is given, so
    accounts built with the default config trust it.
    """

    chain_id: int = CHAIN_ID

    def __post_init__(self) -> None:
        if not self.address:
            self.address = ENTRY_POINT_ADDRESS
        super().__post_init__()
        self.ledger: Optional[Ledger] = None
        self.nonces: Dict[str, int] = {}
        self.deposits: Dict[str, int] = {}
        self.total_ops_processed = 0
        self.total_ops_failed = 0

    def attach(self, ledger: Ledger) -> None:
        self.ledger = ledger

    # ==================== Main Entry Point ====================

    def handle_ops(self, ops: List[UserOperation], beneficiary: str) -> List[ExecutionResult]:
        """
        Handle a batch of user operations.

        Args:
            ops: Operations, processed in order
            beneficiary: Receives the prefunds collected from accounts

        Returns:
            One result per operation
        """
        if self.ledger is None:
            raise VMError("EntryPoint is not deployed")
        beneficiary = normalize_address(beneficiary)
        results = []

        for op in ops:
            try:
                results.append(self._handle_single_op(op, beneficiary))
            except VMError as e:
                logger.warning(
                    "UserOp validation failed",
                    extra={
                        "event": "entrypoint.op_failed",
                        "sender": short(op.sender),
                        "nonce": op.nonce,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                self.total_ops_failed += 1
                results.append(
                    ExecutionResult(
                        sender=op.sender,
                        nonce=op.nonce,
                        success=False,
                        validated=False,
                        error=str(e),
                    )
                )

        self.total_ops_processed += len(ops)
        return results

    def _handle_single_op(self, op: UserOperation, beneficiary: str) -> ExecutionResult:
        sender = normalize_address(op.sender)

        # 1-3. Validation phase: all or nothing
        with self.ledger.atomic():
            expected = self.nonces.get(sender, 0)
            if op.nonce != expected:
                raise VMError(
                    f"Invalid nonce for {short(sender)}: expected {expected}, got {op.nonce}",
                    details={"sender": sender, "expected": expected, "nonce": op.nonce},
                )
            account = self.ledger.get_contract(sender)
            if account is None or not callable(getattr(account, "validate_user_op", None)):
                raise ContractNotFoundError(
                    f"No account deployed at {short(sender)}", details={"sender": sender}
                )

            op_hash = op.hash(self.address, self.chain_id)
            validation = account.validate_user_op(
                self.address, op, op_hash, op.missing_account_funds
            )
            if validation != SIG_VALIDATION_SUCCESS:
                raise VMError(
                    f"Signature validation failed for {short(sender)}",
                    details={"sender": sender, "validation_data": validation},
                )
            self.nonces[sender] = expected + 1
            if op.missing_account_funds:
                self.ledger.transfer(self.address, beneficiary, op.missing_account_funds)

        # 4. Execution phase: its failure does not undo validation
        success = True
        error = None
        return_data = b""
        if op.call_data:
            try:
                return_data = self.ledger.call(self.address, sender, 0, op.call_data)
            except VMError as e:
                success = False
                error = str(e)
                self.total_ops_failed += 1
                logger.warning(
                    "UserOp execution failed",
                    extra={
                        "event": "entrypoint.execution_failed",
                        "sender": short(sender),
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )

        logger.info(
            "UserOp processed",
            extra={
                "event": "entrypoint.op_processed",
                "sender": short(sender),
                "nonce": op.nonce,
                "success": success,
            },
        )
        return ExecutionResult(
            sender=sender,
            nonce=op.nonce,
            success=success,
            return_data=return_data,
            error=error,
        )

    # ==================== Nonces ====================

    def get_nonce(self, sender: str) -> int:
        return self.nonces.get(normalize_address(sender), 0)

    # ==================== Deposit Management ====================

    def deposit_to(self, caller: str, account: str, amount: int) -> None:
        """Move ``amount`` of ``caller``'s balance into ``account``'s deposit."""
        self.ledger.transfer(caller, self.address, amount)
        account = normalize_address(account)
        self.deposits[account] = self.deposits.get(account, 0) + amount

    def withdraw_to(self, caller: str, withdraw_address: str, amount: int) -> None:
        caller = normalize_address(caller)
        current = self.deposits.get(caller, 0)
        if amount > current:
            raise InsufficientBalanceError(
                "Insufficient deposit",
                details={"account": caller, "available": current, "amount": amount},
            )
        self.deposits[caller] = current - amount
        self.ledger.transfer(self.address, withdraw_address, amount)

    def balance_of(self, account: str) -> int:
        """Deposit balance of ``account``."""
        return self.deposits.get(normalize_address(account), 0)

    # ==================== Snapshots ====================

    def snapshot(self) -> Dict[str, Any]:
        return {"nonces": dict(self.nonces), "deposits": copy.copy(self.deposits)}

    def restore(self, snapshot: Dict[str, Any]) -> None:
        self.nonces = dict(snapshot["nonces"])
        self.deposits = dict(snapshot["deposits"])

    # ==================== Stats ====================

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_ops_processed": self.total_ops_processed,
            "total_ops_failed": self.total_ops_failed,
            "accounts_seen": len(self.nonces),
            "total_deposits": sum(self.deposits.values()),
        }
