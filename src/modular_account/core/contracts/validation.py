"""
Validator dispatcher.

Forwards operation validation and ERC-1271 signature checks to an installed
validator module. The validator is chosen by the account's selection scheme:
a signature may start with a selection envelope naming the validator
(``encode_selection_envelope``); without one, the first installed validator
is used. The envelope is always stripped before the signature reaches the
validator.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Optional, Tuple, TYPE_CHECKING

from ..addresses import normalize_address, short
from ..exceptions import AuthorizationDenied, VMError
from .types import (
    ERC1271_INVALID,
    ERC1271_MAGIC_VALUE,
    SIG_VALIDATION_FAILED,
    ModuleType,
    strip_selection_metadata,
)

if TYPE_CHECKING:
    from .account import ModularAccount

logger = logging.getLogger(__name__)


class ValidatorDispatcher:
    """Routes validation requests to installed validator modules."""

    def __init__(self, account: "ModularAccount") -> None:
        self.account = account

    def select_validator(self, signature: bytes) -> Tuple[Optional[str], bytes]:
        """
        Pick the validator for ``signature``.

        Returns:
            (installed validator or None, signature with selection metadata removed)
        """
        validator, inner = strip_selection_metadata(signature)
        if validator is None:
            installed = self.account.registry.modules_of(ModuleType.VALIDATOR)
            validator = installed[0] if installed else None
        elif not self.account.registry.is_installed(ModuleType.VALIDATOR, validator):
            logger.warning(
                "Signature selects a validator that is not installed",
                extra={
                    "event": "account.validator_not_installed",
                    "account": short(self.account.address),
                    "validator": short(validator),
                },
            )
            validator = None
        return validator, inner

    def validate_user_op(
        self,
        caller: str,
        user_op: Any,
        user_op_hash: bytes,
        missing_account_funds: int = 0,
    ) -> int:
        """
        Validate a user operation through its validator and pay the prefund.

        The validator's result is returned unchanged. A missing validator is
        reported as SIG_VALIDATION_FAILED, not as an exception, so the entry
        point can still charge for the attempt.

        Raises:
            AuthorizationDenied: ``caller`` is not the entry point
        """
        caller = normalize_address(caller)
        if caller != self.account.entry_point:
            logger.warning(
                "validate_user_op called by non entry point",
                extra={
                    "event": "account.authorization_denied",
                    "account": short(self.account.address),
                    "operation": "validate_user_op",
                    "caller": short(caller),
                },
            )
            raise AuthorizationDenied(
                f"Caller {caller} is not the entry point",
                details={"caller": caller, "operation": "validate_user_op"},
            )

        with self.account.operation("validate_user_op", caller, b"", hooked=False):
            validator, inner_signature = self.select_validator(user_op.signature)
            if validator is None:
                result = SIG_VALIDATION_FAILED
            else:
                forwarded = dataclasses.replace(user_op, signature=inner_signature)
                result = self.account.ledger.invoke(
                    self.account.address, validator, "validate_user_op", forwarded, user_op_hash
                )

            if missing_account_funds > 0:
                self.account.ledger.transfer(self.account.address, caller, missing_account_funds)

        logger.info(
            "User operation validated",
            extra={
                "event": "account.user_op_validated",
                "account": short(self.account.address),
                "validator": short(validator) if validator else "none",
                "result": result,
            },
        )
        return result

    def is_valid_signature(self, caller: str, hash_: bytes, signature: bytes) -> bytes:
        """
        ERC-1271 check forwarded in a read-only frame.

        ``caller`` reaches the validator as ``sender``. Any state write by the
        validator raises StaticCallViolation.

        Returns:
            ERC1271_MAGIC_VALUE if the validator accepts, else ERC1271_INVALID
        """
        validator, inner_signature = self.select_validator(signature)
        if validator is None:
            return ERC1271_INVALID

        try:
            result = self.account.ledger.invoke(
                self.account.address,
                validator,
                "is_valid_signature_with_sender",
                normalize_address(caller),
                bytes(hash_),
                inner_signature,
                static=True,
            )
        except VMError as e:
            logger.warning(
                "Signature validation call failed",
                extra={
                    "event": "account.signature_check_failed",
                    "account": short(self.account.address),
                    "validator": short(validator),
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            raise
        return ERC1271_MAGIC_VALUE if result == ERC1271_MAGIC_VALUE else ERC1271_INVALID
