"""
Exception hierarchy for the modular account core.

Provides typed exceptions for account operations so that callers can tell an
authorization failure from a failing module, a rejected hook check or a failed
execution, while still being able to catch everything with one base class.

Every failure unwinds the whole outer operation: none of these errors are
retried and none leave partial state behind.
"""

from __future__ import annotations
from typing import Optional, Any, Dict


class AccountError(Exception):
    """Base exception for all modular-account errors.

    Attributes:
        message: Human-readable error description
        details: Additional context about the error
        recoverable: Whether the operation can be retried
    """

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable


# ==================== Host / VM Errors ====================


class VMError(AccountError):
    """Raised when execution on the host ledger fails."""
    pass


class RevertError(VMError):
    """Raised when contract code terminates abnormally."""

    def __init__(
        self,
        message: str,
        reason: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason


class StaticCallViolation(VMError):
    """Raised when code running in a read-only frame tries to mutate state."""
    pass


class ContractNotFoundError(VMError):
    """Raised when a call targets an address with no deployed code."""
    pass


class InsufficientBalanceError(VMError):
    """Raised when a value transfer exceeds the sender's balance."""
    pass


# ==================== Modular Account Errors ====================


class ModularAccountError(VMError):
    """Base class for errors raised by the account itself."""
    pass


class AuthorizationDenied(ModularAccountError):
    """Raised when the caller lacks the role required by an entry point.

    Roles: entry point or self, installed executor, configuration policy holder.
    """
    pass


class ModuleLifecycleFailed(ModularAccountError):
    """Raised when a module's on_install/on_uninstall terminated abnormally."""
    pass


class HookRejected(ModularAccountError):
    """Raised when pre_check/post_check failed or post_check returned false."""
    pass


class ExecutionFailed(ModularAccountError):
    """Raised when a call inside a single or batched execution failed."""

    def __init__(
        self,
        message: str,
        index: Optional[int] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.index = index


class UnsupportedOperation(ModularAccountError):
    """Raised by surfaces the account deliberately does not implement."""
    pass


class ReentrancyError(ModularAccountError):
    """Raised when an entry point is re-entered where that is not allowed."""
    pass


class InvalidModuleTypeError(ModularAccountError):
    """Raised for unknown type ids or modules that do not declare the type."""
    pass


class ModuleAlreadyInstalledError(ModularAccountError):
    """Raised when a module (or singleton slot) is already installed."""
    pass


class ModuleNotInstalledError(ModularAccountError):
    """Raised when uninstalling a module that is not installed for the type."""
    pass


class LastValidatorRemovalError(ModularAccountError):
    """Raised when uninstalling the only remaining validator."""
    pass


# ==================== Configuration Errors ====================


class ConfigurationError(AccountError):
    """Raised when account configuration is invalid."""
    recoverable = False


# ==================== Utility Functions ====================


def get_error_context(exc: Exception) -> Dict[str, Any]:
    """Extract error context from an exception for logging.

    Args:
        exc: The exception to extract context from

    Returns:
        Dictionary containing error type, message, and any additional details
    """
    context: Dict[str, Any] = {
        "error_type": type(exc).__name__,
        "error_message": str(exc),
    }

    if isinstance(exc, AccountError):
        context["recoverable"] = exc.recoverable
        if exc.details:
            context["details"] = exc.details

    if isinstance(exc, RevertError) and exc.reason:
        context["revert_reason"] = exc.reason

    if isinstance(exc, ExecutionFailed) and exc.index is not None:
        context["failed_index"] = exc.index

    if exc.__cause__ is not None:
        context["cause"] = f"{type(exc.__cause__).__name__}: {exc.__cause__}"

    return context
