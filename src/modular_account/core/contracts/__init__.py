"""
Modular account contracts.

This module provides:
- ModularAccount: the account, with its registry, hook chain, execution
  router, validator and fallback dispatchers
- Module base classes and reference modules
- EntryPoint and UserOperation for ERC-4337 style processing
- Authorization policies
"""

from .account import ModularAccount
from .entry_point import EntryPoint, ExecutionResult, UserOperation
from .module_registry import ModuleRegistry
from .modules import (
    AllowlistExecutor,
    ECDSAValidator,
    ExecutorModule,
    FallbackModule,
    HookModule,
    Module,
    SpendingLimitHook,
    TokenReceiverFallback,
    ValidatorModule,
)
from .policy import AuthorizationPolicy, OwnerPolicy
from .types import (
    ERC1271_INVALID,
    ERC1271_MAGIC_VALUE,
    SIG_VALIDATION_FAILED,
    SIG_VALIDATION_SUCCESS,
    Execution,
    ExecutionMode,
    ModuleEvent,
    ModuleType,
)

__all__ = [
    "ModularAccount",
    "ModuleRegistry",
    "EntryPoint",
    "ExecutionResult",
    "UserOperation",
    "AuthorizationPolicy",
    "OwnerPolicy",
    "Module",
    "ValidatorModule",
    "ExecutorModule",
    "FallbackModule",
    "HookModule",
    "ECDSAValidator",
    "SpendingLimitHook",
    "AllowlistExecutor",
    "TokenReceiverFallback",
    "Execution",
    "ExecutionMode",
    "ModuleEvent",
    "ModuleType",
    "SIG_VALIDATION_SUCCESS",
    "SIG_VALIDATION_FAILED",
    "ERC1271_MAGIC_VALUE",
    "ERC1271_INVALID",
]
