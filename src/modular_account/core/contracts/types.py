"""
Shared types for the modular account.

- Module type ids and install records
- Execution requests and their byte encodings
- Hook call contexts
- Account events
- The validator-selection envelope and original-caller suffix codecs
- Function selectors and interface ids for capability discovery
"""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass, field
from enum import IntEnum
from functools import reduce
from typing import Dict, Iterable, List, Optional, Tuple

from ..addresses import (
    ADDRESS_BYTES,
    address_from_bytes,
    address_to_bytes,
    normalize_address,
)
from ..exceptions import InvalidModuleTypeError

# ERC-4337 validation results
SIG_VALIDATION_SUCCESS = 0
SIG_VALIDATION_FAILED = 1

# ERC-1271 return values
ERC1271_MAGIC_VALUE = bytes.fromhex("1626ba7e")
ERC1271_INVALID = bytes.fromhex("ffffffff")

ACCOUNT_ID = "modular-account.core.v1"


class ModuleType(IntEnum):
    """Stable module type ids. A module may declare several."""

    VALIDATOR = 1
    EXECUTOR = 2
    FALLBACK = 3
    HOOK = 4

    @classmethod
    def parse(cls, value: int) -> "ModuleType":
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            raise InvalidModuleTypeError(
                f"Unknown module type id: {value!r}", details={"type_id": value}
            ) from None

    @property
    def is_singleton(self) -> bool:
        return self in (ModuleType.FALLBACK, ModuleType.HOOK)


@dataclass
class ModuleRecord:
    """Install record for one (type, module) pair."""

    module: str
    module_type: ModuleType
    init_data: bytes = b""
    installed_at: float = field(default_factory=time.time)
    installed: bool = True


@dataclass(frozen=True)
class Execution:
    """A single call request: ``value`` sent to ``target`` with ``data``."""

    target: str
    value: int = 0
    data: bytes = b""

    def __post_init__(self) -> None:
        object.__setattr__(self, "target", normalize_address(self.target))
        if not isinstance(self.value, int) or self.value < 0:
            raise ValueError(f"Execution value must be a non-negative int, got {self.value!r}")
        object.__setattr__(self, "data", bytes(self.data))


@dataclass
class HookContext:
    """State carried from a hook's pre-check to its post-check for one call."""

    hook: str
    caller: str
    payload: bytes
    value: int = 0
    hook_data: bytes = b""


@dataclass
class ModuleEvent:
    """An install/uninstall event emitted by the account."""

    event_type: str  # "ModuleInstalled" or "ModuleUninstalled"
    module_type: ModuleType
    module: str
    forced: bool = False
    timestamp: float = field(default_factory=time.time)

    @property
    def name(self) -> str:
        """Type-specific name, e.g. ``InstallValidator``."""
        verb = "Install" if self.event_type == "ModuleInstalled" else "Uninstall"
        return f"{verb}{self.module_type.name.capitalize()}"


# ==================== Execution encoding ====================

CALLTYPE_SINGLE = 0x00
CALLTYPE_BATCH = 0x01
CALLTYPE_STATIC = 0xFE
CALLTYPE_DELEGATECALL = 0xFF

EXECTYPE_DEFAULT = 0x00
EXECTYPE_TRY = 0x01


@dataclass(frozen=True)
class ExecutionMode:
    """Call type and exec type packed into a 32-byte mode word."""

    call_type: int = CALLTYPE_SINGLE
    exec_type: int = EXECTYPE_DEFAULT

    def encode(self) -> bytes:
        return bytes([self.call_type, self.exec_type]) + b"\x00" * 30

    @classmethod
    def decode(cls, raw: bytes) -> "ExecutionMode":
        if len(raw) != 32:
            raise ValueError(f"Execution mode must be 32 bytes, got {len(raw)}")
        return cls(call_type=raw[0], exec_type=raw[1])


def encode_single_execution(target: str, value: int = 0, data: bytes = b"") -> bytes:
    """Packed ``target(20) || value(32) || data``."""
    return address_to_bytes(target) + value.to_bytes(32, "big") + bytes(data)


def decode_single_execution(raw: bytes) -> Execution:
    if len(raw) < ADDRESS_BYTES + 32:
        raise ValueError("Single execution payload too short")
    target = address_from_bytes(raw[:ADDRESS_BYTES])
    value = int.from_bytes(raw[ADDRESS_BYTES:ADDRESS_BYTES + 32], "big")
    return Execution(target=target, value=value, data=raw[ADDRESS_BYTES + 32:])


def encode_batch_executions(executions: Iterable[Execution]) -> bytes:
    """``count(32)`` followed by ``target(20) || value(32) || len(32) || data`` per entry."""
    executions = list(executions)
    out = len(executions).to_bytes(32, "big")
    for execution in executions:
        out += (
            address_to_bytes(execution.target)
            + execution.value.to_bytes(32, "big")
            + len(execution.data).to_bytes(32, "big")
            + execution.data
        )
    return out


def decode_batch_executions(raw: bytes) -> List[Execution]:
    if len(raw) < 32:
        raise ValueError("Batch payload too short")
    count = int.from_bytes(raw[:32], "big")
    offset = 32
    executions: List[Execution] = []
    for index in range(count):
        header_end = offset + ADDRESS_BYTES + 64
        if len(raw) < header_end:
            raise ValueError(f"Batch entry {index} truncated")
        target = address_from_bytes(raw[offset:offset + ADDRESS_BYTES])
        value = int.from_bytes(raw[offset + ADDRESS_BYTES:offset + ADDRESS_BYTES + 32], "big")
        length = int.from_bytes(raw[offset + ADDRESS_BYTES + 32:header_end], "big")
        if len(raw) < header_end + length:
            raise ValueError(f"Batch entry {index} data truncated")
        executions.append(Execution(target, value, raw[header_end:header_end + length]))
        offset = header_end + length
    if offset != len(raw):
        raise ValueError("Trailing bytes after batch payload")
    return executions


# ==================== Selection envelope ====================

# Leading magic marking validator-selection metadata in signatures and payloads
SELECTION_MAGIC = bytes.fromhex("7579a11d")
SELECTION_ENVELOPE_BYTES = len(SELECTION_MAGIC) + ADDRESS_BYTES


def encode_selection_envelope(validator: str, payload: bytes) -> bytes:
    return SELECTION_MAGIC + address_to_bytes(validator) + bytes(payload)


def strip_selection_metadata(data: bytes) -> Tuple[Optional[str], bytes]:
    """
    Split validator-selection metadata off ``data``.

    Returns:
        (validator address or None, payload without the envelope)
    """
    data = bytes(data)
    if len(data) >= SELECTION_ENVELOPE_BYTES and data.startswith(SELECTION_MAGIC):
        validator = address_from_bytes(data[len(SELECTION_MAGIC):SELECTION_ENVELOPE_BYTES])
        return validator, data[SELECTION_ENVELOPE_BYTES:]
    return None, data


# ==================== Original caller suffix ====================


def append_original_caller(data: bytes, caller: str) -> bytes:
    """Forwarded fallback payload: ``data || caller(20)``."""
    return bytes(data) + address_to_bytes(caller)


def split_original_caller(data: bytes) -> Tuple[bytes, str]:
    """Inverse of ``append_original_caller``; fallback handlers read the sender here."""
    if len(data) < ADDRESS_BYTES:
        raise ValueError("Forwarded payload missing original caller")
    return data[:-ADDRESS_BYTES], address_from_bytes(data[-ADDRESS_BYTES:])


# ==================== Capability discovery ====================


def function_selector(signature: str) -> bytes:
    return hashlib.sha3_256(signature.encode()).digest()[:4]


def interface_id(signatures: Iterable[str]) -> bytes:
    selectors = [int.from_bytes(function_selector(sig), "big") for sig in signatures]
    return reduce(lambda a, b: a ^ b, selectors, 0).to_bytes(4, "big")


INTERFACE_SIGNATURES: Dict[str, Tuple[str, ...]] = {
    "IERC165": ("supportsInterface(bytes4)",),
    "IERC1271": ("isValidSignature(bytes32,bytes)",),
    "IAccount": ("validateUserOp(PackedUserOperation,bytes32,uint256)",),
    "IAccountExecute": (
        "execute(address,uint256,bytes)",
        "executeBatch(Execution[])",
        "execute(bytes32,bytes)",
    ),
    "IExecutorExecute": (
        "executeFromExecutor(address,uint256,bytes)",
        "executeBatchFromExecutor(Execution[])",
    ),
    "IDelegateExecute": (
        "executeDelegateCall(address,bytes)",
        "executeDelegateCallFromExecutor(address,bytes)",
    ),
    "IAccountConfig": (
        "installModule(uint256,address,bytes)",
        "uninstallModule(uint256,address,bytes)",
        "isModuleInstalled(uint256,address,bytes)",
        "supportsModule(uint256)",
        "supportsExecutionMode(bytes32)",
        "accountId()",
    ),
    "IFallback": ("fallback(bytes)",),
}

INTERFACE_IDS: Dict[str, bytes] = {
    name: interface_id(signatures) for name, signatures in INTERFACE_SIGNATURES.items()
}


# ==================== Account calldata ====================

ACCOUNT_SELECTORS: Dict[str, bytes] = {
    "execute": function_selector("execute(address,uint256,bytes)"),
    "executeBatch": function_selector("executeBatch(Execution[])"),
    "executeWithMode": function_selector("execute(bytes32,bytes)"),
    "executeFromExecutor": function_selector("executeFromExecutor(address,uint256,bytes)"),
    "executeBatchFromExecutor": function_selector("executeBatchFromExecutor(Execution[])"),
    "executeDelegateCall": function_selector("executeDelegateCall(address,bytes)"),
    "executeDelegateCallFromExecutor": function_selector(
        "executeDelegateCallFromExecutor(address,bytes)"
    ),
    "installModule": function_selector("installModule(uint256,address,bytes)"),
    "uninstallModule": function_selector("uninstallModule(uint256,address,bytes)"),
}


# Read-only account calls, answered without hooks and allowed in read-only frames
VIEW_SELECTORS: Dict[str, bytes] = {
    "isValidSignature": function_selector("isValidSignature(bytes32,bytes)"),
    "supportsInterface": function_selector("supportsInterface(bytes4)"),
}


def encode_is_valid_signature_call(hash_: bytes, signature: bytes) -> bytes:
    """Calldata for ERC-1271 ``isValidSignature``: ``hash(32) || signature``."""
    if len(hash_) != 32:
        raise ValueError(f"Hash must be 32 bytes, got {len(hash_)}")
    return VIEW_SELECTORS["isValidSignature"] + bytes(hash_) + bytes(signature)


def decode_is_valid_signature_call(body: bytes) -> Tuple[bytes, bytes]:
    if len(body) < 32:
        raise ValueError("isValidSignature payload too short")
    return body[:32], body[32:]


def encode_supports_interface_call(interface: bytes) -> bytes:
    if len(interface) != 4:
        raise ValueError(f"Interface id must be 4 bytes, got {len(interface)}")
    return VIEW_SELECTORS["supportsInterface"] + bytes(interface)


def encode_bool(value: bool) -> bytes:
    return int(bool(value)).to_bytes(32, "big")


def encode_execute_call(target: str, value: int = 0, data: bytes = b"") -> bytes:
    return ACCOUNT_SELECTORS["execute"] + encode_single_execution(target, value, data)


def encode_execute_batch_call(executions: Iterable[Execution]) -> bytes:
    return ACCOUNT_SELECTORS["executeBatch"] + encode_batch_executions(executions)


def encode_delegate_call(target: str, data: bytes = b"", from_executor: bool = False) -> bytes:
    name = "executeDelegateCallFromExecutor" if from_executor else "executeDelegateCall"
    return ACCOUNT_SELECTORS[name] + address_to_bytes(target) + bytes(data)


def decode_delegate_call(body: bytes) -> Tuple[str, bytes]:
    """Inverse of ``encode_delegate_call`` without the selector: ``target(20) || data``."""
    if len(body) < ADDRESS_BYTES:
        raise ValueError("Delegate call payload too short")
    return address_from_bytes(body[:ADDRESS_BYTES]), body[ADDRESS_BYTES:]


def encode_module_call(name: str, module_type: int, module: str, data: bytes = b"") -> bytes:
    """Calldata for ``installModule``/``uninstallModule``."""
    return (
        ACCOUNT_SELECTORS[name]
        + int(module_type).to_bytes(32, "big")
        + address_to_bytes(module)
        + bytes(data)
    )


def decode_module_call(body: bytes) -> Tuple[int, str, bytes]:
    if len(body) < 32 + ADDRESS_BYTES:
        raise ValueError("Module call payload too short")
    module_type = int.from_bytes(body[:32], "big")
    module = address_from_bytes(body[32:32 + ADDRESS_BYTES])
    return module_type, module, body[32 + ADDRESS_BYTES:]


def encode_results(results: Iterable[bytes]) -> bytes:
    """Ordered return payloads: ``count(32)`` then ``len(32) || data`` each."""
    results = list(results)
    out = len(results).to_bytes(32, "big")
    for result in results:
        out += len(result).to_bytes(32, "big") + bytes(result)
    return out


def decode_results(raw: bytes) -> List[bytes]:
    count = int.from_bytes(raw[:32], "big")
    offset = 32
    results: List[bytes] = []
    for _ in range(count):
        length = int.from_bytes(raw[offset:offset + 32], "big")
        results.append(raw[offset + 32:offset + 32 + length])
        offset += 32 + length
    return results
