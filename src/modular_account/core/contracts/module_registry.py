"""
Module registry.

Owns the set of installed modules and their type memberships for one account.
This is the only place install state is written; the account calls ``record``
and ``erase`` after the corresponding lifecycle callback has returned.

Records are keyed by (type, module): installing one module as both validator
and executor creates two independent records with independent lifecycles, and
a query for one type never observes a record of another.
"""

from __future__ import annotations

import copy
from typing import Dict, List, Optional

from ..addresses import normalize_address
from ..exceptions import ModuleAlreadyInstalledError, ModuleNotInstalledError
from .types import ModuleRecord, ModuleType


class ModuleRegistry:
    """Per-type install records; no external calls."""

    def __init__(self) -> None:
        # Dicts keep insertion order, which is install order
        self._records: Dict[ModuleType, Dict[str, ModuleRecord]] = {
            module_type: {} for module_type in ModuleType
        }

    # ==================== Queries ====================

    def is_installed(self, module_type: ModuleType, module: str) -> bool:
        record = self._records[ModuleType(module_type)].get(normalize_address(module))
        return record is not None and record.installed

    def get_record(self, module_type: ModuleType, module: str) -> Optional[ModuleRecord]:
        record = self._records[ModuleType(module_type)].get(normalize_address(module))
        return copy.copy(record) if record else None

    def modules_of(self, module_type: ModuleType) -> List[str]:
        return [
            address
            for address, record in self._records[ModuleType(module_type)].items()
            if record.installed
        ]

    def count(self, module_type: ModuleType) -> int:
        return len(self.modules_of(module_type))

    @property
    def active_hook(self) -> Optional[str]:
        hooks = self.modules_of(ModuleType.HOOK)
        return hooks[0] if hooks else None

    @property
    def active_fallback(self) -> Optional[str]:
        handlers = self.modules_of(ModuleType.FALLBACK)
        return handlers[0] if handlers else None

    # ==================== Mutations ====================

    def check_can_record(self, module_type: ModuleType, module: str) -> None:
        """
        Raises:
            ModuleAlreadyInstalledError: The pair is already recorded, or the
                type is a singleton slot that another module occupies
        """
        module_type = ModuleType(module_type)
        module = normalize_address(module)
        if self.is_installed(module_type, module):
            raise ModuleAlreadyInstalledError(
                f"{module_type.name.lower()} {module} already installed",
                details={"module_type": int(module_type), "module": module},
            )
        if module_type.is_singleton:
            occupant = self.modules_of(module_type)
            if occupant:
                raise ModuleAlreadyInstalledError(
                    f"{module_type.name.lower()} slot occupied by {occupant[0]}",
                    details={
                        "module_type": int(module_type),
                        "module": module,
                        "occupant": occupant[0],
                    },
                )

    def record(self, module_type: ModuleType, module: str, init_data: bytes = b"") -> ModuleRecord:
        """Record ``module`` as installed under ``module_type``."""
        module_type = ModuleType(module_type)
        module = normalize_address(module)
        self.check_can_record(module_type, module)
        record = ModuleRecord(module=module, module_type=module_type, init_data=bytes(init_data))
        self._records[module_type][module] = record
        return copy.copy(record)

    def require_installed(self, module_type: ModuleType, module: str) -> None:
        if not self.is_installed(module_type, module):
            raise ModuleNotInstalledError(
                f"{ModuleType(module_type).name.lower()} {normalize_address(module)} is not installed",
                details={"module_type": int(module_type), "module": normalize_address(module)},
            )

    def erase(self, module_type: ModuleType, module: str) -> ModuleRecord:
        """
        Remove the record of ``module`` under ``module_type``.

        Raises:
            ModuleNotInstalledError: The pair is not recorded
        """
        module_type = ModuleType(module_type)
        module = normalize_address(module)
        self.require_installed(module_type, module)
        record = self._records[module_type].pop(module)
        record.installed = False
        return record

    # ==================== Snapshots ====================

    def snapshot(self) -> Dict[int, Dict[str, ModuleRecord]]:
        return {int(t): copy.deepcopy(records) for t, records in self._records.items()}

    def restore(self, snapshot: Dict[int, Dict[str, ModuleRecord]]) -> None:
        self._records = {
            module_type: copy.deepcopy(snapshot.get(int(module_type), {}))
            for module_type in ModuleType
        }

    def to_dict(self) -> Dict[str, List[str]]:
        return {t.name.lower(): self.modules_of(t) for t in ModuleType}
