"""
Modular Account Configuration

All settings are read from environment variables with the ``MODACCT_`` prefix.
Module-level constants hold the process defaults; ``AccountConfig`` bundles the
per-account view of them so tests and embedders can build accounts with
explicit settings.

SECURITY NOTICE:
- Delegated execution runs foreign code against the account's own state and
  is disabled unless MODACCT_ALLOW_DELEGATE_CALLS=1
- Forced module removal bypasses lifecycle callbacks and hooks and is
  disabled unless MODACCT_ALLOW_FORCED_REMOVAL=1
- Removing the only validator leaves the account unable to validate
  operations; set MODACCT_ALLOW_REMOVING_LAST_VALIDATOR=0 to refuse it
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def _get_bool(env_var: str, default: bool) -> bool:
    raw = os.getenv(env_var, "").strip().lower()
    if not raw:
        return default
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(
        f"{env_var} must be a boolean flag (1/0, true/false), got {raw!r}",
        details={"env_var": env_var, "value": raw},
    )


def _get_int(env_var: str, default: int) -> int:
    raw = os.getenv(env_var, "").strip()
    if not raw:
        return default
    try:
        return int(raw, 0)
    except ValueError as e:
        raise ConfigurationError(
            f"{env_var} must be an integer, got {raw!r}",
            details={"env_var": env_var, "value": raw},
        ) from e


# Same deterministic address the ERC-4337 v0.6 entry point is deployed at
DEFAULT_ENTRY_POINT = "0x5ff137d4b0fdcd49dca30c7cf57e578a026d2789"

ENTRY_POINT_ADDRESS = os.getenv("MODACCT_ENTRY_POINT", DEFAULT_ENTRY_POINT).strip().lower()
CHAIN_ID = _get_int("MODACCT_CHAIN_ID", 1)
ALLOW_DELEGATE_CALLS = _get_bool("MODACCT_ALLOW_DELEGATE_CALLS", False)
ALLOW_SELF_CONFIG = _get_bool("MODACCT_ALLOW_SELF_CONFIG", True)
ALLOW_FORCED_REMOVAL = _get_bool("MODACCT_ALLOW_FORCED_REMOVAL", False)
ALLOW_REMOVING_LAST_VALIDATOR = _get_bool("MODACCT_ALLOW_REMOVING_LAST_VALIDATOR", True)
LOG_LEVEL = os.getenv("MODACCT_LOG_LEVEL", "INFO").strip().upper()
LOG_FILE = os.getenv("MODACCT_LOG_FILE", "").strip() or None
ENVIRONMENT = os.getenv("MODACCT_ENV", "production").strip()


@dataclass(frozen=True)
class AccountConfig:
    """Per-account settings."""

    entry_point_address: str = ENTRY_POINT_ADDRESS
    chain_id: int = CHAIN_ID
    allow_delegate_calls: bool = ALLOW_DELEGATE_CALLS
    allow_self_config: bool = ALLOW_SELF_CONFIG
    allow_forced_removal: bool = ALLOW_FORCED_REMOVAL
    allow_removing_last_validator: bool = ALLOW_REMOVING_LAST_VALIDATOR
    log_level: str = LOG_LEVEL

    def __post_init__(self) -> None:
        entry_point = self.entry_point_address
        if not (
            isinstance(entry_point, str)
            and entry_point.startswith("0x")
            and len(entry_point) == 42
        ):
            raise ConfigurationError(
                f"Invalid entry point address: {entry_point!r}",
                details={"entry_point": entry_point},
            )
        if self.chain_id < 1:
            raise ConfigurationError(
                f"Chain id must be positive, got {self.chain_id}",
                details={"chain_id": self.chain_id},
            )
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigurationError(
                f"Invalid log level: {self.log_level!r}",
                details={"log_level": self.log_level},
            )
        object.__setattr__(self, "entry_point_address", entry_point.lower())

    @classmethod
    def from_env(cls) -> "AccountConfig":
        """Build a config from the current environment, not the import-time one."""
        config = cls(
            entry_point_address=os.getenv("MODACCT_ENTRY_POINT", DEFAULT_ENTRY_POINT).strip(),
            chain_id=_get_int("MODACCT_CHAIN_ID", 1),
            allow_delegate_calls=_get_bool("MODACCT_ALLOW_DELEGATE_CALLS", False),
            allow_self_config=_get_bool("MODACCT_ALLOW_SELF_CONFIG", True),
            allow_forced_removal=_get_bool("MODACCT_ALLOW_FORCED_REMOVAL", False),
            allow_removing_last_validator=_get_bool(
                "MODACCT_ALLOW_REMOVING_LAST_VALIDATOR", True
            ),
            log_level=os.getenv("MODACCT_LOG_LEVEL", "INFO").strip().upper(),
        )
        if config.allow_delegate_calls:
            logger.warning(
                "Delegated execution enabled: target code will run against account state",
                extra={"event": "config.delegate_calls_enabled"},
            )
        if config.allow_forced_removal:
            logger.warning(
                "Forced module removal enabled: callbacks and hooks can be bypassed",
                extra={"event": "config.forced_removal_enabled"},
            )
        return config

    def with_overrides(self, **changes) -> "AccountConfig":
        return replace(self, **changes)
