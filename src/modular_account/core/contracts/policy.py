"""
Authorization policies.

A policy decides who may reconfigure the account, who may reach the fallback
handler and who may force-remove a module. The account always consults its
policy; which callers pass is the policy's business.

Self-calls: with ``allow_self_config`` enabled the account itself passes the
configuration check. Any installed executor can make the account call itself
(``execute_from_executor`` targeting the account), so enabling self
configuration lets every executor reconfigure the account. Accounts that
install third-party executors should disable it.
"""

from __future__ import annotations

from typing import Iterable, TYPE_CHECKING

from ..addresses import normalize_address

if TYPE_CHECKING:
    from .account import ModularAccount


class AuthorizationPolicy:
    """Entry point or self for configuration; anyone for the fallback handler."""

    def is_entry_point_or_self(self, account: "ModularAccount", caller: str) -> bool:
        caller = normalize_address(caller)
        if caller == account.entry_point:
            return True
        return account.config.allow_self_config and caller == account.address

    def authorize_config(self, account: "ModularAccount", caller: str) -> bool:
        return self.is_entry_point_or_self(account, caller)

    def authorize_fallback(self, account: "ModularAccount", caller: str, data: bytes) -> bool:
        return True

    def authorize_forced_removal(self, account: "ModularAccount", caller: str) -> bool:
        return self.authorize_config(account, caller)


class OwnerPolicy(AuthorizationPolicy):
    """
    Entry point, self, or one of a fixed set of owner addresses.

    Forced removal is reserved to owners, so an entry point operation alone
    cannot bypass a module's uninstall callback.
    """

    def __init__(self, owners: Iterable[str], restrict_fallback: bool = False) -> None:
        self.owners = frozenset(normalize_address(owner) for owner in owners)
        if not self.owners:
            raise ValueError("OwnerPolicy requires at least one owner")
        self.restrict_fallback = restrict_fallback

    def authorize_config(self, account: "ModularAccount", caller: str) -> bool:
        if normalize_address(caller) in self.owners:
            return True
        return super().authorize_config(account, caller)

    def authorize_fallback(self, account: "ModularAccount", caller: str, data: bytes) -> bool:
        if not self.restrict_fallback:
            return True
        return self.authorize_config(account, caller)

    def authorize_forced_removal(self, account: "ModularAccount", caller: str) -> bool:
        return normalize_address(caller) in self.owners
