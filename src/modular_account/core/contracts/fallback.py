"""
Fallback dispatcher.

Calls the account does not recognise are forwarded to the single installed
fallback module as a normal call (the handler runs against its own storage).
The account is the immediate caller of the handler, so the original caller
is appended to the payload as a trailing 20-byte address; handlers that do
their own authorization must read it with ``split_original_caller``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..addresses import normalize_address, short
from ..exceptions import AuthorizationDenied, UnsupportedOperation
from .types import append_original_caller

if TYPE_CHECKING:
    from .account import ModularAccount

logger = logging.getLogger(__name__)


class FallbackDispatcher:
    """Forwards unmatched calls to the installed fallback handler."""

    def __init__(self, account: "ModularAccount") -> None:
        self.account = account

    def fallback(self, caller: str, data: bytes, value: int = 0, static: bool = False) -> bytes:
        """
        Forward ``data`` from ``caller`` to the fallback handler.

        ``value`` is the native value that came with the call. The hook sees
        it in its pre-check; the funds stay with the account and the handler
        is called without value. Read-only (``static``) forwards skip the
        hook chain; they cannot change state.

        Raises:
            AuthorizationDenied: The policy rejects ``caller``
            UnsupportedOperation: No fallback handler is installed
        """
        caller = normalize_address(caller)
        data = bytes(data)
        if not self.account.policy.authorize_fallback(self.account, caller, data):
            logger.warning(
                "Fallback call rejected by policy",
                extra={
                    "event": "account.authorization_denied",
                    "account": short(self.account.address),
                    "operation": "fallback",
                    "caller": short(caller),
                },
            )
            raise AuthorizationDenied(
                f"Caller {caller} may not use the fallback handler",
                details={"caller": caller, "operation": "fallback"},
            )

        handler = self.account.registry.active_fallback
        if handler is None:
            raise UnsupportedOperation(
                "No fallback handler installed",
                details={"selector": data[:4].hex()},
            )

        forwarded = append_original_caller(data, caller)
        if static:
            return self.account.ledger.static_call(self.account.address, handler, forwarded)

        with self.account.operation("fallback", caller, data, value=value):
            result = self.account.ledger.call(self.account.address, handler, 0, forwarded)

        logger.debug(
            "Fallback call forwarded",
            extra={
                "event": "account.fallback_forwarded",
                "account": short(self.account.address),
                "handler": short(handler),
                "caller": short(caller),
                "value": value,
                "selector": data[:4].hex(),
            },
        )
        return result
