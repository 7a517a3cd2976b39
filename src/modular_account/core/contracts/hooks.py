"""
Hook chain.

Wraps mutating account operations with the installed hook's checks:

    with account.hooks.around(caller, value, payload):
        ...  # operation body

``pre_check`` completes before the body starts; ``post_check`` runs after the
body returned and receives exactly the hook data its own ``pre_check``
produced. The context is a local of the wrapped call, so nested operations
each carry their own. If the body raises, ``post_check`` is not reached and
the surrounding atomic scope discards everything.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional, TYPE_CHECKING

from ..addresses import normalize_address, short
from ..exceptions import HookRejected, VMError
from .types import HookContext

if TYPE_CHECKING:
    from .account import ModularAccount

logger = logging.getLogger(__name__)


class HookChain:
    """Pre/post checks through the account's single optional hook."""

    def __init__(self, account: "ModularAccount") -> None:
        self.account = account

    @property
    def active_hook(self) -> Optional[str]:
        return self.account.registry.active_hook

    def pre_check(self, caller: str, value: int, payload: bytes) -> Optional[HookContext]:
        """
        Run the active hook's pre-check.

        Returns:
            The context to hand to ``post_check``, or None when no hook is installed

        Raises:
            HookRejected: The hook's pre-check terminated abnormally or
                returned something other than bytes
        """
        hook = self.active_hook
        if hook is None:
            return None

        caller = normalize_address(caller)
        try:
            hook_data = self.account.ledger.invoke(
                self.account.address, hook, "pre_check", caller, value, bytes(payload)
            )
        except VMError as e:
            logger.warning(
                "Hook pre-check rejected operation",
                extra={
                    "event": "hook.pre_check_rejected",
                    "account": short(self.account.address),
                    "hook": short(hook),
                    "caller": short(caller),
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            raise HookRejected(
                f"Hook {hook} pre-check failed: {e}",
                details={"hook": hook, "phase": "pre_check"},
            ) from e

        if not isinstance(hook_data, bytes):
            logger.warning(
                "Hook pre-check returned malformed hook data",
                extra={
                    "event": "hook.pre_check_malformed",
                    "account": short(self.account.address),
                    "hook": short(hook),
                    "data_type": type(hook_data).__name__,
                },
            )
            raise HookRejected(
                f"Hook {hook} pre-check returned {type(hook_data).__name__}, expected bytes",
                details={"hook": hook, "phase": "pre_check"},
            )

        return HookContext(
            hook=hook,
            caller=caller,
            payload=bytes(payload),
            value=value,
            hook_data=hook_data,
        )

    def post_check(self, context: Optional[HookContext]) -> None:
        """
        Run the post-check of the hook that produced ``context``.

        Raises:
            HookRejected: The post-check terminated abnormally or returned false
        """
        if context is None:
            return

        try:
            accepted = self.account.ledger.invoke(
                self.account.address, context.hook, "post_check", context.hook_data
            )
        except VMError as e:
            logger.warning(
                "Hook post-check failed",
                extra={
                    "event": "hook.post_check_failed",
                    "account": short(self.account.address),
                    "hook": short(context.hook),
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            raise HookRejected(
                f"Hook {context.hook} post-check failed: {e}",
                details={"hook": context.hook, "phase": "post_check"},
            ) from e

        if not accepted:
            logger.warning(
                "Hook post-check rejected operation",
                extra={
                    "event": "hook.post_check_rejected",
                    "account": short(self.account.address),
                    "hook": short(context.hook),
                },
            )
            raise HookRejected(
                f"Hook {context.hook} post-check rejected the operation",
                details={"hook": context.hook, "phase": "post_check"},
            )

    @contextmanager
    def around(
        self,
        caller: str,
        value: int,
        payload: bytes,
        enabled: bool = True,
    ) -> Iterator[Optional[HookContext]]:
        context = self.pre_check(caller, value, payload) if enabled else None
        yield context
        self.post_check(context)
