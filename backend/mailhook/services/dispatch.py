"""
Dispatch router.

Chooses exactly one handler per delivery from the local part of the
destination address:

    support@acme.com              -> "support"
    Support+urgent@acme.com       -> "support"
    "Sales Desk" <sales@acme.com> -> "sales"

Unmatched addresses go to the default handler, which by default reports a
terminal "unknown_address" failure.

Handlers take a Delivery and return a HandlerResult (or None for success).
They may be plain functions, which run in a worker thread, or coroutine
functions, which run on the event loop. A handler signals a permanent
failure by returning HandlerResult.terminal(...) or raising
TerminalHandlerError; any other exception is treated as transient.
"""

import asyncio
import inspect
import logging
import re
from typing import Awaitable, Callable, Optional, Union

from mailhook.models.delivery import Delivery, HandlerResult

logger = logging.getLogger(__name__)

DEFAULT_ROUTE = "default"

Handler = Callable[
    [Delivery],
    Union[Optional[HandlerResult], Awaitable[Optional[HandlerResult]]],
]


class TerminalHandlerError(Exception):
    """Raised by a handler when retrying the delivery can never succeed."""


def routing_key(address: str) -> str:
    """
    Derive the routing key from an address.

    Strips a display-name wrapper, drops the domain and any "+tag"
    sub-address, and lower-cases the result.
    """
    match = re.search(r"<([^>]+)>", address)
    addr = match.group(1) if match else address.strip()
    local_part = addr.split("@", 1)[0]
    return local_part.split("+", 1)[0].strip().lower()


def reject_unknown_address(delivery: Delivery) -> HandlerResult:
    """Default handler: no mailbox is registered for this address."""
    return HandlerResult.terminal(f"unknown_address: {delivery.address}")


def _is_async(handler: Handler) -> bool:
    return inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(
        getattr(handler, "__call__", None)
    )


async def invoke_handler(handler: Handler, delivery: Delivery) -> HandlerResult:
    """Run one handler and normalize whatever it does into a HandlerResult."""
    try:
        if _is_async(handler):
            result = await handler(delivery)
        else:
            result = await asyncio.to_thread(handler, delivery)
    except TerminalHandlerError as exc:
        return HandlerResult.terminal(str(exc) or type(exc).__name__)
    except Exception as exc:
        logger.exception(f"Handler failed for delivery {delivery.id!r}")
        return HandlerResult.retryable(f"{type(exc).__name__}: {exc}")

    if result is None:
        return HandlerResult.success()
    if not isinstance(result, HandlerResult):
        logger.error(
            f"Handler for delivery {delivery.id!r} returned {type(result).__name__}, "
            "expected HandlerResult or None"
        )
        return HandlerResult.retryable("invalid_handler_result")
    return result


class DispatchRouter:
    """
    Prefix -> handler table keyed by the address local part.

    Example:
        router = DispatchRouter()

        @router.handler("support")
        async def open_ticket(delivery):
            ...

        result = await router.route(delivery)
    """

    def __init__(self, default_handler: Optional[Handler] = None):
        self._handlers: dict[str, Handler] = {}
        self._default: Handler = default_handler or reject_unknown_address

    def register(self, prefix: str, handler: Handler) -> None:
        """Register a handler for addresses whose local part equals prefix (case-insensitive)."""
        key = prefix.strip().lower()
        if not key or "@" in key:
            raise ValueError(f"Invalid routing prefix {prefix!r}")
        self._handlers[key] = handler
        logger.info(f"Registered handler for mailbox: {key}")

    def handler(self, prefix: str) -> Callable[[Handler], Handler]:
        """Decorator form of register()."""
        def decorator(func: Handler) -> Handler:
            self.register(prefix, func)
            return func
        return decorator

    def set_default(self, handler: Handler) -> None:
        self._default = handler

    @property
    def prefixes(self) -> list[str]:
        return sorted(self._handlers)

    def resolve(self, address: str) -> tuple[str, Handler]:
        """Return (route name, handler) for an address."""
        key = routing_key(address)
        handler = self._handlers.get(key)
        if handler is None:
            return DEFAULT_ROUTE, self._default
        return key, handler

    async def route(self, delivery: Delivery) -> HandlerResult:
        """Invoke exactly one handler for the delivery."""
        _, handler = self.resolve(delivery.address)
        return await invoke_handler(handler, delivery)
