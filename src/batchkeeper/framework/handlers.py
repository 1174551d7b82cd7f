from __future__ import annotations

import inspect
import logging
from typing import TYPE_CHECKING, Any

from .exceptions import UnknownCallbackError

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class CallbackHandlerRegistry:
    """Explicit lookup table from callback descriptors to handlers.

    A descriptor is `"target"` or `"target#method"`. The target name is
    looked up in the table; it may map to:

    - a callable, invoked as `handler(status, opts)`;
    - an object (or a class, which is instantiated per invocation), whose
      `method` is invoked, defaulting to `on_{event}`.

    Handlers may be plain functions or coroutines.
    """

    def __init__(self, handlers: dict[str, Any] | None = None) -> None:
        self._handlers: dict[str, Any] = {}
        for name, target in (handlers or {}).items():
            self.register(name, target)

    def register(self, name: str, target: Any) -> None:  # noqa: ANN401
        """Register `target` under the descriptor name `name`.

        Raises:
            ValueError: If the name contains the method separator.

        """
        if "#" in name:
            message = f"handler name must not contain '#': {name}"
            raise ValueError(message)
        self._handlers[name] = target

    def __contains__(self, descriptor: str) -> bool:
        return descriptor.split("#", 1)[0] in self._handlers

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def resolve(self, descriptor: str, event: str) -> Callable[..., Any] | None:
        """Resolve a descriptor to the callable to invoke for `event`.

        Returns:
            The bound callable, or None when the target does not define the
            requested method (the delivery is then a no-op).

        Raises:
            UnknownCallbackError: If the target name is not registered.

        """
        name, _, method = descriptor.partition("#")
        if name not in self._handlers:
            message = f"no callback handler registered for '{name}'"
            raise UnknownCallbackError(message)

        target = self._handlers[name]
        if not method and callable(target) and not inspect.isclass(target):
            return target

        if inspect.isclass(target):
            target = target()
        method = method or f"on_{event}"
        bound = getattr(target, method, None)
        if bound is None:
            logger.debug(
                "callback target does not define method",
                extra={"callback": descriptor, "method": method},
            )
        return bound

    async def invoke(
        self,
        descriptor: str,
        event: str,
        status: Any,  # noqa: ANN401
        opts: dict[str, Any],
    ) -> None:
        """Resolve and invoke a handler, awaiting it when it is a coroutine."""
        handler = self.resolve(descriptor, event)
        if handler is None:
            return
        result = handler(status, opts)
        if inspect.isawaitable(result):
            await result
