"""Handler registration with explicit unregister tokens."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Generic, List, TypeVar

logger = logging.getLogger(__name__)

H = TypeVar("H", bound=Callable[..., Any])

Unregister = Callable[[], None]


class HandlerRegistry(Generic[H]):
    """Ordered set of callbacks; each registration returns its own unregister."""

    def __init__(self, name: str) -> None:
        self._name = name
        self._handlers: List[H] = []

    def add(self, handler: H) -> Unregister:
        self._handlers.append(handler)

        def _unregister() -> None:
            try:
                self._handlers.remove(handler)
            except ValueError:
                pass

        return _unregister

    def clear(self) -> None:
        self._handlers.clear()

    def __len__(self) -> int:
        return len(self._handlers)

    async def emit(self, *args: Any) -> None:
        """Invoke handlers in registration order, awaiting coroutine results."""

        for handler in list(self._handlers):
            try:
                result = handler(*args)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("%s handler failed", self._name)


class Subscriptions:
    """Collects unregister tokens so teardown can detach everything at once."""

    def __init__(self) -> None:
        self._tokens: List[Unregister] = []

    def add(self, token: Unregister) -> Unregister:
        self._tokens.append(token)
        return token

    def detach_all(self) -> None:
        while self._tokens:
            token = self._tokens.pop()
            try:
                token()
            except Exception:
                logger.exception("Failed to detach handler")

    def __len__(self) -> int:
        return len(self._tokens)
