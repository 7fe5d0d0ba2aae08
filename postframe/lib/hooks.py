"""Action/filter hooks used to connect uploads and the image cache.

Actions run callbacks for their side effects; filters pass a value through
each callback in turn and return the result. Callbacks may be plain
functions or coroutines.

Usage:
    from postframe.lib.hooks import hooks, action

    @action(AFTER_UPLOAD_DELETE)
    async def forget_upload(upload):
        ...

    await hooks.do_action(AFTER_UPLOAD_DELETE, upload)
    widths = await hooks.apply_filters(SRCSET_WIDTHS, [200, 400], upload)
"""

import asyncio
import bisect
import itertools
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

from postframe.lib.observability import span

T = TypeVar("T")

# Actions
BEFORE_UPLOAD_DELETE = "before_upload_delete"
AFTER_UPLOAD_DELETE = "after_upload_delete"
IMAGE_CACHED = "image_cached"

# Filters
SRCSET_WIDTHS = "srcset_widths"

_sequence = itertools.count()


@dataclass(order=True, frozen=True)
class HookHandler:
    """A callback ordered by priority, then by registration order."""

    priority: int
    sequence: int = field(default_factory=lambda: next(_sequence))
    callback: Callable = field(default=None, compare=False)

    async def call(self, *args: Any, **kwargs: Any) -> Any:
        result = self.callback(*args, **kwargs)
        if asyncio.iscoroutine(result):
            result = await result
        return result


def _insert(table: dict[str, list[HookHandler]], hook_name: str, callback: Callable, priority: int) -> None:
    bisect.insort(table[hook_name], HookHandler(priority=priority, callback=callback))


def _discard(table: dict[str, list[HookHandler]], hook_name: str, callback: Callable) -> bool:
    handlers = table.get(hook_name, [])
    for handler in handlers:
        if handler.callback is callback:
            handlers.remove(handler)
            return True
    return False


class HookRegistry:
    """Named actions and filters. Lower priorities run first."""

    def __init__(self) -> None:
        self._actions: dict[str, list[HookHandler]] = defaultdict(list)
        self._filters: dict[str, list[HookHandler]] = defaultdict(list)

    def add_action(self, hook_name: str, callback: Callable[..., Any], priority: int = 10) -> None:
        _insert(self._actions, hook_name, callback, priority)

    def add_filter(self, hook_name: str, callback: Callable[..., T], priority: int = 10) -> None:
        _insert(self._filters, hook_name, callback, priority)

    def remove_action(self, hook_name: str, callback: Callable[..., Any]) -> bool:
        """Unregister *callback*. Returns ``False`` if it was not registered."""
        return _discard(self._actions, hook_name, callback)

    def remove_filter(self, hook_name: str, callback: Callable[..., Any]) -> bool:
        """Unregister *callback*. Returns ``False`` if it was not registered."""
        return _discard(self._filters, hook_name, callback)

    def has_action(self, hook_name: str) -> bool:
        return bool(self._actions.get(hook_name))

    def has_filter(self, hook_name: str) -> bool:
        return bool(self._filters.get(hook_name))

    async def do_action(self, hook_name: str, *args: Any, **kwargs: Any) -> None:
        """Run every action registered under *hook_name*.

        Exceptions from a callback propagate and stop the remaining ones.
        """
        with span(f"hook.action:{hook_name}", hook_name=hook_name):
            for handler in list(self._actions.get(hook_name, [])):
                await handler.call(*args, **kwargs)

    async def apply_filters(self, hook_name: str, value: T, *args: Any, **kwargs: Any) -> T:
        with span(f"hook.filter:{hook_name}", hook_name=hook_name):
            for handler in list(self._filters.get(hook_name, [])):
                value = await handler.call(value, *args, **kwargs)
        return value

    def clear(self) -> None:
        self._actions.clear()
        self._filters.clear()


hooks = HookRegistry()


def action(hook_name: str, priority: int = 10) -> Callable[[Callable], Callable]:
    """Register the decorated function as an action on the global registry."""

    def decorator(func: Callable) -> Callable:
        hooks.add_action(hook_name, func, priority)
        return func

    return decorator


def filter(hook_name: str, priority: int = 10) -> Callable[[Callable], Callable]:
    """Register the decorated function as a filter on the global registry."""

    def decorator(func: Callable) -> Callable:
        hooks.add_filter(hook_name, func, priority)
        return func

    return decorator
