"""Async hook/filter registry for extending the image pipeline.

Actions run callbacks for their side effects; filters thread a value through
each callback and return the result.

Usage:
    from imagepipe.lib.hooks import action, filter, hooks

    @action(AFTER_IMAGE_UPLOAD)
    async def warm_cdn(outcome):
        ...

    @filter(IMAGE_STORAGE_PATH)
    def tenant_prefix(path, request):
        return f"tenant-a/{path}"

    await hooks.do_action(AFTER_IMAGE_UPLOAD, outcome)
    path = await hooks.apply_filters(IMAGE_STORAGE_PATH, path, request)
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

T = TypeVar("T")


@dataclass(order=True)
class HookHandler:
    """A registered hook handler with priority."""

    priority: int
    callback: Callable = field(compare=False)

    async def call(self, *args: Any, **kwargs: Any) -> Any:
        result = self.callback(*args, **kwargs)
        if asyncio.iscoroutine(result):
            return await result
        return result


class HookRegistry:
    """Central registry for actions and filters."""

    def __init__(self) -> None:
        self._actions: dict[str, list[HookHandler]] = defaultdict(list)
        self._filters: dict[str, list[HookHandler]] = defaultdict(list)

    def add_action(self, hook_name: str, callback: Callable[..., Any], priority: int = 10) -> None:
        """Register an action callback. Lower priorities run first."""
        self._actions[hook_name].append(HookHandler(priority=priority, callback=callback))
        self._actions[hook_name].sort()

    def add_filter(self, hook_name: str, callback: Callable[..., T], priority: int = 10) -> None:
        """Register a filter callback. Lower priorities run first."""
        self._filters[hook_name].append(HookHandler(priority=priority, callback=callback))
        self._filters[hook_name].sort()

    def remove_action(self, hook_name: str, callback: Callable[..., Any]) -> bool:
        return self._remove(self._actions, hook_name, callback)

    def remove_filter(self, hook_name: str, callback: Callable[..., Any]) -> bool:
        return self._remove(self._filters, hook_name, callback)

    @staticmethod
    def _remove(table: dict[str, list[HookHandler]], hook_name: str, callback: Callable) -> bool:
        handlers = table.get(hook_name, [])
        for i, handler in enumerate(handlers):
            if handler.callback is callback:
                handlers.pop(i)
                return True
        return False

    def has_action(self, hook_name: str) -> bool:
        return bool(self._actions.get(hook_name))

    def has_filter(self, hook_name: str) -> bool:
        return bool(self._filters.get(hook_name))

    async def do_action(self, hook_name: str, *args: Any, **kwargs: Any) -> None:
        """Execute all registered action callbacks in priority order."""
        from imagepipe.lib.observability import span

        with span(f"hook.action:{hook_name}", hook_name=hook_name):
            for handler in self._actions.get(hook_name, []):
                await handler.call(*args, **kwargs)

    async def apply_filters(self, hook_name: str, value: T, *args: Any, **kwargs: Any) -> T:
        """Pass *value* through every registered filter and return the result."""
        from imagepipe.lib.observability import span

        with span(f"hook.filter:{hook_name}", hook_name=hook_name):
            for handler in self._filters.get(hook_name, []):
                value = await handler.call(value, *args, **kwargs)
            return value

    def clear(self) -> None:
        self._actions.clear()
        self._filters.clear()


hooks = HookRegistry()


def action(hook_name: str, priority: int = 10) -> Callable[[Callable], Callable]:
    """Decorator registering a function as an action handler."""

    def decorator(func: Callable) -> Callable:
        hooks.add_action(hook_name, func, priority)
        return func

    return decorator


def filter(hook_name: str, priority: int = 10) -> Callable[[Callable], Callable]:
    """Decorator registering a function as a filter handler."""

    def decorator(func: Callable) -> Callable:
        hooks.add_filter(hook_name, func, priority)
        return func

    return decorator


# Actions
BEFORE_IMAGE_UPLOAD = "before_image_upload"
AFTER_IMAGE_UPLOAD = "after_image_upload"
AFTER_IMAGE_DELETE = "after_image_delete"
AFTER_PRIMARY_CHANGED = "after_primary_changed"
IMAGE_ORPHANED = "image_orphaned"

# Filters
IMAGE_UPLOAD_DATA = "image_upload_data"
IMAGE_STORAGE_PATH = "image_storage_path"
