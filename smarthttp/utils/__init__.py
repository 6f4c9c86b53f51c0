"""Provide utilities that should not be aware of git."""
import asyncio
import os
import posixpath
from typing import List, Optional

_os_alt_seps: List[str] = list(
    sep for sep in [os.path.sep, os.path.altsep] if sep is not None and sep != "/"
)


class EventBus:
    """An event bus class for handling and listening to events asynchronously."""

    def __init__(self, logger=None):
        """Initialize the event bus."""
        self._callbacks = {}
        self._logger = logger

    def on(self, event_name, func):
        """Register an event callback."""
        self._callbacks[event_name] = self._callbacks.get(event_name, []) + [func]
        return func

    def once(self, event_name, func):
        """Register an event callback that only runs once."""

        def once_wrapper(*args, **kwargs):
            self.off(event_name, once_wrapper)
            return func(*args, **kwargs)

        return self.on(event_name, once_wrapper)

    def off(self, event_name, func):
        """Remove an event callback."""
        callbacks = self._callbacks.get(event_name, [])
        if func in callbacks:
            callbacks.remove(func)
            if not callbacks:
                del self._callbacks[event_name]

    def emit(self, event_name, data=None):
        """Trigger an event and return a task that completes when all handlers are done."""
        tasks = []
        # copy, handlers registered with `once` remove themselves while we iterate
        for func in list(self._callbacks.get(event_name, [])):
            try:
                result = func(data)
                if asyncio.iscoroutine(result):
                    tasks.append(result)
            except Exception as e:
                if self._logger:
                    self._logger.error(
                        "Error in event callback: %s, %s, error: %s",
                        event_name,
                        func,
                        e,
                    )

        if tasks:
            return asyncio.ensure_future(asyncio.gather(*tasks))
        else:
            fut = asyncio.get_running_loop().create_future()
            fut.set_result(None)
            return fut

    async def wait_for(self, event_name, timeout=None):
        """Wait for the next occurrence of an event and return its data."""
        future = asyncio.get_running_loop().create_future()

        def handler(data):
            if not future.done():
                future.set_result(data)

        self.on(event_name, handler)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            self.off(event_name, handler)
