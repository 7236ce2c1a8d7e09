"""
Event Emitter
*************

A small observer registry used by the device managers and the signer.

Listeners are called in registration order. Listeners returning an awaitable are
awaited by :meth:`EventEmitter.emit_async`; :meth:`EventEmitter.emit` only calls them.
"""

import inspect

from collections import defaultdict
from typing import (
    Any,
    Callable,
    DefaultDict,
    List,
)

Listener = Callable[..., Any]


class EventEmitter(object):
    def __init__(self) -> None:
        self._listeners: DefaultDict[str, List[Listener]] = defaultdict(list)

    def on(self, event: str, listener: Listener) -> 'EventEmitter':
        self._listeners[event].append(listener)
        return self

    def off(self, event: str, listener: Listener) -> 'EventEmitter':
        """
        Remove the first registration of ``listener`` for ``event``.
        """
        listeners = self._listeners.get(event, [])
        for i, registered in enumerate(listeners):
            if registered == listener or getattr(registered, 'listener', None) == listener:
                del listeners[i]
                break
        return self

    def once(self, event: str, listener: Listener) -> 'EventEmitter':
        def wrapper(*args: Any) -> Any:
            self.off(event, wrapper)
            return listener(*args)
        wrapper.listener = listener  # type: ignore
        return self.on(event, wrapper)

    def remove_all_listeners(self, event: str) -> None:
        self._listeners.pop(event, None)

    def listeners(self, event: str) -> List[Listener]:
        return list(self._listeners.get(event, []))

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def emit(self, event: str, *args: Any) -> bool:
        """
        Call every listener of ``event``.

        :return: Whether the event had listeners
        """
        listeners = list(self._listeners.get(event, []))
        for listener in listeners:
            listener(*args)
        return len(listeners) > 0

    async def emit_async(self, event: str, *args: Any) -> bool:
        listeners = list(self._listeners.get(event, []))
        for listener in listeners:
            result = listener(*args)
            if inspect.isawaitable(result):
                await result
        return len(listeners) > 0
