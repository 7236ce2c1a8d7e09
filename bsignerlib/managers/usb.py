"""
USB Bus
*******

:class:`UsbBus` polls an enumeration function and emits ``connect`` and ``disconnect``
with the enumerated entry whenever the set of connected devices changes.

A listener failing on one entry is logged and does not stop the other listeners,
nor the discovery of later devices.
"""

import asyncio
import inspect
import logging

from typing import (
    Any,
    Callable,
    Dict,
    Hashable,
    List,
    Optional,
)

from .events import EventEmitter

LOG = logging.getLogger(__name__)


class UsbBus(EventEmitter):
    """
    :param enumerate_fn: Lists the connected devices
    :param interval: Seconds between two scans
    :param key: Returns the identity of an enumerated entry, its ``path`` by default
    """

    def __init__(
        self,
        enumerate_fn: Callable[[], List[Any]],
        interval: float = 1.0,
        key: Optional[Callable[[Any], Hashable]] = None,
    ) -> None:
        super(UsbBus, self).__init__()
        self.enumerate_fn = enumerate_fn
        self.interval = interval
        self.key = key if key is not None else (lambda d: d['path'])
        self.known: Dict[Hashable, Any] = {}
        self._task: Optional['asyncio.Task[None]'] = None

    @property
    def running(self) -> bool:
        return self._task is not None

    async def notify(self, event: str, info: Any) -> None:
        for listener in self.listeners(event):
            try:
                result = listener(info)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                LOG.exception("%s listener failed", event)

    async def scan(self) -> None:
        """
        Enumerate once and emit the difference to the previous scan.
        """
        loop = asyncio.get_running_loop()
        found = await loop.run_in_executor(None, self.enumerate_fn)
        current = {self.key(d): d for d in found}

        for key in list(self.known):
            if key not in current:
                info = self.known.pop(key)
                await self.notify('disconnect', info)

        for key, info in current.items():
            if key not in self.known:
                self.known[key] = info
                await self.notify('connect', info)

    async def _poll(self) -> None:
        # start() already did the first scan
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.scan()
            except OSError as e:
                LOG.debug("USB enumeration failed: %s", e)
            except Exception:
                LOG.exception("USB scan failed")

    async def start(self) -> None:
        if self._task is not None:
            return
        await self.scan()
        self._task = asyncio.get_running_loop().create_task(self._poll())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self.known.clear()
