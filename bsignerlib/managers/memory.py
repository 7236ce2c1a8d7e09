"""
Memory Device Manager
*********************

Devices are only ever added with :meth:`MemoryDeviceManager.add_device`.
The ``connect`` event of an added device is emitted on the next event loop iteration,
so listeners registered right after construction still receive it.
"""

import asyncio
import logging

from typing import (
    List,
    Optional,
    Union,
)

from .abstract import (
    DeviceManager,
    Selector,
)
from ..common import (
    Network,
    Vendor,
)
from ..devices.memory import MemoryDevice
from ..errors import (
    BadArgumentError,
    InvalidStateError,
)
from ..key import ExtendedKey


class MemoryDeviceManager(DeviceManager):
    """
    :param network: The network
    :param logger: Parent logger
    :param selector: Device selector
    :param phrase: Mnemonic of the first device
    :param passphrase: Mnemonic passphrase of the first device
    :param key: Master private key of the first device
    :param device: The first device, used instead of creating one
    """

    def __init__(
        self,
        network: Union[Network, str, None] = None,
        logger: Optional[logging.Logger] = None,
        selector: Optional[Selector] = None,
        phrase: Optional[str] = None,
        passphrase: str = "",
        key: Union[ExtendedKey, str, None] = None,
        device: Optional[MemoryDevice] = None,
    ) -> None:
        super(MemoryDeviceManager, self).__init__(network, logger, selector)
        self._pending: List[MemoryDevice] = []

        if device is not None:
            self.add_device(device)
        else:
            self.add_device(phrase=phrase, passphrase=passphrase, key=key)

    @property
    def vendor(self) -> str:
        return Vendor.MEMORY

    def bind(self) -> None:
        pass

    def unbind(self) -> None:
        pass

    def add_device(
        self,
        device: Optional[MemoryDevice] = None,
        phrase: Optional[str] = None,
        passphrase: str = "",
        key: Union[ExtendedKey, str, None] = None,
    ) -> MemoryDevice:
        """
        Add a device, creating it from ``phrase`` or ``key`` when ``device`` is not given.

        :return: The added device
        """
        if device is None:
            device = MemoryDevice(
                phrase=phrase,
                passphrase=passphrase,
                key=key,
                network=self.network,
                logger=self.parent_logger,
            )
        elif not isinstance(device, MemoryDevice):
            raise BadArgumentError("device must be a MemoryDevice.")

        if device.handle in self.cached_devices:
            raise InvalidStateError("Already have device for the handle.")
        self.cached_devices[device.handle] = device

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # flushed by open()
            self._pending.append(device)
        else:
            loop.call_soon(self._emit_connect, device)

        return device

    def _emit_connect(self, device: MemoryDevice) -> None:
        if self.cached_devices.get(device.handle) is not device:
            return
        self.logger.debug("Device connected: %r", device)
        self.emit('connect', device)

    async def remove_device(self, device: MemoryDevice) -> None:
        if self.cached_devices.get(device.handle) is not device:
            raise InvalidStateError("Device not found.")
        if device in self._pending:
            self._pending.remove(device)
        await self.remove_cached(device.handle)

    async def open(self) -> None:
        await super(MemoryDeviceManager, self).open()

        pending, self._pending = self._pending, []
        for device in pending:
            self._emit_connect(device)
