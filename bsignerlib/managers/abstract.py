"""
Device Managers
***************

:class:`DeviceManager` tracks the devices of one vendor, keeps at most one of them selected
and forwards the signing API to the selected device.

Managers emit ``connect``, ``disconnect``, ``select`` and ``deselect`` events with the device as argument.
"""

import inspect
import logging

from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Union,
)

from .events import EventEmitter
from ..common import Network
from ..devices.device import (
    Device,
    PathLike,
)
from ..errors import (
    BadArgumentError,
    InvalidStateError,
)
from ..input_data import InputData
from ..key import ExtendedKey
from ..serializations import CTransaction

LOG = logging.getLogger(__name__)

Selector = Callable[[List[Device]], Union[Optional[Device], Awaitable[Optional[Device]]]]


async def default_selector(devices: List[Device]) -> Optional[Device]:
    return devices[0] if devices else None


class DeviceManager(EventEmitter):
    """
    :param network: The network devices are created for
    :param logger: Parent logger
    :param selector: Chooses a device when :meth:`select_device` is called without one, the first device by default
    """

    logger_name = 'device-manager'

    def __init__(
        self,
        network: Union[Network, str, None] = None,
        logger: Optional[logging.Logger] = None,
        selector: Optional[Selector] = None,
    ) -> None:
        super(DeviceManager, self).__init__()
        if selector is not None and not callable(selector):
            raise BadArgumentError("selector must be callable.")
        if logger is not None and not isinstance(logger, logging.Logger):
            raise BadArgumentError("logger must be a logging.Logger.")

        self.network = Network.get(network)
        self.parent_logger = logger
        self.logger = (logger if logger is not None else LOG).getChild(self.logger_name)
        self.selector: Selector = selector if selector is not None else default_selector

        self.opened = False
        self.selected: Optional[Device] = None
        self.cached_devices: Dict[str, Device] = {}

    @property
    def vendor(self) -> str:
        raise NotImplementedError("The DeviceManager base class "
                                  "does not implement this method")

    def bind(self) -> None:
        """
        Start listening to the vendor transport for connected devices.
        """
        raise NotImplementedError("The DeviceManager base class "
                                  "does not implement this method")

    def unbind(self) -> None:
        raise NotImplementedError("The DeviceManager base class "
                                  "does not implement this method")

    def _check_open(self) -> None:
        if not self.opened:
            raise InvalidStateError("Not open.")

    def add_cached(self, device: Device) -> None:
        """
        Cache a newly connected device and announce it.
        """
        if device.handle in self.cached_devices:
            raise InvalidStateError("Already have device for the handle.")

        self.cached_devices[device.handle] = device
        self.logger.debug("Device connected: %r", device)
        self.emit('connect', device)

    async def remove_cached(self, handle: str) -> Optional[Device]:
        """
        Forget a disconnected device.

        A selected device is deselected first. The device is destroyed once the
        operation it may be running has finished.

        :param handle: Handle of the device
        :return: The removed device, ``None`` when it was unknown
        """
        device = self.cached_devices.get(handle)
        if device is None:
            return None

        if self.selected is device:
            self.selected = None
            self.logger.debug("Device was deselected: %r", device)
            self.emit('deselect', device)

        del self.cached_devices[handle]

        if not device.destroyed:
            if device.opened:
                await device.close()
            await device.destroy()

        self.logger.debug("Device disconnected: %r", device)
        self.emit('disconnect', device)
        return device

    async def open(self) -> None:
        if self.opened:
            raise InvalidStateError("Already opened.")
        self.opened = True
        self.bind()

    async def close(self) -> None:
        """
        Stop listening for devices, then close and destroy every cached device.
        """
        self._check_open()
        self.opened = False
        self.unbind()

        await self.deselect_device()

        for device in self.cached_devices.values():
            if device.destroyed:
                continue
            if device.opened:
                await device.close()
            await device.destroy()

        self.cached_devices.clear()

    async def get_devices(self) -> List[Device]:
        self._check_open()
        return list(self.cached_devices.values())

    async def select_device(self, device: Optional[Device] = None) -> Device:
        """
        Select a device, deselecting the current one first.

        :param device: The device to select, one chosen by the selector when ``None``
        :return: The selected and opened device
        """
        self._check_open()

        if device is not None:
            if self.cached_devices.get(device.handle) is not device:
                raise InvalidStateError("Device not found.")
        else:
            if not self.cached_devices:
                raise InvalidStateError("No devices available.")

            devices = await self.get_devices()
            selected = self.selector(devices)
            if inspect.isawaitable(selected):
                selected = await selected

            if selected is None:
                raise InvalidStateError("Device was not selected.")
            device = selected

        await self.deselect_device()

        self.selected = device
        self.logger.debug("Device was selected: %r", device)
        self.emit('select', device)

        if not device.opened:
            await device.open()

        return device

    async def deselect_device(self) -> bool:
        """
        Close the selected device and clear the selection.

        :return: Whether a device was selected
        """
        device = self.selected
        if device is None:
            return False

        if device.opened and not device.destroyed:
            await device.close()

        self.selected = None
        self.logger.debug("Device was deselected: %r", device)
        self.emit('deselect', device)
        return True

    def _get_selected(self) -> Device:
        if self.selected is None:
            raise InvalidStateError("Device was not selected.")
        return self.selected

    async def get_public_key(self, path: PathLike, get_parent_fingerprint: bool = True) -> ExtendedKey:
        return await self._get_selected().get_public_key(path, get_parent_fingerprint)

    async def get_xpub(self, path: PathLike) -> str:
        return await self._get_selected().get_xpub(path)

    async def sign_transaction(self, tx: CTransaction, input_data: Sequence[Union[InputData, Dict[str, Any]]]) -> CTransaction:
        return await self._get_selected().sign_transaction(tx, input_data)

    async def get_signatures(self, tx: CTransaction, input_data: Sequence[Union[InputData, Dict[str, Any]]]) -> List[bytes]:
        return await self._get_selected().get_signatures(tx, input_data)

    async def sign_message(self, path: PathLike, message: Union[str, bytes]) -> bytes:
        return await self._get_selected().sign_message(path, message)
