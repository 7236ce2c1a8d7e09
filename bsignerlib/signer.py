"""
Signer
******

:class:`Signer` drives one device manager per enabled vendor. It aggregates their events,
keeps a single device selected across all vendors and forwards the signing API to it.
"""

import logging

from typing import (
    Any,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Type,
    Union,
)

from .common import (
    AVAILABLE_VENDORS,
    Network,
    Vendor,
    parse_vendors,
)
from .devices.device import (
    Device,
    PathLike,
)
from .errors import (
    BadArgumentError,
    InvalidStateError,
)
from .input_data import InputData
from .key import ExtendedKey
from .managers.abstract import DeviceManager
from .managers.events import EventEmitter
from .managers.ledger import LedgerDeviceManager
from .managers.memory import MemoryDeviceManager
from .managers.trezor import TrezorDeviceManager
from .serializations import CTransaction

LOG = logging.getLogger(__name__)

VENDOR_MANAGERS: Dict[str, Type[DeviceManager]] = {
    Vendor.LEDGER: LedgerDeviceManager,
    Vendor.TREZOR: TrezorDeviceManager,
    Vendor.MEMORY: MemoryDeviceManager,
}


def get_handle(device: Device) -> str:
    return f"{device.vendor}:{device.handle}"


class SignerOptions(object):
    """
    Options of a :class:`Signer`.

    Recognized keys are ``network``, ``logger``, ``vendor`` and one mapping per vendor id
    holding the options of that vendor's manager.

    :param options: The options mapping
    """

    def __init__(self, options: Optional[Mapping[str, Any]] = None) -> None:
        self.network = Network.MAIN
        self.logger: logging.Logger = LOG
        self.enabled_vendors: List[str] = list(AVAILABLE_VENDORS)
        self.vendor_manager_options: Dict[str, Dict[str, Any]] = {}

        self.from_options(options if options is not None else {})

    def from_options(self, options: Mapping[str, Any]) -> 'SignerOptions':
        if not isinstance(options, Mapping):
            raise BadArgumentError("options must be a mapping.")

        if options.get('network') is not None:
            self.network = Network.get(options['network'])

        if options.get('logger') is not None:
            if not isinstance(options['logger'], logging.Logger):
                raise BadArgumentError("logger must be a logging.Logger.")
            self.logger = options['logger'].getChild('signer')

        if options.get('vendor') is not None:
            self.enabled_vendors = parse_vendors(options['vendor'])

        for vendor in self.enabled_vendors:
            vendor_options = options.get(vendor) or {}
            if not isinstance(vendor_options, Mapping):
                raise BadArgumentError(f"{vendor} options must be a mapping.")

            self.vendor_manager_options[vendor] = {
                'network': self.network,
                'logger': self.logger,
                **vendor_options,
            }

        return self


class Signer(EventEmitter):
    """
    :param options: A :class:`SignerOptions` or the mapping to build one from
    """

    def __init__(self, options: Union[SignerOptions, Mapping[str, Any], None] = None) -> None:
        super(Signer, self).__init__()
        if not isinstance(options, SignerOptions):
            options = SignerOptions(options)

        self.options = options
        self.network = options.network
        self.logger = options.logger
        self.enabled_vendors = options.enabled_vendors

        self.opened = False
        self.selected: Optional[Device] = None
        self.cached_devices: Dict[str, Device] = {}
        self.device_managers: Dict[str, DeviceManager] = {}

        for vendor in self.enabled_vendors:
            manager_options = options.vendor_manager_options[vendor]
            self.device_managers[vendor] = VENDOR_MANAGERS[vendor](**manager_options)

    def _handle_connect(self, device: Device) -> None:
        handle = get_handle(device)
        if handle in self.cached_devices:
            raise InvalidStateError("Already have device for the handle.")

        self.logger.debug("Device connected: %r", device)
        self.cached_devices[handle] = device
        self.emit('connect', device)

    def _handle_disconnect(self, device: Device) -> None:
        self.logger.debug("Device disconnected: %r", device)
        self.cached_devices.pop(get_handle(device), None)
        self.emit('disconnect', device)

    def _handle_select(self, device: Device) -> None:
        self.selected = device
        self.logger.debug("Device was selected: %r", device)
        self.emit('select', device)

    def _handle_deselect(self, device: Device) -> None:
        if device is self.selected:
            self.logger.debug("Device was deselected: %r", device)
            self.selected = None
        self.emit('deselect', device)

    def bind(self) -> None:
        for manager in self.device_managers.values():
            manager.on('connect', self._handle_connect)
            manager.on('disconnect', self._handle_disconnect)
            manager.on('select', self._handle_select)
            manager.on('deselect', self._handle_deselect)

    def unbind(self) -> None:
        for manager in self.device_managers.values():
            manager.off('connect', self._handle_connect)
            manager.off('disconnect', self._handle_disconnect)
            manager.off('select', self._handle_select)
            manager.off('deselect', self._handle_deselect)

    async def open(self) -> None:
        """
        Open every enabled vendor manager.
        """
        if self.opened:
            raise InvalidStateError("Already opened.")
        self.opened = True
        self.bind()

        for manager in self.device_managers.values():
            await manager.open()

    async def close(self) -> None:
        if not self.opened:
            raise InvalidStateError("Not open.")
        self.opened = False

        for manager in self.device_managers.values():
            await manager.close()

        self.unbind()
        self.cached_devices.clear()

    def get_manager(self, vendor: str) -> DeviceManager:
        manager = self.device_managers.get(vendor)
        if manager is None:
            raise BadArgumentError(f'Vendor "{vendor}" not found or not enabled.')
        return manager

    async def select_device(self, vendor: Union[str, Device], device: Optional[Device] = None) -> Device:
        """
        Select a device of any enabled vendor.

        A device selected on another vendor's manager is deselected first.

        :param vendor: The vendor id, or the device itself
        :param device: The device to select, chosen by the vendor's selector when ``None``
        :return: The selected device
        """
        if device is None and isinstance(vendor, Device):
            device = vendor
            vendor = device.vendor

        assert isinstance(vendor, str)
        vendor = vendor.upper()
        manager = self.get_manager(vendor)

        if device is not None and device.vendor != vendor:
            raise BadArgumentError("Vendor for manager and device does not match.")

        if self.selected is not None and self.selected.vendor != vendor:
            await self.get_manager(self.selected.vendor).deselect_device()

        return await manager.select_device(device)

    async def deselect_device(self) -> bool:
        if self.selected is None:
            return False
        return await self.get_manager(self.selected.vendor).deselect_device()

    async def get_devices(self) -> List[Device]:
        """
        List the devices of every enabled vendor.
        """
        devices: List[Device] = []
        for manager in self.device_managers.values():
            devices.extend(await manager.get_devices())
        return devices

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
