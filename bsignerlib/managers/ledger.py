"""
Ledger Device Manager
*********************

Ledger devices are discovered on the USB bus. A :class:`~bsignerlib.managers.usb.UsbBus`
polls the HID interfaces of connected Ledgers and emits ``connect`` and ``disconnect``
with the HID device entry.

Every device talks to the Bitcoin application through
:class:`~bsignerlib.devices.ledger.LedgerBitcoinApp` unless another ``app_factory`` is given.
"""

import logging

from typing import (
    Any,
    Callable,
    Dict,
    Optional,
    Union,
)

from .abstract import (
    DeviceManager,
    Selector,
)
from .usb import UsbBus
from ..common import (
    Network,
    Vendor,
)
from ..devices import ledger
from ..devices.ledger import (
    DEFAULT_TIMEOUT,
    HIDTransport,
    LedgerApp,
    LedgerBitcoinApp,
    LedgerDevice,
)
from ..errors import BadArgumentError

LOG = logging.getLogger(__name__)

AppFactory = Callable[[HIDTransport], LedgerApp]
TransportFactory = Callable[[Dict[str, Any], int], HIDTransport]


class LedgerDeviceManager(DeviceManager):
    """
    :param network: The network
    :param logger: Parent logger
    :param selector: Device selector
    :param usb: The bus devices are discovered on, a polling :class:`UsbBus` over :func:`bsignerlib.devices.ledger.enumerate` by default
    :param app_factory: Creates the Bitcoin application client for a transport, :meth:`create_app` by default
    :param transport_factory: Creates the transport of an enumerated HID entry
    :param timeout: Transport timeout in milliseconds
    """

    logger_name = 'ledger-device-manager'

    def __init__(
        self,
        network: Union[Network, str, None] = None,
        logger: Optional[logging.Logger] = None,
        selector: Optional[Selector] = None,
        usb: Optional[UsbBus] = None,
        app_factory: Optional[AppFactory] = None,
        transport_factory: TransportFactory = HIDTransport,
        timeout: int = DEFAULT_TIMEOUT,
    ) -> None:
        super(LedgerDeviceManager, self).__init__(network, logger, selector)
        if not isinstance(timeout, int) or timeout <= 0:
            raise BadArgumentError("timeout must be a positive number of milliseconds.")
        if app_factory is not None and not callable(app_factory):
            raise BadArgumentError("app_factory must be callable.")
        if not callable(transport_factory):
            raise BadArgumentError("transport_factory must be callable.")

        self.usb = usb if usb is not None else UsbBus(ledger.enumerate)
        self.app_factory = app_factory if app_factory is not None else self.create_app
        self.transport_factory = transport_factory
        self.timeout = timeout

    @property
    def vendor(self) -> str:
        return Vendor.LEDGER

    def create_app(self, transport: HIDTransport) -> LedgerApp:
        return LedgerBitcoinApp(transport, self.network)

    def create_device(self, info: Dict[str, Any]) -> LedgerDevice:
        transport = self.transport_factory(info, self.timeout)
        return LedgerDevice(
            transport,
            self.app_factory(transport),
            network=self.network,
            logger=self.parent_logger,
            timeout=self.timeout,
        )

    def handle_connect(self, info: Dict[str, Any]) -> None:
        self.add_cached(self.create_device(info))

    async def handle_disconnect(self, info: Dict[str, Any]) -> None:
        await self.remove_cached(info['path'].decode())

    def bind(self) -> None:
        self.usb.on('connect', self.handle_connect)
        self.usb.on('disconnect', self.handle_disconnect)

    def unbind(self) -> None:
        self.usb.off('connect', self.handle_connect)
        self.usb.off('disconnect', self.handle_disconnect)

    async def open(self) -> None:
        await super(LedgerDeviceManager, self).open()
        await self.usb.start()

    async def close(self) -> None:
        await super(LedgerDeviceManager, self).close()
        await self.usb.stop()
