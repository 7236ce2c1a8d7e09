"""
Trezor Device Manager
*********************

Trezor devices are announced by the session's ``DEVICE_EVENT`` stream. Without a session
the manager reaches devices over USB with :class:`~bsignerlib.managers.trezor_session.TrezorlibSession`.
Only acquired devices are cached; unacquired ones are ignored until they are acquired.
"""

import logging

from typing import (
    Any,
    Dict,
    Optional,
    Union,
)

from .abstract import (
    DeviceManager,
    Selector,
)
from .trezor_session import TrezorlibSession
from ..common import (
    Network,
    Vendor,
)
from ..devices.trezor import (
    DEVICE_CHANGED,
    DEVICE_CONNECT,
    DEVICE_CONNECT_UNACQUIRED,
    DEVICE_DISCONNECT,
    DEVICE_EVENT,
    TrezorConnect,
    TrezorDevice,
)
from ..errors import BadArgumentError


class TrezorDeviceManager(DeviceManager):
    """
    :param network: The network
    :param logger: Parent logger
    :param selector: Device selector
    :param connect: The session devices are reached through, a :class:`TrezorlibSession` by default
    :param debugTrezor: Enable debug output of the session
    """

    logger_name = 'trezor-device-manager'

    def __init__(
        self,
        network: Union[Network, str, None] = None,
        logger: Optional[logging.Logger] = None,
        selector: Optional[Selector] = None,
        connect: Optional[TrezorConnect] = None,
        debugTrezor: bool = False,
    ) -> None:
        super(TrezorDeviceManager, self).__init__(network, logger, selector)
        if not isinstance(debugTrezor, bool):
            raise BadArgumentError("debugTrezor must be a boolean.")
        self.connect: TrezorConnect = connect if connect is not None else TrezorlibSession()
        self.debug_trezor = debugTrezor

    @property
    def vendor(self) -> str:
        return Vendor.TREZOR

    async def handle_device_event(self, event: Dict[str, Any]) -> None:
        payload = event.get('payload') or {}
        path = payload.get('path')

        if event.get('type') == DEVICE_CONNECT:
            if payload.get('type') != 'acquired':
                self.logger.debug("Ignoring unacquired device %s", path)
                return
            device = TrezorDevice.from_payload(payload, self.connect, self.network, self.parent_logger)
            self.add_cached(device)
        elif event.get('type') == DEVICE_DISCONNECT:
            await self.remove_cached(path)
        elif event.get('type') == DEVICE_CHANGED:
            device = self.cached_devices.get(path)
            if device is None:
                return
            assert isinstance(device, TrezorDevice)
            device.status = payload.get('status')
            device.label = payload.get('label', device.label)
            self.logger.debug("Device change: %r", device)
        elif event.get('type') == DEVICE_CONNECT_UNACQUIRED:
            self.logger.debug("Device %s connected unacquired", path)
        else:
            self.logger.debug("Event: %s", event.get('type'))

    def bind(self) -> None:
        self.connect.on(DEVICE_EVENT, self.handle_device_event)

    def unbind(self) -> None:
        self.connect.off(DEVICE_EVENT, self.handle_device_event)

    async def open(self) -> None:
        await super(TrezorDeviceManager, self).open()
        await self.connect.init({
            'popup': False,
            'debug': self.debug_trezor,
            'manifest': {
                'email': '',
                'appUrl': '',
            },
        })

    async def close(self) -> None:
        await super(TrezorDeviceManager, self).close()
        self.logger.debug("Closing trezor manager.")
        await self.connect.dispose()
