"""
Devices
*******

This module contains all of the device implementations.
Each device implementation is a subclass of :class:`~bsignerlib.devices.device.Device`.
"""

from .device import Device
from .ledger import LedgerDevice
from .memory import MemoryDevice
from .trezor import TrezorDevice

__all__ = [
    'device',
    'ledger',
    'memory',
    'trezor',
]
