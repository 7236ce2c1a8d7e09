"""
Device Managers
***************

One manager per vendor. Each is a subclass of :class:`~bsignerlib.managers.abstract.DeviceManager`.
"""

from .abstract import DeviceManager
from .ledger import LedgerDeviceManager
from .memory import MemoryDeviceManager
from .trezor import TrezorDeviceManager

__all__ = [
    'abstract',
    'events',
    'ledger',
    'memory',
    'trezor',
    'trezor_session',
    'usb',
]
