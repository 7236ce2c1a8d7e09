"""
Device Interface
****************

:class:`Device` is the class which all of the specific device implementations subclass.

Every operation that talks to a device is wrapped with :func:`locked`, so calls on a
single device run one at a time in the order they were made.
"""

import asyncio
import logging

from functools import wraps
from typing import (
    Any,
    Awaitable,
    Callable,
    List,
    Optional,
    Sequence,
    TypeVar,
    Union,
    cast,
)

from ..common import Network
from ..errors import InvalidStateError
from ..input_data import InputData
from ..key import ExtendedKey
from ..path import Path
from ..serializations import CTransaction

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])

PathLike = Union[Path, str, Sequence[int]]


def locked(f: F) -> F:
    """
    Serialize calls to a device coroutine through the device lock.
    """
    @wraps(f)
    async def func(self: 'Device', *args: Any, **kwargs: Any) -> Any:
        async with self.lock:
            return await f(self, *args, **kwargs)
    return cast(F, func)


class Device(object):
    """
    A signer connected through some transport.

    This abstract class defines the methods that device implementations should implement.
    """

    def __init__(self, network: Union[Network, str, None] = None, logger: Optional[logging.Logger] = None) -> None:
        """
        :param network: The network used for extended keys and addresses
        :param logger: Parent logger, a child named after the device kind is used
        """
        self.destroyed = False
        self.network = Network.get(network)
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self._lock: Optional[asyncio.Lock] = None

    @property
    def lock(self) -> asyncio.Lock:
        # created lazily so it binds to the running loop
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    @property
    def vendor(self) -> str:
        raise NotImplementedError("The Device base class "
                                  "does not implement this method")

    @property
    def handle(self) -> str:
        """
        Identifier of the current connection to the device.
        """
        raise NotImplementedError("The Device base class "
                                  "does not implement this method")

    @property
    def key(self) -> str:
        """
        Identifier of the device itself, stable across connections.
        """
        raise NotImplementedError("The Device base class "
                                  "does not implement this method")

    @property
    def opened(self) -> bool:
        raise NotImplementedError("The Device base class "
                                  "does not implement this method")

    def check_available(self) -> None:
        if self.destroyed:
            raise InvalidStateError("Device no longer available.")

    async def open(self) -> None:
        raise NotImplementedError("The Device base class "
                                  "does not implement this method")

    async def close(self) -> None:
        raise NotImplementedError("The Device base class "
                                  "does not implement this method")

    async def destroy(self) -> None:
        """
        Mark the device as gone. A destroyed device can not be opened again.
        """
        raise NotImplementedError("The Device base class "
                                  "does not implement this method")

    async def get_public_key(self, path: PathLike, get_parent_fingerprint: bool = True) -> ExtendedKey:
        """
        Get the extended public key at the BIP 32 derivation path.

        :param path: The BIP 32 derivation path
        :param get_parent_fingerprint: Whether the device should also compute the parent fingerprint
        :return: The extended public key
        """
        raise NotImplementedError("The Device base class "
                                  "does not implement this method")

    async def get_xpub(self, path: PathLike) -> str:
        """
        Get the Base58 check encoded extended public key for the device network.

        :param path: The BIP 32 derivation path
        :return: The extended public key string
        """
        pubkey = await self.get_public_key(path)
        return pubkey.to_public(self.network).to_string()

    async def sign_transaction(self, tx: CTransaction, input_data: Sequence[Union[InputData, dict]]) -> CTransaction:
        """
        Sign a transaction.

        Signatures other cosigners already produced for multisig inputs are merged in.

        :param tx: The unsigned transaction
        :param input_data: Signing metadata for every input
        :return: A new transaction with input scripts and witnesses filled
        """
        raise NotImplementedError("The Device base class "
                                  "does not implement this method")

    async def get_signatures(self, tx: CTransaction, input_data: Sequence[Union[InputData, dict]]) -> List[bytes]:
        """
        Sign a transaction and return the signatures instead of the signed transaction.

        :param tx: The unsigned transaction
        :param input_data: Signing metadata for every input
        :return: One signature, with sighash type, per input in input order
        """
        raise NotImplementedError("The Device base class "
                                  "does not implement this method")

    async def sign_message(self, path: PathLike, message: Union[str, bytes]) -> bytes:
        """
        Sign a message (bitcoin message signing).

        :param path: The BIP 32 derivation for the key to sign the message with
        :param message: The message to be signed. First encoded as bytes if not already.
        :return: The 65 byte compact signature
        """
        raise NotImplementedError("The Device base class "
                                  "does not implement this method")

    def __repr__(self) -> str:
        return (
            f"<Device: vendor={self.vendor} key={self.key} handle={self.handle}"
            f" opened={self.opened} destroyed={self.destroyed}>"
        )
