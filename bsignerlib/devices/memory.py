"""
Memory Device
*************

An in-process signer holding a BIP 32 master private key.
It behaves like a hardware device and is deterministic for a given mnemonic, which makes it suitable for tests.
"""

import itertools
import logging

from typing import (
    Dict,
    List,
    Optional,
    Sequence,
    Union,
)

from .device import (
    Device,
    PathLike,
    locked,
)
from ..common import (
    Network,
    Vendor,
)
from ..errors import (
    BadArgumentError,
    InvalidStateError,
)
from ..helpers import (
    apply_other_signatures,
    create_ring,
    get_input_data,
    parse_path,
    prepare_sign_options,
)
from ..input_data import InputData
from ..key import ExtendedKey
from ..mtx import (
    KeyRing,
    MultisigTransaction,
)
from ..serializations import CTransaction

_device_ids = itertools.count()


class MemoryDevice(Device):
    """
    :param phrase: BIP 39 mnemonic to derive the master key from
    :param passphrase: Optional BIP 39 passphrase
    :param key: Master extended private key, used instead of ``phrase``
    :param network: The network
    :param logger: Parent logger

    Without ``phrase`` and ``key`` a random master key is generated.
    """

    def __init__(
        self,
        phrase: Optional[str] = None,
        passphrase: str = "",
        key: Union[ExtendedKey, str, None] = None,
        network: Union[Network, str, None] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        super(MemoryDevice, self).__init__(network, logger)
        self.logger = self.logger.getChild('memory-device')
        self.id = next(_device_ids)
        self._opened = False

        master = None
        if phrase is not None:
            if not isinstance(phrase, str):
                raise BadArgumentError("phrase must be a string.")
            master = ExtendedKey.from_mnemonic(phrase, passphrase, self.network)

        if key is not None:
            if isinstance(key, str):
                key = ExtendedKey.deserialize(key)
            if not isinstance(key, ExtendedKey) or not key.is_private:
                raise BadArgumentError("key must be an extended private key.")
            master = key

        if master is None:
            master = ExtendedKey.generate(self.network)

        self.master = master

    @classmethod
    def generate(cls, network: Union[Network, str, None] = None, logger: Optional[logging.Logger] = None) -> 'MemoryDevice':
        return cls(key=ExtendedKey.generate(network), network=network, logger=logger)

    @property
    def vendor(self) -> str:
        return Vendor.MEMORY

    @property
    def handle(self) -> str:
        return str(self.id)

    @property
    def key(self) -> str:
        return str(self.id)

    @property
    def opened(self) -> bool:
        return self._opened

    def _check_open(self) -> None:
        self.check_available()
        if not self._opened:
            raise InvalidStateError("Device is not open.")

    @locked
    async def destroy(self) -> None:
        self.check_available()
        if self._opened:
            raise InvalidStateError("Device is open.")
        self.destroyed = True

    @locked
    async def open(self) -> None:
        self.check_available()
        if self._opened:
            raise InvalidStateError("Device is already open.")
        self._opened = True

    @locked
    async def close(self) -> None:
        self._check_open()
        self._opened = False

    def _derive(self, path: PathLike) -> ExtendedKey:
        return self.master.derive_path(parse_path(path).to_list())

    @locked
    async def get_public_key(self, path: PathLike, get_parent_fingerprint: bool = True) -> ExtendedKey:
        self._check_open()
        return self._derive(path).to_public(self.network)

    def _create_rings(self, tx: CTransaction, mappings: Dict[bytes, InputData]) -> List[KeyRing]:
        rings = []
        for i in range(len(tx.vin)):
            data = get_input_data(mappings, tx, i)
            key = self._derive(data.path)
            rings.append(create_ring(data, key.pubkey, key))
        return rings

    @locked
    async def sign_transaction(self, tx: CTransaction, input_data: Sequence[Union[InputData, dict]]) -> CTransaction:
        self._check_open()

        mappings = prepare_sign_options(input_data)
        rings = self._create_rings(tx, mappings)
        mtx = MultisigTransaction(tx, [data.coin for data in mappings.values()])

        signed = mtx.sign(rings)
        if signed != len(tx.vin):
            raise BadArgumentError(f"Some inputs were not signed ({signed}/{len(tx.vin)})")
        self.logger.debug("Transaction was signed.")

        apply_other_signatures(mtx, mappings)
        return mtx.to_tx()

    @locked
    async def get_signatures(self, tx: CTransaction, input_data: Sequence[Union[InputData, dict]]) -> List[bytes]:
        self._check_open()

        mappings = prepare_sign_options(input_data)
        rings = self._create_rings(tx, mappings)
        mtx = MultisigTransaction(tx, [data.coin for data in mappings.values()])
        return mtx.get_signatures(rings)

    @locked
    async def sign_message(self, path: PathLike, message: Union[str, bytes]) -> bytes:
        self._check_open()
        if not isinstance(message, (str, bytes)):
            raise BadArgumentError("message must be bytes or a string.")
        return self._derive(path).sign_message(message)
