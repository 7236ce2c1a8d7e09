#!/usr/bin/env python3
# Copyright (c) 2020 The bsigner developers
# Distributed under the MIT software license, see the accompanying
# file COPYING or http://www.opensource.org/licenses/mit-license.php.

"""Transaction fixtures shared by the test suites"""

import json
import os

from typing import (
    Any,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
)

from bsignerlib.common import Network
from bsignerlib.devices.ledger import HIDTransport
from bsignerlib.key import ExtendedKey
from bsignerlib.managers.events import EventEmitter
from bsignerlib.path import Path
from bsignerlib._script import (
    multisig_script,
    pubkey_to_script,
    redeem_to_script,
)
from bsignerlib.serializations import (
    COutPoint,
    CTransaction,
    CTxIn,
    CTxOut,
)

PHRASE = "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"

COIN = 100000000

_funding_nonce = [0]


def load_vectors() -> Dict[str, Any]:
    with open(os.path.join(os.path.dirname(os.path.realpath(__file__)), "data/vectors.json"), encoding="utf-8") as f:
        return json.load(f)


def fund(script: bytes, value: int = COIN) -> CTransaction:
    """
    Create a coinbase style transaction paying ``value`` to ``script``.

    Every call produces a different transaction id.
    """
    _funding_nonce[0] += 1
    tx = CTransaction()
    tx.vin.append(CTxIn(COutPoint(), bytes([0x04]) + _funding_nonce[0].to_bytes(4, byteorder="little")))
    tx.vout.append(CTxOut(value, script))
    tx.rehash()
    return tx


def spend(funding: Sequence[Tuple[CTransaction, int]], outputs: Sequence[Tuple[bytes, int]]) -> CTransaction:
    tx = CTransaction()
    tx.nVersion = 2
    for prev, n in funding:
        tx.vin.append(CTxIn(COutPoint(int(prev.txid(), 16), n), b"", 0xffffffff))
    for script, value in outputs:
        tx.vout.append(CTxOut(value, script))
    tx.rehash()
    return tx


def derive(master: ExtendedKey, path: str) -> ExtendedKey:
    return master.derive_path(Path.from_string(path).to_list())


def single_key_input(master: ExtendedKey, path: str, witness: bool = False, nested: bool = False, value: int = COIN) -> Tuple[CTransaction, Dict[str, Any]]:
    """
    Fund the key at ``path`` and return the funding transaction with the signing options of its output.
    """
    key = derive(master, path)
    prev = fund(pubkey_to_script(key.pubkey, witness, nested), value)
    options = {
        'path': path,
        'witness': witness,
        'prevout': {'hash': prev.txid(), 'index': 0},
        'prevTX': prev.to_hex(),
    }
    return prev, options


def multisig_input(account_keys: List[ExtendedKey], m: int, branch: int, index: int, witness: bool = False, nested: bool = False, value: int = COIN) -> Tuple[CTransaction, bytes]:
    """
    Fund the sorted m-of-n multisig of the account keys derived along ``branch/index``.

    :return: The funding transaction and the redeem script
    """
    pubkeys = [k.derive_path([branch, index]).pubkey for k in account_keys]
    redeem = multisig_script(m, pubkeys)
    prev = fund(redeem_to_script(redeem, witness, nested), value)
    return prev, redeem


def change_script(master: ExtendedKey, network: Network = Network.TESTNET) -> bytes:
    return pubkey_to_script(derive(master, "m/44'/1'/0'/1/0").pubkey)


class TrezorSession(EventEmitter):
    """
    Session answering every request with the next queued response.

    Device events are delivered with ``emit_async``.
    """

    def __init__(self) -> None:
        super(TrezorSession, self).__init__()
        self.requests: List[Tuple[str, Dict[str, Any]]] = []
        self.responses: List[Any] = []
        self.settings: Optional[Dict[str, Any]] = None
        self.disposed = False

    async def init(self, settings: Dict[str, Any]) -> None:
        self.settings = settings

    async def dispose(self) -> None:
        self.disposed = True

    async def _answer(self, name: str, params: Dict[str, Any]) -> Dict[str, Any]:
        self.requests.append((name, params))
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    async def get_public_key(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return await self._answer("get_public_key", params)

    async def sign_transaction(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return await self._answer("sign_transaction", params)

    async def sign_message(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return await self._answer("sign_message", params)


class FakeHid(object):
    """
    HID device answering reads with queued frames.
    """

    def __init__(self, responses: Sequence[bytes] = ()) -> None:
        self.responses = list(responses)
        self.written: List[bytes] = []
        self.path: Optional[bytes] = None

    def open_path(self, path: bytes) -> None:
        self.path = path

    def write(self, data: bytes) -> None:
        self.written.append(bytes(data))

    def read(self, size: int, timeout_ms: int = 0) -> List[int]:
        return list(self.responses.pop(0)) if self.responses else []

    def set_nonblocking(self, value: bool) -> None:
        pass

    def close(self) -> None:
        pass


def frame(data: bytes, seq: int = 0, total: Optional[int] = None) -> bytes:
    header = b"\x01\x01\x05" + seq.to_bytes(2, byteorder="big")
    if seq == 0:
        header += (total if total is not None else len(data)).to_bytes(2, byteorder="big")
    return (header + data).ljust(64, b"\x00")


def hid_frames(payload: bytes) -> List[bytes]:
    """
    Split a response, status word included, into the HID frames a Ledger sends.
    """
    frames = [frame(payload[:57], total=len(payload))]
    offset, seq = 57, 1
    while offset < len(payload):
        frames.append(frame(payload[offset:offset + 59], seq=seq))
        offset += 59
        seq += 1
    return frames


def ledger_info(n: Any) -> Dict[str, Any]:
    return {'path': f"ledger-{n}".encode(), 'vendor_id': 0x2c97, 'product_id': 0x1011, 'serial_number': str(n)}


def hid_transport(info: Dict[str, Any], timeout: int = 5000, device: Optional[FakeHid] = None) -> HIDTransport:
    """
    Transport already attached to ``device``, so opening it does not touch the HID bus.
    """
    transport = HIDTransport(info, timeout)
    transport.device = device if device is not None else FakeHid()
    return transport
