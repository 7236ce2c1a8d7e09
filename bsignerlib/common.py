"""
Common Classes and Utilities
****************************

Network parameters, vendor identifiers, the BIP 44 coin type table and the
extended key version table live here and nowhere else.
"""

import hashlib

from enum import Enum

from Crypto.Hash import RIPEMD160

from typing import (
    Dict,
    Iterable,
    List,
    Tuple,
    Union,
)

from .errors import BadArgumentError


HARDENED_FLAG = 1 << 31


class Network(Enum):
    """
    The blockchain network to use
    """
    MAIN = 'main' #: Bitcoin Main network
    TESTNET = 'testnet' #: Bitcoin Test network
    REGTEST = 'regtest' #: Regression Test network
    SIMNET = 'simnet' #: Simulation network

    def __str__(self) -> str:
        return self.value

    def __repr__(self) -> str:
        return str(self)

    @staticmethod
    def get(n: Union['Network', str, None]) -> 'Network':
        """
        Get a :class:`Network` from either a member or its name.

        :param n: The network or network name, ``None`` selects main
        :return: The network
        """
        if n is None:
            return Network.MAIN
        if isinstance(n, Network):
            return n
        try:
            return Network(str(n).lower())
        except ValueError:
            raise BadArgumentError(f"Unknown network: {n}")


class NetworkParams(object):
    def __init__(self, pubkeyhash: int, scripthash: int, bech32_hrp: str, xpub: bytes, xprv: bytes) -> None:
        self.pubkeyhash = pubkeyhash
        self.scripthash = scripthash
        self.bech32_hrp = bech32_hrp
        self.xpub = xpub
        self.xprv = xprv


NETWORK_PARAMS: Dict[Network, NetworkParams] = {
    Network.MAIN: NetworkParams(0x00, 0x05, 'bc', b'\x04\x88\xb2\x1e', b'\x04\x88\xad\xe4'),
    Network.TESTNET: NetworkParams(0x6f, 0xc4, 'tb', b'\x04\x35\x87\xcf', b'\x04\x35\x83\x94'),
    Network.REGTEST: NetworkParams(0x6f, 0xc4, 'rb', b'\xea\xb4\xfa\x05', b'\xea\xb4\x04\xc7'),
    Network.SIMNET: NetworkParams(0x3f, 0x7b, 'sb', b'\x04\x20\xbd\x3a', b'\x04\x20\xb9\x00'),
}


def get_network_params(network: Union[Network, str, None]) -> NetworkParams:
    return NETWORK_PARAMS[Network.get(network)]


BIP44_PURPOSE = 44

# BIP 44 coin type per network
COIN_TYPES: Dict[Network, int] = {
    Network.MAIN: 0,
    Network.TESTNET: 1,
    Network.REGTEST: 1,
    Network.SIMNET: 1,
}


def harden(i: int) -> int:
    """
    Set the hardened flag on a path component.

    :param i: The unhardened index
    :return: The hardened index
    """
    return (i | HARDENED_FLAG) & 0xffffffff


def is_hardened(i: int) -> bool:
    """
    Returns whether an index is hardened
    """
    return i & HARDENED_FLAG != 0


def get_coin_type(network: Union[Network, str, None]) -> int:
    """
    Determine the BIP 44 coin type based on the network.

    For the Bitcoin main network, this returns 0. For the other networks, this returns 1.

    :param network: The network
    """
    return COIN_TYPES[Network.get(network)]


# Extended key version bytes (SLIP 132) to [hardened purpose, hardened coin type]
XKEY_VERSIONS: Dict[bytes, Tuple[int, int]] = {
    params.xpub: (harden(BIP44_PURPOSE), harden(COIN_TYPES[network]))
    for network, params in NETWORK_PARAMS.items()
}


def network_from_xkey_version(version: bytes) -> Network:
    """
    Find the network an extended key version belongs to.

    :param version: The 4 version bytes of a serialized extended key
    :return: The network
    """
    for network, params in NETWORK_PARAMS.items():
        if version in (params.xpub, params.xprv):
            return network
    raise BadArgumentError(f"Extended key magic of {version.hex()} is invalid")


class Vendor(object):
    """
    Vendor identifiers
    """
    LEDGER = 'LEDGER'
    TREZOR = 'TREZOR'
    MEMORY = 'MEMORY'
    ANY = 'ANY'


AVAILABLE_VENDORS: List[str] = [Vendor.LEDGER, Vendor.TREZOR, Vendor.MEMORY]


def parse_vendors(vendors: Union[str, Iterable[str]]) -> List[str]:
    """
    Normalize a vendor selection.

    Accepts a single vendor id, a comma separated list of ids or a collection of ids.
    ``ANY`` expands to every available vendor.

    :param vendors: The vendor selection
    :return: Ordered list of unique, uppercase vendor ids
    """
    if isinstance(vendors, str):
        items = vendors.split(',')
    else:
        items = list(vendors)

    result: List[str] = []
    for item in items:
        if not isinstance(item, str):
            raise BadArgumentError(f"Vendor must be a string, got {item!r}")
        vendor = item.strip().upper()
        if vendor == Vendor.ANY:
            selected = AVAILABLE_VENDORS
        elif vendor in AVAILABLE_VENDORS:
            selected = [vendor]
        else:
            raise BadArgumentError(f"Unknown vendor: {item}")
        for v in selected:
            if v not in result:
                result.append(v)
    return result


def sha256(s: bytes) -> bytes:
    """
    Perform a single SHA256 hash.

    :param s: Bytes to hash
    :return: The hash
    """
    return hashlib.new('sha256', s).digest()


def ripemd160(s: bytes) -> bytes:
    """
    Perform a single RIPEMD160 hash.

    :param s: Bytes to hash
    :return: The hash
    """
    return RIPEMD160.new(s).digest()


def hash256(s: bytes) -> bytes:
    """
    Perform a double SHA256 hash.
    A SHA256 is performed on the input, and then a second
    SHA256 is performed on the result of the first SHA256

    :param s: Bytes to hash
    :return: The hash
    """
    return sha256(sha256(s))


def hash160(s: bytes) -> bytes:
    """
    perform a single SHA256 hash followed by a single RIPEMD160 hash on the result of the SHA256 hash.

    :param s: Bytes to hash
    :return: The hash
    """
    return ripemd160(sha256(s))


def blake2b256(s: bytes) -> bytes:
    """
    Perform a BLAKE2b hash with a 32 byte digest.

    :param s: Bytes to hash
    :return: The hash
    """
    return hashlib.blake2b(s, digest_size=32).digest()
