#!/usr/bin/env python3
# Copyright (c) 2020 The bsigner developers
# Distributed under the MIT software license, see the accompanying
# file COPYING or http://www.opensource.org/licenses/mit-license.php.

"""
Key Classes and Utilities
*************************

Classes and utilities for working with extended public and private keys,
deriving children along BIP 32 paths and producing ECDSA signatures.
"""

from . import base58
from .common import (
    Network,
    get_network_params,
    hash160,
    hash256,
    is_hardened,
    network_from_xkey_version,
)
from .errors import BadArgumentError
from .serializations import ser_compact_size

import hashlib
import hmac
import struct
from typing import (
    List,
    Optional,
    Sequence,
    Tuple,
    Union,
)

from ecdsa import SECP256k1, SigningKey, VerifyingKey
from ecdsa.der import UnexpectedDER
from ecdsa.ecdsa import InvalidPointError
from ecdsa.keys import BadSignatureError
from ecdsa.numbertheory import SquareRootError
from ecdsa.util import (
    sigdecode_der,
    sigencode_der_canonize,
    sigencode_strings_canonize,
)
from mnemonic import Mnemonic


p = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F
n = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
G = (0x79BE667EF9DCBBAC55A06295CE870B07029BFCDB2DCE28D959F2815B16F81798, 0x483ADA7726A3C4655DA4FBFC0E1108A8FD17B448A68554199C47D08FFB10D4B8)

Point = Optional[Tuple[int, int]]

MESSAGE_MAGIC = b"\x18Bitcoin Signed Message:\n"


def point_add(p1: Point, p2: Point) -> Point:
    if (p1 is None):
        return p2
    if (p2 is None):
        return p1
    if (p1[0] == p2[0] and p1[1] != p2[1]):
        return None
    if (p1 == p2):
        lam = (3 * p1[0] * p1[0] * pow(2 * p1[1], p - 2, p)) % p
    else:
        lam = ((p2[1] - p1[1]) * pow(p2[0] - p1[0], p - 2, p)) % p
    x3 = (lam * lam - p1[0] - p2[0]) % p
    return (x3, (lam * (p1[0] - x3) - p1[1]) % p)


def point_mul(p: Point, n: int) -> Point:
    r = None
    for i in range(256):
        if ((n >> i) & 1):
            r = point_add(r, p)
        p = point_add(p, p)
    return r


def deserialize_point(b: bytes) -> Point:
    if len(b) == 65 and b[0] == 4:
        return (int.from_bytes(b[1:33], byteorder="big"), int.from_bytes(b[33:65], byteorder="big"))
    if len(b) != 33 or b[0] not in (2, 3):
        raise BadArgumentError(f"Invalid public key encoding: {b.hex()}")
    x = int.from_bytes(b[1:], byteorder="big")
    y = pow((x * x * x + 7) % p, (p + 1) // 4, p)
    if (y & 1 != b[0] & 1):
        y = p - y
    return (x, y)


def point_to_bytes(p: Point) -> bytes:
    if p is None:
        raise ValueError("Cannot convert None to bytes")
    return (b'\x03' if p[1] & 1 else b'\x02') + p[0].to_bytes(32, byteorder="big")


def privkey_to_pubkey(privkey: bytes) -> bytes:
    """
    Compute the compressed public key for a private key.

    :param privkey: The 32 byte private key
    :return: The 33 byte compressed public key
    """
    return point_to_bytes(point_mul(G, int.from_bytes(privkey, byteorder="big")))


class ExtendedKey(object):
    """
    A BIP 32 extended public or private key.
    """

    def __init__(self, version: bytes, depth: int, parent_fingerprint: bytes, child_num: int, chaincode: bytes, privkey: Optional[bytes], pubkey: bytes) -> None:
        """
        :param version: The version bytes for this extended key
        :param depth: The depth of this extended key as defined in BIP 32
        :param parent_fingerprint: The 4 byte fingerprint of the parent key as defined in BIP 32
        :param child_num: The number of this key as defined in BIP 32
        :param chaincode: The chaincode of this key as defined in BIP 32
        :param privkey: The private key if available
        :param pubkey: The compressed public key
        """
        self.version: bytes = version
        self.network: Network = network_from_xkey_version(version)
        self.is_private: bool = version == get_network_params(self.network).xprv
        self.is_testnet: bool = self.network != Network.MAIN
        self.depth: int = depth
        self.parent_fingerprint: bytes = parent_fingerprint
        self.child_num: int = child_num
        self.chaincode: bytes = chaincode
        self.pubkey: bytes = pubkey
        self.privkey: Optional[bytes] = privkey

    @classmethod
    def deserialize(cls, xkey: str) -> 'ExtendedKey':
        """
        Create an :class:`~ExtendedKey` from a Base58 check encoded extended key

        :param xkey: The Base58 check encoded extended key
        """
        try:
            data = base58.decode_check(xkey)
        except ValueError as e:
            raise BadArgumentError(str(e))
        return cls.from_bytes(data)

    @classmethod
    def from_bytes(cls, data: bytes) -> 'ExtendedKey':
        """
        Create an :class:`~ExtendedKey` from a serialized extended key

        :param data: The 78 byte serialized extended key
        """
        if len(data) != 78:
            raise BadArgumentError(f"Extended key must be 78 bytes, got {len(data)}")

        version = data[0:4]
        network = network_from_xkey_version(version)
        is_private = version == get_network_params(network).xprv
        depth = data[4]
        parent_fingerprint = data[5:9]
        child_num = struct.unpack('>I', data[9:13])[0]
        chaincode = data[13:45]

        if is_private:
            privkey = data[46:]
            pubkey = privkey_to_pubkey(privkey)
            return cls(version, depth, parent_fingerprint, child_num, chaincode, privkey, pubkey)
        else:
            pubkey = data[45:78]
            return cls(version, depth, parent_fingerprint, child_num, chaincode, None, pubkey)

    @classmethod
    def from_seed(cls, seed: bytes, network: Union[Network, str, None] = None) -> 'ExtendedKey':
        """
        Create the BIP 32 master private key for a seed.

        :param seed: The seed bytes
        :param network: The network whose version bytes to use
        """
        Ihmac = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        privkey = Ihmac[:32]
        k = int.from_bytes(privkey, byteorder="big")
        if k == 0 or k >= n:
            raise BadArgumentError("Seed produced an invalid master key")
        version = get_network_params(network).xprv
        return cls(version, 0, b'\x00' * 4, 0, Ihmac[32:], privkey, privkey_to_pubkey(privkey))

    @classmethod
    def from_mnemonic(cls, phrase: str, passphrase: str = "", network: Union[Network, str, None] = None) -> 'ExtendedKey':
        """
        Create the BIP 32 master private key from a BIP 39 mnemonic.

        :param phrase: The mnemonic sentence
        :param passphrase: The optional BIP 39 passphrase
        :param network: The network whose version bytes to use
        """
        mnemo = Mnemonic("english")
        if not mnemo.check(phrase):
            raise BadArgumentError("Invalid mnemonic phrase")
        return cls.from_seed(Mnemonic.to_seed(phrase, passphrase), network)

    @classmethod
    def generate(cls, network: Union[Network, str, None] = None) -> 'ExtendedKey':
        """
        Create a master private key from a fresh random mnemonic.
        """
        return cls.from_mnemonic(Mnemonic("english").generate(strength=256), network=network)

    def serialize(self) -> bytes:
        """
        Serialize the ExtendedKey with the serialization format described in BIP 32.
        Does not create an xpub string, but the bytes serialized here can be Base58 check encoded into one.

        :return: BIP 32 serialized extended key
        """
        r = self.version + struct.pack('B', self.depth) + self.parent_fingerprint + struct.pack('>I', self.child_num) + self.chaincode
        if self.is_private:
            if self.privkey is None:
                raise ValueError("Somehow we are private but don't have a privkey")
            r += b"\x00" + self.privkey
        else:
            r += self.pubkey
        return r

    def to_string(self) -> str:
        """
        Serialize the ExtendedKey as a Base58 check encoded string

        :return: Base58 check encoded extended key
        """
        return base58.encode_check(self.serialize())

    def __str__(self) -> str:
        return self.to_string()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ExtendedKey):
            return NotImplemented
        return self.serialize() == other.serialize()

    def fingerprint(self) -> bytes:
        return hash160(self.pubkey)[0:4]

    def to_public(self, network: Union[Network, str, None] = None) -> 'ExtendedKey':
        """
        Get the extended public key for this key, optionally re-encoded for another network.

        :param network: The network whose version bytes to use. Defaults to the key's own network
        """
        net = self.network if network is None else Network.get(network)
        return ExtendedKey(get_network_params(net).xpub, self.depth, self.parent_fingerprint, self.child_num, self.chaincode, None, self.pubkey)

    def derive_pub(self, i: int) -> 'ExtendedKey':
        """
        Derive the public key at the given child index.

        :param i: The child index of the pubkey to derive
        """
        if is_hardened(i):
            raise BadArgumentError("Cannot derive a hardened child from a public key")

        # Data to HMAC.  Same as CKDpriv() for public child key.
        data = self.pubkey + struct.pack(">L", i)

        # Get HMAC of data
        Ihmac = hmac.new(self.chaincode, data, hashlib.sha512).digest()
        Il = Ihmac[:32]
        Ir = Ihmac[32:]

        # Construct curve point Il*G+K
        Il_int = int.from_bytes(Il, byteorder="big")
        child_pubkey = point_add(point_mul(G, Il_int), deserialize_point(self.pubkey))

        pubkey = point_to_bytes(child_pubkey)
        version = get_network_params(self.network).xpub
        return ExtendedKey(version, self.depth + 1, self.fingerprint(), i, Ir, None, pubkey)

    def derive_priv(self, i: int) -> 'ExtendedKey':
        """
        Derive the private key at the given child index.

        :param i: The child index of the key to derive, may be hardened
        """
        if self.privkey is None:
            raise BadArgumentError("Cannot derive a private child from a public key")

        if is_hardened(i):
            data = b'\x00' + self.privkey + struct.pack(">L", i)
        else:
            data = self.pubkey + struct.pack(">L", i)

        Ihmac = hmac.new(self.chaincode, data, hashlib.sha512).digest()
        Il_int = int.from_bytes(Ihmac[:32], byteorder="big")
        if Il_int >= n:
            raise BadArgumentError(f"Invalid child at index {i}")
        k = (Il_int + int.from_bytes(self.privkey, byteorder="big")) % n
        if k == 0:
            raise BadArgumentError(f"Invalid child at index {i}")

        privkey = k.to_bytes(32, byteorder="big")
        return ExtendedKey(self.version, self.depth + 1, self.fingerprint(), i, Ihmac[32:], privkey, privkey_to_pubkey(privkey))

    def derive(self, i: int) -> 'ExtendedKey':
        if self.is_private:
            return self.derive_priv(i)
        return self.derive_pub(i)

    def derive_path(self, path: Sequence[int]) -> 'ExtendedKey':
        """
        Derive the key at the given path

        :param path: Sequence of integers for the path of the key to derive
        """
        key = self
        for i in path:
            key = key.derive(i)
        return key

    def _signing_key(self) -> SigningKey:
        if self.privkey is None:
            raise BadArgumentError("Private key is required for signing")
        return SigningKey.from_string(self.privkey, curve=SECP256k1)

    def sign(self, digest: bytes) -> bytes:
        """
        Produce a deterministic (RFC 6979), low-S, DER encoded ECDSA signature.

        :param digest: The 32 byte message hash to sign
        :return: The DER signature without sighash byte
        """
        return self._signing_key().sign_digest_deterministic(digest, hashfunc=hashlib.sha256, sigencode=sigencode_der_canonize)

    def sign_message(self, message: Union[bytes, str]) -> bytes:
        """
        Sign a message with the Bitcoin signed message format.

        :param message: The message to sign
        :return: The 65 byte compact recoverable signature
        """
        digest = message_hash(message)
        r_bytes, s_bytes = self._signing_key().sign_digest_deterministic(digest, hashfunc=hashlib.sha256, sigencode=sigencode_strings_canonize)
        for recid, pubkey in enumerate(recover_pubkeys(digest, r_bytes, s_bytes)):
            if pubkey == self.pubkey:
                return struct.pack("B", 27 + 4 + recid) + r_bytes + s_bytes
        raise BadArgumentError("Unable to compute the signature recovery id")


def message_hash(message: Union[bytes, str]) -> bytes:
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hash256(MESSAGE_MAGIC + ser_compact_size(len(message)) + message)


def recover_pubkeys(digest: bytes, r: bytes, s: bytes) -> List[bytes]:
    """
    Recover the compressed public keys a compact signature can verify against.

    :return: Two keys, the first for an even ``R.y`` (recovery id 0) and the second for an odd one (recovery id 1)
    """
    keys = VerifyingKey.from_public_key_recovery_with_digest(r + s, digest, SECP256k1, hashfunc=hashlib.sha256)
    return [vk.to_string("compressed") for vk in keys]


def verify_message(pubkey: bytes, message: Union[bytes, str], signature: bytes) -> bool:
    """
    Check a compact message signature against a public key.
    """
    if len(signature) != 65:
        return False
    recid = (signature[0] - 27) & 3
    # ids 2 and 3 need r >= n
    if recid > 1:
        return False
    try:
        keys = recover_pubkeys(message_hash(message), signature[1:33], signature[33:65])
    except (SquareRootError, InvalidPointError, ValueError):
        return False
    return keys[recid] == pubkey


def verify_signature(pubkey: bytes, digest: bytes, signature: bytes) -> bool:
    """
    Check a DER encoded ECDSA signature (without sighash byte) against a public key.
    """
    try:
        vk = VerifyingKey.from_string(pubkey, curve=SECP256k1)
        return vk.verify_digest(signature, digest, sigdecode=sigdecode_der)
    except (BadSignatureError, UnexpectedDER, ValueError, AssertionError):
        return False
