#!/usr/bin/env python3
# Copyright (c) 2010 ArtForz -- public domain half-a-node
# Copyright (c) 2012 Jeff Garzik
# Copyright (c) 2010-2016 The Bitcoin Core developers
# Distributed under the MIT software license, see the accompanying
# file COPYING or http://www.opensource.org/licenses/mit-license.php.
"""Bitcoin Object Python Serializations

Modified from the test/test_framework/mininode.py file from the
Bitcoin repository

CTransaction,CTxIn, CTxOut, etc....:
    data structures that should map to corresponding structures in
    bitcoin/primitives for transactions only
Coin: an unspent output together with its outpoint
ser_*, deser_*: functions that handle serialization/deserialization
signature_hash_*: legacy and BIP 143 signature hashes
"""

from .common import (
    Network,
    hash256,
)
from ._script import (
    SIGHASH_ALL,
    address_to_script,
    get_script_type,
    is_opreturn,
    is_p2sh,
    is_p2pkh,
    is_p2pk,
    is_witness,
    is_p2wsh,
    script_to_address,
)
from .errors import BadArgumentError

import copy
import struct
from io import BytesIO

from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
    Union,
)
from typing_extensions import Protocol

class Readable(Protocol):
    def read(self, n: int = -1) -> bytes:
        ...

class Deserializable(Protocol):
    def deserialize(self, f: Readable) -> None:
        ...

class Serializable(Protocol):
    def serialize(self) -> bytes:
        ...


# Serialization/deserialization tools
def ser_compact_size(size: int) -> bytes:
    r = b""
    if size < 253:
        r = struct.pack("B", size)
    elif size < 0x10000:
        r = struct.pack("<BH", 253, size)
    elif size < 0x100000000:
        r = struct.pack("<BI", 254, size)
    else:
        r = struct.pack("<BQ", 255, size)
    return r

def deser_compact_size(f: Readable) -> int:
    nit: int = struct.unpack("<B", f.read(1))[0]
    if nit == 253:
        nit = struct.unpack("<H", f.read(2))[0]
    elif nit == 254:
        nit = struct.unpack("<I", f.read(4))[0]
    elif nit == 255:
        nit = struct.unpack("<Q", f.read(8))[0]
    return nit

def deser_string(f: Readable) -> bytes:
    nit = deser_compact_size(f)
    return f.read(nit)

def ser_string(s: bytes) -> bytes:
    return ser_compact_size(len(s)) + s

def deser_uint256(f: Readable) -> int:
    r = 0
    for i in range(8):
        t = struct.unpack("<I", f.read(4))[0]
        r += t << (i * 32)
    return r


def ser_uint256(u: int) -> bytes:
    rs = b""
    for _ in range(8):
        rs += struct.pack("<I", u & 0xFFFFFFFF)
        u >>= 32
    return rs


def uint256_from_str(s: bytes) -> int:
    r = 0
    t = struct.unpack("<IIIIIIII", s[:32])
    for i in range(8):
        r += t[i] << (i * 32)
    return r

D = TypeVar("D", bound=Deserializable)

def deser_vector(f: Readable, c: Callable[[], D]) -> List[D]:
    nit = deser_compact_size(f)
    r = []
    for _ in range(nit):
        t = c()
        t.deserialize(f)
        r.append(t)
    return r


def ser_vector(v: Sequence[Serializable]) -> bytes:
    r = ser_compact_size(len(v))
    for i in v:
        r += i.serialize()
    return r


def deser_string_vector(f: Readable) -> List[bytes]:
    nit = deser_compact_size(f)
    r = []
    for _ in range(nit):
        t = deser_string(f)
        r.append(t)
    return r


def ser_string_vector(v: List[bytes]) -> bytes:
    r = ser_compact_size(len(v))
    for sv in v:
        r += ser_string(sv)
    return r


def to_bytes(data: Union[bytes, str], name: str) -> bytes:
    """
    Accept raw bytes or a hex string.
    """
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    if isinstance(data, str):
        try:
            return bytes.fromhex(data)
        except ValueError:
            raise BadArgumentError(f"{name} is not valid hex")
    raise BadArgumentError(f"Unknown type for {name}")

# Objects that map to bitcoind objects, which can be serialized/deserialized

class COutPoint(object):
    def __init__(self, hash: int = 0, n: int = 0xffffffff):
        self.hash = hash
        self.n = n

    def deserialize(self, f: Readable) -> None:
        self.hash = deser_uint256(f)
        self.n = struct.unpack("<I", f.read(4))[0]

    def serialize(self) -> bytes:
        r = b""
        r += ser_uint256(self.hash)
        r += struct.pack("<I", self.n)
        return r

    @property
    def txid(self) -> str:
        """The funding transaction id in display (big endian) hex"""
        return "%064x" % self.hash

    def to_key(self) -> bytes:
        """
        Stable lookup key for this outpoint: serialized txid and index.
        """
        return self.serialize()

    def is_null(self) -> bool:
        return self.hash == 0 and self.n == 0xffffffff

    def to_json(self) -> Dict[str, Any]:
        return {'hash': self.txid, 'index': self.n}

    @classmethod
    def from_json(cls, json: Dict[str, Any]) -> 'COutPoint':
        if not isinstance(json.get('hash'), str) or len(json['hash']) != 64:
            raise BadArgumentError("Outpoint hash must be a 64 character hex string")
        if not isinstance(json.get('index'), int) or not 0 <= json['index'] <= 0xffffffff:
            raise BadArgumentError("Outpoint index must be a uint32")
        return cls(int(json['hash'], 16), json['index'])

    @classmethod
    def from_raw(cls, raw: bytes) -> 'COutPoint':
        if len(raw) != 36:
            raise BadArgumentError("Serialized outpoint must be 36 bytes")
        o = cls()
        o.deserialize(BytesIO(raw))
        return o

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, COutPoint):
            return NotImplemented
        return self.hash == other.hash and self.n == other.n

    def __hash__(self) -> int:
        return hash((self.hash, self.n))

    def __repr__(self) -> str:
        return "COutPoint(hash=%064x n=%i)" % (self.hash, self.n)


class CTxIn(object):
    def __init__(
        self,
        outpoint: Optional[COutPoint] = None,
        scriptSig: bytes = b"",
        nSequence: int = 0xffffffff,
    ):
        if outpoint is None:
            self.prevout = COutPoint()
        else:
            self.prevout = outpoint
        self.scriptSig = scriptSig
        self.nSequence = nSequence

    def deserialize(self, f: Readable) -> None:
        self.prevout = COutPoint()
        self.prevout.deserialize(f)
        self.scriptSig = deser_string(f)
        self.nSequence = struct.unpack("<I", f.read(4))[0]

    def serialize(self) -> bytes:
        r = b""
        r += self.prevout.serialize()
        r += ser_string(self.scriptSig)
        r += struct.pack("<I", self.nSequence)
        return r

    def __repr__(self) -> str:
        return "CTxIn(prevout=%s scriptSig=%s nSequence=%i)" \
            % (repr(self.prevout), self.scriptSig.hex(),
               self.nSequence)


class CTxOut(object):
    def __init__(self, nValue: int = 0, scriptPubKey: bytes = b""):
        self.nValue = nValue
        self.scriptPubKey = scriptPubKey

    def deserialize(self, f: Readable) -> None:
        self.nValue = struct.unpack("<q", f.read(8))[0]
        self.scriptPubKey = deser_string(f)

    def serialize(self) -> bytes:
        r = b""
        r += struct.pack("<q", self.nValue)
        r += ser_string(self.scriptPubKey)
        return r

    def is_opreturn(self) -> bool:
        return is_opreturn(self.scriptPubKey)

    def is_p2sh(self) -> bool:
        return is_p2sh(self.scriptPubKey)

    def is_p2wsh(self) -> bool:
        return is_p2wsh(self.scriptPubKey)

    def is_p2pkh(self) -> bool:
        return is_p2pkh(self.scriptPubKey)

    def is_p2pk(self) -> bool:
        return is_p2pk(self.scriptPubKey)

    def is_witness(self) -> Tuple[bool, int, bytes]:
        return is_witness(self.scriptPubKey)

    def get_type(self) -> str:
        return get_script_type(self.scriptPubKey)

    def get_address(self, network: Union[Network, str, None] = None) -> Optional[str]:
        return script_to_address(self.scriptPubKey, network)

    def to_json(self, network: Union[Network, str, None] = None) -> Dict[str, Any]:
        return {
            'value': self.nValue,
            'script': self.scriptPubKey.hex(),
            'address': self.get_address(network),
        }

    @classmethod
    def from_json(cls, json: Dict[str, Any], network: Union[Network, str, None] = None) -> 'CTxOut':
        value = json.get('value')
        if not isinstance(value, int) or value < 0:
            raise BadArgumentError("Output value must be a non-negative integer")
        script = json.get('script')
        if script is not None:
            return cls(value, to_bytes(script, 'output script'))
        if json.get('address'):
            return cls(value, address_to_script(json['address'], network))
        raise BadArgumentError("Output requires a script or an address")

    @classmethod
    def from_raw(cls, raw: bytes) -> 'CTxOut':
        o = cls()
        o.deserialize(BytesIO(raw))
        return o

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CTxOut):
            return NotImplemented
        return self.nValue == other.nValue and self.scriptPubKey == other.scriptPubKey

    def __repr__(self) -> str:
        return "CTxOut(nValue=%i.%08i scriptPubKey=%s)" \
            % (self.nValue // 100000000, self.nValue % 100000000, self.scriptPubKey.hex())


class CScriptWitness(object):
    def __init__(self) -> None:
        # stack is a vector of strings
        self.stack: List[bytes] = []

    def __repr__(self) -> str:
        return "CScriptWitness(%s)" % \
               (",".join([x.hex() for x in self.stack]))

    def is_null(self) -> bool:
        if self.stack:
            return False
        return True


class CTxInWitness(object):
    def __init__(self) -> None:
        self.scriptWitness = CScriptWitness()

    def deserialize(self, f: Readable) -> None:
        self.scriptWitness.stack = deser_string_vector(f)

    def serialize(self) -> bytes:
        return ser_string_vector(self.scriptWitness.stack)

    def __repr__(self) -> str:
        return repr(self.scriptWitness)

    def is_null(self) -> bool:
        return self.scriptWitness.is_null()


class CTxWitness(object):
    def __init__(self) -> None:
        self.vtxinwit: List[CTxInWitness] = []

    def deserialize(self, f: Readable) -> None:
        for i in range(len(self.vtxinwit)):
            self.vtxinwit[i].deserialize(f)

    def serialize(self) -> bytes:
        r = b""
        # This is different than the usual vector serialization --
        # we omit the length of the vector, which is required to be
        # the same length as the transaction's vin vector.
        for x in self.vtxinwit:
            r += x.serialize()
        return r

    def __repr__(self) -> str:
        return "CTxWitness(%s)" % \
               (';'.join([repr(x) for x in self.vtxinwit]))

    def is_null(self) -> bool:
        for x in self.vtxinwit:
            if not x.is_null():
                return False
        return True


class CTransaction(object):
    def __init__(self, tx: Optional['CTransaction'] = None) -> None:
        if tx is None:
            self.nVersion = 1
            self.vin: List[CTxIn] = []
            self.vout: List[CTxOut] = []
            self.wit = CTxWitness()
            self.nLockTime = 0
            self.sha256: Optional[int] = None
            self.hash: Optional[str] = None
        else:
            self.nVersion = tx.nVersion
            self.vin = copy.deepcopy(tx.vin)
            self.vout = copy.deepcopy(tx.vout)
            self.nLockTime = tx.nLockTime
            self.sha256 = tx.sha256
            self.hash = tx.hash
            self.wit = copy.deepcopy(tx.wit)

    def deserialize(self, f: Readable) -> None:
        self.nVersion = struct.unpack("<i", f.read(4))[0]
        self.vin = deser_vector(f, CTxIn)
        flags = 0
        if len(self.vin) == 0:
            flags = struct.unpack("<B", f.read(1))[0]
            # Not sure why flags can't be zero, but this
            # matches the implementation in bitcoind
            if (flags != 0):
                self.vin = deser_vector(f, CTxIn)
                self.vout = deser_vector(f, CTxOut)
        else:
            self.vout = deser_vector(f, CTxOut)
        self.wit = CTxWitness()
        if flags != 0:
            self.wit.vtxinwit = [CTxInWitness() for i in range(len(self.vin))]
            self.wit.deserialize(f)
        self.nLockTime = struct.unpack("<I", f.read(4))[0]
        self.sha256 = None
        self.hash = None

    @classmethod
    def from_hex(cls, data: Union[bytes, str]) -> 'CTransaction':
        """
        Deserialize a transaction from raw bytes or a hex string.
        """
        raw = to_bytes(data, 'transaction')
        tx = cls()
        try:
            tx.deserialize(BytesIO(raw))
        except struct.error:
            raise BadArgumentError("Truncated transaction")
        tx.rehash()
        return tx

    def serialize_without_witness(self) -> bytes:
        r = b""
        r += struct.pack("<i", self.nVersion)
        r += ser_vector(self.vin)
        r += ser_vector(self.vout)
        r += struct.pack("<I", self.nLockTime)
        return r

    # Only serialize with witness when explicitly called for
    def serialize_with_witness(self) -> bytes:
        flags = 0
        if not self.wit.is_null():
            flags |= 1
        r = b""
        r += struct.pack("<i", self.nVersion)
        if flags:
            r += ser_vector([])
            r += struct.pack("<B", flags)
        r += ser_vector(self.vin)
        r += ser_vector(self.vout)
        if flags & 1:
            if (len(self.wit.vtxinwit) != len(self.vin)):
                # vtxinwit must have the same length as vin
                self.wit.vtxinwit = self.wit.vtxinwit[:len(self.vin)]
                for _ in range(len(self.wit.vtxinwit), len(self.vin)):
                    self.wit.vtxinwit.append(CTxInWitness())
            r += self.wit.serialize()
        r += struct.pack("<I", self.nLockTime)
        return r

    # Regular serialization is without witness -- must explicitly
    # call serialize_with_witness to include witness data.
    def serialize(self) -> bytes:
        return self.serialize_without_witness()

    def to_hex(self) -> str:
        return self.serialize_with_witness().hex()

    # Recalculate the txid (transaction hash without witness)
    def rehash(self) -> None:
        self.sha256 = None
        self.calc_sha256()

    # We will only cache the serialization without witness in
    # self.sha256 and self.hash -- those are expected to be the txid.
    def calc_sha256(self, with_witness: bool = False) -> Optional[int]:
        if with_witness:
            # Don't cache the result, just return it
            return uint256_from_str(hash256(self.serialize_with_witness()))

        if self.sha256 is None:
            self.sha256 = uint256_from_str(hash256(self.serialize_without_witness()))
        self.hash = hash256(self.serialize())[::-1].hex()
        return None

    def txid(self) -> str:
        """The transaction id in display hex, always computed from the current contents"""
        return hash256(self.serialize_without_witness())[::-1].hex()

    def get_witness(self, i: int) -> List[bytes]:
        if i < len(self.wit.vtxinwit):
            return self.wit.vtxinwit[i].scriptWitness.stack
        return []

    def set_witness(self, i: int, stack: List[bytes]) -> None:
        while len(self.wit.vtxinwit) < len(self.vin):
            self.wit.vtxinwit.append(CTxInWitness())
        self.wit.vtxinwit[i].scriptWitness.stack = list(stack)

    def is_null(self) -> bool:
        return len(self.vin) == 0 and len(self.vout) == 0

    def __repr__(self) -> str:
        return "CTransaction(nVersion=%i vin=%s vout=%s wit=%s nLockTime=%i)" \
            % (self.nVersion, repr(self.vin), repr(self.vout), repr(self.wit), self.nLockTime)


class Coin(object):
    """
    An output being spent together with the outpoint that identifies it.
    """
    def __init__(self, output: CTxOut, prevout: COutPoint, version: int = 1, height: int = -1, coinbase: bool = False) -> None:
        self.output = output
        self.prevout = prevout
        self.version = version
        self.height = height
        self.coinbase = coinbase

    @property
    def value(self) -> int:
        return self.output.nValue

    @property
    def script(self) -> bytes:
        return self.output.scriptPubKey

    def get_type(self) -> str:
        return self.output.get_type()

    def get_address(self, network: Union[Network, str, None] = None) -> Optional[str]:
        return self.output.get_address(network)

    @classmethod
    def from_tx(cls, tx: CTransaction, index: int, height: int = -1) -> 'Coin':
        if index >= len(tx.vout):
            raise BadArgumentError(f"Transaction {tx.txid()} has no output {index}")
        prevout = COutPoint(int(tx.txid(), 16), index)
        return cls(copy.deepcopy(tx.vout[index]), prevout, tx.nVersion, height, len(tx.vin) == 1 and tx.vin[0].prevout.is_null())

    def __repr__(self) -> str:
        return "Coin(prevout=%s output=%s)" % (repr(self.prevout), repr(self.output))


def signature_hash_legacy(tx: CTransaction, index: int, script_code: bytes, hashtype: int = SIGHASH_ALL) -> bytes:
    """
    Compute the pre-segwit signature hash of an input.

    :param tx: The spending transaction
    :param index: The index of the input being signed
    :param script_code: The script being satisfied (output script or redeem script)
    :param hashtype: The sighash type, only SIGHASH_ALL is supported
    :return: The 32 byte digest
    """
    if hashtype != SIGHASH_ALL:
        raise BadArgumentError(f"Unsupported sighash type {hashtype}")
    txtmp = CTransaction(tx)
    for i, txin in enumerate(txtmp.vin):
        txin.scriptSig = script_code if i == index else b""
    return hash256(txtmp.serialize_without_witness() + struct.pack("<I", hashtype))


def signature_hash_segwit(tx: CTransaction, index: int, script_code: bytes, amount: int, hashtype: int = SIGHASH_ALL) -> bytes:
    """
    Compute the BIP 143 signature hash of a v0 witness input.

    :param tx: The spending transaction
    :param index: The index of the input being signed
    :param script_code: The BIP 143 script code
    :param amount: The value of the output being spent
    :param hashtype: The sighash type, only SIGHASH_ALL is supported
    :return: The 32 byte digest
    """
    if hashtype != SIGHASH_ALL:
        raise BadArgumentError(f"Unsupported sighash type {hashtype}")
    hash_prevouts = hash256(b"".join(txin.prevout.serialize() for txin in tx.vin))
    hash_sequence = hash256(b"".join(struct.pack("<I", txin.nSequence) for txin in tx.vin))
    hash_outputs = hash256(b"".join(txout.serialize() for txout in tx.vout))

    txin = tx.vin[index]
    ss = struct.pack("<i", tx.nVersion)
    ss += hash_prevouts
    ss += hash_sequence
    ss += txin.prevout.serialize()
    ss += ser_string(script_code)
    ss += struct.pack("<q", amount)
    ss += struct.pack("<I", txin.nSequence)
    ss += hash_outputs
    ss += struct.pack("<I", tx.nLockTime)
    ss += struct.pack("<I", hashtype)
    return hash256(ss)
