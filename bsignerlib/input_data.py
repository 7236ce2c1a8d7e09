"""
Input Data
**********

:class:`InputData` carries everything a signer needs to know about one transaction input:
the derivation path of the signing key, the coin being spent, the funding transaction,
whether the input is a witness spend, and the multisig setup with other cosigners' signatures.
"""

import struct

from typing import (
    Any,
    Dict,
    List,
    Optional,
    Union,
)

from .common import Network
from .errors import BadArgumentError
from .path import Path
from .serializations import (
    COutPoint,
    CTransaction,
    CTxOut,
    Coin,
    to_bytes,
)


class CosignerKey(object):
    """
    One participant of a multisig input.

    :param xpub: The cosigner's account level extended public key
    :param path: The path relative to ``xpub``, usually ``[branch, index]``
    :param signature: Hex signature already produced by this cosigner, or an empty string
    """

    def __init__(self, xpub: str, path: Path, signature: str = "") -> None:
        self.xpub = xpub
        self.path = path
        self.signature = signature

    def to_json(self) -> Dict[str, Any]:
        return {
            'xpub': self.xpub,
            'path': self.path.to_string(),
            'signature': self.signature,
        }

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CosignerKey):
            return NotImplemented
        return self.to_json() == other.to_json()

    def __repr__(self) -> str:
        return f"CosignerKey(xpub={self.xpub} path={self.path} signature={self.signature or None})"


class MultisigInfo(object):
    """
    Threshold and ordered cosigner list of a multisig input.
    """

    def __init__(self, m: int, pubkeys: List[CosignerKey]) -> None:
        self.m = m
        self.pubkeys = pubkeys

    @classmethod
    def from_options(cls, options: Dict[str, Any], name: str = 'options.multisig') -> 'MultisigInfo':
        if not isinstance(options, dict):
            raise BadArgumentError(f"{name} must be a mapping.")

        m = options.get('m')
        if isinstance(m, bool) or not isinstance(m, int) or not 0 <= m <= 0xffffffff:
            raise BadArgumentError(f"{name}.m must be a number.")
        if m < 1 or m > 16:
            raise BadArgumentError(f"{name}.m must be between 1 and 16.")

        pubkeys = options.get('pubkeys')
        if not isinstance(pubkeys, list):
            raise BadArgumentError(f"{name}.pubkeys must be an array.")
        if len(pubkeys) < m:
            raise BadArgumentError("m must be smaller than n.")

        keys = []
        for pk in pubkeys:
            if isinstance(pk, CosignerKey):
                keys.append(pk)
                continue
            if not isinstance(pk, dict) or not isinstance(pk.get('xpub'), str):
                raise BadArgumentError(f"{name}.pubkeys[i].xpub must be a string.")
            if not isinstance(pk.get('signature'), str):
                raise BadArgumentError(f"{name}.pubkeys[i].signature must be a hex string.")
            path = parse_path(pk.get('path'), f"{name}.pubkeys[i].path")
            keys.append(CosignerKey(pk['xpub'], path, pk['signature']))

        return cls(m, keys)

    def to_json(self) -> Dict[str, Any]:
        return {
            'm': self.m,
            'pubkeys': [pk.to_json() for pk in self.pubkeys],
        }

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MultisigInfo):
            return NotImplemented
        return self.to_json() == other.to_json()


class InputData(object):
    """
    Signing metadata for a single transaction input.
    """

    def __init__(self) -> None:
        self.path = Path()
        self.witness = False
        self.prevout = COutPoint()
        self.prev_tx: Optional[CTransaction] = None
        self.output = CTxOut()
        self.multisig: Optional[MultisigInfo] = None

        self._coin: Optional[Coin] = None

    @classmethod
    def from_options(cls, options: Dict[str, Any], network: Union[Network, str, None] = None) -> 'InputData':
        """
        Create an InputData from loosely typed options.

        Recognized keys are ``path``, ``witness``, ``prevout``, ``output``, ``coin``, ``prevTX`` and ``multisig``.
        Byte-like values may be given as bytes or hex, structured values as mappings or as the typed objects.

        :param options: The options mapping
        :param network: Network used to resolve output addresses
        :return: The InputData
        """
        if not isinstance(options, dict):
            raise BadArgumentError("options must be a mapping.")
        # for external inputs, we may have to remove this requirement.
        if not options.get('path'):
            raise BadArgumentError("options.path is required.")
        if options.get('prevout') is None and options.get('coin') is None:
            raise BadArgumentError("options.prevout or options.coin is required.")
        if options.get('output') is None and options.get('coin') is None and options.get('prevTX') is None:
            raise BadArgumentError("options.output, options.coin or options.prevTX is required.")

        data = cls()
        data.path = parse_path(options['path'], 'options.path')

        if options.get('prevout') is not None:
            data.prevout = parse_prevout(options['prevout'])

        if options.get('output') is not None:
            data.output = parse_output(options['output'], network)

        coin = None
        if options.get('coin') is not None:
            coin = parse_coin(options['coin'], network)

        if coin is not None and options.get('prevout') is None:
            if is_minimal_coin(options['coin']):
                raise BadArgumentError("options.prevout is required with minimal coin (no hash/index)")
            assert coin.prevout is not None
            data.prevout = COutPoint(coin.prevout.hash, coin.prevout.n)

        if coin is not None and options.get('output') is None:
            data.output = CTxOut(coin.output.nValue, coin.output.scriptPubKey)

        if coin is not None and not is_minimal_coin(options['coin']):
            data._coin = coin

        if options.get('witness') is not None:
            if not isinstance(options['witness'], bool):
                raise BadArgumentError("options.witness must be a boolean.")
            data.witness = options['witness']

        if not data.witness and options.get('prevTX') is None:
            raise BadArgumentError("non-witness inputs need prevTX.")

        if options.get('prevTX') is not None:
            data.prev_tx = parse_tx(options['prevTX'])
            if data.prev_tx.txid() != data.prevout.txid:
                raise BadArgumentError("prevout hash and prevTX hash do not match.")
            if data.prevout.n >= len(data.prev_tx.vout):
                raise BadArgumentError("prevout index is not in prevTX.")
            output = data.prev_tx.vout[data.prevout.n]
            data.output = CTxOut(output.nValue, output.scriptPubKey)
            data._coin = None

        if options.get('multisig') is not None:
            multisig = options['multisig']
            if isinstance(multisig, MultisigInfo):
                multisig = multisig.to_json()
            data.multisig = MultisigInfo.from_options(multisig)

        return data

    @classmethod
    def from_json(cls, json: Dict[str, Any], network: Union[Network, str, None] = None) -> 'InputData':
        """
        Create an InputData from the mapping produced by :meth:`to_json`.
        """
        if not isinstance(json, dict):
            raise BadArgumentError("json must be a mapping.")
        if not isinstance(json.get('path'), str):
            raise BadArgumentError("json.path must be a string.")
        if not isinstance(json.get('witness'), bool):
            raise BadArgumentError("json.witness must be a boolean.")
        if json.get('prevout') is None and json.get('coin') is None:
            raise BadArgumentError("json.prevout or json.coin is required.")
        if json.get('output') is None and json.get('coin') is None:
            raise BadArgumentError("json.output or json.coin is required.")

        data = cls()
        data.path = Path.from_string(json['path'])
        data.witness = json['witness']

        if json.get('prevout') is not None:
            data.prevout = COutPoint.from_json(json['prevout'])

        if json.get('output') is not None:
            data.output = CTxOut.from_json(json['output'], network)

        coin = json.get('coin')
        if coin is not None and json.get('prevout') is None:
            if not isinstance(coin.get('hash'), str) or not isinstance(coin.get('index'), int):
                raise BadArgumentError("Can not use minimal encoded Coin for prevout.")
            data.prevout = COutPoint.from_json({'hash': coin['hash'], 'index': coin['index']})

        if coin is not None and json.get('output') is None:
            data.output = CTxOut.from_json(coin, network)

        if json.get('prevTX') is not None:
            data.prev_tx = CTransaction.from_hex(json['prevTX'])

        if json.get('multisig') is not None:
            multisig = json['multisig']
            if not isinstance(multisig, dict) or not isinstance(multisig.get('pubkeys'), list):
                raise BadArgumentError("json.multisig.pubkeys must be an array.")
            for pk in multisig['pubkeys']:
                if not isinstance(pk, dict) or not isinstance(pk.get('path'), str):
                    raise BadArgumentError("json.multisig.pubkeys[i].path must be a string.")
            data.multisig = MultisigInfo.from_options(multisig, 'json.multisig')

        return data

    def to_json(self, network: Union[Network, str, None] = None) -> Dict[str, Any]:
        return {
            'path': self.path.to_string(),
            'prevout': self.prevout.to_json(),
            'witness': self.witness,
            'output': self.output.to_json(network),
            'prevTX': self.prev_tx.to_hex() if self.prev_tx is not None else None,
            'multisig': self.multisig.to_json() if self.multisig is not None else None,
        }

    get_json = to_json

    def to_key(self) -> bytes:
        return self.prevout.to_key()

    @property
    def coin(self) -> Coin:
        """
        The coin spent by this input, assembled from output and prevout on first access.
        """
        if self._coin is None:
            self._coin = Coin(
                CTxOut(self.output.nValue, self.output.scriptPubKey),
                COutPoint(self.prevout.hash, self.prevout.n),
                self.prev_tx.nVersion if self.prev_tx is not None else 1,
                coinbase=self.prevout.is_null(),
            )
        return self._coin

    def refresh(self) -> None:
        self._coin = None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, InputData):
            return NotImplemented
        return self.to_json() == other.to_json()

    def __repr__(self) -> str:
        return f"InputData(path={self.path} prevout={self.prevout.txid}:{self.prevout.n} witness={self.witness})"

    @staticmethod
    def is_input_data(obj: object) -> bool:
        return isinstance(obj, InputData)


def parse_path(path: Any, name: str) -> Path:
    if isinstance(path, Path):
        return path
    if isinstance(path, str):
        return Path.from_string(path)
    if isinstance(path, (list, tuple)):
        return Path.from_list(path, False)
    if isinstance(path, dict):
        return Path.from_options(path)
    raise BadArgumentError(f"Unknown type for {name}.")


def parse_tx(tx: Any) -> CTransaction:
    if isinstance(tx, CTransaction):
        return tx
    if isinstance(tx, (bytes, bytearray, str)):
        return CTransaction.from_hex(tx)
    raise BadArgumentError("Unknown type for options.prevTX")


def parse_output(output: Any, network: Union[Network, str, None] = None) -> CTxOut:
    if isinstance(output, CTxOut):
        return CTxOut(output.nValue, output.scriptPubKey)
    if isinstance(output, (bytes, bytearray, str)):
        try:
            return CTxOut.from_raw(to_bytes(output, 'options.output'))
        except struct.error:
            raise BadArgumentError("Truncated output")
    if isinstance(output, dict):
        return CTxOut.from_json(output, network)
    raise BadArgumentError("Unknown type for options.output.")


def parse_prevout(prevout: Any) -> COutPoint:
    if isinstance(prevout, COutPoint):
        return COutPoint(prevout.hash, prevout.n)
    if isinstance(prevout, (bytes, bytearray, str)):
        return COutPoint.from_raw(to_bytes(prevout, 'options.prevout'))
    if isinstance(prevout, dict):
        return COutPoint.from_json(prevout)
    raise BadArgumentError("Unknown type for options.prevout.")


def parse_coin(coin: Any, network: Union[Network, str, None] = None) -> Coin:
    """
    Parse a coin given as a :class:`Coin`, a serialized output or a mapping.

    A mapping carries ``value`` and ``script`` (or ``address``) and optionally
    ``hash``, ``index``, ``version``, ``height`` and ``coinbase``.
    """
    if isinstance(coin, Coin):
        return coin
    if isinstance(coin, (bytes, bytearray, str)):
        return Coin(parse_output(coin), COutPoint())
    if isinstance(coin, dict):
        output = CTxOut.from_json(coin, network)
        prevout = COutPoint()
        if coin.get('hash') is not None:
            txhash = coin['hash']
            prevout.hash = txhash if isinstance(txhash, int) else int(to_bytes(txhash, 'options.coin.hash').hex(), 16)
        if coin.get('index') is not None:
            prevout.n = coin['index']
        return Coin(
            output,
            prevout,
            coin.get('version', 1),
            coin.get('height', -1),
            coin.get('coinbase', False),
        )
    raise BadArgumentError("Unknown type for options.coin.")


def is_minimal_coin(coin: Any) -> bool:
    if coin is None:
        return True
    if isinstance(coin, Coin):
        return False
    if isinstance(coin, dict):
        if coin.get('index') is None:
            return True
        if not coin.get('coinbase', False) and coin.get('hash') is None:
            return True
        return False
    return True
