"""
Signing Helpers
***************

Vendor independent utilities shared by the device implementations.
"""

from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Union,
)

from .errors import (
    BadArgumentError,
    ConsistencyError,
    InvalidPathError,
)
from .input_data import InputData
from .key import ExtendedKey
from .mtx import (
    KeyRing,
    MultisigTransaction,
)
from .path import Path
from ._script import multisig_script
from .serializations import (
    CTransaction,
    Coin,
)


def parse_path(path: Union[Path, str, Sequence[int]]) -> Path:
    """
    Get a fresh :class:`~bsignerlib.path.Path` from a Path, a path string or a list of components.
    """
    if isinstance(path, Path):
        return path.clone()
    if isinstance(path, (list, tuple)):
        return Path.from_list(path)
    if isinstance(path, str):
        return Path.from_string(path)
    raise InvalidPathError("Could not parse path.")


def prepare_sign_options(input_data: Iterable[Union[InputData, Dict[str, Any]]]) -> Dict[bytes, InputData]:
    """
    Parse signing metadata and index it by the outpoint each entry spends.

    :param input_data: InputData objects or their options
    :return: Mapping of serialized outpoint to InputData
    """
    mappings: Dict[bytes, InputData] = {}
    for data in input_data:
        if not InputData.is_input_data(data):
            data = InputData.from_options(data)
        assert isinstance(data, InputData)
        mappings[data.to_key()] = data
    return mappings


def get_input_data(mappings: Dict[bytes, InputData], tx: CTransaction, index: int) -> InputData:
    key = tx.vin[index].prevout.to_key()
    data = mappings.get(key)
    if data is None:
        raise BadArgumentError(f"Could not get metadata for input {key.hex()}.")
    return data


def apply_to(target: CTransaction, source: CTransaction) -> CTransaction:
    """
    Copy input scripts and witnesses of a signed transaction into ``target``.

    Both transactions must spend the same outpoints in the same order.

    :param target: The transaction to update in place
    :param source: The signed transaction
    :return: ``target``
    """
    if len(target.vin) != len(source.vin):
        raise ConsistencyError("source and target must be the same.")

    for i, txin in enumerate(target.vin):
        if txin.prevout != source.vin[i].prevout:
            raise ConsistencyError("source and target inputs must be the same.")

    for i, txin in enumerate(target.vin):
        txin.scriptSig = source.vin[i].scriptSig
        target.set_witness(i, source.get_witness(i))
    target.rehash()
    return target


def derive_cosigner_key(xpub: str, path: Path) -> bytes:
    hdpub = ExtendedKey.deserialize(xpub)
    return hdpub.derive_path(path.to_list()).pubkey


def get_redeem_script(data: InputData) -> bytes:
    """
    Build the sorted multisig redeem script of a multisig input.

    Every cosigner key is derived from its account key along its relative path.

    :param data: The input metadata
    :return: The redeem script
    """
    if data.multisig is None:
        raise BadArgumentError("Can not get redeem script for non-multisig input.")

    pubkeys = []
    for pkinfo in data.multisig.pubkeys:
        pubkeys.append(derive_cosigner_key(pkinfo.xpub, pkinfo.path))

    return multisig_script(data.multisig.m, pubkeys)


def create_ring(data: InputData, pubkey: bytes, key: Optional[ExtendedKey] = None) -> KeyRing:
    """
    Create the KeyRing spending an input.

    :param data: The input metadata
    :param pubkey: The signing public key
    :param key: The private key, when the caller can sign
    """
    if not InputData.is_input_data(data):
        raise BadArgumentError("data must be InputData")
    if not isinstance(pubkey, bytes):
        raise BadArgumentError("pubkey must be bytes")

    nested = data.witness and data.coin.get_type() == 'scripthash'

    redeem = None
    if data.multisig is not None:
        redeem = get_redeem_script(data)

    return KeyRing(pubkey, key, data.witness, nested, redeem)


def apply_other_signatures(mtx: MultisigTransaction, mappings: Dict[bytes, InputData]) -> MultisigTransaction:
    """
    Merge the signatures other cosigners have already produced into a transaction.

    :param mtx: The transaction being signed
    :param mappings: Input metadata indexed by outpoint
    :return: ``mtx``
    """
    for i in range(len(mtx.tx.vin)):
        data = get_input_data(mappings, mtx.tx, i)

        # only multisig inputs carry other signatures
        if data.multisig is None:
            continue

        for pkinfo in data.multisig.pubkeys:
            if not pkinfo.signature:
                continue

            signature = bytes.fromhex(pkinfo.signature)
            ring = create_ring(data, derive_cosigner_key(pkinfo.xpub, pkinfo.path))

            mtx.template(ring)
            mtx.apply_signature(i, data.coin, ring, signature, False)

    return mtx


def get_coins(mappings: Dict[bytes, InputData], tx: CTransaction) -> List[Coin]:
    """
    Coins spent by ``tx`` in input order.
    """
    return [get_input_data(mappings, tx, i).coin for i in range(len(tx.vin))]
