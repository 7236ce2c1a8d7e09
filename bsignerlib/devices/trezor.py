"""
Trezor Devices
**************

Trezor devices are driven through a TrezorConnect style session: every request is a
mapping and every response is ``{"success": bool, "payload": {...}}``.
The session is created by the caller and handed to the device manager.
"""

import asyncio
import base64
import logging

from functools import wraps
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
    Union,
)
from typing_extensions import Protocol

from .device import (
    Device,
    PathLike,
    locked,
)
from ..common import (
    Network,
    Vendor,
    get_network_params,
)
from ..errors import (
    ActionCanceledError,
    BadArgumentError,
    DeviceConnectionError,
    DeviceFailureError,
    DeviceNotReadyError,
    UnsupportedInputError,
)
from ..helpers import (
    derive_cosigner_key,
    parse_path,
    prepare_sign_options,
)
from ..input_data import (
    CosignerKey,
    InputData,
)
from ..interpreter import parse_script
from ..key import ExtendedKey
from .._script import (
    MAX_MULTISIG_PUBKEYS,
    SIGHASH_ALL,
    is_signature_encoding,
)
from ..serializations import (
    CTransaction,
    CTxIn,
    CTxOut,
)

DEVICE_EVENT = 'DEVICE_EVENT'

DEVICE_CONNECT = 'device-connect'
DEVICE_CONNECT_UNACQUIRED = 'device-connect_unacquired'
DEVICE_DISCONNECT = 'device-disconnect'
DEVICE_CHANGED = 'device-changed'

# Trezor only knows the main and test networks
COIN_NAMES = {
    Network.MAIN: 'Bitcoin',
    Network.TESTNET: 'Testnet',
}


class TrezorConnect(Protocol):
    """
    The session library talking to Trezor devices.

    Besides the requests it delivers device events to listeners registered with :meth:`on`.
    """

    def on(self, event: str, listener: Callable[..., Any]) -> Any:
        ...

    def off(self, event: str, listener: Callable[..., Any]) -> Any:
        ...

    async def init(self, settings: Dict[str, Any]) -> None:
        ...

    async def dispose(self) -> None:
        ...

    async def get_public_key(self, params: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def sign_transaction(self, params: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def sign_message(self, params: Dict[str, Any]) -> Dict[str, Any]:
        ...


def trezor_exception(f: Callable[..., Any]) -> Any:
    @wraps(f)
    async def func(*args: Any, **kwargs: Any) -> Any:
        try:
            return await f(*args, **kwargs)
        except ValueError as e:
            raise BadArgumentError(str(e))
        except asyncio.TimeoutError:
            raise DeviceConnectionError('{} timed out'.format(f.__name__))
    return func


def check_response(response: Dict[str, Any], func_name: str) -> Dict[str, Any]:
    """
    Raise the error a failed Trezor response describes.

    :param response: The session response
    :param func_name: Name of the failed operation for error messages
    :return: The payload of a successful response
    """
    payload = response.get('payload')
    if response.get('success'):
        if not isinstance(payload, dict):
            raise DeviceFailureError("Response without payload.")
        return payload

    if not isinstance(payload, dict) or not payload.get('error'):
        raise DeviceFailureError("Unknown error without payload.")

    error = str(payload['error'])
    lowered = error.lower()
    if 'cancel' in lowered:
        raise ActionCanceledError('{} canceled'.format(func_name))
    if 'pin' in lowered or 'locked' in lowered:
        raise DeviceNotReadyError(error)
    if 'disconnected' in lowered or 'not found' in lowered:
        raise DeviceConnectionError(error)
    raise DeviceFailureError(error)


def get_coin_name(network: Union[Network, str, None]) -> str:
    return COIN_NAMES.get(Network.get(network), COIN_NAMES[Network.TESTNET])


def get_coin_network(network: Union[Network, str, None]) -> Network:
    """
    Addresses on every network except main are sent with the testnet encoding.
    """
    if Network.get(network) == Network.MAIN:
        return Network.MAIN
    return Network.TESTNET


def tx_to_trezor(tx: CTransaction) -> Dict[str, Any]:
    """
    Describe a previous transaction the way Trezor expects reference transactions.
    """
    return {
        'hash': tx.txid(),
        'version': tx.nVersion,
        'lock_time': tx.nLockTime,
        'inputs': [{
            'prev_hash': txin.prevout.txid,
            'prev_index': txin.prevout.n,
            'sequence': txin.nSequence,
            'script_sig': txin.scriptSig.hex(),
        } for txin in tx.vin],
        'bin_outputs': [{
            'amount': txout.nValue,
            'script_pubkey': txout.scriptPubKey.hex(),
        } for txout in tx.vout],
    }


def strip_hash_type(sigstr: str) -> str:
    """
    Remove the sighash byte from a hex signature, if it has one.
    """
    if sigstr == '':
        return ''

    signature = bytes.fromhex(sigstr)
    if is_signature_encoding(signature):
        return signature[:-1].hex()

    if not is_signature_encoding(signature + bytes([SIGHASH_ALL])):
        raise BadArgumentError(f"Invalid signature encoding: {sigstr}")
    return sigstr


def sort_keys(pubkeys: List[CosignerKey]) -> List[CosignerKey]:
    return sorted(pubkeys, key=lambda pk: derive_cosigner_key(pk.xpub, pk.path))


def process_multisig(data: InputData) -> Dict[str, Any]:
    if data.multisig is None:
        raise BadArgumentError("expected multisig in inputData.")

    m = data.multisig.m
    n = len(data.multisig.pubkeys)
    if m > n:
        raise BadArgumentError("M is more than N in multisig.")
    if n > MAX_MULTISIG_PUBKEYS:
        raise BadArgumentError("Too many public keys in multisig.")

    sorted_pubkeys = sort_keys(data.multisig.pubkeys)
    return {
        'm': m,
        'pubkeys': [{
            'node': pk.xpub,
            'address_n': pk.path.to_list(),
        } for pk in sorted_pubkeys],
        'signatures': [strip_hash_type(pk.signature) for pk in sorted_pubkeys],
    }


def process_input(txin: CTxIn, data: Optional[InputData], ref_txs: Dict[str, CTransaction]) -> Tuple[Dict[str, Any], Optional[CTransaction]]:
    """
    Build a Trezor TransactionInput.

    Input types:
     - SPENDADDRESS: standard P2PKH address
     - SPENDMULTISIG: P2SH multisig address
     - EXTERNAL: reserved for external inputs (coinjoin)
     - SPENDWITNESS: native SegWit
     - SPENDP2SHWITNESS: SegWit over P2SH

    :return: The input and the reference transaction it needs, if any
    """
    if data is None or not data.path.to_list():
        raise UnsupportedInputError("External inputs are not supported.")

    coin = data.coin
    trezor_input: Dict[str, Any] = {
        'prev_hash': txin.prevout.txid,
        'prev_index': txin.prevout.n,
        'sequence': txin.nSequence,
        'address_n': data.path.to_list(),
    }

    coin_type = coin.get_type()
    legacy = False
    multisig = False

    if coin_type == 'pubkeyhash':
        legacy = True
        script_type = 'SPENDADDRESS'
    elif coin_type == 'witnesspubkeyhash':
        script_type = 'SPENDWITNESS'
    elif coin_type == 'witnessscripthash':
        raise UnsupportedInputError("Native witness script hash inputs are not supported yet.")
    elif coin_type == 'scripthash':
        if not data.witness:
            legacy = True
            multisig = True
            script_type = 'SPENDMULTISIG'
        else:
            # nested p2wpkh or p2wsh
            script_type = 'SPENDP2SHWITNESS'
            multisig = data.multisig is not None
    elif coin_type == 'pubkey':
        raise UnsupportedInputError("Pay to public key inputs are not supported.")
    else:
        raise UnsupportedInputError("Can not figure out input type.")

    trezor_input['script_type'] = script_type

    if not legacy:
        trezor_input['amount'] = str(coin.value)

    ref_tx = None
    if legacy:
        ref_tx = ref_txs.get(txin.prevout.txid)
        if ref_tx is None:
            raise BadArgumentError("reference transaction required.")

    if multisig:
        trezor_input['multisig'] = process_multisig(data)

    return trezor_input, ref_tx


def process_output(txout: CTxOut, network: Network) -> Dict[str, Any]:
    """
    Build a Trezor TransactionOutput.

    Every standard output is sent as PAYTOADDRESS, OP_RETURN outputs as PAYTOOPRETURN.
    """
    out_type = txout.get_type()

    if out_type == 'nulldata':
        data = b"".join(d for _, d in parse_script(txout.scriptPubKey[1:]) if d is not None)
        return {
            'amount': str(txout.nValue),
            'script_type': 'PAYTOOPRETURN',
            'op_return_data': data.hex(),
        }

    if out_type in ('multisig', 'pubkey'):
        raise UnsupportedInputError(f"Outputs of type {out_type} are not supported.")

    address = txout.get_address(network)
    if address is None:
        raise UnsupportedInputError("Could not determine the output address.")

    return {
        'amount': str(txout.nValue),
        'script_type': 'PAYTOADDRESS',
        'address': address,
    }


def collect_input_txs(mappings: Dict[bytes, InputData]) -> Dict[str, CTransaction]:
    ref_txs = {}
    for data in mappings.values():
        if data.prev_tx is not None:
            ref_txs[data.prev_tx.txid()] = data.prev_tx
    return ref_txs


def create_trezor_inputs(tx: CTransaction, mappings: Dict[bytes, InputData], network: Union[Network, str, None] = None) -> Dict[str, Any]:
    """
    Prepare a Trezor signing request.

    Signing itself does not depend on the address encoding, so every network other than main is sent as testnet.

    :param tx: The transaction to sign
    :param mappings: Input metadata indexed by outpoint
    :param network: The network
    :return: The request with ``inputs``, ``outputs``, ``refTxs`` and transaction fields
    """
    coin_network = get_coin_network(network)
    ref_txs = collect_input_txs(mappings)

    request: Dict[str, Any] = {
        'inputs': [],
        'outputs': [],
        'refTxs': [],
        'version': tx.nVersion,
        'lock_time': tx.nLockTime,
        'inputs_count': len(tx.vin),
        'outputs_count': len(tx.vout),
    }

    added = set()
    for txin in tx.vin:
        data = mappings.get(txin.prevout.to_key())
        trezor_input, ref_tx = process_input(txin, data, ref_txs)
        if ref_tx is not None and ref_tx.txid() not in added:
            added.add(ref_tx.txid())
            request['refTxs'].append(tx_to_trezor(ref_tx))
        request['inputs'].append(trezor_input)

    for txout in tx.vout:
        request['outputs'].append(process_output(txout, coin_network))

    return request


class TrezorDevice(Device):
    """
    :param path: Transport path of the device, used as its handle
    :param label: The label set on the device
    :param device_id: The device identifier
    :param session: The session the device is reached through
    :param status: The device status as reported by the session
    :param network: The network
    :param logger: Parent logger
    """

    def __init__(
        self,
        path: str,
        label: str,
        device_id: str,
        session: TrezorConnect,
        status: Optional[str] = None,
        network: Union[Network, str, None] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        super(TrezorDevice, self).__init__(network, logger)
        self.logger = self.logger.getChild('trezor-device')
        if not isinstance(path, str):
            raise BadArgumentError("path must be a string.")
        if not isinstance(label, str):
            raise BadArgumentError("label must be a string.")
        if not isinstance(device_id, str):
            raise BadArgumentError("device_id must be a string.")
        self.path = path
        self.label = label
        self.device_id = device_id
        self.status = status
        self.session = session

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], session: TrezorConnect, network: Union[Network, str, None] = None, logger: Optional[logging.Logger] = None) -> 'TrezorDevice':
        """
        Create a device from the payload of a session device event.
        """
        features = payload.get('features') or {}
        return cls(
            path=payload.get('path'),
            label=payload.get('label', ''),
            device_id=features.get('device_id', payload.get('id')),
            session=session,
            status=payload.get('status'),
            network=network,
            logger=logger,
        )

    @property
    def vendor(self) -> str:
        return Vendor.TREZOR

    @property
    def handle(self) -> str:
        return self.path

    @property
    def key(self) -> str:
        return self.device_id

    @property
    def opened(self) -> bool:
        # the session owns the connection
        return True

    async def open(self) -> None:
        self.check_available()

    async def close(self) -> None:
        self.check_available()

    async def destroy(self) -> None:
        self.check_available()
        self.destroyed = True

    def _request(self, **params: Any) -> Dict[str, Any]:
        return dict(device={'path': self.handle}, coin=get_coin_name(self.network), **params)

    @locked
    @trezor_exception
    async def get_public_key(self, path: PathLike, get_parent_fingerprint: bool = True) -> ExtendedKey:
        self.check_available()
        path = parse_path(path)
        self.logger.debug("getting public key for path %s", path)

        response = await self.session.get_public_key(self._request(path=path.to_string()))
        payload = check_response(response, 'get_public_key')

        return ExtendedKey(
            get_network_params(self.network).xpub,
            payload['depth'],
            int(payload.get('fingerprint', 0)).to_bytes(4, byteorder="big"),
            payload['childNum'],
            bytes.fromhex(payload['chainCode']),
            None,
            bytes.fromhex(payload['publicKey']),
        )

    @locked
    @trezor_exception
    async def get_signatures(self, tx: CTransaction, input_data: Sequence[Union[InputData, dict]]) -> List[bytes]:
        self.check_available()
        self.logger.debug("Getting signatures for transaction.")

        mappings = prepare_sign_options(input_data)
        request = create_trezor_inputs(tx, mappings, self.network)

        response = await self.session.sign_transaction(self._request(**request))
        payload = check_response(response, 'get_signatures')

        # Only SIGHASH_ALL is requested
        return [bytes.fromhex(hexsig) + bytes([SIGHASH_ALL]) for hexsig in payload['signatures']]

    @locked
    @trezor_exception
    async def sign_transaction(self, tx: CTransaction, input_data: Sequence[Union[InputData, dict]]) -> CTransaction:
        self.check_available()
        self.logger.debug("Sign transaction.")

        mappings = prepare_sign_options(input_data)
        request = create_trezor_inputs(tx, mappings, self.network)

        response = await self.session.sign_transaction(self._request(**request))
        payload = check_response(response, 'sign_transaction')

        return CTransaction.from_hex(payload['serializedTx'])

    @locked
    @trezor_exception
    async def sign_message(self, path: PathLike, message: Union[str, bytes]) -> bytes:
        self.check_available()
        if not isinstance(message, (str, bytes)):
            raise BadArgumentError("message must be bytes or a string.")

        path = parse_path(path)
        self.logger.debug("Signing message using path: %s", path)

        if isinstance(message, str):
            message = message.encode("utf-8")

        response = await self.session.sign_message(self._request(
            path=path.to_list(),
            message=message.hex(),
            hex=True,
        ))
        payload = check_response(response, 'sign_message')
        return base64.b64decode(payload['signature'])
