"""
Ledger Devices
**************

Ledger devices are reached over HID. The Bitcoin application protocol spoken over the
transport is provided by a :class:`LedgerApp` implementation. By default that is
:class:`LedgerBitcoinApp`, which drives the device with the ``ledger_bitcoin`` client.
"""

import asyncio
import base64
import builtins
import logging
import struct

from functools import partial, wraps
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

import hid

from ledger_bitcoin import (
    Chain,
    WalletPolicy,
    createClient,
)
from ledger_bitcoin.btchip.btchipException import BTChipException
from ledger_bitcoin.client import LegacyClient
from ledger_bitcoin.client_base import ApduException
from ledger_bitcoin.exception.errors import (
    ClaNotSupportedError,
    DenyError,
    IncorrectDataError,
    InsNotSupportedError,
    NotSupportedError,
    SecurityStatusNotSatisfiedError,
    UnknownDeviceError,
    WrongDataLengthError,
    WrongP1P2Error,
    WrongResponseLengthError,
)
from ledger_bitcoin.psbt import PSBT

from .device import (
    Device,
    PathLike,
    locked,
)
from ..common import (
    Network,
    Vendor,
    get_coin_type,
    harden,
    hash160,
    is_hardened,
    sha256,
)
from ..errors import (
    ActionCanceledError,
    BadArgumentError,
    DeviceConnectionError,
    DeviceFailureError,
    UnavailableActionError,
)
from ..helpers import (
    apply_other_signatures,
    get_coins,
    get_redeem_script,
    parse_path,
    prepare_sign_options,
)
from ..input_data import (
    InputData,
    MultisigInfo,
)
from ..key import ExtendedKey
from ..mtx import (
    KeyRing,
    MultisigTransaction,
)
from ..path import Path
from .._script import (
    is_p2sh,
    is_witness,
    p2wpkh_script,
    p2wsh_script,
    redeem_to_script,
)
from ..serializations import (
    CTransaction,
    CTxWitness,
    Coin,
    ser_string,
)

LEDGER_VENDOR_ID = 0x2c97

# default transport timeout in milliseconds
DEFAULT_TIMEOUT = 5000

bad_args = [
    0x6700, # SW_INCORRECT_LENGTH
    0x6A80, # SW_INCORRECT_DATA
    0x6B00, # SW_INCORRECT_P1_P2
    0x6D00, # SW_INS_NOT_SUPPORTED
]

cancels = [
    0x6982, # SW_SECURITY_STATUS_NOT_SATISFIED
    0x6985, # SW_CONDITIONS_OF_USE_NOT_SATISFIED
]

bad_arg_errors = (
    ClaNotSupportedError,
    IncorrectDataError,
    InsNotSupportedError,
    WrongDataLengthError,
    WrongP1P2Error,
)

# BIP 44 purpose of the default single key policies
SINGLESIG_TEMPLATES = {
    'pkh(@0/**)': 44,
    'sh(wpkh(@0/**))': 49,
    'wpkh(@0/**)': 84,
}

PSBT_MAGIC = b"psbt\xff"
PSBT_GLOBAL_UNSIGNED_TX = 0x00
PSBT_IN_NON_WITNESS_UTXO = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_REDEEM_SCRIPT = 0x04
PSBT_IN_WITNESS_SCRIPT = 0x05
PSBT_IN_BIP32_DERIVATION = 0x06


def apdu_message(e: Union[ApduException, BTChipException]) -> str:
    message = getattr(e, 'message', None)
    if message:
        return str(message)
    data = getattr(e, 'data', b"")
    if data:
        return bytes(data).decode("utf-8", errors="replace")
    return f"0x{e.sw:04x}"


def handle_apdu_exception(e: Union[ApduException, BTChipException], func_name: str) -> None:
    if e.sw in bad_args:
        raise BadArgumentError('Bad argument')
    elif e.sw == 0x6F00: # SW_TECHNICAL_PROBLEM
        raise DeviceFailureError(apdu_message(e))
    elif e.sw == 0x6FAA: # SW_HALTED
        raise DeviceConnectionError('Device is asleep')
    elif e.sw in cancels:
        raise ActionCanceledError('{} canceled'.format(func_name))
    else:
        raise DeviceFailureError(apdu_message(e))


def error_message(e: Exception) -> str:
    # ledger_bitcoin errors carry (code, description, message)
    if len(e.args) >= 3 and e.args[2]:
        return str(e.args[2])
    return ", ".join(str(arg) for arg in e.args if arg)


def ledger_exception(f: Callable[..., Any]) -> Any:
    @wraps(f)
    async def func(*args: Any, **kwargs: Any) -> Any:
        try:
            return await f(*args, **kwargs)
        except ValueError as e:
            raise BadArgumentError(str(e))
        except (ApduException, BTChipException) as e:
            handle_apdu_exception(e, f.__name__)
        except (DenyError, SecurityStatusNotSatisfiedError):
            raise ActionCanceledError('{} canceled'.format(f.__name__))
        except bad_arg_errors as e:
            raise BadArgumentError(error_message(e) or 'Bad argument')
        except NotSupportedError as e:
            raise UnavailableActionError(error_message(e))
        except NotImplementedError as e:
            raise UnavailableActionError(str(e))
        except (UnknownDeviceError, WrongResponseLengthError) as e:
            raise DeviceFailureError(error_message(e))
        except asyncio.TimeoutError:
            raise DeviceConnectionError('{} timed out'.format(f.__name__))
        except OSError as e:
            raise DeviceConnectionError(str(e))
    return func


class HIDTransport(object):
    """
    HID connection to a Ledger device.

    :param info: The device entry as returned by ``hid.enumerate``
    :param timeout: Timeout of a single exchange in milliseconds
    """

    def __init__(self, info: Dict[str, Any], timeout: int = DEFAULT_TIMEOUT) -> None:
        self.info = info
        self.path: bytes = info['path']
        self.vendor_id: int = info.get('vendor_id', LEDGER_VENDOR_ID)
        self.product_id: int = info.get('product_id', 0)
        self.serial_number: str = info.get('serial_number') or ''
        self.timeout = timeout
        self.device: Optional[Any] = None

    @property
    def handle(self) -> str:
        return self.path.decode()

    @property
    def opened(self) -> bool:
        return self.device is not None

    async def open(self) -> None:
        if self.device is not None:
            return
        device = hid.device()
        device.open_path(self.path)
        device.set_nonblocking(True)
        self.device = device

    async def close(self) -> None:
        if self.device is not None:
            self.device.close()
            self.device = None

    def _send(self, data: bytes) -> None:
        assert self.device is not None
        data = len(data).to_bytes(2, byteorder="big") + data
        offset = 0
        seq_idx = 0
        while offset < len(data):
            # Header: channel (0x0101), tag (0x05), sequence index
            header = b"\x01\x01\x05" + seq_idx.to_bytes(2, byteorder="big")
            chunk = header + data[offset:offset + 64 - len(header)]
            self.device.write(b"\x00" + chunk)
            offset += 64 - len(header)
            seq_idx += 1

    def _recv(self, timeout_ms: int) -> Tuple[int, bytes]:
        assert self.device is not None
        self.device.set_nonblocking(False)
        # a zero timeout blocks until the user answers on the device
        chunk = bytes(self.device.read(64 + 1, timeout_ms=timeout_ms))
        self.device.set_nonblocking(True)
        if len(chunk) < 7 or chunk[:2] != b"\x01\x01" or chunk[2] != 5:
            raise DeviceConnectionError("Invalid response from device")

        data_len = int.from_bytes(chunk[5:7], byteorder="big")
        data = chunk[7:]
        while len(data) < data_len:
            read_bytes = bytes(self.device.read(64 + 1, timeout_ms=self.timeout))
            if not read_bytes:
                raise DeviceConnectionError("Device response timed out")
            data += read_bytes[5:]

        sw = int.from_bytes(data[data_len - 2:data_len], byteorder="big")
        return sw, data[:data_len - 2]

    def exchange(self, apdu: bytes, timeout_ms: Optional[int] = None) -> bytes:
        """
        Send an APDU and block until its response arrives.

        :param apdu: The command
        :param timeout_ms: How long to wait for the first response frame, ``0`` waits forever. Defaults to the transport timeout
        :return: The response data without status word
        :raises ApduException: when the status word is not 0x9000
        """
        if self.device is None:
            raise DeviceConnectionError("Device is not open.")
        self._send(apdu)
        sw, data = self._recv(self.timeout if timeout_ms is None else timeout_ms)
        if sw != 0x9000:
            raise ApduException(sw, data)
        return data

    def __repr__(self) -> str:
        return f"HIDTransport(path={self.handle} product_id=0x{self.product_id:04x})"


class HIDTransportClient(object):
    """
    Adapter presenting an :class:`HIDTransport` as a ``ledger_bitcoin`` transport client.

    Responses wait without a timeout since most commands need a confirmation on the device.
    """

    def __init__(self, transport: HIDTransport) -> None:
        self.transport = transport

    def apdu_exchange(self, cla: int, ins: int, data: bytes = b"", p1: int = 0, p2: int = 0) -> bytes:
        apdu = bytes([cla, ins, p1, p2, len(data)]) + data
        return self.transport.exchange(apdu, 0)

    def apdu_exchange_nowait(self, cla: int, ins: int, data: bytes = b"", p1: int = 0, p2: int = 0) -> Any:
        raise NotImplementedError()

    def stop(self) -> None:
        # the device owns the transport lifecycle
        pass


def enumerate() -> List[Dict[str, Any]]:
    """
    List the HID interfaces of connected Ledger devices.
    """
    devices = []
    for d in hid.enumerate(LEDGER_VENDOR_ID, 0):
        if ('interface_number' in d and d['interface_number'] == 0
                or ('usage_page' in d and d['usage_page'] == 0xffa0)):
            devices.append(d)
    return devices


class LedgerInput(object):
    """
    Per input signing data in the form the Ledger Bitcoin application expects.
    """

    def __init__(
        self,
        path: List[int],
        prev_tx: Optional[CTransaction],
        redeem: Optional[bytes],
        witness: bool,
        coin: Coin,
        index: int,
        multisig: Optional[MultisigInfo] = None,
    ) -> None:
        self.path = path
        self.prev_tx = prev_tx
        self.redeem = redeem
        self.witness = witness
        self.coin = coin
        self.index = index
        self.multisig = multisig

    @property
    def nested(self) -> bool:
        return self.witness and is_p2sh(self.coin.script)

    def __repr__(self) -> str:
        return f"LedgerInput(index={self.index} witness={self.witness} redeem={self.redeem is not None})"


class LedgerApp(Protocol):
    """
    The Bitcoin application running on a Ledger device.
    """

    async def get_public_key(self, path: str, get_parent_fingerprint: bool = True) -> ExtendedKey:
        ...

    async def sign_transaction(self, tx: CTransaction, inputs: List[LedgerInput]) -> CTransaction:
        ...

    async def get_transaction_signatures(self, tx: CTransaction, coins: List[Coin], inputs: List[LedgerInput]) -> List[bytes]:
        ...

    async def sign_message(self, path: str, message: bytes) -> bytes:
        ...


def is_segwit(coin: Coin) -> bool:
    return is_witness(coin.script)[0]


def is_nested(coin: Coin, redeem: Optional[bytes], witness: bool) -> bool:
    """
    Whether a P2SH coin unlocks to a v0 witness program.
    """
    if not witness or not is_p2sh(coin.script):
        return False
    if redeem is None:
        # nested P2WPKH, the program is not known without the key
        return True
    return coin.script == redeem_to_script(redeem, True, True)


def create_ledger_inputs(tx: CTransaction, mappings: Dict[bytes, InputData]) -> List[LedgerInput]:
    """
    Build the Ledger input descriptions for every input of ``tx``.

    :param tx: The transaction to sign
    :param mappings: Input metadata indexed by outpoint
    :return: One LedgerInput per input, in input order
    """
    inputs = []
    for txin in tx.vin:
        data = mappings.get(txin.prevout.to_key())
        if data is None:
            raise BadArgumentError(f"Could not get metadata for input {txin.prevout.to_key().hex()}")

        redeem = None
        if data.multisig is not None:
            redeem = get_redeem_script(data)

        coin = data.coin
        inputs.append(LedgerInput(
            path=data.path.to_list(),
            prev_tx=data.prev_tx,
            redeem=redeem,
            witness=is_segwit(coin) or is_nested(coin, redeem, data.witness),
            coin=coin,
            index=txin.prevout.n,
            multisig=data.multisig,
        ))
    return inputs


def get_policy_template(inp: LedgerInput) -> str:
    """
    The wallet policy descriptor template an input is spent with.
    """
    if inp.multisig is None:
        if inp.nested:
            return 'sh(wpkh(@0/**))'
        if inp.witness:
            return 'wpkh(@0/**)'
        return 'pkh(@0/**)'

    keys = ",".join(f"@{i}/**" for i in range(len(inp.multisig.pubkeys)))
    inner = f"sortedmulti({inp.multisig.m},{keys})"
    if inp.nested:
        return f"sh(wsh({inner}))"
    if inp.witness:
        return f"wsh({inner})"
    return f"sh({inner})"


def ser_psbt_record(key_type: int, key_data: bytes, value: bytes) -> bytes:
    return ser_string(bytes([key_type]) + key_data) + ser_string(value)


def serialize_psbt(tx: CTransaction, inputs: Sequence[LedgerInput], fingerprint: bytes, derivations: Dict[int, bytes]) -> bytes:
    """
    Serialize a version 0 PSBT for the device.

    :param tx: The transaction to sign, scriptSigs and witnesses are dropped
    :param inputs: The inputs of ``tx``
    :param fingerprint: The master key fingerprint of the device
    :param derivations: Input index to the public key the device should sign with, inputs without an entry are not signed
    :return: The serialized PSBT
    """
    unsigned = CTransaction(tx)
    for txin in unsigned.vin:
        txin.scriptSig = b""
    unsigned.wit = CTxWitness()

    r = PSBT_MAGIC
    r += ser_psbt_record(PSBT_GLOBAL_UNSIGNED_TX, b"", unsigned.serialize_without_witness())
    r += b"\x00"

    for i, inp in builtins.enumerate(inputs):
        if inp.prev_tx is not None:
            r += ser_psbt_record(PSBT_IN_NON_WITNESS_UTXO, b"", inp.prev_tx.serialize_without_witness())
        elif not inp.witness:
            raise BadArgumentError(f"Input {i} needs the previous transaction.")
        if inp.witness:
            r += ser_psbt_record(PSBT_IN_WITNESS_UTXO, b"", inp.coin.output.serialize())

        pubkey = derivations.get(i)
        if inp.redeem is not None:
            if inp.nested:
                r += ser_psbt_record(PSBT_IN_REDEEM_SCRIPT, b"", p2wsh_script(sha256(inp.redeem)))
            if inp.witness:
                r += ser_psbt_record(PSBT_IN_WITNESS_SCRIPT, b"", inp.redeem)
            else:
                r += ser_psbt_record(PSBT_IN_REDEEM_SCRIPT, b"", inp.redeem)
        elif inp.nested and pubkey is not None:
            r += ser_psbt_record(PSBT_IN_REDEEM_SCRIPT, b"", p2wpkh_script(hash160(pubkey)))

        if pubkey is not None:
            origin = fingerprint + b"".join(struct.pack("<I", c) for c in inp.path)
            r += ser_psbt_record(PSBT_IN_BIP32_DERIVATION, pubkey, origin)
        r += b"\x00"

    r += b"\x00" * len(tx.vout)
    return r


def is_same_key(a: ExtendedKey, b: ExtendedKey) -> bool:
    return a.pubkey == b.pubkey and a.chaincode == b.chaincode


class LedgerBitcoinApp(object):
    """
    :class:`LedgerApp` talking to the Ledger Bitcoin application through ``ledger_bitcoin``.

    Transactions are signed with wallet policies: the default single key policies for
    BIP 44, 49 and 84 paths, and registered ``sortedmulti`` policies for multisig inputs.
    Registration needs a confirmation on the device, the returned hmac is kept for the
    lifetime of the app.

    :param transport: The HID transport of the device
    :param network: The network
    :param create_client: Factory building the ``ledger_bitcoin`` client from a transport client
    """

    def __init__(
        self,
        transport: HIDTransport,
        network: Union[Network, str, None] = None,
        create_client: Callable[..., Any] = createClient,
    ) -> None:
        self.transport = transport
        self.network = Network.get(network)
        self.create_client = create_client
        self.client: Optional[Any] = None
        self.fingerprint: Optional[bytes] = None
        self.xpubs: Dict[str, ExtendedKey] = {}
        self.hmacs: Dict[Tuple[str, Tuple[str, ...]], bytes] = {}

    @property
    def chain(self) -> Any:
        return Chain.MAIN if self.network == Network.MAIN else Chain.TEST

    async def _run(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))

    def _get_client(self) -> Any:
        if self.client is None:
            is_debug = logging.getLogger().getEffectiveLevel() == logging.DEBUG
            self.client = self.create_client(HIDTransportClient(self.transport), chain=self.chain, debug=is_debug)
        return self.client

    def _get_xpub(self, path: str) -> str:
        client = self._get_client()
        try:
            return client.get_extended_pubkey(path=path, display=False)
        except NotSupportedError:
            # non-standard paths need a confirmation on the device
            return client.get_extended_pubkey(path=path, display=True)

    def _get_fingerprint(self) -> bytes:
        if self.fingerprint is None:
            self.fingerprint = bytes(self._get_client().get_master_fingerprint())
        return self.fingerprint

    def _get_account_key(self, path: List[int]) -> ExtendedKey:
        path_str = Path.from_list(path, strict=False).to_string()
        if path_str not in self.xpubs:
            self.xpubs[path_str] = ExtendedKey.deserialize(self._get_xpub(path_str))
        return self.xpubs[path_str]

    def _key_origin(self, path: List[int], key: ExtendedKey) -> str:
        origin = Path.from_list(path, strict=False).to_string()[1:]
        return f"[{self._get_fingerprint().hex()}{origin}]{key.to_string()}"

    def _own_pubkey(self, i: int, inp: LedgerInput) -> bytes:
        if len(inp.path) < 3 or any(is_hardened(c) for c in inp.path[-2:]):
            raise BadArgumentError(f"Input {i} must use an unhardened change and address index.")
        return self._get_account_key(inp.path[:-2]).derive_path(inp.path[-2:]).pubkey

    def _singlesig_policy(self, i: int, inp: LedgerInput, template: str) -> WalletPolicy:
        path = inp.path
        purpose = SINGLESIG_TEMPLATES[template]
        if (len(path) != 5 or path[0] != harden(purpose) or path[1] != harden(get_coin_type(self.network))
                or not is_hardened(path[2]) or path[3] not in (0, 1)):
            raise BadArgumentError(f"Ledger requires BIP {purpose} standard paths, input {i} uses {Path.from_list(path, strict=False).to_string()}")
        key_info = self._key_origin(path[:3], self._get_account_key(path[:3]))
        return WalletPolicy(name="", descriptor_template=template, keys_info=[key_info])

    def _multisig_policy(self, i: int, inp: LedgerInput, template: str) -> Tuple[WalletPolicy, bytes]:
        assert inp.multisig is not None
        account_path = inp.path[:-2]
        account = self._get_account_key(account_path)

        keys_info = []
        own = False
        for pkinfo in inp.multisig.pubkeys:
            if pkinfo.path.to_list() != inp.path[-2:] or inp.path[-2] not in (0, 1):
                raise BadArgumentError("Ledger Bitcoin app requires derivation paths ending with /0/* or /1/* for multisig")
            key = ExtendedKey.deserialize(pkinfo.xpub).to_public(self.network)
            if not own and is_same_key(key, account):
                keys_info.append(self._key_origin(account_path, key))
                own = True
            else:
                keys_info.append(key.to_string())
        if not own:
            raise BadArgumentError(f"Device key is not a cosigner of input {i}.")

        cache_key = (template, tuple(keys_info))
        name = f"{inp.multisig.m} of {len(keys_info)} Multisig"
        policy = WalletPolicy(name=name, descriptor_template=template, keys_info=keys_info)
        if cache_key not in self.hmacs:
            _, wallet_hmac = self._get_client().register_wallet(policy)
            self.hmacs[cache_key] = wallet_hmac
        return policy, self.hmacs[cache_key]

    def _load_psbt(self, tx: CTransaction, inputs: Sequence[LedgerInput], derivations: Dict[int, bytes], v2: bool) -> PSBT:
        psbt = PSBT()
        psbt.deserialize(base64.b64encode(serialize_psbt(tx, inputs, self._get_fingerprint(), derivations)).decode())
        if v2:
            psbt.convert_to_v2()
        return psbt

    def _sign_psbt(self, tx: CTransaction, inputs: Sequence[LedgerInput]) -> Dict[int, Tuple[bytes, bytes]]:
        client = self._get_client()
        pubkeys = {i: self._own_pubkey(i, inp) for i, inp in builtins.enumerate(inputs)}

        calls: List[Tuple[WalletPolicy, Optional[bytes], Dict[int, bytes]]] = []
        if isinstance(client, LegacyClient):
            calls.append((WalletPolicy("", "wpkh(@0/**)", [""]), None, pubkeys))
        else:
            groups: Dict[Tuple[str, Tuple[str, ...]], Tuple[WalletPolicy, Optional[bytes], Dict[int, bytes]]] = {}
            for i, inp in builtins.enumerate(inputs):
                template = get_policy_template(inp)
                wallet_hmac: Optional[bytes] = None
                if inp.multisig is None:
                    policy = self._singlesig_policy(i, inp, template)
                else:
                    policy, wallet_hmac = self._multisig_policy(i, inp, template)
                key = (policy.descriptor_template, tuple(policy.keys_info))
                if key not in groups:
                    groups[key] = (policy, wallet_hmac, {})
                groups[key][2][i] = pubkeys[i]
            calls.extend(groups.values())

        signatures: Dict[int, Tuple[bytes, bytes]] = {}
        for policy, wallet_hmac, derivations in calls:
            psbt = self._load_psbt(tx, inputs, derivations, not isinstance(client, LegacyClient))
            for result in client.sign_psbt(psbt, policy, wallet_hmac):
                if len(result) == 3:
                    idx, pubkey, sig = result
                else:
                    idx, partial_sig = result
                    pubkey, sig = partial_sig.pubkey, partial_sig.signature
                if idx in derivations and pubkey == derivations[idx]:
                    signatures.setdefault(idx, (bytes(pubkey), bytes(sig)))
        return signatures

    async def get_public_key(self, path: str, get_parent_fingerprint: bool = True) -> ExtendedKey:
        """
        :param path: The path, with ``'`` as hardened marker
        :param get_parent_fingerprint: Unused, the extended key always carries it
        """
        return ExtendedKey.deserialize(await self._run(self._get_xpub, path))

    async def sign_transaction(self, tx: CTransaction, inputs: List[LedgerInput]) -> CTransaction:
        signatures = await self._run(self._sign_psbt, tx, inputs)
        mtx = MultisigTransaction(tx, [inp.coin for inp in inputs])
        for idx, (pubkey, sig) in signatures.items():
            inp = inputs[idx]
            ring = KeyRing(pubkey, None, inp.witness, inp.nested, inp.redeem)
            mtx.apply_signature(idx, inp.coin, ring, sig, False)
        return mtx.to_tx()

    async def get_transaction_signatures(self, tx: CTransaction, coins: List[Coin], inputs: List[LedgerInput]) -> List[bytes]:
        signatures = await self._run(self._sign_psbt, tx, inputs)
        result = []
        for i in range(len(inputs)):
            if i not in signatures:
                raise DeviceFailureError(f"Device did not sign input {i}.")
            result.append(signatures[i][1])
        return result

    async def sign_message(self, path: str, message: bytes) -> bytes:
        signature = await self._run(lambda: self._get_client().sign_message(message, path))
        return base64.b64decode(signature)


class LedgerDevice(Device):
    """
    :param transport: The HID transport of the device
    :param app: The Bitcoin application client, a :class:`LedgerBitcoinApp` over ``transport`` by default
    :param network: The network
    :param logger: Parent logger
    :param timeout: Transport timeout in milliseconds
    """

    def __init__(
        self,
        transport: HIDTransport,
        app: Optional[LedgerApp] = None,
        network: Union[Network, str, None] = None,
        logger: Optional[logging.Logger] = None,
        timeout: int = DEFAULT_TIMEOUT,
    ) -> None:
        super(LedgerDevice, self).__init__(network, logger)
        self.logger = self.logger.getChild('ledger-device')
        if not isinstance(timeout, int) or timeout <= 0:
            raise BadArgumentError("timeout must be a positive number of milliseconds.")
        self.transport = transport
        self.transport.timeout = timeout
        self.app: Optional[LedgerApp] = app if app is not None else LedgerBitcoinApp(transport, self.network)
        self._opened = False

    @property
    def vendor(self) -> str:
        return Vendor.LEDGER

    @property
    def handle(self) -> str:
        return self.transport.handle

    @property
    def key(self) -> str:
        return f"{self.transport.vendor_id}:{self.transport.product_id}:{self.transport.serial_number}"

    @property
    def opened(self) -> bool:
        return self._opened

    def _get_app(self) -> LedgerApp:
        self.check_available()
        if not self._opened:
            raise DeviceConnectionError("Device is not open.")
        assert self.app is not None
        return self.app

    @locked
    @ledger_exception
    async def open(self) -> None:
        self.check_available()
        if self._opened:
            return
        await self.transport.open()
        self._opened = True

    @locked
    @ledger_exception
    async def close(self) -> None:
        self.check_available()
        await self.transport.close()
        self._opened = False

    @locked
    async def destroy(self) -> None:
        self.check_available()
        if self._opened:
            raise BadArgumentError("Can not destroy open device.")
        self.app = None
        self.destroyed = True

    @locked
    @ledger_exception
    async def get_public_key(self, path: PathLike, get_parent_fingerprint: bool = True) -> ExtendedKey:
        app = self._get_app()
        path = parse_path(path)
        self.logger.debug("getting public key for path %s", path)
        return await app.get_public_key(path.to_string(), get_parent_fingerprint)

    @locked
    @ledger_exception
    async def sign_transaction(self, tx: CTransaction, input_data: Sequence[Union[InputData, dict]]) -> CTransaction:
        app = self._get_app()
        mappings = prepare_sign_options(input_data)
        inputs = create_ledger_inputs(tx, mappings)

        signed = await app.sign_transaction(CTransaction(tx), inputs)
        self.logger.debug("Transaction was signed.")

        mtx = MultisigTransaction(signed, get_coins(mappings, tx))
        apply_other_signatures(mtx, mappings)
        return mtx.to_tx()

    @locked
    @ledger_exception
    async def get_signatures(self, tx: CTransaction, input_data: Sequence[Union[InputData, dict]]) -> List[bytes]:
        app = self._get_app()
        mappings = prepare_sign_options(input_data)
        inputs = create_ledger_inputs(tx, mappings)
        return await app.get_transaction_signatures(CTransaction(tx), get_coins(mappings, tx), inputs)

    @locked
    @ledger_exception
    async def sign_message(self, path: PathLike, message: Union[str, bytes]) -> bytes:
        app = self._get_app()
        path = parse_path(path)
        if isinstance(message, str):
            message = message.encode("utf-8")
        return await app.sign_message(path.to_string(), message)
