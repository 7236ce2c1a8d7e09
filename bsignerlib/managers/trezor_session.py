"""
Trezor USB Session
******************

:class:`TrezorlibSession` drives Trezor devices with ``trezorlib`` and presents them through the
mapping based session interface :class:`~bsignerlib.devices.trezor.TrezorDevice` talks to.

Transports are discovered on a :class:`~bsignerlib.managers.usb.UsbBus`. A client is acquired for
every new transport and announced with a ``DEVICE_EVENT``. Requests run in the default executor
since ``trezorlib`` blocks until the user confirms on the device.
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
    Tuple,
)

from trezorlib import (
    btc,
    exceptions,
    messages,
)
from trezorlib.client import TrezorClient
from trezorlib.transport import (
    TransportException,
    enumerate_devices,
)

from .events import EventEmitter
from .usb import UsbBus
from ..devices.trezor import (
    DEVICE_CONNECT,
    DEVICE_CONNECT_UNACQUIRED,
    DEVICE_DISCONNECT,
    DEVICE_EVENT,
)
from ..errors import (
    ActionCanceledError,
    DeviceConnectionError,
    DeviceFailureError,
    DeviceNotReadyError,
    handle_errors,
)
from ..key import ExtendedKey
from ..path import parse_path

LOG = logging.getLogger(__name__)

PIN_FAILURES = (
    messages.FailureType.PinCancelled,
    messages.FailureType.PinExpected,
    messages.FailureType.PinInvalid,
    messages.FailureType.PinMismatch,
)


class SessionUI(object):
    """
    Answers the host side prompts of a Trezor client.

    :param passphrase: The passphrase sent when the device asks for one
    :param pin: Returns the PIN matrix positions, unlocked devices only when ``None``
    """

    def __init__(self, passphrase: str = '', pin: Optional[Callable[[], str]] = None) -> None:
        self.passphrase = passphrase
        self.pin = pin

    def button_request(self, *args: Any) -> None:
        LOG.info("Please confirm action on your Trezor device")

    def get_pin(self, code: Any = None) -> str:
        if self.pin is None:
            raise exceptions.PinException(None, "PIN entry is not available")
        return self.pin()

    def get_passphrase(self, *args: Any, **kwargs: Any) -> str:
        return self.passphrase


def trezorlib_exception(f: Callable[..., Any]) -> Callable[..., Any]:
    """
    Translate ``trezorlib`` failures into errors whose messages the device response check understands.
    """
    @wraps(f)
    def func(*args: Any, **kwargs: Any) -> Any:
        try:
            return f(*args, **kwargs)
        except exceptions.Cancelled:
            raise ActionCanceledError('{} cancelled'.format(f.__name__))
        except exceptions.PinException:
            raise DeviceNotReadyError('Device locked')
        except exceptions.TrezorFailure as e:
            if e.code == messages.FailureType.ActionCancelled:
                raise ActionCanceledError('{} cancelled'.format(f.__name__))
            if e.code in PIN_FAILURES:
                raise DeviceNotReadyError('Device locked: {}'.format(e.message))
            raise DeviceFailureError(e.message or str(e))
        except TransportException as e:
            raise DeviceConnectionError('Device disconnected: {}'.format(e))
    return func


def hd_node(xpub: str) -> messages.HDNodeType:
    key = ExtendedKey.deserialize(xpub)
    return messages.HDNodeType(
        depth=key.depth,
        fingerprint=int.from_bytes(key.parent_fingerprint, byteorder="big"),
        child_num=key.child_num,
        chain_code=key.chaincode,
        public_key=key.pubkey,
    )


def to_multisig(multisig: Dict[str, Any]) -> messages.MultisigRedeemScriptType:
    return messages.MultisigRedeemScriptType(
        m=multisig['m'],
        pubkeys=[messages.HDNodePathType(node=hd_node(pk['node']), address_n=list(pk['address_n'])) for pk in multisig['pubkeys']],
        signatures=[bytes.fromhex(sig) for sig in multisig['signatures']],
    )


def to_input(inp: Dict[str, Any], amounts: Dict[Tuple[str, int], int]) -> messages.TxInputType:
    """
    :param inp: A request input
    :param amounts: Values of the reference transaction outputs, legacy inputs carry no amount
    """
    if 'amount' in inp:
        amount = int(inp['amount'])
    else:
        amount = amounts[(inp['prev_hash'], inp['prev_index'])]

    return messages.TxInputType(
        prev_hash=bytes.fromhex(inp['prev_hash']),
        prev_index=inp['prev_index'],
        sequence=inp['sequence'],
        address_n=list(inp['address_n']),
        script_type=getattr(messages.InputScriptType, inp['script_type']),
        amount=amount,
        multisig=to_multisig(inp['multisig']) if 'multisig' in inp else None,
    )


def to_output(out: Dict[str, Any]) -> messages.TxOutputType:
    if out['script_type'] == 'PAYTOOPRETURN':
        return messages.TxOutputType(
            amount=int(out['amount']),
            script_type=messages.OutputScriptType.PAYTOOPRETURN,
            op_return_data=bytes.fromhex(out['op_return_data']),
        )
    return messages.TxOutputType(
        amount=int(out['amount']),
        script_type=messages.OutputScriptType.PAYTOADDRESS,
        address=out['address'],
    )


def to_prev_tx(ref: Dict[str, Any]) -> messages.TransactionType:
    return messages.TransactionType(
        version=ref['version'],
        lock_time=ref['lock_time'],
        inputs=[messages.TxInputType(
            prev_hash=bytes.fromhex(i['prev_hash']),
            prev_index=i['prev_index'],
            script_sig=bytes.fromhex(i['script_sig']),
            sequence=i['sequence'],
        ) for i in ref['inputs']],
        bin_outputs=[messages.TxOutputBinType(
            amount=o['amount'],
            script_pubkey=bytes.fromhex(o['script_pubkey']),
        ) for o in ref['bin_outputs']],
    )


def check_unlocked(client: Any) -> None:
    client.init_device()
    features = client.features
    if features.pin_protection and features.unlocked is False:
        raise DeviceNotReadyError("Trezor is locked. Unlock it on the device first.")


@trezorlib_exception
def get_public_key(client: Any, params: Dict[str, Any]) -> Dict[str, Any]:
    check_unlocked(client)
    result = btc.get_public_node(client, parse_path(params['path']), coin_name=params['coin'])
    node = result.node
    return {
        'depth': node.depth,
        'fingerprint': node.fingerprint,
        'childNum': node.child_num,
        'chainCode': node.chain_code.hex(),
        'publicKey': node.public_key.hex(),
        'xpub': result.xpub,
    }


@trezorlib_exception
def sign_transaction(client: Any, params: Dict[str, Any]) -> Dict[str, Any]:
    check_unlocked(client)
    amounts = {}
    prev_txes = {}
    for ref in params['refTxs']:
        prev_txes[bytes.fromhex(ref['hash'])] = to_prev_tx(ref)
        for n, out in enumerate(ref['bin_outputs']):
            amounts[(ref['hash'], n)] = out['amount']

    signatures, serialized = btc.sign_tx(
        client,
        params['coin'],
        [to_input(inp, amounts) for inp in params['inputs']],
        [to_output(out) for out in params['outputs']],
        prev_txes=prev_txes,
        version=params['version'],
        lock_time=params['lock_time'],
    )
    return {
        'signatures': [sig.hex() for sig in signatures],
        'serializedTx': serialized.hex(),
    }


@trezorlib_exception
def sign_message(client: Any, params: Dict[str, Any]) -> Dict[str, Any]:
    check_unlocked(client)
    message = bytes.fromhex(params['message']) if params.get('hex') else params['message']
    result = btc.sign_message(client, params['coin'], list(params['path']), message)
    return {
        'address': result.address,
        'signature': base64.b64encode(result.signature).decode(),
    }


class TrezorlibSession(EventEmitter):
    """
    :param interval: Seconds between two USB scans
    :param enumerate_fn: Lists the connected transports
    :param client_factory: Acquires the client of a transport, :meth:`create_client` by default
    :param passphrase: Passphrase sent to devices asking for one
    :param pin: Returns the PIN matrix positions of a locked device
    """

    def __init__(
        self,
        interval: float = 1.0,
        enumerate_fn: Callable[[], List[Any]] = enumerate_devices,
        client_factory: Optional[Callable[[Any], Any]] = None,
        passphrase: str = '',
        pin: Optional[Callable[[], str]] = None,
    ) -> None:
        super(TrezorlibSession, self).__init__()
        self.usb = UsbBus(enumerate_fn, interval, key=lambda transport: transport.get_path())
        self.client_factory = client_factory if client_factory is not None else self.create_client
        self.ui = SessionUI(passphrase, pin)
        self.clients: Dict[str, Any] = {}
        self.settings: Dict[str, Any] = {}

        self.usb.on('connect', self.handle_connect)
        self.usb.on('disconnect', self.handle_disconnect)

    def create_client(self, transport: Any) -> TrezorClient:
        return TrezorClient(transport, ui=self.ui)

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def handle_connect(self, transport: Any) -> None:
        path = transport.get_path()
        try:
            client = await self._run(self.client_factory, transport)
        except (exceptions.TrezorException, OSError) as e:
            LOG.debug("Could not acquire %s: %s", path, e)
            await self.emit_async(DEVICE_EVENT, {
                'type': DEVICE_CONNECT_UNACQUIRED,
                'payload': {'path': path, 'type': 'unacquired'},
            })
            return

        self.clients[path] = client
        features = client.features
        await self.emit_async(DEVICE_EVENT, {
            'type': DEVICE_CONNECT,
            'payload': {
                'type': 'acquired',
                'path': path,
                'label': features.label or '',
                'status': 'available',
                'features': {'device_id': features.device_id or ''},
            },
        })

    async def _close_client(self, path: str, client: Any) -> None:
        try:
            await self._run(client.close)
        except (exceptions.TrezorException, OSError) as e:
            LOG.debug("Closing %s failed: %s", path, e)

    async def handle_disconnect(self, transport: Any) -> None:
        path = transport.get_path()
        client = self.clients.pop(path, None)
        if client is not None:
            await self._close_client(path, client)
        await self.emit_async(DEVICE_EVENT, {
            'type': DEVICE_DISCONNECT,
            'payload': {'path': path},
        })

    async def init(self, settings: Dict[str, Any]) -> None:
        self.settings = settings
        if settings.get('debug'):
            logging.getLogger('trezorlib').setLevel(logging.DEBUG)
        await self.usb.start()

    async def dispose(self) -> None:
        await self.usb.stop()
        clients, self.clients = self.clients, {}
        for path, client in clients.items():
            await self._close_client(path, client)

    async def _call(self, func: Callable[[Any, Dict[str, Any]], Dict[str, Any]], params: Dict[str, Any]) -> Dict[str, Any]:
        failure: Dict[str, Any] = {}
        with handle_errors(result=failure):
            path = (params.get('device') or {}).get('path')
            client = self.clients.get(path)
            if client is None:
                raise DeviceConnectionError("Device not found.")
            return {'success': True, 'payload': await self._run(func, client, params)}
        LOG.debug("%s failed: %s", func.__name__, failure.get('error'))
        return {'success': False, 'payload': failure}

    async def get_public_key(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call(get_public_key, params)

    async def sign_transaction(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call(sign_transaction, params)

    async def sign_message(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call(sign_message, params)
