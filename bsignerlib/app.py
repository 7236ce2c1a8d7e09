"""
Application Operations
**********************

Operations combining a signing device with a wallet service: authentication tokens,
building the signing metadata of wallet transactions and multisig proposals, and
locating the wallet's account keys on a device.

The wallet is any object implementing :class:`WalletClient`.
"""

import logging

from typing import (
    Any,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
    Union,
)
from typing_extensions import Protocol

from .common import (
    Network,
    blake2b256,
    harden,
)
from .errors import BadArgumentError
from .input_data import InputData
from .key import ExtendedKey
from .path import Path
from .serializations import (
    CTransaction,
    Coin,
)

LOG = logging.getLogger(__name__)

PathLike = Union[Path, str, bytes, Sequence[int]]


class KeySource(Protocol):
    """
    Anything that hands out public keys: a device, a device manager or a signer.
    """

    async def get_public_key(self, path: Any, get_parent_fingerprint: bool = True) -> ExtendedKey:
        ...

    async def get_xpub(self, path: Any) -> str:
        ...


class WalletClient(Protocol):
    """
    The wallet service the transactions belong to.

    ``get_account`` returns a mapping with ``accountKey``, ``keys`` (cosigner account keys),
    ``witness`` and, for multisig wallets, ``m``. ``get_tx`` returns a mapping with the
    raw transaction hex under ``tx``. ``get_key`` returns ``witness``, ``branch`` and ``index``
    of a wallet address. ``get_proposal_mtx`` returns the proposal transaction hex under ``tx``,
    one ``{branch, index}`` mapping (or ``None``) per input under ``paths`` and the raw previous
    transactions under ``txs``.
    """

    async def get_account(self, account: Optional[Union[str, int]] = None) -> Optional[Dict[str, Any]]:
        ...

    async def get_tx(self, txid: str) -> Optional[Dict[str, Any]]:
        ...

    async def get_key(self, address: str) -> Optional[Dict[str, Any]]:
        ...

    async def get_proposal_mtx(self, pid: int, options: Dict[str, Any]) -> Dict[str, Any]:
        ...


async def generate_token(device: KeySource, path: Optional[PathLike], enc: Optional[str] = None) -> Union[bytes, str]:
    """
    Derive an authentication token from the public key at ``path``.

    :param device: Where the public key comes from
    :param path: The derivation path
    :param enc: ``"hex"`` to return the token as a hex string
    :return: The 32 byte BLAKE2b hash of the compressed public key
    """
    if not path:
        raise BadArgumentError("must provide a path")

    hdpubkey = await device.get_public_key(path)
    token = blake2b256(hdpubkey.pubkey)
    if enc == 'hex':
        return token.hex()
    return token


def parse_tx(tx: Union[CTransaction, str, bytes]) -> CTransaction:
    if isinstance(tx, CTransaction):
        return CTransaction(tx)
    if isinstance(tx, (str, bytes)):
        return CTransaction.from_hex(tx)
    raise BadArgumentError("must pass tx")


async def normalize_paths(
    tx: CTransaction,
    wallet: WalletClient,
    paths: Optional[Sequence[PathLike]] = None,
    path: Optional[PathLike] = None,
    account: Optional[Union[str, int]] = None,
) -> List[Path]:
    """
    Get the account level path for every input.

    :param paths: One path per input, used as given
    :param path: Account level path used for every input
    :param account: Wallet account whose key decides the path when neither is given
    """
    if paths is not None:
        if len(paths) != len(tx.vin):
            raise BadArgumentError("Need one path per input.")
        return [Path.from_type(p) for p in paths]

    if path is None:
        if account is None:
            raise BadArgumentError("Can not get account info without account.")

        account_info = await wallet.get_account(account)
        if not account_info:
            raise BadArgumentError("Problem fetching account info.")

        path = account_info['accountKey']

    base = Path.from_type(path)
    if base.depth != 3:
        raise BadArgumentError("Path must be at account level (depth 3).")

    return [base] * len(tx.vin)


async def prepare_sign(
    tx: Union[CTransaction, str, bytes],
    wallet: WalletClient,
    network: Union[Network, str, None],
    paths: Optional[Sequence[PathLike]] = None,
    path: Optional[PathLike] = None,
    account: Optional[Union[str, int]] = None,
) -> Tuple[CTransaction, List[InputData]]:
    """
    Build the signing metadata of a wallet transaction.

    Paths are taken from ``paths`` if given, else ``path`` is used for every input,
    else the account key of ``account`` decides it. Branch and index of every input
    come from the wallet's record of the spent address.

    :param tx: The unsigned transaction
    :param wallet: The wallet owning the spent coins
    :param network: The network addresses are encoded for
    :return: The transaction and one InputData per input, in input order
    """
    if wallet is None:
        raise BadArgumentError("must pass wallet client")
    if network is None:
        raise BadArgumentError("must pass network")

    network = Network.get(network)
    tx = parse_tx(tx)
    bases = await normalize_paths(tx, wallet, paths, path, account)

    input_data = []
    for i, txin in enumerate(tx.vin):
        prev = await wallet.get_tx(txin.prevout.txid)
        if not prev:
            raise BadArgumentError("could not fetch previous transaction")

        prev_tx = CTransaction.from_hex(prev['tx'])
        if txin.prevout.n >= len(prev_tx.vout):
            raise BadArgumentError("could not fetch coin")
        coin = Coin.from_tx(prev_tx, txin.prevout.n)

        address = coin.get_address(network)
        if address is None:
            raise BadArgumentError("could not fetch coin address")

        keyinfo = await wallet.get_key(address)
        if not keyinfo:
            raise BadArgumentError("could not fetch key info")

        LOG.debug("input %d spends %s", i, address)
        data = InputData.from_options({
            'coin': coin,
            'prevTX': prev_tx,
            'path': bases[i].clone().push(keyinfo['branch']).push(keyinfo['index']),
            'witness': keyinfo['witness'],
        }, network)
        input_data.append(data)

    return tx, input_data


async def prepare_sign_multisig(
    wallet: WalletClient,
    pid: int,
    network: Union[Network, str, None],
    path: Optional[PathLike] = None,
) -> Tuple[CTransaction, List[InputData]]:
    """
    Build the signing metadata of a multisig wallet proposal.

    Every input gets a multisig descriptor listing the wallet's own account key and the
    cosigner account keys, all derived along the input's branch and index.

    :param wallet: The multisig wallet
    :param pid: The proposal id
    :param network: The network
    :param path: Account level path of the signing key, derived from the account key when ``None``
    :return: The proposal transaction and one InputData per input
    """
    if wallet is None:
        raise BadArgumentError("must pass wallet client")
    if network is None:
        raise BadArgumentError("must pass network")

    network = Network.get(network)

    account = await wallet.get_account()
    if not account:
        raise BadArgumentError("could not fetch account info")

    witness = account['witness']
    xpubs = [account['accountKey']] + list(account.get('keys', []))

    pmtx = await wallet.get_proposal_mtx(pid, {'paths': True, 'txs': True})
    tx = parse_tx(pmtx['tx'])

    if path is None:
        path = account['accountKey']
    bases = await normalize_paths(tx, wallet, None, path)

    input_data = []
    for i, txin in enumerate(tx.vin):
        tail = pmtx['paths'][i] if i < len(pmtx.get('paths', [])) else None
        if not tail:
            # TODO: sign proposals with external inputs once the wallet reports them
            raise BadArgumentError("External inputs are not supported.")

        branch = tail['branch']
        index = tail['index']
        multisig = {
            'm': account['m'],
            'pubkeys': [{
                'xpub': xpub,
                'path': [branch, index],
                'signature': '',
            } for xpub in xpubs],
        }

        data = InputData.from_options({
            'witness': witness,
            'prevout': txin.prevout,
            'prevTX': pmtx['txs'][i],
            'path': bases[i].clone().push(branch).push(index),
            'multisig': multisig,
        }, network)
        input_data.append(data)

    return tx, input_data


async def guess_path(device: KeySource, wallet: WalletClient, network: Union[Network, str, None] = None) -> Optional[Path]:
    """
    Find the account path of the wallet key that lives on ``device``.

    The first account key the device can reproduce wins, so this can not tell apart
    several cosigners kept on one device.

    :return: The account path, ``None`` when no key matches
    """
    if device is None:
        raise BadArgumentError("must pass hardware")
    if wallet is None:
        raise BadArgumentError("must pass wallet")

    info = await wallet.get_account()
    if not info:
        raise BadArgumentError("could not fetch account info")

    keys = list(dict.fromkeys([info['accountKey']] + list(info.get('keys', []))))

    for key in keys:
        path = Path.from_account_public_key(key)
        xkey = await device.get_public_key(path)
        key_network = Network.get(network) if network is not None else path.network
        if xkey.to_public(key_network).to_string() in keys:
            return Path.from_account_public_key(key)

    return None


async def get_known_paths(device: KeySource, wallet: WalletClient) -> Dict[str, Any]:
    """
    Map every wallet account key to the path it has on ``device``.

    Purposes 44 and 48 are tried for each key.

    :return: ``{"keys": [found keys], "paths": {key: path string or None}}``
    """
    if device is None:
        raise BadArgumentError("must pass hardware")
    if wallet is None:
        raise BadArgumentError("must pass wallet")

    info = await wallet.get_account()
    if not info:
        raise BadArgumentError("could not fetch account info")

    keys = list(dict.fromkeys([info['accountKey']] + list(info.get('keys', []))))
    out: Dict[str, Any] = {
        'keys': [],
        'paths': {key: None for key in keys},
    }

    for key in keys:
        for purpose in (44, 48):
            path = Path.from_account_public_key(key)
            path.purpose = harden(purpose)

            xkey = await device.get_xpub(path)
            if xkey in out['paths'] and out['paths'][xkey] is None:
                out['keys'].append(xkey)
                out['paths'][xkey] = path.to_string()

    return out
