"""
Bitcoin Script utilities
************************
"""

import struct

from typing import (
    List,
    Optional,
    Sequence,
    Tuple,
    Union,
)

from . import base58, bech32
from .common import (
    Network,
    get_network_params,
    hash160,
    sha256,
)
from .errors import BadArgumentError

OP_0 = 0x00
OP_PUSHDATA1 = 0x4c
OP_PUSHDATA2 = 0x4d
OP_PUSHDATA4 = 0x4e
OP_1 = 0x51
OP_16 = 0x60
OP_RETURN = 0x6a
OP_DUP = 0x76
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_HASH160 = 0xa9
OP_CHECKSIG = 0xac
OP_CHECKMULTISIG = 0xae

MAX_MULTISIG_PUBKEYS = 20

SIGHASH_ALL = 1


def is_opreturn(script: bytes) -> bool:
    """
    Determine whether a script is an OP_RETURN output script.

    :param script: The script
    :returns: Whether the script is an OP_RETURN output script
    """
    return len(script) > 0 and script[0] == OP_RETURN


def is_p2sh(script: bytes) -> bool:
    """
    Determine whether a script is a P2SH output script.

    :param script: The script
    :returns: Whether the script is a P2SH output script
    """
    return len(script) == 23 and script[0] == 0xa9 and script[1] == 0x14 and script[22] == 0x87


def is_p2pkh(script: bytes) -> bool:
    """
    Determine whether a script is a P2PKH output script.

    :param script: The script
    :returns: Whether the script is a P2PKH output script
    """
    return len(script) == 25 and script[0] == 0x76 and script[1] == 0xa9 and script[2] == 0x14 and script[23] == 0x88 and script[24] == 0xac


def is_p2pk(script: bytes) -> bool:
    """
    Determine whether a script is a P2PK output script.

    :param script: The script
    :returns: Whether the script is a P2PK output script
    """
    return (len(script) == 35 or len(script) == 67) and (script[0] == 0x21 or script[0] == 0x41) and script[-1] == 0xac


def is_witness(script: bytes) -> Tuple[bool, int, bytes]:
    """
    Determine whether a script is a segwit output script.
    If so, also returns the witness version and witness program.

    :param script: The script
    :returns: A tuple of a bool indicating whether the script is a segwit output script,
        an int representing the witness version,
        and the bytes of the witness program.
    """
    if len(script) < 4 or len(script) > 42:
        return (False, 0, b"")

    if script[0] != 0 and (script[0] < 81 or script[0] > 96):
        return (False, 0, b"")

    if script[1] + 2 == len(script):
        return (True, script[0] - 0x50 if script[0] else 0, script[2:])

    return (False, 0, b"")


def is_p2wpkh(script: bytes) -> bool:
    """
    Determine whether a script is a P2WPKH output script.

    :param script: The script
    :returns: Whether the script is a P2WPKH output script
    """
    is_wit, wit_ver, wit_prog = is_witness(script)
    if not is_wit:
        return False
    elif wit_ver != 0:
        return False
    return len(wit_prog) == 20


def is_p2wsh(script: bytes) -> bool:
    """
    Determine whether a script is a P2WSH output script.

    :param script: The script
    :returns: Whether the script is a P2WSH output script
    """
    is_wit, wit_ver, wit_prog = is_witness(script)
    if not is_wit:
        return False
    elif wit_ver != 0:
        return False
    return len(wit_prog) == 32


# Returns None if this script is not a multisig script.
# Returns (m, pubkeys) otherwise.
def parse_multisig(script: bytes) -> Optional[Tuple[int, Sequence[bytes]]]:
    """
    Determine whether a script is a multisig script. If so, determine the parameters of that multisig.

    :param script: The script
    :returns: ``None`` if the script is not multisig.
        If multisig, returns a tuple of the number of signers required,
        and a sequence of public key bytes.
    """
    if len(script) < 3:
        return None

    # Get m
    m = script[0] - 80
    if m < 1 or m > 16:
        return None

    # Get pubkeys
    pubkeys = []
    offset = 1
    while offset < len(script):
        pubkey_len = script[offset]
        if pubkey_len != 33 and pubkey_len != 65:
            break
        offset += 1
        pubkeys.append(script[offset:offset + pubkey_len])
        offset += pubkey_len

    # Check things at the end
    if offset + 2 != len(script):
        return None
    n = script[offset] - 80
    if n != len(pubkeys) or n < m:
        return None
    offset += 1
    if script[offset] != OP_CHECKMULTISIG:
        return None

    return (m, pubkeys)


def get_script_type(script: bytes) -> str:
    """
    Classify an output script.

    :param script: The script
    :returns: One of ``pubkey``, ``pubkeyhash``, ``scripthash``, ``multisig``, ``nulldata``,
        ``witnesspubkeyhash``, ``witnessscripthash``, ``witnessprogram`` or ``nonstandard``
    """
    if is_p2pkh(script):
        return 'pubkeyhash'
    if is_p2sh(script):
        return 'scripthash'
    if is_p2wpkh(script):
        return 'witnesspubkeyhash'
    if is_p2wsh(script):
        return 'witnessscripthash'
    if is_witness(script)[0]:
        return 'witnessprogram'
    if is_p2pk(script):
        return 'pubkey'
    if is_opreturn(script):
        return 'nulldata'
    if parse_multisig(script) is not None:
        return 'multisig'
    return 'nonstandard'


def push_data(data: bytes) -> bytes:
    """
    Serialize a minimal push of ``data``.
    """
    size = len(data)
    if size < OP_PUSHDATA1:
        return struct.pack("B", size) + data
    elif size <= 0xff:
        return struct.pack("BB", OP_PUSHDATA1, size) + data
    elif size <= 0xffff:
        return struct.pack("<BH", OP_PUSHDATA2, size) + data
    return struct.pack("<BI", OP_PUSHDATA4, size) + data


def encode_small_int(i: int) -> int:
    if i == 0:
        return OP_0
    if i < 1 or i > 16:
        raise BadArgumentError(f"Small integer out of range: {i}")
    return OP_1 + i - 1


def sort_pubkeys(pubkeys: Sequence[bytes]) -> List[bytes]:
    return sorted(pubkeys)


def multisig_script(m: int, pubkeys: Sequence[bytes], sort: bool = True) -> bytes:
    """
    Build the ``OP_M <pubkeys> OP_N OP_CHECKMULTISIG`` script.

    :param m: The number of required signatures
    :param pubkeys: The public keys
    :param sort: Whether to sort the keys lexicographically (BIP 67)
    :returns: The script
    """
    n = len(pubkeys)
    if n < 1 or n > 16:
        raise BadArgumentError(f"Multisig n out of range: {n}")
    if m < 1 or m > n:
        raise BadArgumentError(f"Multisig m out of range: {m} of {n}")
    keys = sort_pubkeys(pubkeys) if sort else list(pubkeys)
    script = bytes([encode_small_int(m)])
    for key in keys:
        script += push_data(key)
    script += bytes([encode_small_int(n), OP_CHECKMULTISIG])
    return script


def p2pkh_script(pubkey_hash: bytes) -> bytes:
    return bytes([OP_DUP, OP_HASH160]) + push_data(pubkey_hash) + bytes([OP_EQUALVERIFY, OP_CHECKSIG])


def p2sh_script(script_hash: bytes) -> bytes:
    return bytes([OP_HASH160]) + push_data(script_hash) + bytes([OP_EQUAL])


def p2wpkh_script(pubkey_hash: bytes) -> bytes:
    return bytes([OP_0]) + push_data(pubkey_hash)


def p2wsh_script(script_hash: bytes) -> bytes:
    return bytes([OP_0]) + push_data(script_hash)


def nulldata_script(data: bytes) -> bytes:
    return bytes([OP_RETURN]) + push_data(data)


def pubkey_to_script(pubkey: bytes, witness: bool = False, nested: bool = False) -> bytes:
    """
    Build the output script paying to a single public key.

    :param pubkey: The compressed public key
    :param witness: Pay to the v0 witness program of the key
    :param nested: Wrap the witness program in P2SH
    """
    h = hash160(pubkey)
    if not witness:
        return p2pkh_script(h)
    program = p2wpkh_script(h)
    if nested:
        return p2sh_script(hash160(program))
    return program


def redeem_to_script(redeem: bytes, witness: bool = False, nested: bool = False) -> bytes:
    """
    Build the output script paying to a redeem script.

    :param redeem: The redeem (or witness) script
    :param witness: Pay to the v0 witness script hash
    :param nested: Wrap the witness program in P2SH
    """
    if not witness:
        return p2sh_script(hash160(redeem))
    program = p2wsh_script(sha256(redeem))
    if nested:
        return p2sh_script(hash160(program))
    return program


def script_to_address(script: bytes, network: Union[Network, str, None] = None) -> Optional[str]:
    """
    Get the address for an output script.

    :param script: The output script
    :param network: The network whose address encoding to use
    :returns: The address, or ``None`` when the script has no address form
    """
    params = get_network_params(network)
    if is_p2pkh(script):
        return base58.to_address(script[3:23], params.pubkeyhash)
    if is_p2sh(script):
        return base58.to_address(script[2:22], params.scripthash)
    is_wit, wit_ver, wit_prog = is_witness(script)
    if is_wit and wit_ver == 0:
        return bech32.encode(params.bech32_hrp, wit_ver, wit_prog)
    return None


def address_to_script(address: str, network: Union[Network, str, None] = None) -> bytes:
    """
    Get the output script for an address.

    :param address: A base58check or v0 bech32 address
    :param network: The network the address belongs to
    :returns: The output script
    """
    params = get_network_params(network)
    if address.lower().startswith(params.bech32_hrp + '1'):
        wit_ver, wit_prog = bech32.decode(params.bech32_hrp, address)
        if wit_ver is None or wit_prog is None or wit_ver != 0:
            raise BadArgumentError(f"Invalid segwit address: {address}")
        return bytes([OP_0]) + push_data(wit_prog)

    try:
        data = base58.decode_check(address)
    except ValueError as e:
        raise BadArgumentError(f"Invalid address {address}: {e}")
    if len(data) != 21:
        raise BadArgumentError(f"Invalid address length: {address}")
    if data[0] == params.pubkeyhash:
        return p2pkh_script(data[1:])
    if data[0] == params.scripthash:
        return p2sh_script(data[1:])
    raise BadArgumentError(f"Address {address} does not belong to {Network.get(network)}")


def is_signature_encoding(sig: bytes) -> bool:
    """
    Strict DER check for a signature carrying a trailing sighash byte (BIP 66).

    :param sig: The signature with sighash type
    """
    if len(sig) < 9 or len(sig) > 73:
        return False
    if sig[0] != 0x30 or sig[1] != len(sig) - 3:
        return False
    len_r = sig[3]
    if 5 + len_r >= len(sig):
        return False
    len_s = sig[5 + len_r]
    if len_r + len_s + 7 != len(sig):
        return False
    if sig[2] != 0x02 or len_r == 0 or sig[4] & 0x80:
        return False
    if len_r > 1 and sig[4] == 0x00 and not sig[5] & 0x80:
        return False
    if sig[len_r + 4] != 0x02 or len_s == 0 or sig[len_r + 6] & 0x80:
        return False
    if len_s > 1 and sig[len_r + 6] == 0x00 and not sig[len_r + 7] & 0x80:
        return False
    return True
