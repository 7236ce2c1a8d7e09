"""
Script Verification
*******************

A small script evaluator covering the standard spend templates produced by the signers:
P2PK, P2PKH, bare multisig, P2SH multisig, P2WPKH, P2WSH multisig and both witness programs nested in P2SH.
It is used to check that signed transactions are actually spendable.
"""

import logging
import struct
from io import BytesIO
from typing import (
    Callable,
    Dict,
    List,
    Optional,
    Tuple,
)

from .common import (
    hash160,
    hash256,
    sha256,
)
from ._script import (
    OP_0,
    OP_1,
    OP_16,
    OP_PUSHDATA1,
    OP_PUSHDATA2,
    OP_PUSHDATA4,
    SIGHASH_ALL,
    is_p2sh,
    is_witness,
    p2pkh_script,
)
from .key import verify_signature
from .serializations import (
    CTransaction,
    Coin,
    signature_hash_legacy,
    signature_hash_segwit,
)

LOG = logging.getLogger(__name__)

SIGVERSION_BASE = 0
SIGVERSION_WITNESS_V0 = 1

OP_1NEGATE = 0x4f
OP_NOP = 0x61
OP_VERIFY = 0x69
OP_RETURN = 0x6a
OP_DROP = 0x75
OP_DUP = 0x76
OP_SWAP = 0x7c
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_SHA256 = 0xa8
OP_HASH160 = 0xa9
OP_HASH256 = 0xaa
OP_CHECKSIG = 0xac
OP_CHECKSIGVERIFY = 0xad
OP_CHECKMULTISIG = 0xae
OP_CHECKMULTISIGVERIFY = 0xaf


class ScriptError(Exception):
    pass


def parse_script(script: bytes) -> List[Tuple[int, Optional[bytes]]]:
    """
    Split a script into ``(opcode, pushed data)`` pairs.
    """
    ops: List[Tuple[int, Optional[bytes]]] = []
    stream = BytesIO(script)
    while True:
        b = stream.read(1)
        if not b:
            break
        opcode = b[0]
        data: Optional[bytes] = None
        if 0 < opcode < OP_PUSHDATA1:
            data = stream.read(opcode)
            size = opcode
        elif opcode == OP_PUSHDATA1:
            raw = stream.read(1)
            size = raw[0] if raw else -1
            data = stream.read(size) if size >= 0 else b""
        elif opcode == OP_PUSHDATA2:
            raw = stream.read(2)
            size = struct.unpack("<H", raw)[0] if len(raw) == 2 else -1
            data = stream.read(size) if size >= 0 else b""
        elif opcode == OP_PUSHDATA4:
            raw = stream.read(4)
            size = struct.unpack("<I", raw)[0] if len(raw) == 4 else -1
            data = stream.read(size) if size >= 0 else b""
        if data is not None and len(data) != size:
            raise ScriptError("Push past end of script")
        ops.append((opcode, data))
    return ops


def is_push_only(script: bytes) -> bool:
    try:
        return all(op <= OP_16 for op, _ in parse_script(script))
    except ScriptError:
        return False


def cast_to_bool(v: bytes) -> bool:
    for i, b in enumerate(v):
        if b != 0:
            # Negative zero is still zero
            if i == len(v) - 1 and b == 0x80:
                return False
            return True
    return False


def decode_num(v: bytes) -> int:
    if len(v) > 4:
        raise ScriptError("Script number overflow")
    if not v:
        return 0
    result = int.from_bytes(v, byteorder="little")
    if v[-1] & 0x80:
        return -(result & ~(0x80 << (8 * (len(v) - 1))))
    return result


def encode_num(i: int) -> bytes:
    if i == 0:
        return b""
    neg = i < 0
    absval = -i if neg else i
    r = bytearray()
    while absval:
        r.append(absval & 0xff)
        absval >>= 8
    if r[-1] & 0x80:
        r.append(0x80 if neg else 0)
    elif neg:
        r[-1] |= 0x80
    return bytes(r)


class ScriptEngine(object):
    """
    Evaluates scripts for a single transaction input.
    """

    def __init__(self, tx: CTransaction, index: int, amount: int) -> None:
        self.tx = tx
        self.index = index
        self.amount = amount
        self.stack: List[bytes] = []
        self.sigversion = SIGVERSION_BASE
        self.script_code = b""
        self.op_handlers: Dict[int, Callable[[], None]] = {
            OP_1NEGATE: lambda: self.stack.append(encode_num(-1)),
            OP_NOP: lambda: None,
            OP_VERIFY: self._op_verify,
            OP_RETURN: self._op_return,
            OP_DROP: self._op_drop,
            OP_DUP: self._op_dup,
            OP_SWAP: self._op_swap,
            OP_EQUAL: self._op_equal,
            OP_EQUALVERIFY: self._op_equal_verify,
            OP_SHA256: lambda: self.stack.append(sha256(self._pop())),
            OP_HASH160: lambda: self.stack.append(hash160(self._pop())),
            OP_HASH256: lambda: self.stack.append(hash256(self._pop())),
            OP_CHECKSIG: self._op_checksig,
            OP_CHECKSIGVERIFY: self._op_checksig_verify,
            OP_CHECKMULTISIG: self._op_checkmultisig,
            OP_CHECKMULTISIGVERIFY: self._op_checkmultisig_verify,
        }

    def eval_script(self, script: bytes, sigversion: int = SIGVERSION_BASE) -> None:
        self.sigversion = sigversion
        self.script_code = script
        for opcode, data in parse_script(script):
            if data is not None:
                self.stack.append(data)
            elif opcode == OP_0:
                self.stack.append(b"")
            elif OP_1 <= opcode <= OP_16:
                self.stack.append(encode_num(opcode - OP_1 + 1))
            elif opcode in self.op_handlers:
                self.op_handlers[opcode]()
            else:
                raise ScriptError(f"Unsupported opcode 0x{opcode:02x}")

    def _pop(self) -> bytes:
        if not self.stack:
            raise ScriptError("Stack underflow")
        return self.stack.pop()

    def _op_drop(self) -> None:
        self._pop()

    def _op_verify(self) -> None:
        if not cast_to_bool(self._pop()):
            raise ScriptError("OP_VERIFY failed")

    def _op_return(self) -> None:
        raise ScriptError("OP_RETURN encountered")

    def _op_dup(self) -> None:
        if not self.stack:
            raise ScriptError("Stack underflow")
        self.stack.append(self.stack[-1])

    def _op_swap(self) -> None:
        a = self._pop()
        b = self._pop()
        self.stack.append(a)
        self.stack.append(b)

    def _op_equal(self) -> None:
        a = self._pop()
        b = self._pop()
        self.stack.append(encode_num(1) if a == b else b"")

    def _op_equal_verify(self) -> None:
        self._op_equal()
        self._op_verify()

    def sighash(self, hashtype: int) -> bytes:
        if self.sigversion == SIGVERSION_WITNESS_V0:
            return signature_hash_segwit(self.tx, self.index, self.script_code, self.amount, hashtype)
        return signature_hash_legacy(self.tx, self.index, self.script_code, hashtype)

    def check_sig(self, sig: bytes, pubkey: bytes) -> bool:
        if not sig or sig[-1] != SIGHASH_ALL:
            return False
        return verify_signature(pubkey, self.sighash(sig[-1]), sig[:-1])

    def _op_checksig(self) -> None:
        pubkey = self._pop()
        sig = self._pop()
        self.stack.append(encode_num(1) if self.check_sig(sig, pubkey) else b"")

    def _op_checksig_verify(self) -> None:
        self._op_checksig()
        self._op_verify()

    def _op_checkmultisig(self) -> None:
        n = decode_num(self._pop())
        if n < 0 or n > 20:
            raise ScriptError("Invalid pubkey count")
        pubkeys = [self._pop() for _ in range(n)][::-1]
        m = decode_num(self._pop())
        if m < 0 or m > n:
            raise ScriptError("Invalid signature count")
        sigs = [self._pop() for _ in range(m)][::-1]
        if self._pop() != b"":
            raise ScriptError("Dummy element must be empty")

        success = True
        ikey = 0
        for sig in sigs:
            while ikey < len(pubkeys) and not self.check_sig(sig, pubkeys[ikey]):
                ikey += 1
            if ikey >= len(pubkeys):
                success = False
                break
            ikey += 1
        self.stack.append(encode_num(1) if success else b"")

    def _op_checkmultisig_verify(self) -> None:
        self._op_checkmultisig()
        self._op_verify()


def _verify_witness_program(engine: ScriptEngine, witness: List[bytes], version: int, program: bytes) -> bool:
    if version != 0:
        raise ScriptError("Unknown witness version")
    if len(program) == 20:
        if len(witness) != 2:
            raise ScriptError("Witness program mismatch")
        script = p2pkh_script(program)
        engine.stack = list(witness)
    elif len(program) == 32:
        if not witness:
            raise ScriptError("Empty witness")
        script = witness[-1]
        if sha256(script) != program:
            raise ScriptError("Witness script hash mismatch")
        engine.stack = list(witness[:-1])
    else:
        raise ScriptError("Wrong witness program length")
    engine.eval_script(script, SIGVERSION_WITNESS_V0)
    return len(engine.stack) == 1 and cast_to_bool(engine.stack[0])


def verify_input(tx: CTransaction, index: int, coin: Coin) -> bool:
    """
    Check that input ``index`` of ``tx`` correctly spends ``coin``.

    :param tx: The spending transaction
    :param index: The input index
    :param coin: The output being spent
    :return: Whether the input's scripts and signatures are valid
    """
    try:
        return _verify_input(tx, index, coin)
    except ScriptError as e:
        LOG.debug("Input %d failed verification: %s", index, e)
        return False


def _verify_input(tx: CTransaction, index: int, coin: Coin) -> bool:
    script_sig = tx.vin[index].scriptSig
    witness = tx.get_witness(index)
    script_pubkey = coin.script

    engine = ScriptEngine(tx, index, coin.value)
    engine.eval_script(script_sig)
    stack_copy = list(engine.stack)
    engine.eval_script(script_pubkey)
    if not engine.stack or not cast_to_bool(engine.stack[-1]):
        return False

    is_wit, version, program = is_witness(script_pubkey)
    if is_wit:
        if script_sig:
            raise ScriptError("Native witness spend with non-empty scriptSig")
        return _verify_witness_program(engine, witness, version, program)

    if is_p2sh(script_pubkey):
        if not is_push_only(script_sig):
            raise ScriptError("P2SH scriptSig is not push only")
        if not stack_copy:
            raise ScriptError("Missing redeem script")
        redeem = stack_copy[-1]
        engine.stack = stack_copy[:-1]
        engine.eval_script(redeem)
        if not engine.stack or not cast_to_bool(engine.stack[-1]):
            return False
        is_wit, version, program = is_witness(redeem)
        if is_wit:
            if script_sig != bytes([len(redeem)]) + redeem:
                raise ScriptError("Nested witness scriptSig must only push the program")
            return _verify_witness_program(engine, witness, version, program)

    if witness:
        raise ScriptError("Unexpected witness")
    return True


def verify_transaction(tx: CTransaction, coins: List[Coin]) -> bool:
    """
    Check every input of ``tx`` against the coins it spends, in input order.
    """
    if len(coins) != len(tx.vin):
        return False
    return all(verify_input(tx, i, coin) for i, coin in enumerate(coins))
