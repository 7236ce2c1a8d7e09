"""
Mutable Transactions
********************

:class:`KeyRing` describes how one key spends an output (plain, witness, nested, multisig)
and :class:`MultisigTransaction` builds input scripts and witnesses for a transaction,
one signature at a time, so signatures from several cosigners can be merged.

Multisig inputs keep one signature slot per public key of the redeem script until
enough signatures are present, at which point the input is finalized to exactly ``m``
signatures in redeem script key order.
"""

import logging

from typing import (
    Dict,
    Iterable,
    List,
    Optional,
)

from .common import (
    hash160,
    sha256,
)
from .errors import BadArgumentError
from .interpreter import (
    ScriptError,
    parse_script,
)
from .key import (
    ExtendedKey,
    verify_signature,
)
from ._script import (
    OP_0,
    SIGHASH_ALL,
    p2pkh_script,
    p2wpkh_script,
    p2wsh_script,
    parse_multisig,
    pubkey_to_script,
    push_data,
    redeem_to_script,
)
from .serializations import (
    CTransaction,
    Coin,
    signature_hash_legacy,
    signature_hash_segwit,
)

LOG = logging.getLogger(__name__)


class KeyRing(object):
    """
    A public key, optionally with its private key, and the way it is used to spend.

    :param pubkey: The compressed public key
    :param key: The extended private key to sign with, if available
    :param witness: Whether outputs are spent with a witness
    :param nested: Whether the witness program is wrapped in P2SH
    :param script: The multisig redeem script, if any
    """

    def __init__(self, pubkey: bytes, key: Optional[ExtendedKey] = None, witness: bool = False, nested: bool = False, script: Optional[bytes] = None) -> None:
        self.pubkey = pubkey
        self.key = key
        self.witness = witness
        self.nested = nested
        self.script = script

    def get_output_script(self) -> bytes:
        if self.script is not None:
            return redeem_to_script(self.script, self.witness, self.nested)
        return pubkey_to_script(self.pubkey, self.witness, self.nested)

    def get_program(self) -> Optional[bytes]:
        """
        The witness program pushed by the scriptSig of a nested spend.
        """
        if not self.witness or not self.nested:
            return None
        if self.script is not None:
            return p2wsh_script(sha256(self.script))
        return p2wpkh_script(hash160(self.pubkey))

    def get_script_code(self) -> bytes:
        if self.script is not None:
            return self.script
        return p2pkh_script(hash160(self.pubkey))

    def owns_output(self, coin: Coin) -> bool:
        return coin.script == self.get_output_script()

    def sign(self, digest: bytes) -> bytes:
        if self.key is None or self.key.privkey is None:
            raise BadArgumentError("Private key is required for signing")
        return self.key.sign(digest)

    def __repr__(self) -> str:
        return f"KeyRing(pubkey={self.pubkey.hex()} witness={self.witness} nested={self.nested} multisig={self.script is not None})"


class MultisigTransaction(object):
    """
    A transaction under construction together with the coins its inputs spend.
    """

    def __init__(self, tx: CTransaction, coins: Optional[Iterable[Coin]] = None) -> None:
        self.tx = CTransaction(tx)
        self.view: Dict[bytes, Coin] = {}
        # input index -> signature slots in redeem script key order
        self._slots: Dict[int, List[bytes]] = {}
        if coins is not None:
            for coin in coins:
                self.add_coin(coin)

    def add_coin(self, coin: Coin) -> None:
        self.view[coin.prevout.to_key()] = coin

    def get_coin(self, index: int) -> Coin:
        key = self.tx.vin[index].prevout.to_key()
        if key not in self.view:
            raise BadArgumentError(f"Missing coin for input {index}")
        return self.view[key]

    def has_coin(self, index: int) -> bool:
        return self.tx.vin[index].prevout.to_key() in self.view

    def to_tx(self) -> CTransaction:
        tx = CTransaction(self.tx)
        tx.rehash()
        return tx

    def signature_hash(self, index: int, coin: Coin, ring: KeyRing, hashtype: int = SIGHASH_ALL) -> bytes:
        script_code = ring.get_script_code()
        if ring.witness:
            return signature_hash_segwit(self.tx, index, script_code, coin.value, hashtype)
        return signature_hash_legacy(self.tx, index, script_code, hashtype)

    def sign_input(self, index: int, coin: Coin, ring: KeyRing) -> bytes:
        """
        Produce this ring's signature for an input, with the sighash byte appended.
        """
        return ring.sign(self.signature_hash(index, coin, ring)) + bytes([SIGHASH_ALL])

    def _get_vector(self, index: int, ring: KeyRing) -> List[bytes]:
        if ring.witness:
            return list(self.tx.get_witness(index))
        try:
            ops = parse_script(self.tx.vin[index].scriptSig)
        except ScriptError:
            return []
        return [data if data is not None else b"" for op, data in ops if data is not None or op == OP_0]

    def _set_vector(self, index: int, ring: KeyRing, vector: List[bytes]) -> None:
        if ring.witness:
            program = ring.get_program()
            self.tx.vin[index].scriptSig = push_data(program) if program is not None else b""
            self.tx.set_witness(index, vector)
        else:
            self.tx.vin[index].scriptSig = b"".join(push_data(item) for item in vector)

    def _render_multisig(self, index: int, ring: KeyRing) -> None:
        assert ring.script is not None
        m, _ = parse_multisig(ring.script)
        slots = self._slots[index]
        signatures = [sig for sig in slots if sig]
        if len(signatures) >= m:
            vector = [b""] + signatures[:m] + [ring.script]
        else:
            vector = [b""] + list(slots) + [ring.script]
        self._set_vector(index, ring, vector)

    def template_input(self, index: int, ring: KeyRing) -> bool:
        """
        Build the placeholder script for an input spent by ``ring``, keeping existing signatures.

        :return: Whether the ring spends this input
        """
        if not self.has_coin(index):
            return False
        coin = self.get_coin(index)
        if not ring.owns_output(coin):
            return False

        if ring.script is None:
            vector = self._get_vector(index, ring)
            if len(vector) == 2 and vector[1] == ring.pubkey:
                return True
            self._set_vector(index, ring, [b"", ring.pubkey])
            return True

        multisig = parse_multisig(ring.script)
        if multisig is None:
            raise BadArgumentError("Redeem script is not multisig")
        _, pubkeys = multisig

        if index not in self._slots:
            slots = [b""] * len(pubkeys)
            existing = self._get_vector(index, ring)
            digest = self.signature_hash(index, coin, ring)
            # recover the key position of signatures already in the input
            for sig in existing[1:-1]:
                if not sig or sig[-1] != SIGHASH_ALL:
                    continue
                for i, pubkey in enumerate(pubkeys):
                    if not slots[i] and verify_signature(pubkey, digest, sig[:-1]):
                        slots[i] = sig
                        break
            self._slots[index] = slots

        self._render_multisig(index, ring)
        return True

    def template(self, ring: KeyRing) -> int:
        """
        Template every input spent by ``ring``.

        :return: The number of templated inputs
        """
        total = 0
        for i in range(len(self.tx.vin)):
            if self.template_input(i, ring):
                total += 1
        return total

    def apply_signature(self, index: int, coin: Coin, ring: KeyRing, signature: bytes, mutate_sighash: bool = True) -> bool:
        """
        Place a signature for ``ring.pubkey`` into an input.

        :param index: The input index
        :param coin: The coin spent by the input
        :param ring: The ring of the key that produced the signature
        :param signature: DER signature, with sighash byte unless ``mutate_sighash`` is set
        :param mutate_sighash: Append the SIGHASH_ALL byte to ``signature``
        :return: Whether the signature was placed
        """
        if mutate_sighash:
            signature = signature + bytes([SIGHASH_ALL])

        self.add_coin(coin)
        if not self.template_input(index, ring):
            return False

        if ring.script is None:
            self._set_vector(index, ring, [signature, ring.pubkey])
            return True

        _, pubkeys = parse_multisig(ring.script)
        if ring.pubkey not in pubkeys:
            return False
        self._slots[index][list(pubkeys).index(ring.pubkey)] = signature
        self._render_multisig(index, ring)
        return True

    def sign(self, rings: List[KeyRing]) -> int:
        """
        Sign every input one of ``rings`` can spend.

        :return: The number of inputs signed
        """
        total = 0
        for i in range(len(self.tx.vin)):
            if not self.has_coin(i):
                continue
            coin = self.get_coin(i)
            for ring in rings:
                if ring.key is None or not ring.owns_output(coin):
                    continue
                if self.apply_signature(i, coin, ring, self.sign_input(i, coin, ring), False):
                    total += 1
                    break
        LOG.debug("Signed %d of %d inputs", total, len(self.tx.vin))
        return total

    def get_signatures(self, rings: List[KeyRing]) -> List[bytes]:
        """
        Sign input ``i`` with ``rings[i]`` without modifying the transaction.

        :return: One signature, with sighash byte, per input
        """
        if len(rings) != len(self.tx.vin):
            raise BadArgumentError("Need exactly one ring per input")
        return [self.sign_input(i, self.get_coin(i), ring) for i, ring in enumerate(rings)]
