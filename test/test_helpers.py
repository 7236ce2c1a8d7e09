#!/usr/bin/env python3
# Copyright (c) 2020 The bsigner developers
# Distributed under the MIT software license, see the accompanying
# file COPYING or http://www.opensource.org/licenses/mit-license.php.

import unittest

from bsignerlib.common import Network
from bsignerlib.errors import (
    BadArgumentError,
    ConsistencyError,
    InvalidPathError,
)
from bsignerlib.helpers import (
    apply_to,
    create_ring,
    get_input_data,
    get_redeem_script,
    parse_path,
    prepare_sign_options,
)
from bsignerlib.input_data import InputData
from bsignerlib.key import ExtendedKey
from bsignerlib.mtx import MultisigTransaction
from bsignerlib.path import Path
from bsignerlib.serializations import (
    CTransaction,
    Coin,
)

from utils import (
    COIN,
    PHRASE,
    derive,
    multisig_input,
    single_key_input,
    spend,
)

class TestHelpers(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.master = ExtendedKey.from_mnemonic(PHRASE, network=Network.TESTNET)

    def test_parse_path(self):
        path = Path.from_string("m/44'/1'/0'")
        self.assertEqual(parse_path(path), path)
        self.assertIsNot(parse_path(path), path)
        self.assertEqual(parse_path([0x8000002c, 0x80000001, 0x80000000]), path)
        self.assertEqual(parse_path("m/44'/1'/0'"), path)
        with self.assertRaises(InvalidPathError):
            parse_path(44)

    def test_prepare_sign_options(self):
        prev1, options1 = single_key_input(self.master, "m/44'/1'/0'/0/0")
        prev2, options2 = single_key_input(self.master, "m/44'/1'/0'/0/1")
        data2 = InputData.from_options(options2)

        mappings = prepare_sign_options([options1, data2])
        self.assertIs(mappings[data2.to_key()], data2)

        tx = spend([(prev1, 0), (prev2, 0)], [(b"\x51", COIN)])
        self.assertEqual(get_input_data(mappings, tx, 0).path.to_string(), "m/44'/1'/0'/0/0")

        tx = spend([(prev2, 0), (prev2, 0)], [(b"\x51", COIN)])
        del mappings[data2.to_key()]
        with self.assertRaisesRegex(BadArgumentError, "Could not get metadata for input"):
            get_input_data(mappings, tx, 0)

    def test_apply_to(self):
        prev, options = single_key_input(self.master, "m/84'/1'/0'/0/0", witness=True)
        other, _ = single_key_input(self.master, "m/84'/1'/0'/0/1", witness=True)
        target = spend([(prev, 0)], [(b"\x51", COIN)])

        data = InputData.from_options(options)
        key = derive(self.master, "m/84'/1'/0'/0/0")
        mtx = MultisigTransaction(target, [data.coin])
        ring = create_ring(data, key.pubkey, key)
        self.assertIs(ring.key, key)
        self.assertIsNone(ring.script)
        self.assertEqual(mtx.sign([ring]), 1)
        signed = mtx.to_tx()

        result = apply_to(target, signed)
        self.assertIs(result, target)
        self.assertEqual(target.get_witness(0), signed.get_witness(0))
        self.assertEqual(target.to_hex(), signed.to_hex())

        with self.assertRaisesRegex(ConsistencyError, "source and target must be the same."):
            apply_to(CTransaction(), signed)
        with self.assertRaisesRegex(ConsistencyError, "source and target inputs must be the same."):
            apply_to(spend([(other, 0)], [(b"\x51", COIN)]), signed)

    def test_redeem_script_and_ring(self):
        account_keys = [derive(self.master, f"m/48'/1'/{i}'").to_public() for i in range(2)]
        prev, redeem = multisig_input(account_keys, 2, 1, 5, witness=True, nested=True)
        data = InputData.from_options({
            'path': "m/48'/1'/0'/1/5",
            'witness': True,
            'prevout': {'hash': prev.txid(), 'index': 0},
            'prevTX': prev.to_hex(),
            'multisig': {'m': 2, 'pubkeys': [{'xpub': k.to_string(), 'path': [1, 5], 'signature': ''} for k in account_keys]},
        })
        self.assertEqual(get_redeem_script(data), redeem)

        ring = create_ring(data, account_keys[0].derive_path([1, 5]).pubkey)
        self.assertTrue(ring.witness)
        self.assertTrue(ring.nested)
        self.assertEqual(ring.script, redeem)
        self.assertTrue(ring.owns_output(Coin.from_tx(prev, 0)))

        _, single = single_key_input(self.master, "m/44'/1'/0'/0/0")
        with self.assertRaisesRegex(BadArgumentError, "non-multisig"):
            get_redeem_script(InputData.from_options(single))
        with self.assertRaisesRegex(BadArgumentError, "data must be InputData"):
            create_ring(single, b"\x02" * 33)
        with self.assertRaisesRegex(BadArgumentError, "pubkey must be bytes"):
            create_ring(data, "02" * 33)

if __name__ == "__main__":
    unittest.main()
