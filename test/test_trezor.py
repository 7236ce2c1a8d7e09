#!/usr/bin/env python3
# Copyright (c) 2020 The bsigner developers
# Distributed under the MIT software license, see the accompanying
# file COPYING or http://www.opensource.org/licenses/mit-license.php.

import asyncio
import base64
import unittest

from bsignerlib.common import (
    Network,
    Vendor,
)
from bsignerlib.devices.trezor import (
    TrezorDevice,
    check_response,
    create_trezor_inputs,
    get_coin_name,
    process_output,
    strip_hash_type,
    tx_to_trezor,
)
from bsignerlib.errors import (
    ActionCanceledError,
    BadArgumentError,
    DeviceConnectionError,
    DeviceFailureError,
    DeviceNotReadyError,
    InvalidStateError,
    UnsupportedInputError,
)
from bsignerlib.helpers import prepare_sign_options
from bsignerlib.key import ExtendedKey
from bsignerlib.path import Path
from bsignerlib._script import (
    SIGHASH_ALL,
    multisig_script,
    nulldata_script,
    redeem_to_script,
)
from bsignerlib.serializations import CTxOut

from utils import (
    COIN,
    PHRASE,
    TrezorSession,
    change_script,
    derive,
    fund,
    single_key_input,
    spend,
)

def ok(payload):
    return {'success': True, 'payload': payload}

def fail(error):
    return {'success': False, 'payload': {'error': error}}

class TestResponses(unittest.TestCase):
    def test_success(self):
        self.assertEqual(check_response(ok({'a': 1}), "f"), {'a': 1})
        with self.assertRaisesRegex(DeviceFailureError, "Response without payload."):
            check_response({'success': True}, "f")

    def test_errors(self):
        cases = [
            ({'success': False}, DeviceFailureError, "Unknown error without payload."),
            (fail("Cancelled"), ActionCanceledError, "sign_message canceled"),
            (fail("Action cancelled by user"), ActionCanceledError, "sign_message canceled"),
            (fail("Invalid PIN"), DeviceNotReadyError, "Invalid PIN"),
            (fail("Device disconnected"), DeviceConnectionError, "Device disconnected"),
            (fail("Device not found"), DeviceConnectionError, "Device not found"),
            (fail("Firmware error"), DeviceFailureError, "Firmware error"),
        ]
        for response, cls, msg in cases:
            with self.subTest(response=response):
                with self.assertRaisesRegex(cls, msg):
                    check_response(response, "sign_message")

    def test_coin_name(self):
        self.assertEqual(get_coin_name(Network.MAIN), "Bitcoin")
        self.assertEqual(get_coin_name("testnet"), "Testnet")
        self.assertEqual(get_coin_name(Network.REGTEST), "Testnet")

class TestRequests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.master = ExtendedKey.from_mnemonic(PHRASE, network=Network.TESTNET)

    def test_single_key_inputs(self):
        legacy, legacy_options = single_key_input(self.master, "m/44'/1'/0'/0/0")
        native, native_options = single_key_input(self.master, "m/84'/1'/0'/0/0", witness=True, value=5000)
        nested, nested_options = single_key_input(self.master, "m/49'/1'/0'/0/0", witness=True, nested=True, value=6000)
        tx = spend([(legacy, 0), (native, 0), (nested, 0)], [
            (change_script(self.master), COIN),
            (nulldata_script(b"hello"), 0),
        ])

        request = create_trezor_inputs(tx, prepare_sign_options([legacy_options, native_options, nested_options]), Network.TESTNET)
        self.assertEqual(request['version'], 2)
        self.assertEqual(request['inputs_count'], 3)
        self.assertEqual(request['outputs_count'], 2)

        inputs = request['inputs']
        self.assertEqual([i['script_type'] for i in inputs], ['SPENDADDRESS', 'SPENDWITNESS', 'SPENDP2SHWITNESS'])
        self.assertEqual(inputs[0]['prev_hash'], legacy.txid())
        self.assertEqual(inputs[0]['address_n'], Path.from_string("m/44'/1'/0'/0/0").to_list())
        self.assertNotIn('amount', inputs[0])
        self.assertEqual(inputs[1]['amount'], "5000")
        self.assertEqual(inputs[2]['amount'], "6000")

        # only legacy inputs need their previous transaction
        self.assertEqual(request['refTxs'], [tx_to_trezor(legacy)])

        outputs = request['outputs']
        self.assertEqual(outputs[0]['script_type'], 'PAYTOADDRESS')
        self.assertEqual(outputs[0]['address'], CTxOut(COIN, change_script(self.master)).get_address(Network.TESTNET))
        self.assertEqual(outputs[1], {'amount': "0", 'script_type': 'PAYTOOPRETURN', 'op_return_data': b"hello".hex()})

    def test_multisig_inputs(self):
        xpubs = [derive(self.master, f"m/48'/1'/{i}'").to_public().to_string() for i in range(3)]
        pubkeys = [ExtendedKey.deserialize(x).derive_path([0, 1]).pubkey for x in xpubs]
        redeem = multisig_script(2, pubkeys)

        options = []
        funding = []
        for witness, nested in [(False, False), (True, True)]:
            prev = fund(redeem_to_script(redeem, witness, nested))
            funding.append(prev)
            options.append({
                'path': "m/48'/1'/0'/0/1",
                'witness': witness,
                'prevout': {'hash': prev.txid(), 'index': 0},
                'prevTX': prev.to_hex(),
                'multisig': {'m': 2, 'pubkeys': [{'xpub': x, 'path': [0, 1], 'signature': ''} for x in xpubs]},
            })

        tx = spend([(prev, 0) for prev in funding], [(b"\x00\x14" + bytes(20), COIN)])
        request = create_trezor_inputs(tx, prepare_sign_options(options), Network.TESTNET)

        legacy, nested = request['inputs']
        self.assertEqual(legacy['script_type'], 'SPENDMULTISIG')
        self.assertEqual(nested['script_type'], 'SPENDP2SHWITNESS')
        self.assertEqual(legacy['multisig']['m'], 2)

        # cosigners are listed in redeem script order
        order = [p.hex() for p in sorted(pubkeys)]
        listed = [ExtendedKey.deserialize(pk['node']).derive_path(pk['address_n']).pubkey.hex() for pk in legacy['multisig']['pubkeys']]
        self.assertEqual(listed, order)
        self.assertEqual(legacy['multisig']['signatures'], ["", "", ""])
        self.assertEqual(request['refTxs'], [tx_to_trezor(funding[0])])

    def test_unsupported_inputs(self):
        redeem = multisig_script(1, [derive(self.master, "m/48'/1'/0'/0/0").pubkey])
        prev = fund(redeem_to_script(redeem, witness=True))
        tx = spend([(prev, 0)], [(b"\x51", COIN)])
        options = {
            'path': "m/48'/1'/0'/0/0",
            'witness': True,
            'prevout': {'hash': prev.txid(), 'index': 0},
            'prevTX': prev.to_hex(),
        }
        with self.assertRaisesRegex(UnsupportedInputError, "witness script hash"):
            create_trezor_inputs(tx, prepare_sign_options([options]))

        with self.assertRaisesRegex(UnsupportedInputError, "External inputs"):
            create_trezor_inputs(tx, {})

    def test_unsupported_outputs(self):
        key = derive(self.master, "m/44'/1'/0'/0/0")
        with self.assertRaises(UnsupportedInputError):
            process_output(CTxOut(1, bytes([0x21]) + key.pubkey + b"\xac"), Network.TESTNET)
        with self.assertRaises(UnsupportedInputError):
            process_output(CTxOut(1, b"\x51"), Network.TESTNET)

    def test_strip_hash_type(self):
        key = derive(self.master, "m/44'/1'/0'/0/0")
        der = key.sign(bytes(32))
        self.assertEqual(strip_hash_type(""), "")
        self.assertEqual(strip_hash_type((der + bytes([SIGHASH_ALL])).hex()), der.hex())
        self.assertEqual(strip_hash_type(der.hex()), der.hex())
        with self.assertRaises(BadArgumentError):
            strip_hash_type("0102")

class TestTrezorDevice(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.master = ExtendedKey.from_mnemonic(PHRASE, network=Network.TESTNET)
        self.session = TrezorSession()
        self.device = TrezorDevice.from_payload({
            'path': "1",
            'label': "My Trezor",
            'features': {'device_id': "ABCDEF"},
        }, self.session, Network.TESTNET)

    async def test_properties(self):
        self.assertEqual(self.device.vendor, Vendor.TREZOR)
        self.assertEqual(self.device.handle, "1")
        self.assertEqual(self.device.key, "ABCDEF")
        self.assertEqual(self.device.label, "My Trezor")
        self.assertTrue(self.device.opened)
        with self.assertRaises(BadArgumentError):
            TrezorDevice(None, "", "id", self.session)

    async def test_get_public_key(self):
        account = derive(self.master, "m/44'/1'/0'").to_public()
        self.session.responses.append(ok({
            'depth': account.depth,
            'fingerprint': int.from_bytes(account.parent_fingerprint, byteorder="big"),
            'childNum': account.child_num,
            'chainCode': account.chaincode.hex(),
            'publicKey': account.pubkey.hex(),
        }))
        key = await self.device.get_public_key("m/44'/1'/0'")
        self.assertEqual(key.to_string(), account.to_string())

        name, params = self.session.requests[0]
        self.assertEqual(name, "get_public_key")
        self.assertEqual(params, {'device': {'path': "1"}, 'coin': "Testnet", 'path': "m/44'/1'/0'"})

    async def test_sign_transaction(self):
        prev, options = single_key_input(self.master, "m/84'/1'/0'/0/0", witness=True)
        tx = spend([(prev, 0)], [(change_script(self.master), COIN - 1000)])
        signed_hex = tx.to_hex()
        self.session.responses.append(ok({'signatures': ["3044"], 'serializedTx': signed_hex}))

        signed = await self.device.sign_transaction(tx, [options])
        self.assertEqual(signed.txid(), tx.txid())

        name, params = self.session.requests[0]
        self.assertEqual(name, "sign_transaction")
        self.assertEqual(params['coin'], "Testnet")
        self.assertEqual(params['inputs'][0]['script_type'], 'SPENDWITNESS')

        self.session.responses.append(ok({'signatures': ["3044"], 'serializedTx': signed_hex}))
        self.assertEqual(await self.device.get_signatures(tx, [options]), [bytes.fromhex("3044") + bytes([SIGHASH_ALL])])

    async def test_sign_message(self):
        signature = derive(self.master, "m/44'/1'/0'/0/0").sign_message("hi")
        self.session.responses.append(ok({'address': "", 'signature': base64.b64encode(signature).decode()}))
        self.assertEqual(await self.device.sign_message("m/44'/1'/0'/0/0", "hi"), signature)

        _, params = self.session.requests[0]
        self.assertEqual(params['message'], b"hi".hex())
        self.assertTrue(params['hex'])

        with self.assertRaises(BadArgumentError):
            await self.device.sign_message("m/44'/1'/0'/0/0", 5)

    async def test_errors(self):
        self.session.responses.append(fail("Cancelled"))
        with self.assertRaisesRegex(ActionCanceledError, "sign_message canceled"):
            await self.device.sign_message("m/0", "x")

        self.session.responses.append(asyncio.TimeoutError())
        with self.assertRaisesRegex(DeviceConnectionError, "timed out"):
            await self.device.sign_message("m/0", "x")

        with self.assertRaises(BadArgumentError):
            await self.device.get_public_key("m/x")

    async def test_destroy(self):
        await self.device.destroy()
        with self.assertRaisesRegex(InvalidStateError, "Device no longer available."):
            await self.device.open()

if __name__ == "__main__":
    unittest.main()
