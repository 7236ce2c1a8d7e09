#!/usr/bin/env python3
# Copyright (c) 2020 The bsigner developers
# Distributed under the MIT software license, see the accompanying
# file COPYING or http://www.opensource.org/licenses/mit-license.php.

import asyncio
import base64
import unittest

from collections import namedtuple

from ledger_bitcoin.client import LegacyClient
from ledger_bitcoin.exception.errors import (
    DenyError,
    IncorrectDataError,
    NotSupportedError,
    UnknownDeviceError,
)

from bsignerlib.common import (
    Network,
    Vendor,
)
from bsignerlib.devices.ledger import (
    ApduException,
    HIDTransport,
    HIDTransportClient,
    LedgerBitcoinApp,
    LedgerDevice,
    create_ledger_inputs,
    get_policy_template,
    serialize_psbt,
)
from bsignerlib.errors import (
    ActionCanceledError,
    BadArgumentError,
    DeviceConnectionError,
    DeviceFailureError,
    InvalidStateError,
    UnavailableActionError,
)
from bsignerlib.helpers import prepare_sign_options
from bsignerlib.interpreter import verify_input
from bsignerlib.key import (
    ExtendedKey,
    verify_message,
)
from bsignerlib.mtx import (
    KeyRing,
    MultisigTransaction,
)
from bsignerlib.path import Path
from bsignerlib._script import (
    is_p2sh,
    multisig_script,
    redeem_to_script,
)
from bsignerlib.serializations import (
    CTransaction,
    Coin,
    ser_string,
)

from utils import (
    COIN,
    PHRASE,
    FakeHid,
    change_script,
    derive,
    frame,
    fund,
    hid_frames,
    hid_transport,
    multisig_input,
    single_key_input,
    spend,
)

FEE = 10000

PartialSignature = namedtuple("PartialSignature", "pubkey signature")

class FakeLedgerApp(object):
    """
    Bitcoin application backed by a software key.
    """

    def __init__(self, master, network=Network.TESTNET):
        self.master = master
        self.network = network
        self.error = None
        self.calls = []

    def _key(self, path):
        return self.master.derive_path(Path.from_type(path).to_list())

    def _check(self, name):
        self.calls.append(name)
        if self.error is not None:
            raise self.error

    def _rings(self, inputs):
        rings = []
        for inp in inputs:
            key = self._key(inp.path)
            rings.append(KeyRing(key.pubkey, key, inp.witness, inp.witness and is_p2sh(inp.coin.script), inp.redeem))
        return rings

    async def get_public_key(self, path, get_parent_fingerprint=True):
        self._check("get_public_key")
        return self._key(path).to_public(self.network)

    async def sign_transaction(self, tx, inputs):
        self._check("sign_transaction")
        mtx = MultisigTransaction(tx, [inp.coin for inp in inputs])
        mtx.sign(self._rings(inputs))
        return mtx.to_tx()

    async def get_transaction_signatures(self, tx, coins, inputs):
        self._check("get_transaction_signatures")
        return MultisigTransaction(tx, coins).get_signatures(self._rings(inputs))

    async def sign_message(self, path, message):
        self._check("sign_message")
        return self._key(path).sign_message(message)

class FakeLedgerClient(object):
    """
    ``ledger_bitcoin`` client backed by a software key.

    ``signatures`` maps an input index and public key to the signature returned for it.
    """

    def __init__(self, master):
        self.master = master
        self.signatures = {}
        self.display_only = set()
        self.calls = []
        self.registered = []

    def get_extended_pubkey(self, path, display=False):
        self.calls.append(("get_extended_pubkey", path, display))
        if path in self.display_only and not display:
            raise NotSupportedError("0x6a82", "NotSupportedError", "Path needs confirmation")
        return derive(self.master, path).to_public().to_string()

    def get_master_fingerprint(self):
        return self.master.fingerprint()

    def register_wallet(self, policy):
        self.registered.append(policy)
        return b"\x00" * 32, b"\x11" * 32

    def sign_psbt(self, psbt, wallet, wallet_hmac):
        self.calls.append(("sign_psbt", wallet.descriptor_template, wallet_hmac))
        results = []
        for i, inp in enumerate(psbt.inputs):
            for pubkey, origin in inp.hd_keypaths.items():
                if origin.fingerprint == self.master.fingerprint() and (i, pubkey) in self.signatures:
                    results.append((i, PartialSignature(pubkey, self.signatures[(i, pubkey)])))
        return results

    def sign_message(self, message, path):
        return base64.b64encode(derive(self.master, path).sign_message(message)).decode()

class FakeLegacyClient(FakeLedgerClient, LegacyClient):
    """
    Client of a Bitcoin app older than 2.1, answering with the legacy result tuples.
    """

    def sign_psbt(self, psbt, wallet, wallet_hmac):
        return [(i, sig.pubkey, sig.signature) for i, sig in super(FakeLegacyClient, self).sign_psbt(psbt, wallet, wallet_hmac)]

def make_transport(path=b"0001:0002:00"):
    return HIDTransport({'path': path, 'vendor_id': 0x2c97, 'product_id': 0x4011, 'serial_number': "0001"})

class TestHIDTransport(unittest.TestCase):
    def test_exchange(self):
        transport = make_transport()
        self.assertEqual(transport.handle, "0001:0002:00")
        self.assertFalse(transport.opened)
        with self.assertRaisesRegex(DeviceConnectionError, "Device is not open."):
            transport.exchange(b"\xe0\xc4\x00\x00\x00")

        transport.device = FakeHid([frame(b"\x01\x02\x90\x00")])
        self.assertTrue(transport.opened)
        response = transport.exchange(b"\xe0\xc4\x00\x00\x00")
        self.assertEqual(response, b"\x01\x02")
        self.assertEqual(transport.device.written, [b"\x00\x01\x01\x05\x00\x00\x00\x05\xe0\xc4\x00\x00\x00"])

    def test_chunked_response(self):
        payload = bytes(range(80)) + b"\x90\x00"
        transport = make_transport()
        transport.device = FakeHid(hid_frames(payload))
        self.assertEqual(transport.exchange(b"\xe0\x40\x00\x00\x00"), bytes(range(80)))

    def test_status_word(self):
        transport = make_transport()
        transport.device = FakeHid([frame(b"\x69\x85")])
        with self.assertRaises(ApduException) as cm:
            transport.exchange(b"\xe0\x40\x00\x00\x00")
        self.assertEqual(cm.exception.sw, 0x6985)

        transport.device = FakeHid([b"\x00" * 64])
        with self.assertRaises(DeviceConnectionError):
            transport.exchange(b"\xe0\x40\x00\x00\x00")

    def test_transport_client(self):
        transport = make_transport()
        transport.device = FakeHid([frame(b"\xaa\x90\x00")])
        client = HIDTransportClient(transport)
        self.assertEqual(client.apdu_exchange(cla=0xe1, ins=0x05, p1=0, p2=0, data=b"\x01"), b"\xaa")
        self.assertEqual(transport.device.written[0][6:14], b"\x00\x06\xe1\x05\x00\x00\x01\x01")
        with self.assertRaises(NotImplementedError):
            client.apdu_exchange_nowait(cla=0xe1, ins=0x05)

class TestLedgerInputs(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.master = ExtendedKey.from_mnemonic(PHRASE, network=Network.TESTNET)

    def test_single_key_inputs(self):
        funding = []
        options = []
        for path, witness, nested in [
            ("m/44'/1'/0'/0/0", False, False),
            ("m/84'/1'/0'/0/0", True, False),
            ("m/49'/1'/0'/0/0", True, True),
        ]:
            prev, opts = single_key_input(self.master, path, witness, nested)
            funding.append(prev)
            options.append(opts)

        tx = spend([(prev, 0) for prev in funding], [(b"\x51", COIN)])
        inputs = create_ledger_inputs(tx, prepare_sign_options(options))

        self.assertEqual([inp.witness for inp in inputs], [False, True, True])
        self.assertEqual([inp.nested for inp in inputs], [False, False, True])
        self.assertEqual([inp.path for inp in inputs], [Path.from_string(o['path']).to_list() for o in options])
        self.assertEqual([inp.redeem for inp in inputs], [None, None, None])
        self.assertEqual([inp.index for inp in inputs], [0, 0, 0])
        self.assertEqual(inputs[0].prev_tx.txid(), funding[0].txid())
        self.assertEqual(inputs[1].coin.value, COIN)
        self.assertEqual([get_policy_template(inp) for inp in inputs], ['pkh(@0/**)', 'wpkh(@0/**)', 'sh(wpkh(@0/**))'])

    def test_multisig_inputs(self):
        xpubs = [derive(self.master, f"m/48'/1'/{i}'").to_public().to_string() for i in range(2)]
        pubkeys = [ExtendedKey.deserialize(x).derive_path([0, 0]).pubkey for x in xpubs]
        redeem = multisig_script(2, pubkeys)

        options = []
        funding = []
        for witness, nested in [(False, False), (True, False), (True, True)]:
            prev = fund(redeem_to_script(redeem, witness, nested))
            funding.append(prev)
            options.append({
                'path': "m/48'/1'/0'/0/0",
                'witness': witness,
                'prevout': {'hash': prev.txid(), 'index': 0},
                'prevTX': prev.to_hex(),
                'multisig': {'m': 2, 'pubkeys': [{'xpub': x, 'path': [0, 0], 'signature': ''} for x in xpubs]},
            })

        tx = spend([(prev, 0) for prev in funding], [(b"\x51", COIN)])
        inputs = create_ledger_inputs(tx, prepare_sign_options(options))
        self.assertEqual([inp.witness for inp in inputs], [False, True, True])
        self.assertEqual([inp.redeem for inp in inputs], [redeem] * 3)
        self.assertEqual([get_policy_template(inp) for inp in inputs], [
            'sh(sortedmulti(2,@0/**,@1/**))',
            'wsh(sortedmulti(2,@0/**,@1/**))',
            'sh(wsh(sortedmulti(2,@0/**,@1/**)))',
        ])

    def test_missing_metadata(self):
        prev, options = single_key_input(self.master, "m/44'/1'/0'/0/0")
        tx = spend([(fund(b"\x51"), 0)], [(b"\x51", COIN)])
        with self.assertRaisesRegex(BadArgumentError, "Could not get metadata"):
            create_ledger_inputs(tx, prepare_sign_options([options]))

    def test_serialize_psbt(self):
        prev1, options1 = single_key_input(self.master, "m/44'/1'/0'/0/0")
        prev2, options2 = single_key_input(self.master, "m/84'/1'/0'/0/0", witness=True)
        tx = spend([(prev1, 0), (prev2, 0)], [(b"\x51", COIN)])
        inputs = create_ledger_inputs(tx, prepare_sign_options([options1, options2]))

        pubkey = derive(self.master, "m/84'/1'/0'/0/0").pubkey
        psbt = serialize_psbt(tx, inputs, self.master.fingerprint(), {1: pubkey})
        self.assertTrue(psbt.startswith(b"psbt\xff"))
        self.assertIn(prev1.serialize_without_witness(), psbt)
        self.assertIn(ser_string(b"\x06" + pubkey), psbt)
        self.assertNotIn(derive(self.master, "m/44'/1'/0'/0/0").pubkey, psbt)

        # legacy inputs need the full previous transaction
        inputs[0].prev_tx = None
        with self.assertRaisesRegex(BadArgumentError, "Input 0 needs the previous transaction."):
            serialize_psbt(tx, inputs, self.master.fingerprint(), {})

class TestLedgerBitcoinApp(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.master = ExtendedKey.from_mnemonic(PHRASE, network=Network.TESTNET)
        self.client = FakeLedgerClient(self.master)
        self.created = []

        def create_client(transport_client, chain, debug):
            self.created.append((transport_client, chain))
            return self.client

        self.app = LedgerBitcoinApp(make_transport(), Network.TESTNET, create_client=create_client)

    def expect_signatures(self, tx, inputs, indices=None):
        rings = FakeLedgerApp(self.master)._rings(inputs)
        sigs = MultisigTransaction(tx, [inp.coin for inp in inputs]).get_signatures(rings)
        for i, ring in enumerate(rings):
            if indices is None or i in indices:
                self.client.signatures[(i, ring.pubkey)] = sigs[i]
        return sigs

    async def test_get_public_key(self):
        expected = derive(self.master, "m/44'/1'/0'").to_public()
        self.assertEqual(await self.app.get_public_key("m/44'/1'/0'"), expected)
        self.assertEqual(len(self.created), 1)
        self.assertIsInstance(self.created[0][0], HIDTransportClient)

        # non-standard paths are confirmed on the device
        self.client.display_only.add("m/45'/1'")
        self.assertEqual(await self.app.get_public_key("m/45'/1'"), derive(self.master, "m/45'/1'").to_public())
        self.assertEqual(self.client.calls[-2:], [
            ("get_extended_pubkey", "m/45'/1'", False),
            ("get_extended_pubkey", "m/45'/1'", True),
        ])

    async def test_sign_single_key(self):
        funding = []
        options = []
        for path, witness, nested in [
            ("m/44'/1'/0'/0/0", False, False),
            ("m/84'/1'/0'/0/1", True, False),
            ("m/49'/1'/0'/1/0", True, True),
        ]:
            prev, opts = single_key_input(self.master, path, witness, nested)
            funding.append(prev)
            options.append(opts)

        tx = spend([(prev, 0) for prev in funding], [(change_script(self.master), 3 * COIN - FEE)])
        inputs = create_ledger_inputs(tx, prepare_sign_options(options))
        expected = self.expect_signatures(tx, inputs)

        signed = await self.app.sign_transaction(CTransaction(tx), inputs)
        for i, prev in enumerate(funding):
            self.assertTrue(verify_input(signed, i, Coin.from_tx(prev, 0)))
        self.assertEqual([c for c in self.client.calls if c[0] == "sign_psbt"], [
            ("sign_psbt", 'pkh(@0/**)', None),
            ("sign_psbt", 'wpkh(@0/**)', None),
            ("sign_psbt", 'sh(wpkh(@0/**))', None),
        ])
        self.assertEqual(self.client.registered, [])

        self.assertEqual(await self.app.get_transaction_signatures(CTransaction(tx), [inp.coin for inp in inputs], inputs), expected)

    async def test_sign_multisig(self):
        account_keys = [derive(self.master, f"m/48'/1'/{i}'").to_public() for i in range(2)]
        funding = [multisig_input(account_keys, 2, 0, 3, witness=True)[0] for _ in range(2)]
        redeem = multisig_input(account_keys, 2, 0, 3)[1]
        options = [{
            'path': "m/48'/1'/0'/0/3",
            'witness': True,
            'prevout': {'hash': prev.txid(), 'index': 0},
            'prevTX': prev.to_hex(),
            'multisig': {'m': 2, 'pubkeys': [{'xpub': k.to_string(), 'path': [0, 3], 'signature': ''} for k in account_keys]},
        } for prev in funding]

        tx = spend([(prev, 0) for prev in funding], [(b"\x51", 2 * COIN - FEE)])
        inputs = create_ledger_inputs(tx, prepare_sign_options(options))
        expected = self.expect_signatures(tx, inputs)

        signed = await self.app.sign_transaction(CTransaction(tx), inputs)
        for i in range(2):
            self.assertIn(expected[i], list(signed.get_witness(i)))
            self.assertEqual(signed.get_witness(i)[-1], redeem)

        self.assertEqual(await self.app.get_transaction_signatures(CTransaction(tx), [inp.coin for inp in inputs], inputs), expected)

        # registered once, the hmac is reused
        self.assertEqual(len(self.client.registered), 1)
        policy = self.client.registered[0]
        self.assertEqual(policy.name, "2 of 2 Multisig")
        self.assertEqual(policy.descriptor_template, 'wsh(sortedmulti(2,@0/**,@1/**))')
        self.assertEqual(policy.keys_info[0], f"[{self.master.fingerprint().hex()}/48'/1'/0']{account_keys[0].to_string()}")
        self.assertEqual(policy.keys_info[1], account_keys[1].to_string())
        self.assertEqual([c for c in self.client.calls if c[0] == "sign_psbt"], [
            ("sign_psbt", 'wsh(sortedmulti(2,@0/**,@1/**))', b"\x11" * 32),
        ] * 2)

    async def test_multisig_without_device_key(self):
        account_keys = [derive(self.master, f"m/48'/1'/{i}'").to_public() for i in (1, 2)]
        prev, _ = multisig_input(account_keys, 1, 0, 0, witness=True)
        options = {
            'path': "m/48'/1'/0'/0/0",
            'witness': True,
            'prevout': {'hash': prev.txid(), 'index': 0},
            'prevTX': prev.to_hex(),
            'multisig': {'m': 1, 'pubkeys': [{'xpub': k.to_string(), 'path': [0, 0], 'signature': ''} for k in account_keys]},
        }
        tx = spend([(prev, 0)], [(b"\x51", COIN - FEE)])
        inputs = create_ledger_inputs(tx, prepare_sign_options([options]))
        with self.assertRaisesRegex(BadArgumentError, "Device key is not a cosigner of input 0."):
            await self.app.sign_transaction(CTransaction(tx), inputs)

    async def test_non_standard_path(self):
        prev, options = single_key_input(self.master, "m/84'/0'/0'/0/0", witness=True)
        tx = spend([(prev, 0)], [(b"\x51", COIN - FEE)])
        inputs = create_ledger_inputs(tx, prepare_sign_options([options]))
        with self.assertRaisesRegex(BadArgumentError, "Ledger requires BIP 84 standard paths"):
            await self.app.sign_transaction(CTransaction(tx), inputs)

    async def test_unsigned_input(self):
        prev1, options1 = single_key_input(self.master, "m/84'/1'/0'/0/0", witness=True)
        prev2, options2 = single_key_input(self.master, "m/84'/1'/0'/0/1", witness=True)
        tx = spend([(prev1, 0), (prev2, 0)], [(b"\x51", 2 * COIN - FEE)])
        inputs = create_ledger_inputs(tx, prepare_sign_options([options1, options2]))
        self.expect_signatures(tx, inputs, indices=[0])
        with self.assertRaisesRegex(DeviceFailureError, "Device did not sign input 1."):
            await self.app.get_transaction_signatures(CTransaction(tx), [inp.coin for inp in inputs], inputs)

    async def test_legacy_client(self):
        self.client = FakeLegacyClient(self.master)
        prev1, options1 = single_key_input(self.master, "m/44'/1'/0'/0/0")
        prev2, options2 = single_key_input(self.master, "m/84'/1'/0'/0/0", witness=True)
        tx = spend([(prev1, 0), (prev2, 0)], [(b"\x51", 2 * COIN - FEE)])
        inputs = create_ledger_inputs(tx, prepare_sign_options([options1, options2]))
        self.expect_signatures(tx, inputs)

        signed = await self.app.sign_transaction(CTransaction(tx), inputs)
        self.assertTrue(verify_input(signed, 0, Coin.from_tx(prev1, 0)))
        self.assertTrue(verify_input(signed, 1, Coin.from_tx(prev2, 0)))
        # one request with every input
        self.assertEqual([c for c in self.client.calls if c[0] == "sign_psbt"], [("sign_psbt", 'wpkh(@0/**)', None)])

    async def test_sign_message(self):
        sig = await self.app.sign_message("m/44'/1'/0'/0/0", b"ledger")
        self.assertTrue(verify_message(derive(self.master, "m/44'/1'/0'/0/0").pubkey, "ledger", sig))

class TestLedgerDevice(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.master = ExtendedKey.from_mnemonic(PHRASE, network=Network.TESTNET)
        self.app = FakeLedgerApp(self.master)
        self.device = LedgerDevice(hid_transport({'path': b"0001:0002:00", 'product_id': 0x4011, 'serial_number': "0001"}), self.app, Network.TESTNET)
        await self.device.open()

    async def test_properties(self):
        self.assertEqual(self.device.vendor, Vendor.LEDGER)
        self.assertEqual(self.device.handle, "0001:0002:00")
        self.assertEqual(self.device.key, f"{0x2c97}:{0x4011}:0001")
        self.assertEqual(self.device.transport.timeout, 5000)
        with self.assertRaises(BadArgumentError):
            LedgerDevice(make_transport(), self.app, timeout=0)

    async def test_opened(self):
        self.assertTrue(self.device.opened)
        await self.device.close()
        self.assertFalse(self.device.opened)
        with self.assertRaisesRegex(DeviceConnectionError, "Device is not open."):
            await self.device.get_public_key("m/44'/1'/0'")
        self.assertEqual(self.app.calls, [])

    async def test_get_public_key(self):
        expected = derive(self.master, "m/44'/1'/0'").to_public()
        self.assertEqual(await self.device.get_public_key("m/44'/1'/0'"), expected)
        self.assertEqual(await self.device.get_xpub(Path.from_string("m/44'/1'/0'")), expected.to_string())

    async def test_sign_transaction(self):
        prev1, options1 = single_key_input(self.master, "m/44'/1'/0'/0/0")
        prev2, options2 = single_key_input(self.master, "m/84'/1'/0'/0/0", witness=True)
        tx = spend([(prev1, 0), (prev2, 0)], [(change_script(self.master), 2 * COIN - FEE)])

        signed = await self.device.sign_transaction(tx, [options1, options2])
        self.assertTrue(verify_input(signed, 0, Coin.from_tx(prev1, 0)))
        self.assertTrue(verify_input(signed, 1, Coin.from_tx(prev2, 0)))

        sigs = await self.device.get_signatures(tx, [options1, options2])
        self.assertEqual(len(sigs), 2)
        self.assertEqual(signed.get_witness(1)[0], sigs[1])

    async def test_sign_message(self):
        sig = await self.device.sign_message("m/44'/1'/0'/0/0", "ledger")
        self.assertTrue(verify_message(derive(self.master, "m/44'/1'/0'/0/0").pubkey, "ledger", sig))

    async def test_errors(self):
        cases = [
            (ApduException(0x6985, b""), ActionCanceledError, "get_public_key canceled"),
            (ApduException(0x6982, b""), ActionCanceledError, "canceled"),
            (ApduException(0x6A80, b""), BadArgumentError, "Bad argument"),
            (ApduException(0x6FAA, b""), DeviceConnectionError, "asleep"),
            (ApduException(0x6F00, b"technical"), DeviceFailureError, "technical"),
            (ApduException(0x6E00, b""), DeviceFailureError, "0x6e00"),
            (DenyError("0x6985", "DenyError", ""), ActionCanceledError, "get_public_key canceled"),
            (IncorrectDataError("0x6a80", "IncorrectDataError", "bad data"), BadArgumentError, "bad data"),
            (NotSupportedError("0x6a82", "NotSupportedError", "unsupported"), UnavailableActionError, "unsupported"),
            (NotImplementedError("policy wallets"), UnavailableActionError, "policy wallets"),
            (UnknownDeviceError("0x6d00", "UnknownDeviceError", "unknown"), DeviceFailureError, "unknown"),
            (asyncio.TimeoutError(), DeviceConnectionError, "timed out"),
            (ValueError("bad path"), BadArgumentError, "bad path"),
            (OSError("unplugged"), DeviceConnectionError, "unplugged"),
        ]
        for error, cls, msg in cases:
            with self.subTest(error=error):
                self.app.error = error
                with self.assertRaisesRegex(cls, msg):
                    await self.device.get_public_key("m/44'/1'/0'")

    async def test_default_app(self):
        master = ExtendedKey.from_mnemonic(PHRASE, network=Network.TESTNET)
        xpub = derive(master, "m/84'/1'/0'").to_public().to_string()
        version = b"\x01" + ser_string(b"Bitcoin Test") + ser_string(b"2.1.0") + ser_string(b"\x00")
        hid = FakeHid(hid_frames(version + b"\x90\x00") + hid_frames(xpub.encode() + b"\x90\x00"))

        device = LedgerDevice(hid_transport({'path': b"p2"}, device=hid), network=Network.TESTNET)
        self.assertIsInstance(device.app, LedgerBitcoinApp)
        await device.open()
        self.assertEqual(await device.get_xpub("m/84'/1'/0'"), xpub)
        self.assertEqual(len(hid.written), 2)
        # GET_EXTENDED_PUBKEY of the Bitcoin app
        self.assertEqual(hid.written[1][8:10], b"\xe1\x00")

    async def test_destroy(self):
        with self.assertRaisesRegex(BadArgumentError, "Can not destroy open device."):
            await self.device.destroy()
        await self.device.close()
        await self.device.destroy()
        self.assertIsNone(self.device.app)
        with self.assertRaisesRegex(InvalidStateError, "no longer available"):
            await self.device.get_public_key("m/44'/1'/0'")

if __name__ == "__main__":
    unittest.main()
