#! /usr/bin/env python3

"""Reference tests for segwit addresses"""

import unittest

from bsignerlib import bech32
from bsignerlib.common import Network
from bsignerlib._script import (
    address_to_script,
    script_to_address,
)

from utils import load_vectors

INVALID_ADDRESSES = [
    ("bc", "tc1qw508d6qejxtdg4y5r3zarvary0c5xw7kg3g4ty"),
    ("bc", "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t5"),
    ("bc", "BC13W508D6QEJXTDG4Y5R3ZARVARY0C5XW7KN40WF2"),
    ("bc", "bc1rw5uspcuh"),
    ("tb", "tb1qrp33g0q5c5txsp9arysrx4k6zdkfs4nce4xj0gdcccefvpysxf3q0sL5k7"),
    ("bc", "bc1zw508d6qejxtdg4y5r3zarvaryvqyzf3du"),
    ("tb", "tb1qrp33g0q5c5txsp9arysrx4k6zdkfs4nce4xj0gdcccefvpysxf3pjxtptv"),
    ("bc", "bc1gmk9yu"),
]

class TestSegwitAddress(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.vectors = load_vectors()["bech32"]

    def test_valid_address(self):
        for vector in self.vectors:
            with self.subTest(address=vector["address"]):
                witver, witprog = bech32.decode(vector["hrp"], vector["address"])
                self.assertIsNotNone(witver)
                script = bytes([witver, len(witprog)]) + witprog
                self.assertEqual(script.hex(), vector["script"])

                address = bech32.encode(vector["hrp"], witver, witprog)
                self.assertEqual(address, vector["address"].lower())

    def test_invalid_address(self):
        for hrp, address in INVALID_ADDRESSES:
            with self.subTest(address=address):
                self.assertEqual(bech32.decode(hrp, address), (None, None))

    def test_script_address(self):
        for vector in self.vectors:
            network = Network.MAIN if vector["hrp"] == "bc" else Network.TESTNET
            with self.subTest(address=vector["address"]):
                script = bytes.fromhex(vector["script"])
                self.assertEqual(address_to_script(vector["address"], network), script)
                self.assertEqual(script_to_address(script, network), vector["address"].lower())

    def test_network_hrp(self):
        witprog = bytes(range(20))
        for network, hrp in [(Network.MAIN, "bc1"), (Network.TESTNET, "tb1"), (Network.REGTEST, "rb1"), (Network.SIMNET, "sb1")]:
            with self.subTest(network=network):
                script = bytes([0, 20]) + witprog
                address = script_to_address(script, network)
                self.assertTrue(address.startswith(hrp))
                self.assertEqual(address_to_script(address, network), script)

if __name__ == "__main__":
    unittest.main()
