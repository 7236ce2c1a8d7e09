"""
bsigner
*******

Vendor neutral Bitcoin transaction and message signing with hardware wallets
and an in-memory signer.
"""

__version__ = '1.0.0'
