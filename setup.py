# -*- coding: utf-8 -*-
from setuptools import setup

packages = \
['bsignerlib',
 'bsignerlib.devices',
 'bsignerlib.managers']

install_requires = \
['ecdsa>=0,<1',
 'hidapi>=0.14.0',
 'ledger-bitcoin>=0.2,<1',
 'mnemonic>=0,<1',
 'pycryptodome>=3.10,<4.0',
 'trezor>=0.13,<0.14',
 'typing-extensions>=4.4,<5.0']

setup_kwargs = {
    'name': 'bsigner',
    'version': '1.0.0',
    'description': 'Vendor neutral Bitcoin transaction signing with hardware wallets',
    'long_description': "# bsigner\n\nA Python library that signs Bitcoin transactions and messages with Ledger and Trezor hardware wallets, or with an in-memory key, through one API.\n\nDevices of every enabled vendor are tracked by per-vendor device managers. A `Signer` keeps a single device selected across vendors and forwards `get_public_key`, `get_xpub`, `sign_transaction`, `get_signatures` and `sign_message` to it.\n\nThe signing metadata of every input is an `InputData`: derivation path, spent output or previous transaction, witness flag and, for multisig inputs, the cosigner account keys and their signatures.\n\n## Install\n\n```\npip3 install .\n```\n\n## Tests\n\n```\ncd test\n./run_tests.py\n```\n\n## License\n\nThis project is available under the MIT License.\n",
    'long_description_content_type': 'text/markdown',
    'author': 'The bsigner developers',
    'packages': packages,
    'install_requires': install_requires,
    'python_requires': '>=3.8,<3.14',
}


setup(**setup_kwargs)
