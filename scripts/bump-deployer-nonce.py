"""Move a fresh deployer account nonce from 0 to 1.

To run:

.. code-block:: shell

    export PRIVATE_KEY=...
    export JSON_RPC_POLYGON=...
    NETWORKS=polygon,arbitrum python scripts/bump-deployer-nonce.py
"""

import os

from web3 import HTTPProvider, Web3

from eth_create3.chain import Web3ChainClient
from eth_create3.deployment import ensure_deployer_nonce
from eth_create3.hotwallet import HotWallet
from eth_create3.networks import read_json_rpc_url, read_private_key
from eth_create3.utils import setup_console_logging


def main():
    setup_console_logging()

    for network in os.environ["NETWORKS"].split(","):
        network = network.strip()
        web3 = Web3(HTTPProvider(read_json_rpc_url(network)))
        wallet = HotWallet.from_private_key(read_private_key(network))
        receipt = ensure_deployer_nonce(Web3ChainClient(web3, wallet))
        if receipt:
            print(f"{network}: nonce of {wallet.address} bumped in block {receipt['blockNumber']}")
        else:
            print(f"{network}: nonce of {wallet.address} already used")


if __name__ == "__main__":
    main()
