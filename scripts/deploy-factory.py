"""Deploy the deterministic factory itself.

- Bumps a fresh deployer nonce from 0 to 1 first, so the factory
  lands on the same address on every network
- The factory is recorded in the ledger as ``DeterministicFactory``

To run:

.. code-block:: shell

    export PRIVATE_KEY=...
    export JSON_RPC_POLYGON=...
    NETWORK=polygon \
      ADMIN=0x... \
      FACTORY_DEPLOYER=0x... \
      ARTIFACT=artifacts/solidity/contracts/DeterministicFactory.sol/DeterministicFactory.json \
      python scripts/deploy-factory.py
"""

import os
from pathlib import Path

from web3 import HTTPProvider, Web3

from eth_create3.chain import Web3ChainClient
from eth_create3.deployment import ensure_deployer_nonce
from eth_create3.factory import DEFAULT_FACTORY_ADDRESS, deploy_factory
from eth_create3.hotwallet import HotWallet
from eth_create3.ledger import DeploymentRecord, JSONFileLedger
from eth_create3.networks import read_json_rpc_url, read_private_key
from eth_create3.utils import setup_console_logging


def main():
    setup_console_logging()

    network = os.environ["NETWORK"]
    admin = os.environ["ADMIN"]
    factory_deployer = os.environ["FACTORY_DEPLOYER"]
    artifact = Path(os.environ["ARTIFACT"])
    ledger = JSONFileLedger(Path(os.environ.get("DEPLOYMENTS_PATH", "deployments")))

    web3 = Web3(HTTPProvider(read_json_rpc_url(network)))
    wallet = HotWallet.from_private_key(read_private_key(network))
    wallet.sync_nonce(web3)

    existing = ledger.get("DeterministicFactory", network)
    if existing:
        print(f"Factory already deployed on {network} at {existing.address}")
        return

    ensure_deployer_nonce(Web3ChainClient(web3, wallet))

    factory = deploy_factory(web3, wallet.account, admin=admin, factory_deployer=factory_deployer, artifact=artifact)
    if factory.address != DEFAULT_FACTORY_ADDRESS:
        print(f"Warning: factory deployed at {factory.address}, not at the default {DEFAULT_FACTORY_ADDRESS}")

    ledger.put(
        "DeterministicFactory",
        network,
        DeploymentRecord(
            name="DeterministicFactory",
            network=network,
            address=factory.address,
            args=[admin, factory_deployer],
            newly_deployed=True,
            deployer=wallet.address,
            arg_types=["address", "address"],
            contract="solidity/contracts/DeterministicFactory.sol:DeterministicFactory",
        ),
    )
    print(f"Factory deployed on {network} at {factory.address}")


if __name__ == "__main__":
    main()
