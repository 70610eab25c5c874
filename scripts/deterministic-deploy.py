"""Deploy a contract to the same address on several networks.

- Deploys through the deterministic factory, so the address depends only on the salt
- Deployments already in the ledger are reused
- New deployments are verified when an explorer API key and Hardhat build info are given

To run:

.. code-block:: shell

    export PRIVATE_KEY=...
    export JSON_RPC_POLYGON=...
    export JSON_RPC_ARBITRUM=...
    export ETHERSCAN_API_KEY=...
    NETWORKS=polygon,arbitrum \
      NAME=MyToken \
      SALT=MyToken-v1 \
      ARTIFACT=artifacts/contracts/MyToken.sol/MyToken.json \
      CONSTRUCTOR_TYPES=string,string \
      CONSTRUCTOR_ARGS='["My token", "MYT"]' \
      CONTRACT=contracts/MyToken.sol:MyToken \
      BUILD_INFO=artifacts/build-info/abc.json \
      python scripts/deterministic-deploy.py
"""

import json
import logging
import os
from pathlib import Path

from web3 import HTTPProvider, Web3

from eth_create3.chain import Web3ChainClient
from eth_create3.deployment import DeployRequest, DeterministicDeployer
from eth_create3.factory import read_artifact
from eth_create3.hotwallet import HotWallet
from eth_create3.ledger import JSONFileLedger
from eth_create3.networks import get_chain_id, get_explorer_address_link, read_etherscan_api_key, read_json_rpc_url, read_private_key
from eth_create3.utils import setup_console_logging
from eth_create3.verify import EtherscanVerificationService, get_verification_api_url, should_verify, verify_deployment


logger = logging.getLogger(__name__)


def main():
    setup_console_logging()

    networks = [n.strip() for n in os.environ["NETWORKS"].split(",") if n.strip()]
    name = os.environ["NAME"]
    salt = os.environ.get("SALT")
    artifact = Path(os.environ["ARTIFACT"])
    types = [t.strip() for t in os.environ.get("CONSTRUCTOR_TYPES", "").split(",") if t.strip()]
    args = json.loads(os.environ.get("CONSTRUCTOR_ARGS", "[]"))
    contract = os.environ.get("CONTRACT")
    build_info_path = os.environ.get("BUILD_INFO")
    ledger = JSONFileLedger(Path(os.environ.get("DEPLOYMENTS_PATH", "deployments")))

    _, bytecode = read_artifact(artifact)
    request = DeployRequest.from_bytecode(
        name=name,
        salt=salt,
        bytecode=bytecode,
        arg_types=types,
        args=args,
        contract=contract,
    )

    for network in networks:
        web3 = Web3(HTTPProvider(read_json_rpc_url(network)))
        chain_id = web3.eth.chain_id
        assert chain_id == get_chain_id(network), f"JSON-RPC of {network} is chain {chain_id}"

        wallet = HotWallet.from_private_key(read_private_key(network))
        wallet.sync_nonce(web3)

        deployer = DeterministicDeployer(Web3ChainClient(web3, wallet), ledger, network)
        result = deployer.ensure_deployed(request)
        link = get_explorer_address_link(network, result.address) or result.address
        print(f"{network}: {name} {result.action.value} at {link}")

        api_key = read_etherscan_api_key(network)
        if not should_verify(result, network, api_key):
            continue

        if not build_info_path:
            logger.warning("BUILD_INFO not set, not verifying %s on %s", name, network)
            continue

        with open(build_info_path, "rt", encoding="utf-8") as f:
            build_info = json.load(f)

        service = EtherscanVerificationService(
            api_key=api_key,
            chain_id=chain_id,
            standard_json_input=build_info["input"],
            compiler_version="v" + build_info["solcLongVersion"],
            api_url=get_verification_api_url(network),
        )
        verify_deployment(ledger, service, name, network)


if __name__ == "__main__":
    main()
