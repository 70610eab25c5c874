"""Verify the source code of a deployment in the ledger.

Safe to run again, already verified contracts are skipped.

To run:

.. code-block:: shell

    export ETHERSCAN_API_KEY=...
    NETWORK=polygon \
      NAME=DeterministicFactory \
      CONTRACT=solidity/contracts/DeterministicFactory.sol:DeterministicFactory \
      BUILD_INFO=artifacts/build-info/abc.json \
      python scripts/verify-deployment.py
"""

import json
import os
from pathlib import Path

from eth_create3.ledger import JSONFileLedger
from eth_create3.networks import get_chain_id, read_etherscan_api_key
from eth_create3.utils import setup_console_logging
from eth_create3.verify import EtherscanVerificationService, get_verification_api_url, verify_deployment


def main():
    setup_console_logging()

    network = os.environ["NETWORK"]
    name = os.environ["NAME"]
    contract = os.environ.get("CONTRACT")
    ledger = JSONFileLedger(Path(os.environ.get("DEPLOYMENTS_PATH", "deployments")))

    api_key = read_etherscan_api_key(network)
    assert api_key, f"Set ETHERSCAN_API_KEY for {network}"

    with open(os.environ["BUILD_INFO"], "rt", encoding="utf-8") as f:
        build_info = json.load(f)

    service = EtherscanVerificationService(
        api_key=api_key,
        chain_id=get_chain_id(network),
        standard_json_input=build_info["input"],
        compiler_version="v" + build_info["solcLongVersion"],
        api_url=get_verification_api_url(network),
    )
    status = verify_deployment(ledger, service, name, network, contract_path=contract)
    print(f"{name} on {network}: {status.value}")


if __name__ == "__main__":
    main()
