"""Source code verification of deployed contracts.

- :py:func:`verify_deployment` submits a ledger record to a verification service

- :py:class:`EtherscanVerificationService` talks to the Etherscan v2 multichain API

A contract that is already verified counts as success, so verifying
the same deployment again is safe.
"""

import enum
import json
import logging
import time
from abc import ABC, abstractmethod

import requests
from eth_abi import encode
from hexbytes import HexBytes

from eth_create3.deployment import DeployResult
from eth_create3.ledger import DeploymentLedger, DeploymentRecord
from eth_create3.networks import is_local_network


logger = logging.getLogger(__name__)


#: Etherscan v2 multichain API
ETHERSCAN_API_URL = "https://api.etherscan.io/v2/api"

#: Networks that are not covered by Etherscan v2, but run an Etherscan compatible API
CUSTOM_VERIFICATION_API_URLS = {
    "rootstock": "https://rootstock.blockscout.com/api",
}


def get_verification_api_url(network: str) -> str:
    return CUSTOM_VERIFICATION_API_URLS.get(network, ETHERSCAN_API_URL)


class VerificationStatus(enum.Enum):
    """Successful verification outcomes."""

    verified = "verified"

    already_verified = "already_verified"


class VerificationFailed(Exception):
    """The verification service rejected the contract."""


def is_already_verified_message(message: str) -> bool:
    return "already verified" in message.lower()


class VerificationService(ABC):
    """Block explorer source code verification."""

    @abstractmethod
    def submit(self, address: str, constructor_args: bytes, source_path: str) -> VerificationStatus:
        """Verify one contract.

        :param address:
            Deployed contract address

        :param constructor_args:
            ABI encoded constructor arguments

        :param source_path:
            Contract source path and name, e.g. ``src/Token.sol:Token``

        :raise VerificationFailed:
            Verification failed
        """


class EtherscanVerificationService(VerificationService):
    """Verify with a Solidity standard JSON input.

    Example:

    .. code-block:: python

        build_info = json.load(open("artifacts/build-info/abc.json"))
        service = EtherscanVerificationService(
            api_key=read_etherscan_api_key("polygon"),
            chain_id=137,
            standard_json_input=build_info["input"],
            compiler_version="v" + build_info["solcLongVersion"],
        )
        verify_deployment(ledger, service, "MyToken", "polygon")
    """

    def __init__(
        self,
        api_key: str,
        chain_id: int,
        standard_json_input: dict,
        compiler_version: str,
        api_url: str = ETHERSCAN_API_URL,
        session: requests.Session | None = None,
        poll_delay: float = 5.0,
        max_polls: int = 24,
    ):
        """
        :param compiler_version:
            Full solc version, e.g. ``v0.8.17+commit.8df45f5f``

        :param api_url:
            Etherscan v2 by default, see :py:data:`CUSTOM_VERIFICATION_API_URLS`

        :param poll_delay:
            Seconds between verification status checks

        :param max_polls:
            Give up after this many status checks
        """
        assert api_key, "Etherscan API key is empty"
        assert type(chain_id) is int, f"Chain ID must be an integer, got {type(chain_id)}"
        self.api_key = api_key
        self.chain_id = chain_id
        self.standard_json_input = standard_json_input
        self.compiler_version = compiler_version
        self.api_url = api_url
        self.session = session or requests.Session()
        self.poll_delay = poll_delay
        self.max_polls = max_polls

    def __repr__(self):
        return f"<EtherscanVerificationService chain:{self.chain_id} {self.api_url}>"

    def _request(self, method: str, params: dict, data: dict | None = None) -> dict:
        params = {"chainid": self.chain_id, "apikey": self.api_key, **params}
        resp = self.session.request(method, self.api_url, params=params, data=data, timeout=30)
        if resp.status_code != 200:
            raise VerificationFailed(f"Explorer API error {resp.status_code}: {resp.text}")
        return resp.json()

    def submit(self, address: str, constructor_args: bytes, source_path: str) -> VerificationStatus:
        logger.info("Submitting %s at %s for verification on chain %d", source_path, address, self.chain_id)
        data = {
            "module": "contract",
            "action": "verifysourcecode",
            "contractaddress": address,
            "sourceCode": json.dumps(self.standard_json_input),
            "codeformat": "solidity-standard-json-input",
            "contractname": source_path,
            "compilerversion": self.compiler_version,
            # Spelled like this in the Etherscan API
            "constructorArguements": HexBytes(constructor_args).hex().removeprefix("0x"),
        }
        reply = self._request("POST", {}, data)
        result = str(reply.get("result", ""))
        if reply.get("status") != "1":
            if is_already_verified_message(result):
                return VerificationStatus.already_verified
            raise VerificationFailed(f"Verification of {address} rejected: {result}")

        return self.wait_for_status(result)

    def wait_for_status(self, guid: str) -> VerificationStatus:
        """Poll a submitted verification until it completes."""
        for attempt in range(self.max_polls):
            reply = self._request("GET", {"module": "contract", "action": "checkverifystatus", "guid": guid})
            result = str(reply.get("result", ""))
            if is_already_verified_message(result):
                return VerificationStatus.already_verified
            if reply.get("status") == "1":
                logger.info("Verification %s completed: %s", guid, result)
                return VerificationStatus.verified
            if "pending" not in result.lower() and "in progress" not in result.lower():
                raise VerificationFailed(f"Verification {guid} failed: {result}")
            logger.debug("Verification %s pending, attempt %d", guid, attempt + 1)
            time.sleep(self.poll_delay)

        raise VerificationFailed(f"Verification {guid} still pending after {self.max_polls} checks")


def _restore_arg(abi_type: str, value):
    """Turn ledger JSON values back to what the ABI encoder accepts."""
    if abi_type.endswith("]"):
        inner = abi_type[: abi_type.rindex("[")]
        return [_restore_arg(inner, v) for v in value]
    if abi_type.startswith("bytes") and isinstance(value, str):
        return bytes(HexBytes(value))
    return value


def encode_constructor_args(record: DeploymentRecord) -> bytes:
    """ABI encode the constructor arguments of a ledger record."""
    if not record.args:
        return b""
    assert record.arg_types, f"Deployment {record.name} has constructor arguments but no types"
    assert len(record.arg_types) == len(record.args), f"Deployment {record.name} types {record.arg_types} do not match args {record.args}"
    return encode(record.arg_types, [_restore_arg(t, v) for t, v in zip(record.arg_types, record.args)])


def verify_deployment(
    ledger: DeploymentLedger,
    service: VerificationService,
    name: str,
    network: str,
    contract_path: str | None = None,
) -> VerificationStatus:
    """Verify the source code of a deployment in the ledger.

    :param contract_path:
        Source path, defaults to the one stored in the ledger record

    :raise KeyError:
        No deployment with this name

    :raise VerificationFailed:
        Any failure other than the contract being already verified
    """
    record = ledger.get(name, network)
    if record is None:
        raise KeyError(f"No deployment {name} on {network}")

    source_path = contract_path or record.contract
    assert source_path, f"No contract source path for {name}"

    try:
        status = service.submit(record.address, encode_constructor_args(record), source_path)
    except VerificationFailed as e:
        if not is_already_verified_message(str(e)):
            raise
        status = VerificationStatus.already_verified

    if status == VerificationStatus.already_verified:
        logger.info("%s at %s on %s is already verified", name, record.address, network)
    else:
        logger.info("Verified %s at %s on %s", name, record.address, network)
    return status


def should_verify(result: DeployResult, network: str, api_key: str | None) -> bool:
    """Only new deployments on public networks with an API key are verified."""
    if not result.newly_deployed:
        return False
    if is_local_network(network):
        return False
    if not api_key:
        logger.warning("No explorer API key for %s, not verifying %s", network, result.record.name)
        return False
    return True
