"""Deterministic factory contract.

The factory deploys contracts to addresses that depend only on the factory address and a salt,
see :py:mod:`eth_create3.address`.

This module contains

- The factory address book, :py:func:`get_factory_address`

- Calldata encoding and decoding for the factory functions, used by all chain clients

- Translation of factory revert reasons to Python exceptions

- :py:class:`DeterministicFactory`, the factory state machine run by
  :py:class:`eth_create3.simulated.InMemoryChain`

- Bootstrap deployment of the factory contract itself with Web3, :py:func:`deploy_factory`
"""

import json
import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable

from eth_abi import decode, encode
from eth_account.signers.local import LocalAccount
from eth_typing import ChecksumAddress, HexAddress
from eth_utils import function_signature_to_4byte_selector, to_checksum_address
from hexbytes import HexBytes
from web3 import Web3
from web3.contract import Contract

from eth_create3.address import PROXY_BYTECODE, PROXY_RUNTIME_BYTECODE, derive_deployment_address, derive_proxy_address, normalise_salt
from eth_create3.roles import ADMIN_ROLE, DEFAULT_ADMIN_ROLE, DEPLOYER_ROLE, AccessDenied, RoleTable
from eth_create3.state import ConstructorReverted, CreateCollision, InitCodeExecutor, InsufficientBalance, OpaqueInitCodeExecutor, WorldState


logger = logging.getLogger(__name__)


#: The factory address on all networks, unless overridden in :py:data:`FACTORY_ADDRESSES`
DEFAULT_FACTORY_ADDRESS = to_checksum_address("0xbb681d77506df5CA21D2214ab3923b4C056aa3e2")

#: Network name -> factory address.
#:
#: Only networks where the factory could not be deployed
#: at :py:data:`DEFAULT_FACTORY_ADDRESS` are listed.
FACTORY_ADDRESSES: dict[str, str] = {}

#: ``deploy(bytes32 salt, bytes creationCode, uint256 value) payable returns (address)``
DEPLOY_SIGNATURE = "deploy(bytes32,bytes,uint256)"

#: ``getDeployed(bytes32 salt) view returns (address)``
GET_DEPLOYED_SIGNATURE = "getDeployed(bytes32)"

#: Function signature -> (input types, output types)
FACTORY_FUNCTIONS = {
    DEPLOY_SIGNATURE: (["bytes32", "bytes", "uint256"], ["address"]),
    GET_DEPLOYED_SIGNATURE: (["bytes32"], ["address"]),
    "hasRole(bytes32,address)": (["bytes32", "address"], ["bool"]),
    "getRoleAdmin(bytes32)": (["bytes32"], ["bytes32"]),
    "grantRole(bytes32,address)": (["bytes32", "address"], []),
    "revokeRole(bytes32,address)": (["bytes32", "address"], []),
    "renounceRole(bytes32,address)": (["bytes32", "address"], []),
    "ADMIN_ROLE()": ([], ["bytes32"]),
    "DEPLOYER_ROLE()": ([], ["bytes32"]),
    "DEFAULT_ADMIN_ROLE()": ([], ["bytes32"]),
}

#: 4 byte selector -> function signature
FACTORY_SELECTORS = {function_signature_to_4byte_selector(signature): signature for signature in FACTORY_FUNCTIONS}

_MISSING_ROLE_PATTERN = re.compile(r"account (0x[0-9a-fA-F]{40}) is missing role 0x([0-9a-fA-F]{64})")


class FactoryRevert(Exception):
    """The factory reverted with one of its own failure reasons."""

    #: The revert string of the on-chain factory
    reason: str = ""


class DeploymentFailed(FactoryRevert):
    """The salt has already been used with this factory.

    The relay contract could not be created because its address is taken,
    no matter what was deployed with the salt earlier.
    """

    reason = "DEPLOYMENT_FAILED"


class InitializationFailed(FactoryRevert):
    """The contract itself could not be created.

    - The constructor reverted

    - Declared value does not match the value attached to the transaction

    The salt is still unused after this failure.
    """

    reason = "INITIALIZATION_FAILED"


def get_factory_address(network: str, overrides: dict[str, str] | None = None) -> ChecksumAddress:
    """Resolve the factory address for a network.

    :param network:
        Network name, e.g. ``arbitrum``

    :param overrides:
        Use this table instead of :py:data:`FACTORY_ADDRESSES`

    :return:
        Per-network address, or :py:data:`DEFAULT_FACTORY_ADDRESS`
    """
    table = FACTORY_ADDRESSES if overrides is None else overrides
    address = table.get(network, DEFAULT_FACTORY_ADDRESS)
    return to_checksum_address(address)


def translate_factory_revert(message: str) -> Exception | None:
    """Map a node error message to a factory exception.

    The original message is kept as is.

    :return:
        Exception to raise, or ``None`` if this is not a factory failure
    """
    if DeploymentFailed.reason in message:
        return DeploymentFailed(message)
    if InitializationFailed.reason in message:
        return InitializationFailed(message)
    if "AccessControl:" in message:
        match = _MISSING_ROLE_PATTERN.search(message)
        if match:
            return AccessDenied(match.group(1), bytes.fromhex(match.group(2)), message)
        return AccessDenied("", DEFAULT_ADMIN_ROLE, message)
    return None


def encode_factory_call(signature: str, *args) -> HexBytes:
    """ABI encode a factory function call.

    :param signature:
        One of :py:data:`FACTORY_FUNCTIONS`
    """
    input_types, _ = FACTORY_FUNCTIONS[signature]
    return HexBytes(function_signature_to_4byte_selector(signature) + encode(input_types, list(args)))


def encode_deploy_call(salt: bytes | str, creation_code: bytes | str, value: int) -> HexBytes:
    """Calldata for ``deploy(salt, creationCode, value)``."""
    return encode_factory_call(DEPLOY_SIGNATURE, normalise_salt(salt), bytes(HexBytes(creation_code)), value)


def encode_get_deployed_call(salt: bytes | str) -> HexBytes:
    """Calldata for ``getDeployed(salt)``."""
    return encode_factory_call(GET_DEPLOYED_SIGNATURE, normalise_salt(salt))


def decode_factory_call(data: bytes) -> tuple[str, tuple]:
    """Decode factory calldata.

    :return:
        Tuple (function signature, arguments)

    :raise ValueError:
        Unknown function selector
    """
    data = bytes(data)
    selector = data[0:4]
    signature = FACTORY_SELECTORS.get(selector)
    if signature is None:
        raise ValueError(f"Unknown factory function selector 0x{selector.hex()}")
    input_types, _ = FACTORY_FUNCTIONS[signature]
    return signature, decode(input_types, data[4:])


def decode_factory_result(signature: str, output: bytes) -> tuple:
    """Decode the return data of a factory function."""
    _, output_types = FACTORY_FUNCTIONS[signature]
    return decode(output_types, bytes(output))


def decode_deployed_address(output: bytes) -> ChecksumAddress:
    """Decode the address returned by ``deploy()`` or ``getDeployed()``."""
    (address,) = decode_factory_result(GET_DEPLOYED_SIGNATURE, output)
    return to_checksum_address(address)


@lru_cache(maxsize=1)
def get_factory_abi() -> dict:
    """Read the bundled factory ABI file."""
    path = Path(__file__).resolve().parent / "abi" / "DeterministicFactory.json"
    with open(path, "rt", encoding="utf-8") as f:
        return json.load(f)


def get_factory_contract(web3: Web3, address: HexAddress | str | None = None) -> Contract:
    """Get a Web3 contract proxy for the factory.

    Example:

    .. code-block:: python

        factory = get_factory_contract(web3, get_factory_address("polygon"))
        address = factory.functions.getDeployed(salt).call()

    :param address:
        Factory address, defaults to :py:data:`DEFAULT_FACTORY_ADDRESS`
    """
    if address is None:
        address = DEFAULT_FACTORY_ADDRESS
    return web3.eth.contract(address=to_checksum_address(address), abi=get_factory_abi()["abi"])


class DeterministicFactory:
    """The deterministic factory state machine.

    Behaves like the on-chain factory:

    - ``deploy()`` is gated by :py:data:`eth_create3.roles.DEPLOYER_ROLE`

    - The first deployment with a salt creates a relay at a ``CREATE2`` address,
      the second one with the same salt hits :py:class:`DeploymentFailed`

    - Failures inside the relay are :py:class:`InitializationFailed`

    - A call either completes or leaves the world state untouched

    The factory itself does not store anything except the roles;
    salt slot occupancy lives in the world state as relay accounts.
    """

    def __init__(
        self,
        address: HexAddress | str,
        admin: HexAddress | str,
        deployer: HexAddress | str,
        executor: InitCodeExecutor | None = None,
    ):
        self.address = to_checksum_address(address)
        self.roles = RoleTable.create_for_factory(admin=admin, deployer=deployer)
        self.executor = executor or OpaqueInitCodeExecutor()

    def __repr__(self):
        return f"<DeterministicFactory {self.address}>"

    def get_deployed(self, salt: bytes | str) -> ChecksumAddress:
        """Predict the address a salt deploys to."""
        return derive_deployment_address(self.address, salt)

    def deploy(
        self,
        state: WorldState,
        sender: HexAddress | str,
        salt: bytes | str,
        creation_code: bytes,
        value: int,
        msg_value: int = 0,
    ) -> ChecksumAddress:
        """Deploy a contract through a single-use relay.

        The attached value must already have been moved to the factory account.

        :param state:
            World state the factory lives in

        :param sender:
            ``msg.sender``

        :param salt:
            Deployment salt

        :param creation_code:
            Init bytecode with encoded constructor arguments

        :param value:
            Native currency to forward to the new contract

        :param msg_value:
            Native currency attached to the call

        :raise AccessDenied:
            Sender is not a deployer

        :raise DeploymentFailed:
            Salt already used

        :raise InitializationFailed:
            Contract creation failed

        :return:
            Deployed contract address
        """
        self.roles.check_role(DEPLOYER_ROLE, sender)

        snapshot = state.snapshot()
        try:
            return self._deploy(state, salt, creation_code, value, msg_value)
        except Exception:
            state.restore(snapshot)
            raise

    def _deploy(self, state: WorldState, salt: bytes | str, creation_code: bytes, value: int, msg_value: int) -> ChecksumAddress:
        proxy = derive_proxy_address(self.address, salt)
        try:
            state.create_contract(self.address, proxy, PROXY_BYTECODE, 0, _RelayExecutor())
        except CreateCollision as e:
            raise DeploymentFailed(DeploymentFailed.reason) from e

        deployed = derive_deployment_address(self.address, salt)

        if value != msg_value:
            raise InitializationFailed(InitializationFailed.reason)

        try:
            state.transfer(self.address, proxy, value)
            created = state.create(proxy, creation_code, value, self.executor)
        except (ConstructorReverted, CreateCollision, InsufficientBalance) as e:
            raise InitializationFailed(InitializationFailed.reason) from e

        assert created == deployed, f"Relay created {created}, expected {deployed}"

        if not state.get_code(deployed):
            raise InitializationFailed(InitializationFailed.reason)

        logger.info("Factory %s deployed %s, salt 0x%s, value %d", self.address, deployed, normalise_salt(salt).hex(), value)
        return deployed

    def execute(self, state: WorldState, sender: HexAddress | str, data: bytes, msg_value: int = 0) -> HexBytes:
        """Run ABI encoded calldata against the factory.

        :return:
            ABI encoded return data
        """
        signature, args = decode_factory_call(data)
        handler = self._handlers()[signature]
        if msg_value and signature != DEPLOY_SIGNATURE:
            raise ValueError(f"{signature} is not payable")
        result = handler(state, sender, msg_value, *args)
        _, output_types = FACTORY_FUNCTIONS[signature]
        if not output_types:
            return HexBytes(b"")
        return HexBytes(encode(output_types, [result]))

    def _handlers(self) -> dict[str, Callable[..., Any]]:
        roles = self.roles
        return {
            DEPLOY_SIGNATURE: lambda state, sender, msg_value, salt, code, value: self.deploy(state, sender, salt, code, value, msg_value),
            GET_DEPLOYED_SIGNATURE: lambda state, sender, msg_value, salt: self.get_deployed(salt),
            "hasRole(bytes32,address)": lambda state, sender, msg_value, role, account: roles.has_role(role, account),
            "getRoleAdmin(bytes32)": lambda state, sender, msg_value, role: roles.get_role_admin(role),
            "grantRole(bytes32,address)": lambda state, sender, msg_value, role, account: roles.grant_role(role, account, sender),
            "revokeRole(bytes32,address)": lambda state, sender, msg_value, role, account: roles.revoke_role(role, account, sender),
            "renounceRole(bytes32,address)": lambda state, sender, msg_value, role, account: roles.renounce_role(role, account, sender),
            "ADMIN_ROLE()": lambda state, sender, msg_value: ADMIN_ROLE,
            "DEPLOYER_ROLE()": lambda state, sender, msg_value: DEPLOYER_ROLE,
            "DEFAULT_ADMIN_ROLE()": lambda state, sender, msg_value: DEFAULT_ADMIN_ROLE,
        }


class _RelayExecutor(OpaqueInitCodeExecutor):
    """The relay init code returns the fixed relay runtime."""

    def execute(self, init_code: bytes, value: int, address: HexAddress) -> bytes:
        return bytes(PROXY_RUNTIME_BYTECODE)


def read_artifact(path: Path) -> tuple[list, str]:
    """Read ABI and creation bytecode from a Hardhat or Forge compiler output file.

    :return:
        Tuple (abi, bytecode hex string)
    """
    assert isinstance(path, Path), f"Expected Path, got {type(path)}"
    with open(path, "rt", encoding="utf-8") as f:
        contract_interface = json.load(f)

    bytecode = contract_interface["bytecode"]
    if type(bytecode) == dict:
        # Forge output
        bytecode = bytecode["object"]

    assert bytecode and bytecode != "0x", f"No bytecode in {path}, is it an interface?"
    return contract_interface["abi"], bytecode


def deploy_factory(
    web3: Web3,
    deployer: LocalAccount | str,
    admin: HexAddress | str,
    factory_deployer: HexAddress | str,
    artifact: Path,
    gas: int | None = None,
) -> Contract:
    """Deploy the factory contract itself.

    The factory gets the same address on every chain when the same
    deployer account deploys it with the same nonce, see
    :py:func:`eth_create3.deployment.ensure_deployer_nonce`.

    :param deployer:
        Account paying for the deployment, local account or a node-managed address

    :param admin:
        Receives ``ADMIN_ROLE``

    :param factory_deployer:
        Receives ``DEPLOYER_ROLE``

    :param artifact:
        Compiler output JSON with ``abi`` and ``bytecode`` keys

    :return:
        Deployed factory contract
    """
    abi, bytecode = read_artifact(artifact)
    Factory = web3.eth.contract(abi=abi, bytecode=bytecode)
    constructor = Factory.constructor(to_checksum_address(admin), to_checksum_address(factory_deployer))

    if isinstance(deployer, LocalAccount):
        tx_params = {
            "from": deployer.address,
            "nonce": web3.eth.get_transaction_count(deployer.address),
            "chainId": web3.eth.chain_id,
        }
        if gas:
            tx_params["gas"] = gas
        signed_tx = deployer.sign_transaction(constructor.build_transaction(tx_params))
        tx_hash = web3.eth.send_raw_transaction(signed_tx.raw_transaction)
    else:
        tx_params = {"from": deployer}
        if gas:
            tx_params["gas"] = gas
        tx_hash = constructor.transact(tx_params)

    receipt = web3.eth.wait_for_transaction_receipt(tx_hash)
    assert receipt["status"] == 1, f"Factory deployment failed, tx {tx_hash.hex()}"
    logger.info("Deterministic factory deployed at %s", receipt["contractAddress"])
    return get_factory_contract(web3, receipt["contractAddress"])
