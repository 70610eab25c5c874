"""Idempotent deterministic deployments.

:py:class:`DeterministicDeployer` deploys a named contract through the
deterministic factory of one network and keeps the deployment ledger in sync:

- A ledger record exists: reuse it, no chain calls

- Code already exists at the predicted address but there is no record:
  the previous run crashed after deploying, reconstruct the record

- Otherwise simulate the factory call, send the transaction and
  record the receipt

Example:

.. code-block:: python

    web3 = Web3(HTTPProvider(read_json_rpc_url("polygon")))
    wallet = HotWallet.from_private_key(read_private_key("polygon"))
    chain = Web3ChainClient(web3, wallet)
    ledger = JSONFileLedger(Path("deployments"))

    deployer = DeterministicDeployer(chain, ledger, "polygon")
    result = deployer.ensure_deployed(
        DeployRequest.from_bytecode(
            name="MyToken",
            salt="MyToken-v1",
            bytecode=artifact["bytecode"],
            arg_types=["string", "string"],
            args=["My token", "MYT"],
        )
    )
    print(f"MyToken is at {result.address}")
"""

import dataclasses
import enum
import logging
from dataclasses import dataclass, field

from eth_account.signers.local import LocalAccount
from eth_typing import ChecksumAddress, HexAddress
from eth_utils import to_checksum_address
from hexbytes import HexBytes
from web3 import Web3

from eth_create3.address import derive_deployment_address, generate_random_salt, get_creation_code, normalise_salt
from eth_create3.chain import ChainClient, Sender, get_sender_address
from eth_create3.factory import decode_deployed_address, encode_deploy_call, get_factory_address
from eth_create3.hotwallet import HotWallet
from eth_create3.ledger import DeploymentLedger, DeploymentRecord, make_json_friendly
from eth_create3.networks import is_random_salt_mode


logger = logging.getLogger(__name__)


class IdentityMismatch(Exception):
    """Deployer address and the deployer signer point to different accounts."""


class DeployAction(enum.Enum):
    """What :py:meth:`DeterministicDeployer.ensure_deployed` did."""

    #: Ledger record found, nothing done on chain
    reused = "reused"

    #: Factory deployment transaction sent
    deployed = "deployed"

    #: Code found on chain without a ledger record, record reconstructed
    repaired = "repaired"


@dataclass(slots=True)
class DeployRequest:
    """Deploy one named contract."""

    #: Logical deployment name, the ledger key
    name: str

    #: Init bytecode with the encoded constructor arguments
    creation_code: bytes | str

    #: Salt as bytes, ``0x`` hex string or a short text.
    #:
    #: Can be left out only when a random salt is used.
    salt: bytes | str | None = None

    #: Constructor argument values, stored in the ledger
    args: list = field(default_factory=list)

    #: Constructor argument ABI types, stored in the ledger
    arg_types: list[str] | None = None

    #: Network name, defaults to the network of the deployer
    network: str | None = None

    #: Reuse an existing ledger record.
    #:
    #: ``None`` (unset) behaves like ``True``.
    skip_if_already_deployed: bool | None = None

    #: Ignore :py:attr:`salt` and use a fresh random one
    force_random_salt: bool = False

    #: Native currency the factory forwards to the new contract
    value: int = 0

    #: Native currency attached to the transaction, defaults to :py:attr:`value`
    attached_value: int | None = None

    #: Deployer account address
    deployer: HexAddress | str | None = None

    #: Deployer signing credential
    deployer_signer: HotWallet | LocalAccount | None = None

    #: Extra transaction fields, like ``gas`` or ``maxFeePerGas``
    overrides: dict | None = None

    #: Source path for verification, e.g. ``src/Token.sol:Token``
    contract: str | None = None

    @staticmethod
    def from_bytecode(
        name: str,
        bytecode: bytes | str,
        arg_types: list[str] | None = None,
        args: list | None = None,
        **kwargs,
    ) -> "DeployRequest":
        """Build a request from compiler output bytecode and constructor arguments.

        :param kwargs:
            Other :py:class:`DeployRequest` fields
        """
        args = list(args or [])
        return DeployRequest(
            name=name,
            creation_code=get_creation_code(bytecode, arg_types, args),
            args=args,
            arg_types=arg_types,
            **kwargs,
        )


@dataclass(slots=True, frozen=True)
class DeployResult:
    """Outcome of :py:meth:`DeterministicDeployer.ensure_deployed`."""

    #: The ledger record after the call
    record: DeploymentRecord

    #: Which branch was taken
    action: DeployAction

    @property
    def address(self) -> ChecksumAddress:
        return to_checksum_address(self.record.address)

    @property
    def newly_deployed(self) -> bool:
        return self.record.newly_deployed


def resolve_deployer(
    deployer: HexAddress | str | None,
    deployer_signer: HotWallet | LocalAccount | None,
) -> Sender | None:
    """Pick the signing identity of a deployment.

    :return:
        The signer, the deployer address for node-signed transactions,
        or ``None`` to use the chain client default

    :raise IdentityMismatch:
        Both are given and they disagree
    """
    if deployer and deployer_signer:
        if get_sender_address(deployer_signer) != to_checksum_address(deployer):
            raise IdentityMismatch(f"Deployer {deployer} and deployer signer {deployer_signer.address} do not match")
    if deployer_signer:
        return deployer_signer
    if deployer:
        return to_checksum_address(deployer)
    return None


class DeterministicDeployer:
    """Deploy through the deterministic factory of one network.

    Calls should be serialised per deployment name, the ledger is not locked
    between the lookup and the write.
    """

    def __init__(
        self,
        chain: ChainClient,
        ledger: DeploymentLedger,
        network: str,
        factory_addresses: dict[str, str] | None = None,
        random_salt: bool | None = None,
    ):
        """
        :param chain:
            Chain client of the network

        :param ledger:
            Where deployment records are kept

        :param network:
            Network name, ledger key and factory address table key

        :param factory_addresses:
            Per-network factory address overrides.
            Default to :py:data:`eth_create3.factory.FACTORY_ADDRESSES`.

        :param random_salt:
            Use a random salt for every deployment.
            Default to the ``USE_RANDOM_SALT`` environment variable.
        """
        assert isinstance(chain, ChainClient), f"Got {type(chain)}"
        assert isinstance(ledger, DeploymentLedger), f"Got {type(ledger)}"
        self.chain = chain
        self.ledger = ledger
        self.network = network
        self.factory_addresses = factory_addresses
        self.random_salt = is_random_salt_mode() if random_salt is None else random_salt
        if self.random_salt:
            logger.warning("Random salt mode is on for %s, deployment addresses are not reproducible", network)

    def __repr__(self):
        return f"<DeterministicDeployer {self.network}>"

    def resolve_factory_address(self) -> ChecksumAddress:
        return get_factory_address(self.network, self.factory_addresses)

    def choose_salt(self, request: DeployRequest) -> bytes:
        """The caller salt, or a random one in random salt mode."""
        if request.force_random_salt or self.random_salt:
            salt = generate_random_salt()
            logger.warning("Using random salt 0x%s for %s", salt.hex(), request.name)
            return salt
        assert request.salt is not None, f"No salt given for {request.name}"
        return normalise_salt(request.salt)

    def predict_address(self, salt: bytes | str) -> ChecksumAddress:
        return derive_deployment_address(self.resolve_factory_address(), salt)

    def ensure_deployed(self, request: DeployRequest) -> DeployResult:
        """Make sure a named contract is deployed.

        :raise IdentityMismatch:
            Conflicting deployer identity, before any chain or ledger access

        :raise eth_create3.factory.FactoryRevert:
            The factory refused the deployment

        :raise eth_create3.roles.AccessDenied:
            The sender is not a factory deployer
        """
        sender = resolve_deployer(request.deployer, request.deployer_signer)

        network = request.network or self.network
        if network != self.network:
            raise ValueError(f"Request for {network} given to the deployer of {self.network}")

        name = request.name
        factory = self.resolve_factory_address()

        existing = self.ledger.get(name, network)
        dropped = None
        if existing is not None:
            if request.skip_if_already_deployed is None or request.skip_if_already_deployed:
                logger.info("Reusing %s at %s on %s", name, existing.address, network)
                existing.newly_deployed = False
                return DeployResult(existing, DeployAction.reused)

            logger.info("Redeploying %s on %s, dropping the record of %s", name, network, existing.address)
            self.ledger.delete(name, network)
            dropped = existing

        salt = self.choose_salt(request)
        predicted = derive_deployment_address(factory, salt)
        sender_address = get_sender_address(sender) if sender else self.chain.address

        record = DeploymentRecord(
            name=name,
            network=network,
            address=predicted,
            args=make_json_friendly(list(request.args)),
            salt="0x" + salt.hex(),
            factory=factory,
            deployer=sender_address,
            arg_types=request.arg_types,
            contract=request.contract,
        )

        if self.chain.get_code(predicted):
            logger.info("%s already has code at %s on %s, repairing the ledger record", name, predicted, network)
            if dropped is not None and dropped.address.lower() == predicted.lower():
                # Code created by the transaction of the dropped record
                record.receipt = dropped.receipt
                record.transaction_hash = dropped.transaction_hash
                record.deployer = dropped.deployer
            self.ledger.put(name, network, record)
            return DeployResult(record, DeployAction.repaired)

        data = encode_deploy_call(salt, request.creation_code, request.value)
        attached_value = request.value if request.attached_value is None else request.attached_value

        # Reverts surface here, before anything is broadcast
        simulated = decode_deployed_address(self.chain.call(factory, data, value=attached_value, sender=sender))
        assert simulated == predicted, f"Factory {factory} would deploy {name} at {simulated}, expected {predicted}"

        logger.info("Deploying %s at %s on %s, factory %s, deployer %s", name, predicted, network, factory, sender_address)
        receipt = self.chain.send_transaction(factory, data, value=attached_value, sender=sender, overrides=request.overrides)

        record.receipt = make_json_friendly(dict(receipt))
        record.transaction_hash = Web3.to_hex(HexBytes(receipt["transactionHash"]))
        record.newly_deployed = True
        self.ledger.put(name, network, record)
        logger.info("Deployed %s at %s on %s, tx %s", name, predicted, network, record.transaction_hash)
        return DeployResult(record, DeployAction.deployed)


def ensure_deployed_on_networks(deployers: list[DeterministicDeployer], request: DeployRequest) -> dict[str, DeployResult]:
    """Roll out the same deployment to several networks, one after another.

    The first failure stops the rollout. Networks done before it keep
    their ledger records, so running again picks up where it stopped.

    :return:
        Network name -> result
    """
    results = {}
    for deployer in deployers:
        results[deployer.network] = deployer.ensure_deployed(dataclasses.replace(request, network=deployer.network))
    return results


def ensure_deployer_nonce(chain: ChainClient, sender: Sender | None = None) -> dict | None:
    """Move a fresh account nonce from 0 to 1.

    The factory is deployed by a plain contract creation, so its address
    depends on the deployer nonce. A zero value self transfer brings a
    fresh account to the same nonce on every network.

    :return:
        Receipt of the self transfer, or ``None`` if the nonce was already used
    """
    address = get_sender_address(sender) if sender else chain.address
    nonce = chain.get_transaction_count(address)
    if nonce != 0:
        logger.info("Nonce of %s is already %d", address, nonce)
        return None

    logger.info("Nonce of %s is zero, sending a self transaction", address)
    return chain.send_transaction(address, b"", value=0, sender=sender)
