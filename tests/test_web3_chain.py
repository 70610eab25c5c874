"""Relay bytecode and the Web3 chain client on a real EVM."""

from unittest.mock import Mock

import pytest
from eth_account import Account
from eth_tester.exceptions import TransactionFailed
from web3 import EthereumTesterProvider, Web3
from web3.exceptions import ContractLogicError

from eth_create3.address import PROXY_BYTECODE, PROXY_RUNTIME_BYTECODE, derive_create_address
from eth_create3.chain import TransactionReverted, Web3ChainClient, get_revert_message
from eth_create3.deployment import DeployRequest, DeterministicDeployer, ensure_deployer_nonce
from eth_create3.factory import DeploymentFailed, InitializationFailed
from eth_create3.hotwallet import HotWallet
from eth_create3.ledger import InMemoryLedger
from eth_create3.roles import AccessDenied


#: Init code that returns ``RETURN_42_RUNTIME``
RETURN_42_INIT_CODE = "0x600a600c600039600a6000f3602a60005260206000f3"

#: Runtime code that returns 42
RETURN_42_RUNTIME = "0x602a60005260206000f3"

#: eth-tester raises its own exception instead of ContractLogicError.
#: The package does not import the test backend, so tests register it here.
TESTER_REVERT_ERRORS = (ContractLogicError, TransactionFailed)


@pytest.fixture
def tester_provider():
    return EthereumTesterProvider()


@pytest.fixture
def web3(tester_provider):
    """Set up a local unit testing blockchain."""
    return Web3(tester_provider)


@pytest.fixture()
def deployer(web3) -> str:
    return web3.eth.accounts[0]


@pytest.fixture()
def hot_wallet(web3, deployer) -> HotWallet:
    """A funded local wallet."""
    wallet = HotWallet(Account.create())
    tx_hash = web3.eth.send_transaction({"from": deployer, "to": wallet.address, "value": 10**18})
    web3.eth.wait_for_transaction_receipt(tx_hash)
    wallet.sync_nonce(web3)
    return wallet


def deploy_relay(web3: Web3, deployer: str) -> str:
    tx_hash = web3.eth.send_transaction({"from": deployer, "data": Web3.to_hex(PROXY_BYTECODE)})
    receipt = web3.eth.wait_for_transaction_receipt(tx_hash)
    assert receipt["status"] == 1
    return receipt["contractAddress"]


def make_reverting_init_code(reason: str) -> bytes:
    """Init code of a contract that reverts every call with ``Error(reason)``."""
    text = reason.encode("utf-8")
    assert len(text) < 32
    runtime = (
        bytes.fromhex("6308c379a060e01b600052")  # mstore(0, selector << 224)
        + bytes.fromhex("6020600452")  # mstore(4, 0x20)
        + bytes([0x60, len(text), 0x60, 0x24, 0x52])  # mstore(36, length)
        + b"\x7f" + text.ljust(32, b"\x00") + bytes.fromhex("604452")  # mstore(68, text)
        + bytes.fromhex("60646000fd")  # revert(0, 100)
    )
    loader = bytes([0x60, len(runtime), 0x60, 0x0C, 0x60, 0x00, 0x39, 0x60, len(runtime), 0x60, 0x00, 0xF3])
    return loader + runtime


def deploy_reverting(web3: Web3, deployer: str, reason: str) -> str:
    tx_hash = web3.eth.send_transaction({"from": deployer, "data": Web3.to_hex(make_reverting_init_code(reason))})
    receipt = web3.eth.wait_for_transaction_receipt(tx_hash)
    assert receipt["status"] == 1
    return receipt["contractAddress"]


def test_create_address_matches_node(web3, deployer):
    nonce = web3.eth.get_transaction_count(deployer)
    relay = deploy_relay(web3, deployer)
    assert relay == derive_create_address(deployer, nonce)


def test_relay_runtime(web3, deployer):
    relay = deploy_relay(web3, deployer)
    assert web3.eth.get_code(relay) == PROXY_RUNTIME_BYTECODE


def test_relay_creates_at_nonce_one(web3, deployer):
    """The relay deploys its calldata with CREATE, and a fresh contract has nonce 1."""
    relay = deploy_relay(web3, deployer)
    chain = Web3ChainClient(web3, deployer)
    receipt = chain.send_transaction(relay, bytes.fromhex(RETURN_42_INIT_CODE[2:]), overrides={"gas": 500_000})
    assert receipt["status"] == 1

    child = derive_create_address(relay, 1)
    assert Web3.to_hex(web3.eth.get_code(child)) == RETURN_42_RUNTIME


def test_call_does_not_change_state(web3, deployer):
    relay = deploy_relay(web3, deployer)
    chain = Web3ChainClient(web3, deployer)
    chain.call(relay, bytes.fromhex(RETURN_42_INIT_CODE[2:]))
    assert chain.get_code(derive_create_address(relay, 1)) == b""


def test_hot_wallet_signing(web3, hot_wallet):
    chain = Web3ChainClient(web3, hot_wallet)
    assert chain.address == hot_wallet.address
    assert chain.current_network_id() == web3.eth.chain_id

    relay = deploy_relay(web3, web3.eth.accounts[0])
    chain.send_transaction(relay, bytes.fromhex(RETURN_42_INIT_CODE[2:]))
    assert chain.get_transaction_count(hot_wallet.address) == 1
    assert Web3.to_hex(chain.get_code(derive_create_address(relay, 1))) == RETURN_42_RUNTIME


def test_nonce_bump_with_local_account(web3, hot_wallet):
    chain = Web3ChainClient(web3, hot_wallet.account)
    assert ensure_deployer_nonce(chain)["status"] == 1
    assert chain.get_transaction_count(hot_wallet.address) == 1
    assert ensure_deployer_nonce(chain) is None


def test_tester_revert_not_translated_by_default(web3, deployer):
    """Only ContractLogicError is a revert unless the connection says otherwise."""
    target = deploy_reverting(web3, deployer, "DEPLOYMENT_FAILED")
    chain = Web3ChainClient(web3, deployer)
    with pytest.raises(TransactionFailed):
        chain.call(target, b"")


@pytest.mark.parametrize(
    "reason,exception_class",
    [
        ("DEPLOYMENT_FAILED", DeploymentFailed),
        ("INITIALIZATION_FAILED", InitializationFailed),
    ],
)
def test_call_revert_translated(web3, deployer, reason, exception_class):
    target = deploy_reverting(web3, deployer, reason)
    chain = Web3ChainClient(web3, deployer, revert_errors=TESTER_REVERT_ERRORS)
    with pytest.raises(exception_class) as exc_info:
        chain.call(target, b"")
    assert reason in str(exc_info.value)
    assert isinstance(exc_info.value.__cause__, TransactionFailed)


def test_gas_estimation_revert_translated(web3, deployer):
    """Without a gas override the failure surfaces before broadcast."""
    target = deploy_reverting(web3, deployer, "DEPLOYMENT_FAILED")
    chain = Web3ChainClient(web3, deployer, revert_errors=TESTER_REVERT_ERRORS)
    nonce = chain.get_transaction_count(deployer)
    with pytest.raises(DeploymentFailed):
        chain.send_transaction(target, b"")
    assert chain.get_transaction_count(deployer) == nonce


def test_mined_failure_translated(web3, deployer):
    """With a fixed gas the transaction is mined, and the reason comes from the replay."""
    target = deploy_reverting(web3, deployer, "INITIALIZATION_FAILED")
    chain = Web3ChainClient(web3, deployer, revert_errors=TESTER_REVERT_ERRORS)
    nonce = chain.get_transaction_count(deployer)
    with pytest.raises(InitializationFailed) as exc_info:
        chain.send_transaction(target, b"", overrides={"gas": 100_000})
    assert "INITIALIZATION_FAILED" in str(exc_info.value)
    assert chain.get_transaction_count(deployer) == nonce + 1


def test_mined_failure_other_reason(web3, deployer):
    target = deploy_reverting(web3, deployer, "Not today")
    chain = Web3ChainClient(web3, deployer, revert_errors=TESTER_REVERT_ERRORS)
    with pytest.raises(TransactionReverted) as exc_info:
        chain.send_transaction(target, b"", overrides={"gas": 100_000})
    assert "Not today" in str(exc_info.value)
    receipt = web3.eth.get_transaction_receipt(exc_info.value.tx_hash)
    assert receipt["status"] == 0


def test_node_revert_messages_translated():
    """Live nodes report reverts as ContractLogicError."""
    web3 = Mock()
    chain = Web3ChainClient(web3, "0x" + "11" * 20)

    error = ContractLogicError("execution reverted: DEPLOYMENT_FAILED", data="0x08c379a0")
    web3.eth.call.side_effect = error
    with pytest.raises(DeploymentFailed) as exc_info:
        chain.call("0x" + "22" * 20, b"")
    assert str(exc_info.value) == "execution reverted: DEPLOYMENT_FAILED"
    assert exc_info.value.__cause__ is error

    web3.eth.estimate_gas.side_effect = ContractLogicError("execution reverted: INITIALIZATION_FAILED")
    with pytest.raises(InitializationFailed):
        chain.send_transaction("0x" + "22" * 20, b"")
    web3.eth.send_transaction.assert_not_called()

    web3.eth.call.side_effect = ContractLogicError("execution reverted: AccessControl: account 0x" + "11" * 20 + " is missing role 0x" + "00" * 32)
    with pytest.raises(AccessDenied):
        chain.call("0x" + "22" * 20, b"")

    other = ContractLogicError("execution reverted: Ownable: caller is not the owner")
    web3.eth.call.side_effect = other
    with pytest.raises(ContractLogicError) as exc_info:
        chain.call("0x" + "22" * 20, b"")
    assert exc_info.value is other


def test_revert_message():
    assert get_revert_message(ContractLogicError("execution reverted: X", data="0x")) == "execution reverted: X"
    assert get_revert_message(TransactionFailed("execution reverted: Y")) == "execution reverted: Y"


def test_ensure_deployed_over_web3_sends_nothing_on_revert(web3, deployer):
    """A factory that refuses every deployment fails the simulation, no transaction is sent."""
    factory = deploy_reverting(web3, deployer, "DEPLOYMENT_FAILED")
    chain = Web3ChainClient(web3, deployer, revert_errors=TESTER_REVERT_ERRORS)
    ledger = InMemoryLedger()
    deterministic_deployer = DeterministicDeployer(chain, ledger, "tester", factory_addresses={"tester": factory}, random_salt=False)

    nonce = chain.get_transaction_count(deployer)
    request = DeployRequest(name="Return42", creation_code=RETURN_42_INIT_CODE, salt="Return42-v1")
    with pytest.raises(DeploymentFailed):
        deterministic_deployer.ensure_deployed(request)

    assert chain.get_transaction_count(deployer) == nonce
    assert ledger.records == {}
