"""Deterministic deployment orchestration on in-memory chains."""

import pytest
from hexbytes import HexBytes

from eth_create3.address import derive_deployment_address, normalise_salt
from eth_create3.deployment import (
    DeployAction,
    DeployRequest,
    DeterministicDeployer,
    IdentityMismatch,
    ensure_deployed_on_networks,
    ensure_deployer_nonce,
    resolve_deployer,
)
from eth_create3.factory import DEFAULT_FACTORY_ADDRESS, DeploymentFailed, InitializationFailed, encode_deploy_call
from eth_create3.hotwallet import HotWallet
from eth_create3.ledger import InMemoryLedger
from eth_create3.roles import AccessDenied
from eth_create3.simulated import InMemoryChain


#: Runtime code stored as is by the in-memory chain
TOKEN_BYTECODE = HexBytes("0x6080604052600a")

#: Starts with INVALID, the constructor reverts
REVERTING_BYTECODE = HexBytes("0xfe")


@pytest.fixture()
def wallet() -> HotWallet:
    return HotWallet.create_for_testing()


@pytest.fixture()
def admin() -> HotWallet:
    return HotWallet.create_for_testing()


@pytest.fixture()
def chain(wallet, admin) -> InMemoryChain:
    chain = InMemoryChain(chain_id=137, default_sender=wallet.address)
    chain.install_factory(DEFAULT_FACTORY_ADDRESS, admin=admin.address, deployer=wallet.address)
    chain.fund(wallet.address, 10**18)
    return chain


@pytest.fixture()
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture()
def deployer(chain, ledger) -> DeterministicDeployer:
    return DeterministicDeployer(chain, ledger, "polygon", random_salt=False)


def make_request(**kwargs) -> DeployRequest:
    params = dict(
        name="MyToken",
        salt="MyToken-v1",
        bytecode=TOKEN_BYTECODE,
        arg_types=["string", "string"],
        args=["My token", "MYT"],
        contract="contracts/MyToken.sol:MyToken",
    )
    params.update(kwargs)
    return DeployRequest.from_bytecode(**params)


def test_first_deploy_then_reuse(deployer, chain, ledger):
    """Second call returns the same address from the ledger without touching the chain."""
    result = deployer.ensure_deployed(make_request())
    assert result.action == DeployAction.deployed
    assert result.newly_deployed
    assert result.address == derive_deployment_address(DEFAULT_FACTORY_ADDRESS, "MyToken-v1")
    assert chain.get_code(result.address)
    assert chain.rpc_log.count("send_transaction") == 1

    record = ledger.get("MyToken", "polygon")
    assert record.address == result.address
    assert record.args == ["My token", "MYT"]
    assert record.receipt["status"] == 1
    assert record.transaction_hash == record.receipt["transactionHash"]
    assert record.salt == "0x" + normalise_salt("MyToken-v1").hex()
    assert record.factory == DEFAULT_FACTORY_ADDRESS
    assert record.contract == "contracts/MyToken.sol:MyToken"

    chain.rpc_log.clear()
    again = deployer.ensure_deployed(make_request())
    assert again.action == DeployAction.reused
    assert again.address == result.address
    assert not again.newly_deployed
    assert chain.rpc_log == []


def test_skip_true_reuses(deployer, chain):
    first = deployer.ensure_deployed(make_request())
    chain.rpc_log.clear()
    again = deployer.ensure_deployed(make_request(skip_if_already_deployed=True))
    assert again.address == first.address
    assert chain.rpc_log == []


def test_repair_when_code_exists_without_record(deployer, chain, ledger, wallet):
    """A previous run deployed but crashed before writing the ledger."""
    salt = normalise_salt("MyToken-v1")
    chain.send_transaction(DEFAULT_FACTORY_ADDRESS, encode_deploy_call(salt, TOKEN_BYTECODE, 0))
    chain.rpc_log.clear()

    result = deployer.ensure_deployed(make_request())
    assert result.action == DeployAction.repaired
    assert not result.newly_deployed
    assert result.address == derive_deployment_address(DEFAULT_FACTORY_ADDRESS, salt)
    assert "send_transaction" not in chain.rpc_log
    assert "call" not in chain.rpc_log

    record = ledger.get("MyToken", "polygon")
    assert record.receipt is None
    assert record.is_reconstructed()
    assert record.address == result.address


def test_redeploy_with_new_salt(deployer, chain, ledger):
    """skip_if_already_deployed=False drops the record and deploys again."""
    first = deployer.ensure_deployed(make_request())
    second = deployer.ensure_deployed(make_request(salt="MyToken-v2", skip_if_already_deployed=False))
    assert second.action == DeployAction.deployed
    assert second.newly_deployed
    assert second.address != first.address
    assert ledger.get("MyToken", "polygon").address == second.address


def test_redeploy_with_same_salt_repairs(deployer, chain):
    """The slot is already used, so the forced redeploy falls back to the repair branch."""
    first = deployer.ensure_deployed(make_request())
    sent = chain.rpc_log.count("send_transaction")
    again = deployer.ensure_deployed(make_request(skip_if_already_deployed=False))
    assert again.action == DeployAction.repaired
    assert again.address == first.address
    assert chain.rpc_log.count("send_transaction") == sent


def test_redeploy_with_same_salt_keeps_receipt(deployer, ledger):
    """The rebuilt record still points to the transaction that created the code."""
    first = deployer.ensure_deployed(make_request())
    again = deployer.ensure_deployed(make_request(skip_if_already_deployed=False))
    assert again.action == DeployAction.repaired
    assert not again.newly_deployed

    record = ledger.get("MyToken", "polygon")
    assert record.receipt == first.record.receipt
    assert record.transaction_hash == first.record.transaction_hash
    assert record.deployer == first.record.deployer
    assert not record.is_reconstructed()


def test_repair_without_previous_record_has_no_receipt(deployer, chain, ledger):
    deployer.ensure_deployed(make_request())
    ledger.delete("MyToken", "polygon")
    repaired = deployer.ensure_deployed(make_request())
    assert repaired.action == DeployAction.repaired
    assert repaired.record.is_reconstructed()
    assert repaired.record.transaction_hash is None


def test_identity_mismatch_before_chain_access(deployer, chain, ledger, wallet):
    other = HotWallet.create_for_testing()
    with pytest.raises(IdentityMismatch):
        deployer.ensure_deployed(make_request(deployer=other.address, deployer_signer=wallet))
    assert chain.rpc_log == []
    assert ledger.records == {}


def test_resolve_deployer(wallet):
    assert resolve_deployer(None, None) is None
    assert resolve_deployer(wallet.address.lower(), wallet) is wallet
    assert resolve_deployer(wallet.address.lower(), None) == wallet.address
    assert resolve_deployer(None, wallet.account) is wallet.account


def test_simulation_failure_sends_nothing(deployer, chain, ledger):
    with pytest.raises(InitializationFailed):
        deployer.ensure_deployed(make_request(bytecode=REVERTING_BYTECODE))
    assert "call" in chain.rpc_log
    assert "send_transaction" not in chain.rpc_log
    assert chain.receipts == []
    assert ledger.get("MyToken", "polygon") is None


def test_value_mismatch_fails(deployer, chain):
    with pytest.raises(InitializationFailed):
        deployer.ensure_deployed(make_request(value=100, attached_value=50))
    assert chain.receipts == []


def test_value_forwarded(deployer, chain):
    result = deployer.ensure_deployed(make_request(value=100))
    assert chain.get_balance(result.address) == 100


def test_not_a_factory_deployer(deployer, chain, admin):
    with pytest.raises(AccessDenied):
        deployer.ensure_deployed(make_request(deployer_signer=admin))
    assert chain.receipts == []


def test_slot_taken_by_someone_else_fails(chain, ledger, wallet):
    """The relay exists but the contract at the predicted address is gone."""
    deployer = DeterministicDeployer(chain, ledger, "polygon", random_salt=False)
    salt = normalise_salt("MyToken-v1")
    chain.send_transaction(DEFAULT_FACTORY_ADDRESS, encode_deploy_call(salt, TOKEN_BYTECODE, 0))

    # Wipe the deployed code but leave the relay
    address = derive_deployment_address(DEFAULT_FACTORY_ADDRESS, salt)
    del chain.state.accounts[address]

    with pytest.raises(DeploymentFailed):
        deployer.ensure_deployed(make_request())


def test_random_salt_mode(chain, ledger):
    deployer = DeterministicDeployer(chain, ledger, "polygon", random_salt=True)
    first = deployer.ensure_deployed(make_request())
    second = deployer.ensure_deployed(make_request(skip_if_already_deployed=False))
    assert first.address != derive_deployment_address(DEFAULT_FACTORY_ADDRESS, "MyToken-v1")
    assert first.address != second.address
    assert second.newly_deployed


def test_random_salt_from_environment(chain, ledger, monkeypatch):
    monkeypatch.setenv("USE_RANDOM_SALT", "true")
    assert DeterministicDeployer(chain, ledger, "polygon").random_salt
    monkeypatch.setenv("USE_RANDOM_SALT", "0")
    assert not DeterministicDeployer(chain, ledger, "polygon").random_salt


def test_force_random_salt(deployer):
    result = deployer.ensure_deployed(make_request(salt=None, force_random_salt=True))
    assert result.newly_deployed
    assert result.address != derive_deployment_address(DEFAULT_FACTORY_ADDRESS, "MyToken-v1")


def test_wrong_network_request(deployer):
    with pytest.raises(ValueError):
        deployer.ensure_deployed(make_request(network="arbitrum"))


def test_multichain_same_address(wallet, admin, ledger):
    """Same salt, same factory address: same contract address on every network."""
    deployers = []
    for network, chain_id in [("polygon", 137), ("arbitrum", 42161), ("bnb", 56)]:
        chain = InMemoryChain(chain_id=chain_id, default_sender=wallet.address)
        chain.install_factory(DEFAULT_FACTORY_ADDRESS, admin=admin.address, deployer=wallet.address)
        deployers.append(DeterministicDeployer(chain, ledger, network, random_salt=False))

    results = ensure_deployed_on_networks(deployers, make_request())
    assert list(results) == ["polygon", "arbitrum", "bnb"]
    addresses = {r.address for r in results.values()}
    assert len(addresses) == 1
    assert all(r.newly_deployed for r in results.values())
    assert sorted(n for n in ["polygon", "arbitrum", "bnb"] if ledger.get("MyToken", n)) == ["arbitrum", "bnb", "polygon"]


def test_creation_code_does_not_move_the_address(wallet, admin):
    """Different bytecode on two networks with the same salt lands on the same address."""
    results = []
    for code in (TOKEN_BYTECODE, HexBytes("0x6080604052600b")):
        chain = InMemoryChain(default_sender=wallet.address)
        chain.install_factory(DEFAULT_FACTORY_ADDRESS, admin=admin.address, deployer=wallet.address)
        deployer = DeterministicDeployer(chain, InMemoryLedger(), "hardhat", random_salt=False)
        results.append(deployer.ensure_deployed(make_request(bytecode=code)))
    assert results[0].address == results[1].address


def test_factory_address_override(wallet, admin, ledger):
    factory_address = "0x" + "42" * 20
    chain = InMemoryChain(default_sender=wallet.address)
    chain.install_factory(factory_address, admin=admin.address, deployer=wallet.address)
    deployer = DeterministicDeployer(chain, ledger, "rootstock", factory_addresses={"rootstock": factory_address}, random_salt=False)
    result = deployer.ensure_deployed(make_request())
    assert result.address == derive_deployment_address(factory_address, "MyToken-v1")
    assert result.record.factory.lower() == factory_address


def test_deployer_nonce_bump(chain, wallet):
    receipt = ensure_deployer_nonce(chain)
    assert receipt["status"] == 1
    assert chain.get_transaction_count(wallet.address) == 1

    assert ensure_deployer_nonce(chain) is None
    assert chain.get_transaction_count(wallet.address) == 1
