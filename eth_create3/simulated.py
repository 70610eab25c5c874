"""In-process chain hosting deterministic factories.

:py:class:`InMemoryChain` implements :py:class:`eth_create3.chain.ChainClient`
on top of :py:class:`eth_create3.state.WorldState`. Calls to an installed factory run
the :py:class:`eth_create3.factory.DeterministicFactory` state machine.

Use it to

- Unit test deployment scripts without a node

- Dry run a multichain rollout: several instances with different chain ids,
  the factory installed at the same address on each

Example:

.. code-block:: python

    chain = InMemoryChain(chain_id=137)
    chain.install_factory(DEFAULT_FACTORY_ADDRESS, admin=admin, deployer=deployer)
    deployer = DeterministicDeployer(chain, InMemoryLedger(), "polygon")
"""

import logging

from eth_typing import HexAddress
from eth_utils import keccak, to_checksum_address
from hexbytes import HexBytes

from eth_create3.address import derive_create_address
from eth_create3.chain import ChainClient, Sender, TransactionReverted, get_sender_address
from eth_create3.factory import DeterministicFactory
from eth_create3.state import InitCodeExecutor, OpaqueInitCodeExecutor, WorldState


logger = logging.getLogger(__name__)


#: Placeholder runtime code for installed factories.
#:
#: Only needs to be non-empty.
FACTORY_RUNTIME_CODE = keccak(text="DeterministicFactory")

#: Chain id of local test nodes
DEFAULT_CHAIN_ID = 31337


class InMemoryChain(ChainClient):
    """A chain in a Python dict.

    - Transactions are mined immediately, one block per transaction

    - A failed transaction consumes the sender nonce and leaves no other trace

    - Every chain client method call is recorded in :py:attr:`rpc_log`
    """

    def __init__(
        self,
        chain_id: int = DEFAULT_CHAIN_ID,
        default_sender: HexAddress | str | None = None,
        executor: InitCodeExecutor | None = None,
    ):
        """
        :param chain_id:
            Chain id reported by :py:meth:`current_network_id`

        :param default_sender:
            Default transaction sender

        :param executor:
            Runs creation code of contracts deployed through factories
        """
        self.chain_id = chain_id
        self.state = WorldState()
        self.executor = executor or OpaqueInitCodeExecutor()
        self.factories: dict[str, DeterministicFactory] = {}
        self.default_sender = to_checksum_address(default_sender) if default_sender else None
        self.block_number = 0

        #: All receipts, including failed transactions
        self.receipts: list[dict] = []

        #: Names of chain client methods called, in order
        self.rpc_log: list[str] = []

    def __repr__(self):
        return f"<InMemoryChain chain:{self.chain_id} block:{self.block_number} factories:{len(self.factories)}>"

    @property
    def address(self) -> HexAddress:
        assert self.default_sender, "No default sender configured"
        return self.default_sender

    def fund(self, address: HexAddress | str, amount: int):
        """Mint native currency to an account."""
        self.state.get(address).balance += amount

    def get_balance(self, address: HexAddress | str) -> int:
        return self.state.peek(address).balance

    def install_factory(
        self,
        address: HexAddress | str,
        admin: HexAddress | str,
        deployer: HexAddress | str,
    ) -> DeterministicFactory:
        """Place a factory at a fixed address.

        Like ``anvil_setCode``: no transaction, no nonce needed.
        """
        factory = DeterministicFactory(address, admin=admin, deployer=deployer, executor=self.executor)
        account = self.state.get(factory.address)
        account.code = FACTORY_RUNTIME_CODE
        account.nonce = max(account.nonce, 1)
        self.factories[factory.address] = factory
        return factory

    def deploy_factory(
        self,
        sender: Sender,
        admin: HexAddress | str,
        deployer: HexAddress | str,
    ) -> DeterministicFactory:
        """Deploy a factory with a regular contract creation transaction.

        The factory address is the ``CREATE`` address of the sender and its current nonce.
        """
        sender_address = get_sender_address(sender)
        account = self.state.get(sender_address)
        address = derive_create_address(sender_address, account.nonce)
        account.nonce += 1
        factory = self.install_factory(address, admin=admin, deployer=deployer)
        self._mine(sender_address, None, success=True, contract_address=factory.address)
        logger.info("Deployed factory %s on chain %d", factory.address, self.chain_id)
        return factory

    def _execute(self, sender: HexAddress, to: HexAddress | str | None, data: bytes, value: int) -> HexBytes:
        """Run a message call against the current state.

        The caller takes care of snapshots.
        """
        to = to_checksum_address(to)
        self.state.transfer(sender, to, value)
        factory = self.factories.get(to)
        if factory is not None:
            return factory.execute(self.state, sender, bytes(data), msg_value=value)

        if self.state.peek(to).code:
            raise TransactionReverted(HexBytes(b""), f"execution reverted: {to} is not a known contract")

        # Plain value transfer
        return HexBytes(b"")

    def _mine(self, sender: HexAddress, to: HexAddress | None, success: bool, contract_address: HexAddress | None = None) -> dict:
        self.block_number += 1
        tx_hash = HexBytes(keccak(text=f"{self.chain_id}:{self.block_number}:{sender}"))
        receipt = {
            "transactionHash": tx_hash,
            "blockNumber": self.block_number,
            "from": sender,
            "to": to,
            "status": 1 if success else 0,
            "contractAddress": contract_address,
            "gasUsed": 0,
        }
        self.receipts.append(receipt)
        return receipt

    def send_transaction(
        self,
        to: HexAddress | str | None,
        data: bytes,
        value: int = 0,
        sender: Sender | None = None,
        overrides: dict | None = None,
    ) -> dict:
        self.rpc_log.append("send_transaction")
        assert to is not None, "Use deploy_factory() for contract creation"
        sender_address = get_sender_address(sender) if sender else self.address
        to = to_checksum_address(to)

        # A nonce is consumed even if the transaction fails
        self.state.get(sender_address).nonce += 1

        snapshot = self.state.snapshot()
        try:
            self._execute(sender_address, to, data, value)
        except Exception:
            self.state.restore(snapshot)
            self._mine(sender_address, to, success=False)
            raise

        return self._mine(sender_address, to, success=True)

    def call(
        self,
        to: HexAddress | str,
        data: bytes,
        value: int = 0,
        sender: Sender | None = None,
    ) -> HexBytes:
        self.rpc_log.append("call")
        sender_address = get_sender_address(sender) if sender else self.default_sender or to_checksum_address("0x" + "00" * 20)
        snapshot = self.state.snapshot()
        try:
            return self._execute(sender_address, to, data, value)
        finally:
            self.state.restore(snapshot)

    def get_code(self, address: HexAddress | str) -> HexBytes:
        self.rpc_log.append("get_code")
        return self.state.get_code(address)

    def get_transaction_count(self, address: HexAddress | str) -> int:
        self.rpc_log.append("get_transaction_count")
        return self.state.peek(address).nonce

    def current_network_id(self) -> int:
        self.rpc_log.append("current_network_id")
        return self.chain_id

    def get_factory(self, address: HexAddress | str) -> DeterministicFactory:
        return self.factories[to_checksum_address(address)]

