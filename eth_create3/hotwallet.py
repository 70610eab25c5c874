"""Hot wallet for signing deployment transactions.

- Create local wallets from a private key

- Manage the nonce manually, so that several deployments can be
  signed back to back without waiting for the node to catch up

"""

import logging
from typing import NamedTuple, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3


logger = logging.getLogger(__name__)


class SignedTransactionWithNonce(NamedTuple):
    """A signed transaction with the nonce and the source payload attached.

    Retains the unsigned source, so we can diagnose broadcast failures.
    """

    #: Bytes to broadcast
    raw_transaction: HexBytes

    #: Transaction hash
    hash: HexBytes

    #: What was the source nonce for this transaction
    nonce: int

    #: What was the source address for this trasaction
    address: str

    #: Unencoded transaction data as a dict.
    source: Optional[dict] = None

    def __repr__(self):
        return f"<SignedTransactionWithNonce hash:{self.hash.hex()} nonce:{self.nonce}>"


class HotWallet:
    """Private key in the process memory and a nonce counter.

    Example:

    .. code-block:: python

        wallet = HotWallet.from_private_key(os.environ["PRIVATE_KEY"])
        wallet.sync_nonce(web3)
        signed_tx = wallet.sign_transaction_with_new_nonce(
            {
                "to": factory_address,
                "data": calldata,
                "gas": 2_000_000,
                "gasPrice": web3.eth.gas_price,
                "chainId": web3.eth.chain_id,
            }
        )
        web3.eth.send_raw_transaction(signed_tx.raw_transaction)

    .. note ::

        This class is not thread safe. If multiple threads try to sign transactions
        at the same time, nonce tracking may be lost.
    """

    def __init__(self, account: LocalAccount):
        self.account = account
        self.current_nonce: Optional[int] = None

    def __repr__(self):
        return f"<Hot wallet {self.account.address}>"

    @property
    def address(self) -> HexAddress:
        """Ethereum address of the wallet."""
        return self.account.address

    @property
    def private_key(self) -> HexBytes:
        """The private key as plain text."""
        return self.account._private_key

    def sync_nonce(self, web3: Web3):
        """Initialise the current nonce from the on-chain data."""
        new_nonce = web3.eth.get_transaction_count(self.account.address)
        if self.current_nonce and new_nonce < self.current_nonce:
            logger.warning("Nonce sync failed, read onchain nonce %d that is older than our current nonce %d", new_nonce, self.current_nonce)
            return
        self.current_nonce = new_nonce
        logger.info("Synced nonce for %s to %d", self.account.address, self.current_nonce)

    def allocate_nonce(self) -> int:
        """Get the next free available nonce and increase the counter."""
        assert self.current_nonce is not None, f"Nonce is not yet synced from the blockchain: {self}"
        nonce = self.current_nonce
        self.current_nonce += 1
        return nonce

    def sign_transaction_with_new_nonce(self, tx: dict) -> SignedTransactionWithNonce:
        """Signs a transaction and allocates a nonce for it.

        :param tx:
            Ethereum transaction data as a dict.
            This is modified in-place to include nonce.
        """
        assert type(tx) == dict
        assert "nonce" not in tx
        tx["nonce"] = self.allocate_nonce()
        _signed = self.account.sign_transaction(tx)
        return SignedTransactionWithNonce(
            raw_transaction=HexBytes(_signed.raw_transaction),
            hash=HexBytes(_signed.hash),
            nonce=tx["nonce"],
            address=self.address,
            source=tx,
        )

    @staticmethod
    def from_private_key(key: str) -> "HotWallet":
        """Create a hot wallet from a private key that is passed in as a hex string.

        :param key:
            0x prefixed hex string
        """
        assert key.startswith("0x"), "Private key must start with 0x hex prefix"
        account = Account.from_key(key)
        return HotWallet(account)

    @staticmethod
    def create_for_testing() -> "HotWallet":
        """Create a new random wallet with its nonce starting from zero."""
        wallet = HotWallet(Account.create())
        wallet.current_nonce = 0
        return wallet
