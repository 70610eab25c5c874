"""Chain client capability.

The deployment orchestration talks to a chain only through :py:class:`ChainClient`:

- :py:class:`Web3ChainClient` for real networks over JSON-RPC

- :py:class:`eth_create3.simulated.InMemoryChain` for tests and dry runs

Factory reverts are translated to :py:mod:`eth_create3.factory` exceptions,
any other failure propagates as is.
"""

import logging
from abc import ABC, abstractmethod
from typing import TypeAlias

from eth_account.signers.local import LocalAccount
from eth_typing import HexAddress
from eth_utils import to_checksum_address
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError

from eth_create3.factory import translate_factory_revert
from eth_create3.hotwallet import HotWallet


logger = logging.getLogger(__name__)


#: Who signs a transaction.
#:
#: - Hot wallet or a local account: sign locally
#:
#: - Address: the node signs, e.g. unlocked accounts of a test node
Sender: TypeAlias = HotWallet | LocalAccount | HexAddress | str

#: Exceptions a Web3 connection raises for a reverted call or gas estimation.
#:
#: Test backends can raise their own, e.g. eth-tester raises
#: ``eth_tester.exceptions.TransactionFailed``. Pass those to :py:class:`Web3ChainClient`.
DEFAULT_REVERT_ERRORS: tuple[type[Exception], ...] = (ContractLogicError,)


class TransactionReverted(Exception):
    """A transaction was mined, but it failed."""

    def __init__(self, tx_hash: HexBytes, msg: str):
        super().__init__(msg)
        self.tx_hash = tx_hash


def get_sender_address(sender: Sender) -> HexAddress:
    """Resolve the address of a signing identity."""
    if isinstance(sender, (HotWallet, LocalAccount)):
        return to_checksum_address(sender.address)
    assert type(sender) == str, f"Unsupported sender: {sender}"
    return to_checksum_address(sender)


class ChainClient(ABC):
    """Minimal chain access needed to deploy through the factory."""

    @property
    @abstractmethod
    def address(self) -> HexAddress:
        """Default sender of transactions."""

    @abstractmethod
    def send_transaction(
        self,
        to: HexAddress | str | None,
        data: bytes,
        value: int = 0,
        sender: Sender | None = None,
        overrides: dict | None = None,
    ) -> dict:
        """Broadcast a transaction and wait for its receipt.

        :param to:
            Target address, ``None`` for a contract creation

        :param data:
            Calldata

        :param value:
            Native currency attached

        :param sender:
            Signing identity, default :py:attr:`address`

        :param overrides:
            Extra transaction fields like ``gas``

        :return:
            Successful transaction receipt

        :raise eth_create3.factory.FactoryRevert:
            Factory failure

        :raise TransactionReverted:
            Any other failure
        """

    @abstractmethod
    def call(
        self,
        to: HexAddress | str,
        data: bytes,
        value: int = 0,
        sender: Sender | None = None,
    ) -> HexBytes:
        """Execute read-only against the latest state.

        :return:
            Return data
        """

    @abstractmethod
    def get_code(self, address: HexAddress | str) -> HexBytes:
        """Runtime code of an account, empty if none."""

    @abstractmethod
    def get_transaction_count(self, address: HexAddress | str) -> int:
        """Account nonce."""

    @abstractmethod
    def current_network_id(self) -> int:
        """Chain id."""


def get_revert_message(e: Exception) -> str:
    """Error message of a revert exception, without the web3 data payload."""
    message = getattr(e, "message", None)
    if isinstance(message, str):
        return message
    return str(e.args[0]) if e.args else str(e)


def _raise_translated(e: Exception):
    translated = translate_factory_revert(get_revert_message(e))
    if translated is None:
        raise e
    raise translated from e


class Web3ChainClient(ChainClient):
    """Chain client over a Web3 connection.

    Example:

    .. code-block:: python

        web3 = Web3(HTTPProvider(read_json_rpc_url("polygon")))
        wallet = HotWallet.from_private_key(os.environ["PRIVATE_KEY"])
        wallet.sync_nonce(web3)
        chain = Web3ChainClient(web3, wallet)
    """

    def __init__(
        self,
        web3: Web3,
        signer: Sender,
        receipt_timeout: float = 120.0,
        revert_errors: tuple[type[Exception], ...] = DEFAULT_REVERT_ERRORS,
    ):
        """
        :param web3:
            Connection to the network

        :param signer:
            Default signing identity

        :param receipt_timeout:
            How many seconds to wait for a transaction to be mined

        :param revert_errors:
            Exceptions that mean the node reverted a call.
            Their messages are checked for factory failures.
        """
        self.web3 = web3
        self.signer = signer
        self.receipt_timeout = receipt_timeout
        self.revert_errors = revert_errors

    def __repr__(self):
        return f"<Web3ChainClient chain:{self.current_network_id()} signer:{self.address}>"

    @property
    def address(self) -> HexAddress:
        return get_sender_address(self.signer)

    def _build_tx(self, to: HexAddress | str | None, data: bytes, value: int, sender: Sender) -> dict:
        tx = {
            "from": get_sender_address(sender),
            "data": Web3.to_hex(HexBytes(data)),
            "value": value,
        }
        if to is not None:
            tx["to"] = to_checksum_address(to)
        return tx

    def send_transaction(
        self,
        to: HexAddress | str | None,
        data: bytes,
        value: int = 0,
        sender: Sender | None = None,
        overrides: dict | None = None,
    ) -> dict:
        web3 = self.web3
        sender = sender or self.signer
        tx = self._build_tx(to, data, value, sender)
        if overrides:
            tx.update(overrides)

        if "gas" not in tx:
            try:
                tx["gas"] = web3.eth.estimate_gas(tx)
            except self.revert_errors as e:
                _raise_translated(e)

        if isinstance(sender, (HotWallet, LocalAccount)):
            tx["chainId"] = web3.eth.chain_id
            if "gasPrice" not in tx and "maxFeePerGas" not in tx:
                tx["gasPrice"] = web3.eth.gas_price

            if isinstance(sender, HotWallet):
                if sender.current_nonce is None:
                    sender.sync_nonce(web3)
                raw_bytes = sender.sign_transaction_with_new_nonce(tx).raw_transaction
            else:
                tx["nonce"] = web3.eth.get_transaction_count(sender.address)
                raw_bytes = sender.sign_transaction(tx).raw_transaction

            tx_hash = web3.eth.send_raw_transaction(raw_bytes)
        else:
            tx_hash = web3.eth.send_transaction(tx)

        logger.info("Broadcasted %s, waiting for the receipt", HexBytes(tx_hash).hex())
        receipt = web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        if receipt["status"] != 1:
            reason = self._fetch_revert_reason(tx, receipt)
            translated = translate_factory_revert(reason)
            if translated is not None:
                raise translated
            raise TransactionReverted(HexBytes(tx_hash), f"Transaction {HexBytes(tx_hash).hex()} reverted: {reason}")
        return receipt

    def _fetch_revert_reason(self, tx: dict, receipt: dict) -> str:
        """Replay a failed transaction against the state before its block."""
        replay_tx = {k: v for k, v in tx.items() if k in ("from", "to", "data", "value", "gas")}
        try:
            self.web3.eth.call(replay_tx, receipt["blockNumber"] - 1)
        except self.revert_errors as e:
            return get_revert_message(e)
        return "<could not extract the revert reason>"

    def call(
        self,
        to: HexAddress | str,
        data: bytes,
        value: int = 0,
        sender: Sender | None = None,
    ) -> HexBytes:
        tx = self._build_tx(to, data, value, sender or self.signer)
        try:
            return HexBytes(self.web3.eth.call(tx))
        except self.revert_errors as e:
            _raise_translated(e)

    def get_code(self, address: HexAddress | str) -> HexBytes:
        return HexBytes(self.web3.eth.get_code(to_checksum_address(address)))

    def get_transaction_count(self, address: HexAddress | str) -> int:
        return self.web3.eth.get_transaction_count(to_checksum_address(address))

    def current_network_id(self) -> int:
        return self.web3.eth.chain_id
