"""Account state for the in-process chain.

A minimal model of the EVM world state: balances, nonces and code.
It is enough to run the deterministic factory state machine
in :py:mod:`eth_create3.factory` without a node.

Executing creation code is delegated to an :py:class:`InitCodeExecutor`,
as we do not interpret EVM bytecode here.
"""

import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass

from eth_typing import HexAddress
from eth_utils import to_checksum_address
from hexbytes import HexBytes

from eth_create3.address import derive_create_address


#: The ``INVALID`` opcode.
#:
#: Init code starting with it always fails.
INVALID_OPCODE = 0xFE


class ConstructorReverted(Exception):
    """Creation code failed to execute."""


class CreateCollision(Exception):
    """Contract creation hit an address that is already in use."""


class InsufficientBalance(Exception):
    """Value transfer larger than the sender balance."""


@dataclass(slots=True)
class AccountState:
    """One account in the world state."""

    balance: int = 0

    nonce: int = 0

    code: bytes = b""

    def is_occupied(self) -> bool:
        """Is the address taken.

        An address with code or a nonzero nonce cannot be a target of
        ``CREATE`` or ``CREATE2``.
        """
        return len(self.code) > 0 or self.nonce > 0


class InitCodeExecutor(ABC):
    """Run contract creation code and return the runtime code."""

    @abstractmethod
    def execute(self, init_code: bytes, value: int, address: HexAddress) -> bytes:
        """Execute init code for a new contract at ``address``.

        :raise ConstructorReverted:
            If the constructor fails
        """


class OpaqueInitCodeExecutor(InitCodeExecutor):
    """Treat the creation code itself as the runtime code.

    - Creation code starting with the ``INVALID`` opcode reverts

    - Empty creation code produces an account without code
    """

    def execute(self, init_code: bytes, value: int, address: HexAddress) -> bytes:
        if init_code and init_code[0] == INVALID_OPCODE:
            raise ConstructorReverted(f"Constructor of {address} hit INVALID opcode")
        return bytes(init_code)


class WorldState:
    """Accounts keyed by checksummed address.

    Supports snapshots, so that a failed transaction leaves no trace.
    """

    def __init__(self):
        self.accounts: dict[str, AccountState] = {}

    def __repr__(self):
        return f"<WorldState accounts:{len(self.accounts)}>"

    def get(self, address: HexAddress | str) -> AccountState:
        """Read or lazily create an account."""
        address = to_checksum_address(address)
        account = self.accounts.get(address)
        if account is None:
            account = self.accounts[address] = AccountState()
        return account

    def peek(self, address: HexAddress | str) -> AccountState:
        """Read an account without creating it."""
        return self.accounts.get(to_checksum_address(address), AccountState())

    def snapshot(self) -> dict[str, AccountState]:
        return copy.deepcopy(self.accounts)

    def restore(self, snapshot: dict[str, AccountState]):
        self.accounts = snapshot

    def transfer(self, sender: HexAddress | str, receiver: HexAddress | str, value: int):
        """Move native currency between accounts.

        :raise InsufficientBalance:
            If the sender does not have enough
        """
        assert value >= 0, f"Negative value: {value}"
        if value == 0:
            return
        source = self.get(sender)
        if source.balance < value:
            raise InsufficientBalance(f"{sender} has balance {source.balance}, tried to send {value}")
        source.balance -= value
        self.get(receiver).balance += value

    def create_contract(
        self,
        creator: HexAddress | str,
        address: HexAddress | str,
        init_code: bytes,
        value: int,
        executor: InitCodeExecutor,
    ) -> HexAddress:
        """Create a contract account at a given address.

        - Bumps the creator nonce

        - The new account starts with nonce 1

        - Value is moved from the creator to the new account

        The caller is responsible for rolling back the state on failure.

        :raise CreateCollision:
            The target address is already in use

        :raise ConstructorReverted:
            The executor failed the init code
        """
        address = to_checksum_address(address)
        self.get(creator).nonce += 1

        if self.peek(address).is_occupied():
            raise CreateCollision(f"Address already in use: {address}")

        account = self.get(address)
        account.nonce = 1
        self.transfer(creator, address, value)
        account.code = bytes(executor.execute(bytes(init_code), value, address))
        return address

    def create(
        self,
        creator: HexAddress | str,
        init_code: bytes,
        value: int,
        executor: InitCodeExecutor,
    ) -> HexAddress:
        """``CREATE`` opcode: the address comes from the creator nonce."""
        address = derive_create_address(creator, self.get(creator).nonce)
        return self.create_contract(creator, address, init_code, value, executor)

    def get_code(self, address: HexAddress | str) -> HexBytes:
        return HexBytes(self.peek(address).code)
