"""Factory role administration.

The factory has two roles:

- :py:data:`ADMIN_ROLE` grants and revokes roles. It administers itself.

- :py:data:`DEPLOYER_ROLE` is needed to deploy through the factory.

Which role administers which is an explicit table, :py:attr:`RoleTable.admin_of`,
so that the root of the hierarchy can be checked directly.

Role identifiers and revert messages are compatible with OpenZeppelin ``AccessControl``
as used by the on-chain factory.
"""

import logging
from collections import defaultdict
from typing import Iterable

from eth_typing import HexAddress
from eth_utils import keccak, to_checksum_address


logger = logging.getLogger(__name__)


#: Role used when nothing else administers a role
DEFAULT_ADMIN_ROLE = b"\x00" * 32

#: keccak256("ADMIN_ROLE")
ADMIN_ROLE = keccak(text="ADMIN_ROLE")

#: keccak256("DEPLOYER_ROLE")
DEPLOYER_ROLE = keccak(text="DEPLOYER_ROLE")


class AccessDenied(Exception):
    """The caller does not have the role the operation needs.

    The message names the missing role the same way the on-chain revert does.
    """

    def __init__(self, account: HexAddress | str, role: bytes, msg: str | None = None):
        if msg is None:
            msg = f"AccessControl: account {account.lower()} is missing role 0x{role.hex()}"
        super().__init__(msg)
        self.account = account
        self.role = role


class RoleTable:
    """Role memberships and the role -> admin role mapping.

    Example:

    .. code-block:: python

        roles = RoleTable.create_for_factory(admin=admin, deployer=deployer)
        assert roles.get_role_admin(ADMIN_ROLE) == ADMIN_ROLE
        roles.grant_role(DEPLOYER_ROLE, another_deployer, sender=admin)
    """

    def __init__(self, admin_of: dict[bytes, bytes]):
        #: Role -> role that can grant and revoke it
        self.admin_of = dict(admin_of)

        #: Role -> set of checksummed member addresses
        self.members: dict[bytes, set[str]] = defaultdict(set)

    def __repr__(self):
        return f"<RoleTable roles:{len(self.admin_of)} members:{sum(len(m) for m in self.members.values())}>"

    @classmethod
    def create_for_factory(cls, admin: HexAddress | str, deployer: HexAddress | str) -> "RoleTable":
        """Set up the factory roles the way the factory constructor does.

        ``ADMIN_ROLE`` administers both itself and ``DEPLOYER_ROLE``.
        """
        roles = cls(
            {
                ADMIN_ROLE: ADMIN_ROLE,
                DEPLOYER_ROLE: ADMIN_ROLE,
            }
        )
        roles._grant(ADMIN_ROLE, admin)
        roles._grant(DEPLOYER_ROLE, deployer)
        return roles

    def get_role_admin(self, role: bytes) -> bytes:
        return self.admin_of.get(role, DEFAULT_ADMIN_ROLE)

    def has_role(self, role: bytes, account: HexAddress | str) -> bool:
        return to_checksum_address(account) in self.members.get(role, ())

    def get_role_members(self, role: bytes) -> Iterable[str]:
        return sorted(self.members.get(role, ()))

    def check_role(self, role: bytes, account: HexAddress | str):
        """Gate an operation by role.

        :raise AccessDenied:
            If the account does not hold the role
        """
        if not self.has_role(role, account):
            raise AccessDenied(account, role)

    def grant_role(self, role: bytes, account: HexAddress | str, sender: HexAddress | str):
        """Grant a role, sender must hold the admin role of the role."""
        self.check_role(self.get_role_admin(role), sender)
        self._grant(role, account)

    def revoke_role(self, role: bytes, account: HexAddress | str, sender: HexAddress | str):
        """Revoke a role, sender must hold the admin role of the role."""
        self.check_role(self.get_role_admin(role), sender)
        self._revoke(role, account)

    def renounce_role(self, role: bytes, account: HexAddress | str, sender: HexAddress | str):
        """Give up a role held by the sender itself."""
        if to_checksum_address(account) != to_checksum_address(sender):
            raise AccessDenied(sender, role, "AccessControl: can only renounce roles for self")
        self._revoke(role, account)

    def _grant(self, role: bytes, account: HexAddress | str):
        account = to_checksum_address(account)
        if account not in self.members[role]:
            logger.debug("Granting role 0x%s to %s", role.hex(), account)
            self.members[role].add(account)

    def _revoke(self, role: bytes, account: HexAddress | str):
        account = to_checksum_address(account)
        if account in self.members[role]:
            logger.debug("Revoking role 0x%s from %s", role.hex(), account)
            self.members[role].discard(account)
