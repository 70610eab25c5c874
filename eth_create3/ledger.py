"""Deployment ledger.

The ledger answers "is this already deployed" for a logical deployment name on a network.
Records are written only by :py:mod:`eth_create3.deployment`.

- :py:class:`InMemoryLedger` for tests and dry runs

- :py:class:`JSONFileLedger` stores one JSON file per deployment, in the
  ``deployments/<network>/<name>.json`` layout of hardhat-deploy
"""

import dataclasses
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from filelock import FileLock
from web3.datastructures import AttributeDict


logger = logging.getLogger(__name__)


def make_json_friendly(value: Any) -> Any:
    """Convert Web3 data structures to something JSON can store.

    - Bytes become ``0x`` prefixed hex strings

    - ``AttributeDict`` and tuples are unwrapped
    """
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, (dict, AttributeDict)):
        return {str(k): make_json_friendly(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [make_json_friendly(v) for v in value]
    return value


@dataclass(slots=True)
class DeploymentRecord:
    """One deployed contract on one network."""

    #: Logical deployment name, unique per network
    name: str

    #: Network name, e.g. ``polygon``
    network: str

    #: Deployed contract address
    address: str

    #: Constructor argument values
    args: list = field(default_factory=list)

    #: Deployment transaction receipt.
    #:
    #: ``None`` when the record was reconstructed from the code found on chain.
    receipt: dict | None = None

    #: Was the contract deployed by the run that returned this record
    newly_deployed: bool = False

    #: Salt as a hex string
    salt: str | None = None

    #: Factory used
    factory: str | None = None

    #: Account that sent the deployment transaction
    deployer: str | None = None

    #: Deployment transaction hash as a hex string
    transaction_hash: str | None = None

    #: Constructor argument ABI types, needed for source verification
    arg_types: list[str] | None = None

    #: Source path for verification, e.g. ``src/Token.sol:Token``
    contract: str | None = None

    def is_reconstructed(self) -> bool:
        """The record was rebuilt from on-chain state without a receipt."""
        return self.receipt is None

    def to_dict(self) -> dict:
        return {f.name: make_json_friendly(getattr(self, f.name)) for f in dataclasses.fields(self)}

    @staticmethod
    def from_dict(data: dict) -> "DeploymentRecord":
        known = {f.name for f in dataclasses.fields(DeploymentRecord)}
        return DeploymentRecord(**{k: v for k, v in data.items() if k in known})


class DeploymentLedger(ABC):
    """Keyed store of deployment records.

    Reads must see the writes done earlier in the same run.
    """

    @abstractmethod
    def get(self, name: str, network: str) -> DeploymentRecord | None:
        """Read a record, ``None`` if there is no deployment."""

    @abstractmethod
    def put(self, name: str, network: str, record: DeploymentRecord):
        """Write or overwrite a record."""

    @abstractmethod
    def delete(self, name: str, network: str):
        """Remove a record, no-op if there is none."""

    @abstractmethod
    def list_names(self, network: str) -> list[str]:
        """All deployment names on a network."""


class InMemoryLedger(DeploymentLedger):
    """Ledger in a dict.

    Stores serialised copies, so callers cannot mutate stored records.
    """

    def __init__(self):
        self.records: dict[tuple[str, str], dict] = {}

    def __repr__(self):
        return f"<InMemoryLedger records:{len(self.records)}>"

    def get(self, name: str, network: str) -> DeploymentRecord | None:
        data = self.records.get((network, name))
        if data is None:
            return None
        return DeploymentRecord.from_dict(data)

    def put(self, name: str, network: str, record: DeploymentRecord):
        assert record.name == name and record.network == network, f"Record {record.name}/{record.network} stored as {name}/{network}"
        self.records[(network, name)] = record.to_dict()

    def delete(self, name: str, network: str):
        self.records.pop((network, name), None)

    def list_names(self, network: str) -> list[str]:
        return sorted(name for record_network, name in self.records if record_network == network)


class JSONFileLedger(DeploymentLedger):
    """One JSON file per deployment.

    Example layout:

    .. code-block:: text

        deployments/
            polygon/
                MyToken.json
            arbitrum/
                MyToken.json

    Writes go through a lock file and an atomic rename, so a crash never
    leaves a half-written record behind.
    """

    def __init__(self, root: Path, lock_timeout: float = 60):
        """
        :param root:
            The ``deployments`` folder

        :param lock_timeout:
            Seconds to wait for other writers of the same record
        """
        assert isinstance(root, Path), f"Expected Path, got {type(root)}"
        self.root = root
        self.lock_timeout = lock_timeout

    def __repr__(self):
        return f"<JSONFileLedger {self.root}>"

    def get_path(self, name: str, network: str) -> Path:
        for part in (name, network):
            assert part and "/" not in part and "\\" not in part and part not in (".", ".."), f"Bad ledger key: {part}"
        return self.root / network / f"{name}.json"

    def _lock(self, path: Path) -> FileLock:
        return FileLock(path.parent / (path.name + ".lock"), timeout=self.lock_timeout)

    def get(self, name: str, network: str) -> DeploymentRecord | None:
        path = self.get_path(name, network)
        if not path.exists():
            return None
        with open(path, "rt", encoding="utf-8") as f:
            return DeploymentRecord.from_dict(json.load(f))

    def put(self, name: str, network: str, record: DeploymentRecord):
        assert record.name == name and record.network == network, f"Record {record.name}/{record.network} stored as {name}/{network}"
        path = self.get_path(name, network)
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.parent / (path.name + ".tmp")
        with self._lock(path):
            with open(temp_path, "wt", encoding="utf-8") as f:
                json.dump(record.to_dict(), f, indent=2)
            os.replace(temp_path, path)
        logger.debug("Wrote deployment record %s", path)

    def delete(self, name: str, network: str):
        path = self.get_path(name, network)
        if not path.parent.exists():
            return
        with self._lock(path):
            path.unlink(missing_ok=True)

    def list_names(self, network: str) -> list[str]:
        folder = self.root / network
        if not folder.exists():
            return []
        return sorted(p.stem for p in folder.glob("*.json"))
