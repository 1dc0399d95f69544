"""
Durable, append-only record of deployments.

Each network is stored in its own partition file holding the full history of records
plus a pointer to the current record of every component:

    {
        "network": "testnet",
        "history": [{...}, {...}],
        "current": {"JavToken": 1}
    }
"""

import copy
import json
import logging
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from proxydeploy.constants import LEDGER_FILE_SUFFIX
from proxydeploy.exceptions import LedgerError
from proxydeploy.utils import _load_json, write_json_atomic

logger = logging.getLogger(__name__)


class DeploymentStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class DeploymentRecord(NamedTuple):
    """One deployment attempt of a component on a network."""

    component: str
    network: str
    status: DeploymentStatus
    address: Optional[str] = None
    logic_address: Optional[str] = None
    block_number: Optional[int] = None
    tx_hash: Optional[str] = None
    timestamp: Optional[int] = None
    proxy_kind: Optional[str] = None
    contract_type: Optional[str] = None
    args: tuple = ()
    deployer: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = self._asdict()
        data["status"] = self.status.value
        data["args"] = list(self.args)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeploymentRecord":
        values = dict(data)
        values["status"] = DeploymentStatus(values["status"])
        values["args"] = tuple(values.get("args") or ())
        return cls(**values)


Listener = Callable[[DeploymentRecord], None]


class Ledger:
    """
    File-backed ledger with one partition per network.

    ``put`` only returns once the partition has been fsynced and atomically swapped
    into place. A Confirmed record stays current until another Confirmed record for the
    same component replaces it; later Pending or Failed records only extend history.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self._partitions: Dict[str, dict] = dict()
        self._listeners: List[Listener] = list()
        self._lock = threading.RLock()

    def partition_filepath(self, network: str) -> Path:
        return self.directory / f"{network}{LEDGER_FILE_SUFFIX}"

    def add_listener(self, listener: Listener) -> None:
        """Registers a callable invoked with every record after it is durably written."""
        self._listeners.append(listener)

    def _partition(self, network: str) -> dict:
        partition = self._partitions.get(network)
        if partition is not None:
            return partition

        filepath = self.partition_filepath(network)
        if filepath.exists():
            try:
                partition = _load_json(filepath)
            except (OSError, json.JSONDecodeError) as e:
                raise LedgerError(f"Unable to read ledger partition {filepath}: {e}") from e
        else:
            partition = {"network": network, "history": [], "current": {}}
        self._partitions[network] = partition
        return partition

    def get(self, name: str, network: str) -> Optional[DeploymentRecord]:
        """Returns the current record of a component on a network, if any."""
        with self._lock:
            partition = self._partition(network)
            index = partition["current"].get(name)
            if index is None:
                return None
            return DeploymentRecord.from_dict(partition["history"][index])

    def history(self, name: str, network: str) -> List[DeploymentRecord]:
        """Returns every record ever written for a component on a network, oldest first."""
        with self._lock:
            partition = self._partition(network)
            return [
                DeploymentRecord.from_dict(entry)
                for entry in partition["history"]
                if entry["component"] == name
            ]

    def records(self, network: str) -> List[DeploymentRecord]:
        """Returns the current record of every component on a network, in ledger order."""
        with self._lock:
            partition = self._partition(network)
            indices = sorted(partition["current"].values())
            return [DeploymentRecord.from_dict(partition["history"][i]) for i in indices]

    def put(self, record: DeploymentRecord) -> None:
        """Durably appends a record and moves the component's current pointer if allowed."""
        with self._lock:
            partition = copy.deepcopy(self._partition(record.network))
            partition["history"].append(record.to_dict())
            new_index = len(partition["history"]) - 1

            current_index = partition["current"].get(record.component)
            if self._supersedes(partition, current_index, record):
                partition["current"][record.component] = new_index
            else:
                logger.debug(
                    "Keeping confirmed %s on %s as current; %s record kept in history only",
                    record.component,
                    record.network,
                    record.status.value,
                )

            filepath = self.partition_filepath(record.network)
            try:
                write_json_atomic(filepath, partition)
            except (OSError, TypeError, ValueError) as e:
                raise LedgerError(f"Unable to persist ledger partition {filepath}: {e}") from e
            self._partitions[record.network] = partition

        for listener in self._listeners:
            listener(record)

    @staticmethod
    def _supersedes(
        partition: dict, current_index: Optional[int], record: DeploymentRecord
    ) -> bool:
        if current_index is None:
            return True
        current_status = DeploymentStatus(partition["history"][current_index]["status"])
        if current_status is DeploymentStatus.CONFIRMED:
            return record.status is DeploymentStatus.CONFIRMED
        return True
