import json
import threading
import time
from collections import Counter
from pathlib import Path

import pytest
import yaml
from eth_utils import to_checksum_address

from proxydeploy.artifacts import ArtifactRegistry, JsonArtifactProvider
from proxydeploy.config import ConfigSource
from proxydeploy.exceptions import PermanentSubmitError, TransientSubmitError
from proxydeploy.executor import Executor, RetryPolicy
from proxydeploy.ledger import Ledger
from proxydeploy.manifest import parse_manifest
from proxydeploy.orchestrator import Orchestrator
from proxydeploy.session import Confirmation, NetworkSession, TxResult

# Common constants
NETWORK = "testnet"
NO_DELAY = RetryPolicy(attempts=3, initial_delay=0)


# Utility functions
def make_address(n: int) -> str:
    return to_checksum_address("0x" + "%040x" % n)


DEPLOYER = make_address(0xDE)
TREASURY = make_address(0x7E)


def abi_inputs(params):
    return [{"name": name, "type": _type, "internalType": _type} for name, _type in params]


def write_artifact(directory: Path, name: str, initializer=None, constructor=None, **methods):
    """Writes a hardhat-style artifact; parameters are lists of (name, type) tuples."""
    abi = list()
    if constructor is not None:
        abi.append(
            {
                "type": "constructor",
                "inputs": abi_inputs(constructor),
                "stateMutability": "nonpayable",
            }
        )
    if initializer is not None:
        methods["initialize"] = initializer
    for method_name, params in methods.items():
        abi.append(
            {
                "type": "function",
                "name": method_name,
                "inputs": abi_inputs(params),
                "outputs": [],
                "stateMutability": "nonpayable",
            }
        )
    directory.mkdir(parents=True, exist_ok=True)
    filepath = directory / f"{name}.json"
    with open(filepath, "w") as file:
        json.dump({"contractName": name, "abi": abi, "bytecode": "0x6080604052"}, file)
    return filepath


class ScriptedSession(NetworkSession):
    """
    In-memory network session. ``failures`` maps component names to the errors raised
    by their next submissions, consumed in order; once exhausted, submissions succeed.
    ``confirmation_failures`` does the same for confirmation waits.
    """

    def __init__(
        self,
        network=NETWORK,
        signer=DEPLOYER,
        failures=None,
        confirmation_failures=None,
        delay=0.0,
        offset=0,
    ):
        super().__init__(network=network, signer=signer)
        self.failures = {name: list(errors) for name, errors in (failures or {}).items()}
        self.confirmation_failures = {
            name: list(errors) for name, errors in (confirmation_failures or {}).items()
        }
        self.delay = delay
        self.requests = list()
        self.submissions = Counter()
        self.confirmation_waits = Counter()
        self.max_concurrency = 0
        self._active = 0
        self._counter = offset
        self._handles = dict()
        self._lock = threading.Lock()

    def submit(self, request):
        with self._lock:
            self.requests.append(request)
            self.submissions[request.component] += 1
            queue = self.failures.get(request.component)
            if queue:
                raise queue.pop(0)
            self._counter += 1
            n = self._counter
            self._handles[n] = request
            self._active += 1
            self.max_concurrency = max(self.max_concurrency, self._active)
        return TxResult(handle=n, tx_hash="0x%064x" % n)

    def wait_for_confirmation(self, handle, timeout=None):
        request = self._handles[handle]
        with self._lock:
            self.confirmation_waits[request.component] += 1
            queue = self.confirmation_failures.get(request.component)
            if queue:
                raise queue.pop(0)
        time.sleep(self.delay)
        with self._lock:
            self._active -= 1
        return Confirmation(
            address=request.proxy_address or make_address(0x1000 + handle),
            logic_address=make_address(0x2000 + handle),
            block_number=100 + handle,
            tx_hash="0x%064x" % handle,
        )

    def requests_for(self, component):
        return [r for r in self.requests if r.component == component]


def revert(message="execution reverted: Initializable: contract is already initialized"):
    return PermanentSubmitError(message)


def timeout(message="request timed out"):
    return TransientSubmitError(message)


def manifest_config(contracts, **sections):
    config = {
        "deployment": {"name": "test", "ledger_dir": "ledger"},
        "artifacts": {"dir": "artifacts"},
        "networks": {NETWORK: {"chain_id": 1337, "constants": {"TREASURY": TREASURY}}},
        "contracts": contracts,
    }
    config.update(sections)
    return config


# Fixtures
@pytest.fixture
def artifacts_dir(tmp_path):
    directory = tmp_path / "artifacts"
    for name in ("A", "B", "C", "D"):
        write_artifact(directory, name, initializer=[("dependency", "address")])
    write_artifact(directory, "Root", initializer=[("owner", "address")])
    write_artifact(directory, "Standalone", initializer=[])
    write_artifact(directory, "Pair", initializer=[("left", "address"), ("right", "address")])
    write_artifact(
        directory,
        "Vault",
        constructor=[("treasury", "address"), ("cap", "uint256")],
    )
    write_artifact(directory, "Token", initializer=[("_name", "string"), ("_supply", "uint256")])
    return directory


@pytest.fixture
def ledger(tmp_path):
    return Ledger(tmp_path / "ledger")


@pytest.fixture
def events(ledger):
    """Every record written to the ledger, as (component, status) pairs."""
    written = list()
    ledger.add_listener(lambda record: written.append((record.component, record.status.value)))
    return written


@pytest.fixture
def artifacts(artifacts_dir, ledger):
    return ArtifactRegistry(JsonArtifactProvider(artifacts_dir), ledger=ledger)


@pytest.fixture
def session():
    return ScriptedSession()


@pytest.fixture
def executor(session, ledger, artifacts):
    return Executor(session=session, ledger=ledger, artifacts=artifacts, retry_policy=NO_DELAY)


@pytest.fixture
def make_manifest(tmp_path, artifacts_dir):
    def _make(contracts, **sections):
        return parse_manifest(manifest_config(contracts, **sections), path=tmp_path / "m.yml")

    return _make


@pytest.fixture
def write_manifest(tmp_path, artifacts_dir):
    def _write(contracts, **sections):
        filepath = tmp_path / "manifest.yml"
        with open(filepath, "w") as file:
            yaml.safe_dump(manifest_config(contracts, **sections), file)
        return filepath

    return _write


@pytest.fixture
def make_orchestrator(ledger, artifacts):
    def _make(manifest, session=None, **kwargs):
        kwargs.setdefault("retry_policy", NO_DELAY)
        return Orchestrator(
            manifest=manifest,
            network=NETWORK,
            ledger=ledger,
            artifacts=artifacts,
            config=ConfigSource.for_network(manifest, NETWORK, environ={}),
            session=session,
            **kwargs,
        )

    return _make
