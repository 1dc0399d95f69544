import json

from proxydeploy.ledger import DeploymentRecord, DeploymentStatus
from proxydeploy.registry import (
    RegistryEntry,
    registry_entries_from_ledger,
    write_registry,
)
from tests.conftest import DEPLOYER, NETWORK, make_address


def put_confirmed(ledger, name, n, contract_type=None):
    ledger.put(
        DeploymentRecord(
            component=name,
            network=NETWORK,
            status=DeploymentStatus.CONFIRMED,
            address=make_address(n),
            block_number=n,
            tx_hash="0x%064x" % n,
            contract_type=contract_type or name,
            deployer=DEPLOYER,
        )
    )


def test_entries_from_ledger(ledger, artifacts):
    put_confirmed(ledger, "Root", 1)
    put_confirmed(ledger, "Proxy", 2, contract_type="Standalone")
    ledger.put(DeploymentRecord(component="Vault", network=NETWORK, status=DeploymentStatus.FAILED))

    entries = registry_entries_from_ledger(ledger, NETWORK, chain_id=1337, artifacts=artifacts)

    assert [entry.name for entry in entries] == ["Root", "Proxy"]
    root = entries[0]
    assert root.chain_id == 1337
    assert root.address == make_address(1)
    assert root.block_number == 1
    assert root.deployer == DEPLOYER
    assert [item["name"] for item in root.abi] == ["initialize"]
    assert root.abi[0]["inputs"][0]["type"] == "address"


def test_write_registry(tmp_path):
    entries = [
        RegistryEntry(
            chain_id=5,
            name=name,
            address=make_address(n),
            abi=[{"type": "function", "name": "b"}, {"type": "constructor"}],
            tx_hash="0x%064x" % n,
            block_number=n,
            deployer=DEPLOYER,
        )
        for n, name in enumerate(["Zeta", "Alpha"], start=1)
    ]
    filepath = write_registry(entries, tmp_path / "registry.json")

    with open(filepath) as file:
        data = json.load(file)
    assert list(data["5"]) == ["Alpha", "Zeta"]
    assert [item["type"] for item in data["5"]["Alpha"]["abi"]] == ["constructor", "function"]


def test_overlapping_chains_are_not_merged(tmp_path):
    entry = RegistryEntry(
        chain_id=5,
        name="Root",
        address=make_address(1),
        abi=[],
        tx_hash="0x01",
        block_number=1,
        deployer=DEPLOYER,
    )
    filepath = tmp_path / "registry.json"
    write_registry([entry], filepath)

    unmerged = write_registry([entry._replace(address=make_address(2))], filepath)
    assert unmerged.name == "registry.unmerged.json"

    merged = write_registry([entry._replace(chain_id=10)], filepath)
    assert merged == filepath
    with open(filepath) as file:
        assert sorted(json.load(file)) == ["10", "5"]


def test_nothing_to_write(tmp_path):
    filepath = tmp_path / "registry.json"
    assert write_registry([], filepath) == filepath
    assert not filepath.exists()
