import logging
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, NamedTuple

from eth_typing import ABI, ChecksumAddress
from eth_utils import to_checksum_address

from proxydeploy.ledger import DeploymentStatus
from proxydeploy.utils import _load_json, write_json_atomic

logger = logging.getLogger(__name__)

ChainId = int
ContractName = str


class RegistryEntry(NamedTuple):
    """Represents a single entry in a nucypher-style contract registry."""

    chain_id: ChainId
    name: ContractName
    address: ChecksumAddress
    abi: ABI
    tx_hash: str
    block_number: int
    deployer: str


def _get_abi(descriptor) -> ABI:
    abi = descriptor.contract_type.abi
    return [entry.model_dump(mode="json", by_alias=True, exclude_none=True) for entry in abi]


def registry_entries_from_ledger(
    ledger, network: str, chain_id: ChainId, artifacts
) -> List[RegistryEntry]:
    """Builds registry entries from the confirmed records of a network."""
    entries = list()
    for record in ledger.records(network):
        if record.status is not DeploymentStatus.CONFIRMED:
            continue
        descriptor = artifacts.descriptor(record.contract_type or record.component)
        entries.append(
            RegistryEntry(
                chain_id=chain_id,
                name=record.component,
                address=to_checksum_address(record.address),
                abi=_get_abi(descriptor),
                tx_hash=record.tx_hash,
                block_number=record.block_number,
                deployer=record.deployer or "",
            )
        )
    return entries


def write_registry(entries: List[RegistryEntry], filepath: Path) -> Path:
    """
    Writes a nucypher-style contract registry. Chains already present in an existing
    file are written to a sibling ``.unmerged.json`` file instead of being overwritten.
    """
    if not entries:
        logger.warning("No confirmed deployments to write to %s", filepath)
        return filepath

    # Sort registry entries to enforce common order
    entries = sorted(entries, key=lambda entry: (str(entry.chain_id), entry.name))

    data: Dict[str, Dict] = defaultdict(dict)
    for entry in entries:
        entry_abi = list(entry.abi)
        entry_abi.sort(key=lambda d: (d["type"], d.get("name", "")))

        data[str(entry.chain_id)][entry.name] = {
            "address": entry.address,
            "abi": entry_abi,
            "tx_hash": entry.tx_hash,
            "block_number": int(entry.block_number),
            "deployer": entry.deployer,
        }

    if filepath.exists():
        existing_data = _load_json(filepath)
        if any(chain_id in existing_data for chain_id in data):
            filepath = filepath.with_suffix(".unmerged.json")
            logger.warning(
                "Cannot merge registries with overlapping chain IDs; writing to %s", filepath
            )
        else:
            existing_data.update(data)
            data = existing_data

    write_json_atomic(filepath, dict(data))
    return filepath
