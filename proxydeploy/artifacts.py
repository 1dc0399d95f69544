import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

from ethpm_types import ContractType
from web3.auto import w3

from proxydeploy.exceptions import InvalidArguments, ManifestError
from proxydeploy.ledger import DeploymentStatus
from proxydeploy.utils import _load_json

logger = logging.getLogger(__name__)


class ArtifactDescriptor(NamedTuple):
    """Compiled interface of a contract: its ABI and creation bytecode."""

    name: str
    contract_type: ContractType

    @property
    def bytecode(self) -> Optional[str]:
        bytecode = self.contract_type.deployment_bytecode
        return bytecode.bytecode if bytecode else None

    @property
    def constructor_inputs(self) -> List:
        return list(self.contract_type.constructor.inputs)

    def method_abis(self, method_name: str) -> List:
        return [abi for abi in self.contract_type.methods if abi.name == method_name]


class ArtifactProvider(ABC):
    @abstractmethod
    def get(self, name: str) -> ArtifactDescriptor:
        raise NotImplementedError


class JsonArtifactProvider(ArtifactProvider):
    """
    Reads compiled artifacts from a directory of JSON files, as written by hardhat
    (``{"abi": [...], "bytecode": "0x..."}``) or foundry (``"bytecode": {"object": ...}``).
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _find(self, name: str) -> Path:
        direct = self.directory / f"{name}.json"
        if direct.exists():
            return direct
        matches = sorted(p for p in self.directory.rglob(f"{name}.json") if ".dbg." not in p.name)
        if not matches:
            raise ManifestError(f"No artifact found for '{name}' in {self.directory}")
        if len(matches) > 1:
            raise ManifestError(
                f"Artifact '{name}' is ambiguous - found {len(matches)} files in {self.directory}"
            )
        return matches[0]

    def get(self, name: str) -> ArtifactDescriptor:
        data = _load_json(self._find(name))
        bytecode = data.get("bytecode")
        if isinstance(bytecode, dict):
            bytecode = bytecode.get("object")
        contract_data = {"contractName": data.get("contractName", name), "abi": data["abi"]}
        if bytecode:
            contract_data["deploymentBytecode"] = {"bytecode": bytecode}
        contract_type = ContractType.model_validate(contract_data)
        return ArtifactDescriptor(name=name, contract_type=contract_type)


def _normalize_value(abi_input, value: Any) -> Any:
    """Turns mappings given for struct arguments into tuples ordered like the ABI."""
    components = getattr(abi_input, "components", None)
    if not components:
        return value
    if abi_input.type.endswith("]") and isinstance(value, list):
        element_type = abi_input.type[: abi_input.type.rindex("[")]
        element = abi_input.model_copy(update={"type": element_type})
        return [_normalize_value(element, v) for v in value]
    if isinstance(value, dict):
        missing = [c.name for c in components if c.name not in value]
        if missing:
            raise InvalidArguments(
                f"Struct argument '{abi_input.name}' missing {', '.join(missing)}"
            )
        return tuple(_normalize_value(c, value[c.name]) for c in components)
    if isinstance(value, (list, tuple)):
        return tuple(_normalize_value(c, v) for c, v in zip(components, value))
    return value


def validate_arguments(
    label: str,
    abis_inputs: Sequence[List],
    args: Sequence[Any],
    arg_names: Optional[Sequence[str]] = None,
) -> tuple:
    """
    Validates arguments against candidate ABI input lists (overloads) and returns them
    normalized for encoding. Raises InvalidArguments if no candidate fits.
    """
    candidates = [inputs for inputs in abis_inputs if len(inputs) == len(args)]
    if not candidates:
        arities = sorted({len(inputs) for inputs in abis_inputs})
        raise InvalidArguments(
            f"{label} expects {' or '.join(map(str, arities))} argument(s), got {len(args)}"
        )

    problems = list()
    for inputs in candidates:
        normalized = list()
        for position, (abi_input, value) in enumerate(zip(inputs, args)):
            if arg_names and abi_input.name and arg_names[position] != abi_input.name:
                problems.append(
                    f"parameter '{arg_names[position]}' at position {position} does not match "
                    f"the expected ABI name '{abi_input.name}'"
                )
                break
            try:
                value = _normalize_value(abi_input, value)
            except InvalidArguments as e:
                problems.append(str(e))
                break
            if not w3.is_encodable(abi_input.canonical_type, value):
                problems.append(
                    f"value {value!r} at position {position} does not match "
                    f"ABI type '{abi_input.canonical_type}'"
                )
                break
            normalized.append(value)
        else:
            return tuple(normalized)

    raise InvalidArguments(f"{label}: {'; '.join(problems)}")


class ArtifactRegistry:
    """
    Maps component names to their compiled interface and to the addresses already
    deployed per network. Descriptors are fetched from the provider once per name.
    """

    def __init__(self, provider: ArtifactProvider, ledger=None):
        self.provider = provider
        self.ledger = ledger
        self._descriptors: Dict[str, ArtifactDescriptor] = dict()
        self._lock = threading.Lock()

    def descriptor(self, name: str) -> ArtifactDescriptor:
        with self._lock:
            if name not in self._descriptors:
                logger.debug("Loading artifact %s", name)
                self._descriptors[name] = self.provider.get(name)
            return self._descriptors[name]

    def deployed_address(self, name: str, network: str) -> Optional[str]:
        """Returns the confirmed address of a component on a network, if any."""
        if self.ledger is None:
            return None
        record = self.ledger.get(name, network)
        if record is None or record.status is not DeploymentStatus.CONFIRMED:
            return None
        return record.address

    def validate(self, spec, resolved_args: Sequence[Any]) -> tuple:
        """
        Checks resolved arguments against the initializer (proxied components) or the
        constructor (unproxied ones) and returns them ready for encoding.
        """
        descriptor = self.descriptor(spec.artifact_name)
        if not spec.proxied:
            return validate_arguments(
                label=f"{spec.name} constructor",
                abis_inputs=[descriptor.constructor_inputs],
                args=resolved_args,
                arg_names=spec.arg_names,
            )

        if spec.initializer is None:
            if resolved_args:
                raise InvalidArguments(f"{spec.name} has arguments but no initializer")
            return ()

        method_abis = descriptor.method_abis(spec.initializer)
        if not method_abis:
            raise InvalidArguments(
                f"{spec.name}: artifact {descriptor.name} has no '{spec.initializer}' method"
            )
        return validate_arguments(
            label=f"{spec.name}.{spec.initializer}",
            abis_inputs=[list(abi.inputs) for abi in method_abis],
            args=resolved_args,
            arg_names=spec.arg_names,
        )
