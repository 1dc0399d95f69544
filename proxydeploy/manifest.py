import typing
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from proxydeploy.constants import (
    DEFAULT_INITIALIZER,
    DEFAULT_LEDGER_DIR,
    DEFAULT_PROXY_DEPENDENCY,
    ProxyKind,
)
from proxydeploy.exceptions import ManifestError
from proxydeploy.executor import RetryPolicy
from proxydeploy.params import process_raw_value
from proxydeploy.utils import _load_yaml

EMPTY_MAPPING = MappingProxyType({})

COMPONENT_KEYS = {"proxy", "contract_type", "initializer", "args", "overrides", "tx"}


class ComponentSpec(NamedTuple):
    """Declarative description of one deployable component."""

    name: str
    initializer_args: tuple = ()
    proxy_kind: ProxyKind = ProxyKind.NONE
    overrides: typing.Mapping[str, typing.Mapping[int, Any]] = EMPTY_MAPPING
    contract_type: Optional[str] = None
    initializer: str = DEFAULT_INITIALIZER
    arg_names: Optional[Tuple[str, ...]] = None
    tx_overrides: typing.Mapping[str, Any] = EMPTY_MAPPING

    @property
    def artifact_name(self) -> str:
        return self.contract_type or self.name

    @property
    def proxied(self) -> bool:
        return self.proxy_kind is not ProxyKind.NONE


class NetworkConfig(NamedTuple):
    name: str
    chain_id: Optional[int] = None
    provider: Optional[str] = None
    account: Optional[str] = None
    constants: typing.Mapping[str, Any] = EMPTY_MAPPING


class Manifest(NamedTuple):
    name: str
    components: Tuple[ComponentSpec, ...]
    networks: typing.Mapping[str, NetworkConfig] = EMPTY_MAPPING
    constants: typing.Mapping[str, Any] = EMPTY_MAPPING
    artifacts_dir: Optional[Path] = None
    ledger_dir: Path = Path(DEFAULT_LEDGER_DIR)
    retry_policy: RetryPolicy = RetryPolicy()
    proxy_dependency: Tuple[str, str] = DEFAULT_PROXY_DEPENDENCY
    path: Optional[Path] = None

    @property
    def names(self) -> List[str]:
        return [spec.name for spec in self.components]

    def component(self, name: str) -> ComponentSpec:
        for spec in self.components:
            if spec.name == name:
                return spec
        raise ManifestError(f"Component '{name}' is not declared in the manifest")

    def network(self, name: str) -> NetworkConfig:
        """Returns the network section; networks absent from the manifest get an empty one."""
        if self.networks and name not in self.networks:
            raise ManifestError(
                f"Network '{name}' is not declared in the manifest; "
                f"expected one of {', '.join(self.networks)}"
            )
        return self.networks.get(name, NetworkConfig(name=name))


def _get_component_names(config: typing.Dict) -> List[str]:
    component_names = list()
    for component_info in config["contracts"]:
        if isinstance(component_info, str):
            component_names.append(component_info)
        elif isinstance(component_info, dict) and len(component_info) == 1:
            component_names.extend(list(component_info.keys()))
        else:
            raise ManifestError(f"Malformed component entry: {component_info!r}")

    duplicates = sorted({name for name in component_names if component_names.count(name) > 1})
    if duplicates:
        raise ManifestError(f"Duplicate component names in manifest: {', '.join(duplicates)}")
    return component_names


def _parse_proxy_kind(name: str, value: Any) -> ProxyKind:
    if value is None:
        return ProxyKind.NONE
    try:
        return ProxyKind(str(value).lower())
    except ValueError:
        choices = ", ".join(kind.value for kind in ProxyKind)
        raise ManifestError(f"{name}: unknown proxy kind '{value}'; expected one of {choices}")


def _parse_args(name: str, raw_args: Any, component_names: List[str]):
    if raw_args is None:
        return (), None
    if isinstance(raw_args, dict):
        arg_names = tuple(raw_args.keys())
        values = tuple(process_raw_value(v, component_names) for v in raw_args.values())
        return values, arg_names
    if isinstance(raw_args, list):
        return tuple(process_raw_value(v, component_names) for v in raw_args), None
    raise ManifestError(f"{name}: 'args' must be a list or a mapping of argument names")


def _parse_overrides(
    name: str,
    raw_overrides: Any,
    arity: int,
    arg_names: Optional[Tuple[str, ...]],
    component_names: List[str],
) -> Dict[str, Dict[int, Any]]:
    if not raw_overrides:
        return dict()
    if not isinstance(raw_overrides, dict):
        raise ManifestError(f"{name}: 'overrides' must map network names to arguments")

    overrides = dict()
    for network, network_overrides in raw_overrides.items():
        if not isinstance(network_overrides, dict):
            raise ManifestError(f"{name}: overrides for '{network}' must be a mapping")
        positional = dict()
        for key, value in network_overrides.items():
            if isinstance(key, int):
                position = key
            elif arg_names and key in arg_names:
                position = arg_names.index(key)
            else:
                raise ManifestError(f"{name}: override '{key}' for '{network}' matches no argument")
            if not 0 <= position < arity:
                raise ManifestError(
                    f"{name}: override position {position} for '{network}' is out of range "
                    f"({arity} argument(s))"
                )
            positional[position] = process_raw_value(value, component_names)
        overrides[str(network)] = positional
    return overrides


def _parse_component(component_info: Any, component_names: List[str]) -> ComponentSpec:
    if isinstance(component_info, str):
        return ComponentSpec(name=component_info)

    name = list(component_info.keys())[0]  # only one entry
    data = component_info[name] or dict()
    if not isinstance(data, dict):
        raise ManifestError(f"Malformed component entry for {name}")
    unknown = set(data) - COMPONENT_KEYS
    if unknown:
        raise ManifestError(f"{name}: unknown key(s) {', '.join(sorted(unknown))}")

    args, arg_names = _parse_args(name, data.get("args"), component_names)
    overrides = _parse_overrides(
        name, data.get("overrides"), len(args), arg_names, component_names
    )
    tx_overrides = data.get("tx") or dict()
    if not isinstance(tx_overrides, dict):
        raise ManifestError(f"{name}: 'tx' must be a mapping of transaction options")

    return ComponentSpec(
        name=name,
        initializer_args=args,
        proxy_kind=_parse_proxy_kind(name, data.get("proxy")),
        overrides=overrides,
        contract_type=data.get("contract_type"),
        initializer=data.get("initializer", DEFAULT_INITIALIZER),
        arg_names=arg_names,
        tx_overrides=tx_overrides,
    )


def _parse_networks(config: typing.Dict) -> Dict[str, NetworkConfig]:
    networks = dict()
    for name, data in (config.get("networks") or dict()).items():
        data = data or dict()
        chain_id = data.get("chain_id")
        networks[str(name)] = NetworkConfig(
            name=str(name),
            chain_id=int(chain_id) if chain_id is not None else None,
            provider=data.get("provider"),
            account=data.get("account"),
            constants=data.get("constants") or dict(),
        )
    return networks


def _parse_retry_policy(deployment: typing.Dict) -> RetryPolicy:
    retry = deployment.get("retry") or dict()
    unknown = set(retry) - set(RetryPolicy._fields)
    if unknown:
        raise ManifestError(f"Unknown retry setting(s): {', '.join(sorted(unknown))}")
    policy = RetryPolicy(**retry)
    if policy.attempts < 1:
        raise ManifestError("retry.attempts must be at least 1")
    return policy


def parse_manifest(config: typing.Dict, path: Optional[Path] = None) -> Manifest:
    """Builds a manifest from a loaded config mapping."""
    if not isinstance(config, dict):
        raise ManifestError("Manifest must be a mapping.")
    if not config.get("contracts"):
        raise ManifestError("Manifest missing 'contracts' field.")

    component_names = _get_component_names(config)
    components = tuple(_parse_component(info, component_names) for info in config["contracts"])

    base_dir = path.parent if path else Path.cwd()
    deployment = config.get("deployment") or dict()
    artifacts_dir = (config.get("artifacts") or dict()).get("dir")
    dependency = deployment.get("proxy_dependency") or dict()

    return Manifest(
        name=deployment.get("name") or (path.stem if path else "manifest"),
        components=components,
        networks=_parse_networks(config),
        constants=config.get("constants") or dict(),
        artifacts_dir=base_dir / artifacts_dir if artifacts_dir else None,
        ledger_dir=base_dir / deployment.get("ledger_dir", DEFAULT_LEDGER_DIR),
        retry_policy=_parse_retry_policy(deployment),
        proxy_dependency=(
            dependency.get("name", DEFAULT_PROXY_DEPENDENCY[0]),
            str(dependency.get("version", DEFAULT_PROXY_DEPENDENCY[1])),
        ),
        path=path,
    )


def load_manifest(filepath: Path) -> Manifest:
    """Loads a YAML manifest."""
    filepath = Path(filepath)
    return parse_manifest(_load_yaml(filepath), path=filepath)
