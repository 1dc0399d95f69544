import logging
from abc import ABC, abstractmethod
from typing import Any, Collection, Iterator, Mapping, Optional, Tuple

from proxydeploy.constants import DEPLOYER_VARIABLE, VARIABLE_PREFIX, ZERO_ADDRESS
from proxydeploy.exceptions import DependencyNotReady, MissingConfig
from proxydeploy.ledger import DeploymentStatus

logger = logging.getLogger(__name__)

ResolvedArgs = Tuple[Any, ...]


class ResolutionContext:
    """Everything an argument needs to turn itself into a concrete value on one network."""

    def __init__(
        self,
        network: str,
        ledger,
        config: Mapping[str, Any],
        deployer: Optional[str] = None,
        eager: bool = False,
    ):
        self.network = network
        self.ledger = ledger
        self.config = config
        self.deployer = deployer
        self.eager = eager


# Argument values


class ArgValue(ABC):
    @abstractmethod
    def resolve(self, context: ResolutionContext) -> Any:
        raise NotImplementedError

    def _key(self) -> tuple:
        return (type(self).__name__,)

    def __eq__(self, other) -> bool:
        return isinstance(other, ArgValue) and self._key() == other._key()

    def __hash__(self) -> int:
        return hash(repr(self._key()))

    def __repr__(self) -> str:
        fields = ", ".join(repr(f) for f in self._key()[1:])
        return f"{type(self).__name__}({fields})"


class Literal(ArgValue):
    def __init__(self, value: Any):
        self.value = value

    def _key(self) -> tuple:
        return "Literal", repr(self.value)

    def resolve(self, context: ResolutionContext) -> Any:
        return self.value


class ComponentRef(ArgValue):
    """The deployed address of another component of the manifest."""

    def __init__(self, name: str):
        self.name = name

    def _key(self) -> tuple:
        return "ComponentRef", self.name

    def resolve(self, context: ResolutionContext) -> Any:
        record = context.ledger.get(self.name, context.network)
        if record is None or record.status is not DeploymentStatus.CONFIRMED:
            if context.eager:
                # dry-run - dependency will be deployed earlier in the same run
                return ZERO_ADDRESS
            raise DependencyNotReady(self.name, context.network)
        return record.address


class EnvConstant(ArgValue):
    def __init__(self, key: str):
        self.key = key

    def _key(self) -> tuple:
        return "EnvConstant", self.key

    @classmethod
    def is_constant(cls, value: str) -> bool:
        """Returns True if the variable names a constant."""
        return value.isupper()

    def resolve(self, context: ResolutionContext) -> Any:
        try:
            return context.config[self.key]
        except KeyError:
            raise MissingConfig(self.key)


class DeployerAddress(ArgValue):
    def resolve(self, context: ResolutionContext) -> Any:
        if context.deployer is None:
            return ZERO_ADDRESS
        return context.deployer


def is_variable(value: Any) -> bool:
    """Returns True if the raw manifest value is a variable."""
    return isinstance(value, str) and value.startswith(VARIABLE_PREFIX)


def _variable_from_value(value: str, component_names: Collection[str]) -> ArgValue:
    variable = value[len(VARIABLE_PREFIX) :]
    if variable == DEPLOYER_VARIABLE:
        return DeployerAddress()
    elif variable in component_names:
        return ComponentRef(variable)
    elif EnvConstant.is_constant(variable):
        return EnvConstant(variable)
    else:
        return ComponentRef(variable)


def process_raw_value(value: Any, component_names: Collection[str] = ()) -> Any:
    """
    Turns a raw manifest value into ArgValues, preserving list and mapping structure.
    Names of manifest components win over the all-uppercase constant convention.
    """
    if isinstance(value, ArgValue):
        return value
    if isinstance(value, (list, tuple)):
        return [process_raw_value(v, component_names) for v in value]
    if isinstance(value, dict):
        return {k: process_raw_value(v, component_names) for k, v in value.items()}
    if is_variable(value):
        return _variable_from_value(value, component_names)
    return Literal(value)


def component_refs(value: Any) -> Iterator[str]:
    """Yields the names of every component referenced by a (possibly nested) value."""
    if isinstance(value, ComponentRef):
        yield value.name
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from component_refs(v)
    elif isinstance(value, dict):
        for v in value.values():
            yield from component_refs(v)


def _resolve_param(value: Any, context: ResolutionContext) -> Any:
    """Resolves a single parameter value or a structure of parameter values."""
    if isinstance(value, list):
        return [_resolve_param(v, context) for v in value]
    if isinstance(value, dict):
        return {k: _resolve_param(v, context) for k, v in value.items()}
    if isinstance(value, ArgValue):
        return value.resolve(context)
    return value  # literally a value


def effective_args(spec, network: Optional[str]) -> tuple:
    """Base initializer args with the network's positional overrides applied."""
    args = list(spec.initializer_args)
    for position, value in spec.overrides.get(network, {}).items():
        args[position] = value
    return tuple(args)


def resolve(
    spec,
    network: str,
    ledger,
    config: Mapping[str, Any],
    deployer: Optional[str] = None,
    eager: bool = False,
) -> ResolvedArgs:
    """Resolves the initializer arguments of a single component on a network."""
    context = ResolutionContext(
        network=network, ledger=ledger, config=config, deployer=deployer, eager=eager
    )
    resolved = tuple(_resolve_param(value, context) for value in effective_args(spec, network))
    logger.debug("Resolved %s on %s: %s", spec.name, network, resolved)
    return resolved
