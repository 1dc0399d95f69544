import heapq
import logging
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Set, Tuple

from proxydeploy.exceptions import CycleDetected, UnknownReference
from proxydeploy.params import component_refs, effective_args

logger = logging.getLogger(__name__)


class DeploymentPlan(NamedTuple):
    """Components in deployment order, with the components each one references."""

    order: Tuple  # of ComponentSpec
    dependencies: Dict[str, Tuple[str, ...]]

    @property
    def names(self) -> List[str]:
        return [spec.name for spec in self.order]

    def dependents(self, name: str) -> List[str]:
        return [other for other, deps in self.dependencies.items() if name in deps]


def _references(spec, network: Optional[str]) -> List[str]:
    if network is not None:
        values: Iterable = effective_args(spec, network)
    else:
        # network agnostic: every override of every network counts
        values = list(spec.initializer_args)
        for network_overrides in spec.overrides.values():
            values.extend(network_overrides.values())

    refs = list()
    for name in component_refs(list(values)):
        if name not in refs:
            refs.append(name)
    return refs


def _cycle_members(
    names: Sequence[str], dependencies: Dict[str, Tuple[str, ...]]
) -> List[str]:
    """
    Tarjan's strongly connected components over the unsorted remainder. Only components
    of a non-trivial component (or a self reference) are part of a cycle.
    """
    index_of: Dict[str, int] = dict()
    lowlink: Dict[str, int] = dict()
    stack: List[str] = list()
    on_stack: Set[str] = set()
    members: Set[str] = set()
    counter = [0]

    def strongconnect(node: str) -> None:
        index_of[node] = lowlink[node] = counter[0]
        counter[0] += 1
        stack.append(node)
        on_stack.add(node)
        for dep in dependencies[node]:
            if dep not in dependencies:
                continue
            if dep not in index_of:
                strongconnect(dep)
                lowlink[node] = min(lowlink[node], lowlink[dep])
            elif dep in on_stack:
                lowlink[node] = min(lowlink[node], index_of[dep])

        if lowlink[node] == index_of[node]:
            component = list()
            while True:
                member = stack.pop()
                on_stack.discard(member)
                component.append(member)
                if member == node:
                    break
            if len(component) > 1 or node in dependencies[node]:
                members.update(component)

    for name in names:
        if name not in index_of:
            strongconnect(name)

    return [name for name in names if name in members]


def build(manifest: Sequence, network: Optional[str] = None) -> DeploymentPlan:
    """
    Orders components so that every component comes after all components it references.
    Ties are broken by manifest declaration order.
    """
    specs = list(getattr(manifest, "components", manifest))
    position = {spec.name: i for i, spec in enumerate(specs)}

    dependencies: Dict[str, Tuple[str, ...]] = dict()
    for spec in specs:
        refs = _references(spec, network)
        for ref in refs:
            if ref not in position:
                raise UnknownReference(source=spec.name, target=ref)
        dependencies[spec.name] = tuple(refs)

    remaining = {name: len(set(deps)) for name, deps in dependencies.items()}
    dependents: Dict[str, List[str]] = {name: [] for name in dependencies}
    for name, deps in dependencies.items():
        for dep in set(deps):
            dependents[dep].append(name)

    ready = [position[name] for name, count in remaining.items() if count == 0]
    heapq.heapify(ready)
    order = list()
    while ready:
        spec = specs[heapq.heappop(ready)]
        order.append(spec)
        for dependent in dependents[spec.name]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, position[dependent])

    if len(order) != len(specs):
        unsorted = [spec.name for spec in specs if remaining[spec.name] > 0]
        members = _cycle_members(unsorted, {name: dependencies[name] for name in unsorted})
        raise CycleDetected(members)

    logger.debug("Deployment order: %s", ", ".join(spec.name for spec in order))
    return DeploymentPlan(order=tuple(order), dependencies=dependencies)
