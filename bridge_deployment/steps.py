import typing
from collections import OrderedDict
from typing import Any, Callable, Dict, FrozenSet, List, NamedTuple, Optional

from eth_typing import ChecksumAddress

from bridge_deployment.constants import StepKind
from bridge_deployment.exceptions import CyclicDependency, UnresolvedDependency
from bridge_deployment.registry import ContractRegistry


class ResolvedArgs(NamedTuple):
    """Concrete arguments for one step, resolved against the registry."""

    args: typing.Sequence[Any] = ()
    target: Optional[ChecksumAddress] = None
    initializer_args: typing.Sequence[Any] = ()
    proxy_owner: Optional[ChecksumAddress] = None


def no_arguments(registry: ContractRegistry) -> ResolvedArgs:
    return ResolvedArgs()


class DeploymentStep(NamedTuple):
    """
    One node of a chain's deployment graph.

    For Deploy* kinds ``contract`` is the artifact to deploy and ``produces`` the
    registry name of the result. For Invoke, ``contract`` names the registered
    component that is called and ``method`` the function.
    """

    name: str
    kind: StepKind
    contract: str
    depends_on: FrozenSet[str] = frozenset()
    args_builder: Callable[[ContractRegistry], ResolvedArgs] = no_arguments
    produces: Optional[str] = None
    method: Optional[str] = None
    abi: Optional[list] = None

    @property
    def is_deployment(self) -> bool:
        return self.kind in (StepKind.DEPLOY_PLAIN, StepKind.DEPLOY_PROXY)

    def is_settled(self, registry: ContractRegistry) -> bool:
        """True when a previous run already applied this step."""
        if self.is_deployment:
            return self.produces in registry
        return registry.has_invocation(self.name)

    def __str__(self) -> str:
        return f"{self.name} [{self.kind.value}]"


def _providers(steps: typing.Sequence[DeploymentStep]) -> Dict[str, DeploymentStep]:
    providers = dict()
    for step in steps:
        if step.name in providers:
            raise ValueError(f"Step name '{step.name}' is used more than once.")
        providers[step.name] = step
    for step in steps:
        if not step.produces or step.produces == step.name:
            continue
        other = providers.get(step.produces)
        if other is not None and other is not step:
            raise ValueError(f"'{step.produces}' is produced by both {other} and {step}.")
        providers[step.produces] = step
    return providers


def dependency_edges(
    steps: typing.Sequence[DeploymentStep], registry: Optional[ContractRegistry] = None
) -> Dict[str, List[str]]:
    """
    Maps each step name to the names of the steps it waits for, in input order.

    A dependency that no step produces must already be registered; otherwise the
    graph can never be satisfied.
    """
    providers = _providers(steps)
    position = {step.name: index for index, step in enumerate(steps)}
    edges = OrderedDict()
    for step in steps:
        upstream = set()
        for dependency in step.depends_on:
            provider = providers.get(dependency)
            if provider is not None:
                upstream.add(provider.name)
            elif registry is None or dependency not in registry:
                raise UnresolvedDependency(dependency, step=step.name)
        edges[step.name] = sorted(upstream, key=position.__getitem__)
    return edges


def _find_cycle(pending: List[str], edges: Dict[str, List[str]]) -> List[str]:
    # every pending step has at least one pending dependency, so the walk must repeat
    pending_set = set(pending)
    path, seen = list(), dict()
    node = pending[0]
    while node not in seen:
        seen[node] = len(path)
        path.append(node)
        node = next(d for d in edges[node] if d in pending_set)
    return path[seen[node] :] + [node]


def topological_order(
    steps: typing.Sequence[DeploymentStep], registry: Optional[ContractRegistry] = None
) -> List[DeploymentStep]:
    """
    Orders steps so that every step follows its dependencies.

    Among steps that are ready at the same time, input order wins, so the same
    graph always yields the same order.
    """
    edges = dependency_edges(steps, registry)
    placed = set()
    order = list()
    pending = list(steps)
    while pending:
        for step in pending:
            if all(dependency in placed for dependency in edges[step.name]):
                break
        else:
            raise CyclicDependency(_find_cycle([s.name for s in pending], edges))
        pending.remove(step)
        order.append(step)
        placed.add(step.name)
    return order
