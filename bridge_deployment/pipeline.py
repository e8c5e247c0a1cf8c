import typing
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, NamedTuple, Optional

from bridge_deployment.chains import ChainEndpoint, RunContext
from bridge_deployment.exceptions import PipelineCancelled, UnresolvedDependency
from bridge_deployment.messaging import ChainPairWiring, MessagingConfigurator, validate_wiring
from bridge_deployment.orchestrator import DeploymentOrchestrator, RunReport, StepStatus
from bridge_deployment.params import Environment
from bridge_deployment.registry import ContractRegistry, RegistryStore
from bridge_deployment.runner import DeploymentStepRunner
from bridge_deployment.steps import DeploymentStep, topological_order
from bridge_deployment.verification import Verifier


class PipelineError(NamedTuple):
    scope: str  # chain name or wiring pair
    step: Optional[str]
    cause: Exception

    def __str__(self) -> str:
        step = f" step '{self.step}'" if self.step else ""
        return f"{self.scope}{step}: {type(self.cause).__name__}: {self.cause}"


class PipelineReport:
    """Outcome of deploying and wiring a whole environment."""

    def __init__(self, environment: str):
        self.environment = environment
        self.runs: Dict[str, RunReport] = OrderedDict()
        self.wiring: Dict[str, int] = OrderedDict()
        self.verified: List[str] = list()
        self.errors: List[PipelineError] = list()

    @property
    def succeeded(self) -> bool:
        return not self.errors

    @property
    def transactions(self) -> int:
        deployed = sum(run.transactions for run in self.runs.values())
        return deployed + sum(self.wiring.values())

    def summary(self) -> str:
        lines = [f"Environment: {self.environment}"]
        for chain_name, run in self.runs.items():
            lines.append(f"[{chain_name}]")
            for step_name, status in run.statuses.items():
                lines.append(f"\t{step_name}: {status.value}")
        for pair, submitted in self.wiring.items():
            lines.append(f"[{pair}] wiring: {submitted} transaction(s)")
        for error in self.errors:
            lines.append(f"(!) {error}")
        return "\n".join(lines)


def _failed_step(error: Exception) -> Optional[str]:
    step = getattr(error, "step", None)
    if step:
        return step
    report = getattr(error, "report", None)
    if isinstance(report, RunReport):
        failed = report.with_status(StepStatus.FAILED)
        if failed:
            return failed[0]
    return None


def load_registries(
    context: RunContext, store: Optional[RegistryStore]
) -> Dict[str, ContractRegistry]:
    """
    Registries of every chain in the environment. Without ``resume`` the run
    refuses to start on a chain that already has a published deployment.
    """
    published = set(store.chain_ids()) if store is not None else set()
    registries = OrderedDict()
    for chain in context.chains:
        if context.options.resume:
            registry = store.load(chain.chain_id) if store is not None else None
            registries[chain.name] = registry or ContractRegistry(chain_id=chain.chain_id)
            continue
        if chain.chain_id in published:
            raise ValueError(
                f"Deployment is already published for chain_id {chain.chain_id} "
                f"({chain.name}); use resume to continue it."
            )
        registries[chain.name] = ContractRegistry(chain_id=chain.chain_id)
    return registries


def validate_environment(
    context: RunContext, environment: Environment, registries: Dict[str, ContractRegistry]
) -> None:
    """Rejects graph and wiring errors before anything is submitted."""
    for chain in context.chains:
        topological_order(environment.steps_for(chain.name), registries[chain.name])
    for wiring in environment.wiring:
        validate_wiring(wiring, context.chains.get(wiring.remote))
        produced = {step.produces for step in environment.steps_for(wiring.local)}
        if wiring.oapp not in produced and wiring.oapp not in registries[wiring.local]:
            raise UnresolvedDependency(wiring.oapp, step=wiring.key)


def _deploy_chain(
    orchestrator: DeploymentOrchestrator,
    steps: List[DeploymentStep],
    chain: ChainEndpoint,
    registry: ContractRegistry,
) -> RunReport:
    print(f"[{chain.name}] Deploying {len(steps)} step(s) with {chain.deployer}")
    return orchestrator.run(steps, chain, registry)


def _wire_chain(
    context: RunContext,
    configurator: MessagingConfigurator,
    pairs: List[ChainPairWiring],
    registry: ContractRegistry,
    report: PipelineReport,
) -> None:
    # pairs sharing a local chain share its credential, so they run in sequence
    # and the first failure stops the rest
    failed = None
    for wiring in pairs:
        if context.cancelled or failed is not None:
            reason = "run cancelled" if failed is None else f"{failed} failed"
            report.errors.append(
                PipelineError(
                    wiring.key, None, PipelineCancelled(f"{wiring} not configured: {reason}.")
                )
            )
            continue
        local, remote = context.chains.get(wiring.local), context.chains.get(wiring.remote)
        try:
            report.wiring[wiring.key] = configurator.configure_pair(local, remote, wiring, registry)
        except Exception as e:
            print(f"[{local.name}] (!) Wiring {wiring} failed: {e}")
            report.errors.append(PipelineError(wiring.key, _failed_step(e), e))
            failed = wiring


def verify_chain(
    verifier: Verifier,
    chain: ChainEndpoint,
    registry: ContractRegistry,
    steps: typing.Sequence[DeploymentStep] = (),
) -> List[str]:
    """
    Submits every registered component of a chain for source verification.
    Verification is best-effort: failures are printed and never raised.
    """
    builders = {step.produces: step.args_builder for step in steps if step.is_deployment}
    verified = list()
    try:
        connection = verifier.connect(chain)
    except Exception as e:
        print(f"[{chain.name}] (!) Skipping verification: {e}")
        return verified

    with connection:
        for entry in registry.entries():
            try:
                builder = builders.get(entry.name)
                resolved = builder(registry) if builder else None
                verifier.verify(chain, entry, resolved)
            except Exception as e:
                print(f"[{chain.name}] (!) Verification of {entry.name} failed: {e}")
                continue
            verified.append(f"{chain.name}:{entry.name}")
    return verified


def run_environment(
    context: RunContext,
    environment: Environment,
    runner: DeploymentStepRunner,
    store: Optional[RegistryStore] = None,
    verifier: Optional[Verifier] = None,
) -> PipelineReport:
    """
    Deploys every chain of the environment, wires every chain pair and
    optionally verifies the results.

    Chains are independent: a failure on one chain never stops another. Wiring
    of a pair only starts once its local chain has been fully deployed.
    """
    report = PipelineReport(environment.name)
    registries = load_registries(context, store)
    validate_environment(context, environment, registries)

    orchestrator = DeploymentOrchestrator(context, runner, store)
    chains = list(context.chains)
    with ThreadPoolExecutor(max_workers=max(1, len(chains))) as executor:
        futures = OrderedDict(
            (
                chain.name,
                executor.submit(
                    _deploy_chain,
                    orchestrator,
                    environment.steps_for(chain.name),
                    chain,
                    registries[chain.name],
                ),
            )
            for chain in chains
        )
        for chain_name, future in futures.items():
            try:
                report.runs[chain_name] = future.result()
            except Exception as e:
                if isinstance(getattr(e, "report", None), RunReport):
                    report.runs[chain_name] = e.report
                report.errors.append(PipelineError(chain_name, _failed_step(e), e))

    deployed = {name for name, run in report.runs.items() if run.succeeded}
    pairs_by_chain: Dict[str, List[ChainPairWiring]] = OrderedDict()
    for wiring in environment.wiring:
        if wiring.local not in deployed:
            print(f"(!) Skipping wiring {wiring}: {wiring.local} was not fully deployed.")
            continue
        pairs_by_chain.setdefault(wiring.local, []).append(wiring)

    configurator = MessagingConfigurator(runner, store)
    with ThreadPoolExecutor(max_workers=max(1, len(pairs_by_chain))) as executor:
        futures = [
            executor.submit(
                _wire_chain, context, configurator, pairs, registries[chain_name], report
            )
            for chain_name, pairs in pairs_by_chain.items()
        ]
        for future in futures:
            future.result()

    if context.options.verify and verifier is not None:
        for chain in chains:
            if chain.name not in deployed:
                continue
            report.verified.extend(
                verify_chain(
                    verifier, chain, registries[chain.name], environment.steps_for(chain.name)
                )
            )

    print(report.summary())
    return report
