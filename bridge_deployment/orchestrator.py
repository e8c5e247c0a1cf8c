import typing
from collections import OrderedDict
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from enum import Enum
from typing import Dict, List, Optional

from bridge_deployment.chains import ChainEndpoint, RunContext
from bridge_deployment.exceptions import PipelineCancelled
from bridge_deployment.registry import (
    ContractRegistry,
    InvocationRecord,
    RegistryEntry,
    RegistryStore,
    tx_hash_of,
)
from bridge_deployment.runner import DeploymentStepRunner, StepResult
from bridge_deployment.steps import DeploymentStep, dependency_edges, topological_order


class StepStatus(Enum):
    DEPLOYED = "deployed"
    SKIPPED = "skipped"
    FAILED = "failed"
    PENDING = "pending"  # never attempted


class RunReport:
    """Outcome of one orchestrator run on one chain."""

    def __init__(
        self,
        chain: str,
        statuses: Dict[str, StepStatus],
        registry: ContractRegistry,
        transactions: int = 0,
        error: Optional[Exception] = None,
    ):
        self.chain = chain
        self.statuses = statuses
        self.registry = registry
        self.transactions = transactions
        self.error = error

    def __repr__(self) -> str:
        return (
            f"RunReport(chain={self.chain}, deployed={len(self.with_status(StepStatus.DEPLOYED))}, "
            f"skipped={len(self.with_status(StepStatus.SKIPPED))}, error={self.error!r})"
        )

    @property
    def succeeded(self) -> bool:
        settled = (StepStatus.DEPLOYED, StepStatus.SKIPPED)
        return self.error is None and all(s in settled for s in self.statuses.values())

    def with_status(self, status: StepStatus) -> List[str]:
        return [name for name, value in self.statuses.items() if value is status]


class DeploymentOrchestrator:
    """
    Drives one chain's step graph to completion.

    The graph is validated and ordered before anything is submitted. Steps whose
    output is already registered are skipped, so re-running a partially applied
    graph resumes where it stopped. The registry is only ever written from the
    thread calling ``run``; the runner threads only submit and confirm.
    """

    def __init__(
        self,
        context: RunContext,
        runner: DeploymentStepRunner,
        store: Optional[RegistryStore] = None,
    ):
        self.context = context
        self.runner = runner
        self.store = store

    def _entry_abi(self, step: DeploymentStep) -> list:
        if step.abi:
            return step.abi
        return self.runner.artifacts.load(step.contract).abi

    def _record(
        self,
        step: DeploymentStep,
        result: StepResult,
        chain: ChainEndpoint,
        registry: ContractRegistry,
    ) -> None:
        if step.is_deployment:
            entry = RegistryEntry(
                name=step.produces,
                address=result.address,
                tx_hash=tx_hash_of(result.receipt),
                block_number=int(result.receipt["blockNumber"]),
                deployer=chain.deployer,
                implementation=result.implementation,
                abi=self._entry_abi(step),
            )
            registry.record(entry)
            print(f"[{chain.name}] (i) Registered {step.produces} at {entry.address}")
        else:
            registry.record_invocation(step.name, InvocationRecord.from_receipt(result.receipt))

        if self.store is not None:
            self.store.save(registry)

    def run(
        self,
        steps: typing.Sequence[DeploymentStep],
        chain: ChainEndpoint,
        registry: ContractRegistry,
    ) -> RunReport:
        """
        Executes every step not yet reflected in the registry, in dependency order.

        On the first failure no further step is started; steps already in
        flight settle and are recorded, then the failure is re-raised with the
        partial report attached as ``error.report``.
        """
        order = topological_order(steps, registry)
        edges = dependency_edges(steps, registry)
        report = RunReport(
            chain=chain.name,
            statuses=OrderedDict((step.name, StepStatus.PENDING) for step in order),
            registry=registry,
        )

        settled = set()
        pending = list()
        for step in order:
            if step.is_settled(registry):
                print(f"[{chain.name}] (i) {step} already applied; skipping.")
                report.statuses[step.name] = StepStatus.SKIPPED
                settled.add(step.name)
            else:
                pending.append(step)

        print(
            f"[{chain.name}] {len(pending)} step(s) to apply, "
            f"{len(order) - len(pending)} already applied."
        )

        max_in_flight = max(1, self.context.options.max_in_flight)
        in_flight: Dict[Future, DeploymentStep] = dict()
        with ThreadPoolExecutor(max_workers=max_in_flight) as executor:
            while pending or in_flight:
                while report.error is None and not self.context.cancelled:
                    if len(in_flight) >= max_in_flight:
                        break
                    ready = next(
                        (s for s in pending if all(d in settled for d in edges[s.name])), None
                    )
                    if ready is None:
                        break
                    pending.remove(ready)
                    try:
                        resolved = ready.args_builder(registry)
                    except Exception as e:
                        report.statuses[ready.name] = StepStatus.FAILED
                        report.error = e
                        break
                    print(f"[{chain.name}] Applying {ready}")
                    future = executor.submit(self.runner.execute, ready, resolved, chain)
                    in_flight[future] = ready

                if not in_flight:
                    break

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    step = in_flight.pop(future)
                    try:
                        result = future.result()
                    except Exception as e:
                        print(f"[{chain.name}] (!) {step} failed: {e}")
                        report.statuses[step.name] = StepStatus.FAILED
                        if report.error is None:
                            report.error = e
                        continue
                    report.transactions += result.transactions
                    try:
                        self._record(step, result, chain, registry)
                    except Exception as e:
                        print(f"[{chain.name}] (!) {step} applied but not recorded: {e}")
                        report.statuses[step.name] = StepStatus.FAILED
                        if report.error is None:
                            report.error = e
                        continue
                    report.statuses[step.name] = StepStatus.DEPLOYED
                    settled.add(step.name)

        if report.error is None and pending and self.context.cancelled:
            report.error = PipelineCancelled(
                f"Run on {chain.name} cancelled with {len(pending)} step(s) not started."
            )

        if report.error is not None:
            report.error.report = report
            raise report.error

        print(f"[{chain.name}] (i) Applied {len(report.with_status(StepStatus.DEPLOYED))} step(s).")
        return report
