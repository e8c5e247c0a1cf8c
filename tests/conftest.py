import threading
from collections import OrderedDict

import pytest
from eth_account import Account
from eth_utils import keccak, to_checksum_address
from hexbytes import HexBytes

from bridge_deployment.artifacts import Artifact, ArtifactSource
from bridge_deployment.chains import ChainEndpoint, ChainEndpointRegistry, RunContext, RunOptions
from bridge_deployment.constants import StepKind
from bridge_deployment.registry import ContractRegistry
from bridge_deployment.runner import StepResult
from bridge_deployment.steps import DeploymentStep, ResolvedArgs

# Common constants
ENDPOINT_ADDRESS = to_checksum_address("0x1a44076050125825900e736c501f859c50fe728c")
SEND_LIBRARY = "0x00000000000000000000000000000000000000a1"
RECEIVE_LIBRARY = "0x00000000000000000000000000000000000000a2"
EXECUTOR = "0x00000000000000000000000000000000000000e1"
VERIFIER_1 = "0x0000000000000000000000000000000000000d01"
VERIFIER_2 = "0x0000000000000000000000000000000000000d02"


# Utility functions
def make_chain(name: str, chain_id: int, eid: int = None, **kwargs) -> ChainEndpoint:
    return ChainEndpoint(
        name=name,
        chain_id=chain_id,
        eid=eid if eid is not None else chain_id,
        rpc_url=f"http://{name}.invalid",
        account=Account.create(),
        endpoint=ENDPOINT_ADDRESS,
        **kwargs,
    )


def fake_address(seed: str) -> str:
    return to_checksum_address(keccak(text=seed)[-20:])


def fake_receipt(seed: str, block_number: int = 1, address: str = None, status: int = 1) -> dict:
    return {
        "transactionHash": HexBytes(keccak(text=f"tx:{seed}")),
        "blockNumber": block_number,
        "status": status,
        "contractAddress": address,
    }


def deploy(name, *depends_on, kind=StepKind.DEPLOY_PLAIN, args_builder=None) -> DeploymentStep:
    step = DeploymentStep(
        name=name,
        kind=kind,
        contract=name,
        depends_on=frozenset(depends_on),
        produces=name,
    )
    if args_builder is not None:
        step = step._replace(args_builder=args_builder)
    return step


def invoke(name, contract, method, *depends_on, args_builder=None) -> DeploymentStep:
    def target(registry):
        return ResolvedArgs(target=registry.address(contract))

    return DeploymentStep(
        name=name,
        kind=StepKind.INVOKE,
        contract=contract,
        depends_on=frozenset((contract,) + depends_on),
        args_builder=args_builder or target,
        method=method,
    )


class FakeArtifacts(ArtifactSource):
    def _load(self, contract_name: str) -> Artifact:
        abi = [{"type": "function", "name": "ping", "inputs": [], "outputs": []}]
        return Artifact(name=contract_name, abi=abi, bytecode="0x00")


class RecordingRunner:
    """Stands in for DeploymentStepRunner, recording every step it is asked to execute."""

    def __init__(self, failures: dict = None, chain_failures: dict = None):
        self.artifacts = FakeArtifacts()
        self.executed = list()
        self.failures = failures or dict()
        self.chain_failures = chain_failures or dict()
        self.calls = OrderedDict()
        self._lock = threading.Lock()
        self._blocks = 0

    def names(self, chain_name: str = None):
        return [step.name for chain, step, _ in self.executed if chain_name in (None, chain.name)]

    def execute(self, step, resolved, chain) -> StepResult:
        with self._lock:
            self.executed.append((chain, step, resolved))
            self._blocks += 1
            block_number = self._blocks
        error = self.failures.get(step.name) or self.chain_failures.get(chain.name)
        if error is not None:
            raise error
        seed = f"{chain.name}:{step.name}"
        if step.kind is StepKind.INVOKE:
            return StepResult(address=None, receipt=fake_receipt(seed, block_number))
        address = fake_address(seed)
        receipt = fake_receipt(seed, block_number, address=address)
        if step.kind is StepKind.DEPLOY_PROXY:
            implementation = fake_address(f"{seed}:implementation")
            return StepResult(address, receipt, implementation=implementation, transactions=2)
        return StepResult(address, receipt)

    def call(self, chain, address, abi, method, *args):
        return self.calls[(chain.name, method) + tuple(args)]


# Fixtures
@pytest.fixture
def ethereum():
    return make_chain("ethereum", 1, eid=30101)


@pytest.fixture
def fuse():
    return make_chain("fuse", 122, eid=30138)


@pytest.fixture
def chains(ethereum, fuse):
    return ChainEndpointRegistry([ethereum, fuse])


@pytest.fixture
def options():
    return RunOptions(retry_backoff=0, poll_latency=0.01, confirmation_timeout=5)


@pytest.fixture
def context(chains, options):
    return RunContext(chains=chains, options=options)


@pytest.fixture
def runner():
    return RecordingRunner()


@pytest.fixture
def registry(ethereum):
    return ContractRegistry(chain_id=ethereum.chain_id)
