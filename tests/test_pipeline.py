import pytest
from eth_utils import to_checksum_address

from bridge_deployment.chains import ChainEndpointRegistry, RunContext
from bridge_deployment.exceptions import (
    CyclicDependency,
    ExecutionReverted,
    InvalidSecurityConfig,
    PipelineCancelled,
    SubmissionFailed,
    UnresolvedDependency,
)
from bridge_deployment.orchestrator import StepStatus
from bridge_deployment.params import Environment
from bridge_deployment.pipeline import run_environment, verify_chain
from bridge_deployment.registry import ContractRegistry, RegistryEntry, RegistryStore
from bridge_deployment.verification import Verifier
from tests.conftest import (
    EXECUTOR,
    RECEIVE_LIBRARY,
    SEND_LIBRARY,
    VERIFIER_1,
    VERIFIER_2,
    RecordingRunner,
    fake_address,
    make_chain,
)


def wiring(local, remote, oapp):
    return {
        "local": local,
        "remote": remote,
        "oapp": oapp,
        "send_library": SEND_LIBRARY,
        "receive_library": RECEIVE_LIBRARY,
        "outbound": {"confirmations": 15, "required_verifiers": [VERIFIER_1, VERIFIER_2]},
        "executor": {"max_message_size": 10000, "executor": EXECUTOR},
        "inbound": {"confirmations": 20, "required_verifiers": [VERIFIER_1]},
    }


def environment_config():
    return {
        "deployment": {"name": "unit"},
        "artifacts": {"filename": "unit.json"},
        "contracts": {
            "ethereum": [
                {"MainnetOApp": {"constructor": ["$endpoint", "$deployer"]}},
                {"Portal": {"proxy": {"initializer": "initialize", "arguments": ["$MainnetOApp"]}}},
            ],
            "fuse": [{"FuseOApp": {"constructor": ["$endpoint", "$deployer"]}}],
        },
        "invocations": {
            "ethereum": [
                {
                    "setOAppPortal": {
                        "contract": "MainnetOApp",
                        "method": "setPortalAddress",
                        "arguments": ["$Portal"],
                    }
                }
            ]
        },
        "wiring": [
            wiring("ethereum", "fuse", "MainnetOApp"),
            wiring("fuse", "ethereum", "FuseOApp"),
        ],
    }


@pytest.fixture
def environment(chains):
    return Environment(environment_config(), chains=chains)


@pytest.fixture
def store(tmp_path):
    return RegistryStore(tmp_path / "unit.json")


class RecordingVerifier(Verifier):
    def __init__(self, failures=()):
        self.failures = set(failures)
        self.verified = list()

    def verify(self, chain, entry, resolved=None):
        if entry.name in self.failures:
            raise ValueError(f"explorer rejected {entry.name}")
        self.verified.append((chain.name, entry.name, resolved))


def test_deploy_and_wire_environment(context, environment, runner, store, ethereum, fuse):
    report = run_environment(context, environment, runner, store)

    assert report.succeeded, report.summary()
    assert runner.names("ethereum")[:3] == ["MainnetOApp", "Portal", "setOAppPortal"]
    assert runner.names("fuse")[0] == "FuseOApp"
    assert report.wiring == {"ethereum->fuse": 4, "fuse->ethereum": 4}
    # proxies take two transactions
    assert report.transactions == 4 + 1 + 8

    registries = {chain_id: store.load(chain_id) for chain_id in store.chain_ids()}
    assert set(registries) == {ethereum.chain_id, fuse.chain_id}
    assert registries[ethereum.chain_id].address("Portal") == fake_address("ethereum:Portal")
    assert registries[ethereum.chain_id].has_invocation("setOAppPortal")
    receive_library = to_checksum_address(RECEIVE_LIBRARY)
    assert registries[fuse.chain_id].has_invocation(f"fuse->ethereum:config:{receive_library}")


def test_failed_chain_does_not_stop_the_other(context, environment, store):
    error = SubmissionFailed("FuseOApp", ConnectionError("connection refused"))
    runner = RecordingRunner(chain_failures={"fuse": error})

    report = run_environment(context, environment, runner, store)

    assert not report.succeeded
    assert report.runs["ethereum"].succeeded
    assert report.runs["fuse"].statuses["FuseOApp"] is StepStatus.FAILED
    (failure,) = report.errors
    assert failure.scope == "fuse"
    assert failure.step == "FuseOApp"
    assert failure.cause is error

    # only pairs whose local chain is fully deployed are wired
    assert list(report.wiring) == ["ethereum->fuse"]
    assert "fuse" in report.summary()


def test_failed_pair_stops_wiring_of_its_chain(options, ethereum, fuse):
    polygon = make_chain("polygon", 137, eid=30109)
    chains = ChainEndpointRegistry([ethereum, fuse, polygon])
    config = environment_config()
    config["wiring"].insert(1, wiring("ethereum", "polygon", "MainnetOApp"))
    environment = Environment(config, chains=chains)
    error = SubmissionFailed("ethereum->fuse:send-library", ConnectionError("connection refused"))
    runner = RecordingRunner(failures={"ethereum->fuse:send-library": error})

    report = run_environment(RunContext(chains, options), environment, runner)

    assert not report.succeeded
    assert not [name for name in runner.names("ethereum") if name.startswith("ethereum->polygon")]
    assert list(report.wiring) == ["fuse->ethereum"]
    failed, skipped = report.errors
    assert failed.scope == "ethereum->fuse"
    assert failed.cause is error
    assert skipped.scope == "ethereum->polygon"
    assert isinstance(skipped.cause, PipelineCancelled)
    assert "ethereum->fuse failed" in str(skipped.cause)


def test_refuses_published_chain_without_resume(context, environment, runner, store, ethereum):
    registry = ContractRegistry(chain_id=ethereum.chain_id)
    store.save(registry)

    with pytest.raises(ValueError, match="already published"):
        run_environment(context, environment, runner, store)
    assert runner.executed == []


def test_resume_after_failure(chains, options, environment, store):
    error = ExecutionReverted("Portal", "Initializable: contract is already initialized")
    first = RecordingRunner(failures={"Portal": error})
    report = run_environment(RunContext(chains, options), environment, first, store)

    assert not report.succeeded
    assert report.runs["ethereum"].statuses == {
        "MainnetOApp": StepStatus.DEPLOYED,
        "Portal": StepStatus.FAILED,
        "setOAppPortal": StepStatus.PENDING,
    }
    assert list(report.wiring) == ["fuse->ethereum"]

    second = RecordingRunner()
    context = RunContext(chains, options._replace(resume=True))
    report = run_environment(context, environment, second, store)

    assert report.succeeded, report.summary()
    assert second.names("ethereum")[:2] == ["Portal", "setOAppPortal"]
    assert "MainnetOApp" not in second.names()
    assert "FuseOApp" not in second.names()
    assert report.wiring == {"ethereum->fuse": 4, "fuse->ethereum": 0}
    assert report.runs["ethereum"].statuses["MainnetOApp"] is StepStatus.SKIPPED


def test_validation_happens_before_any_transaction(context, chains, runner):
    config = environment_config()
    config["wiring"][1]["executor"]["executor"] = "0x0000000000000000000000000000000000000000"
    environment = Environment(config, chains=chains)

    with pytest.raises(InvalidSecurityConfig, match="zero address"):
        run_environment(context, environment, runner)
    assert runner.executed == []


def test_unknown_oapp_is_rejected_before_any_transaction(context, chains, runner):
    config = environment_config()
    config["wiring"][0]["oapp"] = "MainnetOAp"
    environment = Environment(config, chains=chains)

    with pytest.raises(UnresolvedDependency, match="MainnetOAp"):
        run_environment(context, environment, runner)
    assert runner.executed == []


def test_cycle_is_rejected_before_any_transaction(context, chains, runner):
    config = environment_config()
    config["contracts"]["fuse"] = [
        {"FuseOApp": {"constructor": ["$vETH"]}},
        {"vETH": {"constructor": ["$FuseOApp"]}},
    ]
    environment = Environment(config, chains=chains)

    with pytest.raises(CyclicDependency):
        run_environment(context, environment, runner)
    assert runner.executed == []


def test_cancelled_run(context, environment, runner):
    context.cancel()
    report = run_environment(context, environment, runner)

    assert runner.executed == []
    assert report.wiring == {}
    assert {error.scope for error in report.errors} == {"ethereum", "fuse"}
    assert all(isinstance(error.cause, PipelineCancelled) for error in report.errors)


def test_verification_is_best_effort(chains, options, environment, runner, ethereum):
    verifier = RecordingVerifier(failures={"Portal"})
    context = RunContext(chains, options._replace(verify=True))

    report = run_environment(context, environment, runner, verifier=verifier)

    assert report.succeeded
    assert report.verified == ["ethereum:MainnetOApp", "fuse:FuseOApp"]
    chain_name, name, resolved = verifier.verified[0]
    assert resolved.args == [ethereum.endpoint, ethereum.deployer]


def test_verification_skipped_when_disabled(context, environment, runner):
    verifier = RecordingVerifier()
    report = run_environment(context, environment, runner, verifier=verifier)
    assert report.verified == []
    assert verifier.verified == []


def test_verify_chain_without_connection(ethereum, registry):
    class Unreachable(RecordingVerifier):
        def connect(self, chain):
            raise ValueError("no explorer")

    registry.record(
        RegistryEntry(
            name="MainnetOApp",
            address=fake_address("MainnetOApp"),
            tx_hash="0x00",
            block_number=1,
            deployer=ethereum.deployer,
        )
    )
    verifier = Unreachable()
    assert verify_chain(verifier, ethereum, registry) == []
    assert verifier.verified == []
