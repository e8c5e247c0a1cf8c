from types import SimpleNamespace

import pytest
import requests
from hexbytes import HexBytes
from web3 import EthereumTesterProvider, Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3RPCError

from bridge_deployment.artifacts import Artifact
from bridge_deployment.chains import ChainEndpointRegistry, RunContext
from bridge_deployment.constants import PROXY_CONTRACT_NAME, StepKind
from bridge_deployment.exceptions import ConfirmationTimeout, ExecutionReverted, SubmissionFailed
from bridge_deployment.runner import DeploymentStepRunner
from bridge_deployment.steps import ResolvedArgs
from tests.conftest import FakeArtifacts, deploy, fake_address, invoke, make_chain

GAS_LIMIT = 1_000_000

PROXY_ABI = [
    {
        "type": "constructor",
        "stateMutability": "payable",
        "inputs": [
            {"name": "_logic", "type": "address"},
            {"name": "initialOwner", "type": "address"},
            {"name": "_data", "type": "bytes"},
        ],
    }
]


class TesterArtifacts(FakeArtifacts):
    def _load(self, contract_name: str) -> Artifact:
        if contract_name == PROXY_CONTRACT_NAME:
            return Artifact(name=contract_name, abi=PROXY_ABI, bytecode="0x00")
        return super()._load(contract_name)


@pytest.fixture
def w3():
    return Web3(EthereumTesterProvider())


@pytest.fixture
def tester_chain(w3):
    chain = make_chain("tester", w3.eth.chain_id)
    w3.eth.send_transaction({"from": w3.eth.accounts[0], "to": chain.deployer, "value": 10**18})
    return chain


@pytest.fixture
def step_runner(w3, tester_chain, options):
    context = RunContext(ChainEndpointRegistry([tester_chain]), options)
    return DeploymentStepRunner(
        context, TesterArtifacts(), gas_limit=GAS_LIMIT, web3_factory=lambda chain: w3
    )


def test_deploy(w3, tester_chain, step_runner):
    result = step_runner.execute(deploy("Portal"), ResolvedArgs(), tester_chain)

    assert result.address == result.receipt["contractAddress"]
    assert result.implementation is None
    assert result.transactions == 1
    assert result.receipt["status"] == 1
    assert w3.eth.get_transaction_count(tester_chain.deployer) == 1


def test_deploy_proxy(w3, tester_chain, step_runner):
    step = deploy("Portal", kind=StepKind.DEPLOY_PROXY)._replace(method="ping")
    result = step_runner.execute(step, ResolvedArgs(), tester_chain)

    assert result.transactions == 2
    assert result.implementation is not None
    assert result.address != result.implementation
    assert w3.eth.get_transaction_count(tester_chain.deployer) == 2


def test_invoke(w3, tester_chain, step_runner):
    step = invoke("pingPortal", "Portal", "ping")
    target = fake_address("Portal")
    result = step_runner.execute(step, ResolvedArgs(target=target), tester_chain)

    assert result.address is None
    transaction = w3.eth.get_transaction(result.receipt["transactionHash"])
    assert transaction["to"] == target
    assert transaction["from"] == tester_chain.deployer


def test_sequential_nonces(w3, tester_chain, step_runner):
    for name in ("A", "B", "C"):
        result = step_runner.execute(deploy(name), ResolvedArgs(), tester_chain)
        transaction = w3.eth.get_transaction(result.receipt["transactionHash"])
        assert transaction["nonce"] == "ABC".index(name)


def test_transient_failure_rebroadcasts_same_transaction(
    w3, tester_chain, step_runner, monkeypatch
):
    send_raw_transaction = w3.eth.send_raw_transaction
    payloads = list()

    def flaky(raw_transaction):
        payloads.append(bytes(raw_transaction))
        if len(payloads) == 1:
            raise requests.exceptions.ConnectionError("connection reset")
        return send_raw_transaction(raw_transaction)

    monkeypatch.setattr(w3.eth, "send_raw_transaction", flaky)
    result = step_runner.execute(deploy("Portal"), ResolvedArgs(), tester_chain)

    assert result.receipt["status"] == 1
    assert len(payloads) == 2
    assert payloads[0] == payloads[1]
    assert w3.eth.get_transaction_count(tester_chain.deployer) == 1


def test_retries_exhausted(w3, tester_chain, step_runner, monkeypatch):
    attempts = list()

    def unreachable(raw_transaction):
        attempts.append(raw_transaction)
        raise requests.exceptions.ConnectionError("connection refused")

    monkeypatch.setattr(w3.eth, "send_raw_transaction", unreachable)
    with pytest.raises(SubmissionFailed) as error:
        step_runner.execute(deploy("Portal"), ResolvedArgs(), tester_chain)

    assert not isinstance(error.value, ConfirmationTimeout)
    assert error.value.step == "Portal"
    assert isinstance(error.value.cause, requests.exceptions.ConnectionError)
    assert len(attempts) == step_runner.context.options.max_retry_attempts
    assert len(set(attempts)) == 1


def http_error(status_code: int) -> requests.exceptions.HTTPError:
    response = requests.Response()
    response.status_code = status_code
    return requests.exceptions.HTTPError(f"{status_code} Client Error", response=response)


def test_rate_limited_broadcast_is_retried(w3, tester_chain, step_runner, monkeypatch):
    send_raw_transaction = w3.eth.send_raw_transaction
    payloads = list()

    def rate_limited(raw_transaction):
        payloads.append(bytes(raw_transaction))
        if len(payloads) == 1:
            raise http_error(429)
        return send_raw_transaction(raw_transaction)

    monkeypatch.setattr(w3.eth, "send_raw_transaction", rate_limited)
    result = step_runner.execute(deploy("Portal"), ResolvedArgs(), tester_chain)

    assert result.receipt["status"] == 1
    assert len(payloads) == 2
    assert payloads[0] == payloads[1]


def test_unexpected_errors_are_not_retried(step_runner):
    for error in (http_error(400), ValueError("malformed reply")):
        attempts = list()

        def failing():
            attempts.append(1)
            raise error

        with pytest.raises(SubmissionFailed) as raised:
            step_runner._with_retries("setOwner", failing)
        assert raised.value.cause is error
        assert len(attempts) == 1

    attempts = list()

    def overloaded():
        attempts.append(1)
        raise http_error(503)

    with pytest.raises(SubmissionFailed):
        step_runner._with_retries("setOwner", overloaded)
    assert len(attempts) == step_runner.context.options.max_retry_attempts


def test_refused_broadcast_leaves_nonce_free(w3, tester_chain, step_runner, monkeypatch):
    send_raw_transaction = w3.eth.send_raw_transaction

    def refused(raw_transaction):
        raise Web3RPCError("insufficient funds for gas * price + value")

    monkeypatch.setattr(w3.eth, "send_raw_transaction", refused)
    with pytest.raises(SubmissionFailed, match="insufficient funds"):
        step_runner.execute(deploy("Portal"), ResolvedArgs(), tester_chain)
    assert step_runner._next_nonce.get(tester_chain.deployer, 0) == 0

    monkeypatch.setattr(w3.eth, "send_raw_transaction", send_raw_transaction)
    result = step_runner.execute(deploy("Portal"), ResolvedArgs(), tester_chain)
    transaction = w3.eth.get_transaction(result.receipt["transactionHash"])
    assert transaction["nonce"] == 0


def test_confirmation_timeout(w3, tester_chain, step_runner, monkeypatch):
    def never_confirmed(tx_hash, timeout, poll_latency):
        raise TimeExhausted(f"Transaction {tx_hash!r} is not in the chain after {timeout} seconds")

    monkeypatch.setattr(w3.eth, "send_raw_transaction", lambda raw: HexBytes(b"\x01" * 32))
    monkeypatch.setattr(w3.eth, "wait_for_transaction_receipt", never_confirmed)
    with pytest.raises(ConfirmationTimeout):
        step_runner.execute(deploy("Portal"), ResolvedArgs(), tester_chain)


def test_reverted_receipt(w3, tester_chain, step_runner, monkeypatch):
    def reverted(tx_hash, timeout, poll_latency):
        return {"status": 0, "transactionHash": HexBytes(tx_hash), "blockNumber": 7}

    monkeypatch.setattr(w3.eth, "wait_for_transaction_receipt", reverted)
    with pytest.raises(ExecutionReverted, match="reverted in block 7"):
        step_runner.execute(deploy("Portal"), ResolvedArgs(), tester_chain)


def test_error_mapping(step_runner):
    def revert():
        raise ContractLogicError("execution reverted: Ownable: caller is not the owner")

    with pytest.raises(ExecutionReverted, match="caller is not the owner"):
        step_runner._with_retries("setOwner", revert)

    attempts = list()

    def refused():
        attempts.append(1)
        raise Web3RPCError("insufficient funds for gas * price + value")

    with pytest.raises(SubmissionFailed, match="insufficient funds"):
        step_runner._with_retries("setOwner", refused)
    assert len(attempts) == 1


def test_rebroadcast_of_known_transaction():
    def already_known(raw_transaction):
        raise Web3RPCError("already known")

    w3 = SimpleNamespace(eth=SimpleNamespace(send_raw_transaction=already_known))
    signed = SimpleNamespace(raw_transaction=b"\x02", hash=b"\x03" * 32)

    assert DeploymentStepRunner._broadcast(w3, signed, rebroadcast=True) == HexBytes(signed.hash)
    with pytest.raises(Web3RPCError):
        DeploymentStepRunner._broadcast(w3, signed, rebroadcast=False)


def test_chain_id_mismatch(w3, options):
    chain = make_chain("tester", 1)
    context = RunContext(ChainEndpointRegistry([chain]), options)
    runner = DeploymentStepRunner(context, TesterArtifacts(), web3_factory=lambda chain: w3)
    with pytest.raises(SubmissionFailed, match="does not match"):
        runner.execute(deploy("Portal"), ResolvedArgs(), chain)


def test_missing_invocation_target(tester_chain, step_runner):
    with pytest.raises(ValueError, match="No target address"):
        step_runner.execute(invoke("pingPortal", "Portal", "ping"), ResolvedArgs(), tester_chain)
