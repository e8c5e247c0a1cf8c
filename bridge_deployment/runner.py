import threading
import time
import typing
from typing import Any, Callable, Dict, List, NamedTuple, Optional

import requests
from eth_account.datastructures import SignedTransaction
from eth_typing import ChecksumAddress
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3RPCError
from web3.types import TxReceipt

from bridge_deployment.artifacts import ArtifactSource
from bridge_deployment.chains import ChainEndpoint, RunContext
from bridge_deployment.constants import PROXY_CONTRACT_NAME, StepKind
from bridge_deployment.exceptions import (
    ConfirmationTimeout,
    ExecutionReverted,
    SubmissionFailed,
)
from bridge_deployment.steps import DeploymentStep, ResolvedArgs

# Faults of the transport, not of the transaction itself
TRANSIENT_ERRORS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    ConnectionError,
    TimeoutError,
    TimeExhausted,
)

# Node replies to a re-broadcast of a transaction it has already seen
ALREADY_SUBMITTED = ("already known", "nonce too low")

RPC_REQUEST_TIMEOUT = 30  # seconds

# HTTP replies of an overloaded or failing node
TOO_MANY_REQUESTS = 429
SERVER_ERROR = 500


def _is_transient(error: Exception) -> bool:
    if isinstance(error, requests.exceptions.HTTPError):
        response = error.response
        if response is None:
            return True  # status unknown
        return response.status_code == TOO_MANY_REQUESTS or response.status_code >= SERVER_ERROR
    return isinstance(error, TRANSIENT_ERRORS)


class StepResult(NamedTuple):
    address: Optional[ChecksumAddress]
    receipt: TxReceipt
    implementation: Optional[ChecksumAddress] = None
    transactions: int = 1


def _http_web3(chain: ChainEndpoint) -> Web3:
    provider = Web3.HTTPProvider(chain.rpc_url, request_kwargs={"timeout": RPC_REQUEST_TIMEOUT})
    return Web3(provider)


class DeploymentStepRunner:
    """
    Executes single deployment or invocation steps against a chain.

    Each state-changing transaction is signed exactly once with the chain's
    credential; retries re-broadcast the same signed payload so that a retry
    after a confirmation timeout can never land a second copy. Sequence numbers
    are allocated per credential under a lock, which keeps concurrent steps on
    the same chain from colliding.
    """

    def __init__(
        self,
        context: RunContext,
        artifacts: ArtifactSource,
        gas_limit: Optional[int] = None,
        web3_factory: Callable[[ChainEndpoint], Web3] = _http_web3,
    ):
        self.context = context
        self.artifacts = artifacts
        self.gas_limit = gas_limit
        self._web3_factory = web3_factory
        self._connections: Dict[str, Web3] = dict()
        self._next_nonce: Dict[str, int] = dict()
        self._credential_locks: Dict[str, threading.Lock] = dict()
        self._lock = threading.Lock()

    #
    # Connections
    #

    def _web3(self, chain: ChainEndpoint) -> Web3:
        with self._lock:
            w3 = self._connections.get(chain.name)
            if w3 is not None:
                return w3
        w3 = self._web3_factory(chain)
        connected_chain_id = w3.eth.chain_id
        if connected_chain_id != chain.chain_id:
            raise ValueError(
                f"chain_id of {chain.name} ({chain.chain_id}) does not match "
                f"chain_id of its RPC endpoint ({connected_chain_id})."
            )
        with self._lock:
            return self._connections.setdefault(chain.name, w3)

    def _credential_lock(self, address: ChecksumAddress) -> threading.Lock:
        with self._lock:
            return self._credential_locks.setdefault(address, threading.Lock())

    #
    # Retry policy
    #

    def _with_retries(self, label: str, attempt: Callable[[], Any]) -> Any:
        options = self.context.options
        last_error = None
        for number in range(1, options.max_retry_attempts + 1):
            try:
                return attempt()
            except ContractLogicError as e:
                raise ExecutionReverted(label, str(e)) from e
            except Web3RPCError as e:
                # the node understood and refused the request; retrying will not help
                raise SubmissionFailed(label, e) from e
            except Exception as e:
                if not _is_transient(e):
                    raise SubmissionFailed(label, e) from e
                last_error = e
                if number == options.max_retry_attempts:
                    break
                delay = options.retry_backoff * 2 ** (number - 1)
                print(
                    f"(!) {label}: {type(e).__name__} on attempt {number}/"
                    f"{options.max_retry_attempts}; retrying in {delay:.1f}s"
                )
                time.sleep(delay)

        if isinstance(last_error, TimeExhausted):
            raise ConfirmationTimeout(label, last_error) from last_error
        raise SubmissionFailed(label, last_error) from last_error

    #
    # Transactions
    #

    def _sign_and_broadcast(
        self,
        w3: Web3,
        chain: ChainEndpoint,
        build: Callable[[dict], dict],
        signed: List[SignedTransaction],
    ) -> HexBytes:
        """
        Signs a new transaction and sends it for the first time. The nonce is only
        taken once the node may have seen the transaction; an outright refusal
        leaves it free for the credential's next transaction.
        """
        account = chain.account
        with self._credential_lock(account.address):
            pending = w3.eth.get_transaction_count(account.address, "pending")
            nonce = max(pending, self._next_nonce.get(account.address, 0))
            params = {"from": account.address, "nonce": nonce, "chainId": chain.chain_id}
            if self.gas_limit:
                params["gas"] = self.gas_limit
            transaction = build(params)
            signed_transaction = account.sign_transaction(transaction)
            try:
                tx_hash = self._broadcast(w3, signed_transaction, rebroadcast=False)
            except Exception as e:
                if _is_transient(e):
                    # delivery unknown; later attempts re-broadcast this payload
                    self._next_nonce[account.address] = nonce + 1
                    signed.append(signed_transaction)
                raise
            self._next_nonce[account.address] = nonce + 1
            signed.append(signed_transaction)
        return tx_hash

    @staticmethod
    def _broadcast(w3: Web3, signed: SignedTransaction, rebroadcast: bool) -> HexBytes:
        try:
            return w3.eth.send_raw_transaction(signed.raw_transaction)
        except Web3RPCError as e:
            message = str(e).lower()
            if rebroadcast and any(marker in message for marker in ALREADY_SUBMITTED):
                return HexBytes(signed.hash)
            raise

    def _transact(
        self, step: DeploymentStep, chain: ChainEndpoint, build: Callable[[Web3, dict], dict]
    ) -> TxReceipt:
        options = self.context.options
        signed: List[SignedTransaction] = []

        def attempt() -> TxReceipt:
            w3 = self._web3(chain)
            if not signed:
                tx_hash = self._sign_and_broadcast(
                    w3, chain, lambda params: build(w3, params), signed
                )
            else:
                tx_hash = self._broadcast(w3, signed[0], rebroadcast=True)
            return w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=options.confirmation_timeout, poll_latency=options.poll_latency
            )

        receipt = self._with_retries(step.name, attempt)
        if receipt["status"] == 0:
            raise ExecutionReverted(
                step.name,
                f"transaction {HexBytes(receipt['transactionHash']).to_0x_hex()} "
                f"reverted in block {receipt['blockNumber']}",
            )
        return receipt

    def _deploy(
        self, step: DeploymentStep, chain: ChainEndpoint, contract_name: str, args: typing.Sequence
    ) -> TxReceipt:
        artifact = self.artifacts.load(contract_name)
        if not artifact.bytecode:
            raise ValueError(f"No creation bytecode available for {contract_name}.")

        def build(w3: Web3, params: dict) -> dict:
            factory = w3.eth.contract(abi=artifact.abi, bytecode=artifact.bytecode)
            return factory.constructor(*args).build_transaction(params)

        print(f"[{chain.name}] Deploying {contract_name}...")
        receipt = self._transact(step, chain, build)
        print(f"[{chain.name}] {contract_name} deployed at {receipt['contractAddress']}")
        return receipt

    def _initializer_data(self, step: DeploymentStep, chain: ChainEndpoint, args) -> bytes:
        if not step.method:
            return b""
        abi = step.abi or self.artifacts.load(step.contract).abi
        contract = self._web3(chain).eth.contract(abi=abi)
        return bytes(HexBytes(contract.encode_abi(step.method, args=list(args))))

    def _deploy_proxy(
        self, step: DeploymentStep, chain: ChainEndpoint, resolved: ResolvedArgs
    ) -> StepResult:
        implementation = self._deploy(step, chain, step.contract, resolved.args)
        implementation_address = implementation["contractAddress"]
        data = self._initializer_data(step, chain, resolved.initializer_args)
        owner = resolved.proxy_owner or chain.deployer

        print(f"[{chain.name}] Deploying {PROXY_CONTRACT_NAME} contract to proxy {step.contract}.")
        proxy_args = [implementation_address, owner, data]
        proxy = self._deploy(step, chain, PROXY_CONTRACT_NAME, proxy_args)
        print(
            f"[{chain.name}] Wrapping {step.contract} into {PROXY_CONTRACT_NAME} "
            f"at {proxy['contractAddress']}."
        )
        return StepResult(
            address=proxy["contractAddress"],
            receipt=proxy,
            implementation=implementation_address,
            transactions=2,
        )

    def _invoke(
        self, step: DeploymentStep, chain: ChainEndpoint, resolved: ResolvedArgs
    ) -> TxReceipt:
        if resolved.target is None:
            raise ValueError(f"No target address resolved for {step}.")
        abi = step.abi or self.artifacts.load(step.contract).abi

        def build(w3: Web3, params: dict) -> dict:
            contract = w3.eth.contract(address=resolved.target, abi=abi)
            method = getattr(contract.functions, step.method)
            return method(*resolved.args).build_transaction(params)

        message = (
            f"[{chain.name}] Transacting {step.contract}[{resolved.target[:10]}].{step.method}"
        )
        if resolved.args:
            pretty_args = "\n\t".join(str(arg) for arg in resolved.args)
            message = f"{message} with arguments:\n\t{pretty_args}"
        print(message)
        return self._transact(step, chain, build)

    def execute(
        self, step: DeploymentStep, resolved: ResolvedArgs, chain: ChainEndpoint
    ) -> StepResult:
        """Submits the step's transaction(s) and blocks until they are confirmed."""
        if step.kind is StepKind.DEPLOY_PLAIN:
            receipt = self._deploy(step, chain, step.contract, resolved.args)
            return StepResult(address=receipt["contractAddress"], receipt=receipt)
        if step.kind is StepKind.DEPLOY_PROXY:
            return self._deploy_proxy(step, chain, resolved)
        return StepResult(address=None, receipt=self._invoke(step, chain, resolved))

    def call(
        self, chain: ChainEndpoint, address: ChecksumAddress, abi: list, method: str, *args
    ) -> Any:
        """Read-only contract call, retried like submissions."""

        def attempt() -> Any:
            contract = self._web3(chain).eth.contract(address=address, abi=abi)
            return getattr(contract.functions, method)(*args).call()

        return self._with_retries(f"{chain.name}:{method}", attempt)
