import os
import threading
import typing
from collections import OrderedDict
from typing import Any, Dict, Iterator, NamedTuple, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address

from bridge_deployment.constants import (
    DEFAULT_CONFIRMATION_TIMEOUT,
    DEFAULT_MAX_IN_FLIGHT,
    DEFAULT_MAX_RETRY_ATTEMPTS,
    DEFAULT_POLL_LATENCY,
    DEFAULT_RETRY_BACKOFF,
)
from bridge_deployment.exceptions import UnknownChain


class ChainEndpoint(NamedTuple):
    """Static description of one target ledger."""

    name: str
    chain_id: int
    eid: int
    rpc_url: str
    account: LocalAccount
    endpoint: ChecksumAddress
    network: Optional[str] = None
    constants: typing.Mapping[str, Any] = {}

    @property
    def deployer(self) -> ChecksumAddress:
        return self.account.address

    def __str__(self) -> str:
        return f"{self.name} ({self.chain_id})"


def _read_env(variable: str, chain_name: str, field: str) -> str:
    value = os.environ.get(variable)
    if not value:
        raise ValueError(
            f"Environment variable {variable} ({field} for chain '{chain_name}') is not set."
        )
    return value


def chain_from_config(name: str, data: Dict[str, Any]) -> ChainEndpoint:
    """
    Builds a chain endpoint from its descriptor entry.

    'rpc' and 'credential' name the environment variables that hold the
    RPC URL and the signing key; secrets never live in the descriptor itself.
    'env_constants' maps constant names to the variables holding their values,
    for addresses that are only known where the run is launched.
    """
    for field in ("chain_id", "rpc", "credential", "endpoint"):
        if field not in data:
            raise ValueError(f"'{field}' is not set for chain '{name}'.")

    rpc_url = _read_env(data["rpc"], name, "rpc")
    private_key = _read_env(data["credential"], name, "credential")
    constants = dict(data.get("constants") or {})
    for constant, variable in (data.get("env_constants") or {}).items():
        constants[constant] = _read_env(variable, name, f"constant {constant}")
    chain_id = int(data["chain_id"])
    return ChainEndpoint(
        name=name,
        chain_id=chain_id,
        eid=int(data.get("eid", chain_id)),
        rpc_url=rpc_url,
        account=Account.from_key(private_key),
        endpoint=to_checksum_address(data["endpoint"]),
        network=data.get("network"),
        constants=constants,
    )


class ChainEndpointRegistry:
    """The chains participating in one environment, in descriptor order."""

    def __init__(self, chains: typing.Iterable[ChainEndpoint]):
        self._chains = OrderedDict()
        for chain in chains:
            if chain.name in self._chains:
                raise ValueError(f"Chain '{chain.name}' is defined more than once.")
            self._chains[chain.name] = chain

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ChainEndpointRegistry":
        chains_config = config.get("chains")
        if not chains_config:
            raise ValueError("Environment descriptor missing 'chains' field.")
        return cls(chain_from_config(name, data) for name, data in chains_config.items())

    def get(self, name: str) -> ChainEndpoint:
        try:
            return self._chains[name]
        except KeyError:
            raise UnknownChain(f"Chain '{name}' is not part of this environment.")

    def names(self) -> typing.List[str]:
        return list(self._chains)

    def __iter__(self) -> Iterator[ChainEndpoint]:
        return iter(self._chains.values())

    def __len__(self) -> int:
        return len(self._chains)

    def __contains__(self, name: str) -> bool:
        return name in self._chains


class RunOptions(NamedTuple):
    resume: bool = False
    confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT
    max_retry_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS
    verify: bool = False
    max_in_flight: int = DEFAULT_MAX_IN_FLIGHT
    retry_backoff: float = DEFAULT_RETRY_BACKOFF
    poll_latency: float = DEFAULT_POLL_LATENCY
    autosign: bool = True


class RunContext:
    """Everything a run needs, passed explicitly to every component."""

    def __init__(self, chains: ChainEndpointRegistry, options: Optional[RunOptions] = None):
        self.chains = chains
        self.options = options or RunOptions()
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        """Stops every pipeline once its in-flight transaction settles."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()
