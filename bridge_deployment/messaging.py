import typing
from collections import OrderedDict
from typing import Dict, List, NamedTuple

from eth_typing import ChecksumAddress
from eth_utils import is_address, to_checksum_address

from bridge_deployment import encoder
from bridge_deployment.chains import ChainEndpoint
from bridge_deployment.constants import (
    ENDPOINT_ABI,
    MAX_VERIFIER_COUNT,
    UINT32_MAX,
    UINT64_MAX,
    ConfigType,
    StepKind,
)
from bridge_deployment.encoder import ExecutorLimitsConfig, SecurityStackConfig
from bridge_deployment.exceptions import InvalidSecurityConfig
from bridge_deployment.registry import ContractRegistry, InvocationRecord
from bridge_deployment.runner import DeploymentStepRunner
from bridge_deployment.steps import DeploymentStep, ResolvedArgs

ENDPOINT_CONTRACT_NAME = "EndpointV2"


class ConfigParam(NamedTuple):
    remote_chain_id: int
    config_type: ConfigType
    payload: bytes

    def as_tuple(self) -> tuple:
        """Shape expected by the endpoint's setConfig."""
        return self.remote_chain_id, int(self.config_type), self.payload


class ChainPairWiring(NamedTuple):
    """Messaging configuration of one directional (local -> remote) chain pair."""

    local: str
    remote: str
    oapp: str
    send_library: ChecksumAddress
    receive_library: ChecksumAddress
    outbound: SecurityStackConfig
    executor: ExecutorLimitsConfig
    inbound: SecurityStackConfig

    @property
    def key(self) -> str:
        return f"{self.local}->{self.remote}"

    def __str__(self) -> str:
        return self.key


def _validate_address(value: str, field: str) -> None:
    if not is_address(value):
        raise InvalidSecurityConfig(f"{field} '{value}' is not a valid address.")
    if int(value, 16) == 0:
        raise InvalidSecurityConfig(f"{field} is the zero address.")


def _validate_verifiers(verifiers: typing.Sequence[str], field: str) -> None:
    if len(verifiers) > MAX_VERIFIER_COUNT:
        raise InvalidSecurityConfig(
            f"{field} has {len(verifiers)} entries; at most {MAX_VERIFIER_COUNT} are allowed."
        )
    previous = None
    for verifier in verifiers:
        _validate_address(verifier, field)
        value = int(verifier, 16)
        # the receiving library requires strictly ascending, duplicate-free lists
        if previous is not None and value <= previous:
            raise InvalidSecurityConfig(
                f"{field} must be sorted in ascending order without duplicates; "
                f"got {verifier} after {hex(previous)}."
            )
        previous = value


def validate_security_stack(config: SecurityStackConfig, label: str = "security stack") -> None:
    """Rejects a security stack config the receiving library would not accept."""
    if not 0 <= config.confirmations <= UINT64_MAX:
        raise InvalidSecurityConfig(f"{label}: confirmations {config.confirmations} out of range.")
    _validate_verifiers(config.required_verifiers, f"{label}: required verifiers")
    _validate_verifiers(config.optional_verifiers, f"{label}: optional verifiers")

    threshold = config.optional_threshold
    if threshold < 0 or threshold > config.optional_verifier_count:
        raise InvalidSecurityConfig(
            f"{label}: optional threshold {threshold} must be between 0 and the "
            f"number of optional verifiers ({config.optional_verifier_count})."
        )
    if config.optional_verifier_count and threshold == 0:
        raise InvalidSecurityConfig(
            f"{label}: optional verifiers are set but the optional threshold is 0."
        )
    if config.required_verifier_count == 0 and threshold == 0:
        raise InvalidSecurityConfig(f"{label}: at least one verifier must be able to attest.")


def validate_executor_limits(config: ExecutorLimitsConfig, label: str = "executor") -> None:
    if not 0 < config.max_message_size <= UINT32_MAX:
        raise InvalidSecurityConfig(
            f"{label}: max message size {config.max_message_size} out of range."
        )
    _validate_address(config.executor, f"{label}: executor address")


def validate_wiring(wiring: ChainPairWiring, remote: ChainEndpoint) -> None:
    if not 0 <= remote.eid <= UINT32_MAX:
        raise InvalidSecurityConfig(f"{wiring}: remote eid {remote.eid} out of range.")
    _validate_address(wiring.send_library, f"{wiring}: send library")
    _validate_address(wiring.receive_library, f"{wiring}: receive library")
    validate_security_stack(wiring.outbound, f"{wiring} outbound")
    validate_executor_limits(wiring.executor, f"{wiring} executor")
    validate_security_stack(wiring.inbound, f"{wiring} inbound")


def build_config_params(
    wiring: ChainPairWiring, remote: ChainEndpoint
) -> Dict[ChecksumAddress, List[ConfigParam]]:
    """
    Encodes the pair's configuration and groups it by the message library that
    owns it: outbound entries belong to the send library, inbound to the
    receive library.
    """
    outbound = [
        ConfigParam(remote.eid, ConfigType.SECURITY_STACK, encoder.encode(wiring.outbound)),
        ConfigParam(remote.eid, ConfigType.EXECUTOR, encoder.encode(wiring.executor)),
    ]
    inbound = [ConfigParam(remote.eid, ConfigType.SECURITY_STACK, encoder.encode(wiring.inbound))]

    grouped = OrderedDict()
    grouped.setdefault(to_checksum_address(wiring.send_library), []).extend(outbound)
    grouped.setdefault(to_checksum_address(wiring.receive_library), []).extend(inbound)
    return grouped


def _endpoint_step(name: str, method: str) -> DeploymentStep:
    return DeploymentStep(
        name=name,
        kind=StepKind.INVOKE,
        contract=ENDPOINT_CONTRACT_NAME,
        method=method,
        abi=ENDPOINT_ABI,
    )


class MessagingConfigurator:
    """
    Selects message libraries and applies the security stack and executor
    configuration for one directional chain pair on the local endpoint.
    """

    def __init__(self, runner: DeploymentStepRunner, store=None):
        self.runner = runner
        self.store = store

    def _submit(
        self,
        step: DeploymentStep,
        args: list,
        chain: ChainEndpoint,
        registry: ContractRegistry,
    ) -> bool:
        if registry.has_invocation(step.name):
            print(f"[{chain.name}] (i) {step.name} already applied; skipping.")
            return False
        result = self.runner.execute(step, ResolvedArgs(args=args, target=chain.endpoint), chain)
        registry.record_invocation(step.name, InvocationRecord.from_receipt(result.receipt))
        if self.store is not None:
            self.store.save(registry)
        return True

    def configure_pair(
        self,
        local: ChainEndpoint,
        remote: ChainEndpoint,
        wiring: ChainPairWiring,
        registry: ContractRegistry,
    ) -> int:
        """
        Wires local -> remote. Returns the number of transactions submitted.

        Libraries are selected first and must confirm before any configuration
        referencing them is sent.
        """
        validate_wiring(wiring, remote)
        oapp = registry.address(wiring.oapp)
        config_params = build_config_params(wiring, remote)

        print(f"[{local.name}] Configuring messaging {wiring} for {wiring.oapp} at {oapp}")
        submitted = 0
        library_steps = (
            (_endpoint_step(f"{wiring.key}:send-library", "setSendLibrary"), wiring.send_library),
            (
                _endpoint_step(f"{wiring.key}:receive-library", "setReceiveLibrary"),
                wiring.receive_library,
            ),
        )
        for step, library in library_steps:
            args = [oapp, remote.eid, to_checksum_address(library)]
            submitted += self._submit(step, args, local, registry)

        for library, params in config_params.items():
            step = _endpoint_step(f"{wiring.key}:config:{library}", "setConfig")
            args = [oapp, library, [param.as_tuple() for param in params]]
            submitted += self._submit(step, args, local, registry)

        return submitted

    def read_config(
        self,
        local: ChainEndpoint,
        remote: ChainEndpoint,
        wiring: ChainPairWiring,
        registry: ContractRegistry,
    ) -> Dict[str, typing.Union[SecurityStackConfig, ExecutorLimitsConfig]]:
        """Reads back the configuration currently applied on the local endpoint."""
        oapp = registry.address(wiring.oapp)

        def get_config(library: str, config_type: ConfigType) -> bytes:
            return self.runner.call(
                local,
                local.endpoint,
                ENDPOINT_ABI,
                "getConfig",
                oapp,
                to_checksum_address(library),
                remote.eid,
                int(config_type),
            )

        return OrderedDict(
            outbound=encoder.decode_security_stack(
                get_config(wiring.send_library, ConfigType.SECURITY_STACK)
            ),
            executor=encoder.decode_executor_limits(
                get_config(wiring.send_library, ConfigType.EXECUTOR)
            ),
            inbound=encoder.decode_security_stack(
                get_config(wiring.receive_library, ConfigType.SECURITY_STACK)
            ),
        )
