"""
Environment descriptors.

An environment is described by a single YAML file::

    deployment:
      name: mainnet

    artifacts:
      dir: ./bridge_deployment/artifacts/
      filename: mainnet.json

    constants:
      GUARDIAN: "0x..."

    chains:
      ethereum:
        chain_id: 1
        eid: 30101
        network: ethereum:mainnet
        rpc: MAINNET_RPC_URL            # name of the environment variable
        credential: PRIVATE_KEY         # name of the environment variable
        endpoint: "0x1a44..."
        env_constants:
          DVN: MAINNET_DVN              # constant read from an environment variable
        constants:
          LIDO: "0x..."

    contracts:
      ethereum:
        - MainnetOApp:
            constructor:
              _endpoint: $endpoint
              _delegate: $deployer
        - Portal:
            proxy:
              initializer: initialize
              arguments:
                _guardian: $GUARDIAN
                _oapp: $MainnetOApp

    invocations:
      ethereum:
        - setPortalAddress:
            contract: MainnetOApp
            method: setPortalAddress
            arguments: [$Portal]

    wiring:
      - local: ethereum
        remote: fuse
        oapp: MainnetOApp
        send_library: "0x..."
        receive_library: "0x..."
        outbound: {confirmations: 15, required_verifiers: ["0x..."]}
        executor: {max_message_size: 10000, executor: "0x..."}
        inbound: {confirmations: 20, required_verifiers: ["0x..."]}

Arguments may reference ``$deployer``, ``$endpoint``, upper-case ``$CONSTANTS``
and ``$ContractName``; the latter resolves to the registered address of that
component and makes the step depend on it.
"""

import typing
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, NamedTuple, Optional, Union

from eth_abi import is_encodable
from eth_utils.abi import collapse_if_tuple

from bridge_deployment.artifacts import ArtifactSource
from bridge_deployment.chains import ChainEndpoint, ChainEndpointRegistry
from bridge_deployment.constants import ARTIFACTS_DIR, ENVIRONMENTS_DIR, ZERO_ADDRESS, StepKind
from bridge_deployment.encoder import ExecutorLimitsConfig, SecurityStackConfig
from bridge_deployment.exceptions import InvalidParameters, UnknownChain
from bridge_deployment.messaging import ChainPairWiring
from bridge_deployment.registry import ContractRegistry
from bridge_deployment.steps import DeploymentStep, ResolvedArgs
from bridge_deployment.utils import _load_yaml

CONTRACT_CONSTRUCTOR_PARAMETER_KEY = "constructor"
CONTRACT_PROXY_PARAMETER_KEY = "proxy"
DEPENDS_ON_KEY = "depends_on"

Arguments = Union[typing.Sequence[Any], "OrderedDict[str, Any]"]


class VariableContext:
    def __init__(self, chain: ChainEndpoint, constants: typing.Dict[str, Any] = None):
        self.chain = chain
        self.constants = {"ZERO_ADDRESS": ZERO_ADDRESS}
        self.constants.update(constants or dict())
        self.constants.update(chain.constants)


# Variables


class Variable(ABC):
    VARIABLE_PREFIX = "$"

    @abstractmethod
    def resolve(self, registry: Optional[ContractRegistry]) -> Any:
        """
        Resolves the variable against a chain's registry. Without a registry the
        variable resolves to a placeholder of the right type, which is enough to
        validate arguments against an ABI before anything is deployed.
        """
        raise NotImplementedError

    @classmethod
    def is_variable(cls, param: Any) -> bool:
        """Returns True if the param is a variable."""
        result = isinstance(param, str) and param.startswith(cls.VARIABLE_PREFIX)
        return result


class DeployerAccount(Variable):
    DEPLOYER_INDICATOR = "deployer"

    def __init__(self, context: VariableContext):
        self.address = context.chain.deployer

    @classmethod
    def is_deployer(cls, value: str) -> bool:
        """Returns True if the variable is a special deployer variable."""
        return value == cls.DEPLOYER_INDICATOR

    def resolve(self, registry: Optional[ContractRegistry]) -> Any:
        return self.address


class MessagingEndpoint(Variable):
    ENDPOINT_INDICATOR = "endpoint"

    def __init__(self, context: VariableContext):
        self.address = context.chain.endpoint

    @classmethod
    def is_endpoint(cls, value: str) -> bool:
        return value == cls.ENDPOINT_INDICATOR

    def resolve(self, registry: Optional[ContractRegistry]) -> Any:
        return self.address


class Constant(Variable):
    def __init__(self, constant_name: str, context: VariableContext):
        try:
            self.constant_value = context.constants[constant_name]
        except KeyError:
            raise ValueError(
                f"Constant '{constant_name}' not found in environment file "
                f"(chain '{context.chain.name}')."
            )

    @classmethod
    def is_constant(cls, value: str) -> bool:
        """Returns True if the variable is a deployment constant."""
        return value.isupper()

    def resolve(self, registry: Optional[ContractRegistry]) -> Any:
        return self.constant_value


class ContractName(Variable):
    def __init__(self, contract_name: str):
        self.contract_name = contract_name

    def resolve(self, registry: Optional[ContractRegistry]) -> Any:
        """Resolves a contract address."""
        if registry is None:
            # eager validation
            return ZERO_ADDRESS
        return registry.address(self.contract_name)


def _resolve_param(value: Any, registry: Optional[ContractRegistry]) -> Any:
    """Resolves a single parameter value or a list of parameter values."""
    if isinstance(value, list):
        return [_resolve_param(v, registry) for v in value]

    if isinstance(value, Variable):
        return value.resolve(registry)

    return value  # literally a value


def _resolve_params(parameters: Arguments, registry: Optional[ContractRegistry]) -> List[Any]:
    values = parameters.values() if isinstance(parameters, dict) else parameters
    return [_resolve_param(value, registry) for value in values]


def _variable_from_value(variable: str, context: VariableContext) -> Variable:
    variable = variable.strip(Variable.VARIABLE_PREFIX)
    if DeployerAccount.is_deployer(variable):
        return DeployerAccount(context)
    elif MessagingEndpoint.is_endpoint(variable):
        return MessagingEndpoint(context)
    elif Constant.is_constant(variable):
        return Constant(variable, context)
    else:
        return ContractName(variable)


def _process_raw_value(value: Any, variable_context: VariableContext) -> Any:
    if isinstance(value, list):
        return [_process_raw_value(v, variable_context) for v in value]

    if Variable.is_variable(value):
        value = _variable_from_value(value, variable_context)

    return value


def _process_raw_values(values: Any, variable_context: VariableContext) -> Arguments:
    if values is None:
        return list()
    if isinstance(values, dict):
        processed_parameters = OrderedDict()
        for name, value in values.items():
            processed_parameters[name] = _process_raw_value(value, variable_context)
        return processed_parameters
    if isinstance(values, list):
        return [_process_raw_value(value, variable_context) for value in values]
    raise ValueError(f"Malformed arguments in environment file: {values!r}")


def _referenced_contracts(value: Any) -> FrozenSet[str]:
    """Names of the components a (processed) value refers to."""
    if isinstance(value, dict):
        value = list(value.values())
    if isinstance(value, list):
        names = set()
        for item in value:
            names.update(_referenced_contracts(item))
        return frozenset(names)
    if isinstance(value, ContractName):
        return frozenset([value.contract_name])
    return frozenset()


def _single_entry(entry: Any, kind: str) -> typing.Tuple[str, dict]:
    if isinstance(entry, str):
        return entry, dict()
    if isinstance(entry, dict) and len(entry) == 1:
        name = list(entry.keys())[0]  # only one entry
        return name, entry[name] or dict()
    raise ValueError(f"Malformed {kind} entry in environment file: {entry!r}")


#
# Argument builders
#


class DeploymentArguments(NamedTuple):
    """Builds the arguments of a Deploy* step from the registry at submission time."""

    constructor: Arguments
    initializer: Arguments = ()
    owner: Any = None

    def __call__(self, registry: Optional[ContractRegistry]) -> ResolvedArgs:
        owner = _resolve_param(self.owner, registry) if self.owner is not None else None
        return ResolvedArgs(
            args=_resolve_params(self.constructor, registry),
            initializer_args=_resolve_params(self.initializer, registry),
            proxy_owner=owner,
        )


class InvocationArguments(NamedTuple):
    """Builds the target and call arguments of an Invoke step at submission time."""

    target: str
    arguments: Arguments

    def __call__(self, registry: Optional[ContractRegistry]) -> ResolvedArgs:
        target = registry.address(self.target) if registry is not None else ZERO_ADDRESS
        return ResolvedArgs(args=_resolve_params(self.arguments, registry), target=target)


def _depends_on(data: dict) -> FrozenSet[str]:
    depends_on = data.get(DEPENDS_ON_KEY) or list()
    if isinstance(depends_on, str):
        depends_on = [depends_on]
    return frozenset(depends_on)


def _contract_step(entry: Any, context: VariableContext) -> DeploymentStep:
    contract_name, contract_data = _single_entry(entry, "contract")
    constructor = _process_raw_values(
        contract_data.get(CONTRACT_CONSTRUCTOR_PARAMETER_KEY), context
    )
    depends_on = _depends_on(contract_data) | _referenced_contracts(constructor)

    if CONTRACT_PROXY_PARAMETER_KEY not in contract_data:
        return DeploymentStep(
            name=contract_name,
            kind=StepKind.DEPLOY_PLAIN,
            contract=contract_name,
            depends_on=depends_on,
            args_builder=DeploymentArguments(constructor=constructor),
            produces=contract_name,
        )

    proxy_data = contract_data[CONTRACT_PROXY_PARAMETER_KEY] or dict()
    initializer = _process_raw_values(proxy_data.get("arguments"), context)
    owner = _process_raw_value(proxy_data.get("owner"), context)
    depends_on = depends_on | _referenced_contracts(initializer) | _referenced_contracts([owner])
    return DeploymentStep(
        name=contract_name,
        kind=StepKind.DEPLOY_PROXY,
        contract=contract_name,
        depends_on=depends_on,
        args_builder=DeploymentArguments(
            constructor=constructor, initializer=initializer, owner=owner
        ),
        produces=contract_name,
        method=proxy_data.get("initializer"),
    )


def _invocation_step(entry: Any, context: VariableContext) -> DeploymentStep:
    step_name, data = _single_entry(entry, "invocation")
    for field in ("contract", "method"):
        if not data.get(field):
            raise ValueError(f"'{field}' is not set for invocation '{step_name}'.")
    arguments = _process_raw_values(data.get("arguments"), context)
    depends_on = _depends_on(data) | _referenced_contracts(arguments) | {data["contract"]}
    return DeploymentStep(
        name=step_name,
        kind=StepKind.INVOKE,
        contract=data["contract"],
        depends_on=frozenset(depends_on),
        args_builder=InvocationArguments(target=data["contract"], arguments=arguments),
        method=data["method"],
    )


def _wiring_value(value: Any, context: VariableContext) -> Any:
    """Wiring values may only reference constants; they never depend on a deployment."""
    if isinstance(value, list):
        return [_wiring_value(v, context) for v in value]
    if not Variable.is_variable(value):
        return value
    name = value.strip(Variable.VARIABLE_PREFIX)
    if not Constant.is_constant(name):
        raise ValueError(f"Wiring value '{value}' must be a literal or a constant.")
    return Constant(name, context).resolve(None)


def _security_stack_from_config(
    data: dict, field: str, context: VariableContext
) -> SecurityStackConfig:
    if not isinstance(data, dict) or "confirmations" not in data:
        raise ValueError(f"'{field}.confirmations' is not set in wiring entry.")
    return SecurityStackConfig(
        confirmations=int(_wiring_value(data["confirmations"], context)),
        required_verifiers=tuple(_wiring_value(data.get("required_verifiers") or [], context)),
        optional_verifiers=tuple(_wiring_value(data.get("optional_verifiers") or [], context)),
        optional_threshold=int(_wiring_value(data.get("optional_threshold", 0), context)),
    )


def wiring_from_config(
    data: dict, chains: ChainEndpointRegistry, constants: typing.Dict[str, Any] = None
) -> ChainPairWiring:
    """
    Builds one directional chain pair. Addresses and numbers may be given
    literally or as constants of the local chain.
    """
    for field in (
        "local",
        "remote",
        "oapp",
        "send_library",
        "receive_library",
        "outbound",
        "executor",
        "inbound",
    ):
        if field not in data:
            raise ValueError(f"'{field}' is not set in wiring entry {data!r}.")

    for field in ("local", "remote"):
        if data[field] not in chains:
            raise UnknownChain(f"Wiring references unknown chain '{data[field]}'.")
    if data["local"] == data["remote"]:
        raise ValueError(f"Wiring local and remote chains are both '{data['local']}'.")

    context = VariableContext(chain=chains.get(data["local"]), constants=constants)
    executor = data["executor"]
    if not isinstance(executor, dict) or "executor" not in executor:
        raise ValueError("'executor.executor' is not set in wiring entry.")
    return ChainPairWiring(
        local=data["local"],
        remote=data["remote"],
        oapp=data["oapp"],
        send_library=_wiring_value(data["send_library"], context),
        receive_library=_wiring_value(data["receive_library"], context),
        outbound=_security_stack_from_config(data["outbound"], "outbound", context),
        executor=ExecutorLimitsConfig(
            max_message_size=int(_wiring_value(executor.get("max_message_size", 0), context)),
            executor=_wiring_value(executor["executor"], context),
        ),
        inbound=_security_stack_from_config(data["inbound"], "inbound", context),
    )


def get_artifact_filepath(config: Dict) -> Path:
    """Returns the filepath of the registry file."""
    artifact_config = config.get("artifacts", {})
    artifact_dir = Path(artifact_config.get("dir", ARTIFACTS_DIR))
    filename = artifact_config.get("filename")
    if not filename:
        raise ValueError("artifact filename is not set in environment file.")
    return artifact_dir / filename


#
# ABI validation
#


def _abi_type(abi_input: dict) -> str:
    return collapse_if_tuple(abi_input)


def _validate_abi_inputs(
    label: str, abi_inputs: List[dict], parameters: Arguments, resolved: List[Any]
) -> None:
    """Validates resolved parameters against the inputs of a constructor or function ABI."""
    if len(resolved) != len(abi_inputs):
        raise InvalidParameters(
            f"Parameters length mismatch - "
            f"{label} ABI requires {len(abi_inputs)}, Got {len(resolved)}."
        )

    names = list(parameters) if isinstance(parameters, dict) else [None] * len(resolved)
    codex = enumerate(zip(abi_inputs, names, resolved), start=0)
    for position, (abi_input, name, value) in codex:
        # validate name
        if name is not None and abi_input.get("name") != name:
            raise InvalidParameters(
                f"{label} parameter '{name}' at position {position} does not "
                f"match the expected ABI name '{abi_input.get('name')}'."
            )

        # validate value type
        if not is_encodable(_abi_type(abi_input), value):
            raise InvalidParameters(
                f"{label} parameter at position {position} has a value '{value}' "
                f"whose type does not match expected ABI type '{_abi_type(abi_input)}'"
            )


def _constructor_inputs(abi: list) -> List[dict]:
    for entry in abi:
        if entry.get("type") == "constructor":
            return entry.get("inputs", [])
    return []


def _method_inputs(abi: list, method: str, arg_count: int, label: str) -> List[dict]:
    candidates = [e for e in abi if e.get("type") == "function" and e.get("name") == method]
    if not candidates:
        raise InvalidParameters(f"{label}: no method '{method}' in ABI.")
    for candidate in candidates:
        if len(candidate.get("inputs", [])) == arg_count:
            return candidate["inputs"]
    return candidates[0].get("inputs", [])


def validate_step(step: DeploymentStep, artifacts: ArtifactSource) -> None:
    """Checks a step's arguments against its contract ABI without touching a chain."""
    builder = step.args_builder
    resolved = builder(None)
    abi = step.abi or artifacts.load(step.contract).abi
    if step.is_deployment:
        _validate_abi_inputs(
            f"{step.contract} constructor", _constructor_inputs(abi), builder.constructor,
            resolved.args,
        )
        if step.method:
            label = f"{step.contract}.{step.method}"
            inputs = _method_inputs(abi, step.method, len(resolved.initializer_args), label)
            _validate_abi_inputs(label, inputs, builder.initializer, resolved.initializer_args)
    else:
        label = f"{step.contract}.{step.method}"
        inputs = _method_inputs(abi, step.method, len(resolved.args), label)
        _validate_abi_inputs(label, inputs, builder.arguments, resolved.args)


class Environment:
    """A named target environment: its chains, step graphs and wiring pairs."""

    def __init__(
        self,
        config: typing.Dict,
        path: Optional[Path] = None,
        chains: Optional[ChainEndpointRegistry] = None,
    ):
        self.config = config
        self.path = path
        deployment = config.get("deployment") or dict()
        self.name = deployment.get("name") or (Path(path).stem if path else "unnamed")
        self.chains = chains or ChainEndpointRegistry.from_config(config)
        self.registry_filepath = get_artifact_filepath(config)
        self.constants = config.get("constants") or dict()

        self.steps = OrderedDict((chain.name, list()) for chain in self.chains)
        for section, build in (("contracts", _contract_step), ("invocations", _invocation_step)):
            for chain_name, entries in (config.get(section) or dict()).items():
                chain = self.chains.get(chain_name)
                context = VariableContext(chain=chain, constants=self.constants)
                for entry in entries or []:
                    self.steps[chain_name].append(build(entry, context))

        self.wiring = [
            wiring_from_config(data, self.chains, self.constants)
            for data in config.get("wiring") or []
        ]

    def __repr__(self) -> str:
        return f"Environment({self.name}, chains={self.chains.names()})"

    @classmethod
    def from_yaml(cls, filepath: Path, *args, **kwargs) -> "Environment":
        config = _load_yaml(filepath)
        return cls(config, Path(filepath), *args, **kwargs)

    @classmethod
    def from_name(cls, name: str, *args, **kwargs) -> "Environment":
        filepath = ENVIRONMENTS_DIR / f"{name}.yml"
        if not filepath.exists():
            raise ValueError(f"No environment file found at {filepath}")
        return cls.from_yaml(filepath, *args, **kwargs)

    def steps_for(self, chain_name: str) -> List[DeploymentStep]:
        self.chains.get(chain_name)
        return list(self.steps.get(chain_name, []))

    def validate(self, artifacts: ArtifactSource) -> None:
        """Validates every step's arguments against its ABI."""
        print(f"Validating environment {self.name}...")
        for steps in self.steps.values():
            for step in steps:
                validate_step(step, artifacts)
