"""
Binary encoding of message-library configuration.

The message libraries decode a config blob with ``abi.decode(config, (Struct))``,
so both layouts here are the standard ABI encoding of a single tuple argument:

SecurityStack (ULN) config::

    tuple(uint64 confirmations,
          uint8 requiredVerifierCount,
          uint8 optionalVerifierCount,
          uint8 optionalThreshold,
          address[] requiredVerifiers,
          address[] optionalVerifiers)

Executor config::

    tuple(uint32 maxMessageSize, address executor)

Every fixed-width field is a right-aligned big-endian 32-byte word. The
dynamic tuple is preceded by its offset, and each address array is addressed by
offset and prefixed with its length.
"""

from typing import NamedTuple, Tuple, Union

import eth_abi
from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address

SECURITY_STACK_ABI_TYPE = "(uint64,uint8,uint8,uint8,address[],address[])"
EXECUTOR_LIMITS_ABI_TYPE = "(uint32,address)"


class SecurityStackConfig(NamedTuple):
    """Verifier quorum and block confirmations required for one message path."""

    confirmations: int
    required_verifiers: Tuple[ChecksumAddress, ...] = ()
    optional_verifiers: Tuple[ChecksumAddress, ...] = ()
    optional_threshold: int = 0

    @property
    def required_verifier_count(self) -> int:
        return len(self.required_verifiers)

    @property
    def optional_verifier_count(self) -> int:
        return len(self.optional_verifiers)


class ExecutorLimitsConfig(NamedTuple):
    max_message_size: int
    executor: ChecksumAddress


def encode_security_stack(config: SecurityStackConfig) -> bytes:
    value = (
        config.confirmations,
        config.required_verifier_count,
        config.optional_verifier_count,
        config.optional_threshold,
        [to_checksum_address(v) for v in config.required_verifiers],
        [to_checksum_address(v) for v in config.optional_verifiers],
    )
    return eth_abi.encode([SECURITY_STACK_ABI_TYPE], [value])


def encode_executor_limits(config: ExecutorLimitsConfig) -> bytes:
    value = (config.max_message_size, to_checksum_address(config.executor))
    return eth_abi.encode([EXECUTOR_LIMITS_ABI_TYPE], [value])


def encode(value: Union[SecurityStackConfig, ExecutorLimitsConfig]) -> bytes:
    if isinstance(value, SecurityStackConfig):
        return encode_security_stack(value)
    if isinstance(value, ExecutorLimitsConfig):
        return encode_executor_limits(value)
    raise TypeError(f"Cannot encode config of type {type(value).__name__}")


def decode_security_stack(data: bytes) -> SecurityStackConfig:
    (value,) = eth_abi.decode([SECURITY_STACK_ABI_TYPE], data)
    confirmations, required_count, optional_count, threshold, required, optional = value
    if required_count != len(required) or optional_count != len(optional):
        raise ValueError(
            f"Verifier counts ({required_count}, {optional_count}) do not match "
            f"the encoded lists ({len(required)}, {len(optional)})."
        )
    return SecurityStackConfig(
        confirmations=confirmations,
        required_verifiers=tuple(to_checksum_address(v) for v in required),
        optional_verifiers=tuple(to_checksum_address(v) for v in optional),
        optional_threshold=threshold,
    )


def decode_executor_limits(data: bytes) -> ExecutorLimitsConfig:
    (value,) = eth_abi.decode([EXECUTOR_LIMITS_ABI_TYPE], data)
    max_message_size, executor = value
    return ExecutorLimitsConfig(
        max_message_size=max_message_size, executor=to_checksum_address(executor)
    )
