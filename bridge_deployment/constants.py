from enum import Enum, IntEnum
from pathlib import Path

import bridge_deployment

#
# Filesystem
#

DEPLOYMENT_DIR = Path(bridge_deployment.__file__).parent
ENVIRONMENTS_DIR = DEPLOYMENT_DIR / "environments"
ARTIFACTS_DIR = DEPLOYMENT_DIR / "artifacts"

#
# Environments
#

MAINNET = "mainnet"
TESTNET = "testnet"

SUPPORTED_ENVIRONMENTS = [MAINNET, TESTNET]

#
# Run defaults
#

DEFAULT_CONFIRMATION_TIMEOUT = 180  # seconds
DEFAULT_MAX_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_BACKOFF = 2.0  # seconds, doubled per attempt
DEFAULT_POLL_LATENCY = 2.0
DEFAULT_MAX_IN_FLIGHT = 1

#
# Contracts
#

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

PROXY_CONTRACT_NAME = "TransparentUpgradeableProxy"

# Verifier lists are capped by the receiving library at (type(uint8).max - 1) / 2
MAX_VERIFIER_COUNT = 127

UINT8_MAX = 2**8 - 1
UINT32_MAX = 2**32 - 1
UINT64_MAX = 2**64 - 1


class StepKind(Enum):
    DEPLOY_PROXY = "proxy"
    DEPLOY_PLAIN = "plain"
    INVOKE = "invoke"


class ConfigType(IntEnum):
    """Config types understood by the message libraries."""

    EXECUTOR = 1
    SECURITY_STACK = 2


ENDPOINT_ABI = [
    {
        "type": "function",
        "name": "setSendLibrary",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "oapp", "type": "address"},
            {"name": "eid", "type": "uint32"},
            {"name": "newLib", "type": "address"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "setReceiveLibrary",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "oapp", "type": "address"},
            {"name": "eid", "type": "uint32"},
            {"name": "newLib", "type": "address"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "setConfig",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "oapp", "type": "address"},
            {"name": "lib", "type": "address"},
            {
                "name": "params",
                "type": "tuple[]",
                "components": [
                    {"name": "eid", "type": "uint32"},
                    {"name": "configType", "type": "uint32"},
                    {"name": "config", "type": "bytes"},
                ],
            },
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "getConfig",
        "stateMutability": "view",
        "inputs": [
            {"name": "oapp", "type": "address"},
            {"name": "lib", "type": "address"},
            {"name": "eid", "type": "uint32"},
            {"name": "configType", "type": "uint32"},
        ],
        "outputs": [{"name": "config", "type": "bytes"}],
    },
]
