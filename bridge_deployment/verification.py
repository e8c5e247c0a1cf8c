import contextlib
import os
import typing
from abc import ABC, abstractmethod
from typing import Optional

from ape import networks
from ape_etherscan.utils import API_KEY_ENV_KEY_MAP

from bridge_deployment.chains import ChainEndpoint
from bridge_deployment.constants import PROXY_CONTRACT_NAME
from bridge_deployment.registry import RegistryEntry
from bridge_deployment.steps import ResolvedArgs
from bridge_deployment.utils import get_contract_container


class Verifier(ABC):
    """Submits deployed components for source verification."""

    def connect(self, chain: ChainEndpoint) -> typing.ContextManager:
        """Context entered once per chain around its verify calls."""
        return contextlib.nullcontext()

    @abstractmethod
    def verify(
        self, chain: ChainEndpoint, entry: RegistryEntry, resolved: Optional[ResolvedArgs] = None
    ) -> None:
        raise NotImplementedError


def check_etherscan_plugin() -> None:
    """
    Checks that the ape-etherscan plugin is installed and that
    the appropriate API key environment variable is set.
    """
    ecosystem_name = networks.provider.network.ecosystem.name
    explorer_envvar = API_KEY_ENV_KEY_MAP.get(ecosystem_name)
    if explorer_envvar is None:
        return  # explorer does not require a key
    api_key = os.environ.get(explorer_envvar)
    if not api_key:
        raise ValueError(f"{explorer_envvar} is not set.")


class ExplorerVerifier(Verifier):
    """Publishes contract sources through the explorer plugin of the chain's ape network."""

    def connect(self, chain: ChainEndpoint) -> typing.ContextManager:
        if not chain.network:
            raise ValueError(f"No ape network configured for {chain.name}; cannot verify.")
        return networks.parse_network_choice(chain.network)

    def verify(
        self, chain: ChainEndpoint, entry: RegistryEntry, resolved: Optional[ResolvedArgs] = None
    ) -> None:
        check_etherscan_plugin()
        explorer = networks.provider.network.explorer
        if explorer is None:
            raise ValueError(f"No explorer plugin available for {chain.network}.")

        if resolved is not None and resolved.args:
            pretty_args = "\n\t".join(str(arg) for arg in resolved.args)
            print(f"[{chain.name}] Constructor parameters for {entry.name}\n\t{pretty_args}")

        targets = [(entry.name, entry.address)]
        if entry.implementation:
            targets = [
                (entry.name, entry.implementation),
                (PROXY_CONTRACT_NAME, entry.address),
            ]
        for contract_name, address in targets:
            print(f"[{chain.name}] (i) Verifying {contract_name} at {address}...")
            # registers the contract type with ape so the explorer can find the sources
            instance = get_contract_container(contract_name).at(address)
            explorer.publish_contract(instance.address)
