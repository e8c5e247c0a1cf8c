from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, NamedTuple, Optional

from eth_typing import ABI

from bridge_deployment.utils import _load_json, get_contract_container


class Artifact(NamedTuple):
    """Compiled interface and creation code of a contract."""

    name: str
    abi: ABI
    bytecode: Optional[str]


class ArtifactSource(ABC):
    """Resolves contract names to compiled artifacts."""

    def __init__(self):
        self._cache: Dict[str, Artifact] = dict()

    @abstractmethod
    def _load(self, contract_name: str) -> Artifact:
        raise NotImplementedError

    def load(self, contract_name: str) -> Artifact:
        artifact = self._cache.get(contract_name)
        if artifact is None:
            artifact = self._load(contract_name)
            self._cache[contract_name] = artifact
        return artifact


class ApeProjectArtifacts(ArtifactSource):
    """Artifacts of the ape project in the working directory and its dependencies."""

    def _load(self, contract_name: str) -> Artifact:
        contract_type = get_contract_container(contract_name).contract_type
        abi = [
            entry.model_dump(mode="json", by_alias=True, exclude_none=True)
            for entry in contract_type.abi
        ]
        deployment_bytecode = contract_type.deployment_bytecode
        bytecode = deployment_bytecode.bytecode if deployment_bytecode else None
        return Artifact(name=contract_name, abi=abi, bytecode=bytecode)


class HardhatArtifacts(ArtifactSource):
    """
    Artifacts from a hardhat-style build directory, i.e. ``<Name>.json`` files
    holding at least ``abi`` and ``bytecode``.
    """

    def __init__(self, directory: Path):
        super().__init__()
        self.directory = Path(directory)
        if not self.directory.exists():
            raise FileNotFoundError(f"Directory not found at {self.directory}")

    def _load(self, contract_name: str) -> Artifact:
        candidates = sorted(
            path
            for path in self.directory.rglob(f"{contract_name}.json")
            if not path.name.endswith(".dbg.json")
        )
        if not candidates:
            raise ValueError(f"No artifact found for '{contract_name}' in {self.directory}.")
        if len(candidates) > 1:
            raise ValueError(
                f"Artifact for '{contract_name}' is ambiguous - found {len(candidates)} "
                f"files in {self.directory}."
            )
        data = _load_json(filepath=candidates[0])
        return Artifact(name=contract_name, abi=data["abi"], bytecode=data.get("bytecode"))
