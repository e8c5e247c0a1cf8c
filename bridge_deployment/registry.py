import json
import threading
from collections import OrderedDict
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional

from eth_typing import ABI, ChecksumAddress
from eth_utils import to_checksum_address
from hexbytes import HexBytes

from bridge_deployment.exceptions import UnresolvedDependency

ChainId = int
ContractName = str


STANDARD_REGISTRY_JSON_FORMAT = {"indent": 4, "separators": (",", ": ")}


def tx_hash_of(receipt) -> str:
    return HexBytes(receipt["transactionHash"]).to_0x_hex()


class RegistryEntry(NamedTuple):
    """Represents a single deployed component on one chain."""

    name: ContractName
    address: ChecksumAddress
    tx_hash: str
    block_number: int
    deployer: str
    implementation: Optional[ChecksumAddress] = None
    abi: ABI = ()


class InvocationRecord(NamedTuple):
    """Represents a settled state-changing call that produced no component."""

    tx_hash: str
    block_number: int

    @classmethod
    def from_receipt(cls, receipt) -> "InvocationRecord":
        return cls(tx_hash=tx_hash_of(receipt), block_number=int(receipt["blockNumber"]))


class ContractRegistry:
    """
    Component name -> deployed address for a single chain.

    The registry only ever grows: a name, once recorded, keeps its address for
    the rest of the run. Completed invocations are tracked alongside so that
    re-running a partially applied graph never repeats a call.
    """

    def __init__(
        self,
        chain_id: ChainId,
        entries: Optional[List[RegistryEntry]] = None,
        invocations: Optional[Dict[str, InvocationRecord]] = None,
    ):
        self.chain_id = chain_id
        self._entries = OrderedDict()
        self._invocations = OrderedDict()
        for entry in entries or []:
            self.record(entry)
        for name, record in (invocations or {}).items():
            self.record_invocation(name, record)

    def __contains__(self, name: ContractName) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"ContractRegistry(chain_id={self.chain_id}, contracts={self.addresses()})"

    def address(self, name: ContractName) -> ChecksumAddress:
        try:
            return self._entries[name].address
        except KeyError:
            raise UnresolvedDependency(name)

    def get(self, name: ContractName) -> RegistryEntry:
        return self._entries[name]

    def record(self, entry: RegistryEntry) -> None:
        if entry.name in self._entries:
            raise ValueError(
                f"{entry.name} is already registered at {self._entries[entry.name].address} "
                f"on chain {self.chain_id}."
            )
        self._entries[entry.name] = entry._replace(address=to_checksum_address(entry.address))

    def has_invocation(self, name: str) -> bool:
        return name in self._invocations

    def record_invocation(self, name: str, record: InvocationRecord) -> None:
        if name in self._invocations:
            raise ValueError(f"Invocation {name} is already recorded on chain {self.chain_id}.")
        self._invocations[name] = record

    def entries(self) -> List[RegistryEntry]:
        return list(self._entries.values())

    def addresses(self) -> Dict[ContractName, ChecksumAddress]:
        return OrderedDict((name, entry.address) for name, entry in self._entries.items())

    @property
    def invocations(self) -> Dict[str, InvocationRecord]:
        return OrderedDict(self._invocations)

    def copy(self) -> "ContractRegistry":
        return ContractRegistry(
            chain_id=self.chain_id, entries=self.entries(), invocations=self._invocations
        )


def _entry_to_json(entry: RegistryEntry) -> dict:
    entry_abi = list(entry.abi)
    entry_abi.sort(key=lambda d: (d["type"], d.get("name", "")))
    data = {
        "address": entry.address,
        "abi": entry_abi,
        "tx_hash": entry.tx_hash,
        "block_number": int(entry.block_number),
        "deployer": entry.deployer,
    }
    if entry.implementation:
        data["implementation"] = entry.implementation
    return data


def _registry_to_json(registry: ContractRegistry) -> dict:
    # Sort entries to enforce common order
    contracts = {
        entry.name: _entry_to_json(entry)
        for entry in sorted(registry.entries(), key=lambda entry: entry.name)
    }
    invocations = {
        name: {"tx_hash": record.tx_hash, "block_number": int(record.block_number)}
        for name, record in sorted(registry.invocations.items())
    }
    return {"contracts": contracts, "invocations": invocations}


def _registry_from_json(chain_id: ChainId, data: dict) -> ContractRegistry:
    entries = list()
    for name, artifacts in data.get("contracts", {}).items():
        entries.append(
            RegistryEntry(
                name=name,
                address=artifacts["address"],
                tx_hash=artifacts["tx_hash"],
                block_number=artifacts["block_number"],
                deployer=artifacts["deployer"],
                implementation=artifacts.get("implementation"),
                abi=artifacts.get("abi", []),
            )
        )
    invocations = {
        name: InvocationRecord(tx_hash=record["tx_hash"], block_number=record["block_number"])
        for name, record in data.get("invocations", {}).items()
    }
    return ContractRegistry(chain_id=chain_id, entries=entries, invocations=invocations)


def read_registries(filepath: Path) -> Dict[ChainId, ContractRegistry]:
    with open(filepath, "r") as file:
        data = json.load(file)
    return {
        int(chain_id): _registry_from_json(int(chain_id), chain_data)
        for chain_id, chain_data in data.items()
    }


def write_registries(registries: List[ContractRegistry], filepath: Path) -> Path:
    """
    Writes the given chain registries to a file, replacing any existing
    section for the same chain id and keeping the others.
    """
    data = dict()
    if filepath.exists():
        with open(filepath, "r") as file:
            data = json.load(file)

    for registry in registries:
        data[str(registry.chain_id)] = _registry_to_json(registry)

    # Create the parent directory if it does not exist
    filepath.parent.mkdir(parents=True, exist_ok=True)

    ordered = OrderedDict(sorted(data.items(), key=lambda item: item[0]))
    temp_filepath = filepath.with_suffix(".temp.json")
    with open(temp_filepath, "w") as file:
        json.dump(ordered, file, **STANDARD_REGISTRY_JSON_FORMAT)
    temp_filepath.replace(filepath)
    return filepath


class RegistryStore:
    """Durable checkpoint of the registries of every chain in an environment."""

    def __init__(self, filepath: Path):
        self.filepath = Path(filepath)
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"RegistryStore({self.filepath})"

    def chain_ids(self) -> List[ChainId]:
        with self._lock:
            if not self.filepath.exists():
                return []
            return list(read_registries(self.filepath))

    def load(self, chain_id: ChainId) -> ContractRegistry:
        with self._lock:
            if not self.filepath.exists():
                return ContractRegistry(chain_id=chain_id)
            registries = read_registries(self.filepath)
        return registries.get(chain_id) or ContractRegistry(chain_id=chain_id)

    def save(self, registry: ContractRegistry) -> Path:
        # pipelines for different chains checkpoint into the same file
        with self._lock:
            return write_registries([registry], self.filepath)
