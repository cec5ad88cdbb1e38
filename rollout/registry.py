import json
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional

from eth_typing import ABI, ChecksumAddress
from eth_utils import to_checksum_address, to_hex

from rollout.plan import DeploymentPlan
from rollout.types import ContractName, DeployedArtifact, DeploymentReport, StepId
from rollout.utils import _load_json

ChainId = int


STANDARD_REGISTRY_JSON_FORMAT = {"indent": 4, "separators": (",", ": ")}


class RegistryEntry(NamedTuple):
    """Represents a single deployed step in a contract registry."""

    chain_id: ChainId
    name: StepId
    contract_name: ContractName
    address: ChecksumAddress
    abi: ABI
    tx_hash: str
    block_number: int
    deployer: str
    constructor_args: List[Any]
    verified: bool

    def to_artifact(self) -> DeployedArtifact:
        return DeployedArtifact(
            step_id=self.name,
            contract_name=self.contract_name,
            address=self.address,
            tx_hash=self.tx_hash,
            block_number=self.block_number,
            confirmations=0,  # not tracked across runs
            constructor_args=list(self.constructor_args),
        )


def _jsonable(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (bytes, bytearray)):
        return to_hex(value)
    return value


def read_registry(filepath: Path) -> List[RegistryEntry]:
    data = _load_json(filepath)
    registry_entries = list()
    for chain_id, entries in data.items():
        for name, artifacts in entries.items():
            registry_entry = RegistryEntry(
                chain_id=int(chain_id),
                name=name,
                contract_name=artifacts.get("contract_name", name),
                address=artifacts["address"],
                abi=artifacts["abi"],
                tx_hash=artifacts["tx_hash"],
                block_number=artifacts["block_number"],
                deployer=artifacts["deployer"],
                constructor_args=artifacts.get("constructor_args", []),
                verified=artifacts.get("verified", False),
            )
            registry_entries.append(registry_entry)
    return registry_entries


def entries_for_chain(filepath: Path, chain_id: ChainId) -> Dict[StepId, RegistryEntry]:
    return {e.name: e for e in read_registry(filepath) if e.chain_id == int(chain_id)}


def write_registry(
    entries: List[RegistryEntry], filepath: Path, replace: bool = False, silent: bool = False
) -> Path:
    """
    Writes a contract registry to a file. Entries of a chain id already in
    the file are only updated when `replace` is set (resumed rollouts).
    """
    if not entries:
        if not silent:
            print("No entries provided.")
        return filepath

    # Sort registry entries to enforce common order
    entries = sorted(entries, key=lambda entry: (str(entry.chain_id), entry.name))

    data = defaultdict(dict)
    for entry in entries:
        entry_abi = list(entry.abi)
        entry_abi.sort(key=lambda d: (d["type"], d.get("name", "")))

        data[str(entry.chain_id)][entry.name] = {
            "contract_name": entry.contract_name,
            "address": entry.address,
            "abi": entry_abi,
            "tx_hash": entry.tx_hash,
            "block_number": int(entry.block_number),
            "deployer": entry.deployer,
            "constructor_args": _jsonable(entry.constructor_args),
            "verified": bool(entry.verified),
        }

    filepath.parent.mkdir(parents=True, exist_ok=True)

    if filepath.exists():
        if not silent:
            print(f"Updating existing registry at {filepath}.")
        existing_data = _load_json(filepath)

        if not replace and any(chain_id in existing_data for chain_id in data):
            filepath = filepath.with_suffix(".unmerged.json")
            if not silent:
                print(
                    "Cannot merge registries with overlapping chain IDs.\n"
                    f"Writing to {filepath} to avoid overwriting existing data."
                )
        else:
            for chain_id, chain_entries in data.items():
                existing_data.setdefault(chain_id, dict()).update(chain_entries)
            data = existing_data
    elif not silent:
        print(f"Creating new registry at {filepath}.")

    with open(filepath, "w") as file:
        json.dump(data, file, **STANDARD_REGISTRY_JSON_FORMAT)

    return filepath


def registry_from_report(
    report: DeploymentReport,
    plan: DeploymentPlan,
    chain_id: ChainId,
    deployer: ChecksumAddress,
    output_filepath: Path,
    resume: bool = False,
) -> Path:
    """Records every artifact of a (possibly partial) rollout in a registry."""
    previous: Dict[StepId, RegistryEntry] = dict()
    if resume and output_filepath.exists():
        previous = entries_for_chain(output_filepath, chain_id)

    artifacts = report.artifacts_by_step()
    entries = list()
    for step_report in report.steps:
        if step_report.restored and step_report.step_id in previous:
            entries.append(previous[step_report.step_id])
            continue
        artifact = artifacts[step_report.step_id]
        entries.append(
            RegistryEntry(
                chain_id=chain_id,
                name=artifact.step_id,
                contract_name=artifact.contract_name,
                address=to_checksum_address(artifact.address),
                abi=list(plan.get(artifact.step_id).contract.abi),
                tx_hash=artifact.tx_hash,
                block_number=artifact.block_number,
                deployer=deployer,
                constructor_args=artifact.constructor_args,
                verified=step_report.verified,
            )
        )

    output_filepath = write_registry(entries=entries, filepath=output_filepath, replace=resume)
    print(f"(i) Registry written to {output_filepath}!")
    return output_filepath


def completed_from_registry(
    filepath: Path, chain_id: ChainId, plan: Optional[DeploymentPlan] = None
) -> Dict[StepId, DeployedArtifact]:
    """Artifacts of a previous run on this chain, usable to resume a plan."""
    if not filepath.exists():
        return dict()
    entries = entries_for_chain(filepath, chain_id)
    return {
        name: entry.to_artifact()
        for name, entry in entries.items()
        if plan is None or name in plan
    }
