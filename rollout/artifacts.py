from pathlib import Path
from typing import Any, Dict, Optional

from ape import project
from ape.contracts import ContractContainer

from rollout.types import ContractName, ContractSpec, SourceIdentity
from rollout.utils import _load_json

HARDHAT_SOURCES_DIR = "contracts"


def _find_hardhat_artifact(artifacts_dir: Path, contract_name: ContractName) -> Path:
    candidates = [
        path
        for path in (artifacts_dir / HARDHAT_SOURCES_DIR).rglob(f"{contract_name}.json")
        if path.parent.suffix == ".sol"
    ]
    if not candidates:
        raise ValueError(f"No hardhat artifact found for '{contract_name}' in {artifacts_dir}.")
    if len(candidates) != 1:
        raise ValueError(
            f"Contract name {contract_name} is ambiguous - "
            f"found {len(candidates)} artifacts: {', '.join(map(str, candidates))}"
        )
    return candidates[0]


def _load_build_info(artifact_path: Path) -> Optional[Dict[str, Any]]:
    """Follows the .dbg.json pointer of a hardhat artifact to its build info."""
    debug_path = artifact_path.with_name(artifact_path.stem + ".dbg.json")
    if not debug_path.exists():
        return None
    build_info_path = (debug_path.parent / _load_json(debug_path)["buildInfo"]).resolve()
    if not build_info_path.exists():
        return None
    return _load_json(build_info_path)


def load_hardhat_contract(artifacts_dir: Path, contract_name: ContractName) -> ContractSpec:
    """Loads a ContractSpec from a hardhat artifacts directory."""
    artifact_path = _find_hardhat_artifact(Path(artifacts_dir), contract_name)
    data = _load_json(artifact_path)

    qualified_name = f"{data['sourceName']}:{data['contractName']}"
    build_info = _load_build_info(artifact_path)
    if build_info:
        source = SourceIdentity(
            contract_name=qualified_name,
            compiler_version=f"v{build_info['solcLongVersion']}",
            standard_json_input=build_info["input"],
        )
    else:
        source = SourceIdentity(contract_name=qualified_name)

    return ContractSpec(
        name=data["contractName"],
        abi=data["abi"],
        bytecode=data["bytecode"],
        source=source,
    )


def _get_dependency_contract_container(contract: ContractName) -> ContractContainer:
    for dependency_name, dependency_versions in project.dependencies.items():
        if len(dependency_versions) > 1:
            raise ValueError(f"Ambiguous {dependency_name} dependency for {contract}")
        try:
            dependency_api = list(dependency_versions.values())[0]
            contract_container = getattr(dependency_api, contract)
            return contract_container
        except AttributeError:
            continue
    raise ValueError(f"No contract found with name '{contract}'.")


def get_contract_container(contract: ContractName) -> ContractContainer:
    try:
        contract_container = getattr(project, contract)
    except AttributeError:
        # not in root project; check dependencies
        contract_container = _get_dependency_contract_container(contract)

    return contract_container


def _ape_source_identity(contract_type) -> SourceIdentity:
    qualified_name = f"{contract_type.source_id}:{contract_type.name}"
    compilers = project.manifest.compilers or []
    for compiler in compilers:
        if contract_type.name not in (compiler.contractTypes or []):
            continue
        source_path = project.path / contract_type.source_id
        standard_json_input = {
            "language": "Solidity",
            "sources": {contract_type.source_id: {"content": source_path.read_text()}},
            "settings": compiler.settings or {},
        }
        return SourceIdentity(
            contract_name=qualified_name,
            compiler_version=f"v{compiler.version}",
            standard_json_input=standard_json_input,
        )
    return SourceIdentity(contract_name=qualified_name)


def contract_spec_from_container(container: ContractContainer) -> ContractSpec:
    """Loads a ContractSpec from a compiled ape project contract."""
    contract_type = container.contract_type
    abi = [entry.model_dump(mode="json", by_alias=True) for entry in contract_type.abi]
    return ContractSpec(
        name=contract_type.name,
        abi=abi,
        bytecode=contract_type.deployment_bytecode.bytecode,
        source=_ape_source_identity(contract_type),
    )


def load_contract_spec(
    contract_name: ContractName, artifacts_dir: Optional[Path] = None
) -> ContractSpec:
    """Loads a contract from hardhat artifacts when a directory is given, else from ape."""
    if artifacts_dir is not None:
        return load_hardhat_contract(artifacts_dir, contract_name)
    return contract_spec_from_container(get_contract_container(contract_name))
