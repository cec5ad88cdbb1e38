import json
from pathlib import Path
from typing import Any, Dict, List

import yaml
from eth_abi import encode
from eth_utils import add_0x_prefix
from eth_utils.abi import collapse_if_tuple
from hexbytes import HexBytes

from rollout.constants import ARTIFACTS_DIR, LOCAL_CHAIN_IDS
from rollout.types import ContractSpec, DeploymentPayload


def _load_yaml(filepath: Path) -> dict:
    """Loads a YAML file."""
    with open(filepath, "r") as file:
        return yaml.safe_load(file)


def _load_json(filepath: Path) -> dict:
    """Loads a JSON file."""
    with open(filepath, "r") as file:
        return json.load(file)


def is_local_chain(chain_id: int) -> bool:
    return int(chain_id) in LOCAL_CHAIN_IDS


def get_artifact_filepath(config: Dict) -> Path:
    """Returns the filepath of the registry file."""
    artifact_config = config.get("artifacts", {})
    artifact_dir = Path(artifact_config.get("dir", ARTIFACTS_DIR))
    filename = artifact_config.get("filename")
    if not filename:
        raise ValueError("artifact filename is not set in manifest file.")
    return artifact_dir / filename


def validate_config(config: Dict, chain_id: int, resume: bool = False) -> Path:
    """
    Checks the manifest against the connected network and, unless resuming,
    that the rollout has not already been published for its chain_id.
    """
    print("Validating manifest YAML...")

    deployment = config.get("deployment")
    if not deployment:
        raise ValueError("deployment is not set in manifest file.")

    config_chain_id = deployment.get("chain_id")
    if not config_chain_id:
        raise ValueError("chain_id is not set in manifest file.")

    contracts = config.get("contracts")
    if not contracts:
        raise ValueError("Manifest file missing 'contracts' field.")

    config_chain_id = int(config_chain_id)
    chain_mismatch = config_chain_id != int(chain_id)
    if chain_mismatch and not is_local_chain(chain_id):
        raise ValueError(
            f"chain_id in manifest file ({config_chain_id}) does not match "
            f"chain_id of current network ({chain_id})."
        )

    registry_filepath = get_artifact_filepath(config=config)
    if resume or not registry_filepath.exists():
        return registry_filepath

    registry_chain_ids = map(int, _load_json(registry_filepath).keys())
    if config_chain_id in registry_chain_ids:
        raise ValueError(
            f"Deployment is already published for chain_id {config_chain_id}; "
            "use --resume to continue it."
        )

    return registry_filepath


def _normalize_arg(abi_type: str, value: Any) -> Any:
    """Converts manifest friendly values (hex strings) into what the ABI encoder expects."""
    if abi_type.endswith("]"):
        base_type = abi_type[: abi_type.rindex("[")]
        return [_normalize_arg(base_type, v) for v in value]
    if abi_type.startswith("bytes") and isinstance(value, str):
        return HexBytes(value)
    return value


def encode_constructor_args(contract: ContractSpec, args: List[Any]) -> bytes:
    """ABI encodes constructor arguments, as appended to the creation bytecode."""
    inputs = contract.constructor_inputs
    if len(inputs) != len(args):
        raise ValueError(
            f"{contract.name} constructor requires {len(inputs)} argument(s), got {len(args)}."
        )
    types = [collapse_if_tuple(abi_input) for abi_input in inputs]
    values = [_normalize_arg(t, v) for t, v in zip(types, args)]
    return encode(types, values)


def build_payload(contract: ContractSpec, args: List[Any], sender: str) -> DeploymentPayload:
    encoded_args = encode_constructor_args(contract, args)
    data = add_0x_prefix(contract.bytecode) + encoded_args.hex()
    return DeploymentPayload(sender=sender, data=data)
