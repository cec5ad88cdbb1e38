from collections import OrderedDict
from typing import Dict

from ape.utils import ZERO_ADDRESS

from rollout.step import resolve_arguments
from rollout.types import DeployedArtifact, DeploymentStep, StepId


def _answered_no(question: str) -> bool:
    answer = input(question)
    return answer.lower().strip() == "n"


def _confirm_deployment(step_id: StepId) -> bool:
    """Asks the user to confirm the deployment of a single step."""
    if _answered_no(f"Deploy {step_id} Y/N? "):
        print("Aborting deployment!")
        return False
    return True


def _continue() -> bool:
    """Asks the user to continue."""
    if _answered_no("Continue Y/N? "):
        print("Aborting deployment!")
        return False
    return True


def _confirm_zero_address() -> bool:
    if _answered_no("Zero Address detected for deployment parameter; Continue? Y/N? "):
        print("Aborting deployment!")
        return False
    return True


def _contains_zero_address(value) -> bool:
    if isinstance(value, list):
        return any(_contains_zero_address(v) for v in value)
    return value == ZERO_ADDRESS


def _confirm_resolution(resolved_params: OrderedDict, step_id: StepId) -> bool:
    """Asks the user to confirm the resolved constructor parameters for a single step."""
    if len(resolved_params) == 0:
        print(f"\n(i) No constructor parameters for {step_id}")
        return _confirm_deployment(step_id)

    print(f"\nConstructor parameters for {step_id}")
    contains_zero_address = False
    for name, resolved_value in resolved_params.items():
        print(f"\t{name}={resolved_value}")
        if not contains_zero_address:
            contains_zero_address = _contains_zero_address(resolved_value)
    if not _confirm_deployment(step_id):
        return False
    if contains_zero_address:
        return _confirm_zero_address()
    return True


def confirm_step(step: DeploymentStep, artifacts: Dict[StepId, DeployedArtifact]) -> bool:
    """Orchestrator hook: shows the resolved constructor arguments and asks to proceed."""
    resolved = resolve_arguments(step, artifacts)
    names = [abi_input.get("name") for abi_input in step.contract.constructor_inputs]
    return _confirm_resolution(OrderedDict(zip(names, resolved)), step.id)
