import heapq
from collections import defaultdict
from typing import Dict, Iterator, List, NamedTuple, Sequence, Tuple

from rollout.exceptions import InvalidPlan, PlanCycleDetected, UnresolvedReference
from rollout.types import (
    ContractSpec,
    DeploymentStep,
    Literal,
    ParameterSlot,
    StepId,
    StepOutputRef,
)


class PlanEntry(NamedTuple):
    """A single authored entry of a deployment plan."""

    step_id: StepId
    contract: ContractSpec
    args: List[ParameterSlot] = []


def _check_step_ids(steps: Sequence[DeploymentStep]) -> Dict[StepId, int]:
    positions = dict()
    for position, step in enumerate(steps):
        if not step.id:
            raise InvalidPlan(f"Step at position {position} has no id.")
        if step.id in positions:
            raise InvalidPlan(f"Duplicate step id '{step.id}'.")
        positions[step.id] = position
    return positions


def _check_slot(step_id: StepId, slot: ParameterSlot) -> None:
    if isinstance(slot, list):
        for item in slot:
            _check_slot(step_id, item)
    elif not isinstance(slot, (Literal, StepOutputRef)):
        raise InvalidPlan(
            f"Step '{step_id}' has a parameter {slot!r} that is neither a Literal "
            "nor a StepOutputRef."
        )


def _check_slots(steps: Sequence[DeploymentStep]) -> None:
    for step in steps:
        for slot in step.slots:
            _check_slot(step.id, slot)


def topological_order(steps: Sequence[DeploymentStep]) -> List[DeploymentStep]:
    """
    Orders steps so that every step comes after the steps it references, with
    ties broken by authored position. A reference must also be authored before
    the step using it, so a valid plan always runs in its authored order.
    """
    positions = _check_step_ids(steps)
    _check_slots(steps)

    dependents = defaultdict(list)
    indegree = [0] * len(steps)
    for position, step in enumerate(steps):
        for reference in sorted(set(step.references), key=lambda r: positions.get(r, -1)):
            if reference not in positions:
                raise UnresolvedReference(
                    step.id, reference, f"reference to unknown step '{reference}'"
                )
            if reference == step.id:
                raise PlanCycleDetected([step.id])
            dependents[positions[reference]].append(position)
            indegree[position] += 1

    ready = [position for position, degree in enumerate(indegree) if degree == 0]
    heapq.heapify(ready)
    ordered = list()
    while ready:
        position = heapq.heappop(ready)
        ordered.append(position)
        for dependent in dependents[position]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heapq.heappush(ready, dependent)

    if len(ordered) != len(steps):
        placed = set(ordered)
        raise PlanCycleDetected(
            [step.id for position, step in enumerate(steps) if position not in placed]
        )

    for position, step in enumerate(steps):
        for reference in step.references:
            if positions[reference] > position:
                raise UnresolvedReference(
                    step.id, reference, f"forward reference to step '{reference}'"
                )
    return [steps[position] for position in ordered]


class DeploymentPlan:
    """An ordered collection of deployment steps forming a DAG of address references."""

    def __init__(self, entries: Sequence[PlanEntry]):
        authored = [DeploymentStep(e.step_id, e.contract, e.args) for e in entries]
        if not authored:
            raise InvalidPlan("A deployment plan needs at least one step.")
        self._steps: Tuple[DeploymentStep, ...] = tuple(topological_order(authored))
        self._index = {step.id: step for step in self._steps}

    def __iter__(self) -> Iterator[DeploymentStep]:
        return iter(self._steps)

    def __len__(self) -> int:
        return len(self._steps)

    def __contains__(self, step_id: StepId) -> bool:
        return step_id in self._index

    def __repr__(self) -> str:
        return f"<DeploymentPlan {' -> '.join(self.order)}>"

    @property
    def steps(self) -> Tuple[DeploymentStep, ...]:
        return self._steps

    @property
    def order(self) -> List[StepId]:
        return [step.id for step in self._steps]

    def get(self, step_id: StepId) -> DeploymentStep:
        try:
            return self._index[step_id]
        except KeyError:
            raise KeyError(f"No step '{step_id}' in plan")
