import pytest

from rollout.exceptions import InvalidPlan, PlanCycleDetected, UnresolvedReference
from rollout.plan import DeploymentPlan, PlanEntry
from rollout.types import Literal, StepOutputRef, StepStatus
from tests.conftest import SWAP_ROUTER, make_contract


def test_authored_dependency_order_is_kept(chain_entries):
    plan = DeploymentPlan(chain_entries)
    assert plan.order == ["Token", "Vault", "Router"]
    assert len(plan) == 3
    assert all(step.status is StepStatus.PENDING for step in plan)


def test_independent_steps_keep_authored_order():
    entries = [PlanEntry(name, make_contract(name)) for name in ("C", "A", "B")]
    assert DeploymentPlan(entries).order == ["C", "A", "B"]


def test_reference_to_later_step_is_rejected(token, vault, router):
    entries = [
        PlanEntry("Token", token, [Literal("Rollout Token")]),
        PlanEntry("Router", router, [StepOutputRef("Vault"), Literal(3000)]),
        PlanEntry("Vault", vault, [StepOutputRef("Token"), Literal(SWAP_ROUTER)]),
    ]
    with pytest.raises(UnresolvedReference) as exc_info:
        DeploymentPlan(entries)
    assert exc_info.value.step_id == "Router"
    assert exc_info.value.reference == "Vault"


def test_order_is_deterministic(chain_entries):
    orders = {tuple(DeploymentPlan(list(chain_entries)).order) for _ in range(10)}
    assert orders == {("Token", "Vault", "Router")}


def test_branches_keep_authored_order():
    a = make_contract("A")
    b = make_contract("B", ("_a", "address"))
    c = make_contract("C")
    d = make_contract("D", ("_a", "address"), ("_c", "address"))
    entries = [
        PlanEntry("A", a),
        PlanEntry("C", c),
        PlanEntry("B", b, [StepOutputRef("A")]),
        PlanEntry("D", d, [StepOutputRef("A"), StepOutputRef("C")]),
    ]
    plan = DeploymentPlan(entries)
    assert plan.order == ["A", "C", "B", "D"]
    assert plan.get("D").references == ["A", "C"]


def test_references_inside_arrays_are_dependencies():
    member = make_contract("Member")
    registry = make_contract("Registry", ("_members", "address[]"))
    entries = [
        PlanEntry("First", member),
        PlanEntry("Second", member),
        PlanEntry("Registry", registry, [[StepOutputRef("First"), StepOutputRef("Second")]]),
    ]
    assert DeploymentPlan(entries).order == ["First", "Second", "Registry"]
    assert DeploymentPlan(entries).get("Registry").references == ["First", "Second"]


def test_forward_reference_inside_array_is_rejected():
    member = make_contract("Member")
    registry = make_contract("Registry", ("_members", "address[]"))
    entries = [
        PlanEntry("First", member),
        PlanEntry("Registry", registry, [[StepOutputRef("First"), StepOutputRef("Second")]]),
        PlanEntry("Second", member),
    ]
    with pytest.raises(UnresolvedReference):
        DeploymentPlan(entries)


def test_cycle_is_rejected():
    a = make_contract("A", ("_b", "address"))
    b = make_contract("B", ("_a", "address"))
    entries = [
        PlanEntry("A", a, [StepOutputRef("B")]),
        PlanEntry("B", b, [StepOutputRef("A")]),
        PlanEntry("C", make_contract("C")),
    ]
    with pytest.raises(PlanCycleDetected) as exc_info:
        DeploymentPlan(entries)
    assert exc_info.value.step_ids == ["A", "B"]


def test_self_reference_is_a_cycle():
    a = make_contract("A", ("_self", "address"))
    with pytest.raises(PlanCycleDetected):
        DeploymentPlan([PlanEntry("A", a, [StepOutputRef("A")])])


def test_unknown_reference_is_rejected(vault):
    entries = [PlanEntry("Vault", vault, [StepOutputRef("Token"), Literal(SWAP_ROUTER)])]
    with pytest.raises(UnresolvedReference) as exc_info:
        DeploymentPlan(entries)
    assert exc_info.value.step_id == "Vault"
    assert exc_info.value.reference == "Token"


@pytest.mark.parametrize(
    "args",
    [
        [StepOutputRef("Token"), SWAP_ROUTER],
        [StepOutputRef("Token"), Literal(SWAP_ROUTER), "extra"],
        [[StepOutputRef("Token"), SWAP_ROUTER], Literal(SWAP_ROUTER)],
        [StepOutputRef("Token"), ("Token",)],
    ],
)
def test_untagged_parameter_is_rejected(token, vault, args):
    entries = [
        PlanEntry("Token", token, [Literal("Rollout Token")]),
        PlanEntry("Vault", vault, args),
    ]
    with pytest.raises(InvalidPlan, match="Vault"):
        DeploymentPlan(entries)


def test_duplicate_step_id_is_rejected(token):
    entries = [
        PlanEntry("Token", token, [Literal("one")]),
        PlanEntry("Token", token, [Literal("two")]),
    ]
    with pytest.raises(InvalidPlan, match="Duplicate"):
        DeploymentPlan(entries)


def test_empty_step_id_is_rejected(token):
    with pytest.raises(InvalidPlan):
        DeploymentPlan([PlanEntry("", token, [Literal("one")])])


def test_empty_plan_is_rejected():
    with pytest.raises(InvalidPlan):
        DeploymentPlan([])


def test_same_contract_deployed_under_two_ids(token):
    entries = [
        PlanEntry("TokenA", token, [Literal("A")]),
        PlanEntry("TokenB", token, [Literal("B")]),
    ]
    plan = DeploymentPlan(entries)
    assert plan.order == ["TokenA", "TokenB"]
    assert plan.get("TokenA").contract == plan.get("TokenB").contract


def test_lookup(chain_entries):
    plan = DeploymentPlan(chain_entries)
    assert "Vault" in plan
    assert "Missing" not in plan
    assert plan.get("Vault").references == ["Token"]
    with pytest.raises(KeyError):
        plan.get("Missing")
