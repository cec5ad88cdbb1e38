import pytest
import yaml

from rollout.constants import MANIFESTS_DIR
from rollout.exceptions import InvalidPlan, UnresolvedReference
from rollout.params import Manifest
from rollout.types import Literal, StepOutputRef
from tests.conftest import DEPLOYER, SWAP_ROUTER, make_contract

MANIFEST = f"""
deployment:
  name: rollout-test
  chain_id: 137
  confirmations: 3
  timeout: 120
  verification:
    confirmations: 10
    max_attempts: 5
    backoff: 2

artifacts:
  dir: ./artifacts/
  filename: rollout-test.json

constants:
  SWAP_ROUTER: "{SWAP_ROUTER}"
  FEE: 3000

contracts:
  - Token:
      constructor:
        _name: Rollout Token
  - Vault:
      constructor:
        _token: $Token
        _router: $SWAP_ROUTER
  - MainRouter:
      contract_type: Router
      constructor:
        _vault: $Vault
        _fee: $FEE
"""


@pytest.fixture
def contracts(token, vault, router):
    return {c.name: c for c in (token, vault, router)}


@pytest.fixture
def load_contract(contracts):
    return contracts.__getitem__


@pytest.fixture
def manifest_filepath(tmp_path):
    filepath = tmp_path / "rollout-test.yml"
    filepath.write_text(MANIFEST)
    return filepath


def _config(**contracts):
    return {
        "deployment": {"chain_id": 137},
        "contracts": [{step_id: data} for step_id, data in contracts.items()],
    }


def test_load_manifest(manifest_filepath):
    manifest = Manifest.from_yaml(manifest_filepath)
    assert manifest.name == "rollout-test"
    assert manifest.chain_id == 137
    assert manifest.path == manifest_filepath
    assert manifest.step_ids == ["Token", "Vault", "MainRouter"]
    assert manifest.contract_types == {"Token": "Token", "Vault": "Vault", "MainRouter": "Router"}


def test_variables_become_slots(manifest_filepath):
    parameters = Manifest.from_yaml(manifest_filepath).parameters
    assert list(parameters["MainRouter"].values()) == [StepOutputRef("Vault"), Literal(3000)]
    assert list(parameters["Token"].values()) == [Literal("Rollout Token")]
    assert list(parameters["Vault"].values()) == [StepOutputRef("Token"), Literal(SWAP_ROUTER)]


def test_build_plan(manifest_filepath, load_contract):
    plan = Manifest.from_yaml(manifest_filepath).build_plan(load_contract)
    assert plan.order == ["Token", "Vault", "MainRouter"]
    assert plan.get("MainRouter").contract.name == "Router"


def test_deployer_variable():
    owned = make_contract("Owned", ("_owner", "address"))
    config = _config(Owned={"constructor": {"_owner": "$deployer"}})

    manifest = Manifest(config, deployer=DEPLOYER)
    assert list(manifest.parameters["Owned"].values()) == [Literal(DEPLOYER)]
    assert len(manifest.build_plan(lambda name: owned)) == 1


def test_list_parameters():
    registry = make_contract("Registry", ("_members", "address[]"))
    member = make_contract("Member")
    config = _config(
        First=None,
        Second=None,
        Registry={
            "contract_type": "Registry",
            "constructor": {"_members": ["$First", "$Second", SWAP_ROUTER]},
        },
    )
    config["contracts"][0] = "First"
    config["contracts"][1] = {"Second": {"contract_type": "Member"}}

    manifest = Manifest(config)
    assert manifest.parameters["Registry"]["_members"] == [
        StepOutputRef("First"),
        StepOutputRef("Second"),
        Literal(SWAP_ROUTER),
    ]
    contracts = {"First": member, "Member": member, "Registry": registry}
    plan = manifest.build_plan(contracts.__getitem__)
    assert plan.order == ["First", "Second", "Registry"]


def test_unknown_constant():
    config = _config(Token={"constructor": {"_name": "$MISSING"}})
    with pytest.raises(InvalidPlan, match="MISSING"):
        Manifest(config)


def test_unknown_step_reference():
    config = _config(Vault={"constructor": {"_token": "$Token", "_router": SWAP_ROUTER}})
    with pytest.raises(UnresolvedReference) as exc_info:
        Manifest(config)
    assert exc_info.value.step_id == "Vault"
    assert exc_info.value.reference == "Token"


@pytest.mark.parametrize(
    "constructor,match",
    [
        ({}, "length mismatch"),
        ({"name": "Rollout Token"}, "does not match the expected ABI name"),
        ({"_name": 42}, "does not match expected ABI type"),
    ],
)
def test_constructor_validation(token, constructor, match):
    manifest = Manifest(_config(Token={"constructor": constructor}))
    with pytest.raises(InvalidPlan, match=match):
        manifest.build_plan(lambda name: token)


def test_reference_requires_address_parameter(token, router):
    config = _config(
        Token={"constructor": {"_name": "Rollout Token"}},
        Router={"constructor": {"_vault": SWAP_ROUTER, "_fee": "$Token"}},
    )
    contracts = {"Token": token, "Router": router}
    with pytest.raises(InvalidPlan, match="_fee"):
        Manifest(config).build_plan(contracts.__getitem__)


@pytest.mark.parametrize(
    "config",
    [
        {},
        {"deployment": {"chain_id": 137}},
        {"contracts": [{"A": {}, "B": {}}]},
        {"contracts": [42]},
    ],
)
def test_malformed_manifest(config):
    with pytest.raises(InvalidPlan):
        Manifest(config)


def test_policies(manifest_filepath):
    manifest = Manifest.from_yaml(manifest_filepath)

    confirmation = manifest.confirmation_policy()
    assert confirmation.confirmations == 3
    assert confirmation.timeout == 120
    assert manifest.confirmation_policy(confirmations=8).confirmations == 8

    verification = manifest.verification_policy()
    assert verification.confirmations == 10
    assert verification.max_attempts == 5
    assert verification.backoff == 2
    assert verification.delay is None
    assert manifest.verification_policy(confirmations=12).confirmations == 12


def test_default_policies():
    manifest = Manifest(_config(Token={"constructor": {"_name": "Rollout Token"}}))
    assert manifest.confirmation_policy().confirmations == 6
    assert manifest.confirmation_policy().poll_interval == 5
    verification = manifest.verification_policy()
    assert verification.confirmations == 6
    assert verification.max_attempts == 3
    assert verification.backoff == 10
    assert manifest.verification_api_url == "https://api.etherscan.io/v2/api"


def test_delay_fallback_is_opt_in():
    config = _config(Token={"constructor": {"_name": "Rollout Token"}})
    config["deployment"]["verification"] = {"delay": 60}
    assert Manifest(config).verification_policy().delay == 60


@pytest.mark.parametrize("max_attempts", [0, -1])
def test_verification_needs_an_attempt(max_attempts):
    config = _config(Token={"constructor": {"_name": "Rollout Token"}})
    config["deployment"]["verification"] = {"max_attempts": max_attempts}
    with pytest.raises(InvalidPlan, match="max_attempts"):
        Manifest(config).verification_policy()


@pytest.mark.parametrize(
    "filepath,step_ids",
    [
        (MANIFESTS_DIR / "polygon" / "yield.yml", ["AutoYield", "MultiYield"]),
        (MANIFESTS_DIR / "mainnet" / "compoundor.yml", ["Compoundor", "MultiCompoundor"]),
    ],
)
def test_packaged_manifests(filepath, step_ids):
    manifest = Manifest.from_yaml(filepath)
    assert manifest.step_ids == step_ids
    dependent = manifest.parameters[step_ids[1]]
    assert list(dependent.values()) == [StepOutputRef(step_ids[0])]
    with open(filepath) as file:
        assert yaml.safe_load(file)["deployment"]["chain_id"] == manifest.chain_id


def test_dependency_must_be_listed_first(router, vault):
    config = _config(
        Router={"constructor": {"_vault": "$Vault", "_fee": 3000}},
        Vault={"constructor": {"_token": SWAP_ROUTER, "_router": SWAP_ROUTER}},
    )
    contracts = {"Router": router, "Vault": vault}
    with pytest.raises(UnresolvedReference, match="forward reference"):
        Manifest(config).build_plan(contracts.__getitem__)
