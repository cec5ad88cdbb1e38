from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Union

from eth_typing import ABI, ChecksumAddress


StepId = str
ContractName = str


# Constructor parameters


class Literal(NamedTuple):
    """A constructor value known when the plan is authored."""

    value: Any


class StepOutputRef(NamedTuple):
    """A constructor value taken from the deployed address of another step."""

    step_id: StepId


ParameterSlot = Union[Literal, StepOutputRef, List["ParameterSlot"]]


def slot_references(slot: ParameterSlot) -> List[StepId]:
    """Returns the step ids referenced by a (possibly nested) parameter slot."""
    if isinstance(slot, StepOutputRef):
        return [slot.step_id]
    if isinstance(slot, list):
        references = list()
        for item in slot:
            references.extend(slot_references(item))
        return references
    return []


# Contracts


class SourceIdentity(NamedTuple):
    """What a verification service needs to rebuild the creation bytecode."""

    contract_name: str  # fully qualified, e.g. "contracts/AutoYield.sol:AutoYield"
    compiler_version: Optional[str] = None  # e.g. "v0.8.23+commit.f704f362"
    standard_json_input: Optional[Dict[str, Any]] = None


class ContractSpec(NamedTuple):
    name: ContractName
    abi: ABI
    bytecode: str
    source: SourceIdentity

    @property
    def constructor_inputs(self) -> List[Dict[str, Any]]:
        for entry in self.abi:
            if entry.get("type") == "constructor":
                return list(entry.get("inputs", []))
        return []


# Transactions


class GasPlan(NamedTuple):
    price: int
    limit: int


class DeploymentPayload(NamedTuple):
    """An unsigned contract-creation transaction."""

    sender: ChecksumAddress
    data: str


class TxHandle(NamedTuple):
    tx_hash: str
    nonce: Optional[int] = None


class TxReceipt(NamedTuple):
    contract_address: Optional[ChecksumAddress]
    status: int
    block_number: int


# Steps


class StepStatus(Enum):
    PENDING = 0
    ESTIMATING = 1
    SUBMITTED = 2
    CONFIRMING = 3
    DEPLOYED = 4
    VERIFYING = 5
    VERIFIED = 6
    FAILED = 7


class DeployedArtifact(NamedTuple):
    step_id: StepId
    contract_name: ContractName
    address: ChecksumAddress
    tx_hash: str
    block_number: int
    confirmations: int
    constructor_args: List[Any]


class DeploymentStep:
    """
    A single contract deployment within a plan. Status only moves forward;
    FAILED is reachable from any state before DEPLOYED.
    """

    def __init__(self, step_id: StepId, contract: ContractSpec, slots: List[ParameterSlot]):
        self.id = step_id
        self.contract = contract
        self.slots = list(slots)
        self.resolved_args: Optional[List[Any]] = None
        self.status = StepStatus.PENDING
        self.failure: Optional[str] = None
        self.warning: Optional[str] = None
        self.artifact: Optional[DeployedArtifact] = None

    def __repr__(self) -> str:
        return f"<DeploymentStep {self.id} ({self.contract.name}) {self.status.name}>"

    @property
    def references(self) -> List[StepId]:
        return slot_references(self.slots)

    @property
    def deployed(self) -> bool:
        return self.status in (StepStatus.DEPLOYED, StepStatus.VERIFYING, StepStatus.VERIFIED)

    def advance(self, status: StepStatus) -> None:
        if status is StepStatus.FAILED:
            if self.deployed:
                raise ValueError(f"Step {self.id} is already deployed and cannot fail")
        elif status.value <= self.status.value or self.status is StepStatus.FAILED:
            raise ValueError(
                f"Invalid transition for step {self.id}: {self.status.name} -> {status.name}"
            )
        self.status = status

    def fail(self, reason: str) -> None:
        self.advance(StepStatus.FAILED)
        self.failure = reason

    def settle_verification(self, warning: Optional[str]) -> None:
        """Verification never fails a step; a deployed step just carries the warning."""
        if self.status is not StepStatus.VERIFYING:
            raise ValueError(f"Step {self.id} is not being verified")
        if warning is None:
            self.advance(StepStatus.VERIFIED)
        else:
            self.status = StepStatus.DEPLOYED
            self.warning = warning


# Verification


class VerificationOutcome(Enum):
    VERIFIED = "verified"
    ALREADY_VERIFIED = "already_verified"
    RETRYABLE = "retryable"
    REJECTED = "rejected"


class VerificationResult(NamedTuple):
    outcome: VerificationOutcome
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome in (VerificationOutcome.VERIFIED, VerificationOutcome.ALREADY_VERIFIED)


# Reporting


class StepReport(NamedTuple):
    step_id: StepId
    contract_name: ContractName
    address: ChecksumAddress
    tx_hash: str
    confirmations: int
    verified: bool
    warning: Optional[str] = None
    restored: bool = False  # deployed by a previous run


class StepFailure(NamedTuple):
    step_id: StepId
    kind: str
    message: str


class DeploymentReport(NamedTuple):
    artifacts: List[DeployedArtifact]
    steps: List[StepReport]
    failure: Optional[StepFailure] = None
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.failure is None and not self.cancelled

    @property
    def unverified(self) -> List[StepReport]:
        return [step for step in self.steps if not step.verified]

    def artifacts_by_step(self) -> Dict[StepId, DeployedArtifact]:
        return {artifact.step_id: artifact for artifact in self.artifacts}
