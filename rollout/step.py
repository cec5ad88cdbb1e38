import time
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from ape.logging import logger
from eth_abi.exceptions import EncodingError

from rollout.constants import (
    DEFAULT_CONFIRMATION_TIMEOUT,
    DEFAULT_CONFIRMATIONS,
    DEFAULT_POLL_INTERVAL,
)
from rollout.exceptions import (
    ConfirmationTimeout,
    EstimationFailed,
    NetworkError,
    StepError,
    SubmissionFailed,
    TransactionDropped,
    UnresolvedReference,
    VerificationFailed,
)
from rollout.gas import gas_plan
from rollout.network import NetworkClient, wait_for_confirmations
from rollout.types import (
    DeployedArtifact,
    DeploymentPayload,
    DeploymentStep,
    GasPlan,
    Literal,
    ParameterSlot,
    StepId,
    StepOutputRef,
    StepStatus,
    TxHandle,
)
from rollout.utils import build_payload
from rollout.verification import Verifier


class ConfirmationPolicy(NamedTuple):
    confirmations: int = DEFAULT_CONFIRMATIONS
    timeout: float = DEFAULT_CONFIRMATION_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL


def resolve_slot(
    step_id: StepId, slot: ParameterSlot, artifacts: Dict[StepId, DeployedArtifact]
) -> Any:
    """Resolves a single parameter slot or a list of parameter slots."""
    if isinstance(slot, list):
        return [resolve_slot(step_id, s, artifacts) for s in slot]

    if isinstance(slot, StepOutputRef):
        artifact = artifacts.get(slot.step_id)
        if artifact is None:
            raise UnresolvedReference(
                step_id, slot.step_id, f"step '{slot.step_id}' has not been deployed"
            )
        return artifact.address

    if isinstance(slot, Literal):
        return slot.value

    raise TypeError(f"Unexpected parameter slot {slot!r} for step {step_id}")


def resolve_arguments(
    step: DeploymentStep, artifacts: Dict[StepId, DeployedArtifact]
) -> List[Any]:
    return [resolve_slot(step.id, slot, artifacts) for slot in step.slots]


class StepRunner:
    """Drives a single DeploymentStep from PENDING to DEPLOYED (or VERIFIED)."""

    def __init__(
        self,
        client: NetworkClient,
        policy: ConfirmationPolicy = ConfirmationPolicy(),
        verifier: Optional[Verifier] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.policy = policy
        self.verifier = verifier
        self._sleep = sleep
        self._clock = clock

    def run(
        self, step: DeploymentStep, artifacts: Dict[StepId, DeployedArtifact]
    ) -> DeployedArtifact:
        try:
            artifact, tx = self._deploy(step, artifacts)
        except StepError as e:
            step.fail(e.message)
            logger.error(f"{step.id} failed: {e.message}")
            raise

        step.artifact = artifact
        logger.success(f"'{step.id}' deployed to: {artifact.address}")

        if self.verifier is not None:
            self._verify(step, tx)
        return artifact

    def _deploy(self, step: DeploymentStep, artifacts: Dict[StepId, DeployedArtifact]):
        step.resolved_args = resolve_arguments(step, artifacts)
        step.advance(StepStatus.ESTIMATING)

        try:
            sender = self.client.sender
        except NetworkError as e:
            raise EstimationFailed(step.id, str(e)) from e
        try:
            payload = build_payload(step.contract, step.resolved_args, sender=sender)
        except (EncodingError, ValueError, TypeError) as e:
            raise EstimationFailed(step.id, f"cannot encode constructor arguments: {e}") from e
        gas = self._plan_gas(step, payload)

        tx = self._submit(step, payload, gas)
        step.advance(StepStatus.SUBMITTED)

        step.advance(StepStatus.CONFIRMING)
        confirmations = self._await_confirmations(step, tx)
        address, block_number = self._read_receipt(step, tx)
        step.advance(StepStatus.DEPLOYED)

        artifact = DeployedArtifact(
            step_id=step.id,
            contract_name=step.contract.name,
            address=address,
            tx_hash=tx.tx_hash,
            block_number=block_number,
            confirmations=confirmations,
            constructor_args=list(step.resolved_args),
        )
        return artifact, tx

    def _plan_gas(self, step: DeploymentStep, payload: DeploymentPayload) -> GasPlan:
        try:
            price = self.client.get_fee_data()
            raw_estimate = self.client.estimate_gas(payload)
        except NetworkError as e:
            raise EstimationFailed(step.id, str(e)) from e
        gas = gas_plan(price=price, raw_estimate=raw_estimate, step_id=step.id)
        logger.info(
            f"Deploying {step.id} ({step.contract.name}) "
            f"with gas price {gas.price} and gas limit {gas.limit} (estimate {raw_estimate})"
        )
        return gas

    def _submit(self, step: DeploymentStep, payload: DeploymentPayload, gas: GasPlan) -> TxHandle:
        try:
            tx = self.client.broadcast(payload, gas)
        except NetworkError as e:
            raise SubmissionFailed(step.id, str(e)) from e
        logger.info(f"{step.id} submitted in {tx.tx_hash} (nonce {tx.nonce})")
        return tx

    def _await_confirmations(self, step: DeploymentStep, tx: TxHandle) -> int:
        try:
            return wait_for_confirmations(
                client=self.client,
                tx=tx,
                confirmations=self.policy.confirmations,
                timeout=self.policy.timeout,
                poll_interval=self.policy.poll_interval,
                sleep=self._sleep,
                clock=self._clock,
            )
        except (TimeoutError, TransactionDropped) as e:
            raise ConfirmationTimeout(step.id, str(e)) from e

    def _read_receipt(self, step: DeploymentStep, tx: TxHandle):
        try:
            receipt = self.client.get_receipt(tx)
        except NetworkError as e:
            raise ConfirmationTimeout(step.id, f"receipt unavailable for {tx.tx_hash}: {e}") from e
        if receipt.status != 1:
            raise SubmissionFailed(step.id, f"deployment transaction {tx.tx_hash} reverted")
        if not receipt.contract_address:
            raise SubmissionFailed(step.id, f"{tx.tx_hash} did not create a contract")
        return receipt.contract_address, receipt.block_number

    def _verify(self, step: DeploymentStep, tx: TxHandle) -> None:
        step.advance(StepStatus.VERIFYING)
        try:
            result = self.verifier.verify(step.contract, step.artifact, tx)
        except VerificationFailed as e:
            logger.warning(f"{step.id} deployed but not verified: {e.message}")
            step.settle_verification(warning=e.message)
        else:
            logger.success(f"'{step.id}' verified ({result.outcome.value})")
            step.settle_verification(warning=None)
