import threading
import time
from typing import Callable, Dict, List, Mapping, Optional

from ape.logging import logger

from rollout.exceptions import InvalidPlan, StepError
from rollout.network import NetworkClient
from rollout.plan import DeploymentPlan
from rollout.step import ConfirmationPolicy, StepRunner
from rollout.types import (
    DeployedArtifact,
    DeploymentReport,
    DeploymentStep,
    StepFailure,
    StepId,
    StepReport,
    StepStatus,
)
from rollout.verification import Verifier

# Called before a step starts; returning False cancels the rest of the plan.
BeforeStepHook = Callable[[DeploymentStep, Dict[StepId, DeployedArtifact]], bool]


def _step_report(step: DeploymentStep, restored: bool = False) -> StepReport:
    artifact = step.artifact
    return StepReport(
        step_id=step.id,
        contract_name=step.contract.name,
        address=artifact.address,
        tx_hash=artifact.tx_hash,
        confirmations=artifact.confirmations,
        verified=step.status is StepStatus.VERIFIED,
        warning=step.warning,
        restored=restored,
    )


class Orchestrator:
    """
    Executes a DeploymentPlan one step at a time, feeding each deployed
    address into the steps that reference it.

    Execution never raises for step failures: the first fatal error halts
    the plan and is returned in the report, next to everything deployed so far.
    """

    def __init__(
        self,
        client: NetworkClient,
        policy: ConfirmationPolicy = ConfirmationPolicy(),
        verifier: Optional[Verifier] = None,
        before_step: Optional[BeforeStepHook] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.runner = StepRunner(
            client=client, policy=policy, verifier=verifier, sleep=sleep, clock=clock
        )
        self.before_step = before_step
        self._cancel_requested = threading.Event()

    def cancel(self) -> None:
        """Requests cancellation; honoured before the next step starts."""
        self._cancel_requested.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    def execute(
        self, plan: DeploymentPlan, completed: Optional[Mapping[StepId, DeployedArtifact]] = None
    ) -> DeploymentReport:
        """
        Runs every step of the plan in order. Steps found in `completed`
        (artifacts of a previous, interrupted run) are not redeployed.
        """
        if any(step.status is not StepStatus.PENDING for step in plan):
            raise InvalidPlan("Plan has already been executed; build a fresh plan to resume it.")
        completed = dict(completed or {})
        unknown = [step_id for step_id in completed if step_id not in plan]
        if unknown:
            raise InvalidPlan(f"Completed artifacts for unknown steps: {', '.join(unknown)}")

        artifacts: Dict[StepId, DeployedArtifact] = dict()
        reports: List[StepReport] = list()

        def report(**kwargs) -> DeploymentReport:
            return DeploymentReport(artifacts=list(artifacts.values()), steps=reports, **kwargs)

        total = len(plan)
        for number, step in enumerate(plan, start=1):
            if step.id in completed:
                self._restore(step, completed[step.id])
                artifacts[step.id] = step.artifact
                reports.append(_step_report(step, restored=True))
                logger.info(
                    f"[{number}/{total}] {step.id} already deployed at {step.artifact.address}"
                )
                continue

            if self.cancel_requested:
                logger.warning(f"Rollout cancelled before {step.id}")
                return report(cancelled=True)

            logger.info(f"[{number}/{total}] Deploying {step.id} ({step.contract.name})")
            try:
                if self.before_step is not None and not self.before_step(step, dict(artifacts)):
                    logger.warning(f"Rollout cancelled before {step.id}")
                    return report(cancelled=True)
                artifact = self.runner.run(step, artifacts)
            except StepError as e:
                if step.status is not StepStatus.FAILED:
                    step.fail(e.message)
                failure = StepFailure(step_id=e.step_id, kind=e.kind, message=e.message)
                logger.error(f"Rollout halted at {step.id}: {e.kind}: {e.message}")
                return report(failure=failure)

            artifacts[step.id] = artifact
            reports.append(_step_report(step))

        return report()

    @staticmethod
    def _restore(step: DeploymentStep, artifact: DeployedArtifact) -> None:
        step.resolved_args = list(artifact.constructor_args)
        step.artifact = artifact
        step.advance(StepStatus.DEPLOYED)


def summarize(report: DeploymentReport) -> List[str]:
    """One line per step plus the outcome, for operators."""
    lines = list()
    for step in report.steps:
        if step.restored:
            status = "previously deployed"
        elif step.verified:
            status = "verified"
        else:
            status = f"NOT verified ({step.warning})" if step.warning else "not verified"
        lines.append(
            f"'{step.step_id}' ({step.contract_name}) at {step.address} "
            f"[tx {step.tx_hash}] {status}"
        )
    if report.failure is not None:
        failure = report.failure
        lines.append(f"FAILED at '{failure.step_id}': {failure.kind}: {failure.message}")
    elif report.cancelled:
        lines.append("Cancelled before completion.")
    else:
        lines.append(f"Deployed {len(report.steps)} contract(s).")
    return lines
