class DeploymentError(Exception):
    """Base exception for rollout errors."""


class InvalidPlan(DeploymentError, ValueError):
    """Raised when a deployment plan cannot be constructed."""


class PlanCycleDetected(InvalidPlan):
    """Raised when the reference graph of a plan contains a cycle."""

    def __init__(self, step_ids):
        self.step_ids = list(step_ids)
        super().__init__(f"Reference cycle detected between steps: {', '.join(self.step_ids)}")


class StepError(DeploymentError):
    """Base exception for errors tied to a single deployment step."""

    def __init__(self, step_id: str, message: str):
        self.step_id = step_id
        self.message = message
        super().__init__(f"[{step_id}] {message}")

    @property
    def kind(self) -> str:
        return type(self).__name__


class UnresolvedReference(StepError, InvalidPlan):
    """Raised when a step references an unknown or not yet deployed step."""

    def __init__(self, step_id: str, reference: str, message: str = None):
        self.reference = reference
        message = message or f"reference to '{reference}' could not be resolved"
        super().__init__(step_id, message)


class EstimationFailed(StepError):
    """Raised when gas estimation fails or yields an unusable estimate."""


class SubmissionFailed(StepError):
    """Raised when the network rejects a contract-creation transaction."""


class ConfirmationTimeout(StepError):
    """Raised when a transaction does not reach the confirmation threshold in time."""


class VerificationFailed(StepError):
    """Non-fatal; reported as a warning on an otherwise deployed step."""


class NetworkError(DeploymentError):
    """Raised by network clients on RPC or transport failures."""


class TransactionDropped(NetworkError):
    """Raised when a broadcast transaction is no longer known to the node."""
