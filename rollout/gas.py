from rollout.constants import GAS_LIMIT_MARGIN_DENOMINATOR, GAS_LIMIT_MARGIN_NUMERATOR
from rollout.exceptions import EstimationFailed
from rollout.types import GasPlan, StepId


def padded_gas_limit(raw_estimate: int) -> int:
    """Returns the estimate plus a 20% margin, always rounded up."""
    return -(-raw_estimate * GAS_LIMIT_MARGIN_NUMERATOR // GAS_LIMIT_MARGIN_DENOMINATOR)


def gas_plan(price: int, raw_estimate: int, step_id: StepId = "?") -> GasPlan:
    """
    Derives the gas parameters of a single contract-creation transaction.

    The network gas price is used as is; the limit is padded so that drift
    between simulation and execution does not revert the deployment.
    """
    if raw_estimate is None or int(raw_estimate) <= 0:
        raise EstimationFailed(step_id, f"unusable gas estimate: {raw_estimate}")
    return GasPlan(price=int(price), limit=padded_gas_limit(int(raw_estimate)))
