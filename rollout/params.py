import typing
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import Any, Callable, List, Optional

from ape.logging import logger
from ape.utils import ZERO_ADDRESS
from eth_typing import ChecksumAddress
from eth_utils.abi import collapse_if_tuple
from web3.auto import w3

from rollout.constants import (
    DEFAULT_CONFIRMATION_TIMEOUT,
    DEFAULT_CONFIRMATIONS,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_VERIFICATION_ATTEMPTS,
    DEFAULT_VERIFICATION_BACKOFF,
    DEPLOYER_VARIABLE,
    ETHERSCAN_V2_API_URL,
    VARIABLE_PREFIX,
)
from rollout.exceptions import InvalidPlan, UnresolvedReference
from rollout.plan import DeploymentPlan, PlanEntry
from rollout.step import ConfirmationPolicy
from rollout.types import ContractName, ContractSpec, Literal, ParameterSlot, StepId, StepOutputRef
from rollout.utils import _load_yaml
from rollout.verification import VerificationPolicy

CONTRACT_CONSTRUCTOR_PARAMETER_KEY = "constructor"
CONTRACT_TYPE_KEY = "contract_type"

ContractLoader = Callable[[ContractName], ContractSpec]


class VariableContext:
    def __init__(
        self,
        step_ids: List[StepId],
        step_id: StepId,
        constants: typing.Dict[str, Any] = None,
        deployer: Optional[ChecksumAddress] = None,
    ):
        self.step_ids = step_ids or list()
        self.step_id = step_id
        self.constants = constants or dict()
        self.deployer = deployer


# Variables


class Variable(ABC):
    @abstractmethod
    def to_slot(self) -> ParameterSlot:
        raise NotImplementedError

    @classmethod
    def is_variable(cls, param: Any) -> bool:
        """Returns True if the param is a variable."""
        result = isinstance(param, str) and param.startswith(VARIABLE_PREFIX)
        return result


class DeployerAccount(Variable):
    def __init__(self, context: VariableContext):
        self.address = context.deployer

    @classmethod
    def is_deployer(cls, value: str) -> bool:
        """Returns True if the variable is the special deployer variable."""
        return value == DEPLOYER_VARIABLE

    def to_slot(self) -> ParameterSlot:
        if self.address is None:
            return Literal(ZERO_ADDRESS)
        return Literal(self.address)


class Constant(Variable):
    def __init__(self, constant_name: str, context: VariableContext):
        try:
            self.constant_value = context.constants[constant_name]
        except KeyError:
            raise InvalidPlan(f"Constant '{constant_name}' not found in manifest file.")

    @classmethod
    def is_constant(cls, value: str) -> bool:
        """Returns True if the variable is a manifest constant."""
        return value.isupper()

    def to_slot(self) -> ParameterSlot:
        return Literal(self.constant_value)


class StepAddress(Variable):
    """The deployed address of another step of the same manifest."""

    def __init__(self, step_name: str, context: VariableContext):
        if step_name not in context.step_ids:
            raise UnresolvedReference(
                context.step_id, step_name, f"reference to unknown step '{step_name}'"
            )
        self.step_id = step_name

    def to_slot(self) -> ParameterSlot:
        return StepOutputRef(self.step_id)


def _variable_from_value(variable: str, context: VariableContext) -> Variable:
    variable = variable[len(VARIABLE_PREFIX) :]
    if DeployerAccount.is_deployer(variable):
        return DeployerAccount(context)
    elif Constant.is_constant(variable):
        return Constant(variable, context)
    else:
        return StepAddress(variable, context)


def _process_raw_value(value: Any, context: VariableContext) -> ParameterSlot:
    if isinstance(value, list):
        return [_process_raw_value(v, context) for v in value]

    if Variable.is_variable(value):
        return _variable_from_value(value, context).to_slot()

    return Literal(value)  # literally a value


def _process_raw_values(values: OrderedDict, context: VariableContext) -> OrderedDict:
    processed_parameters = OrderedDict()
    for name, value in values.items():
        processed_parameters[name] = _process_raw_value(value, context)

    return processed_parameters


# Validation


def _validate_slot(abi_type: str, slot: ParameterSlot) -> bool:
    if isinstance(slot, list):
        if not abi_type.endswith("]"):
            return False
        base_type = abi_type[: abi_type.rindex("[")]
        return all(_validate_slot(base_type, s) for s in slot)
    if isinstance(slot, StepOutputRef):
        return abi_type == "address"
    return w3.is_encodable(abi_type, slot.value)


def _validate_constructor_abi_inputs(
    step_id: StepId,
    contract: ContractSpec,
    parameters: OrderedDict,
) -> None:
    """Validates the constructor parameters of a step against the constructor ABI."""
    abi_inputs = contract.constructor_inputs
    if len(parameters) != len(abi_inputs):
        raise InvalidPlan(
            f"Constructor parameters length mismatch - "
            f"{step_id} ({contract.name}) ABI requires {len(abi_inputs)}, Got {len(parameters)}."
        )

    codex = enumerate(zip(abi_inputs, parameters.items()), start=0)
    for position, (abi_input, (name, slot)) in codex:
        if abi_input.get("name") != name:
            raise InvalidPlan(
                f"{step_id} constructor parameter '{name}' at position {position} does not "
                f"match the expected ABI name '{abi_input.get('name')}'."
            )

        abi_type = collapse_if_tuple(abi_input)
        if not _validate_slot(abi_type, slot):
            raise InvalidPlan(
                f"{step_id} constructor param name '{name}' at position {position} has a value "
                f"'{slot}' whose type does not match expected ABI type '{abi_type}'"
            )


# Manifest


def _get_step_ids(config: typing.Dict) -> List[StepId]:
    step_ids = list()
    for contract_info in config["contracts"]:
        if isinstance(contract_info, str):
            step_ids.append(contract_info)
        elif isinstance(contract_info, dict) and len(contract_info) == 1:
            step_ids.extend(list(contract_info.keys()))
        else:
            raise InvalidPlan("Malformed contracts section in manifest YAML.")

    return step_ids


class Manifest:
    """A YAML deployment manifest: the authored definition of a deployment plan."""

    def __init__(
        self,
        config: typing.Dict,
        path: Optional[Path] = None,
        deployer: Optional[ChecksumAddress] = None,
    ):
        if not config or not config.get("contracts"):
            raise InvalidPlan("Manifest file missing 'contracts' field.")
        self.config = config
        self.path = path
        self.deployer = deployer
        self.deployment = config.get("deployment") or dict()
        self.constants = config.get("constants") or dict()
        self.step_ids = _get_step_ids(config)
        self.parameters, self.contract_types = self._process_contracts()

    @classmethod
    def from_yaml(cls, filepath: Path, *args, **kwargs) -> "Manifest":
        config = _load_yaml(filepath)
        return cls(config, filepath, *args, **kwargs)

    @property
    def name(self) -> str:
        return self.deployment.get("name") or (self.path.stem if self.path else "rollout")

    @property
    def chain_id(self) -> Optional[int]:
        chain_id = self.deployment.get("chain_id")
        return int(chain_id) if chain_id is not None else None

    def _process_contracts(self):
        logger.info("Processing manifest constructor parameters...")
        parameters = OrderedDict()
        contract_types = OrderedDict()
        for contract_info in self.config["contracts"]:
            if isinstance(contract_info, str):
                parameters[contract_info] = OrderedDict()
                contract_types[contract_info] = contract_info
                continue

            step_id = list(contract_info.keys())[0]  # only one entry
            step_data = contract_info[step_id] or dict()
            context = VariableContext(
                step_ids=self.step_ids,
                step_id=step_id,
                constants=self.constants,
                deployer=self.deployer,
            )
            raw_values = step_data.get(CONTRACT_CONSTRUCTOR_PARAMETER_KEY) or OrderedDict()
            parameters[step_id] = _process_raw_values(raw_values, context)
            contract_types[step_id] = step_data.get(CONTRACT_TYPE_KEY, step_id)

        return parameters, contract_types

    def entries(self, load_contract: ContractLoader) -> List[PlanEntry]:
        """Loads each step's contract and validates its constructor parameters."""
        entries = list()
        for step_id, parameters in self.parameters.items():
            contract = load_contract(self.contract_types[step_id])
            _validate_constructor_abi_inputs(step_id, contract, parameters)
            entry = PlanEntry(step_id=step_id, contract=contract, args=list(parameters.values()))
            entries.append(entry)
        return entries

    def build_plan(self, load_contract: ContractLoader) -> DeploymentPlan:
        return DeploymentPlan(self.entries(load_contract))

    def confirmation_policy(self, confirmations: Optional[int] = None) -> ConfirmationPolicy:
        return ConfirmationPolicy(
            confirmations=int(
                confirmations or self.deployment.get("confirmations", DEFAULT_CONFIRMATIONS)
            ),
            timeout=float(self.deployment.get("timeout", DEFAULT_CONFIRMATION_TIMEOUT)),
            poll_interval=float(self.deployment.get("poll_interval", DEFAULT_POLL_INTERVAL)),
        )

    def verification_policy(self, confirmations: Optional[int] = None) -> VerificationPolicy:
        deployment_policy = self.confirmation_policy(confirmations)
        verification = self.deployment.get("verification") or dict()
        delay = verification.get("delay")
        max_attempts = int(verification.get("max_attempts", DEFAULT_VERIFICATION_ATTEMPTS))
        if max_attempts < 1:
            raise InvalidPlan(f"verification.max_attempts must be at least 1, got {max_attempts}.")
        return VerificationPolicy(
            confirmations=max(
                int(verification.get("confirmations", deployment_policy.confirmations)),
                deployment_policy.confirmations,
            ),
            max_attempts=max_attempts,
            backoff=float(verification.get("backoff", DEFAULT_VERIFICATION_BACKOFF)),
            timeout=deployment_policy.timeout,
            poll_interval=deployment_policy.poll_interval,
            delay=float(delay) if delay is not None else None,
        )

    @property
    def verification_api_url(self) -> str:
        verification = self.deployment.get("verification") or dict()
        return verification.get("api_url", ETHERSCAN_V2_API_URL)
