import json
import time
from abc import ABC, abstractmethod
from typing import Callable, NamedTuple, Optional

import requests
from ape.logging import logger
from eth_typing import ChecksumAddress

from rollout.constants import (
    DEFAULT_CONFIRMATION_TIMEOUT,
    DEFAULT_CONFIRMATIONS,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_VERIFICATION_ATTEMPTS,
    DEFAULT_VERIFICATION_BACKOFF,
    DEFAULT_VERIFICATION_STATUS_POLLS,
    ETHERSCAN_REQUEST_TIMEOUT,
    ETHERSCAN_V2_API_URL,
)
from rollout.exceptions import NetworkError, VerificationFailed
from rollout.network import NetworkClient, wait_for_confirmations
from rollout.types import (
    ContractSpec,
    DeployedArtifact,
    SourceIdentity,
    TxHandle,
    VerificationOutcome,
    VerificationResult,
)
from rollout.utils import encode_constructor_args


class VerificationRequester(ABC):
    """An external source-verification service."""

    @abstractmethod
    def submit(
        self, address: ChecksumAddress, source: SourceIdentity, constructor_args: str
    ) -> VerificationResult:
        """
        Submits a verification request; constructor_args is the ABI encoded
        hex string (no 0x prefix) appended to the creation bytecode.
        """
        raise NotImplementedError


class EtherscanVerifier(VerificationRequester):
    """Verifies contracts through an Etherscan compatible explorer API."""

    ALREADY_VERIFIED = ("already verified",)
    VERIFIED = ("pass - verified",)
    PENDING = ("pending in queue", "in progress")
    RETRYABLE = (
        "rate limit",
        "max calls per sec",
        "unable to locate contractcode",
        "unable to locate contract code",
        "temporarily unavailable",
    )

    def __init__(
        self,
        api_key: str,
        chain_id: int,
        api_url: str = ETHERSCAN_V2_API_URL,
        session: Optional[requests.Session] = None,
        status_polls: int = DEFAULT_VERIFICATION_STATUS_POLLS,
        status_interval: float = DEFAULT_POLL_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not api_key:
            raise ValueError("An explorer API key is required for verification.")
        self.api_key = api_key
        self.chain_id = chain_id
        self.api_url = api_url
        self.session = session or requests.Session()
        self.status_polls = status_polls
        self.status_interval = status_interval
        self._sleep = sleep

    def submit(
        self, address: ChecksumAddress, source: SourceIdentity, constructor_args: str
    ) -> VerificationResult:
        if not source.standard_json_input or not source.compiler_version:
            return VerificationResult(
                VerificationOutcome.REJECTED,
                f"no compiler input available for {source.contract_name}",
            )

        data = {
            "apikey": self.api_key,
            "module": "contract",
            "action": "verifysourcecode",
            "contractaddress": address,
            "sourceCode": json.dumps(source.standard_json_input),
            "codeformat": "solidity-standard-json-input",
            "contractname": source.contract_name,
            "compilerversion": source.compiler_version,
            "constructorArguements": constructor_args,  # sic
        }
        response = self._request("POST", data=data)
        if isinstance(response, VerificationResult):
            return response

        status, result = response
        if status == "1":
            return self._await_status(guid=result)
        return self._classify(result)

    def _await_status(self, guid: str) -> VerificationResult:
        params = {
            "apikey": self.api_key,
            "module": "contract",
            "action": "checkverifystatus",
            "guid": guid,
        }
        for _ in range(self.status_polls):
            self._sleep(self.status_interval)
            response = self._request("GET", params=params)
            if isinstance(response, VerificationResult):
                return response
            _, result = response
            if not self._matches(result, self.PENDING):
                return self._classify(result)
            logger.debug(f"Verification {guid} still pending")
        return VerificationResult(
            VerificationOutcome.RETRYABLE, f"verification {guid} still pending"
        )

    def _request(self, method: str, params: dict = None, data: dict = None):
        """Returns (status, result) or a VerificationResult for transport level failures."""
        query = {"chainid": self.chain_id, **(params or {})}
        try:
            response = self.session.request(
                method, self.api_url, params=query, data=data, timeout=ETHERSCAN_REQUEST_TIMEOUT
            )
        except requests.RequestException as e:
            return VerificationResult(VerificationOutcome.RETRYABLE, f"explorer unreachable: {e}")

        if response.status_code == 429 or response.status_code >= 500:
            return VerificationResult(
                VerificationOutcome.RETRYABLE, f"explorer returned HTTP {response.status_code}"
            )
        if response.status_code >= 400:
            return VerificationResult(
                VerificationOutcome.REJECTED, f"explorer returned HTTP {response.status_code}"
            )

        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            return VerificationResult(
                VerificationOutcome.RETRYABLE, "explorer returned a malformed response"
            )
        return str(payload.get("status")), str(payload.get("result", ""))

    @staticmethod
    def _matches(result: str, markers) -> bool:
        result = result.lower()
        return any(marker in result for marker in markers)

    def _classify(self, result: str) -> VerificationResult:
        if self._matches(result, self.ALREADY_VERIFIED):
            return VerificationResult(VerificationOutcome.ALREADY_VERIFIED, result)
        if self._matches(result, self.VERIFIED):
            return VerificationResult(VerificationOutcome.VERIFIED, result)
        if self._matches(result, self.RETRYABLE) or self._matches(result, self.PENDING):
            return VerificationResult(VerificationOutcome.RETRYABLE, result)
        return VerificationResult(VerificationOutcome.REJECTED, result)


class VerificationPolicy(NamedTuple):
    confirmations: int = DEFAULT_CONFIRMATIONS
    max_attempts: int = DEFAULT_VERIFICATION_ATTEMPTS
    backoff: float = DEFAULT_VERIFICATION_BACKOFF
    timeout: float = DEFAULT_CONFIRMATION_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    # Fixed wait used instead of observing confirmation depth; a degraded fallback.
    delay: Optional[float] = None


class Verifier:
    """Waits until the explorer can see a deployed contract, then submits with retries."""

    def __init__(
        self,
        requester: VerificationRequester,
        client: NetworkClient,
        policy: VerificationPolicy = VerificationPolicy(),
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if policy.max_attempts < 1:
            raise ValueError(f"Verification needs at least one attempt, got {policy.max_attempts}")
        self.requester = requester
        self.client = client
        self.policy = policy
        self._sleep = sleep
        self._clock = clock

    def verify(
        self, contract: ContractSpec, artifact: DeployedArtifact, tx: TxHandle
    ) -> VerificationResult:
        """Returns the successful result or raises VerificationFailed."""
        self._await_visibility(artifact, tx)

        encoded_args = encode_constructor_args(contract, artifact.constructor_args).hex()
        result = None
        for attempt in range(1, self.policy.max_attempts + 1):
            logger.info(
                f"Verifying {artifact.step_id} at {artifact.address} "
                f"(attempt {attempt}/{self.policy.max_attempts})"
            )
            result = self._submit(artifact, contract, encoded_args)
            if result.ok:
                return result
            if result.outcome is VerificationOutcome.REJECTED:
                raise VerificationFailed(
                    artifact.step_id, f"verification rejected: {result.reason}"
                )
            if attempt < self.policy.max_attempts:
                backoff = self.policy.backoff * 2 ** (attempt - 1)
                logger.info(
                    f"Verification of {artifact.step_id} deferred ({result.reason}); "
                    f"retrying in {backoff}s"
                )
                self._sleep(backoff)

        raise VerificationFailed(
            artifact.step_id,
            f"verification still unavailable after {self.policy.max_attempts} attempt(s): "
            f"{result.reason}",
        )

    def _submit(
        self, artifact: DeployedArtifact, contract: ContractSpec, encoded_args: str
    ) -> VerificationResult:
        try:
            return self.requester.submit(artifact.address, contract.source, encoded_args)
        except Exception as e:
            # any requester error is retried like an unavailable explorer
            logger.warning(f"Verification request for {artifact.step_id} errored: {e!r}")
            return VerificationResult(
                VerificationOutcome.RETRYABLE, f"verification request errored: {e!r}"
            )

    def _await_visibility(self, artifact: DeployedArtifact, tx: TxHandle) -> None:
        if self.policy.delay is not None:
            logger.warning(
                f"Waiting a fixed {self.policy.delay}s before verifying {artifact.step_id}; "
                "confirmation depth is not observed."
            )
            self._sleep(self.policy.delay)
            return

        if artifact.confirmations >= self.policy.confirmations:
            return
        try:
            wait_for_confirmations(
                client=self.client,
                tx=tx,
                confirmations=self.policy.confirmations,
                timeout=self.policy.timeout,
                poll_interval=self.policy.poll_interval,
                sleep=self._sleep,
                clock=self._clock,
            )
        except (TimeoutError, NetworkError) as e:
            raise VerificationFailed(
                artifact.step_id, f"not visible to the explorer yet: {e}"
            ) from e
