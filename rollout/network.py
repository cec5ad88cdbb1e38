import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

from ape.logging import logger
from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_typing import ChecksumAddress
from eth_utils import to_hex
from requests.exceptions import RequestException
from web3 import Web3
from web3.exceptions import TransactionNotFound, Web3Exception

from rollout.exceptions import NetworkError, TransactionDropped
from rollout.types import DeploymentPayload, GasPlan, TxHandle, TxReceipt

_NETWORK_EXCEPTIONS = (Web3Exception, RequestException, ValueError)


class NetworkClient(ABC):
    """RPC access consumed by the orchestrator."""

    @property
    @abstractmethod
    def sender(self) -> ChecksumAddress:
        raise NotImplementedError

    @property
    @abstractmethod
    def chain_id(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def get_fee_data(self) -> int:
        """Returns the current network gas price in wei."""
        raise NotImplementedError

    @abstractmethod
    def estimate_gas(self, payload: DeploymentPayload) -> int:
        raise NotImplementedError

    @abstractmethod
    def broadcast(self, payload: DeploymentPayload, gas: GasPlan) -> TxHandle:
        raise NotImplementedError

    @abstractmethod
    def get_confirmations(self, tx: TxHandle) -> int:
        """Returns 0 while pending; raises TransactionDropped if the node forgot the tx."""
        raise NotImplementedError

    @abstractmethod
    def get_receipt(self, tx: TxHandle) -> TxReceipt:
        raise NotImplementedError


class Web3NetworkClient(NetworkClient):
    """
    A web3 backed network client that signs locally with an explicitly
    provided account. The nonce is fetched from the node on every broadcast.
    Without an account the client is read-only.
    """

    def __init__(self, w3: Web3, account: Optional[LocalAccount] = None):
        self.w3 = w3
        self._account = account

    @classmethod
    def from_private_key(cls, w3: Web3, private_key: str) -> "Web3NetworkClient":
        return cls(w3=w3, account=Account.from_key(private_key))

    @property
    def sender(self) -> ChecksumAddress:
        if self._account is None:
            raise NetworkError("No signing credential configured")
        return self._account.address

    @property
    def chain_id(self) -> int:
        return self.w3.eth.chain_id

    def get_fee_data(self) -> int:
        try:
            return self.w3.eth.gas_price
        except _NETWORK_EXCEPTIONS as e:
            raise NetworkError(f"Unable to fetch gas price: {e}") from e

    def estimate_gas(self, payload: DeploymentPayload) -> int:
        try:
            return self.w3.eth.estimate_gas({"from": payload.sender, "data": payload.data})
        except _NETWORK_EXCEPTIONS as e:
            raise NetworkError(f"Gas estimation failed: {e}") from e

    def broadcast(self, payload: DeploymentPayload, gas: GasPlan) -> TxHandle:
        try:
            nonce = self.w3.eth.get_transaction_count(self.sender, "pending")
            transaction = {
                "from": payload.sender,
                "data": payload.data,
                "value": 0,
                "nonce": nonce,
                "gas": gas.limit,
                "gasPrice": gas.price,
                "chainId": self.chain_id,
            }
            signed = self._account.sign_transaction(transaction)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except _NETWORK_EXCEPTIONS as e:
            raise NetworkError(f"Broadcast rejected: {e}") from e
        return TxHandle(tx_hash=to_hex(tx_hash), nonce=nonce)

    def get_confirmations(self, tx: TxHandle) -> int:
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx.tx_hash)
        except TransactionNotFound:
            self._check_pending(tx)
            return 0
        except _NETWORK_EXCEPTIONS as e:
            raise NetworkError(f"Unable to fetch receipt for {tx.tx_hash}: {e}") from e

        try:
            current_block = self.w3.eth.block_number
        except _NETWORK_EXCEPTIONS as e:
            raise NetworkError(f"Unable to fetch block number: {e}") from e
        return max(current_block - receipt["blockNumber"] + 1, 0)

    def _check_pending(self, tx: TxHandle) -> None:
        try:
            self.w3.eth.get_transaction(tx.tx_hash)
        except TransactionNotFound:
            raise TransactionDropped(f"Transaction {tx.tx_hash} was dropped or replaced")
        except _NETWORK_EXCEPTIONS as e:
            raise NetworkError(f"Unable to fetch transaction {tx.tx_hash}: {e}") from e

    def get_receipt(self, tx: TxHandle) -> TxReceipt:
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx.tx_hash)
        except _NETWORK_EXCEPTIONS as e:
            raise NetworkError(f"Unable to fetch receipt for {tx.tx_hash}: {e}") from e
        return TxReceipt(
            contract_address=receipt.get("contractAddress"),
            status=receipt["status"],
            block_number=receipt["blockNumber"],
        )


def wait_for_confirmations(
    client: NetworkClient,
    tx: TxHandle,
    confirmations: int,
    timeout: float,
    poll_interval: float,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> int:
    """
    Polls the client until the transaction is buried under the requested
    number of confirmations. Transient network errors are polled through;
    TransactionDropped is raised at once and TimeoutError once the deadline passes.
    """
    deadline = clock() + timeout
    observed = 0
    last_error = None
    while True:
        try:
            observed = client.get_confirmations(tx)
        except TransactionDropped:
            raise
        except NetworkError as e:
            last_error = e
            logger.warning(f"{tx.tx_hash}: confirmation check failed, retrying: {e}")
        else:
            last_error = None
            if observed >= confirmations:
                return observed
        if clock() >= deadline:
            reason = f" (last error: {last_error})" if last_error is not None else ""
            raise TimeoutError(
                f"{tx.tx_hash} reached {observed}/{confirmations} confirmations "
                f"within {timeout} seconds{reason}"
            )
        logger.debug(f"{tx.tx_hash}: {observed}/{confirmations} confirmations")
        sleep(poll_interval)
