from collections import defaultdict

import pytest
from eth_utils import to_checksum_address

from rollout.exceptions import NetworkError, TransactionDropped
from rollout.network import NetworkClient
from rollout.plan import PlanEntry
from rollout.types import (
    ContractSpec,
    Literal,
    SourceIdentity,
    StepOutputRef,
    TxHandle,
    TxReceipt,
    VerificationOutcome,
    VerificationResult,
)

DEPLOYER = to_checksum_address("0x" + "de" * 20)
GAS_PRICE = 30 * 10**9
RAW_ESTIMATE = 1_000_000
SWAP_ROUTER = "0xE592427A0AEce92De3Edee1F18E0157C05861564"


def _constructor(*inputs):
    return {
        "type": "constructor",
        "stateMutability": "nonpayable",
        "inputs": [{"name": name, "type": abi_type} for name, abi_type in inputs],
    }


def make_contract(name, *inputs, bytecode=None):
    return ContractSpec(
        name=name,
        abi=[_constructor(*inputs)],
        bytecode=bytecode or "0x6080604052" + name.encode().hex(),
        source=SourceIdentity(
            contract_name=f"contracts/{name}.sol:{name}",
            compiler_version="v0.8.23+commit.f704f362",
            standard_json_input={"language": "Solidity", "sources": {}, "settings": {}},
        ),
    )


class FakeClock:
    """A monotonic clock that only moves when slept on."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = list()

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeNetworkClient(NetworkClient):
    """
    In-memory network. Every broadcast gets the next nonce; each poll of a
    transaction adds `confirmations_per_poll` confirmations unless the tx is stuck.
    """

    def __init__(self, confirmations_per_poll=6, estimate=RAW_ESTIMATE, start_nonce=0):
        self.confirmations_per_poll = confirmations_per_poll
        self.estimate = estimate
        self.nonce = start_nonce
        self.estimates = list()
        self.broadcasts = list()
        self.polls = defaultdict(int)
        self.estimate_errors = set()  # contract names
        self.broadcast_errors = set()  # contract names
        self.stuck = set()  # contract names
        self.dropped = set()  # contract names
        self.reverted = set()  # contract names
        self.poll_errors = defaultdict(int)  # contract name -> polls left to fail
        self.on_poll = None
        self._contracts = dict()  # tx hash -> contract name
        self._bytecodes = dict()  # bytecode -> contract name

    def register(self, *contracts):
        for contract in contracts:
            self._bytecodes[contract.bytecode] = contract.name

    def _contract_name(self, payload):
        for bytecode, name in self._bytecodes.items():
            if payload.data.startswith(bytecode):
                return name
        return None

    @property
    def sender(self):
        return DEPLOYER

    @property
    def chain_id(self):
        return 137

    def get_fee_data(self):
        return GAS_PRICE

    def estimate_gas(self, payload):
        self.estimates.append(payload)
        if self._contract_name(payload) in self.estimate_errors:
            raise NetworkError("execution reverted")
        return self.estimate

    def broadcast(self, payload, gas):
        name = self._contract_name(payload)
        if name in self.broadcast_errors:
            raise NetworkError("nonce too low")
        nonce = self.nonce
        self.nonce += 1
        tx = TxHandle(tx_hash="0x" + f"{nonce + 1:064x}", nonce=nonce)
        self.broadcasts.append((name, payload, gas, tx))
        self._contracts[tx.tx_hash] = name
        return tx

    def address_for(self, tx):
        return to_checksum_address("0x" + f"{0xC0DE0000 + tx.nonce:040x}")

    def get_confirmations(self, tx):
        name = self._contracts[tx.tx_hash]
        if self.poll_errors[name] > 0:
            self.poll_errors[name] -= 1
            raise NetworkError("502 Bad Gateway")
        self.polls[tx.tx_hash] += 1
        if self.on_poll is not None:
            self.on_poll(tx)
        if name in self.dropped:
            raise TransactionDropped(f"Transaction {tx.tx_hash} was dropped or replaced")
        if name in self.stuck:
            return 0
        return self.polls[tx.tx_hash] * self.confirmations_per_poll

    def get_receipt(self, tx):
        name = self._contracts[tx.tx_hash]
        if name in self.reverted:
            return TxReceipt(contract_address=None, status=0, block_number=100 + tx.nonce)
        return TxReceipt(
            contract_address=self.address_for(tx), status=1, block_number=100 + tx.nonce
        )


class FakeVerifier:
    """
    A scripted VerificationRequester; the last scripted result repeats.
    A scripted exception is raised instead of returned.
    """

    def __init__(self, *results):
        self.results = list(results) or [VerificationResult(VerificationOutcome.VERIFIED)]
        self.submissions = list()

    def submit(self, address, source, constructor_args):
        self.submissions.append((address, source, constructor_args))
        index = min(len(self.submissions), len(self.results)) - 1
        result = self.results[index]
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def token():
    return make_contract("Token", ("_name", "string"))


@pytest.fixture
def vault():
    return make_contract("Vault", ("_token", "address"), ("_router", "address"))


@pytest.fixture
def router():
    return make_contract("Router", ("_vault", "address"), ("_fee", "uint256"))


@pytest.fixture
def client(token, vault, router):
    client = FakeNetworkClient()
    client.register(token, vault, router)
    return client


@pytest.fixture
def chain_entries(token, vault, router):
    """Token <- Vault <- Router, authored in dependency order."""
    return [
        PlanEntry("Token", token, [Literal("Rollout Token")]),
        PlanEntry("Vault", vault, [StepOutputRef("Token"), Literal(SWAP_ROUTER)]),
        PlanEntry("Router", router, [StepOutputRef("Vault"), Literal(3000)]),
    ]
