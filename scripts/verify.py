#!/usr/bin/python3

import click
from ape import networks
from ape.cli import ConnectedProviderCommand, network_option

from rollout.artifacts import load_contract_spec
from rollout.exceptions import VerificationFailed
from rollout.network import Web3NetworkClient
from rollout.options import (
    MinInt,
    artifacts_dir_option,
    confirmations_option,
    etherscan_api_key_option,
    registry_filepath_option,
)
from rollout.registry import entries_for_chain, write_registry
from rollout.types import TxHandle
from rollout.verification import EtherscanVerifier, VerificationPolicy, Verifier


@click.command(cls=ConnectedProviderCommand)
@network_option(required=True)
@registry_filepath_option
@click.option(
    "--contract-name",
    "-n",
    "step_ids",
    help="Registry name of the contract to verify",
    type=click.STRING,
    required=True,
    multiple=True,
)
@artifacts_dir_option
@etherscan_api_key_option
@confirmations_option
@click.option(
    "--delay",
    help="Wait a fixed number of seconds instead of observing confirmations",
    type=MinInt(0),
    required=False,
)
def cli(
    network, registry_filepath, step_ids, artifacts_dir, etherscan_api_key, confirmations, delay
):
    """Verify contracts recorded in a registry."""
    if not etherscan_api_key:
        raise click.BadOptionUsage(
            option_name="--etherscan-api-key", message="An explorer API key is required."
        )

    chain_id = networks.provider.chain_id
    entries = entries_for_chain(registry_filepath, chain_id)
    missing = [step_id for step_id in step_ids if step_id not in entries]
    if missing:
        raise ValueError(
            f"Contract(s) {', '.join(missing)} not found in registry, '{registry_filepath}', "
            f"for chain {chain_id}"
        )

    policy = VerificationPolicy(delay=delay)
    if confirmations:
        policy = policy._replace(confirmations=confirmations)
    verifier = Verifier(
        requester=EtherscanVerifier(api_key=etherscan_api_key, chain_id=chain_id),
        client=Web3NetworkClient(w3=networks.provider.web3),
        policy=policy,
    )

    verified = list()
    for step_id in step_ids:
        entry = entries[step_id]
        contract = load_contract_spec(entry.contract_name, artifacts_dir=artifacts_dir)
        print(f"(i) Verifying {step_id} ({entry.contract_name}) at {entry.address}...")
        try:
            verifier.verify(contract, entry.to_artifact(), TxHandle(tx_hash=entry.tx_hash))
        except VerificationFailed as e:
            print(f"(!) {e.message}")
            continue
        verified.append(entry._replace(verified=True))

    write_registry(verified, filepath=registry_filepath, replace=True)
    print(f"(i) Verified {len(verified)}/{len(step_ids)} contract(s).")


if __name__ == "__main__":
    cli()
