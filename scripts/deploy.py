#!/usr/bin/python3

import signal
import sys
from functools import partial

import click
from ape import networks
from ape.cli import ConnectedProviderCommand, network_option

from rollout.artifacts import load_contract_spec
from rollout.confirm import _continue, confirm_step
from rollout.network import Web3NetworkClient
from rollout.options import (
    artifacts_dir_option,
    confirmations_option,
    etherscan_api_key_option,
    manifest_option,
    private_key_option,
)
from rollout.orchestrator import Orchestrator, summarize
from rollout.params import Manifest
from rollout.registry import completed_from_registry, registry_from_report
from rollout.utils import is_local_chain, validate_config
from rollout.verification import EtherscanVerifier, Verifier

EXIT_FAILED = 1
EXIT_CANCELLED = 2


def _print_deployment_info(client, manifest, registry_filepath, verifier, completed):
    print(
        f"Account: {client.sender}",
        f"Manifest: {manifest.path}",
        f"Registry: {registry_filepath}",
        f"Verify: {verifier is not None}",
        f"Resuming after: {', '.join(completed) or '-'}",
        f"Ecosystem: {networks.provider.network.ecosystem.name}",
        f"Network: {networks.provider.network.name}",
        f"Chain ID: {networks.provider.network.chain_id}",
        f"Gas Price: {client.get_fee_data()}",
        sep="\n",
    )


@click.command(cls=ConnectedProviderCommand)
@network_option(required=True)
@manifest_option
@artifacts_dir_option
@private_key_option
@etherscan_api_key_option
@confirmations_option
@click.option(
    "--verify/--no-verify",
    default=True,
    help="Verify deployed contracts on the block explorer",
)
@click.option(
    "--autosign",
    is_flag=True,
    default=False,
    help="Do not ask for confirmation before each deployment",
)
@click.option(
    "--resume",
    is_flag=True,
    default=False,
    help="Skip steps already recorded in the registry for this chain",
)
def cli(
    network,
    manifest_filepath,
    artifacts_dir,
    private_key,
    etherscan_api_key,
    confirmations,
    verify,
    autosign,
    resume,
):
    """Deploy the contracts of a manifest in dependency order."""
    chain_id = networks.provider.chain_id
    client = Web3NetworkClient.from_private_key(w3=networks.provider.web3, private_key=private_key)

    manifest = Manifest.from_yaml(manifest_filepath, deployer=client.sender)
    registry_filepath = validate_config(manifest.config, chain_id=chain_id, resume=resume)
    plan = manifest.build_plan(partial(load_contract_spec, artifacts_dir=artifacts_dir))

    verifier = None
    if verify and not is_local_chain(chain_id):
        if not etherscan_api_key:
            raise click.BadOptionUsage(
                option_name="--etherscan-api-key",
                message="An explorer API key is required to verify; or pass --no-verify.",
            )
        requester = EtherscanVerifier(
            api_key=etherscan_api_key, chain_id=chain_id, api_url=manifest.verification_api_url
        )
        verifier = Verifier(
            requester=requester,
            client=client,
            policy=manifest.verification_policy(confirmations),
        )

    completed = completed_from_registry(registry_filepath, chain_id, plan) if resume else dict()
    _print_deployment_info(client, manifest, registry_filepath, verifier, completed)
    if autosign:
        print("WARNING: Autosign is enabled. Transactions will be signed automatically.")
    elif not _continue():
        sys.exit(EXIT_CANCELLED)

    orchestrator = Orchestrator(
        client=client,
        policy=manifest.confirmation_policy(confirmations),
        verifier=verifier,
        before_step=None if autosign else confirm_step,
    )
    # A broadcast transaction is always waited on; Ctrl+C stops before the next step.
    signal.signal(signal.SIGINT, lambda *_: orchestrator.cancel())
    report = orchestrator.execute(plan, completed=completed)

    if report.steps:
        registry_from_report(
            report=report,
            plan=plan,
            chain_id=chain_id,
            deployer=client.sender,
            output_filepath=registry_filepath,
            resume=resume,
        )

    print()
    for line in summarize(report):
        print(f"(i) {line}")

    if report.failure is not None:
        sys.exit(EXIT_FAILED)
    if report.cancelled:
        sys.exit(EXIT_CANCELLED)


if __name__ == "__main__":
    cli()
