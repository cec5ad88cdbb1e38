from pathlib import Path

import click


class MinInt(click.ParamType):
    name = "minint"

    def __init__(self, min_value):
        self.min_value = min_value

    def convert(self, value, param, ctx):
        try:
            ivalue = int(value)
        except ValueError:
            self.fail(f"{value} is not a valid integer", param, ctx)
        if ivalue < self.min_value:
            self.fail(
                f"{value} is less than the minimum allowed value of {self.min_value}", param, ctx
            )
        return ivalue


manifest_option = click.option(
    "--manifest",
    "-m",
    "manifest_filepath",
    help="Deployment manifest YAML",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    required=True,
)

artifacts_dir_option = click.option(
    "--artifacts-dir",
    help="Hardhat artifacts directory; contracts are loaded from the ape project if omitted",
    type=click.Path(file_okay=False, exists=True, path_type=Path),
    required=False,
)

private_key_option = click.option(
    "--private-key",
    help="Deployer private key",
    envvar="DEPLOYER_PRIVATE_KEY",
    prompt="Deployer private key",
    hide_input=True,
    required=True,
)

etherscan_api_key_option = click.option(
    "--etherscan-api-key",
    help="Explorer API key used for verification",
    envvar="ETHERSCAN_API_KEY",
    required=False,
)

confirmations_option = click.option(
    "--confirmations",
    "-c",
    help="Confirmations to wait for after each deployment; overrides the manifest",
    type=MinInt(1),
    required=False,
)

registry_filepath_option = click.option(
    "--registry-filepath",
    "-f",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    help="Registry written by a previous rollout",
    required=True,
)
