from pathlib import Path

import click

from bridge_deployment.constants import (
    DEFAULT_CONFIRMATION_TIMEOUT,
    DEFAULT_MAX_IN_FLIGHT,
    DEFAULT_MAX_RETRY_ATTEMPTS,
    SUPPORTED_ENVIRONMENTS,
)
from bridge_deployment.types import MinFloat, MinInt

environment_option = click.option(
    "--environment",
    "-e",
    help="Target environment",
    type=click.Choice(SUPPORTED_ENVIRONMENTS),
    required=True,
)

resume_option = click.option(
    "--resume",
    help="Continue a previous run from its registry instead of refusing to overwrite it.",
    is_flag=True,
    default=False,
)

verify_option = click.option(
    "--verify",
    help="Submit deployed contracts for source verification after a successful run.",
    is_flag=True,
    default=False,
)

confirmation_timeout_option = click.option(
    "--confirmation-timeout",
    help="Seconds to wait for a transaction to be confirmed.",
    type=MinFloat(1),
    default=DEFAULT_CONFIRMATION_TIMEOUT,
    show_default=True,
)

max_retries_option = click.option(
    "--max-retries",
    help="Attempts per transaction before a transient failure becomes fatal.",
    type=MinInt(1),
    default=DEFAULT_MAX_RETRY_ATTEMPTS,
    show_default=True,
)

max_in_flight_option = click.option(
    "--max-in-flight",
    help="Independent steps submitted concurrently on each chain.",
    type=MinInt(1),
    default=DEFAULT_MAX_IN_FLIGHT,
    show_default=True,
)

autosign_option = click.option(
    "--autosign",
    help="Sign and submit without asking for confirmation.",
    is_flag=True,
    default=False,
)

artifacts_dir_option = click.option(
    "--artifacts-dir",
    help="Directory of hardhat-style build artifacts; defaults to the ape project.",
    type=click.Path(file_okay=False, exists=True, path_type=Path),
    required=False,
)
