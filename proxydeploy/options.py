from pathlib import Path

import click

from proxydeploy.constants import DEFAULT_WORKERS
from proxydeploy.types import MinInt, PositiveFloat

network_option = click.option(
    "--network",
    "-n",
    help="Network identifier, as declared in the manifest",
    type=click.STRING,
    required=True,
)

manifest_option = click.option(
    "--manifest",
    "-m",
    "manifest_path",
    help="Path to the deployment manifest (YAML)",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    required=True,
)

ledger_dir_option = click.option(
    "--ledger-dir",
    help="Ledger directory; overrides the manifest's deployment.ledger_dir",
    type=click.Path(file_okay=False, path_type=Path),
    required=False,
)

autosign_option = click.option(
    "--autosign",
    help="Sign transactions and skip confirmation prompts",
    is_flag=True,
    default=False,
)

verify_option = click.option(
    "--verify",
    help="Request source verification of confirmed deployments",
    is_flag=True,
    default=False,
)

workers_option = click.option(
    "--workers",
    "-w",
    help="Maximum number of components deployed concurrently",
    type=MinInt(1),
    default=DEFAULT_WORKERS,
    show_default=True,
)

timeout_option = click.option(
    "--timeout",
    help="Stop scheduling new deployments after this many seconds",
    type=PositiveFloat(),
    required=False,
)
