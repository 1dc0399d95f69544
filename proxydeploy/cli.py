#!/usr/bin/python3
import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import List, Optional

import click

from proxydeploy.artifacts import ArtifactRegistry, JsonArtifactProvider
from proxydeploy.config import ConfigSource
from proxydeploy.confirm import _confirm_resolution
from proxydeploy.exceptions import GraphError, LedgerError, ManifestError, ResolveError
from proxydeploy.ledger import DeploymentStatus, Ledger
from proxydeploy.manifest import load_manifest
from proxydeploy.options import (
    autosign_option,
    ledger_dir_option,
    manifest_option,
    network_option,
    timeout_option,
    verify_option,
    workers_option,
)
from proxydeploy.orchestrator import ComponentStatus, Orchestrator, PlannedComponent, RunSummary
from proxydeploy.registry import registry_entries_from_ledger, write_registry

FATAL_ERRORS = (GraphError, LedgerError, ResolveError, ManifestError)
FATAL_EXIT_CODE = 2

STATUS_COLORS = {
    ComponentStatus.CONFIRMED: "green",
    ComponentStatus.SKIPPED: "cyan",
    ComponentStatus.FAILED: "red",
    ComponentStatus.BLOCKED: "yellow",
    ComponentStatus.CANCELLED: "yellow",
}


class Context:
    """Everything a command needs for one manifest and network."""

    def __init__(self, manifest_path: Path, network: str, ledger_dir: Optional[Path] = None):
        self.manifest = load_manifest(manifest_path)
        self.network = network
        self.network_config = self.manifest.network(network)
        self.ledger = Ledger(ledger_dir or self.manifest.ledger_dir)
        self.artifacts = ArtifactRegistry(_artifact_provider(self.manifest), ledger=self.ledger)
        self.config = ConfigSource.for_network(self.manifest, network)

    def orchestrator(self, session=None, **kwargs) -> Orchestrator:
        return Orchestrator(
            manifest=self.manifest,
            network=self.network,
            ledger=self.ledger,
            artifacts=self.artifacts,
            config=self.config,
            session=session,
            **kwargs,
        )


def _artifact_provider(manifest):
    if manifest.artifacts_dir is not None:
        return JsonArtifactProvider(manifest.artifacts_dir)
    from proxydeploy.ape_session import ProjectArtifactProvider

    return ProjectArtifactProvider()


@contextmanager
def _open_session(context: Context, autosign: bool, verify: bool):
    from proxydeploy.ape_session import open_session

    with open_session(
        context.network_config,
        proxy_dependency=context.manifest.proxy_dependency,
        autosign=autosign,
        verify=verify,
    ) as session:
        yield session


def _verifier(verify: bool):
    if not verify:
        return None
    from proxydeploy.ape_session import ApeVerifier

    return ApeVerifier()


def _fail(error: Exception) -> None:
    click.secho(f"Error: {error}", fg="red", err=True)
    sys.exit(FATAL_EXIT_CODE)


def _format_args(item: PlannedComponent) -> List[str]:
    names = item.spec.arg_names or [f"arg{i}" for i in range(len(item.args))]
    return [f"{name}={value}" for name, value in zip(names, item.args)]


def _print_plan(planned: List[PlannedComponent], network: str) -> None:
    click.secho(f"\nDeployment plan for {network} ({len(planned)} components)", fg="green")
    for index, item in enumerate(planned, start=1):
        spec = item.spec
        kind = spec.proxy_kind.value
        via = f" via {spec.initializer}" if spec.proxied and spec.initializer else ""
        click.secho(f"    {index}. {spec.name} [{kind}]{via}", fg="cyan")
        for line in _format_args(item):
            click.echo(f"\t{line}")
        if item.pending_refs:
            click.secho(f"\t(i) deployed earlier in this run: {', '.join(item.pending_refs)}")
        if item.problem:
            click.secho(f"\t! {item.problem}", fg="red")


def _print_summary(summary: RunSummary) -> None:
    click.secho(f"\nSummary for {summary.network}", fg="green")
    for name, outcome in summary.outcomes.items():
        line = f"    {name}: {outcome.status.value}"
        if outcome.record is not None and outcome.record.address:
            line += f" at {outcome.record.address}"
        if outcome.blocked_by:
            line += f" (dependency {outcome.blocked_by} did not succeed)"
        if outcome.error is not None:
            line += f" - {outcome.error_kind}: {outcome.cause}"
        click.secho(line, fg=STATUS_COLORS[outcome.status])


def _finish(summary: RunSummary) -> None:
    _print_summary(summary)
    if summary.succeeded:
        return
    if summary.first_failure:
        click.secho(f"\nFailed: {summary.first_failure}", fg="red", err=True)
    else:
        click.secho("\nNot every component was deployed.", fg="yellow", err=True)
    sys.exit(summary.exit_code)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose):
    """Deploy graphs of upgradeable contracts from a declarative manifest."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@network_option
@manifest_option
@ledger_dir_option
@click.option("--force", is_flag=True, help="Redeploy components already confirmed")
@click.option("--dry-run", is_flag=True, help="Print the plan without submitting transactions")
@workers_option
@timeout_option
@verify_option
@autosign_option
def deploy(network, manifest_path, ledger_dir, force, dry_run, workers, timeout, verify, autosign):
    """Deploy every component of a manifest in dependency order."""
    try:
        context = Context(manifest_path, network, ledger_dir)
        if dry_run:
            planned = context.orchestrator().dry_run()
            _print_plan(planned, network)
            if any(item.problem for item in planned):
                sys.exit(1)
            return

        with _open_session(context, autosign=autosign, verify=verify) as session:
            orchestrator = context.orchestrator(
                session=session,
                workers=workers,
                force=force,
                verifier=_verifier(verify),
                timeout=timeout,
            )
            planned = orchestrator.dry_run()
            _print_plan(planned, network)
            if not autosign:
                _confirm_resolution(planned)
            summary = orchestrator.run()
    except FATAL_ERRORS as e:
        _fail(e)
    _finish(summary)


@cli.command()
@network_option
@manifest_option
@ledger_dir_option
@click.option(
    "--component",
    "-c",
    "components",
    help="Proxied component to upgrade",
    multiple=True,
    required=True,
)
@verify_option
@autosign_option
def upgrade(network, manifest_path, ledger_dir, components, verify, autosign):
    """Deploy new logic contracts behind already deployed proxies."""
    try:
        context = Context(manifest_path, network, ledger_dir)
        for name in components:
            context.manifest.component(name)
        with _open_session(context, autosign=autosign, verify=verify) as session:
            orchestrator = context.orchestrator(session=session, verifier=_verifier(verify))
            if not autosign:
                click.echo(f"Upgrading {', '.join(components)} on {network}")
                click.confirm("Continue?", abort=True)
            summary = orchestrator.upgrade(components)
    except FATAL_ERRORS as e:
        _fail(e)
    _finish(summary)


@cli.command()
@network_option
@manifest_option
@ledger_dir_option
@click.option("--history", is_flag=True, help="Show every record instead of current ones")
def status(network, manifest_path, ledger_dir, history):
    """Show the ledger records of a network."""
    try:
        context = Context(manifest_path, network, ledger_dir)
        if history:
            records = [
                record
                for name in context.manifest.names
                for record in context.ledger.history(name, network)
            ]
        else:
            records = context.ledger.records(network)
    except FATAL_ERRORS as e:
        _fail(e)

    if not records:
        click.echo(f"No deployments recorded for {network}.")
        return
    colors = {
        DeploymentStatus.CONFIRMED: "green",
        DeploymentStatus.PENDING: "yellow",
        DeploymentStatus.FAILED: "red",
    }
    click.secho(f"\n{network}", fg="green")
    for record in records:
        line = f"    {record.component}: {record.status.value}"
        if record.address:
            line += f" {record.address}"
        if record.logic_address:
            line += f" (logic {record.logic_address})"
        if record.block_number is not None:
            line += f" block {record.block_number}"
        if record.error:
            line += f" - {record.error}"
        click.secho(line, fg=colors[record.status])


@cli.command(name="export-registry")
@network_option
@manifest_option
@ledger_dir_option
@click.option(
    "--output",
    "-o",
    "output_filepath",
    help="Filepath of output registry file",
    type=click.Path(dir_okay=False, path_type=Path),
    required=True,
)
def export_registry(network, manifest_path, ledger_dir, output_filepath):
    """Write the confirmed deployments of a network to a contract registry."""
    try:
        context = Context(manifest_path, network, ledger_dir)
        chain_id = context.network_config.chain_id
        if chain_id is None:
            raise ManifestError(f"No chain_id configured for network '{network}'")
        entries = registry_entries_from_ledger(
            context.ledger, network, chain_id=chain_id, artifacts=context.artifacts
        )
        filepath = write_registry(entries=entries, filepath=output_filepath)
    except FATAL_ERRORS as e:
        _fail(e)
    click.echo(f"(i) Registry written to {filepath}!")


if __name__ == "__main__":
    cli()
