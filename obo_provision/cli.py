"""Command line interface for provisioning OBO app registrations."""
from __future__ import annotations

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any, Optional

import typer

from .azure_cli import AzureCliError
from .config import AppConfig, ConfigurationError, load_config
from .emitter import load_descriptor
from .errors import ProvisioningRunError
from .graph_client import GraphClient, GraphClientError
from .locator import ResourceLocator
from .mock_directory import MockDirectory
from .models import AmbiguousMatch, NotFound, SingleMatch
from .observer import StepObserver
from .orchestrator import ProvisioningOrchestrator

app = typer.Typer(help="Provision Entra ID app registrations for an On-Behalf-Of deployment.")

_MASK = "********"


class TyperObserver(StepObserver):
    """Echoes each step and asks y/N before destructive ones unless --yes was given."""

    def __init__(self, assume_yes: bool = False) -> None:
        self.assume_yes = assume_yes

    def step_started(self, step: str) -> None:
        typer.echo(f"==> {step}")

    def confirm(self, prompt: str) -> bool:
        if self.assume_yes:
            typer.echo(f"{prompt} [auto-confirmed]")
            return True
        return typer.confirm(prompt, default=False)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_configuration(config_path: Optional[Path]) -> AppConfig:
    try:
        return load_config(config_path)
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)


def _build_directory(config: AppConfig) -> Any:
    if config.directory.auth_mode == "mock":
        return MockDirectory(config.directory.mock_data_file)
    try:
        return GraphClient(config.directory)
    except GraphClientError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)


def _fail(exc: Exception, step: Optional[str] = None) -> None:
    where = f" during step '{step}'" if step else ""
    typer.echo(f"Error{where}: {exc}", err=True)
    raise typer.Exit(code=1)


@app.command("provision")
def provision(
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Confirm destructive steps without prompting."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Delete and recreate the configured applications, request permissions and consent."""

    _configure_logging(verbose)
    config = _load_configuration(config_path)
    orchestrator = ProvisioningOrchestrator(
        config, _build_directory(config), observer=TyperObserver(assume_yes=yes)
    )

    try:
        report = orchestrator.run()
    except ProvisioningRunError as exc:
        _fail(exc, exc.step)
    except (AzureCliError, GraphClientError) as exc:
        _fail(exc)

    typer.echo("Applications provisioned:")
    for key, record in report.records.items():
        typer.echo(f"- {key}: {record.display_name} (client id {record.app_id})")
    typer.echo(f"Descriptor written to {report.descriptor_path}")
    if report.checklist:
        typer.echo("")
        typer.echo(report.checklist)


@app.command("cleanup")
def cleanup(
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Confirm deletions without prompting."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Delete every application registration named in the configuration."""

    _configure_logging(verbose)
    config = _load_configuration(config_path)
    orchestrator = ProvisioningOrchestrator(
        config, _build_directory(config), observer=TyperObserver(assume_yes=yes)
    )

    try:
        removed = orchestrator.cleanup()
    except ProvisioningRunError as exc:
        _fail(exc, exc.step)
    except (AzureCliError, GraphClientError) as exc:
        _fail(exc)

    for key, count in removed.items():
        typer.echo(f"- {key}: {count} application(s) deleted")


@app.command("locate")
def locate(
    display_name: str = typer.Argument(..., help="Display name to look up."),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
) -> None:
    """Show which application registrations carry a display name."""

    config = _load_configuration(config_path)
    locator = ResourceLocator(_build_directory(config))
    try:
        result = locator.lookup(display_name)
    except (AzureCliError, GraphClientError) as exc:
        _fail(exc)

    if isinstance(result, NotFound):
        typer.echo(f"No application named '{display_name}'.")
        raise typer.Exit(code=0)
    records = [result.record] if isinstance(result, SingleMatch) else list(result.records)
    if isinstance(result, AmbiguousMatch):
        typer.echo(f"Warning: {len(records)} applications share this display name.", err=True)
    typer.echo(json.dumps([asdict(record) for record in records], indent=2, default=str))


@app.command("show")
def show(
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
    reveal_secrets: bool = typer.Option(
        False, "--reveal-secrets", help="Print client secrets instead of masking them."
    ),
) -> None:
    """Print the descriptor written by the last provisioning run."""

    config = _load_configuration(config_path)
    path = config.output.descriptor_file
    if not path.exists():
        typer.echo(f"No descriptor at {path}. Run `provision` first.")
        raise typer.Exit(code=1)
    try:
        payload = load_descriptor(path)
    except ValueError as exc:
        _fail(exc)

    if not reveal_secrets:
        for entry in (payload.get("applications") or {}).values():
            if entry.get("client_secret"):
                entry["client_secret"] = _MASK
    typer.echo(json.dumps(payload, indent=2, default=str))


def run():
    app()


if __name__ == "__main__":
    run()
