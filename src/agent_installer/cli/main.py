"""Click CLI group: install, list, current, and prune commands."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import click

from agent_installer.config import get_settings, validate_settings_for_env
from agent_installer.errors import InstallerError
from agent_installer.installer import AgentInstaller, InstallRequest
from agent_installer.logging import configure_logging


def _installer() -> AgentInstaller:
    settings = get_settings()
    try:
        validate_settings_for_env(settings)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from None
    configure_logging(settings.log_level)
    return AgentInstaller(settings)


def _run_install(request: InstallRequest) -> None:
    installer = _installer()
    try:
        agent_id = asyncio.run(installer.install(request))
    except InstallerError as exc:
        raise click.ClickException(str(exc)) from None
    version_ref = installer.current_version(agent_id) or "?"
    click.echo(f"installed: {agent_id} ({version_ref})")


@click.group()
def cli() -> None:
    """Agent package installer CLI."""


@cli.group("install")
def install_group() -> None:
    """Install an agent bundle."""


@install_group.command("zip")
@click.argument("path", type=click.Path(path_type=str))
def install_zip(path: str) -> None:
    """Install an agent from a local zip archive."""
    _run_install(InstallRequest(source_type="local", path=path))


@install_group.command("git")
@click.argument("url")
@click.option("--revision", default=None, help="Branch, tag, or commit to check out.")
@click.option("--sub-path", default=None, help="Bundle directory inside the repository.")
def install_git(url: str, revision: str | None, sub_path: str | None) -> None:
    """Install an agent from a git repository."""
    _run_install(
        InstallRequest(source_type="git", url=url, revision=revision, sub_path=sub_path)
    )


@cli.command("list")
@click.option("--json", "json_output", is_flag=True, help="Print structured JSON output.")
def list_agents(json_output: bool) -> None:
    """List installed agents and their active versions."""
    installed = _installer().list_installed()
    if json_output:
        click.echo(json.dumps([item.to_dict() for item in installed], indent=2))
        return
    if not installed:
        click.echo("no agents installed")
        return
    for item in installed:
        click.echo(
            f"{item.manifest.id} ({item.manifest.name}) version={item.version_ref} "
            f"path={item.path}"
        )


@cli.command("current")
@click.argument("agent_id")
def current(agent_id: str) -> None:
    """Print the active version of one agent."""
    version_ref = _installer().current_version(agent_id)
    if version_ref is None:
        raise click.ClickException(f"agent not activated: {agent_id}")
    click.echo(version_ref)


@cli.command("prune")
@click.option(
    "--older-than",
    "older_than",
    type=click.IntRange(min=0),
    default=3600,
    show_default=True,
    help="Only remove leftovers untouched for this many seconds.",
)
def prune(older_than: int) -> None:
    """Remove leftovers of interrupted installs and staging directories.

    Installs running in another process keep their staging and build
    directories fresh; lowering --older-than below their runtime can
    delete work they are still using.
    """
    removed = _installer().prune(min_age_seconds=older_than)
    if not removed:
        click.echo("nothing to prune")
        return
    for path in removed:
        click.echo(f"removed: {Path(path)}")
