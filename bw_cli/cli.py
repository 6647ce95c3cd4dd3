"""
buildwatch CLI.

Runs one-off build queries against a build server, prints the adapter key,
or serves the build stream over HTTP.

Settings are read from BW_* environment variables (see bw_adapter.settings)
and can be overridden with command line options.
"""

import asyncio
import json
import logging
import sys
from dataclasses import replace
from datetime import datetime

import click

from bw_adapter.adapter import BuildServerAdapter
from bw_adapter.settings import AdapterSettings
from bw_common.credentials import (
    CredentialProvider,
    Credentials,
    EnvCredentialProvider,
)
from bw_common.models import AdapterKey, BuildStreamItem, QueryFilter, parse_instant


class PromptCredentialProvider(CredentialProvider):
    """
    Credentials from the environment, falling back to a terminal prompt.

    The prompt is only shown when the server challenges a request.
    """

    def __init__(self) -> None:
        self._env = EnvCredentialProvider()

    def get_credentials(
        self, key: AdapterKey, interactive: bool
    ) -> Credentials | None:
        if not interactive:
            return self._env.get_credentials(key, interactive)

        click.echo(f"Authentication required for {key}", err=True)
        username = click.prompt("Username", default="", show_default=False, err=True)
        if not username:
            return None
        secret = click.prompt("Password or API token", hide_input=True, err=True)
        return Credentials(username=username, secret=secret)


def load_settings(
    server: str | None,
    team_collection: str | None,
    project: str | None,
    build_filter: str | None,
) -> AdapterSettings:
    """Settings from the environment with command line overrides applied."""
    settings = AdapterSettings.from_env()
    overrides = {
        "server": server,
        "team_collection": team_collection,
        "project": project,
        "build_definition_filter": build_filter,
    }
    return replace(settings, **{k: v for k, v in overrides.items() if v is not None})


def parse_since(value: str | None) -> datetime | None:
    """Parse --since, exiting with an error message if it is invalid."""
    if value is None:
        return None
    try:
        return parse_instant(value)
    except ValueError:
        click.echo(f"Error: Invalid --since value: {value}", err=True)
        sys.exit(1)


def format_item(item: BuildStreamItem) -> str:
    """Human-readable line for a build or error item."""
    if item.type == "build" and item.build is not None:
        build = item.build
        commits = ",".join(h[:10] for h in build.commit_hashes)
        started = build.start_time.strftime("%Y-%m-%d %H:%M:%S")
        return f"{item.target.name:<20} {started:<20} {build.description:<40} {commits}"
    return f"{item.target.name:<20} ERROR {item.error}"


async def run_query(
    settings: AdapterSettings, query_filter: QueryFilter, json_output: bool
) -> int:
    """
    Run one query and print its items.

    Returns:
        Exit code (1 if any job reported an error, 0 otherwise)
    """
    exit_code = 0
    async with BuildServerAdapter() as adapter:
        await adapter.initialize(settings, PromptCredentialProvider())
        if not adapter.is_configured:
            click.echo(
                "Warning: adapter is not configured, check BW_SERVER, "
                "BW_TEAM_COLLECTION, BW_PROJECT and the build filter",
                err=True,
            )

        async for item in adapter.get_builds(query_filter):
            if item.type == "complete":
                continue
            if item.type == "error":
                exit_code = 1
            if json_output:
                click.echo(json.dumps(item.to_dict()))
            elif item.type == "error":
                click.echo(format_item(item), err=True)
            else:
                click.echo(format_item(item))
    return exit_code


@click.group()
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]),
    help="Logging level (default: WARNING)",
)
def cli(log_level: str):
    """buildwatch - Poll a build server for builds of configured jobs."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def server_options(func):
    """Options overriding the BW_* environment settings."""
    func = click.option(
        "--filter", "build_filter", help="Job name regex (BW_BUILD_DEFINITION_FILTER)"
    )(func)
    func = click.option("--project", help="Job names separated by '|' (BW_PROJECT)")(
        func
    )
    func = click.option(
        "--team-collection", help="Team collection name (BW_TEAM_COLLECTION)"
    )(func)
    func = click.option("--server", help="Build server address (BW_SERVER)")(func)
    return func


@cli.command("builds")
@server_options
@click.option(
    "--since", help="Only builds started at or after this time (epoch ms or ISO-8601)"
)
@click.option(
    "--running/--finished",
    "running",
    default=None,
    help="Only running or only finished builds (default: both)",
)
@click.option("--json", "json_output", is_flag=True, help="Output as JSON lines")
def builds(
    server: str | None,
    team_collection: str | None,
    project: str | None,
    build_filter: str | None,
    since: str | None,
    running: bool | None,
    json_output: bool,
):
    """List builds of the configured jobs."""
    settings = load_settings(server, team_collection, project, build_filter)
    query_filter = QueryFilter(since=parse_since(since), running=running)
    sys.exit(asyncio.run(run_query(settings, query_filter, json_output)))


@cli.command("running")
@server_options
@click.option("--json", "json_output", is_flag=True, help="Output as JSON lines")
def running_builds(
    server: str | None,
    team_collection: str | None,
    project: str | None,
    build_filter: str | None,
    json_output: bool,
):
    """List builds that are currently running."""
    settings = load_settings(server, team_collection, project, build_filter)
    sys.exit(asyncio.run(run_query(settings, QueryFilter(running=True), json_output)))


@cli.command("key")
@server_options
def key(
    server: str | None,
    team_collection: str | None,
    project: str | None,
    build_filter: str | None,
):
    """Print the adapter key (server/team_collection/project)."""
    settings = load_settings(server, team_collection, project, build_filter)
    click.echo(str(settings.key))


@cli.command("serve")
@click.option("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
@click.option("--port", default=8000, type=int, help="Port (default: 8000)")
def serve(host: str, port: int):
    """Serve the build stream over HTTP (settings from BW_* environment)."""
    import uvicorn

    uvicorn.run("bw_server.app:app", host=host, port=port)


def main():
    """Main entry point for the buildwatch CLI."""
    cli()


if __name__ == "__main__":
    main()
