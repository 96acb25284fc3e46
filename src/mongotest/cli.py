"""Operator commands for test database containers."""

from typing import Annotated

import typer

from mongotest.config import get_settings
from mongotest.core.exceptions import MongoTestError
from mongotest.core.lifecycle import ConnectionLifecycleManager
from mongotest.core.registry import ContainerRegistry
from mongotest.foundation.logger import configure_logging

app = typer.Typer(pretty_exceptions_enable=False, no_args_is_help=True)


@app.callback()
def main(
    log_level: Annotated[str | None, typer.Option(help="Log level, overrides MONGOTEST_LOG_LEVEL.")] = None,
) -> None:
    """Manage disposable MongoDB containers."""
    configure_logging(log_level.upper() if log_level else None)


@app.command()
def prune() -> None:
    """Remove every container carrying the mongotest label.

    Use this after a test run was killed before it could clean up.
    """
    settings = get_settings()
    manager = ConnectionLifecycleManager(settings=settings, registry=ContainerRegistry())
    try:
        removed, failed = manager.driver.prune_labeled(settings.container_label)
    except MongoTestError as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1) from e
    finally:
        manager.close()

    for container_id in removed:
        typer.echo(container_id)
    for container_id, error in failed.items():
        typer.echo(f"could not remove {container_id}: {error}", err=True)
    if failed:
        raise typer.Exit(code=1)


@app.command()
def up(
    replica_set: Annotated[str | None, typer.Option(help="Initiate a replica set with this name.")] = None,
    tls: Annotated[bool, typer.Option(help="Require TLS with a freshly generated CA.")] = False,
    version: Annotated[str | None, typer.Option(help="Image tag, overrides MONGOTEST_MONGO_VERSION.")] = None,
) -> None:
    """Start one database container and leave it running.

    Prints the endpoint URI and the container id. The container is not
    removed when this command exits; use `mongotest prune`.
    """
    settings = get_settings()
    manager = ConnectionLifecycleManager(settings=settings, registry=ContainerRegistry())
    try:
        conn = manager.provision(replica_set_name=replica_set, tls_enabled=tls, version=version)
    except MongoTestError as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1) from e
    finally:
        manager.close()

    if conn.client is not None:
        conn.client.close()
    typer.echo(conn.endpoint_uri)
    typer.echo(conn.container_id)
    if conn.tls_material is not None:
        typer.echo(f"CA file: {conn.tls_material}")
