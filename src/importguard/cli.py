"""CLI for importguard: migrate the store and inspect or lift tombstones."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import click

from importguard import __version__
from importguard.config import ConfigError, ImportGuardConfig, load_config
from importguard.core.logging import configure_logging, set_user_context
from importguard.db import Database
from importguard.migrations import run_migrations
from importguard.tombstones import is_deleted_import, list_deleted_imports, undelete_import


def _configure_logging(config: ImportGuardConfig) -> None:
    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(level=config.logging.level, fmt=config.logging.format, log_root=log_root)


@asynccontextmanager
async def _connected(config: ImportGuardConfig) -> AsyncIterator[Database]:
    db = Database.from_env(config.db_name, schema=config.db_schema)
    await db.connect()
    try:
        yield db
    finally:
        await db.close()


def _run(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="importguard.toml, or a directory containing it",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """importguard: keep deleted contacts from coming back on re-sync."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    _configure_logging(config)
    ctx.obj = config


@cli.command()
@click.option(
    "--chain",
    default="all",
    show_default=True,
    help="Migration chain to upgrade (core, tombstones, or all)",
)
@click.pass_obj
def migrate(config: ImportGuardConfig, chain: str) -> None:
    """Create the database if needed and upgrade the schema to head."""

    async def _migrate() -> None:
        db = Database.from_env(config.db_name, schema=config.db_schema)
        await db.provision()
        await run_migrations(db.url, chain=chain, schema=config.db_schema)

    _run(_migrate())
    click.echo(f"Migrated {config.db_name} ({chain})")


@cli.command("list")
@click.argument("user_id", type=click.UUID)
@click.option("--source", default=None, help="Only tombstones from this source")
@click.option("--json", "as_json", is_flag=True, help="Emit JSON instead of text")
@click.pass_obj
def list_cmd(config: ImportGuardConfig, user_id: Any, source: str | None, as_json: bool) -> None:
    """List a user's deleted-import tombstones, newest first."""
    set_user_context(user_id)

    async def _list() -> list:
        async with _connected(config) as db:
            return await list_deleted_imports(db, user_id, source=source)

    tombstones = _run(_list())
    if as_json:
        click.echo(json.dumps([t.model_dump(mode="json") for t in tombstones], indent=2))
        return
    if not tombstones:
        click.echo("No deleted imports.")
        return
    for t in tombstones:
        parts = [t.source, t.external_id, t.inserted_at.isoformat()]
        if t.entity_name:
            parts.append(t.entity_name)
        if t.entity_email:
            parts.append(f"<{t.entity_email}>")
        click.echo("\t".join(parts))


@cli.command()
@click.argument("user_id", type=click.UUID)
@click.argument("source")
@click.argument("external_id")
@click.pass_obj
def check(config: ImportGuardConfig, user_id: Any, source: str, external_id: str) -> None:
    """Report whether SOURCE/EXTERNAL_ID is tombstoned for USER_ID."""
    set_user_context(user_id)

    async def _check() -> bool:
        async with _connected(config) as db:
            return await is_deleted_import(db, user_id, external_id, source)

    click.echo("deleted" if _run(_check()) else "not deleted")


@cli.command()
@click.argument("user_id", type=click.UUID)
@click.argument("source")
@click.argument("external_id")
@click.pass_obj
def undelete(config: ImportGuardConfig, user_id: Any, source: str, external_id: str) -> None:
    """Remove a tombstone so the contact can be imported again."""
    set_user_context(user_id)

    async def _undelete() -> bool:
        async with _connected(config) as db:
            return await undelete_import(db, user_id, external_id, source)

    if _run(_undelete()):
        click.echo(f"Restored {source} {external_id}")
    else:
        click.echo(f"No tombstone for {source} {external_id}")


def main() -> None:
    cli()
