from pathlib import Path
from typing import Optional

import anyio
import click
import uvicorn

from signvault.config import get_settings
from signvault.observability import get_uvicorn_logging_config, setup_logging

from .app import get_app

DATABASE_PATH_OPTION = click.option(
    "--database-path",
    "-d",
    envvar="VAULT_DATABASE_PATH",
    default="/app/data/signvault.db",
    show_default=True,
    help="Path to the vault database (can also use VAULT_DATABASE_PATH env var)",
)


@click.command()
@click.option(
    "--host", "-h", default="127.0.0.1", show_default=True, help="Server host"
)
@click.option(
    "--port", "-p", type=int, default=8000, show_default=True, help="Server port"
)
@click.option(
    "--log-level",
    "-l",
    default="info",
    show_default=True,
    type=click.Choice(["critical", "error", "warning", "info", "debug", "trace"]),
    help="Logging level",
)
def run(host: str, port: int, log_level: str):
    """Run the webhook, OAuth and document API server."""
    settings = get_settings()
    setup_logging(
        log_format=settings.log_format,
        log_level=settings.log_level,
        include_trace_context=settings.log_include_trace_context,
    )

    if not settings.polygon_private_key and settings.blockchain_enabled:
        click.echo(
            click.style(
                "POLYGON_PRIVATE_KEY not set: documents will be vaulted without "
                "blockchain anchoring",
                fg="yellow",
            ),
            err=True,
        )

    app = get_app()

    uvicorn_log_config = get_uvicorn_logging_config(
        log_format=settings.log_format,
        log_level=settings.log_level,
        include_trace_context=settings.log_include_trace_context,
    )

    uvicorn.run(
        app=app,
        host=host,
        port=port,
        log_level=log_level,
        log_config=uvicorn_log_config,
    )


@click.group()
def db():
    """Database migration management commands."""
    pass


@db.command()
@DATABASE_PATH_OPTION
@click.option(
    "--revision",
    "-r",
    default="head",
    show_default=True,
    help="Target revision (default: head for latest)",
)
def upgrade(database_path: str, revision: str):
    """Upgrade database to a specific revision.

    \b
    Examples:
      $ signvault db upgrade
      $ signvault db upgrade --revision 001 -d /path/to/signvault.db
    """
    from signvault.migrations import upgrade_database

    try:
        click.echo(f"Upgrading database to revision: {revision}")
        upgrade_database(database_path, revision)
        click.echo(click.style("✓ Database upgraded successfully", fg="green"))
    except Exception as e:
        click.echo(click.style(f"✗ Upgrade failed: {e}", fg="red"), err=True)
        raise click.ClickException(str(e))


@db.command()
@DATABASE_PATH_OPTION
def current(database_path: str):
    """Show current database revision."""
    from signvault.migrations import get_current_revision

    try:
        revision = get_current_revision(database_path)
    except Exception as e:
        raise click.ClickException(f"Failed to get current revision: {e}")

    if revision:
        click.echo(f"Current revision: {click.style(revision, fg='cyan')}")
    else:
        click.echo(
            click.style(
                "Database is not versioned (no alembic_version table)", fg="yellow"
            )
        )


@db.command()
@DATABASE_PATH_OPTION
@click.option(
    "--revision",
    "-r",
    default="head",
    show_default=True,
    help="Revision to record without running migrations",
)
def stamp(database_path: str, revision: str):
    """Mark an existing database as being at a revision."""
    from signvault.migrations import stamp_database

    try:
        stamp_database(database_path, revision)
        click.echo(click.style(f"✓ Database stamped at {revision}", fg="green"))
    except Exception as e:
        click.echo(click.style(f"✗ Stamp failed: {e}", fg="red"), err=True)
        raise click.ClickException(str(e))


@click.command("generate-key")
def generate_key():
    """Print a new Fernet key for TOKEN_ENCRYPTION_KEY."""
    from signvault.storage import generate_encryption_key

    click.echo(generate_encryption_key())


@click.command("verify")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--document-id", help="Check against this document only")
@DATABASE_PATH_OPTION
def verify_file(file: Path, document_id: Optional[str], database_path: str):
    """Check FILE against the fingerprints in the vault database.

    Exits non-zero when the file does not match.
    """
    from signvault.storage import VaultStorage
    from signvault.vault.audit import AuditLedger
    from signvault.vault.verification import verify_document

    data = file.read_bytes()

    async def _verify():
        storage = VaultStorage(database_path)
        return await verify_document(
            AuditLedger(storage), data, document_id=document_id, actor="cli"
        )

    result = anyio.run(_verify)

    click.echo(f"SHA-256: {result.fingerprint}")
    if not result.verified:
        click.echo(click.style("✗ No matching vaulted document", fg="red"), err=True)
        raise SystemExit(1)

    document = result.document
    click.echo(click.style(f"✓ Matches document {document.id}", fg="green"))
    click.echo(f"  File: {document.file_name} (vaulted {document.created_at.isoformat()})")
    if document.blockchain_txid:
        click.echo(f"  Anchored in: {document.blockchain_txid}")


cli = click.Group(name="signvault")
cli.add_command(run)
cli.add_command(db)
cli.add_command(generate_key)
cli.add_command(verify_file)


if __name__ == "__main__":
    cli()
