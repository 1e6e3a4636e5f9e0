"""Tests for the signvault command line using Click's testing utilities."""

import anyio
import pytest
from click.testing import CliRunner
from cryptography.fernet import Fernet

from signvault.cli import cli
from signvault.storage import VaultStorage
from signvault.vault.audit import AuditLedger
from signvault.vault.blob_store import LocalBlobStore
from signvault.vault.writer import VaultWriter

pytestmark = pytest.mark.unit


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def vaulted(tmp_path):
    """A database holding one vaulted document, and that document's bytes."""
    db_path = str(tmp_path / "vault.db")
    data = b"%PDF-1.7 vaulted"

    async def _vault():
        storage = VaultStorage(db_path)
        writer = VaultWriter(
            storage, LocalBlobStore(str(tmp_path / "blobs")), AuditLedger(storage)
        )
        return await writer.vault(data, "alice", "contract.pdf")

    document = anyio.run(_vault)
    return db_path, data, document


def test_help_lists_commands(runner):
    result = runner.invoke(cli, ["--help"])
    assert result.exit_code == 0
    for command in ("run", "db", "generate-key", "verify"):
        assert command in result.output


def test_run_help_shows_server_options(runner):
    result = runner.invoke(cli, ["run", "--help"])
    assert result.exit_code == 0
    assert "--host" in result.output
    assert "--port" in result.output


def test_generate_key_prints_fernet_key(runner):
    result = runner.invoke(cli, ["generate-key"])
    assert result.exit_code == 0
    Fernet(result.output.strip().encode())


def test_verify_matching_file(runner, vaulted, tmp_path):
    db_path, data, document = vaulted
    presented = tmp_path / "presented.pdf"
    presented.write_bytes(data)

    result = runner.invoke(cli, ["verify", str(presented), "-d", db_path])

    assert result.exit_code == 0
    assert document.id in result.output
    assert document.fingerprint in result.output


def test_verify_tampered_file_exits_non_zero(runner, vaulted, tmp_path):
    db_path, data, document = vaulted
    presented = tmp_path / "presented.pdf"
    presented.write_bytes(data + b"!")

    result = runner.invoke(
        cli, ["verify", str(presented), "-d", db_path, "--document-id", document.id]
    )

    assert result.exit_code == 1


def test_db_current_on_missing_database(runner, tmp_path):
    result = runner.invoke(cli, ["db", "current", "-d", str(tmp_path / "none.db")])
    assert result.exit_code == 0
    assert "not versioned" in result.output


def test_db_upgrade_then_current(runner, tmp_path):
    db_path = str(tmp_path / "migrated.db")

    upgrade = runner.invoke(cli, ["db", "upgrade", "-d", db_path])
    assert upgrade.exit_code == 0, upgrade.output

    current = runner.invoke(cli, ["db", "current", "-d", db_path])
    assert "001" in current.output
