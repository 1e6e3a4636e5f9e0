"""Shared fixtures for unit tests: temporary storage and vault components."""

import tempfile
from datetime import timedelta
from pathlib import Path
from typing import Optional

import pytest
from cryptography.fernet import Fernet

from signvault.anchoring.ledger import AnchorReceipt, LedgerClient
from signvault.anchoring.service import AnchoringService
from signvault.models import utcnow
from signvault.storage import VaultStorage
from signvault.vault.audit import AuditLedger
from signvault.vault.blob_store import LocalBlobStore
from signvault.vault.writer import VaultWriter


@pytest.fixture
async def temp_storage():
    """Create temporary encrypted storage for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test_vault.db"
        storage = VaultStorage(
            db_path=str(db_path), encryption_key=Fernet.generate_key()
        )
        await storage.initialize()
        yield storage


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(str(tmp_path / "blobs"))


@pytest.fixture
def audit(temp_storage):
    return AuditLedger(temp_storage)


@pytest.fixture
def writer(temp_storage, blob_store, audit):
    return VaultWriter(temp_storage, blob_store, audit)


@pytest.fixture
def make_connection(temp_storage):
    """Factory for stored provider connections."""

    async def _make(
        provider="docusign",
        user_id="alice",
        account_id="acct-1",
        expires_in=3600,
        refresh_token="refresh-1",
        base_uri="https://demo.docusign.net",
    ):
        return await temp_storage.upsert_connection(
            user_id=user_id,
            provider=provider,
            access_token="access-1",
            refresh_token=refresh_token,
            expires_at=utcnow() + timedelta(seconds=expires_in),
            provider_account_id=account_id,
            account_name="Acme",
            account_email="alice@example.com",
            base_uri=base_uri,
        )

    return _make


class FakeLedger(LedgerClient):
    """In-memory ledger that records submissions."""

    network = "testnet"

    def __init__(self, balance=10**18, gas=21_500, gas_price=30 * 10**9):
        self.address = "0x" + "11" * 20
        self.balance = balance
        self.gas = gas
        self.price = gas_price
        self.connect_error: Optional[Exception] = None
        self.submitted: list[tuple[str, int, int]] = []
        self.inputs: dict[str, str] = {}

    async def connect(self) -> None:
        if self.connect_error:
            raise self.connect_error

    async def estimate_gas(self, data_hex: str) -> int:
        if isinstance(self.gas, Exception):
            raise self.gas
        return self.gas

    async def gas_price(self) -> int:
        if isinstance(self.price, Exception):
            raise self.price
        return self.price

    async def get_balance(self) -> int:
        return self.balance

    async def submit(self, data_hex: str, gas_limit: int, gas_price: int) -> str:
        self.submitted.append((data_hex, gas_limit, gas_price))
        tx_id = f"0x{len(self.submitted):064x}"
        self.inputs[tx_id] = data_hex
        return tx_id

    async def wait_for_confirmation(self, tx_id: str, timeout: float) -> AnchorReceipt:
        return AnchorReceipt(tx_id=tx_id, block_number=123, gas_used=21_000)

    async def get_transaction_input(self, tx_id: str) -> Optional[str]:
        return self.inputs.get(tx_id)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def anchoring(temp_storage, audit, ledger):
    return AnchoringService(temp_storage, audit, ledger)
