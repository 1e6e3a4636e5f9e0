"""Unit tests for the web3 ledger client with the JSON-RPC layer stubbed out."""

from unittest.mock import AsyncMock, MagicMock, patch

import anyio
import pytest
from web3.exceptions import TimeExhausted, TransactionNotFound

from signvault.anchoring.ledger import BURN_ADDRESS, Web3Ledger
from signvault.errors import AnchoringError, LedgerUnavailableError

pytestmark = pytest.mark.unit

PRIVATE_KEY = "0x" + "11" * 32
FINGERPRINT_HEX = "0x" + "ab" * 32


class FakeEth:
    """Async stand-in for ``AsyncWeb3.eth``."""

    def __init__(self, alive=True, pending_rises=True):
        self.alive = alive
        self.pending_rises = pending_rises
        self.pending = 0
        self.sent = []
        self.receipt = {"status": 1, "blockNumber": 77, "gasUsed": 21_000}
        self.receipt_error = None
        self.transactions = {}

    async def _value(self, value):
        if not self.alive:
            raise ConnectionError("endpoint down")
        return value

    @property
    def block_number(self):
        return self._value(1_000)

    @property
    def chain_id(self):
        return self._value(137)

    @property
    def gas_price(self):
        return self._value(30 * 10**9)

    async def estimate_gas(self, transaction):
        return 21_500

    async def get_balance(self, address):
        return 10**18

    async def get_transaction_count(self, address, block_identifier):
        # Yield so concurrent submitters interleave here
        await anyio.sleep(0.01)
        return self.pending

    async def send_raw_transaction(self, raw_transaction):
        await anyio.sleep(0.01)
        self.sent.append(raw_transaction)
        if self.pending_rises:
            self.pending += 1
        return bytes([len(self.sent)]) * 32

    async def wait_for_transaction_receipt(self, tx_id, timeout):
        if self.receipt_error:
            raise self.receipt_error
        return self.receipt

    async def get_transaction(self, tx_id):
        if tx_id not in self.transactions:
            raise TransactionNotFound(f"Transaction {tx_id} not found")
        return self.transactions[tx_id]


class FakeWeb3:
    def __init__(self, eth: FakeEth):
        self.eth = eth
        self.provider = MagicMock()
        self.provider.disconnect = AsyncMock()


@pytest.fixture
def endpoints():
    return {
        "https://rpc-a.example": FakeWeb3(FakeEth()),
        "https://rpc-b.example": FakeWeb3(FakeEth()),
    }


@pytest.fixture
async def ledger(endpoints):
    ledger = Web3Ledger(list(endpoints), PRIVATE_KEY, request_timeout=5)
    with patch.object(ledger, "_make_web3", side_effect=lambda url: endpoints[url]):
        await ledger.connect()
        yield ledger


class TestConnect:
    async def test_uses_first_live_endpoint(self, endpoints):
        endpoints["https://rpc-a.example"].eth.alive = False
        ledger = Web3Ledger(list(endpoints), PRIVATE_KEY, request_timeout=5)

        with patch.object(ledger, "_make_web3", side_effect=lambda url: endpoints[url]):
            await ledger.connect()

        assert ledger.rpc_url == "https://rpc-b.example"
        endpoints["https://rpc-a.example"].provider.disconnect.assert_awaited_once()

    async def test_all_endpoints_down(self, endpoints):
        for w3 in endpoints.values():
            w3.eth.alive = False
        ledger = Web3Ledger(list(endpoints), PRIVATE_KEY, request_timeout=5)

        with patch.object(ledger, "_make_web3", side_effect=lambda url: endpoints[url]):
            with pytest.raises(LedgerUnavailableError, match="rpc-a.*rpc-b"):
                await ledger.connect()

        assert ledger.rpc_url is None

    async def test_live_connection_is_kept(self, endpoints):
        ledger = Web3Ledger(list(endpoints), PRIVATE_KEY, request_timeout=5)

        with patch.object(
            ledger, "_make_web3", side_effect=lambda url: endpoints[url]
        ) as make_web3:
            await ledger.connect()
            await ledger.connect()

        assert make_web3.call_count == 1

    async def test_dead_endpoint_is_replaced_but_not_closed_under_users(
        self, endpoints
    ):
        ledger = Web3Ledger(list(endpoints), PRIVATE_KEY, request_timeout=5)
        first = endpoints["https://rpc-a.example"]

        with patch.object(ledger, "_make_web3", side_effect=lambda url: endpoints[url]):
            await ledger.connect()
            first.eth.alive = False
            await ledger.connect()

        assert ledger.rpc_url == "https://rpc-b.example"
        first.provider.disconnect.assert_not_awaited()

        await ledger.close()
        first.provider.disconnect.assert_awaited_once()
        endpoints["https://rpc-b.example"].provider.disconnect.assert_awaited_once()

    async def test_calls_before_connect_are_unavailable(self):
        ledger = Web3Ledger(["https://rpc-a.example"], PRIVATE_KEY)
        with pytest.raises(LedgerUnavailableError):
            await ledger.gas_price()


class TestSubmit:
    async def test_transaction_fields(self, ledger):
        seen = []
        sign = ledger._sign

        def spy(transaction):
            seen.append(transaction)
            return sign(transaction)

        with patch.object(ledger, "_sign", side_effect=spy):
            tx_id = await ledger.submit(FINGERPRINT_HEX, 25_800, 30 * 10**9)

        assert tx_id == "0x" + "01" * 32
        assert seen == [
            {
                "from": ledger.address,
                "to": BURN_ADDRESS,
                "value": 0,
                "data": FINGERPRINT_HEX,
                "gas": 25_800,
                "gasPrice": 30 * 10**9,
                "nonce": 0,
                "chainId": 137,
            }
        ]

    async def test_concurrent_submissions_use_distinct_nonces(self, ledger):
        nonces = []
        sign = ledger._sign

        def spy(transaction):
            nonces.append(transaction["nonce"])
            return sign(transaction)

        with patch.object(ledger, "_sign", side_effect=spy):
            async with anyio.create_task_group() as tg:
                for _ in range(3):
                    tg.start_soon(ledger.submit, FINGERPRINT_HEX, 25_800, 1)

        assert sorted(nonces) == [0, 1, 2]

    async def test_lagging_pending_count_does_not_reuse_nonce(self, endpoints):
        for w3 in endpoints.values():
            w3.eth.pending_rises = False
        ledger = Web3Ledger(list(endpoints), PRIVATE_KEY, request_timeout=5)
        nonces = []
        sign = ledger._sign

        def spy(transaction):
            nonces.append(transaction["nonce"])
            return sign(transaction)

        with patch.object(ledger, "_make_web3", side_effect=lambda url: endpoints[url]):
            await ledger.connect()
        with patch.object(ledger, "_sign", side_effect=spy):
            await ledger.submit(FINGERPRINT_HEX, 25_800, 1)
            await ledger.submit(FINGERPRINT_HEX, 25_800, 1)

        assert nonces == [0, 1]


class TestConfirmation:
    async def test_receipt(self, ledger):
        receipt = await ledger.wait_for_confirmation("0xabc", timeout=1)

        assert receipt.tx_id == "0xabc"
        assert receipt.block_number == 77
        assert receipt.gas_used == 21_000

    async def test_reverted(self, ledger):
        ledger._w3.eth.receipt = {"status": 0, "blockNumber": 77, "gasUsed": 21_000}

        with pytest.raises(AnchoringError, match="reverted"):
            await ledger.wait_for_confirmation("0xabc", timeout=1)

    async def test_not_mined_in_time(self, ledger):
        ledger._w3.eth.receipt_error = TimeExhausted("timed out")

        with pytest.raises(AnchoringError, match="not confirmed"):
            await ledger.wait_for_confirmation("0xabc", timeout=1)


class TestTransactionInput:
    async def test_input_as_hex(self, ledger):
        ledger._w3.eth.transactions["0xabc"] = {"input": bytes.fromhex("ab" * 32)}

        assert await ledger.get_transaction_input("0xabc") == FINGERPRINT_HEX

    async def test_unknown_transaction(self, ledger):
        assert await ledger.get_transaction_input("0xmissing") is None


async def test_fee_inputs(ledger):
    assert await ledger.estimate_gas(FINGERPRINT_HEX) == 21_500
    assert await ledger.gas_price() == 30 * 10**9
    assert await ledger.get_balance() == 10**18
