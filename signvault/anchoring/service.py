"""Anchoring service: fingerprint -> ledger transaction, never fatal to vaulting."""

import logging
import time
from typing import Optional

from signvault.anchoring.ledger import AnchorReceipt, LedgerClient
from signvault.errors import (
    InsufficientFundsError,
    LedgerUnavailableError,
    describe_error,
)
from signvault.models import SYSTEM_ACTOR, AuditEventType, Document
from signvault.observability.metrics import record_anchoring_attempt
from signvault.observability.tracing import trace_operation
from signvault.storage import VaultStorage
from signvault.vault.audit import AuditLedger

logger = logging.getLogger(__name__)

GAS_MARGIN_PERCENT = 120
FALLBACK_GAS_LIMIT = 100_000
FALLBACK_GAS_PRICE_WEI = 50 * 10**9  # 50 gwei
WEI_PER_ETHER = 10**18


class AnchoringService:
    def __init__(
        self,
        storage: VaultStorage,
        audit: AuditLedger,
        ledger: Optional[LedgerClient],
        confirmation_timeout: float = 120.0,
    ):
        self.storage = storage
        self.audit = audit
        self.ledger = ledger
        self.confirmation_timeout = confirmation_timeout

    async def anchor_fingerprint(self, fingerprint_hex: str) -> AnchorReceipt:
        """
        Submit a fingerprint to the ledger and wait for one confirmation.

        Raises:
            LedgerUnavailableError: no ledger configured or no endpoint alive
            InsufficientFundsError: balance below the estimated fee
            AnchoringError: submission reverted or was not confirmed in time
        """
        if self.ledger is None:
            raise LedgerUnavailableError("Blockchain anchoring is not configured")

        ledger = self.ledger
        data_hex = "0x" + fingerprint_hex.lower().removeprefix("0x")

        await ledger.connect()

        try:
            gas_limit = await ledger.estimate_gas(data_hex) * GAS_MARGIN_PERCENT // 100
        except Exception as e:
            logger.warning(
                f"Gas estimation failed ({e}); using fallback limit {FALLBACK_GAS_LIMIT}"
            )
            gas_limit = FALLBACK_GAS_LIMIT

        try:
            gas_price = await ledger.gas_price()
        except Exception as e:
            logger.warning(
                f"Gas price lookup failed ({e}); using fallback {FALLBACK_GAS_PRICE_WEI} wei"
            )
            gas_price = FALLBACK_GAS_PRICE_WEI

        required = gas_limit * gas_price
        balance = await ledger.get_balance()
        if balance < required:
            raise InsufficientFundsError(
                f"Balance {balance / WEI_PER_ETHER:.6f} is below the estimated fee "
                f"{required / WEI_PER_ETHER:.6f} for {ledger.address}"
            )

        tx_id = await ledger.submit(data_hex, gas_limit, gas_price)
        return await ledger.wait_for_confirmation(tx_id, self.confirmation_timeout)

    async def anchor(
        self, document: Document, *, force: bool = False, actor: str = SYSTEM_ACTOR
    ) -> Optional[str]:
        """
        Anchor a vaulted document. Never raises.

        A document that already carries a transaction id is skipped unless
        ``force`` is set, in which case the new id replaces the old one.

        Returns:
            The transaction id, or None when anchoring failed
        """
        if document.blockchain_txid and not force:
            logger.info(
                f"Document {document.id} already anchored in {document.blockchain_txid}"
            )
            return document.blockchain_txid

        start_time = time.time()
        try:
            with trace_operation(
                "anchoring.anchor", {"signvault.document_id": document.id}
            ):
                receipt = await self.anchor_fingerprint(document.fingerprint)
        except Exception as e:
            result = {
                InsufficientFundsError: "insufficient_funds",
                LedgerUnavailableError: "unavailable",
            }.get(type(e), "error")
            record_anchoring_attempt(result)
            logger.warning(
                f"Anchoring failed for document {document.id}: {describe_error(e)}"
            )
            try:
                await self.audit.append(
                    document.id,
                    AuditEventType.BLOCKCHAIN_ANCHOR_FAILED,
                    actor,
                    {
                        "fingerprint": document.fingerprint,
                        "error": describe_error(e),
                        "error_type": type(e).__name__,
                    },
                )
            except Exception as audit_error:
                logger.error(
                    f"Could not record anchoring failure for document {document.id}: "
                    f"{describe_error(audit_error)}",
                    exc_info=True,
                )
            return None

        record_anchoring_attempt("anchored", time.time() - start_time)
        try:
            await self.storage.set_document_txid(document.id, receipt.tx_id)
            await self.audit.append(
                document.id,
                AuditEventType.BLOCKCHAIN_ANCHORED,
                actor,
                {
                    "fingerprint": document.fingerprint,
                    "tx_id": receipt.tx_id,
                    "block_number": receipt.block_number,
                    "gas_used": receipt.gas_used,
                    "network": self.ledger.network if self.ledger else None,
                    "replaced_tx_id": document.blockchain_txid if force else None,
                },
            )
        except Exception as e:
            # The transaction is mined; only the local record of it failed
            logger.error(
                f"Document {document.id} anchored in {receipt.tx_id} but the "
                f"result could not be recorded: {describe_error(e)}",
                exc_info=True,
            )
            return None

        logger.info(f"Anchored document {document.id} in transaction {receipt.tx_id}")
        return receipt.tx_id

    async def verify_on_chain(self, document: Document) -> bool:
        """True if the document's transaction payload contains its fingerprint."""
        if not document.blockchain_txid or self.ledger is None:
            return False
        await self.ledger.connect()
        payload = await self.ledger.get_transaction_input(document.blockchain_txid)
        if not payload:
            return False
        return document.fingerprint.lower() in payload.lower()

    async def close(self) -> None:
        if self.ledger is not None:
            await self.ledger.close()
