"""
Payment verification engine.

Checks a client-submitted transaction hash against a pending payment intent and
finalizes the intent through the ledger. A verification runs through four
stages: look up the intent, query the chain (retrying while the transaction is
unknown or pending), evaluate the transfer against the intent, and finalize.

Nothing is written unless the chain reports a settled transaction. Transient
chain problems, exhausted retries and cancellation all leave the intent pending
so the client can submit the same hash again.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from .chain.base import ChainClient
from .config import VERIFY_MAX_ATTEMPTS, VERIFY_RETRY_DELAY
from .exceptions import (
    ChainUnavailable,
    IntentNotFound,
    PaymentErrorCode,
    PaymentErrorInfo,
    TransactionNotFound,
    ValidationError,
    VerificationCancelled,
    create_payment_error,
)
from .ledger import PaymentLedger
from .models import ChainTransactionView, ChainTxStatus, FailureReason, IntentStatus, PaymentIntent, PurchaseGrant
from .utils import normalize_address, normalize_tx_hash

logger = logging.getLogger(__name__)


class VerificationOutcome(Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    PENDING = "pending"


@dataclass
class VerificationResult:
    """What a verification call concluded.

    ``PENDING`` means the chain had not settled the transaction by the last
    attempt; the intent is untouched and the caller may verify again.
    """

    outcome: VerificationOutcome
    intent: PaymentIntent
    tx_hash: str
    grant: Optional[PurchaseGrant] = None
    reason: Optional[FailureReason] = None
    chain_queries: int = 0

    @property
    def access_granted(self) -> bool:
        return self.outcome is VerificationOutcome.CONFIRMED

    @property
    def error_code(self) -> Optional[PaymentErrorCode]:
        return self.reason.error_code if self.reason else None

    def payment_error(self) -> Optional[PaymentErrorInfo]:
        if self.reason is None:
            return None
        return create_payment_error(self.reason.error_code, self.reason.value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "accessGranted": self.access_granted,
            "txHash": self.tx_hash,
            "intent": self.intent.to_dict(),
            "purchase": self.grant.to_dict() if self.grant else None,
            "reason": self.reason.value if self.reason else None,
            "errorCode": self.error_code.value if self.error_code else None,
            "chainQueries": self.chain_queries,
        }


class VerificationEngine:
    """Verifies submitted transactions against payment intents.

    Ledger calls are synchronous and run in a worker thread; the chain client
    is async. ``sleep`` is injectable so tests can observe retry delays without
    waiting for them.
    """

    def __init__(
        self,
        ledger: PaymentLedger,
        chain_client: ChainClient,
        max_attempts: int = VERIFY_MAX_ATTEMPTS,
        retry_delay: float = VERIFY_RETRY_DELAY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1", field="max_attempts", value=max_attempts)
        if retry_delay < 0:
            raise ValidationError("retry_delay must be non-negative", field="retry_delay", value=retry_delay)
        self.ledger = ledger
        self.chain_client = chain_client
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.sleep = sleep

    async def verify(
        self,
        intent_id: str,
        tx_hash: str,
        payer_id: str,
        cancel: Optional[asyncio.Event] = None,
    ) -> VerificationResult:
        """
        Verify that ``tx_hash`` pays the pending intent ``intent_id`` owned by ``payer_id``.

        Returns a confirmed, failed or pending result. Failed results carry the
        reason and its client error code; no grant is written for them.

        Raises:
            ValidationError: If the transaction hash is malformed.
            IntentNotFound: If no pending intent matches, or another verification finalized it first.
            ChainNotConnected: If the chain client was never connected.
            ChainUnavailable: If the chain could not be reached on the final attempt.
            VerificationCancelled: If ``cancel`` was set before the chain settled the transaction.
            StorageError: If the ledger could not record the outcome.
        """
        try:
            tx_hash = normalize_tx_hash(tx_hash)
        except ValueError as e:
            raise ValidationError(str(e), field="tx_hash", value=tx_hash)

        intent = await asyncio.to_thread(self.ledger.find_pending_intent, intent_id, payer_id)
        if intent is None:
            raise IntentNotFound("Payment not found or already processed", intent_id=intent_id, payer_id=payer_id)
        if intent.is_expired():
            logger.info("Verifying intent %s after its expiry at %s", intent.id, intent.expires_at.isoformat())

        self.chain_client.ensure_connected()
        view, queries = await self._query_chain(intent, tx_hash, cancel)
        if view is None:
            logger.info("Transaction %s still pending after %d queries; intent %s left pending", tx_hash, queries, intent.id)
            return VerificationResult(
                outcome=VerificationOutcome.PENDING, intent=intent, tx_hash=tx_hash, chain_queries=queries
            )

        reason = await self._evaluate(intent, view)
        return await self._finalize(intent, view, reason, queries)

    async def _query_chain(
        self, intent: PaymentIntent, tx_hash: str, cancel: Optional[asyncio.Event]
    ) -> tuple[Optional[ChainTransactionView], int]:
        """Poll the chain until the transaction settles or the attempts run out."""
        for attempt in range(1, self.max_attempts + 1):
            self._check_cancelled(cancel, intent)
            try:
                view = await self.chain_client.get_transaction(tx_hash)
            except TransactionNotFound:
                logger.info("Transaction %s not found yet (attempt %d/%d)", tx_hash, attempt, self.max_attempts)
            except ChainUnavailable as e:
                if attempt == self.max_attempts:
                    logger.error("Chain unavailable verifying intent %s: %s", intent.id, e.message)
                    raise
                logger.warning("Chain unavailable (attempt %d/%d): %s", attempt, self.max_attempts, e.message)
            else:
                if view.status is not ChainTxStatus.PENDING:
                    return view, attempt
                logger.info("Transaction %s pending (attempt %d/%d)", tx_hash, attempt, self.max_attempts)

            if attempt < self.max_attempts:
                await self._wait(cancel, intent)
        return None, self.max_attempts

    async def _wait(self, cancel: Optional[asyncio.Event], intent: PaymentIntent) -> None:
        if cancel is None:
            await self.sleep(self.retry_delay)
            return

        sleeper = asyncio.ensure_future(self.sleep(self.retry_delay))
        watcher = asyncio.ensure_future(cancel.wait())
        _, pending = await asyncio.wait({sleeper, watcher}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._check_cancelled(cancel, intent)

    @staticmethod
    def _check_cancelled(cancel: Optional[asyncio.Event], intent: PaymentIntent) -> None:
        if cancel is not None and cancel.is_set():
            logger.info("Verification of intent %s cancelled; intent left pending", intent.id)
            raise VerificationCancelled("Verification cancelled by caller", intent_id=intent.id)

    async def _evaluate(self, intent: PaymentIntent, view: ChainTransactionView) -> Optional[FailureReason]:
        """Return why ``view`` does not satisfy ``intent``, or None if it does."""
        if view.status is ChainTxStatus.FAILED:
            logger.warning("Transaction %s failed on chain: %s", view.tx_hash, view.vm_status)
            return FailureReason.TX_FAILED

        if not view.is_transfer():
            logger.warning("Transaction %s is not a coin transfer (intent %s)", view.tx_hash, intent.id)
            return FailureReason.NOT_A_TRANSFER

        if view.amount < intent.amount:
            logger.warning(
                "Transaction %s paid %d, intent %s requires %d", view.tx_hash, view.amount, intent.id, intent.amount
            )
            return FailureReason.INSUFFICIENT_AMOUNT

        if not self._same_address(view.recipient, intent.recipient):
            logger.warning(
                "Transaction %s paid %s, intent %s requires %s", view.tx_hash, view.recipient, intent.id, intent.recipient
            )
            return FailureReason.WRONG_RECIPIENT

        if await asyncio.to_thread(self.ledger.is_tx_hash_used, view.tx_hash):
            logger.warning("Transaction %s already credited to another purchase", view.tx_hash)
            return FailureReason.TX_ALREADY_USED

        if await asyncio.to_thread(self.ledger.has_confirmed_grant, intent.payer_id, intent.project_id, intent.tier):
            logger.warning(
                "Intent %s paid by %s, but %s already holds %s access on %s",
                intent.id,
                view.tx_hash,
                intent.payer_id,
                intent.tier.value,
                intent.project_id,
            )
            return FailureReason.ALREADY_GRANTED

        return None

    @staticmethod
    def _same_address(actual: Optional[str], expected: str) -> bool:
        if actual is None:
            return False
        try:
            return normalize_address(actual) == normalize_address(expected)
        except ValueError:
            return False

    async def _finalize(
        self,
        intent: PaymentIntent,
        view: ChainTransactionView,
        reason: Optional[FailureReason],
        queries: int,
    ) -> VerificationResult:
        outcome = IntentStatus.FAILED if reason else IntentStatus.CONFIRMED
        result = await asyncio.to_thread(
            self.ledger.finalize_intent,
            intent.id,
            outcome,
            view.tx_hash,
            block_ref=view.block_ref,
            reason=reason,
            amount_paid=view.amount,
        )
        if not result.applied:
            raise IntentNotFound(
                "Payment not found or already processed", intent_id=intent.id, payer_id=intent.payer_id
            )

        return VerificationResult(
            outcome=VerificationOutcome.FAILED if reason else VerificationOutcome.CONFIRMED,
            intent=result.intent,
            tx_hash=view.tx_hash,
            grant=result.grant,
            reason=reason,
            chain_queries=queries,
        )
