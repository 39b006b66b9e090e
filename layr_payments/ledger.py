"""
Payment ledger for the Layr Payments package.

Owns payment intents and purchase grants. All state transitions out of
``pending`` go through :meth:`PaymentLedger.finalize_intent`, which relies on
the storage backend's conditional write so an intent is finalized at most once.
"""

import copy
import logging
import math
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator, Optional

from .config import CURRENCY, INTENT_TTL_MINUTES
from .exceptions import DuplicateAccess, ValidationError
from .models import AccessTier, FailureReason, IntentStatus, PaymentIntent, PurchaseGrant
from .storage.base import StorageBackend
from .utils import generate_id, normalize_address

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


@dataclass
class FinalizeResult:
    """Outcome of a finalize attempt. ``applied`` is False when another writer got there first."""

    applied: bool
    intent: Optional[PaymentIntent] = None
    grant: Optional[PurchaseGrant] = None


def _validate_paging(page: int, limit: int) -> None:
    if isinstance(page, bool) or not isinstance(page, int) or page < 1:
        raise ValidationError("page must be a positive integer", field="page", value=page)
    if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError(
            f"limit must be between 1 and {MAX_PAGE_SIZE}", field="limit", value=limit, constraints={"max": MAX_PAGE_SIZE}
        )


def _pagination(page: int, limit: int, total: int) -> dict[str, int]:
    return {"page": page, "limit": limit, "total": total, "totalPages": math.ceil(total / limit) if total else 0}


@dataclass
class PurchasePage:
    """One page of a payer's confirmed purchases."""

    purchases: list[PurchaseGrant]
    page: int
    limit: int
    total: int
    by_tier: dict[str, list[PurchaseGrant]] = field(default_factory=dict)

    @property
    def total_pages(self) -> int:
        return _pagination(self.page, self.limit, self.total)["totalPages"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "purchases": [p.to_dict() for p in self.purchases],
            "demoPurchases": [p.to_dict() for p in self.by_tier.get(AccessTier.DEMO.value, [])],
            "downloadPurchases": [p.to_dict() for p in self.by_tier.get(AccessTier.DOWNLOAD.value, [])],
            "pagination": _pagination(self.page, self.limit, self.total),
        }


@dataclass
class IntentPage:
    """One page of payment history, newest first.

    When ``wallet`` or ``payer_id`` is set each entry is labelled ``incoming``
    (paid to the wallet) or ``outgoing`` (paid by the payer).
    """

    intents: list[PaymentIntent]
    page: int
    limit: int
    total: int
    payer_id: Optional[str] = None
    wallet: Optional[str] = None
    summary: Optional[dict[str, int]] = None

    @property
    def total_pages(self) -> int:
        return _pagination(self.page, self.limit, self.total)["totalPages"]

    def direction(self, intent: PaymentIntent) -> Optional[str]:
        if self.wallet is not None and intent.recipient == self.wallet:
            return "incoming"
        if self.payer_id is not None and intent.payer_id == self.payer_id:
            return "outgoing"
        return None

    def to_dict(self) -> dict[str, Any]:
        transactions = []
        for intent in self.intents:
            entry = intent.to_dict()
            entry["direction"] = self.direction(intent)
            transactions.append(entry)
        data: dict[str, Any] = {
            "transactions": transactions,
            "pagination": _pagination(self.page, self.limit, self.total),
        }
        if self.summary is not None:
            data["summary"] = self.summary
        return data


class PaymentLedger:
    """Durable record of intents and grants on top of a :class:`StorageBackend`.

    Methods are synchronous; async callers dispatch them with ``asyncio.to_thread``.
    """

    def __init__(self, storage: StorageBackend, intent_ttl_minutes: int = INTENT_TTL_MINUTES, currency: str = CURRENCY):
        self.storage = storage
        self.intent_ttl = timedelta(minutes=intent_ttl_minutes)
        self.currency = currency
        self._key_locks: dict[tuple, _KeyLock] = {}
        self._locks_guard = threading.Lock()
        logger.debug("PaymentLedger initialized with storage backend: %s", type(storage).__name__)

    @contextmanager
    def _lock_for(self, payer_id: str, project_id: str, tier: AccessTier) -> Iterator[None]:
        """Hold the per-key lock; the entry is dropped once no thread holds or waits on it."""
        key = (payer_id, project_id, tier.value)
        with self._locks_guard:
            entry = self._key_locks.get(key)
            if entry is None:
                entry = self._key_locks[key] = _KeyLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._key_locks[key]

    def has_confirmed_grant(self, payer_id: str, project_id: str, tier: AccessTier) -> bool:
        """True when an existing grant already covers ``tier`` (download covers demo)."""
        return any(g.tier.covers(tier) for g in self.storage.list_grants(payer_id, project_id))

    def create_intent(
        self,
        payer_id: str,
        project_id: str,
        tier: AccessTier | str,
        amount: int,
        recipient: str,
        now: Optional[datetime] = None,
    ) -> PaymentIntent:
        """
        Issue a pending intent, or return the live one already issued for the same key.

        Raises:
            DuplicateAccess: If the payer already holds a grant covering ``tier``.
        """
        tier = AccessTier.parse(tier)
        now = now or datetime.now(timezone.utc)
        try:
            recipient = normalize_address(recipient)
        except ValueError as e:
            raise ValidationError(str(e), field="recipient", value=recipient)

        with self._lock_for(payer_id, project_id, tier):
            if self.has_confirmed_grant(payer_id, project_id, tier):
                raise DuplicateAccess(
                    "User already has access to this repository",
                    payer_id=payer_id,
                    project_id=project_id,
                    tier=tier.value,
                )

            existing = self.storage.find_open_intent(payer_id, project_id, tier)
            if existing is not None and not existing.is_expired(now):
                if existing.amount != amount or existing.recipient != recipient:
                    logger.warning(
                        "Reusing intent %s quoted at %d to %s; current quote is %d to %s",
                        existing.id,
                        existing.amount,
                        existing.recipient,
                        amount,
                        recipient,
                    )
                else:
                    logger.info("Reusing pending intent %s for %s/%s/%s", existing.id, payer_id, project_id, tier.value)
                return existing

            intent = PaymentIntent(
                id=generate_id("pay_"),
                payer_id=payer_id,
                project_id=project_id,
                tier=tier,
                amount=amount,
                recipient=recipient,
                currency=self.currency,
                created_at=now,
                expires_at=now + self.intent_ttl,
            )
            self.storage.save_intent(intent)

        logger.info(
            "Created payment intent %s: %s %s for %s on %s (%s)",
            intent.id,
            intent.amount,
            intent.currency,
            payer_id,
            project_id,
            tier.value,
        )
        return intent

    def get_intent(self, intent_id: str) -> Optional[PaymentIntent]:
        return self.storage.get_intent(intent_id)

    def find_pending_intent(self, intent_id: str, payer_id: str) -> Optional[PaymentIntent]:
        """Return the intent only if it belongs to ``payer_id`` and is still pending.

        Expired intents are still returned: a payment may land after expiry.
        """
        if not intent_id or not payer_id:
            return None
        intent = self.storage.get_intent(intent_id)
        if intent is None or intent.payer_id != payer_id or not intent.is_pending():
            return None
        return intent

    def finalize_intent(
        self,
        intent_id: str,
        outcome: IntentStatus,
        tx_hash: str,
        block_ref: Optional[str] = None,
        reason: Optional[FailureReason] = None,
        amount_paid: Optional[int] = None,
    ) -> FinalizeResult:
        """
        Move a pending intent to ``outcome``; on confirmation write its grant in the same step.

        Returns a result with ``applied=False`` when the intent was no longer pending.
        Storage failures propagate as StorageError and leave the intent untouched.
        """
        if outcome is IntentStatus.PENDING:
            raise ValidationError("Cannot finalize an intent as pending", field="outcome", value=outcome.value)
        if outcome is IntentStatus.FAILED and reason is None:
            raise ValidationError("A failure reason is required", field="reason")

        current = self.storage.get_intent(intent_id)
        if current is None or not current.is_pending():
            return FinalizeResult(applied=False, intent=current)

        updated = copy.copy(current)
        grant = None
        if outcome is IntentStatus.CONFIRMED:
            updated.mark_confirmed(tx_hash, block_ref=block_ref, amount_paid=amount_paid)
            grant = PurchaseGrant(
                id=generate_id("grant_"),
                payer_id=updated.payer_id,
                project_id=updated.project_id,
                tier=updated.tier,
                amount=updated.amount,
                tx_hash=tx_hash,
                intent_id=updated.id,
                block_ref=block_ref,
                currency=updated.currency,
                granted_at=updated.finalized_at,
            )
        else:
            updated.mark_failed(reason, tx_hash=tx_hash, block_ref=block_ref, amount_paid=amount_paid)

        with self._lock_for(updated.payer_id, updated.project_id, updated.tier):
            applied = self.storage.finalize_intent(updated, grant)

        if not applied:
            logger.info("Finalize of intent %s lost to a concurrent writer", intent_id)
            return FinalizeResult(applied=False, intent=self.storage.get_intent(intent_id))
        if grant is not None:
            logger.info(
                "Granted %s access on %s to %s (tx %s)", grant.tier.value, grant.project_id, grant.payer_id, tx_hash
            )
        else:
            logger.warning("Intent %s failed verification: %s (tx %s)", intent_id, reason.value, tx_hash)
        return FinalizeResult(applied=True, intent=updated, grant=grant)

    def is_tx_hash_used(self, tx_hash: str) -> bool:
        """True when ``tx_hash`` has already been credited to a grant."""
        return self.storage.get_grant_by_tx_hash(tx_hash) is not None

    def get_confirmed_grants(self, payer_id: str, project_id: Optional[str] = None) -> list[PurchaseGrant]:
        return self.storage.list_grants(payer_id, project_id)

    def highest_grant(self, payer_id: str, project_id: str) -> Optional[PurchaseGrant]:
        grants = self.storage.list_grants(payer_id, project_id)
        if not grants:
            return None
        return max(grants, key=lambda g: (g.tier.level, g.granted_at))

    def list_user_purchases(self, payer_id: str, page: int = 1, limit: int = 20) -> PurchasePage:
        """Return one page of confirmed purchases, newest first."""
        _validate_paging(page, limit)
        grants = self.storage.list_grants(payer_id)
        start = (page - 1) * limit
        purchases = grants[start : start + limit]
        by_tier: dict[str, list[PurchaseGrant]] = {}
        for grant in purchases:
            by_tier.setdefault(grant.tier.value, []).append(grant)
        return PurchasePage(purchases=purchases, page=page, limit=limit, total=len(grants), by_tier=by_tier)

    def list_intents(
        self,
        payer_id: Optional[str] = None,
        recipient: Optional[str] = None,
        project_id: Optional[str] = None,
        status: Optional[IntentStatus | str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        either_party: bool = False,
        page: int = 1,
        limit: int = 20,
    ) -> IntentPage:
        """
        Return one page of payment intents, newest first.

        At least one of ``payer_id``, ``recipient`` or ``project_id`` is required.
        With ``either_party`` both the payer's outgoing and the recipient's
        incoming intents are listed, and the page summarizes confirmed totals.

        Raises:
            ValidationError: If no scope is given, a filter is malformed or the paging is out of range.
        """
        if payer_id is None and recipient is None and project_id is None:
            raise ValidationError("A payer, recipient or project is required", field="scope")
        _validate_paging(page, limit)
        if recipient is not None:
            try:
                recipient = normalize_address(recipient)
            except ValueError as e:
                raise ValidationError(str(e), field="recipient", value=recipient)
        if status is not None and not isinstance(status, IntentStatus):
            try:
                status = IntentStatus(status)
            except ValueError:
                raise ValidationError(
                    f"Invalid status: {status}. Must be one of: {', '.join(s.value for s in IntentStatus)}",
                    field="status",
                    value=status,
                )
        if since is not None and until is not None and since > until:
            raise ValidationError("Start date must not be after end date", field="since", value=since.isoformat())

        intents = self.storage.list_intents(
            payer_id=payer_id,
            recipient=recipient,
            project_id=project_id,
            status=status,
            since=since,
            until=until,
            either_party=either_party,
        )
        start = (page - 1) * limit
        summary = None
        if either_party:
            summary = self.settled_totals(payer_id=payer_id, recipient=recipient)
        logger.debug("Listed %d intents (payer=%s, recipient=%s, project=%s)", len(intents), payer_id, recipient, project_id)
        return IntentPage(
            intents=intents[start : start + limit],
            page=page,
            limit=limit,
            total=len(intents),
            payer_id=payer_id,
            wallet=recipient,
            summary=summary,
        )

    def settled_totals(self, payer_id: Optional[str] = None, recipient: Optional[str] = None) -> dict[str, int]:
        """Sum confirmed intents paid to ``recipient`` (incoming) and by ``payer_id`` (outgoing)."""
        totals = {"totalIncoming": 0, "totalOutgoing": 0}
        if recipient is not None:
            for intent in self.storage.list_intents(recipient=recipient, status=IntentStatus.CONFIRMED):
                totals["totalIncoming"] += intent.amount
        if payer_id is not None:
            for intent in self.storage.list_intents(payer_id=payer_id, status=IntentStatus.CONFIRMED):
                if recipient is not None and intent.recipient == recipient:
                    continue
                totals["totalOutgoing"] += intent.amount
        return totals
