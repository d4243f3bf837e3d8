import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Union

from docstore import InMemoryDocumentStore, WriteBatch

from .models import (
    EntryType,
    UserRole,
    UserProfile,
    LedgerEntry,
    UserBalance,
    LedgerHistoryResponse,
)

logger = logging.getLogger(__name__)

USERS = "users"
TRANSACTIONS = "transactions"

Amount = Union[Decimal, int, float, str]


class LedgerServiceError(Exception):
    pass


class UserNotFoundError(LedgerServiceError):
    pass


class InsufficientFundsError(LedgerServiceError):
    pass


def to_amount(value: Amount) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


class LedgerService:
    """
    Cashback ledger over the ``transactions`` and ``users`` collections.

    Every posting writes one entry and the matching balance change in a
    single batch. Callers that need the posting to land together with
    their own writes pass their batch in and commit it themselves.
    """

    def __init__(self, store: Optional[InMemoryDocumentStore] = None):
        self.store = store or InMemoryDocumentStore()

    def register_user(self, user_id: str, email: str, full_name: str = "",
                      role: UserRole = UserRole.USER) -> UserProfile:
        existing = self.store.get(USERS, user_id)
        if existing:
            return UserProfile(**existing)

        data = self.store.create(USERS, {
            "email": email,
            "full_name": full_name,
            "role": UserRole(role),
            "cashback_balance": Decimal("0"),
            "total_orders": 0,
            "total_spending": Decimal("0"),
            "date_joined": datetime.now(timezone.utc),
        }, doc_id=user_id)
        logger.info("Registered ledger account for user %s", user_id)
        return UserProfile(**data)

    def get_profile(self, user_id: str) -> UserProfile:
        data = self.store.get(USERS, user_id)
        if not data:
            raise UserNotFoundError(f"User {user_id} not found")
        return UserProfile(**data)

    def debit(self, user_id: str, amount: Amount, description: str, *,
              order_id: Optional[str] = None, batch: Optional[WriteBatch] = None,
              metadata: Optional[dict] = None) -> LedgerEntry:
        amount = self._require_positive(amount)
        profile = self.get_profile(user_id)
        if amount > profile.cashback_balance:
            raise InsufficientFundsError(
                f"Insufficient cashback balance: {profile.cashback_balance} available, {amount} required"
            )
        return self._post(profile, EntryType.PURCHASE, amount, description,
                          order_id=order_id, batch=batch, metadata=metadata)

    def debit_available(self, user_id: str, amount: Amount, description: str, *,
                        order_id: Optional[str] = None, batch: Optional[WriteBatch] = None,
                        metadata: Optional[dict] = None) -> Optional[LedgerEntry]:
        """Take ``min(balance, amount)``; returns None when nothing was taken."""
        profile = self.get_profile(user_id)
        deducted = min(profile.cashback_balance, to_amount(amount))
        if deducted <= 0:
            return None
        return self._post(profile, EntryType.PURCHASE, deducted, description,
                          order_id=order_id, batch=batch, metadata=metadata)

    def credit(self, user_id: str, amount: Amount, description: str, *,
               entry_type: EntryType = EntryType.REFUND, order_id: Optional[str] = None,
               batch: Optional[WriteBatch] = None, metadata: Optional[dict] = None) -> LedgerEntry:
        if entry_type.is_debit:
            raise LedgerServiceError(f"{entry_type.value} entries cannot be credited")
        amount = self._require_positive(amount)
        profile = self.get_profile(user_id)
        return self._post(profile, entry_type, amount, description,
                          order_id=order_id, batch=batch, metadata=metadata)

    def reconcile(self, user_id: str, target_balance: Amount, performed_by: str,
                  reason: str) -> Optional[LedgerEntry]:
        target = to_amount(target_balance)
        if target < 0:
            raise LedgerServiceError("Cashback balance cannot be negative")
        if not reason or not reason.strip():
            raise LedgerServiceError("A reason is required to reconcile a balance")

        profile = self.get_profile(user_id)
        difference = target - profile.cashback_balance
        if difference == 0:
            return None

        entry_type = EntryType.CASHBACK_CREDIT if difference > 0 else EntryType.ADJUSTMENT
        return self._post(profile, entry_type, abs(difference), f"Balance reconciliation: {reason.strip()}",
                          metadata={
                              "performed_by": performed_by,
                              "previous_balance": str(profile.cashback_balance),
                          },
                          expected_version=profile.version)

    def record_completed_order(self, user_id: str, amount: Amount, batch: WriteBatch) -> None:
        self.get_profile(user_id)
        batch.increment(USERS, user_id, {"total_orders": 1, "total_spending": to_amount(amount)})

    def get_balance(self, user_id: str) -> UserBalance:
        profile = self.get_profile(user_id)
        entries = self.store.query(TRANSACTIONS, {"user_id": user_id})
        last_entry = max(entries, key=lambda e: e["created_at"]) if entries else None

        return UserBalance(
            user_id=user_id,
            current_balance=profile.cashback_balance,
            total_entries=len(entries),
            last_transaction_at=last_entry["created_at"] if last_entry else None
        )

    def derived_balance(self, user_id: str) -> Decimal:
        entries = [LedgerEntry(**e) for e in self.store.query(TRANSACTIONS, {"user_id": user_id})]
        return sum((e.signed_amount for e in entries), Decimal("0"))

    def get_ledger_history(self, user_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        balance = self.get_balance(user_id)
        all_entries = [
            LedgerEntry(**e) for e in
            self.store.query(TRANSACTIONS, {"user_id": user_id}, order_by="created_at", descending=True)
        ]

        return LedgerHistoryResponse(
            user_id=user_id,
            entries=all_entries[offset:offset + limit],
            total_count=len(all_entries),
            current_balance=balance.current_balance
        )

    def get_entry(self, entry_id: str) -> LedgerEntry:
        return LedgerEntry(**self.store.require(TRANSACTIONS, entry_id))

    def entries_for_order(self, order_id: str) -> list[LedgerEntry]:
        return [
            LedgerEntry(**e) for e in
            self.store.query(TRANSACTIONS, {"order_id": order_id}, order_by="created_at")
        ]

    def _require_positive(self, amount: Amount) -> Decimal:
        amount = to_amount(amount)
        if amount <= 0:
            raise LedgerServiceError(f"Ledger amounts must be positive, got {amount}")
        return amount

    def _post(self, profile: UserProfile, entry_type: EntryType, amount: Decimal, description: str, *,
              order_id: Optional[str] = None, batch: Optional[WriteBatch] = None,
              metadata: Optional[dict] = None, expected_version: Optional[int] = None) -> LedgerEntry:
        signed = -amount if entry_type.is_debit else amount
        new_balance = profile.cashback_balance + signed
        if new_balance < 0:
            raise InsufficientFundsError(
                f"Posting {entry_type.value} of {amount} would leave a negative balance"
            )

        entry_data = {
            "user_id": profile.id,
            "type": entry_type,
            "amount": amount,
            "balance_after": new_balance,
            "description": description,
            "order_id": order_id,
            "created_at": datetime.now(timezone.utc),
            "metadata": metadata or {},
        }

        own_batch = batch is None
        if own_batch:
            batch = self.store.batch()
        # Debits re-check the balance at commit; credits always apply.
        batch.increment(USERS, profile.id, {"cashback_balance": signed},
                        floor=Decimal("0") if entry_type.is_debit else None,
                        expected_version=expected_version)
        entry_id = batch.create(TRANSACTIONS, entry_data,
                                copy_from={"balance_after": (USERS, profile.id, "cashback_balance")})
        if own_batch:
            batch.commit()
            entry = self.get_entry(entry_id)
            logger.info("Posted %s of %s for user %s (balance %s)",
                        entry_type.value, amount, profile.id, entry.balance_after)
            return entry

        return LedgerEntry(id=entry_id, **entry_data)
