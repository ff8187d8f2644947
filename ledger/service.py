import logging
import secrets
from typing import Optional

from .errors import AccountNotFound, DuplicateRequest, InvalidAmount
from .models import (
    Account,
    AccountBalance,
    EntryType,
    LedgerEntry,
    LedgerHistoryResponse,
)
from .store import InMemoryStorage, Transaction, utcnow

logger = logging.getLogger(__name__)

WELCOME_REASON = "Welcome Credits"
REFERRAL_CODE_LENGTH = 8


class LedgerService:
    def __init__(self, storage: Optional[InMemoryStorage] = None, starting_credits: int = 10):
        self.storage = storage or InMemoryStorage()
        self.starting_credits = starting_credits

    def get_or_create_account(
        self,
        account_id: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
        is_admin: bool = False,
    ) -> Account:
        with self.storage.transaction() as txn:
            existing = txn.get_account(account_id)
            if existing is not None:
                return Account(**existing)

            now = utcnow()
            data = {
                "id": account_id,
                "email": email or "No Email",
                "name": name or "New User",
                "balance": 0,
                "total_acquired": 0,
                "last_claim_at": None,
                "last_refund_at": None,
                "referral_code": self._new_referral_code(txn),
                "referred_by": None,
                "referral_count": 0,
                "highest_milestone_claimed": 0,
                "lifetime_generations": 0,
                "plan": "Free",
                "is_admin": is_admin,
                "created_at": now,
            }
            txn.create_account(data)
            if self.starting_credits:
                txn.apply(account_id, self.starting_credits, WELCOME_REASON, actor="system", now=now)

        logger.info("Created account %s with %d starting credits", account_id, self.starting_credits)
        return Account(**data)

    def get_account(self, account_id: str) -> Account:
        account = self.storage.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    def deduct(
        self,
        account_id: str,
        cost: int,
        feature: str,
        actor: str,
        request_id: Optional[str] = None,
        method: str = "secure-backend",
    ) -> LedgerEntry:
        """Atomically check the balance and charge ``cost`` for one generation.

        The balance check, the debit, the generation counter and the ledger
        entry are one transaction. Raises InsufficientCredits without writing
        anything when the balance is short.
        """
        if cost < 0:
            raise InvalidAmount(f"Cost must be non-negative, got {cost}")

        with self.storage.transaction() as txn:
            account = txn.require_account(account_id)
            if request_id and not txn.claim_request_id(account_id, request_id):
                raise DuplicateRequest(f"Request {request_id} was already charged")

            account["lifetime_generations"] += 1
            entry = txn.apply(
                account_id,
                -cost,
                reason=feature,
                actor=actor,
                metadata={
                    "feature": feature,
                    "cost": cost,
                    "method": method,
                    "request_id": request_id,
                    "generation": account["lifetime_generations"],
                },
                entry_type=EntryType.DEBIT,
            )

        logger.info(
            "Charged %d credits to %s for %s (balance %d)",
            cost, account_id, feature, entry["balance_after"],
        )
        return LedgerEntry(**entry)

    def get_balance(self, account_id: str) -> AccountBalance:
        account, entries = self._snapshot(account_id)
        last_entry = max(entries, key=lambda e: e.created_at) if entries else None

        return AccountBalance(
            account_id=account_id,
            balance=account.balance,
            total_acquired=account.total_acquired,
            total_entries=len(entries),
            last_transaction_at=last_entry.created_at if last_entry else None,
        )

    def get_ledger_history(self, account_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        account, all_entries = self._snapshot(account_id)
        all_entries.sort(key=lambda e: e.created_at, reverse=True)
        paginated = all_entries[offset:offset + limit]

        return LedgerHistoryResponse(
            account_id=account_id,
            entries=paginated,
            total_count=len(all_entries),
            current_balance=account.balance,
        )

    def _snapshot(self, account_id: str) -> tuple[Account, list[LedgerEntry]]:
        """Account and its entries as of one instant."""
        with self.storage.transaction() as txn:
            account = Account(**txn.require_account(account_id))
            entries = [LedgerEntry(**e) for e in txn.entries_for(account_id)]
        return account, entries

    def _new_referral_code(self, txn: Transaction) -> str:
        while True:
            code = secrets.token_hex(REFERRAL_CODE_LENGTH // 2).upper()
            if txn.resolve_referral_code(code) is None:
                return code
