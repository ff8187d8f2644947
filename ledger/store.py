"""
Ledger store: accounts, append-only entries, audit records and claim markers.

Every balance mutation runs inside ``InMemoryStorage.transaction()``. The
transaction reads through to committed state, stages its writes on private
copies and publishes them only when the body returns normally; an exception
anywhere in the body discards every staged write. Transactions are
serialized by a single lock, so a read-check-write cycle on ``balance`` can
never interleave with another one. A database-backed store has to offer the
same guarantee (a serializable transaction or compare-and-swap with retry).
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Optional
from uuid import uuid4

from .errors import AccountNotFound, InsufficientCredits
from .models import Account, AppConfig, AuditRecord, EntryType, LedgerEntry

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Transaction:
    def __init__(self, storage: "InMemoryStorage"):
        self._storage = storage
        self._accounts: dict[str, dict] = {}
        self._referral_codes: dict[str, str] = {}
        self._entries: list[dict] = []
        self._audit_records: list[dict] = []
        self._payments: dict[str, dict] = {}
        self._request_ids: set[tuple[str, str]] = set()

    def get_account(self, account_id: str) -> Optional[dict]:
        if account_id in self._accounts:
            return self._accounts[account_id]
        data = self._storage.accounts.get(account_id)
        if data is None:
            return None
        staged = dict(data)
        self._accounts[account_id] = staged
        return staged

    def require_account(self, account_id: str) -> dict:
        account = self.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    def create_account(self, data: dict) -> dict:
        self._accounts[data["id"]] = data
        self._referral_codes[data["referral_code"]] = data["id"]
        return data

    def resolve_referral_code(self, code: str) -> Optional[str]:
        return self._referral_codes.get(code) or self._storage.referral_index.get(code)

    def apply(
        self,
        account_id: str,
        delta: int,
        reason: str,
        actor: str,
        metadata: Optional[dict] = None,
        now: Optional[datetime] = None,
        entry_type: Optional[EntryType] = None,
    ) -> dict:
        """Change a balance and append the entry documenting it."""
        account = self.require_account(account_id)
        new_balance = account["balance"] + delta
        if new_balance < 0:
            raise InsufficientCredits(required=-delta, available=account["balance"])

        account["balance"] = new_balance
        if delta > 0:
            account["total_acquired"] += delta

        entry = {
            "id": str(uuid4()),
            "account_id": account_id,
            "entry_type": entry_type or (EntryType.CREDIT if delta >= 0 else EntryType.DEBIT),
            "delta": delta,
            "reason": reason,
            "balance_after": new_balance,
            "actor": actor,
            "created_at": now or utcnow(),
            "metadata": metadata or {},
        }
        self._entries.append(entry)
        return entry

    def entries_for(self, account_id: str) -> list[dict]:
        """Committed entries followed by this transaction's own, oldest first."""
        committed = [e for e in self._storage.ledger_entries.values() if e["account_id"] == account_id]
        return committed + [e for e in self._entries if e["account_id"] == account_id]

    def check_and_set(self, account_id: str, field: str, expected: Any, value: Any) -> bool:
        account = self.require_account(account_id)
        if account.get(field) != expected:
            return False
        account[field] = value
        return True

    def claim_request_id(self, account_id: str, request_id: str) -> bool:
        key = (account_id, request_id)
        if key in self._request_ids or key in self._storage.processed_requests:
            return False
        self._request_ids.add(key)
        return True

    def payment_processed(self, payment_id: str) -> bool:
        return payment_id in self._payments or payment_id in self._storage.processed_payments

    def record_payment(self, payment_id: str, record: dict) -> None:
        self._payments[payment_id] = record

    def audit(
        self,
        admin_id: str,
        action: str,
        target_account_id: Optional[str] = None,
        amount: Optional[int] = None,
        details: str = "",
    ) -> dict:
        record = {
            "id": str(uuid4()),
            "admin_id": admin_id,
            "action": action,
            "target_account_id": target_account_id,
            "amount": amount,
            "details": details,
            "created_at": utcnow(),
        }
        self._audit_records.append(record)
        return record

    def commit(self) -> None:
        storage = self._storage
        storage.accounts.update(self._accounts)
        storage.referral_index.update(self._referral_codes)
        for entry in self._entries:
            storage.ledger_entries[entry["id"]] = entry
        for record in self._audit_records:
            storage.audit_records[record["id"]] = record
        storage.processed_payments.update(self._payments)
        storage.processed_requests.update(self._request_ids)


class InMemoryStorage:
    def __init__(self, app_config: Optional[AppConfig] = None):
        self.accounts: dict[str, dict] = {}
        self.referral_index: dict[str, str] = {}
        self.ledger_entries: dict[str, dict] = {}
        self.audit_records: dict[str, dict] = {}
        self.processed_payments: dict[str, dict] = {}
        self.processed_requests: set[tuple[str, str]] = set()
        self._app_config = (app_config or AppConfig()).model_dump()
        self._lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        with self._lock:
            txn = Transaction(self)
            yield txn
            txn.commit()

    def get_account(self, account_id: str) -> Optional[Account]:
        data = self.accounts.get(account_id)
        return Account(**data) if data else None

    def transactional_update(
        self,
        account_id: str,
        delta: int,
        reason: str,
        actor: str,
        metadata: Optional[dict] = None,
    ) -> LedgerEntry:
        with self.transaction() as txn:
            entry = txn.apply(account_id, delta, reason, actor, metadata)
        return LedgerEntry(**entry)

    def check_and_set(self, account_id: str, field: str, expected: Any, value: Any) -> bool:
        with self.transaction() as txn:
            return txn.check_and_set(account_id, field, expected, value)

    def entries_for(self, account_id: str) -> list[LedgerEntry]:
        with self._lock:
            rows = [e for e in self.ledger_entries.values() if e["account_id"] == account_id]
        return [LedgerEntry(**e) for e in rows]

    def list_audit_records(self) -> list[AuditRecord]:
        with self._lock:
            rows = list(self.audit_records.values())
        records = [AuditRecord(**r) for r in rows]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records

    def get_app_config(self) -> AppConfig:
        # Read without transactional isolation.
        return AppConfig.model_validate(self._app_config)

    def update_app_config(self, mutate: Callable[[AppConfig], None]) -> AppConfig:
        with self._lock:
            config = AppConfig.model_validate(self._app_config)
            mutate(config)
            self._app_config = config.model_dump()
        logger.info("App config updated")
        return config
