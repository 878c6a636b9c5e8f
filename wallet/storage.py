import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterator, Optional
from uuid import UUID

logger = logging.getLogger(__name__)


class StorageError(Exception):
    pass


class ConcurrentUpdateError(StorageError):
    pass


class ReferenceConflictError(StorageError):
    """A transaction row with the same (user, reference_type, reference_id) exists."""

    def __init__(self, message: str, existing: Optional[dict] = None):
        super().__init__(message)
        self.existing = existing


def reference_key(user_id: str, reference_type: Optional[str], reference_id: Optional[str]) -> tuple:
    return (user_id, reference_type or "", reference_id)


class InMemoryWalletSession:
    """Unit of work over one wallet.

    Reads see committed state plus this session's own staged writes. Nothing
    reaches the storage until ``commit`` runs, so raising inside the session
    discards every staged change.
    """

    def __init__(self, storage: "InMemoryStorage", user_id: str):
        self.storage = storage
        self.user_id = user_id
        self._wallet: Optional[dict] = None
        self._dirty = False
        self._new_transactions: list[dict] = []

    def get_or_create_wallet(self) -> dict:
        if self._wallet is None:
            existing = self.storage.get_wallet(self.user_id)
            if existing is not None:
                self._wallet = existing
            else:
                now = datetime.now(timezone.utc)
                self._wallet = {
                    "user_id": self.user_id,
                    "balance": Decimal("0.00"),
                    "total_earned": Decimal("0.00"),
                    "total_spent": Decimal("0.00"),
                    "created_at": now,
                    "updated_at": now,
                }
                self._dirty = True
        return dict(self._wallet)

    def find_transaction_by_reference(self, reference_type: Optional[str], reference_id: str) -> Optional[dict]:
        key = reference_key(self.user_id, reference_type, reference_id)
        for row in self._new_transactions:
            if reference_key(row["user_id"], row["reference_type"], row["reference_id"]) == key:
                return dict(row)
        with self.storage._data_lock:
            txn_id = self.storage.reference_index.get(key)
            if txn_id is None:
                return None
            return dict(self.storage.transactions[txn_id])

    def save_wallet(self, wallet: dict) -> None:
        self._wallet = dict(wallet)
        self._dirty = True

    def append_transaction(self, row: dict) -> None:
        self._new_transactions.append(dict(row))

    def commit(self) -> None:
        storage = self.storage
        with storage._data_lock:
            for row in self._new_transactions:
                if row.get("reference_id") is None:
                    continue
                key = reference_key(row["user_id"], row["reference_type"], row["reference_id"])
                if key in storage.reference_index:
                    existing = storage.transactions[storage.reference_index[key]]
                    raise ReferenceConflictError(
                        f"Transaction for reference {row['reference_type']}:{row['reference_id']} already exists",
                        existing=dict(existing),
                    )

            if self._dirty and self._wallet is not None:
                storage.wallets[self.user_id] = self._wallet
            for row in self._new_transactions:
                storage.transactions[row["id"]] = row
                if row.get("reference_id") is not None:
                    key = reference_key(row["user_id"], row["reference_type"], row["reference_id"])
                    storage.reference_index[key] = row["id"]


class InMemoryStorage:
    def __init__(self):
        self.wallets: dict[str, dict] = {}
        self.transactions: dict[UUID, dict] = {}
        self.reference_index: dict[tuple, UUID] = {}
        self.referrals: dict[UUID, dict] = {}
        self._wallet_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        # guards the shared dicts; wallet locks only serialize one user's writers
        self._data_lock = threading.RLock()

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._wallet_locks.get(user_id)
            if lock is None:
                lock = self._wallet_locks[user_id] = threading.Lock()
            return lock

    @contextmanager
    def wallet_session(self, user_id: str) -> Iterator[InMemoryWalletSession]:
        with self._lock_for(user_id):
            session = InMemoryWalletSession(self, user_id)
            yield session
            session.commit()

    def get_wallet(self, user_id: str) -> Optional[dict]:
        with self._data_lock:
            wallet = self.wallets.get(user_id)
            return dict(wallet) if wallet is not None else None

    def list_transactions(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        transaction_type: Optional[str] = None,
    ) -> tuple[list[dict], int]:
        with self._data_lock:
            rows = [
                dict(t) for t in self.transactions.values()
                if t["user_id"] == user_id and (transaction_type is None or t["type"] == transaction_type)
            ]
        # insertion order breaks ties between rows written in the same tick
        rows = list(reversed(rows))
        rows.sort(key=lambda t: t["created_at"], reverse=True)
        return rows[offset:offset + limit], len(rows)

    def known_user_ids(self) -> set[str]:
        with self._data_lock:
            return set(self.wallets) | {r["referrer_id"] for r in self.referrals.values()}

    def save_referral(self, referral: dict) -> None:
        with self._data_lock:
            self.referrals[referral["id"]] = dict(referral)

    def get_referral(self, referral_id: UUID) -> Optional[dict]:
        with self._data_lock:
            referral = self.referrals.get(referral_id)
            return dict(referral) if referral is not None else None

    def list_referrals(self, referrer_id: Optional[str] = None) -> list[dict]:
        with self._data_lock:
            rows = [
                dict(r) for r in self.referrals.values()
                if referrer_id is None or r["referrer_id"] == referrer_id
            ]
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return rows

    def find_referral(self, referral_code: str, referred_email: str) -> Optional[dict]:
        with self._data_lock:
            matches = [
                dict(r) for r in self.referrals.values()
                if r["referral_code"] == referral_code and r["referred_email"].lower() == referred_email.lower()
            ]
        if not matches:
            return None
        # a pending record is the one a registration can still convert
        matches.sort(key=lambda r: r["status"] != "pending")
        return matches[0]
