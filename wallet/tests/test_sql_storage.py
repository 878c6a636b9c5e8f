"""
Ledger behaviour against the SQLAlchemy store (in-memory SQLite).
"""

import pytest
from decimal import Decimal
from uuid import uuid4
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from wallet.models import LedgerErrorKind, ReferralStatus, TransactionType
from wallet.referrals import ReferralService
from wallet.service import WalletLedger
from wallet.sql_storage import SqlStorage, WalletRow, WalletTransactionRow
from wallet.storage import ReferenceConflictError, StorageError


USER_ID = "550e8400-e29b-41d4-a716-446655440000"
OTHER_USER_ID = "660e8400-e29b-41d4-a716-446655440001"


@pytest.fixture
def storage():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    store = SqlStorage(engine=engine)
    store.create_all()
    yield store
    engine.dispose()


@pytest.fixture
def ledger(storage):
    return WalletLedger(storage)


class TestSqlLedger:

    def test_deduct_after_deposit(self, ledger, storage):
        ledger.add_credits(USER_ID, Decimal("100"), "deposit", "deposit", "TXN-1")

        result = ledger.deduct_credits(USER_ID, Decimal("50"), "fee")

        assert result.success is True
        assert result.new_balance == Decimal("50.00")
        summary = ledger.get_balance(USER_ID)
        assert summary.balance == Decimal("50.00")
        assert summary.total_spent == Decimal("50.00")
        assert summary.total_earned == Decimal("0.00")

    def test_insufficient_rolls_back_wallet_creation(self, ledger, storage):
        result = ledger.deduct_credits(USER_ID, Decimal("10"), "fee")

        assert result.error == LedgerErrorKind.INSUFFICIENT_CREDITS
        with Session(storage.engine) as session:
            assert session.get(WalletRow, USER_ID) is None
            assert session.execute(select(WalletTransactionRow)).first() is None

    def test_insufficient_writes_no_row(self, ledger):
        ledger.add_credits(USER_ID, Decimal("50"), "credit")

        result = ledger.deduct_credits(USER_ID, Decimal("80"), "fee")

        assert result.error == LedgerErrorKind.INSUFFICIENT_CREDITS
        assert result.new_balance == Decimal("50.00")
        assert ledger.get_transactions(USER_ID).total_count == 1

    def test_transaction_rows_persisted(self, ledger):
        ledger.add_credits(USER_ID, Decimal("50"), "referral", "referral_bonus", "ref-1")
        ledger.deduct_credits(USER_ID, Decimal("20"), "fee", "job", "job-1")

        history = ledger.get_transactions(USER_ID)
        types = {t.type for t in history.transactions}

        assert history.total_count == 2
        assert types == {TransactionType.REFERRAL_BONUS, TransactionType.SPEND}
        for txn in history.transactions:
            if txn.type == TransactionType.SPEND:
                assert txn.balance_after == txn.balance_before - txn.amount
            else:
                assert txn.balance_after == txn.balance_before + txn.amount

    def test_duplicate_reference(self, ledger):
        ledger.add_credits(USER_ID, Decimal("100"), "deposit", "deposit", "TXN-9")

        retry = ledger.add_credits(USER_ID, Decimal("100"), "deposit", "deposit", "TXN-9")

        assert retry.error == LedgerErrorKind.DUPLICATE_REFERENCE
        assert retry.transaction is not None
        assert ledger.get_balance(USER_ID).balance == Decimal("100.00")

    def test_getters_do_not_create(self, ledger, storage):
        ledger.get_balance(USER_ID)
        ledger.get_transactions(USER_ID)

        assert storage.get_wallet(USER_ID) is None

    def test_version_increments_per_write(self, ledger, storage):
        ledger.add_credits(USER_ID, Decimal("10"), "credit")
        ledger.add_credits(USER_ID, Decimal("10"), "credit")

        with Session(storage.engine) as session:
            assert session.get(WalletRow, USER_ID).version == 2

    def test_untyped_reference_matches_empty_type(self, ledger):
        ledger.add_credits(USER_ID, Decimal("5"), "a", None, "ref-1")

        retry = ledger.add_credits(USER_ID, Decimal("5"), "b", "", "ref-1")

        assert retry.error == LedgerErrorKind.DUPLICATE_REFERENCE
        assert retry.transaction.reference_type is None
        assert ledger.get_balance(USER_ID).balance == Decimal("5.00")

    def test_unique_constraint_covers_untyped_reference(self, ledger, storage):
        ledger.add_credits(USER_ID, Decimal("5"), "a", None, "ref-1")
        existing = ledger.get_transactions(USER_ID).transactions[0]

        with pytest.raises(ReferenceConflictError):
            with storage.wallet_session(USER_ID) as session:
                session.get_or_create_wallet()
                session.append_transaction({**existing.model_dump(), "id": uuid4(), "reference_type": None})

    def test_wallet_insert_tolerates_existing_row(self, ledger, storage):
        """A wallet created by a concurrent first write is reused, not re-inserted."""
        with storage.wallet_session(USER_ID) as session:
            session.insert_wallet_if_missing()
            session.insert_wallet_if_missing()

        result = ledger.add_credits(USER_ID, Decimal("10"), "credit")

        assert result.success is True
        with Session(storage.engine) as session:
            assert session.get(WalletRow, USER_ID).version == 1


class TestSqlReferrals:

    def test_referral_roundtrip_and_payout(self, ledger, storage):
        service = ReferralService(ledger, storage)
        created = service.create_referral(USER_ID, "friend@example.com")

        referral = service.process_registration(OTHER_USER_ID, "friend@example.com", created.referral_code)

        assert referral.status == ReferralStatus.CREDITED
        assert storage.get_referral(created.id)["status"] == "credited"
        assert ledger.get_balance(USER_ID).balance == Decimal("50.00")
        assert ledger.get_balance(OTHER_USER_ID).balance == Decimal("20.00")
        assert service.get_referral_stats(USER_ID).total_earned == Decimal("50.00")


class TestSqlStorageConfig:

    def test_requires_url_or_engine(self):
        with pytest.raises(ValueError):
            SqlStorage()

    def test_missing_tables_reported_as_transaction_failed(self):
        engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
        ledger = WalletLedger(SqlStorage(engine=engine))

        result = ledger.add_credits(USER_ID, Decimal("10"), "credit")

        assert result.error == LedgerErrorKind.TRANSACTION_FAILED

    def test_read_failure_raises_storage_error(self):
        engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
        storage = SqlStorage(engine=engine)

        with pytest.raises(StorageError):
            storage.get_wallet(USER_ID)
