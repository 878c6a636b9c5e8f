"""
Relational storage for the wallet ledger (SQLAlchemy 2.x).

Every mutation runs inside one database transaction. The wallet row is read
``FOR UPDATE`` where the dialect supports it and written back with a version
check, so a concurrent writer that slipped past the row lock is detected
instead of silently overwriting the balance.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterator, Optional
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    create_engine,
    func,
    insert,
    select,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from .storage import ConcurrentUpdateError, ReferenceConflictError, StorageError

logger = logging.getLogger(__name__)

MONEY = Numeric(12, 2)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class WalletRow(Base):
    __tablename__ = "wallets"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),
    )

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    balance: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"), nullable=False)
    total_earned: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"), nullable=False)
    total_spent: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "balance": self.balance,
            "total_earned": self.total_earned,
            "total_spent": self.total_spent,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class WalletTransactionRow(Base):
    __tablename__ = "wallet_transactions"
    __table_args__ = (
        Index("ix_wallet_transactions_user_created", "user_id", "created_at"),
        UniqueConstraint("user_id", "reference_type", "reference_id", name="uq_wallet_transactions_reference"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    # "" rather than NULL so the unique constraint also covers untyped references
    reference_type: Mapped[str] = mapped_column(String(50), default="", nullable=False)
    reference_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="completed", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": UUID(self.id),
            "user_id": self.user_id,
            "type": self.type,
            "amount": self.amount,
            "balance_before": self.balance_before,
            "balance_after": self.balance_after,
            "description": self.description,
            "reference_type": self.reference_type or None,
            "reference_id": self.reference_id,
            "status": self.status,
            "created_at": self.created_at,
        }


class ReferralRow(Base):
    __tablename__ = "referrals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    referrer_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    referred_email: Mapped[str] = mapped_column(String(255), nullable=False)
    referral_code: Mapped[str] = mapped_column(String(20), index=True, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    reward_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    referred_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    credited_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": UUID(self.id),
            "referrer_id": self.referrer_id,
            "referred_email": self.referred_email,
            "referral_code": self.referral_code,
            "status": self.status,
            "reward_amount": self.reward_amount,
            "referred_user_id": self.referred_user_id,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "credited_at": self.credited_at,
        }


class SqlWalletSession:
    def __init__(self, session: Session, user_id: str):
        self.session = session
        self.user_id = user_id
        self._row: Optional[WalletRow] = None

    def insert_wallet_if_missing(self) -> None:
        """Insert an empty wallet row unless one exists, without failing on a concurrent insert."""
        now = _utcnow()
        values = {
            "user_id": self.user_id,
            "balance": Decimal("0.00"),
            "total_earned": Decimal("0.00"),
            "total_spent": Decimal("0.00"),
            # the first balance write bumps this to 1
            "version": 0,
            "created_at": now,
            "updated_at": now,
        }
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = postgresql.insert(WalletRow.__table__).values(**values).on_conflict_do_nothing(index_elements=["user_id"])
        elif dialect == "sqlite":
            stmt = sqlite.insert(WalletRow.__table__).values(**values).on_conflict_do_nothing(index_elements=["user_id"])
        else:
            exists = self.session.execute(
                select(WalletRow.user_id).where(WalletRow.user_id == self.user_id)
            ).first()
            if exists is not None:
                return
            stmt = insert(WalletRow.__table__).values(**values)
        self.session.execute(stmt)

    def get_or_create_wallet(self) -> dict:
        if self._row is None:
            self.insert_wallet_if_missing()
            self._row = self.session.execute(
                select(WalletRow)
                .where(WalletRow.user_id == self.user_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one()
        return self._row.to_dict()

    def find_transaction_by_reference(self, reference_type: Optional[str], reference_id: str) -> Optional[dict]:
        row = self.session.execute(
            select(WalletTransactionRow).where(
                WalletTransactionRow.user_id == self.user_id,
                WalletTransactionRow.reference_type == (reference_type or ""),
                WalletTransactionRow.reference_id == reference_id,
            )
        ).scalar_one_or_none()
        return row.to_dict() if row is not None else None

    def save_wallet(self, wallet: dict) -> None:
        if self._row is None:
            self.get_or_create_wallet()
        self._row.balance = wallet["balance"]
        self._row.total_earned = wallet["total_earned"]
        self._row.total_spent = wallet["total_spent"]
        self._row.updated_at = wallet["updated_at"]

    def append_transaction(self, row: dict) -> None:
        # flush the wallet first so a constraint failure below can only come from the new row
        self.session.flush()
        record = WalletTransactionRow(
            id=str(row["id"]),
            user_id=row["user_id"],
            type=str(getattr(row["type"], "value", row["type"])),
            amount=row["amount"],
            balance_before=row["balance_before"],
            balance_after=row["balance_after"],
            description=row["description"],
            reference_type=row.get("reference_type") or "",
            reference_id=row.get("reference_id"),
            status=str(getattr(row["status"], "value", row["status"])),
            created_at=row["created_at"],
        )
        self.session.add(record)
        try:
            self.session.flush()
        except IntegrityError as exc:
            if row.get("reference_id") is not None:
                raise ReferenceConflictError(
                    f"Transaction for reference {row.get('reference_type')}:{row['reference_id']} already exists"
                ) from exc
            raise StorageError(f"Failed to record wallet transaction: {exc}") from exc


class SqlStorage:
    def __init__(self, url: Optional[str] = None, engine: Optional[Engine] = None, echo: bool = False):
        if engine is None:
            if not url:
                raise ValueError("SqlStorage needs a database url or an engine")
            engine = create_engine(url, echo=echo)
        self.engine = engine
        self._sessionmaker = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def wallet_session(self, user_id: str) -> Iterator[SqlWalletSession]:
        try:
            with self._sessionmaker.begin() as session:
                yield SqlWalletSession(session, user_id)
        except StaleDataError as exc:
            raise ConcurrentUpdateError(f"Wallet {user_id} was modified concurrently") from exc
        except SQLAlchemyError as exc:
            raise StorageError(f"Wallet transaction failed for {user_id}: {exc}") from exc

    @contextmanager
    def _read_session(self) -> Iterator[Session]:
        try:
            with self._sessionmaker() as session:
                yield session
        except SQLAlchemyError as exc:
            raise StorageError(f"Read failed: {exc}") from exc

    def get_wallet(self, user_id: str) -> Optional[dict]:
        with self._read_session() as session:
            row = session.get(WalletRow, user_id)
            return row.to_dict() if row is not None else None

    def list_transactions(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        transaction_type: Optional[str] = None,
    ) -> tuple[list[dict], int]:
        with self._read_session() as session:
            filters = [WalletTransactionRow.user_id == user_id]
            if transaction_type is not None:
                filters.append(WalletTransactionRow.type == transaction_type)
            total = session.execute(
                select(func.count()).select_from(WalletTransactionRow).where(*filters)
            ).scalar_one()
            rows = session.execute(
                select(WalletTransactionRow)
                .where(*filters)
                .order_by(WalletTransactionRow.created_at.desc())
                .limit(limit)
                .offset(offset)
            ).scalars().all()
            return [r.to_dict() for r in rows], total

    def save_referral(self, referral: dict) -> None:
        data = dict(referral)
        data["id"] = str(data["id"])
        data["status"] = str(getattr(data["status"], "value", data["status"]))
        try:
            with self._sessionmaker.begin() as session:
                session.merge(ReferralRow(**data))
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to save referral {data['id']}: {exc}") from exc

    def get_referral(self, referral_id: UUID) -> Optional[dict]:
        with self._read_session() as session:
            row = session.get(ReferralRow, str(referral_id))
            return row.to_dict() if row is not None else None

    def known_user_ids(self) -> set[str]:
        with self._read_session() as session:
            wallet_users = session.execute(select(WalletRow.user_id)).scalars().all()
            referrers = session.execute(select(ReferralRow.referrer_id).distinct()).scalars().all()
            return set(wallet_users) | set(referrers)

    def list_referrals(self, referrer_id: Optional[str] = None) -> list[dict]:
        with self._read_session() as session:
            stmt = select(ReferralRow).order_by(ReferralRow.created_at.desc())
            if referrer_id is not None:
                stmt = stmt.where(ReferralRow.referrer_id == referrer_id)
            return [r.to_dict() for r in session.execute(stmt).scalars().all()]

    def find_referral(self, referral_code: str, referred_email: str) -> Optional[dict]:
        with self._read_session() as session:
            rows = session.execute(
                select(ReferralRow).where(
                    ReferralRow.referral_code == referral_code,
                    func.lower(ReferralRow.referred_email) == referred_email.lower(),
                )
            ).scalars().all()
            if not rows:
                return None
            rows = sorted(rows, key=lambda r: r.status != "pending")
            return rows[0].to_dict()
