import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional, Union
from uuid import uuid4

from .config import Settings
from .models import (
    TransactionType,
    TransactionStatus,
    LedgerErrorKind,
    Wallet,
    WalletTransaction,
    LedgerResult,
    WalletSummary,
    TransactionHistoryResponse,
    CreditCheckResponse,
)
from .pricing import Amount, to_money, resolve_action_cost, bonus_amount
from .storage import InMemoryStorage, StorageError, ReferenceConflictError

logger = logging.getLogger(__name__)


class LedgerServiceError(Exception):
    pass


class ValidationError(LedgerServiceError):
    pass


class InsufficientCreditsError(LedgerServiceError):
    def __init__(self, balance: Decimal, required: Decimal):
        super().__init__(f"Insufficient credits: balance {balance}, required {required}")
        self.balance = balance
        self.required = required


class DuplicateReferenceError(LedgerServiceError):
    def __init__(self, existing: Optional[dict], reference_type: Optional[str], reference_id: str):
        super().__init__(f"Transaction for reference {reference_type}:{reference_id} already recorded")
        self.existing = existing


def transaction_type_for(reference_type: Optional[str]) -> TransactionType:
    if reference_type == "referral_bonus":
        return TransactionType.REFERRAL_BONUS
    if reference_type == "deposit":
        return TransactionType.DEPOSIT
    return TransactionType.EARN


class WalletLedger:
    """Owns wallet balances and the append-only transaction log.

    ``deduct_credits`` and ``add_credits`` are the only ways a balance changes.
    Each runs as one unit of work on the storage's per-wallet session.
    """

    def __init__(self, storage=None, settings: Optional[Settings] = None):
        self.storage = storage if storage is not None else InMemoryStorage()
        self.settings = settings or Settings()

    def deduct_credits(
        self,
        user_id: str,
        amount: Amount,
        description: str,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> LedgerResult:
        return self._mutate(user_id, amount, description, reference_type, reference_id, debit=True)

    def add_credits(
        self,
        user_id: str,
        amount: Amount,
        description: str,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> LedgerResult:
        return self._mutate(user_id, amount, description, reference_type, reference_id, debit=False)

    def charge_for_action(
        self,
        user_id: str,
        action: Optional[str],
        amount: Optional[Amount] = None,
        description: Optional[str] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> LedgerResult:
        try:
            cost = resolve_action_cost(action, amount)
        except InvalidOperation:
            return self._failure(LedgerErrorKind.VALIDATION_ERROR, f"Invalid credit amount: {amount}")
        if cost <= 0:
            return self._failure(LedgerErrorKind.VALIDATION_ERROR, "Invalid credit amount")
        return self.deduct_credits(
            user_id,
            cost,
            description or f"Credits deducted for {action}",
            reference_type or action,
            reference_id,
        )

    def grant_bonus(self, user_id: str, kind: str) -> LedgerResult:
        amount = bonus_amount(kind, self.settings)
        label = kind.replace("_", " ")
        return self.add_credits(user_id, amount, f"{label.capitalize()} credits", kind, user_id)

    def complete_deposit(self, user_id: str, txn_id: str, net_credits: Amount) -> LedgerResult:
        return self.add_credits(
            user_id,
            net_credits,
            f"Wallet deposit (TxnID: {txn_id})",
            "deposit",
            txn_id,
        )

    def get_wallet(self, user_id: str) -> Optional[Wallet]:
        data = self.storage.get_wallet(user_id)
        return Wallet(**data) if data is not None else None

    def get_balance(self, user_id: str) -> WalletSummary:
        wallet = self.get_wallet(user_id)
        if wallet is None:
            zero = Decimal("0.00")
            return WalletSummary(user_id=user_id, balance=zero, total_earned=zero, total_spent=zero, exists=False)
        return WalletSummary(
            user_id=user_id,
            balance=wallet.balance,
            total_earned=wallet.total_earned,
            total_spent=wallet.total_spent,
            exists=True,
        )

    def get_transactions(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        transaction_type: Optional[Union[TransactionType, str]] = None,
    ) -> TransactionHistoryResponse:
        type_filter = getattr(transaction_type, "value", transaction_type)
        rows, total = self.storage.list_transactions(user_id, limit, offset, type_filter)
        return TransactionHistoryResponse(
            user_id=user_id,
            transactions=[WalletTransaction(**r) for r in rows],
            total_count=total,
            current_balance=self.get_balance(user_id).balance,
        )

    def check_credits(
        self,
        user_id: str,
        amount: Optional[Amount] = None,
        action: Optional[str] = None,
    ) -> CreditCheckResponse:
        """Raises ValidationError for an amount that is not a finite, non-negative number."""
        try:
            required = resolve_action_cost(action, amount)
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError(f"Invalid credit amount: {amount}")
        if required < 0:
            raise ValidationError("Amount must not be negative")
        balance = self.get_balance(user_id).balance
        has_enough = balance >= required
        return CreditCheckResponse(
            has_enough_credits=has_enough,
            current_balance=balance,
            required_credits=required,
            shortfall=Decimal("0.00") if has_enough else required - balance,
        )

    def _mutate(
        self,
        user_id: str,
        amount: Amount,
        description: str,
        reference_type: Optional[str],
        reference_id: Optional[str],
        debit: bool,
    ) -> LedgerResult:
        try:
            amount = self._validate(user_id, amount)
        except ValidationError as e:
            logger.warning("Rejected wallet mutation for %r: %s", user_id, e)
            return self._failure(LedgerErrorKind.VALIDATION_ERROR, str(e))

        try:
            with self.storage.wallet_session(user_id) as session:
                # the wallet lock must be held before the reference lookup
                wallet = session.get_or_create_wallet()
                current_balance = wallet["balance"]

                if reference_id is not None:
                    existing = session.find_transaction_by_reference(reference_type, reference_id)
                    if existing is not None:
                        raise DuplicateReferenceError(existing, reference_type, reference_id)

                if debit:
                    if current_balance < amount:
                        raise InsufficientCreditsError(current_balance, amount)
                    new_balance = current_balance - amount
                    wallet["total_spent"] += amount
                    txn_type = TransactionType.SPEND
                else:
                    new_balance = current_balance + amount
                    # deposits are money in, not credits earned on the platform
                    if reference_type != "deposit":
                        wallet["total_earned"] += amount
                    txn_type = transaction_type_for(reference_type)

                now = datetime.now(timezone.utc)
                wallet["balance"] = new_balance
                wallet["updated_at"] = now
                session.save_wallet(wallet)

                row = {
                    "id": uuid4(),
                    "user_id": user_id,
                    "type": txn_type,
                    "amount": amount,
                    "balance_before": current_balance,
                    "balance_after": new_balance,
                    "description": description,
                    "reference_type": reference_type,
                    "reference_id": reference_id,
                    "status": TransactionStatus.COMPLETED,
                    "created_at": now,
                }
                session.append_transaction(row)
        except InsufficientCreditsError as e:
            logger.warning("Insufficient credits for %s: balance %s, required %s", user_id, e.balance, e.required)
            return LedgerResult(
                success=False,
                new_balance=e.balance,
                error=LedgerErrorKind.INSUFFICIENT_CREDITS,
                message="Insufficient credits",
            )
        except (DuplicateReferenceError, ReferenceConflictError) as e:
            logger.warning("Duplicate wallet reference for %s: %s", user_id, e)
            return LedgerResult(
                success=False,
                new_balance=self.get_balance(user_id).balance,
                transaction=WalletTransaction(**e.existing) if e.existing else None,
                error=LedgerErrorKind.DUPLICATE_REFERENCE,
                message=str(e),
            )
        except StorageError:
            logger.exception("Wallet transaction failed for %s", user_id)
            return self._failure(LedgerErrorKind.TRANSACTION_FAILED, "Transaction failed")

        logger.info(
            "%s %s credits for %s (%s -> %s): %s",
            "Deducted" if debit else "Added", amount, user_id, current_balance, new_balance, description,
        )
        return LedgerResult(
            success=True,
            new_balance=new_balance,
            transaction=WalletTransaction(**row),
            message="Credits deducted successfully" if debit else "Credits added successfully",
        )

    def _validate(self, user_id: str, amount: Amount) -> Decimal:
        if not user_id or not str(user_id).strip():
            raise ValidationError("user_id is required")
        if amount is None or isinstance(amount, bool):
            raise ValidationError("amount is required")
        try:
            value = to_money(amount)
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError(f"Invalid credit amount: {amount}")
        if value <= 0:
            raise ValidationError("Amount must be positive")
        return value

    @staticmethod
    def _failure(kind: LedgerErrorKind, message: str) -> LedgerResult:
        return LedgerResult(success=False, error=kind, message=message)
