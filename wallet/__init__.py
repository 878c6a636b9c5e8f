"""
Wallet Credit Ledger

This module provides:
- Per-user wallets with a non-negative balance
- Append-only transaction history with before/after balance snapshots
- deduct_credits / add_credits as the only balance mutations
- Duplicate protection keyed on (user, reference_type, reference_id)
- Referral tracking with bonus payout through the ledger
"""

from .models import (
    TransactionType,
    LedgerErrorKind,
    ReferralStatus,
    Wallet,
    WalletTransaction,
    LedgerResult,
    Referral,
)
from .service import WalletLedger
from .referrals import ReferralService

__all__ = [
    "TransactionType",
    "LedgerErrorKind",
    "ReferralStatus",
    "Wallet",
    "WalletTransaction",
    "LedgerResult",
    "Referral",
    "WalletLedger",
    "ReferralService",
]
