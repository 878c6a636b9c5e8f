from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    SPEND = "spend"
    EARN = "earn"
    REFERRAL_BONUS = "referral_bonus"


class TransactionStatus(str, Enum):
    COMPLETED = "completed"


class ReferralStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CREDITED = "credited"


class LedgerErrorKind(str, Enum):
    INSUFFICIENT_CREDITS = "insufficient_credits"
    VALIDATION_ERROR = "validation_error"
    DUPLICATE_REFERENCE = "duplicate_reference"
    TRANSACTION_FAILED = "transaction_failed"


class Wallet(BaseModel):
    user_id: str
    balance: Decimal = Decimal("0.00")
    total_earned: Decimal = Decimal("0.00")
    total_spent: Decimal = Decimal("0.00")
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class WalletTransaction(BaseModel):
    id: UUID
    user_id: str
    type: TransactionType
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    description: str
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    status: TransactionStatus = TransactionStatus.COMPLETED
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Referral(BaseModel):
    id: UUID
    referrer_id: str
    referred_email: str
    referral_code: str
    status: ReferralStatus
    reward_amount: Decimal
    referred_user_id: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    credited_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def can_complete(self) -> bool:
        return self.status == ReferralStatus.PENDING

    def can_credit(self) -> bool:
        return self.status == ReferralStatus.COMPLETED


class LedgerResult(BaseModel):
    """Outcome of a ledger mutation.

    Business rejections are reported here instead of being raised, so callers
    can decide on the response without wrapping every call in try/except.
    """
    success: bool
    new_balance: Optional[Decimal] = None
    transaction: Optional[WalletTransaction] = None
    error: Optional[LedgerErrorKind] = None
    message: str


class WalletSummary(BaseModel):
    user_id: str
    balance: Decimal
    total_earned: Decimal
    total_spent: Decimal
    exists: bool


class TransactionHistoryResponse(BaseModel):
    user_id: str
    transactions: list[WalletTransaction]
    total_count: int
    current_balance: Decimal


class CreditCheckResponse(BaseModel):
    has_enough_credits: bool
    current_balance: Decimal
    required_credits: Decimal
    shortfall: Decimal


class DepositQuote(BaseModel):
    deposit_amount: Decimal
    payment_gateway_fee: Decimal
    platform_fee: Decimal
    total_fees: Decimal
    net_credits: Decimal


class ReferralStats(BaseModel):
    user_id: str
    referral_code: str
    total_referrals: int
    credited_referrals: int
    total_earned: Decimal


class ReferralAnalytics(BaseModel):
    total_referrals: int
    credited_referrals: int
    conversion_rate: float
    total_rewards: Decimal


class ReferralListResponse(BaseModel):
    stats: ReferralStats
    referrals: list[Referral]


class DeductCreditsRequest(BaseModel):
    action: Optional[str] = None
    amount: Optional[Decimal] = None
    description: Optional[str] = None
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "action": "job",
            "description": "Job posting fee",
            "reference_id": "job-2024-0042",
        }
    })


class AddCreditsRequest(BaseModel):
    amount: Decimal
    description: str = Field(..., description="Human readable reason for the credit")
    reference_type: Optional[str] = Field(default="manual_correction")
    reference_id: Optional[str] = None


class CreditCheckRequest(BaseModel):
    action: Optional[str] = None
    amount: Optional[Decimal] = None


class DepositQuoteRequest(BaseModel):
    amount: Decimal


class CompleteDepositRequest(BaseModel):
    txn_id: str = Field(..., description="Gateway transaction id, used as the idempotency reference")
    net_credits: Decimal


class CreateReferralRequest(BaseModel):
    referred_email: str


class RegisterReferralRequest(BaseModel):
    new_user_id: str
    new_user_email: str
    referral_code: str
