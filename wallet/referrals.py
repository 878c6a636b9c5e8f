"""
Referral tracking and payout.

A referral moves pending -> completed (the referred person registered) ->
credited (both sides were paid). Payouts go through the wallet ledger with the
referral id as reference, so re-running ``credit_referral`` after a partial
failure never pays anyone twice.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID, uuid4

from .models import (
    LedgerErrorKind,
    Referral,
    ReferralAnalytics,
    ReferralListResponse,
    ReferralStats,
    ReferralStatus,
    TransactionType,
)
from .pricing import to_money
from .service import WalletLedger

logger = logging.getLogger(__name__)

REFERRAL_CODE_PREFIX = "QIP"
REFERRAL_REFERENCE_TYPE = "referral_bonus"


class ReferralError(Exception):
    pass


class ReferralNotFoundError(ReferralError):
    pass


class InvalidReferralStateError(ReferralError):
    pass


class DuplicateReferralError(ReferralError):
    pass


class InvalidReferralError(ReferralError):
    pass


class ReferralPayoutError(ReferralError):
    pass


def referral_code_for(user_id: str) -> str:
    return f"{REFERRAL_CODE_PREFIX}{str(user_id)[:6].upper()}"


def storage_referrer_lookup(storage) -> Callable[[str], Optional[str]]:
    """
    Build a referrer lookup over every user the store knows about.

    Codes only carry six characters of the user id, so a code shared by
    several users resolves to nobody.
    """

    def lookup(referral_code: str) -> Optional[str]:
        code = referral_code.strip().upper()
        matches = sorted(u for u in storage.known_user_ids() if referral_code_for(u) == code)
        if len(matches) == 1:
            return matches[0]
        if matches:
            logger.warning("Referral code %s matches %d users, not resolving", code, len(matches))
        return None

    return lookup


class ReferralService:
    def __init__(
        self,
        ledger: WalletLedger,
        storage=None,
        referrer_lookup: Optional[Callable[[str], Optional[str]]] = None,
    ):
        self.ledger = ledger
        self.storage = storage if storage is not None else ledger.storage
        # resolves a referral code to a referrer id when no referral row exists
        self.referrer_lookup = referrer_lookup

    def create_referral(
        self,
        referrer_id: str,
        referred_email: str,
        reward_amount: Optional[Decimal] = None,
    ) -> Referral:
        email = (referred_email or "").strip()
        if "@" not in email:
            raise InvalidReferralError("Valid email address is required")

        for existing in self.storage.list_referrals(referrer_id):
            if existing["referred_email"].lower() == email.lower():
                raise DuplicateReferralError("This email has already been referred by you")

        referral_data = {
            "id": uuid4(),
            "referrer_id": referrer_id,
            "referred_email": email,
            "referral_code": referral_code_for(referrer_id),
            "status": ReferralStatus.PENDING,
            "reward_amount": to_money(reward_amount if reward_amount is not None else self.ledger.settings.referral_reward),
            "referred_user_id": None,
            "created_at": datetime.now(timezone.utc),
            "completed_at": None,
            "credited_at": None,
        }
        self.storage.save_referral(referral_data)
        logger.info("Created referral %s from %s to %s", referral_data["id"], referrer_id, email)
        return Referral(**referral_data)

    def get_referral(self, referral_id: UUID) -> Referral:
        data = self.storage.get_referral(referral_id)
        if not data:
            raise ReferralNotFoundError(f"Referral {referral_id} not found")
        return Referral(**data)

    def process_registration(self, new_user_id: str, new_user_email: str, referral_code: str) -> Referral:
        data = self.storage.find_referral(referral_code, new_user_email)
        if data is None:
            data = self._create_retroactive_referral(new_user_email, referral_code)

        referral = Referral(**data)
        if not referral.can_complete():
            raise InvalidReferralStateError(f"Referral already processed: {referral.status.value}")
        if referral.referred_email.lower() != new_user_email.strip().lower():
            raise InvalidReferralError("Referred email does not match the registering user")
        if referral.referrer_id == new_user_id:
            raise InvalidReferralError("Users cannot refer themselves")

        data["status"] = ReferralStatus.COMPLETED
        data["referred_user_id"] = new_user_id
        data["completed_at"] = datetime.now(timezone.utc)
        self.storage.save_referral(data)
        logger.info("Referral %s completed by %s", referral.id, new_user_id)

        return self.credit_referral(referral.id)

    def credit_referral(self, referral_id: UUID) -> Referral:
        """Pay the welcome bonus and the referrer reward for a completed referral."""
        referral = self.get_referral(referral_id)
        if not referral.can_credit():
            raise InvalidReferralStateError(f"Cannot credit referral in {referral.status.value} state")

        reference_id = str(referral.id)
        payouts = [
            (
                referral.referred_user_id,
                to_money(self.ledger.settings.referral_welcome_bonus),
                "Referral bonus - Welcome via referral!",
            ),
            (
                referral.referrer_id,
                referral.reward_amount,
                f"Referral reward - {referral.referred_email} joined via your referral",
            ),
        ]
        for user_id, amount, description in payouts:
            if amount <= 0:
                continue
            result = self.ledger.add_credits(user_id, amount, description, REFERRAL_REFERENCE_TYPE, reference_id)
            if result.success or result.error == LedgerErrorKind.DUPLICATE_REFERENCE:
                continue
            logger.error("Referral payout to %s failed for %s: %s", user_id, referral.id, result.message)
            raise ReferralPayoutError(f"Failed to credit referral {referral.id}: {result.message}")

        data = referral.model_dump()
        data["status"] = ReferralStatus.CREDITED
        data["credited_at"] = datetime.now(timezone.utc)
        self.storage.save_referral(data)
        logger.info("Referral %s credited", referral.id)
        return Referral(**data)

    def list_referrals(self, user_id: str) -> ReferralListResponse:
        return ReferralListResponse(
            stats=self.get_referral_stats(user_id),
            referrals=[Referral(**r) for r in self.storage.list_referrals(user_id)],
        )

    def get_referral_stats(self, user_id: str) -> ReferralStats:
        referrals = self.storage.list_referrals(user_id)
        bonus_rows, _ = self.storage.list_transactions(
            user_id, limit=10_000, transaction_type=TransactionType.REFERRAL_BONUS.value
        )
        return ReferralStats(
            user_id=user_id,
            referral_code=referral_code_for(user_id),
            total_referrals=len(referrals),
            credited_referrals=sum(1 for r in referrals if r["status"] == ReferralStatus.CREDITED),
            total_earned=sum((r["amount"] for r in bonus_rows), Decimal("0.00")),
        )

    def get_referral_analytics(self) -> ReferralAnalytics:
        referrals = self.storage.list_referrals()
        credited = [r for r in referrals if r["status"] == ReferralStatus.CREDITED]
        total = len(referrals)
        return ReferralAnalytics(
            total_referrals=total,
            credited_referrals=len(credited),
            conversion_rate=(len(credited) / total) * 100 if total > 0 else 0.0,
            total_rewards=sum((r["reward_amount"] for r in credited), Decimal("0.00")),
        )

    def _create_retroactive_referral(self, new_user_email: str, referral_code: str) -> dict:
        referrer_id = self.referrer_lookup(referral_code) if self.referrer_lookup else None
        if not referrer_id:
            raise ReferralNotFoundError(f"No referral found for code: {referral_code}")

        logger.info("Creating retroactive referral for code %s (referrer %s)", referral_code, referrer_id)
        referral = self.create_referral(referrer_id, new_user_email)
        return referral.model_dump()
