from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union

from .config import Settings
from .models import DepositQuote

CENTS = Decimal("0.01")

# Flat credit cost of each gated feature
ACTION_COSTS: dict[str, Decimal] = {
    "innovation": Decimal("100"),
    "job": Decimal("50"),
    "investor_connection": Decimal("10"),
    "community_create": Decimal("100"),
    "community_join": Decimal("10"),
    "event": Decimal("50"),
}

SIGNUP_BONUS = "signup_bonus"
VERIFICATION_BONUS = "verification_bonus"

Amount = Union[Decimal, int, float, str]


def to_money(value: Amount) -> Decimal:
    """Convert to a Decimal rounded to cents. Raises InvalidOperation on garbage input."""
    if isinstance(value, float):
        value = repr(value)
    amount = value if isinstance(value, Decimal) else Decimal(str(value))
    if not amount.is_finite():
        raise InvalidOperation(f"Amount must be finite, got {value}")
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def resolve_action_cost(action: Optional[str], amount: Optional[Amount] = None) -> Decimal:
    if amount is not None:
        return to_money(amount)
    if action and action in ACTION_COSTS:
        return to_money(ACTION_COSTS[action])
    return Decimal("0.00")


def bonus_amount(kind: str, settings: Settings) -> Decimal:
    if kind == SIGNUP_BONUS:
        return to_money(settings.signup_bonus)
    if kind == VERIFICATION_BONUS:
        return to_money(settings.verification_bonus)
    raise ValueError(f"Unknown bonus kind: {kind}")


def quote_deposit(amount: Amount, settings: Settings) -> DepositQuote:
    """
    Split a gateway deposit into fees and the credits it buys.

    Raises:
        ValueError: if the amount is below the configured minimum deposit
    """
    try:
        deposit = to_money(amount)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid deposit amount: {amount}") from exc
    minimum = to_money(settings.min_deposit)
    if deposit < minimum:
        raise ValueError(f"Minimum deposit amount is {minimum}")

    gateway_fee = (deposit * settings.gateway_fee_rate).quantize(CENTS, rounding=ROUND_HALF_UP)
    platform_fee = (deposit * settings.platform_fee_rate).quantize(CENTS, rounding=ROUND_HALF_UP)
    total_fees = gateway_fee + platform_fee

    return DepositQuote(
        deposit_amount=deposit,
        payment_gateway_fee=gateway_fee,
        platform_fee=platform_fee,
        total_fees=total_fees,
        net_credits=deposit - total_fees,
    )
