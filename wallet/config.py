import logging
import os
from decimal import Decimal
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


class Settings(BaseModel):
    """Runtime settings for the wallet service, read from the environment."""

    database_url: Optional[str] = None
    log_level: str = "INFO"
    log_file: Optional[str] = None
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    signup_bonus: Decimal = Decimal("10")
    verification_bonus: Decimal = Decimal("20")
    referral_reward: Decimal = Decimal("50")
    referral_welcome_bonus: Decimal = Decimal("20")

    min_deposit: Decimal = Decimal("10")
    gateway_fee_rate: Decimal = Decimal("0.02")
    platform_fee_rate: Decimal = Decimal("0.01")

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ORIGINS", "*")
        values = {
            "database_url": os.getenv("WALLET_DATABASE_URL") or None,
            "log_level": os.getenv("LOG_LEVEL", "INFO").upper(),
            "log_file": os.getenv("LOG_FILE") or None,
            "cors_origins": [o.strip() for o in origins.split(",") if o.strip()],
        }
        # optional overrides for amounts; unset keeps the model default
        for field, env_name in (
            ("signup_bonus", "SIGNUP_BONUS"),
            ("verification_bonus", "VERIFICATION_BONUS"),
            ("referral_reward", "REFERRAL_REWARD"),
            ("referral_welcome_bonus", "REFERRAL_WELCOME_BONUS"),
            ("min_deposit", "MIN_DEPOSIT"),
            ("gateway_fee_rate", "GATEWAY_FEE_RATE"),
            ("platform_fee_rate", "PLATFORM_FEE_RATE"),
        ):
            raw = os.getenv(env_name)
            if raw:
                values[field] = Decimal(raw)
        return cls(**values)


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure logging settings"""
    log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=log_format,
        handlers=handlers,
    )
