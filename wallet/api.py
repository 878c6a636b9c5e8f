import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, setup_logging
from .models import (
    LedgerErrorKind, LedgerResult, WalletSummary, TransactionHistoryResponse,
    TransactionType, CreditCheckResponse, DepositQuote, Referral,
    ReferralListResponse, ReferralAnalytics, DeductCreditsRequest,
    AddCreditsRequest, CreditCheckRequest, DepositQuoteRequest,
    CompleteDepositRequest, CreateReferralRequest, RegisterReferralRequest,
)
from .pricing import quote_deposit
from .referrals import (
    ReferralService, ReferralNotFoundError, InvalidReferralStateError, storage_referrer_lookup,
    DuplicateReferralError, InvalidReferralError, ReferralPayoutError,
)
from .service import ValidationError, WalletLedger
from .storage import InMemoryStorage
from .sql_storage import SqlStorage

settings = Settings.from_env()
setup_logging(settings.log_level, settings.log_file)
logger = logging.getLogger(__name__)


def build_storage(settings: Settings):
    if settings.database_url:
        storage = SqlStorage(settings.database_url)
        storage.create_all()
        logger.info("Using SQL wallet storage")
        return storage
    logger.info("WALLET_DATABASE_URL not set, using in-memory wallet storage")
    return InMemoryStorage()


app = FastAPI(
    title="Wallet Ledger API",
    description="Credit wallet with an append-only transaction history and referral rewards",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

wallet_storage = build_storage(settings)
wallet_ledger = WalletLedger(wallet_storage, settings)
referral_service = ReferralService(wallet_ledger, referrer_lookup=storage_referrer_lookup(wallet_storage))

ERROR_STATUS = {
    LedgerErrorKind.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    LedgerErrorKind.INSUFFICIENT_CREDITS: status.HTTP_400_BAD_REQUEST,
    LedgerErrorKind.DUPLICATE_REFERENCE: status.HTTP_409_CONFLICT,
    LedgerErrorKind.TRANSACTION_FAILED: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _ledger_response(result: LedgerResult) -> LedgerResult:
    if result.success:
        return result
    raise HTTPException(
        status_code=ERROR_STATUS[result.error],
        detail={
            "error": result.error.value,
            "message": result.message,
            "current_balance": str(result.new_balance) if result.new_balance is not None else None,
        },
    )


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "wallet-ledger"}


@app.get("/users/{user_id}/wallet", response_model=WalletSummary, tags=["Wallet"])
def get_wallet(user_id: str) -> WalletSummary:
    return wallet_ledger.get_balance(user_id)


@app.get("/users/{user_id}/wallet/transactions", response_model=TransactionHistoryResponse, tags=["Wallet"])
def get_wallet_transactions(
    user_id: str,
    limit: int = 50,
    offset: int = 0,
    type: Optional[TransactionType] = None,
) -> TransactionHistoryResponse:
    return wallet_ledger.get_transactions(user_id, limit, offset, type)


@app.post("/users/{user_id}/credits/check", response_model=CreditCheckResponse, tags=["Credits"])
def check_credits(user_id: str, request: CreditCheckRequest) -> CreditCheckResponse:
    try:
        return wallet_ledger.check_credits(user_id, request.amount, request.action)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.post("/users/{user_id}/credits/deduct", response_model=LedgerResult, tags=["Credits"])
def deduct_credits(user_id: str, request: DeductCreditsRequest) -> LedgerResult:
    result = wallet_ledger.charge_for_action(
        user_id,
        request.action,
        amount=request.amount,
        description=request.description,
        reference_type=request.reference_type,
        reference_id=request.reference_id,
    )
    return _ledger_response(result)


@app.post("/users/{user_id}/credits/add", response_model=LedgerResult, tags=["Credits"])
def add_credits(user_id: str, request: AddCreditsRequest) -> LedgerResult:
    result = wallet_ledger.add_credits(
        user_id, request.amount, request.description, request.reference_type, request.reference_id,
    )
    return _ledger_response(result)


@app.post("/deposits/quote", response_model=DepositQuote, tags=["Deposits"])
def deposit_quote(request: DepositQuoteRequest) -> DepositQuote:
    try:
        return quote_deposit(request.amount, settings)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.post("/users/{user_id}/deposits/complete", response_model=LedgerResult, tags=["Deposits"])
def complete_deposit(user_id: str, request: CompleteDepositRequest) -> LedgerResult:
    return _ledger_response(wallet_ledger.complete_deposit(user_id, request.txn_id, request.net_credits))


@app.post("/users/{user_id}/referrals", response_model=Referral, status_code=status.HTTP_201_CREATED, tags=["Referrals"])
def create_referral(user_id: str, request: CreateReferralRequest) -> Referral:
    try:
        return referral_service.create_referral(user_id, request.referred_email)
    except DuplicateReferralError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except InvalidReferralError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.get("/users/{user_id}/referrals", response_model=ReferralListResponse, tags=["Referrals"])
def list_referrals(user_id: str) -> ReferralListResponse:
    return referral_service.list_referrals(user_id)


@app.post("/referrals/register", response_model=Referral, tags=["Referrals"])
def register_referral(request: RegisterReferralRequest) -> Referral:
    try:
        return referral_service.process_registration(
            request.new_user_id, request.new_user_email, request.referral_code,
        )
    except ReferralNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (InvalidReferralStateError, InvalidReferralError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ReferralPayoutError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@app.get("/admin/referrals/analytics", response_model=ReferralAnalytics, tags=["Admin"])
def referral_analytics() -> ReferralAnalytics:
    return referral_service.get_referral_analytics()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
