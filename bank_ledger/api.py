"""
FastAPI REST API Module

HTTP surface over the ledger engine. This layer is a caller like any
console or GUI front end: it parses requests, checks the owner's PIN with
the AccessGuard before debits, and renders engine results and errors.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from pydantic import BaseModel, Field
import uvicorn

from . import __version__
from .access import AccessGuard
from .accounts import Account
from .engine import LedgerEngine
from .errors import (
    AuthError, InactiveAccountError, InsufficientFundsError, LedgerError,
    NotFoundError, PersistenceError, SameAccountError, ValidationError
)
from .ledger import LedgerEntry
from .logging_config import get_logger

logger = get_logger("bank_ledger.api")


# Pydantic models for API requests
class OpenAccountRequest(BaseModel):
    customer_id: int
    account_type: str = Field(..., description="SAVINGS, CHECKING or FIXED_DEPOSIT")
    initial_balance: str = Field("0.00", description="Decimal amount as string")
    pin: str = Field(..., description="4-digit PIN")


class DepositRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    description: Optional[str] = None


class WithdrawRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    pin: str
    description: Optional[str] = None


class TransferRequest(BaseModel):
    from_account_number: str
    to_account_number: str
    amount: str = Field(..., description="Decimal amount as string")
    pin: str = Field(..., description="PIN of the source account")
    description: Optional[str] = None


class ChangePinRequest(BaseModel):
    current_pin: str
    new_pin: str


ERROR_STATUS = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (SameAccountError, status.HTTP_400_BAD_REQUEST),
    (AuthError, status.HTTP_401_UNAUTHORIZED),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InactiveAccountError, status.HTTP_409_CONFLICT),
    (InsufficientFundsError, status.HTTP_409_CONFLICT),
    (PersistenceError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def http_error(error: LedgerError) -> HTTPException:
    """Map a ledger error to an HTTP error carrying its display message"""
    for error_type, code in ERROR_STATUS:
        if isinstance(error, error_type):
            return HTTPException(status_code=code, detail=str(error))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))


def account_to_dict(account: Account) -> Dict[str, Any]:
    return {
        "account_id": account.account_id,
        "account_number": account.account_number,
        "customer_id": account.customer_id,
        "account_type": account.account_type.value,
        "balance": str(account.balance),
        "status": account.status.value,
        "created_at": account.created_at.isoformat(),
        "updated_at": account.updated_at.isoformat()
    }


def entry_to_dict(entry: LedgerEntry) -> Dict[str, Any]:
    return {
        "transaction_id": entry.entry_id,
        "transaction_type": entry.transaction_type.value,
        "from_account_id": entry.from_account,
        "to_account_id": entry.to_account,
        "amount": str(entry.amount),
        "description": entry.description,
        "transaction_date": entry.created_at.isoformat()
    }


def get_engine(request: Request) -> LedgerEngine:
    return request.app.state.engine


def get_guard(request: Request) -> AccessGuard:
    return request.app.state.guard


def require_pin(guard: AccessGuard, account_number: str, pin: str) -> None:
    if not guard.verify_pin(account_number, pin):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid PIN")


router = APIRouter()


@router.post("/accounts", status_code=status.HTTP_201_CREATED)
def open_account(request: OpenAccountRequest, engine: LedgerEngine = Depends(get_engine)):
    """Open a new account"""
    try:
        account = engine.open_account(
            customer_id=request.customer_id,
            account_type=request.account_type,
            initial_balance=request.initial_balance,
            pin=request.pin
        )
    except LedgerError as e:
        raise http_error(e)
    return {"account": account_to_dict(account), "message": "Account created successfully"}


@router.get("/accounts/{account_number}")
def get_account(account_number: str, engine: LedgerEngine = Depends(get_engine)):
    """Get account details"""
    try:
        return account_to_dict(engine.get_account_details(account_number))
    except LedgerError as e:
        raise http_error(e)


@router.get("/accounts/{account_number}/balance")
def get_balance(account_number: str, engine: LedgerEngine = Depends(get_engine)):
    try:
        balance = engine.get_balance(account_number)
    except LedgerError as e:
        raise http_error(e)
    return {"account_number": account_number, "balance": str(balance)}


@router.get("/accounts/{account_number}/transactions")
def get_history(account_number: str, engine: LedgerEngine = Depends(get_engine)):
    """Transaction history, newest first"""
    try:
        entries = engine.get_history(account_number)
    except LedgerError as e:
        raise http_error(e)
    return {"transactions": [entry_to_dict(e) for e in entries]}


@router.get("/accounts/{account_number}/summary")
def get_summary(account_number: str, engine: LedgerEngine = Depends(get_engine)):
    try:
        summary = engine.get_transaction_summary(account_number)
    except LedgerError as e:
        raise http_error(e)
    return {
        "account_number": account_number,
        "total_transactions": summary.total_transactions,
        "total_deposits": str(summary.total_deposits),
        "total_withdrawals": str(summary.total_withdrawals),
        "total_received": str(summary.total_received),
        "total_sent": str(summary.total_sent)
    }


@router.post("/accounts/{account_number}/deposit")
def deposit(account_number: str, request: DepositRequest, engine: LedgerEngine = Depends(get_engine)):
    """Make a deposit"""
    try:
        account = engine.deposit(account_number, request.amount, request.description)
    except LedgerError as e:
        raise http_error(e)
    return {"account": account_to_dict(account), "message": "Deposit processed successfully"}


@router.post("/accounts/{account_number}/withdraw")
def withdraw(
    account_number: str,
    request: WithdrawRequest,
    engine: LedgerEngine = Depends(get_engine),
    guard: AccessGuard = Depends(get_guard)
):
    """Make a withdrawal after verifying the owner's PIN"""
    require_pin(guard, account_number, request.pin)
    try:
        account = engine.withdraw(account_number, request.amount, request.description)
    except LedgerError as e:
        raise http_error(e)
    return {"account": account_to_dict(account), "message": "Withdrawal processed successfully"}


@router.post("/transfers")
def transfer(
    request: TransferRequest,
    engine: LedgerEngine = Depends(get_engine),
    guard: AccessGuard = Depends(get_guard)
):
    """Transfer between accounts after verifying the source account's PIN"""
    require_pin(guard, request.from_account_number, request.pin)
    try:
        result = engine.transfer(
            request.from_account_number,
            request.to_account_number,
            request.amount,
            request.description
        )
    except LedgerError as e:
        raise http_error(e)
    return {
        "from_account": account_to_dict(result.from_account),
        "to_account": account_to_dict(result.to_account),
        "amount": str(result.amount),
        "message": "Transfer processed successfully"
    }


@router.post("/accounts/{account_number}/pin")
def change_pin(account_number: str, request: ChangePinRequest, guard: AccessGuard = Depends(get_guard)):
    try:
        guard.change_pin(account_number, request.current_pin, request.new_pin)
    except LedgerError as e:
        raise http_error(e)
    return {"message": "PIN updated successfully"}


def create_app(engine: LedgerEngine, guard: AccessGuard) -> FastAPI:
    """Create and configure the FastAPI application around an engine"""
    app = FastAPI(
        title="Bank Ledger API",
        description="Account ledger and transfer engine",
        version=__version__
    )
    app.state.engine = engine
    app.state.guard = guard
    app.include_router(router)

    @app.get("/health")
    def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "service": "bank_ledger", "version": __version__}

    return app


def run_server(app: FastAPI, host: str = "0.0.0.0", port: int = 8090) -> None:
    """Serve the application with uvicorn until interrupted"""
    logger.info(f"Starting Bank Ledger API on {host}:{port}")
    uvicorn.run(app, host=host, port=port, log_config=None)
