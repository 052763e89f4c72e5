"""
FastAPI REST API Module

Provides REST API endpoints over the confidential payment processor:
account setup, custody (deposit/withdraw), direct private transfers,
the pending-transfer escrow flow and audit integrity checks. Runs on port 8090.

The caller arrives already authenticated; the fronting gateway passes its
hex identity in the X-Caller-Identity header.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
import uvicorn

from . import __version__
from .accounts import ConfidentialAccount
from .codec import BALANCE_SIZE, U64_MAX
from .commitment import COMMITMENT_SIZE, TAG_SIZE
from .config import get_config
from .errors import (
    AccountAlreadyExists, AssetTransferError, BalanceOverflow, CommitmentMismatch,
    DuplicateCommitment, InsufficientBalance, InsufficientReserve, InvalidNonce,
    RecordNotFound, Unauthorized
)
from .keys import IDENTITY_SIZE, identity_from_hex
from .logging_config import get_logger, log_action, setup_logging
from .pending_transfers import PendingTransfer, PendingTransferKey, TransferResolution
from .system import LedgerSystem

logger = get_logger("veil.api")

ERROR_STATUS = {
    RecordNotFound: status.HTTP_404_NOT_FOUND,
    Unauthorized: status.HTTP_403_FORBIDDEN,
    InsufficientBalance: status.HTTP_409_CONFLICT,
    InsufficientReserve: status.HTTP_409_CONFLICT,
    InvalidNonce: status.HTTP_409_CONFLICT,
    DuplicateCommitment: status.HTTP_409_CONFLICT,
    AccountAlreadyExists: status.HTTP_409_CONFLICT,
    CommitmentMismatch: status.HTTP_400_BAD_REQUEST,
    BalanceOverflow: status.HTTP_400_BAD_REQUEST,
    AssetTransferError: status.HTTP_502_BAD_GATEWAY,
}


def _check_hex(value: str, size: int) -> str:
    try:
        raw = bytes.fromhex(value)
    except ValueError:
        raise ValueError("must be hex encoded")
    if len(raw) != size:
        raise ValueError(f"must encode exactly {size} bytes")
    return value.lower()


# Pydantic models for API requests
class DepositRequest(BaseModel):
    amount: int = Field(..., ge=0, le=U64_MAX, description="Plaintext amount")
    encrypted_amount: str = Field(..., description="Opaque amount (64 bytes, hex)")

    @field_validator("encrypted_amount")
    @classmethod
    def _check_encrypted_amount(cls, value: str) -> str:
        return _check_hex(value, BALANCE_SIZE)


class WithdrawRequest(BaseModel):
    amount: int = Field(..., ge=0, le=U64_MAX, description="Plaintext amount")
    encrypted_amount: Optional[str] = Field(None, description="Optional opaque amount (64 bytes, hex)")

    @field_validator("encrypted_amount")
    @classmethod
    def _check_encrypted_amount(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        return _check_hex(value, BALANCE_SIZE)


class PrivateTransferRequest(BaseModel):
    sender: str
    recipient: str
    encrypted_amount: str
    nonce: int = Field(..., ge=0, le=U64_MAX, description="Sender nonce the commitment is bound to")
    commitment_hash: str
    encrypted_tag: str

    @field_validator("sender", "recipient")
    @classmethod
    def _check_identity(cls, value: str) -> str:
        return _check_hex(value, IDENTITY_SIZE)

    @field_validator("encrypted_amount")
    @classmethod
    def _check_encrypted_amount(cls, value: str) -> str:
        return _check_hex(value, BALANCE_SIZE)

    @field_validator("commitment_hash")
    @classmethod
    def _check_commitment(cls, value: str) -> str:
        return _check_hex(value, COMMITMENT_SIZE)

    @field_validator("encrypted_tag")
    @classmethod
    def _check_tag(cls, value: str) -> str:
        return _check_hex(value, TAG_SIZE)


class CreatePendingTransferRequest(BaseModel):
    recipient: str
    amount: int = Field(..., ge=0, le=U64_MAX)
    encrypted_amount: str = Field(..., description="Opaque amount for the recipient (64 bytes, hex)")

    @field_validator("recipient")
    @classmethod
    def _check_recipient(cls, value: str) -> str:
        return _check_hex(value, IDENTITY_SIZE)

    @field_validator("encrypted_amount")
    @classmethod
    def _check_encrypted_amount(cls, value: str) -> str:
        return _check_hex(value, BALANCE_SIZE)


# Response helpers
def _account_view(account: ConfidentialAccount, balance: Optional[int] = None) -> Dict[str, Any]:
    view = {
        "address": account.id,
        "owner": account.owner.hex(),
        "encrypted_balance": account.balance.to_hex(),
        "nonce": account.nonce,
        "address_tag": account.address_tag,
        "updated_at": account.updated_at.isoformat()
    }
    if balance is not None:
        view["balance"] = balance
    return view


def _transfer_view(transfer: PendingTransfer) -> Dict[str, Any]:
    return {
        "address": transfer.id,
        "state": transfer.state.value,
        "sender": transfer.sender.hex(),
        "recipient": transfer.recipient.hex(),
        "nonce": transfer.nonce,
        "amount": transfer.amount,
        "encrypted_amount": transfer.encrypted_amount.to_hex(),
        "timestamp": transfer.timestamp,
        "address_tag": transfer.address_tag
    }


def _resolution_view(resolution: TransferResolution) -> Dict[str, Any]:
    return {
        "address": resolution.address,
        "state": resolution.state.value,
        **resolution.key.to_dict(),
        "amount": resolution.amount,
        "resolved_by": resolution.resolved_by.hex(),
        "resolved_at": resolution.resolved_at.isoformat()
    }


# Dependencies
def get_ledger_system(request: Request) -> LedgerSystem:
    system = request.app.state.system
    if system is None:
        ledger_config = get_config()
        setup_logging(ledger_config.log_level, fmt=ledger_config.log_format)
        system = LedgerSystem(ledger_config)
        request.app.state.system = system
    return system


def get_caller(x_caller_identity: Optional[str] = Header(None)) -> bytes:
    """Authenticated caller identity supplied by the gateway"""
    if not x_caller_identity:
        raise HTTPException(status_code=401, detail="Missing X-Caller-Identity header")
    try:
        return identity_from_hex(x_caller_identity)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid X-Caller-Identity header")


def _transfer_key(sender: str, recipient: str, nonce: int) -> PendingTransferKey:
    return PendingTransferKey(identity_from_hex(sender), identity_from_hex(recipient), nonce)


async def ledger_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    """Map ledger errors (and malformed input) to HTTP responses"""
    status_code = status.HTTP_400_BAD_REQUEST
    for error_type in type(exc).__mro__:
        if error_type in ERROR_STATUS:
            status_code = ERROR_STATUS[error_type]
            break
    code = getattr(exc, "code", "invalid_input")

    log_action(logger, "info", f"Request rejected with {status_code}",
               action=f"{request.method} {request.url.path}",
               extra={"error": code})
    return JSONResponse(status_code=status_code, content={"error": code, "detail": str(exc)})


def create_app(system: Optional[LedgerSystem] = None) -> FastAPI:
    """Build the API; the ledger system is created on first use when not given"""
    app = FastAPI(
        title="Confidential Ledger API",
        description="Confidential-balance payment ledger with escrowed transfers",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = system

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ValueError, ledger_error_handler)

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    # Account endpoints
    @app.post("/accounts", status_code=status.HTTP_201_CREATED)
    async def init_account(
        caller: bytes = Depends(get_caller),
        system: LedgerSystem = Depends(get_ledger_system)
    ):
        """Initialize the caller's confidential account"""
        account = system.processor.init_account(caller)
        return _account_view(account, balance=0)

    @app.get("/accounts/{owner}")
    async def get_account(
        owner: str,
        caller: bytes = Depends(get_caller),
        system: LedgerSystem = Depends(get_ledger_system)
    ):
        """Get an account; the decoded balance is only shown to its owner"""
        owner_id = identity_from_hex(owner)
        account = system.processor.get_account(owner_id)
        if not account:
            raise HTTPException(status_code=404, detail="Account not found")

        balance = None
        if caller == owner_id:
            balance = system.processor.get_balance(caller, owner_id)
        return _account_view(account, balance)

    # Custody endpoints
    @app.post("/deposits")
    async def deposit(
        request: DepositRequest,
        caller: bytes = Depends(get_caller),
        system: LedgerSystem = Depends(get_ledger_system)
    ):
        """Deposit native asset into the vault and credit the caller"""
        account = system.processor.deposit(
            caller, request.amount, bytes.fromhex(request.encrypted_amount)
        )
        return _account_view(account, system.codec.decode(account.balance))

    @app.post("/withdrawals")
    async def withdraw(
        request: WithdrawRequest,
        caller: bytes = Depends(get_caller),
        system: LedgerSystem = Depends(get_ledger_system)
    ):
        """Withdraw native asset from the vault"""
        encrypted_amount = None
        if request.encrypted_amount:
            encrypted_amount = bytes.fromhex(request.encrypted_amount)
        account = system.processor.withdraw(caller, request.amount, encrypted_amount)
        return _account_view(account, system.codec.decode(account.balance))

    # Direct transfers
    @app.post("/private-transfers")
    async def private_transfer(
        request: PrivateTransferRequest,
        caller: bytes = Depends(get_caller),
        system: LedgerSystem = Depends(get_ledger_system)
    ):
        """Record a commitment-bound private transfer"""
        receipt = system.processor.private_transfer(
            caller,
            bytes.fromhex(request.sender),
            bytes.fromhex(request.recipient),
            bytes.fromhex(request.encrypted_amount),
            request.nonce,
            bytes.fromhex(request.commitment_hash),
            bytes.fromhex(request.encrypted_tag)
        )
        return {
            "address": receipt.address,
            "commitment_hash": receipt.commitment_hash.hex(),
            "encrypted_tag": receipt.encrypted_tag.hex(),
            "sender_nonce": receipt.sender_nonce,
            "settled": receipt.settled
        }

    # Pending transfer endpoints
    @app.post("/pending-transfers", status_code=status.HTTP_201_CREATED)
    async def create_pending_transfer(
        request: CreatePendingTransferRequest,
        caller: bytes = Depends(get_caller),
        system: LedgerSystem = Depends(get_ledger_system)
    ):
        """Escrow funds for a recipient"""
        transfer = system.processor.create_transfer(
            caller,
            bytes.fromhex(request.recipient),
            request.amount,
            bytes.fromhex(request.encrypted_amount)
        )
        return _transfer_view(transfer)

    @app.get("/pending-transfers")
    async def list_pending_transfers(
        direction: str = "incoming",
        caller: bytes = Depends(get_caller),
        system: LedgerSystem = Depends(get_ledger_system)
    ):
        """Open transfers the caller can claim (incoming) or cancel (outgoing)"""
        if direction == "incoming":
            transfers = system.processor.list_incoming(caller)
        elif direction == "outgoing":
            transfers = system.processor.list_outgoing(caller)
        else:
            raise ValueError("direction must be 'incoming' or 'outgoing'")
        return {"direction": direction, "transfers": [_transfer_view(t) for t in transfers]}

    @app.get("/pending-transfers/{sender}/{recipient}/{nonce}")
    async def get_pending_transfer(
        sender: str,
        recipient: str,
        nonce: int,
        caller: bytes = Depends(get_caller),
        system: LedgerSystem = Depends(get_ledger_system)
    ):
        """Get an open pending transfer"""
        transfer = system.processor.get_pending_transfer(_transfer_key(sender, recipient, nonce))
        if not transfer:
            raise HTTPException(status_code=404, detail="Pending transfer not found")
        return _transfer_view(transfer)

    @app.post("/pending-transfers/{sender}/{recipient}/{nonce}/claim")
    async def claim_pending_transfer(
        sender: str,
        recipient: str,
        nonce: int,
        caller: bytes = Depends(get_caller),
        system: LedgerSystem = Depends(get_ledger_system)
    ):
        """Recipient claims an escrowed transfer"""
        resolution = system.processor.claim_transfer(caller, _transfer_key(sender, recipient, nonce))
        return _resolution_view(resolution)

    @app.post("/pending-transfers/{sender}/{recipient}/{nonce}/cancel")
    async def cancel_pending_transfer(
        sender: str,
        recipient: str,
        nonce: int,
        caller: bytes = Depends(get_caller),
        system: LedgerSystem = Depends(get_ledger_system)
    ):
        """Sender cancels an escrowed transfer"""
        resolution = system.processor.cancel_transfer(caller, _transfer_key(sender, recipient, nonce))
        return _resolution_view(resolution)

    # Audit endpoints
    @app.get("/audit/integrity")
    async def verify_audit_integrity(
        system: LedgerSystem = Depends(get_ledger_system)
    ):
        """Verify audit trail integrity"""
        return system.audit_trail.verify_integrity()

    return app


app = create_app()


# Run server function
def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "confidential_ledger.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
