"""
Wallet API Endpoints.

Balance, statement, deposits and withdrawals of the caller's own account.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from billing_backend.app.db.session import get_db
from billing_backend.app.models.ledger_enums import EntryKind, EntryStatus
from billing_backend.app.schemas.wallet import (
    BalanceResponse, LedgerEntryResponse, DepositRequest, WithdrawalRequest
)
from billing_backend.app.core.dependencies import Identity, get_current_user
from billing_backend.app.domain.ledger.ledger_store import LedgerStore
from billing_backend.app.domain.wallet.wallet_service import WalletService

router = APIRouter(prefix="/wallet", tags=["Wallet"])


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    identity: Identity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    account = await LedgerStore.get_account_for_user(db, identity.user_id)
    return BalanceResponse(
        account_id=account.id,
        balance=await LedgerStore.get_balance(db, account.id),
        is_blocked=await LedgerStore.is_blocked(db, account.id),
    )


@router.get("/entries", response_model=List[LedgerEntryResponse])
async def list_entries(
    kind: Optional[EntryKind] = None,
    status: Optional[EntryStatus] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    identity: Identity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Caller's ledger entries, newest first."""
    account = await LedgerStore.get_account_for_user(db, identity.user_id)
    return await LedgerStore.list_entries(
        db, account.id, kind=kind, status=status, since=since, until=until, limit=limit, offset=offset
    )


@router.post("/deposit", response_model=LedgerEntryResponse, status_code=201)
async def deposit(
    request: DepositRequest,
    identity: Identity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await WalletService.deposit(db, identity.user_id, request.amount, reference=request.reference)


@router.post("/withdraw", response_model=LedgerEntryResponse, status_code=201)
async def withdraw(
    request: WithdrawalRequest,
    identity: Identity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """A retried request with the same idempotency key returns the original entry."""
    return await WalletService.request_withdrawal(
        db, identity.user_id, request.amount, idempotency_key=request.idempotency_key
    )
