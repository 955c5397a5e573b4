"""Credit balance and history router."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.credits import get_balance, get_credit_summary

router = APIRouter()


@router.get("")
async def get_credits(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Current balance. An account with no ledger activity has zero credits."""
    return {"credits": await get_balance(db, auth.account_id)}


@router.get("/history")
async def get_credit_history(
    limit: int = Query(default=30, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_credit_summary(db, auth.account_id, limit=limit)
