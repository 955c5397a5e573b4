"""Billing router: pack catalog, payment webhook and manual grants."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.credits import CREDIT_PACKS, adjust, ensure_account, grant_pack_purchase

router = APIRouter()
logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED_EVENT = "checkout.completed"


class CreditGrantRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    credits: int = Field(ge=1, le=10000)
    reference_id: Optional[str] = Field(default=None, alias="referenceId")


def verify_webhook_signature(raw_body: bytes, signature: Optional[str]) -> None:
    secret = (settings.BILLING_WEBHOOK_SECRET or "").strip()
    if not secret:
        raise HTTPException(status_code=503, detail="Billing webhook is not configured.")

    digest = hmac.new(key=secret.encode("utf-8"), msg=raw_body, digestmod=hashlib.sha256).hexdigest()
    if not hmac.compare_digest(digest, (signature or "").strip()):
        raise HTTPException(status_code=400, detail="Invalid signature")


@router.get("/packs")
async def list_credit_packs():
    return {
        "packs": [
            {
                "pack_id": pack.pack_id,
                "label": pack.label,
                "description": pack.description,
                "credits": pack.credits,
                "price_cents": pack.price_cents,
                "currency": pack.currency,
            }
            for pack in CREDIT_PACKS.values()
        ]
    }


@router.post("/webhook")
async def billing_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    """Credit a completed checkout. Replaying the same event id credits nothing more."""
    raw_body = await request.body()
    verify_webhook_signature(raw_body, request.headers.get("x-signature"))

    try:
        event: Dict[str, Any] = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from exc

    event_id = str(event.get("id") or "").strip()
    event_type = str(event.get("type") or "").strip()
    if not event_id:
        raise HTTPException(status_code=400, detail="Missing event id")

    if event_type != CHECKOUT_COMPLETED_EVENT:
        logger.info("Ignoring billing event %s of type %s", event_id, event_type or "unknown")
        return {"received": True, "handled": False}

    data = event.get("data") or {}
    account_id = str(data.get("account_id") or "").strip()
    pack_id = str(data.get("pack_id") or "").strip()
    if not account_id or not pack_id:
        raise HTTPException(status_code=400, detail="Event is missing account_id or pack_id")

    await ensure_account(db, account_id, data.get("email"))
    result = await grant_pack_purchase(db, account_id, pack_id, event_id)
    logger.info("Billing event %s credited pack %s to account %s", event_id, pack_id, account_id)
    return {"received": True, "handled": True, **result}


@router.post("/grant")
async def grant_credits(
    payload: CreditGrantRequest,
    _rate_limit: None = Depends(rate_limit("billing_grant", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Manual top-up for local development and support tooling."""
    if not settings.ALLOW_MANUAL_CREDIT_GRANTS:
        raise HTTPException(status_code=403, detail="Manual credit grants are disabled.")

    await ensure_account(db, auth.account_id, auth.email)
    balance_after = await adjust(
        db,
        auth.account_id,
        payload.credits,
        reason="grant",
        source="manual",
        reference_id=payload.reference_id,
    )
    return {"credits": balance_after}
