"""Credits router: balance, demo mode, gated charges, history and top-ups."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from config import settings
from routers.auth_scope import credit_http_error, get_credit_context, get_optional_credit_context
from routers.rate_limit import rate_limit
from services.credit_context import CreditContext
from services.credit_errors import CreditError
from services.credit_gate import MODE_UNAUTHENTICATED, Allowed, RequireLogin, RequireTopUp
from services.ledger_store import TransactionRecord

router = APIRouter()
logger = logging.getLogger(__name__)


class AuthorizeRequest(BaseModel):
    amount: int = Field(default=1, ge=1)
    description: str = Field(min_length=1, max_length=500)
    module: Optional[str] = Field(default=None, max_length=200)


class TopUpRequest(BaseModel):
    credits: int = Field(ge=1)
    billing_reference: Optional[str] = Field(default=None, max_length=200)


def _transaction_payload(entry: TransactionRecord) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "amount": entry.amount,
        "kind": entry.kind,
        "description": entry.description,
        "module": entry.module,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


def _summary(context: Optional[CreditContext], balance: Optional[int]) -> Dict[str, Any]:
    gate = context.gate if context is not None else None
    account = context.accounts.account if gate is not None and gate.is_authenticated() else None
    return {
        "mode": gate.mode if gate is not None else MODE_UNAUTHENTICATED,
        "balance": balance,
        "is_authenticated": gate.is_authenticated() if gate is not None else False,
        "is_demo_active": gate.is_demo_active() if gate is not None else False,
        "account_id": account.id if account else None,
        "starting_grant": max(int(settings.STARTING_GRANT_CREDITS), 0),
        "demo_grant": max(int(settings.DEMO_GRANT_CREDITS), 0),
    }


def _require_context(context: Optional[CreditContext]) -> CreditContext:
    if context is None:
        raise HTTPException(status_code=401, detail="Sign in to use account credits.")
    return context


@router.get("")
async def credits_summary(context: Optional[CreditContext] = Depends(get_optional_credit_context)):
    if context is None:
        return _summary(None, None)
    try:
        balance = await context.gate.refresh_balance()
    except CreditError as exc:
        raise credit_http_error(exc) from exc
    return _summary(context, balance)


@router.post("/demo")
async def enable_demo(context: CreditContext = Depends(get_credit_context)):
    try:
        allowance = context.gate.enable_demo()
    except CreditError as exc:
        raise credit_http_error(exc) from exc
    return _summary(context, allowance)


@router.post("/authorize")
async def authorize_action(
    request: AuthorizeRequest,
    _rate_limit: None = Depends(rate_limit("credits_authorize", limit=240, window_seconds=3600)),
    context: CreditContext = Depends(get_credit_context),
):
    try:
        verdict = await context.gate.authorize(request.amount, request.description, request.module)
    except CreditError as exc:
        raise credit_http_error(exc) from exc

    if isinstance(verdict, RequireLogin):
        raise HTTPException(status_code=401, detail="Sign in or start demo mode to use this feature.")
    if isinstance(verdict, RequireTopUp):
        raise HTTPException(
            status_code=402,
            detail=(
                f"Insufficient credits. Required: {verdict.required}, available: {verdict.balance}. "
                "Top up credits to continue."
            ),
        )
    allowed: Allowed = verdict
    return {
        "allowed": True,
        "mode": allowed.mode,
        "charged": request.amount,
        "balance_after": allowed.new_balance,
    }


@router.get("/history")
async def credit_history(
    limit: int = Query(default=50, ge=1),
    context: Optional[CreditContext] = Depends(get_optional_credit_context),
):
    try:
        entries = await _require_context(context).gate.history()
    except CreditError as exc:
        raise credit_http_error(exc) from exc
    capped = min(limit, max(int(settings.CREDIT_HISTORY_LIMIT), 1))
    return {
        "count": len(entries),
        "items": [_transaction_payload(entry) for entry in entries[:capped]],
    }


@router.post("/topup")
async def top_up(
    request: TopUpRequest,
    _rate_limit: None = Depends(rate_limit("credits_topup", limit=30, window_seconds=3600)),
    context: Optional[CreditContext] = Depends(get_optional_credit_context),
):
    if request.credits > int(settings.MAX_TOPUP_CREDITS):
        raise HTTPException(status_code=422, detail=f"credits must be at most {settings.MAX_TOPUP_CREDITS}")
    context = _require_context(context)
    try:
        billing_reference = request.billing_reference or f"manual:{request.credits}"
        balance = await context.gate.grant(request.credits, "purchased", f"Credit purchase ({billing_reference})")
    except CreditError as exc:
        raise credit_http_error(exc) from exc
    logger.info("Manual top-up: client=%s credits=%s balance_after=%s", context.client_id, request.credits, balance)
    return {
        "ok": True,
        "credits_added": request.credits,
        "balance_after": balance,
    }


@router.get("/verify")
async def verify_ledger(context: Optional[CreditContext] = Depends(get_optional_credit_context)):
    try:
        report = await _require_context(context).gate.verify_ledger()
    except CreditError as exc:
        raise credit_http_error(exc) from exc
    return {
        "account_id": report.account_id,
        "balance": report.balance,
        "ledger_total": report.ledger_total,
        "transaction_count": report.transaction_count,
        "consistent": report.consistent,
    }
