"""
Authentication router for identity session sync and current-account lookup.
"""

import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field

from config import settings
from routers.auth_scope import credit_http_error, get_credit_context, get_identity
from services.credit_context import CreditContext, credit_contexts
from services.credit_errors import CreditError
from services.identity import Identity
from services.ledger_store import LedgerStore, get_ledger_store
from services.session_token import create_session_token

router = APIRouter()


class SyncSessionRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=200)
    email: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None
    client_session: Optional[str] = None


class SyncSessionResponse(BaseModel):
    user_id: str
    email: Optional[str] = None
    credits: int
    session_token: str
    session_expires_at: int
    demo_superseded: bool = False


class CurrentAccountResponse(BaseModel):
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None
    credits: int


def _require_sync_key(provided: Optional[str]) -> None:
    expected = (settings.IDENTITY_SYNC_KEY or "").strip()
    if not expected:
        raise HTTPException(status_code=503, detail="Identity sync is not configured.")
    if not provided or not secrets.compare_digest(provided.strip(), expected):
        raise HTTPException(status_code=401, detail="Invalid identity sync key.")


@router.post("/session", response_model=SyncSessionResponse)
async def sync_identity_session(
    request: SyncSessionRequest,
    sync_key: Optional[str] = Header(default=None, alias="X-Identity-Sync-Key"),
    store: LedgerStore = Depends(get_ledger_store),
):
    """
    Accept an identity the external provider has already verified, provision its
    credit account and hand back an API session token.
    """
    _require_sync_key(sync_key)
    identity = Identity(
        user_id=request.user_id.strip(),
        email=request.email,
        display_name=request.name,
        avatar_ref=request.picture,
    )
    client_id = (request.client_session or "").strip() or f"user:{identity.user_id}"
    context = credit_contexts.get_or_create(client_id, store)
    current = context.identity.get_current_identity()
    if current is not None and current.user_id != identity.user_id:
        raise HTTPException(status_code=403, detail="Client session belongs to another user.")

    was_demo = context.gate.is_demo_active()
    try:
        account = await context.gate.provision(identity)
    except CreditError as exc:
        raise credit_http_error(exc) from exc

    session = create_session_token(
        account.id,
        account.email,
        name=account.display_name,
        picture=account.avatar_ref,
    )
    return SyncSessionResponse(
        user_id=account.id,
        email=account.email,
        credits=account.credits,
        session_token=session["token"],
        session_expires_at=session["expires_at"],
        demo_superseded=was_demo,
    )


@router.get("/me", response_model=CurrentAccountResponse)
async def get_current_account(
    _identity: Identity = Depends(get_identity),
    context: CreditContext = Depends(get_credit_context),
):
    """Get the signed-in user's account and balance."""
    try:
        await context.gate.refresh_balance()
    except CreditError as exc:
        raise credit_http_error(exc) from exc
    account = context.accounts.account
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    return CurrentAccountResponse(
        user_id=account.id,
        email=account.email,
        name=account.display_name,
        picture=account.avatar_ref,
        credits=account.credits,
    )


@router.post("/logout")
async def logout(
    _identity: Identity = Depends(get_identity),
    context: CreditContext = Depends(get_credit_context),
):
    """Drop the mirrored account; the identity provider ends the real session."""
    await context.identity.sign_out()
    credit_contexts.discard(context.client_id)
    return {"message": "Logged out successfully"}
