"""Authentication and client-session dependencies for credit routes."""

import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.credit_context import CreditContext, credit_contexts
from services.credit_errors import (
    AccountNotFound,
    ConcurrentModification,
    CreditError,
    DemoUnavailable,
    InsufficientCredits,
    InvalidCreditAmount,
    InvalidTransactionKind,
    LoginRequired,
    StoreUnavailable,
)
from services.identity import Identity, identity_from_token
from services.ledger_store import LedgerStore, get_ledger_store


auth_scheme = HTTPBearer(auto_error=False)
logger = logging.getLogger(__name__)

CLIENT_SESSION_HEADER = "X-Client-Session"


def credit_http_error(exc: CreditError) -> HTTPException:
    """Translate a credit failure into the HTTP status the client acts on."""
    if isinstance(exc, InsufficientCredits):
        return HTTPException(
            status_code=402,
            detail=(
                f"Insufficient credits. Required: {exc.requested}, available: {exc.available}. "
                "Top up credits to continue."
            ),
        )
    if isinstance(exc, LoginRequired):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, (InvalidCreditAmount, InvalidTransactionKind)):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, AccountNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (ConcurrentModification, DemoUnavailable)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, StoreUnavailable):
        logger.warning("Ledger store unavailable: %s", exc)
        return HTTPException(status_code=503, detail="Credit ledger is temporarily unavailable. Try again.")
    return HTTPException(status_code=400, detail=str(exc))


async def get_optional_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
) -> Optional[Identity]:
    """Resolve the signed-in identity from a Bearer session token, if one was sent."""
    if not credentials:
        return None
    if credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Unsupported authorization scheme.")
    try:
        return identity_from_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


async def get_identity(identity: Optional[Identity] = Depends(get_optional_identity)) -> Identity:
    if identity is None:
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")
    return identity


def _client_id(identity: Optional[Identity], client_session: Optional[str]) -> str:
    client_id = (client_session or "").strip()
    if not client_id and identity is not None:
        client_id = f"user:{identity.user_id}"
    if not client_id:
        raise HTTPException(status_code=400, detail=f"Missing {CLIENT_SESSION_HEADER} header.")
    return client_id


async def _bind_identity(context: CreditContext, identity: Optional[Identity]) -> CreditContext:
    current = context.identity.get_current_identity()
    if current is not None:
        if identity is None:
            raise HTTPException(status_code=401, detail="Missing Bearer session token.")
        if identity.user_id != current.user_id:
            raise HTTPException(status_code=403, detail="Client session belongs to another user.")

    if identity is not None:
        try:
            await context.identity.sign_in(identity)
        except CreditError as exc:
            raise credit_http_error(exc) from exc
    return context


async def get_credit_context(
    identity: Optional[Identity] = Depends(get_optional_identity),
    client_session: Optional[str] = Header(default=None, alias=CLIENT_SESSION_HEADER),
    store: LedgerStore = Depends(get_ledger_store),
) -> CreditContext:
    """Return the caller's credit context, creating it on first use. For routes that change credit state."""
    context = credit_contexts.get_or_create(_client_id(identity, client_session), store)
    return await _bind_identity(context, identity)


async def get_optional_credit_context(
    identity: Optional[Identity] = Depends(get_optional_identity),
    client_session: Optional[str] = Header(default=None, alias=CLIENT_SESSION_HEADER),
    store: LedgerStore = Depends(get_ledger_store),
) -> Optional[CreditContext]:
    """
    Return the caller's existing credit context, or None for an anonymous
    caller that has not started one. Signed-in callers always get a context,
    since their account has to be provisioned to answer.
    """
    client_id = _client_id(identity, client_session)
    context = credit_contexts.get(client_id)
    if context is None:
        if identity is None:
            return None
        context = credit_contexts.get_or_create(client_id, store)
    return await _bind_identity(context, identity)
