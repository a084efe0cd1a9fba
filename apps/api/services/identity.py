"""Signed-in identity as seen by the credit subsystem."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from services.session_token import decode_session_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    avatar_ref: Optional[str] = None


IdentityListener = Callable[[Optional[Identity]], Awaitable[None]]


def identity_from_token(token: str) -> Identity:
    """Build an Identity from a signed session token; raises ValueError when invalid."""
    payload = decode_session_token(token)
    return Identity(
        user_id=str(payload["sub"]).strip(),
        email=str(payload.get("email") or "").strip() or None,
        display_name=str(payload.get("name") or "").strip() or None,
        avatar_ref=str(payload.get("picture") or "").strip() or None,
    )


class IdentitySession:
    """
    Process-local view of the externally managed sign-in state.

    The identity provider owns sign-in and sign-out; this object only mirrors
    the outcome and tells subscribers when it changes.
    """

    def __init__(self, identity: Optional[Identity] = None):
        self._identity = identity
        self._listeners: List[IdentityListener] = []

    def get_current_identity(self) -> Optional[Identity]:
        return self._identity

    def on_identity_change(self, listener: IdentityListener) -> Callable[[], None]:
        """Register a coroutine called with the new identity (or None); returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def sign_in(self, identity: Identity) -> None:
        if self._identity == identity:
            return
        previous = self._identity
        self._identity = identity
        logger.info(
            "Identity changed: %s -> %s",
            previous.user_id if previous else None,
            identity.user_id,
        )
        await self._notify(identity)

    async def sign_out(self) -> None:
        if self._identity is None:
            return
        logger.info("Identity signed out: %s", self._identity.user_id)
        self._identity = None
        await self._notify(None)

    async def _notify(self, identity: Optional[Identity]) -> None:
        for listener in list(self._listeners):
            await listener(identity)
