"""Process-local demo allowance for visitors who skip sign-in."""

from __future__ import annotations

import logging
from typing import Optional

from config import settings
from services.account_manager import require_positive_amount
from services.credit_errors import DemoUnavailable, InsufficientCredits

logger = logging.getLogger(__name__)


class DemoSessionGate:
    """
    Non-persisted credit allowance.

    Nothing here touches the ledger store: demo usage is not audited and is
    thrown away when the process ends or an identity signs in.
    """

    def __init__(self, grant: Optional[int] = None):
        self._grant = int(settings.DEMO_GRANT_CREDITS if grant is None else grant)
        self._allowance: Optional[int] = None
        self._superseded = False

    @property
    def is_active(self) -> bool:
        return self._allowance is not None

    @property
    def is_superseded(self) -> bool:
        return self._superseded

    def enable(self) -> int:
        """Start demo mode; the grant is handed out once per process."""
        if self._superseded:
            raise DemoUnavailable("Demo mode ended when an identity signed in.")
        if self._allowance is None:
            self._allowance = self._grant
            logger.info("Demo mode enabled with %s credits", self._grant)
        return self._allowance

    def consume(self, amount: int) -> int:
        amount = require_positive_amount(amount)
        if self._allowance is None:
            raise DemoUnavailable("Demo mode is not active.")
        if self._allowance < amount:
            raise InsufficientCredits(amount, self._allowance)
        self._allowance -= amount
        return self._allowance

    def balance(self) -> Optional[int]:
        return self._allowance

    def supersede(self) -> None:
        """Drop the allowance for good once an authenticated identity takes over."""
        if self._allowance is not None:
            logger.info("Demo mode superseded with %s credits unused", self._allowance)
        self._allowance = None
        self._superseded = True
