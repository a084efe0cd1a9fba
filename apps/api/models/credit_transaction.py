"""CreditTransaction model for the append-only credit audit trail."""

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


TRANSACTION_KINDS = ("bonus", "purchased", "spent", "earned")


class CreditTransaction(Base):
    """Immutable credit ledger entry."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        UniqueConstraint("account_id", "sequence", name="uq_credit_transactions_account_sequence"),
        CheckConstraint(
            "kind IN (" + ", ".join(f"'{kind}'" for kind in TRANSACTION_KINDS) + ")",
            name="ck_credit_transactions_kind",
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)
    kind = Column(String, nullable=False)
    description = Column(String, nullable=False, default="")
    module = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    account = relationship("Account", back_populates="transactions")
