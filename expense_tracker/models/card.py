"""Payment card model."""

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from expense_tracker.database import Base
from expense_tracker.models.base import TimestampMixin, UUIDMixin


class Card(Base, UUIDMixin, TimestampMixin):
    """A credit card whose statements are uploaded.

    Cards are identified on statements only by their last four digits, so
    two active cards sharing ``last4_digits`` make rows for them ambiguous.
    """

    __tablename__ = "cards"

    last4_digits: Mapped[str] = mapped_column(String(4), nullable=False, index=True)
    nickname: Mapped[str | None] = mapped_column(String(100), nullable=True)
    issuer: Mapped[str | None] = mapped_column(String(50), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Card *{self.last4_digits} {self.nickname or ''}>"
