"""Logout token identifiers already accepted, for replay detection."""

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from backchannel_logout.core.database import Base


class LogoutTokenJti(Base):
    """An accepted logout token identified by its issuer and JTI claim.

    Entries are created when a token is accepted and cleaned up after expiry.
    """

    __tablename__ = "logout_token_jtis"

    issuer: Mapped[str] = mapped_column(String(255), primary_key=True)
    jti: Mapped[str] = mapped_column(String(255), primary_key=True)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
