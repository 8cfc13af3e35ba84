"""Local sessions established through an OIDC login."""

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from backchannel_logout.models.base import BaseModel


class OIDCSession(BaseModel):
    """A local session correlated with an identity-provider session.

    The (client_id, sid) and (client_id, subject) indexes back the two
    lookups a logout token can ask for.
    """

    __tablename__ = "oidc_sessions"

    session_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    client_id: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    sid: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_oidc_sessions_client_sid", "client_id", "sid"),
        Index("ix_oidc_sessions_client_subject", "client_id", "subject"),
    )

    def __repr__(self) -> str:
        return f"<OIDCSession {self.session_id} client={self.client_id}>"
