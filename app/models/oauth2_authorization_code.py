# auth_server/app/models/oauth2_authorization_code.py
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Text, Boolean, DateTime, ForeignKey, Index, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class OAuth2AuthorizationCode(Base):
    """
    Códigos de autorização de uso único emitidos no consentimento.
    Códigos expirados ou usados ficam na tabela; a validade é sempre
    decidida pelo predicado (is_used / expires_at), nunca pela remoção.
    """
    __tablename__ = "oauth2_authorization_codes"

    id: Mapped[int] = mapped_column(primary_key=True)
    # SHA-256 do código; o valor em claro só existe no redirect
    code_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    client_id: Mapped[str] = mapped_column(String(48), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    redirect_uri: Mapped[str] = mapped_column(Text, nullable=False)
    scope: Mapped[str] = mapped_column(Text, nullable=False, default="")
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    is_used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_oauth2_authorization_codes_client_id", "client_id"),
    )

    def is_valid_at(self, now: datetime) -> bool:
        return not self.is_used and now < self.expires_at
