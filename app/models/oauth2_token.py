# auth_server/app/models/oauth2_token.py
from sqlalchemy import String, Text, DateTime, func, ForeignKey, Integer, Boolean, Index
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from typing import Optional

from app.db.base import Base


class OAuth2AccessToken(Base):
    __tablename__ = "oauth2_access_tokens"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    # Hash do bearer emitido pelo token issuer, NUNCA o token em si
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    client_id: Mapped[str] = mapped_column(String(48), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    scope: Mapped[str] = mapped_column(Text, nullable=False, default="")
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    is_revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Época global no momento da emissão (ver AuthEpoch)
    epoch: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_oauth2_access_tokens_client_user", "client_id", "user_id"),
    )


class OAuth2RefreshToken(Base):
    __tablename__ = "oauth2_refresh_tokens"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    client_id: Mapped[str] = mapped_column(String(48), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    scope: Mapped[str] = mapped_column(Text, nullable=False, default="")
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    is_revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    epoch: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Refresh token que originou este (cadeia de rotação)
    parent_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("oauth2_refresh_tokens.id", ondelete="SET NULL"), nullable=True
    )

    __table_args__ = (
        Index("ix_oauth2_refresh_tokens_client_user", "client_id", "user_id"),
    )
