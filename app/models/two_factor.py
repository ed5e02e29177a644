# auth_server/app/models/two_factor.py
from sqlalchemy import String, ForeignKey, Boolean, Integer, DateTime, Index, func
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from typing import Optional

from app.db.base import Base


class TwoFactorSettings(Base):
    __tablename__ = "two_factor_settings"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )

    # Segredo TOTP partilhado (base32); limpo ao desativar
    secret_key: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    # Só passa a True através de um código verificado (Enable)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # --- Lockout ---
    failed_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lockout_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    enabled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())


class TwoFactorBackupCode(Base):
    __tablename__ = "two_factor_backup_codes"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )

    # Armazena o HMAC do código, NUNCA o código em si
    code_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    # Marca se o código já foi utilizado
    is_used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_two_factor_backup_codes_user_id", "user_id"),
        Index("ix_two_factor_backup_codes_user_hash", "user_id", "code_hash", unique=True),
    )
