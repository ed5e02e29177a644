# auth_server/app/models/app_role.py
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Text, Boolean, DateTime, ForeignKey, Index, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base

ASSIGNMENT_STATUS_ACTIVE = "active"


class AppRole(Base):
    __tablename__ = "app_roles"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(50), unique=True, index=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255))
    # No máximo um titular ativo por aplicação
    is_singleton: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())


class AppRolePermission(Base):
    __tablename__ = "app_role_permissions"

    id: Mapped[int] = mapped_column(primary_key=True)
    role_id: Mapped[int] = mapped_column(ForeignKey("app_roles.id", ondelete="CASCADE"), nullable=False)
    # Identificador do registo estático (app.core.permissions.Permission)
    permission: Mapped[str] = mapped_column(String(100), nullable=False)

    __table_args__ = (
        UniqueConstraint("role_id", "permission", name="uq_app_role_permission"),
    )


class AppRoleAssignment(Base):
    __tablename__ = "app_role_assignments"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    client_id: Mapped[str] = mapped_column(String(48), nullable=False)
    role: Mapped[str] = mapped_column(String(50), nullable=False, default="user")
    # String livre; só identificadores registados contam para as permissões efetivas
    permissions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ASSIGNMENT_STATUS_ACTIVE)
    # Igual a role quando é um titular ativo de uma role singleton, senão NULL.
    # A constraint única (client_id, singleton_role) garante um só titular por aplicação.
    singleton_role: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "client_id", name="uq_app_role_assignment_user_client"),
        UniqueConstraint("client_id", "singleton_role", name="uq_app_role_assignment_singleton_holder"),
        Index("ix_app_role_assignments_client_role", "client_id", "role"),
    )
