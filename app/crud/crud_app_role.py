# auth_server/app/crud/crud_app_role.py
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from loguru import logger

from app.core import clock
from app.core.exceptions import RoleAssignmentException
from app.core.permissions import (
    DEFAULT_ROLE_PERMISSIONS,
    SINGLETON_ROLES,
    parse_permission_string,
    unregistered,
)
from app.models.app_role import (
    ASSIGNMENT_STATUS_ACTIVE,
    AppRole,
    AppRolePermission,
    AppRoleAssignment,
)
from app.models.oauth2_client import OAuth2Client


# --- Roles e permissões (linhas normalizadas) ---
async def get_role(db: AsyncSession, *, name: str) -> Optional[AppRole]:
    result = await db.execute(select(AppRole).where(AppRole.name == name))
    return result.scalars().first()


async def get_role_permissions(db: AsyncSession, *, role_name: str) -> List[str]:
    stmt = (
        select(AppRolePermission.permission)
        .join(AppRole, AppRole.id == AppRolePermission.role_id)
        .where(AppRole.name == role_name)
        .order_by(AppRolePermission.permission)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def set_role_permissions(
    db: AsyncSession, *, role_name: str, permissions: Iterable[str]
) -> AppRole:
    """
    Substitui as permissões de uma role (cria a role se não existir).
    Identificadores fora do registo são rejeitados.
    """
    wanted = sorted(set(permissions))
    unknown = unregistered(wanted)
    if unknown:
        raise RoleAssignmentException(
            "unknown_permission", f"Unknown permission(s): {', '.join(unknown)}"
        )

    role = await get_role(db, name=role_name)
    try:
        if role is None:
            role = AppRole(name=role_name, is_singleton=role_name in SINGLETON_ROLES)
            db.add(role)
            await db.flush()
        await db.execute(delete(AppRolePermission).where(AppRolePermission.role_id == role.id))
        db.add_all(AppRolePermission(role_id=role.id, permission=p) for p in wanted)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.info(f"Permissões da role '{role_name}' atualizadas ({len(wanted)} entradas)")
    return role


async def seed_default_roles(db: AsyncSession) -> int:
    """Cria as roles por defeito que ainda não existam. Devolve quantas foram criadas."""
    created = 0
    for name, perms in DEFAULT_ROLE_PERMISSIONS.items():
        if await get_role(db, name=name) is not None:
            continue
        role = AppRole(
            name=name,
            description=f"Default '{name}' role",
            is_singleton=name in SINGLETON_ROLES,
        )
        db.add(role)
        await db.flush()
        db.add_all(AppRolePermission(role_id=role.id, permission=p.value) for p in perms)
        created += 1
    await db.commit()
    return created


async def _is_singleton_role(db: AsyncSession, role_name: str) -> bool:
    if role_name in SINGLETON_ROLES:
        return True
    role = await get_role(db, name=role_name)
    return bool(role and role.is_singleton)


# --- Atribuições (user, cliente) ---
def _singleton_taken(role: str) -> RoleAssignmentException:
    return RoleAssignmentException(
        "singleton_role_taken",
        f"Role '{role}' already has an active holder for this application",
        status_code=409,
    )


async def get_assignment(
    db: AsyncSession, *, user_id: int, client_id: str
) -> Optional[AppRoleAssignment]:
    result = await db.execute(
        select(AppRoleAssignment).where(
            AppRoleAssignment.user_id == user_id,
            AppRoleAssignment.client_id == client_id,
        )
    )
    return result.scalars().first()


async def assign(
    db: AsyncSession,
    *,
    user_id: int,
    client_id: str,
    role: str,
    permissions: Optional[str] = None,
) -> AppRoleAssignment:
    """
    Cria ou atualiza a role do utilizador na aplicação.
    Uma role singleton só pode ter um titular ativo por aplicação (409); a
    constraint única em (client_id, singleton_role) decide pedidos concorrentes.
    """
    singleton = await _is_singleton_role(db, role)
    if singleton:
        holder = await db.execute(
            select(AppRoleAssignment.user_id).where(
                AppRoleAssignment.client_id == client_id,
                AppRoleAssignment.singleton_role == role,
                AppRoleAssignment.user_id != user_id,
            )
        )
        if holder.first() is not None:
            logger.warning(f"Role singleton '{role}' já atribuída no cliente {client_id}")
            raise _singleton_taken(role)

    assignment = await get_assignment(db, user_id=user_id, client_id=client_id)
    if assignment is None:
        assignment = AppRoleAssignment(user_id=user_id, client_id=client_id)
        db.add(assignment)
    assignment.role = role
    assignment.permissions = permissions
    assignment.status = ASSIGNMENT_STATUS_ACTIVE
    assignment.singleton_role = role if singleton else None
    assignment.updated_at = clock.utcnow()
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        if singleton:
            logger.warning(f"Atribuição concorrente da role singleton '{role}' no cliente {client_id}")
            raise _singleton_taken(role)
        raise RoleAssignmentException(
            "conflict", "Concurrent assignment for this user and application", status_code=409
        )
    await db.refresh(assignment)
    return assignment


async def list_for_user(
    db: AsyncSession, *, user_id: int
) -> Sequence[Tuple[AppRoleAssignment, Optional[str]]]:
    """Atribuições do utilizador com o nome da aplicação (None se o cliente foi removido)."""
    stmt = (
        select(AppRoleAssignment, OAuth2Client.client_name)
        .outerjoin(OAuth2Client, OAuth2Client.client_id == AppRoleAssignment.client_id)
        .where(AppRoleAssignment.user_id == user_id)
        .order_by(AppRoleAssignment.id)
    )
    result = await db.execute(stmt)
    return [(row[0], row[1]) for row in result.all()]


async def effective_permissions_for(
    db: AsyncSession, assignment: AppRoleAssignment
) -> List[str]:
    perms: Set[str] = set(await get_role_permissions(db, role_name=assignment.role))
    perms |= parse_permission_string(assignment.permissions)
    return sorted(perms)


async def effective_permissions(db: AsyncSession, *, user_id: int, client_id: str) -> List[str]:
    """Permissões da role (registo) mais as extra registadas na string livre."""
    assignment = await get_assignment(db, user_id=user_id, client_id=client_id)
    if assignment is None or assignment.status != ASSIGNMENT_STATUS_ACTIVE:
        return []
    return await effective_permissions_for(db, assignment)
