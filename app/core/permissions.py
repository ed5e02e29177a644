# auth_server/app/core/permissions.py
"""
Registo estático de permissões do serviço.

Os identificadores abaixo são a única fonte de permissões válidas. As roles
de aplicação guardam as suas permissões como linhas normalizadas
(role_id, permission) em `app_role_permissions`, sempre validadas contra
este registo. Alterações ao conjunto de identificadores incrementam
PERMISSION_REGISTRY_VERSION.
"""
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Set

from loguru import logger

PERMISSION_REGISTRY_VERSION = 1


class Permission(str, Enum):
    PROFILE_READ = "profile:read"
    USERS_VIEW = "users:view"
    USERS_MANAGE = "users:manage"
    ORGANIZATIONS_VIEW = "organizations:view"
    ORGANIZATIONS_MANAGE = "organizations:manage"
    DOCUMENTS_VIEW = "documents:view"
    DOCUMENTS_MANAGE = "documents:manage"
    PAYROLL_VIEW = "payroll:view"
    PAYROLL_MANAGE = "payroll:manage"
    TICKETS_VIEW = "tickets:view"
    TICKETS_MANAGE = "tickets:manage"
    CLIENTS_MANAGE = "clients:manage"
    AUDIT_VIEW = "audit:view"


ALL_PERMISSIONS: FrozenSet[str] = frozenset(p.value for p in Permission)

# Roles com no máximo um titular ativo por aplicação
SINGLETON_ROLES: FrozenSet[str] = frozenset({"product_owner"})

DEFAULT_ROLE_PERMISSIONS: Dict[str, List[Permission]] = {
    "product_owner": list(Permission),
    "admin": [
        Permission.PROFILE_READ,
        Permission.USERS_VIEW,
        Permission.USERS_MANAGE,
        Permission.ORGANIZATIONS_VIEW,
        Permission.DOCUMENTS_VIEW,
        Permission.DOCUMENTS_MANAGE,
        Permission.TICKETS_VIEW,
        Permission.TICKETS_MANAGE,
        Permission.AUDIT_VIEW,
    ],
    "manager": [
        Permission.PROFILE_READ,
        Permission.USERS_VIEW,
        Permission.DOCUMENTS_VIEW,
        Permission.TICKETS_VIEW,
        Permission.TICKETS_MANAGE,
    ],
    "user": [Permission.PROFILE_READ, Permission.TICKETS_VIEW],
}


def is_registered(permission: str) -> bool:
    return permission in ALL_PERMISSIONS


def parse_permission_string(raw: str | None) -> Set[str]:
    """
    Extrai identificadores registados de uma string livre
    (separada por espaços ou vírgulas). Identificadores desconhecidos são ignorados.
    """
    if not raw:
        return set()
    found: Set[str] = set()
    for item in raw.replace(",", " ").split():
        if is_registered(item):
            found.add(item)
        else:
            logger.warning(f"Permissão desconhecida ignorada: '{item}'")
    return found


def unregistered(permissions: Iterable[str]) -> List[str]:
    return [p for p in permissions if not is_registered(p)]
