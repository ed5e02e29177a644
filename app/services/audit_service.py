# auth_server/app/services/audit_service.py
"""
Registo de auditoria. Cada evento é uma linha loguru marcada com `audit=True`,
para que um sink dedicado (ficheiro, SIEM) o possa filtrar.
"""
from typing import Any, Optional

from loguru import logger

_audit_logger = logger.bind(audit=True)


def record(
    action: str,
    entity_type: str,
    entity_id: Any,
    description: str,
    *,
    user_id: Optional[int] = None,
) -> None:
    # Nunca passar segredos (senhas, tokens, códigos) na descrição
    _audit_logger.bind(
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        actor_id=user_id,
    ).info(f"[AUDIT] {action} {entity_type}:{entity_id} - {description}")
