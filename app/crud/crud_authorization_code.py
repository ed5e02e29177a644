# auth_server/app/crud/crud_authorization_code.py
from datetime import datetime, timedelta
from typing import Optional, Tuple

from sqlalchemy import delete, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from loguru import logger

from app.core import clock
from app.core.config import settings
from app.core.exceptions import invalid_grant
from app.core.security import generate_opaque_token, hash_token
from app.models.oauth2_authorization_code import OAuth2AuthorizationCode


async def issue(
    db: AsyncSession,
    *,
    client_id: str,
    user_id: int,
    redirect_uri: str,
    scope: str,
) -> str:
    """Cria um código de uso único (256 bits) e devolve o valor em claro."""
    code = generate_opaque_token()
    now = clock.utcnow()
    db.add(
        OAuth2AuthorizationCode(
            code_hash=hash_token(code),
            client_id=client_id,
            user_id=user_id,
            redirect_uri=redirect_uri,
            scope=scope,
            expires_at=now + timedelta(minutes=settings.OAUTH_AUTHORIZATION_CODE_EXPIRE_MINUTES),
            is_used=False,
            created_at=now,
        )
    )
    await db.commit()
    logger.debug(f"Código de autorização emitido para user ID {user_id}, cliente {client_id}")
    return code


async def consume(
    db: AsyncSession,
    *,
    code: str,
    client_id: str,
    redirect_uri: Optional[str] = None,
) -> Tuple[int, str]:
    """
    Marca o código como usado com um único UPDATE condicional e devolve
    (user_id, scope). Não faz commit: a emissão dos tokens fica na mesma transação.

    Código inexistente, expirado, já usado, de outro cliente ou com redirect_uri
    diferente levantam todos o mesmo invalid_grant.
    """
    if not code or not client_id:
        raise invalid_grant()

    code_hash = hash_token(code)
    now = clock.utcnow()
    conditions = [
        OAuth2AuthorizationCode.code_hash == code_hash,
        OAuth2AuthorizationCode.client_id == client_id,
        OAuth2AuthorizationCode.is_used.is_(False),
        OAuth2AuthorizationCode.expires_at > now,
    ]
    if redirect_uri:
        conditions.append(OAuth2AuthorizationCode.redirect_uri == redirect_uri)

    result = await db.execute(
        update(OAuth2AuthorizationCode)
        .where(*conditions)
        .values(is_used=True, used_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning(f"Troca de código rejeitada para o cliente {client_id}")
        raise invalid_grant()

    row = await db.execute(
        select(OAuth2AuthorizationCode.user_id, OAuth2AuthorizationCode.scope).where(
            OAuth2AuthorizationCode.code_hash == code_hash
        )
    )
    user_id, scope = row.one()
    return user_id, scope


async def prune_expired(db: AsyncSession, *, now: Optional[datetime] = None) -> int:
    """Remove códigos expirados ou usados. Só manutenção; a validade nunca depende disto."""
    now = now or clock.utcnow()
    result = await db.execute(
        delete(OAuth2AuthorizationCode).where(
            or_(
                OAuth2AuthorizationCode.expires_at <= now,
                OAuth2AuthorizationCode.is_used.is_(True),
            )
        )
    )
    await db.commit()
    return result.rowcount
