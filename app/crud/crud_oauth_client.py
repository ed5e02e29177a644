# auth_server/app/crud/crud_oauth_client.py
from typing import List, Optional, Tuple

from sqlalchemy import delete, func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from loguru import logger

from app.core import clock
from app.core.config import settings
from app.core.security import (
    generate_client_id,
    generate_client_secret,
    hash_client_secret,
    verify_client_secret,
)
from app.models.oauth2_authorization_code import OAuth2AuthorizationCode
from app.models.oauth2_client import OAuth2Client, CLIENT_STATUS_ACTIVE, CLIENT_STATUS_DISABLED
from app.models.oauth2_token import OAuth2AccessToken
from app.crud import crud_oauth_token


async def register(
    db: AsyncSession,
    *,
    name: str,
    redirect_uris: List[str],
    homepage_url: Optional[str] = None,
    description: Optional[str] = None,
    logo_url: Optional[str] = None,
    scopes: Optional[List[str]] = None,
    created_by: Optional[int] = None,
) -> Tuple[OAuth2Client, str]:
    """
    Regista uma nova aplicação. Retorna o cliente e o client_secret em texto
    plano; só o hash fica guardado, o valor não pode ser recuperado depois.
    """
    plain_secret = generate_client_secret()
    db_client = OAuth2Client(
        client_id=generate_client_id(),
        client_secret_hash=hash_client_secret(plain_secret),
        client_name=name,
        description=description,
        logo_url=logo_url,
        homepage_url=homepage_url,
        redirect_uris_str=" ".join(redirect_uris),
        scope_str=" ".join(scopes) if scopes else settings.OAUTH_CLIENT_DEFAULT_SCOPES,
        status=CLIENT_STATUS_ACTIVE,
        created_by=created_by,
    )
    db.add(db_client)
    await db.commit()
    await db.refresh(db_client)
    logger.info(f"Cliente OAuth registado: {db_client.client_id} ({name})")
    return db_client, plain_secret


async def get_by_client_id(db: AsyncSession, *, client_id: str) -> Optional[OAuth2Client]:
    if not client_id:
        return None
    result = await db.execute(
        select(OAuth2Client)
        .where(OAuth2Client.client_id == client_id)
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def get_active(db: AsyncSession, *, client_id: str) -> Optional[OAuth2Client]:
    """Cliente existente e ativo; desconhecido ou desativado devolve None."""
    client = await get_by_client_id(db, client_id=client_id)
    if client is None or not client.is_active:
        return None
    return client


async def verify_secret(db: AsyncSession, *, client_id: str, client_secret: str) -> bool:
    client = await get_by_client_id(db, client_id=client_id)
    if client is None:
        return False
    return verify_client_secret(client_secret, client.client_secret_hash)


async def list_with_token_counts(db: AsyncSession) -> List[Tuple[OAuth2Client, int]]:
    """Todos os clientes ordenados por nome, com o número de access tokens ativos."""
    now = clock.utcnow()
    counts = (
        select(OAuth2AccessToken.client_id, func.count(OAuth2AccessToken.id).label("active"))
        .where(
            OAuth2AccessToken.is_revoked.is_(False),
            OAuth2AccessToken.expires_at > now,
        )
        .group_by(OAuth2AccessToken.client_id)
        .subquery()
    )
    stmt = (
        select(OAuth2Client, func.coalesce(counts.c.active, 0))
        .outerjoin(counts, counts.c.client_id == OAuth2Client.client_id)
        .order_by(OAuth2Client.client_name)
    )
    result = await db.execute(stmt)
    return [(row[0], int(row[1])) for row in result.all()]


async def disable(db: AsyncSession, *, client_id: str) -> bool:
    """
    Desativa o cliente: todos os Authorize/Token seguintes falham.
    Tokens já emitidos não são revogados.
    """
    result = await db.execute(
        update(OAuth2Client)
        .where(OAuth2Client.client_id == client_id)
        .values(status=CLIENT_STATUS_DISABLED, updated_at=clock.utcnow())
    )
    await db.commit()
    if result.rowcount:
        logger.info(f"Cliente OAuth desativado: {client_id}")
    return bool(result.rowcount)


async def delete_client(db: AsyncSession, *, client_id: str, revoke_tokens: bool = False) -> bool:
    """
    Remove o cliente e os seus códigos pendentes. Com revoke_tokens=True revoga
    também os access/refresh tokens emitidos para ele (na mesma transação).
    """
    client = await get_by_client_id(db, client_id=client_id)
    if client is None:
        return False
    try:
        if revoke_tokens:
            revoked = await crud_oauth_token.revoke_all_for_client(db, client_id=client_id)
            logger.info(f"Revogados {revoked} tokens do cliente {client_id}")
        await db.execute(
            delete(OAuth2AuthorizationCode).where(OAuth2AuthorizationCode.client_id == client_id)
        )
        await db.delete(client)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.info(f"Cliente OAuth removido: {client_id}")
    return True
