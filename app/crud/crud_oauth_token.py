# auth_server/app/crud/crud_oauth_token.py
from datetime import datetime, timedelta
from typing import NamedTuple, Optional

from sqlalchemy import delete, func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from loguru import logger

from app.core import clock
from app.core.config import settings
from app.core.exceptions import invalid_grant
from app.core.security import create_access_token, generate_opaque_token, hash_token
from app.crud.crud_auth_epoch import get_current_epoch
from app.models.oauth2_token import OAuth2AccessToken, OAuth2RefreshToken
from app.models.user import User

ACCESS_TOKEN_HINT = "access_token"
REFRESH_TOKEN_HINT = "refresh_token"


class TokenPair(NamedTuple):
    access_token: str
    refresh_token: str
    expires_in: int
    scope: str
    user_id: int
    client_id: str


async def issue_token_pair(
    db: AsyncSession,
    *,
    user: User,
    client_id: str,
    scope: str,
    parent_id: Optional[int] = None,
) -> TokenPair:
    """
    Emite um access token (1h) e um refresh token (30d) ligados ao mesmo
    user/cliente/scope. Não faz commit.
    """
    now = clock.utcnow()
    epoch = await get_current_epoch(db)
    access_ttl = timedelta(minutes=settings.OAUTH_ACCESS_TOKEN_EXPIRE_MINUTES)

    access_token = create_access_token(
        user, epoch=epoch, client_id=client_id, scope=scope, expires_delta=access_ttl
    )
    refresh_token = generate_opaque_token()

    db.add(
        OAuth2AccessToken(
            token_hash=hash_token(access_token),
            client_id=client_id,
            user_id=user.id,
            scope=scope,
            expires_at=now + access_ttl,
            is_revoked=False,
            epoch=epoch,
            created_at=now,
        )
    )
    db.add(
        OAuth2RefreshToken(
            token_hash=hash_token(refresh_token),
            client_id=client_id,
            user_id=user.id,
            scope=scope,
            expires_at=now + timedelta(days=settings.OAUTH_REFRESH_TOKEN_EXPIRE_DAYS),
            is_revoked=False,
            epoch=epoch,
            created_at=now,
            parent_id=parent_id,
        )
    )
    await db.flush()
    return TokenPair(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=int(access_ttl.total_seconds()),
        scope=scope,
        user_id=user.id,
        client_id=client_id,
    )


async def get_refresh_token(db: AsyncSession, *, token: str) -> Optional[OAuth2RefreshToken]:
    """Busca pelo hash, sem filtrar validade (usado para descobrir o cliente)."""
    result = await db.execute(
        select(OAuth2RefreshToken).where(OAuth2RefreshToken.token_hash == hash_token(token))
    )
    return result.scalars().first()


async def redeem_refresh(
    db: AsyncSession, *, refresh_token: str, client_id: Optional[str] = None
) -> TokenPair:
    """
    Rotação obrigatória: revoga o refresh token apresentado e emite um novo par,
    tudo numa transação. A revogação é um UPDATE condicional; uma segunda
    redenção concorrente do mesmo token não altera nenhuma linha e falha.
    O access token emitido com o token antigo continua válido até expirar.
    """
    if not refresh_token:
        raise invalid_grant()

    token_hash = hash_token(refresh_token)
    now = clock.utcnow()
    current_epoch = await get_current_epoch(db)

    conditions = [
        OAuth2RefreshToken.token_hash == token_hash,
        OAuth2RefreshToken.is_revoked.is_(False),
        OAuth2RefreshToken.expires_at > now,
        OAuth2RefreshToken.epoch >= current_epoch,
    ]
    if client_id:
        conditions.append(OAuth2RefreshToken.client_id == client_id)

    try:
        result = await db.execute(
            update(OAuth2RefreshToken)
            .where(*conditions)
            .values(is_revoked=True, revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise invalid_grant()

        old = (
            await db.execute(
                select(
                    OAuth2RefreshToken.id,
                    OAuth2RefreshToken.user_id,
                    OAuth2RefreshToken.client_id,
                    OAuth2RefreshToken.scope,
                ).where(OAuth2RefreshToken.token_hash == token_hash)
            )
        ).one()

        user = await db.get(User, old.user_id)
        if user is None or not user.is_active:
            raise invalid_grant()

        pair = await issue_token_pair(
            db, user=user, client_id=old.client_id, scope=old.scope, parent_id=old.id
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Refresh token rodado para user ID {old.user_id}, cliente {old.client_id}")
    return pair


async def _revoke_by_hash(db: AsyncSession, model, token_hash: str, now: datetime) -> int:
    result = await db.execute(
        update(model)
        .where(model.token_hash == token_hash, model.is_revoked.is_(False))
        .values(is_revoked=True, revoked_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


async def revoke(db: AsyncSession, *, token: str, token_type_hint: Optional[str] = None) -> bool:
    """
    Revoga um access ou refresh token. Idempotente: token desconhecido ou já
    revogado não é erro. O hint só muda a ordem de procura.
    Retorna True se alguma linha foi alterada (apenas para logs/auditoria).
    """
    if not token:
        return False
    token_hash = hash_token(token)
    now = clock.utcnow()

    models = [OAuth2AccessToken, OAuth2RefreshToken]
    if token_type_hint == REFRESH_TOKEN_HINT:
        models.reverse()

    changed = 0
    for model in models:
        changed = await _revoke_by_hash(db, model, token_hash, now)
        if changed:
            break
    await db.commit()
    return bool(changed)


async def get_valid_access_token(db: AsyncSession, *, token: str) -> Optional[OAuth2AccessToken]:
    """Access token não revogado, não expirado e emitido na época atual ou posterior."""
    if not token:
        return None
    current_epoch = await get_current_epoch(db)
    result = await db.execute(
        select(OAuth2AccessToken).where(
            OAuth2AccessToken.token_hash == hash_token(token),
            OAuth2AccessToken.is_revoked.is_(False),
            OAuth2AccessToken.expires_at > clock.utcnow(),
            OAuth2AccessToken.epoch >= current_epoch,
        )
    )
    return result.scalars().first()


async def is_valid(db: AsyncSession, *, token: str) -> bool:
    return await get_valid_access_token(db, token=token) is not None


async def revoke_all_for_client(db: AsyncSession, *, client_id: str) -> int:
    """Revoga todos os tokens ativos de um cliente. Não faz commit."""
    now = clock.utcnow()
    total = 0
    for model in (OAuth2AccessToken, OAuth2RefreshToken):
        result = await db.execute(
            update(model)
            .where(model.client_id == client_id, model.is_revoked.is_(False))
            .values(is_revoked=True, revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        total += result.rowcount
    return total


async def count_active_for_client(db: AsyncSession, *, client_id: str) -> int:
    result = await db.execute(
        select(func.count(OAuth2AccessToken.id)).where(
            OAuth2AccessToken.client_id == client_id,
            OAuth2AccessToken.is_revoked.is_(False),
            OAuth2AccessToken.expires_at > clock.utcnow(),
        )
    )
    return result.scalar_one()


async def prune_expired(db: AsyncSession, *, now: Optional[datetime] = None) -> int:
    """Remove tokens expirados do banco."""
    now = now or clock.utcnow()
    total = 0
    for model in (OAuth2AccessToken, OAuth2RefreshToken):
        result = await db.execute(delete(model).where(model.expires_at <= now))
        total += result.rowcount
    await db.commit()
    return total
