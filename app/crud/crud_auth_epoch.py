# auth_server/app/crud/crud_auth_epoch.py
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from loguru import logger

from app.models.auth_epoch import AuthEpoch, GLOBAL_EPOCH_ID


async def get_current_epoch(db: AsyncSession) -> int:
    """Época global atual; 0 enquanto a linha não existir."""
    result = await db.execute(select(AuthEpoch.value).where(AuthEpoch.id == GLOBAL_EPOCH_ID))
    value = result.scalar_one_or_none()
    return value or 0


async def _ensure_row(db: AsyncSession) -> None:
    exists = await db.execute(select(AuthEpoch.id).where(AuthEpoch.id == GLOBAL_EPOCH_ID))
    if exists.scalar_one_or_none() is not None:
        return
    db.add(AuthEpoch(id=GLOBAL_EPOCH_ID, value=0))
    try:
        await db.commit()
    except IntegrityError:
        # Outra instância criou a linha entretanto
        await db.rollback()


async def bump_epoch(db: AsyncSession) -> int:
    """
    Incrementa a época global de forma atómica (value = value + 1) e faz commit.
    Todos os tokens e sessões emitidos com uma época anterior deixam de ser válidos.
    """
    await _ensure_row(db)
    await db.execute(
        update(AuthEpoch)
        .where(AuthEpoch.id == GLOBAL_EPOCH_ID)
        .values(value=AuthEpoch.value + 1)
    )
    await db.commit()
    new_value = await get_current_epoch(db)
    logger.warning(f"Época global de sessões incrementada para {new_value}")
    return new_value
