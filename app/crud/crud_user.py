# auth_server/app/crud/crud_user.py
from datetime import datetime
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from loguru import logger

from app.core import clock
from app.core.security import dummy_verify_password, get_password_hash, verify_password
from app.crud.base import CRUDBase
from app.models.user import User
from app.schemas.user import UserCreate, UserUpdate


class DuplicateEmailError(Exception):
    pass


class CRUDUser(CRUDBase[User, UserCreate, UserUpdate]):

    async def get_by_email(self, db: AsyncSession, *, email: str) -> Optional[User]:
        # Emails comparados sem distinção de maiúsculas
        stmt = select(User).where(func.lower(User.email) == email.strip().lower())
        result = await db.execute(stmt)
        return result.scalars().first()

    async def create(self, db: AsyncSession, *, obj_in: UserCreate, is_admin: bool = False) -> User:
        """Cria um utilizador ativo com senha hashada. Levanta DuplicateEmailError se o email existir."""
        if await self.get_by_email(db, email=obj_in.email):
            raise DuplicateEmailError(obj_in.email)

        db_obj = User(
            email=obj_in.email.strip().lower(),
            hashed_password=get_password_hash(obj_in.password),
            full_name=obj_in.full_name,
            is_active=True,
            is_admin=is_admin,
        )
        db.add(db_obj)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise DuplicateEmailError(obj_in.email)
        await db.refresh(db_obj)
        logger.info(f"Utilizador criado: ID {db_obj.id}")
        return db_obj

    async def authenticate(self, db: AsyncSession, *, email: str, password: str) -> Optional[User]:
        """
        Autentica por email e senha. Email desconhecido, senha errada e conta
        inativa devolvem todos None (indistinguíveis para quem chama).
        """
        user = await self.get_by_email(db, email=email)
        if not user or not user.hashed_password:
            dummy_verify_password()
            return None
        if not verify_password(password, user.hashed_password):
            logger.warning(f"Senha incorreta para user ID {user.id}")
            return None
        if not user.is_active:
            logger.warning(f"Tentativa de login (senha correta) para conta inativa: user ID {user.id}")
            return None
        return user

    async def mark_last_login(
        self, db: AsyncSession, *, user_id: int, when: Optional[datetime] = None
    ) -> None:
        """Atualiza last_login_at sem commit (faz parte da transação de quem chama)."""
        await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(last_login_at=when or clock.utcnow())
        )


# Instância única do CRUD para ser usada nos endpoints
user = CRUDUser(User)
