# auth_server/app/api/endpoints/users.py
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.limiter import limiter
from app.crud.crud_user import DuplicateEmailError, user as crud_user
from app.db.session import get_db
from app.schemas.user import User as UserSchema, UserCreate

router = APIRouter()


@router.post("/", response_model=UserSchema, status_code=status.HTTP_201_CREATED)
@limiter.limit("5/minute")
async def create_user(
    request: Request,
    user_in: UserCreate,
    db: AsyncSession = Depends(get_db),
) -> Any:
    """Regista um novo utilizador (ativo, sem privilégios de administrador)."""
    try:
        return await crud_user.create(db, obj_in=user_in)
    except DuplicateEmailError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="An account with this email already exists.",
        )
