# auth_server/app/api/endpoints/auth.py
from typing import Any, Union

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.ext.asyncio import AsyncSession
from loguru import logger

from app.api.dependencies import get_current_active_user
from app.core import security
from app.core.limiter import limiter
from app.crud import crud_two_factor
from app.crud.crud_auth_epoch import get_current_epoch
from app.crud.crud_user import user as crud_user
from app.db.session import get_db
from app.models.user import User as UserModel
from app.schemas.token import MFARequiredResponse, Token
from app.schemas.user import User as UserSchema

router = APIRouter()


async def issue_session_token(db: AsyncSession, user: UserModel) -> Token:
    """Emite o JWT de sessão com a época atual e marca o último login."""
    epoch = await get_current_epoch(db)
    access_token = security.create_access_token(user, epoch=epoch)
    await crud_user.mark_last_login(db, user_id=user.id)
    await db.commit()
    return Token(access_token=access_token)


# --- Endpoint /token (Login Principal) ---
@router.post(
    "/token",
    response_model=Union[Token, MFARequiredResponse],
    responses={
        200: {"description": "Login bem-sucedido ou MFA necessário"},
        400: {"description": "Credenciais inválidas ou conta inativa"},
    },
)
@limiter.limit("10/minute")
async def login_for_access_token(
    request: Request,
    db: AsyncSession = Depends(get_db),
    form_data: OAuth2PasswordRequestForm = Depends(),
) -> Any:
    user = await crud_user.authenticate(db, email=form_data.username, password=form_data.password)
    if not user:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Incorrect email or password")

    if await crud_two_factor.is_enabled(db, user_id=user.id):
        mfa_challenge_token = security.create_mfa_challenge_token(user_id=user.id)
        logger.info(f"Login para user ID {user.id}: MFA necessário, challenge token emitido.")
        # 200 OK com o challenge (não é um erro)
        return MFARequiredResponse(mfa_challenge_token=mfa_challenge_token)

    logger.info(f"Login para user ID {user.id}: Sucesso. Emitindo token de sessão.")
    return await issue_session_token(db, user)


@router.get("/me", response_model=UserSchema)
async def read_users_me(current_user: UserModel = Depends(get_current_active_user)) -> Any:
    return current_user
