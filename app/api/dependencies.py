# auth_server/app/api/dependencies.py
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer, OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession
from loguru import logger

from app.core import security
from app.core.config import settings
from app.crud.crud_auth_epoch import get_current_epoch
from app.crud.crud_user import user as crud_user
from app.db.session import get_db
from app.models.user import User as UserModel

# Usado apenas pelo Swagger para o formulário de /token
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/token")

bearer_scheme = HTTPBearer(
    description="Insira o Access Token JWT (com 'Bearer ') e.g. 'Bearer eyJ...'"
)
optional_bearer_scheme = HTTPBearer(auto_error=False)

api_key_scheme = APIKeyHeader(name="X-API-Key", description="Chave de API para endpoints /mgmt")


def _credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_user_from_session_token(db: AsyncSession, token: str) -> UserModel:
    """Valida o JWT de sessão (assinatura, issuer, audience, época) e carrega o utilizador."""
    payload = security.decode_access_token(token)
    if payload is None:
        raise _credentials_exception()

    try:
        user_id = int(payload.get("sub"))
        token_epoch = int(payload.get("epoch", 0))
    except (TypeError, ValueError):
        raise _credentials_exception()

    if token_epoch < await get_current_epoch(db):
        logger.info(f"Sessão de época antiga rejeitada para user ID {user_id}")
        raise _credentials_exception()

    user = await crud_user.get(db, user_id)
    if user is None:
        raise _credentials_exception()
    return user


async def get_current_user_from_token(
    db: AsyncSession = Depends(get_db),
    creds: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> UserModel:
    if creds.scheme.lower() != "bearer":
        raise _credentials_exception()
    return await get_user_from_session_token(db, creds.credentials)


async def get_current_active_user(
    current_user: UserModel = Depends(get_current_user_from_token),
) -> UserModel:
    if not current_user.is_active:
        raise HTTPException(status_code=400, detail="Inactive user")
    return current_user


async def get_optional_active_user(
    db: AsyncSession = Depends(get_db),
    creds: Optional[HTTPAuthorizationCredentials] = Depends(optional_bearer_scheme),
) -> Optional[UserModel]:
    """Como get_current_active_user, mas None quando não há header Authorization."""
    if creds is None:
        return None
    user = await get_user_from_session_token(db, creds.credentials)
    if not user.is_active:
        raise HTTPException(status_code=400, detail="Inactive user")
    return user


async def get_current_admin_user(
    current_user: UserModel = Depends(get_current_active_user),
) -> UserModel:
    """Exige is_admin (gestão de clientes OAuth e roles de aplicação)."""
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Não autorizado. Requer privilégios de administrador.",
        )
    return current_user


async def get_api_key(api_key: str = Depends(api_key_scheme)) -> str:
    """Verifica a X-API-Key enviada no header."""
    if not settings.INTERNAL_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="INTERNAL_API_KEY não está configurada no servidor",
        )
    # Comparação em tempo constante
    if not secrets.compare_digest(api_key, settings.INTERNAL_API_KEY):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Chave de API inválida ou ausente",
        )
    return api_key
