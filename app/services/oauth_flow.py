# auth_server/app/services/oauth_flow.py
"""
Orquestração do fluxo Authorization Code:

    Authorize -> (login | consentimento) -> código -> Exchange -> tokens

Cada passo valida de novo o cliente e o redirect URI; qualquer falha termina
o pedido com um erro OAuth2 (o cliente tem de recomeçar em /oauth/authorize).
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

from authlib.common.urls import add_params_to_uri
from authlib.oidc.core import UserInfo
from sqlalchemy.ext.asyncio import AsyncSession
from loguru import logger

from app.core.config import settings
from app.core.exceptions import (
    InvalidClientError,
    InvalidCredentialsError,
    InvalidRedirectURIError,
    InvalidRequestError,
    InvalidScopeError,
    MFARequiredError,
    UnsupportedGrantTypeError,
    UnsupportedResponseTypeError,
    invalid_grant,
)
from app.crud import (
    crud_app_role,
    crud_authorization_code,
    crud_oauth_client,
    crud_oauth_token,
    crud_two_factor,
)
from app.crud.crud_oauth_token import TokenPair
from app.crud.crud_user import user as crud_user
from app.models.app_role import ASSIGNMENT_STATUS_ACTIVE
from app.models.oauth2_client import OAuth2Client
from app.models.user import User
from app.services import audit_service

GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_REFRESH_TOKEN = "refresh_token"
SUPPORTED_GRANT_TYPES = (GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN)


@dataclass
class ValidatedRequest:
    client: OAuth2Client
    redirect_uri: str
    scope: str
    state: Optional[str] = None


@dataclass
class IssuedCode:
    code: str
    redirect_url: str
    state: Optional[str] = None


def build_redirect_url(redirect_uri: str, code: str, state: Optional[str] = None) -> str:
    params = [("code", code)]
    if state:
        params.append(("state", state))
    return add_params_to_uri(redirect_uri, params)


def _resolve_scope(client: OAuth2Client, scope: Optional[str]) -> str:
    if not scope or not scope.strip():
        # Sem scope pedido: o scope por defeito limitado ao que o cliente pode pedir
        allowed = set(client.scopes)
        return " ".join(s for s in settings.OAUTH_DEFAULT_SCOPE.split() if s in allowed)
    scope = " ".join(scope.split())
    if not client.check_scope(scope):
        raise InvalidScopeError(description="Requested scope is not allowed for this client")
    return scope


async def _validate_client_request(
    db: AsyncSession,
    *,
    client_id: Optional[str],
    redirect_uri: Optional[str],
    scope: Optional[str],
    state: Optional[str],
) -> ValidatedRequest:
    client = await crud_oauth_client.get_active(db, client_id=client_id or "")
    if client is None:
        raise InvalidClientError(description="Unknown or disabled client")
    if not redirect_uri:
        raise InvalidRequestError(description="Missing 'redirect_uri'")
    if not client.check_redirect_uri(redirect_uri):
        raise InvalidRedirectURIError()
    return ValidatedRequest(
        client=client,
        redirect_uri=redirect_uri,
        scope=_resolve_scope(client, scope),
        state=state,
    )


async def authorize(
    db: AsyncSession,
    *,
    response_type: Optional[str],
    client_id: Optional[str],
    redirect_uri: Optional[str],
    scope: Optional[str] = None,
    state: Optional[str] = None,
) -> ValidatedRequest:
    """Valida o pedido e devolve os metadados para a UI. Não cria nenhum código."""
    if response_type != "code":
        raise UnsupportedResponseTypeError()
    return await _validate_client_request(
        db, client_id=client_id, redirect_uri=redirect_uri, scope=scope, state=state
    )


async def _issue_code(db: AsyncSession, *, user: User, request: ValidatedRequest) -> IssuedCode:
    code = await crud_authorization_code.issue(
        db,
        client_id=request.client.client_id,
        user_id=user.id,
        redirect_uri=request.redirect_uri,
        scope=request.scope,
    )
    audit_service.record(
        "oauth_authorize",
        "OAuthClient",
        request.client.client_id,
        f"User {user.id} authorized {request.client.client_name}",
        user_id=user.id,
    )
    return IssuedCode(
        code=code,
        redirect_url=build_redirect_url(request.redirect_uri, code, request.state),
        state=request.state,
    )


async def complete_login(
    db: AsyncSession,
    *,
    client_id: str,
    email: str,
    password: str,
    redirect_uri: str,
    scope: Optional[str] = None,
    state: Optional[str] = None,
    otp_code: Optional[str] = None,
) -> IssuedCode:
    """Login com email/senha (e código 2FA se a conta o tiver ativo) seguido de emissão do código."""
    request = await _validate_client_request(
        db, client_id=client_id, redirect_uri=redirect_uri, scope=scope, state=state
    )
    user = await crud_user.authenticate(db, email=email, password=password)
    if user is None:
        raise InvalidCredentialsError()

    if await crud_two_factor.is_enabled(db, user_id=user.id):
        if not otp_code:
            raise MFARequiredError()
        await crud_two_factor.verify(db, user_id=user.id, code=otp_code)

    return await _issue_code(db, user=user, request=request)


async def complete_consent(
    db: AsyncSession,
    *,
    user: User,
    client_id: str,
    redirect_uri: str,
    scope: Optional[str] = None,
    state: Optional[str] = None,
) -> IssuedCode:
    """Utilizador já autenticado (sessão bearer) aprova o cliente."""
    request = await _validate_client_request(
        db, client_id=client_id, redirect_uri=redirect_uri, scope=scope, state=state
    )
    return await _issue_code(db, user=user, request=request)


async def _authenticate_client(
    db: AsyncSession, *, client_id: str, client_secret: Optional[str]
) -> OAuth2Client:
    client = await crud_oauth_client.get_active(db, client_id=client_id)
    if client is None:
        raise InvalidClientError(description="Unknown or disabled client")
    # O secret é opcional, mas quando apresentado tem de estar correto
    if client_secret is not None and not await crud_oauth_client.verify_secret(
        db, client_id=client_id, client_secret=client_secret
    ):
        logger.warning(f"Client secret inválido para {client_id}")
        raise InvalidClientError(description="Invalid client credentials", status_code=401)
    return client


async def _exchange_code(
    db: AsyncSession,
    *,
    code: Optional[str],
    redirect_uri: Optional[str],
    client_id: Optional[str],
    client_secret: Optional[str],
) -> TokenPair:
    if not code or not client_id:
        raise InvalidRequestError(description="'code' and 'client_id' are required")
    await _authenticate_client(db, client_id=client_id, client_secret=client_secret)

    try:
        user_id, scope = await crud_authorization_code.consume(
            db, code=code, client_id=client_id, redirect_uri=redirect_uri
        )
        user = await crud_user.get(db, user_id)
        if user is None or not user.is_active:
            raise invalid_grant()
        pair = await crud_oauth_token.issue_token_pair(
            db, user=user, client_id=client_id, scope=scope
        )
        await crud_user.mark_last_login(db, user_id=user.id)
        # Código consumido, tokens e last_login num único commit
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    audit_service.record(
        "oauth_token_issued", "OAuthClient", client_id, f"Tokens issued for user {user_id}", user_id=user_id
    )
    return pair


async def _exchange_refresh(
    db: AsyncSession,
    *,
    refresh_token: Optional[str],
    client_id: Optional[str],
    client_secret: Optional[str],
) -> TokenPair:
    if not refresh_token:
        raise InvalidRequestError(description="'refresh_token' is required")

    if client_id:
        await _authenticate_client(db, client_id=client_id, client_secret=client_secret)
    else:
        stored = await crud_oauth_token.get_refresh_token(db, token=refresh_token)
        if stored is None:
            raise invalid_grant()
        if await crud_oauth_client.get_active(db, client_id=stored.client_id) is None:
            raise InvalidClientError(description="Unknown or disabled client")

    pair = await crud_oauth_token.redeem_refresh(db, refresh_token=refresh_token, client_id=client_id)
    audit_service.record(
        "oauth_token_refreshed",
        "OAuthClient",
        pair.client_id,
        f"Refresh token rotated for user {pair.user_id}",
        user_id=pair.user_id,
    )
    return pair


async def exchange(
    db: AsyncSession,
    *,
    grant_type: Optional[str],
    code: Optional[str] = None,
    redirect_uri: Optional[str] = None,
    client_id: Optional[str] = None,
    client_secret: Optional[str] = None,
    refresh_token: Optional[str] = None,
) -> TokenPair:
    if not grant_type:
        raise InvalidRequestError(description="Missing 'grant_type'")
    if grant_type not in SUPPORTED_GRANT_TYPES:
        raise UnsupportedGrantTypeError()

    if grant_type == GRANT_AUTHORIZATION_CODE:
        return await _exchange_code(
            db, code=code, redirect_uri=redirect_uri, client_id=client_id, client_secret=client_secret
        )
    return await _exchange_refresh(
        db, refresh_token=refresh_token, client_id=client_id, client_secret=client_secret
    )


async def revoke(db: AsyncSession, *, token: str, token_type_hint: Optional[str] = None) -> None:
    """Sempre bem-sucedido para quem chama; token desconhecido não é distinguível."""
    if await crud_oauth_token.revoke(db, token=token, token_type_hint=token_type_hint):
        audit_service.record("oauth_token_revoked", "OAuthToken", None, "Token revoked")


async def userinfo(db: AsyncSession, *, access_token: str) -> Optional[Dict[str, Any]]:
    """Perfil público do dono do token, ou None se o token não for válido."""
    token = await crud_oauth_token.get_valid_access_token(db, token=access_token)
    if token is None:
        return None
    user = await crud_user.get(db, token.user_id)
    if user is None or not user.is_active:
        return None

    info = UserInfo(
        sub=str(user.id),
        name=user.full_name,
        email=user.email,
        last_login_at=user.last_login_at.isoformat() if user.last_login_at else None,
        created_at=user.created_at.isoformat() if user.created_at else None,
        client_id=token.client_id,
        scope=token.scope,
    )
    assignment = await crud_app_role.get_assignment(db, user_id=user.id, client_id=token.client_id)
    if assignment is not None and assignment.status == ASSIGNMENT_STATUS_ACTIVE:
        info["app_role"] = assignment.role
        info["app_permissions"] = await crud_app_role.effective_permissions_for(db, assignment)
    return dict(info)
