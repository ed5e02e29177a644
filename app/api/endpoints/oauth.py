# auth_server/app/api/endpoints/oauth.py
import json
from typing import Any, Dict, List, Optional

from authlib.oauth2.rfc6749.util import extract_basic_authorization
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import (
    get_current_active_user,
    get_current_admin_user,
    optional_bearer_scheme,
)
from app.core.exceptions import InvalidRequestError
from app.core.limiter import limiter
from app.core.permissions import ALL_PERMISSIONS, PERMISSION_REGISTRY_VERSION, SINGLETON_ROLES
from app.crud import crud_app_role, crud_oauth_client
from app.crud.crud_user import user as crud_user
from app.db.session import get_db
from app.models.user import User as UserModel
from app.schemas.oauth import (
    AppRoleAssignmentInfo,
    AppRoleAssignRequest,
    AuthorizationCodeIssued,
    AuthorizeConsentRequest,
    AuthorizeLoginRequest,
    AuthorizeResponse,
    ClientCreate,
    ClientCreated,
    ClientInfo,
    PermissionRegistryInfo,
    RolePermissionsInfo,
    RolePermissionsUpdate,
)
from app.schemas.token import OAuthErrorResponse, OAuthTokenResponse
from app.services import audit_service, oauth_flow

router = APIRouter()

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


async def _read_params(request: Request, *, strict: bool = True) -> Dict[str, str]:
    """
    Corpo do pedido como dict de strings, seja application/x-www-form-urlencoded
    ou JSON. Valores que não são strings (números, listas, ficheiros) dão
    invalid_request; com strict=False são ignorados.
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except json.JSONDecodeError:
            raise InvalidRequestError(description="Malformed JSON body")
        if not isinstance(body, dict):
            raise InvalidRequestError(description="JSON body must be an object")
        items = body.items()
    else:
        items = (await request.form()).items()

    params: Dict[str, str] = {}
    for key, value in items:
        if value is None:
            continue
        if not isinstance(value, str):
            if strict:
                raise InvalidRequestError(description=f"Parameter '{key}' must be a string")
            continue
        params[key] = value
    return params


# --- Authorization endpoint ---
@router.get("/authorize", response_model=AuthorizeResponse)
async def authorize(
    response_type: Optional[str] = None,
    client_id: Optional[str] = None,
    redirect_uri: Optional[str] = None,
    scope: Optional[str] = None,
    state: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
) -> Any:
    """Valida o pedido e devolve os dados para a página de login/consentimento."""
    validated = await oauth_flow.authorize(
        db,
        response_type=response_type,
        client_id=client_id,
        redirect_uri=redirect_uri,
        scope=scope,
        state=state,
    )
    client = validated.client
    return AuthorizeResponse(
        client_id=client.client_id,
        client_name=client.client_name,
        client_description=client.description,
        client_logo=client.logo_url,
        redirect_uri=validated.redirect_uri,
        scope=validated.scope,
        state=validated.state,
    )


@router.post("/authorize/login", response_model=AuthorizationCodeIssued)
@limiter.limit("10/minute")
async def authorize_login(
    request: Request,
    body: AuthorizeLoginRequest,
    db: AsyncSession = Depends(get_db),
) -> Any:
    issued = await oauth_flow.complete_login(
        db,
        client_id=body.client_id,
        email=body.email,
        password=body.password,
        redirect_uri=body.redirect_uri,
        scope=body.scope,
        state=body.state,
        otp_code=body.otp_code,
    )
    return AuthorizationCodeIssued(redirect_url=issued.redirect_url, code=issued.code, state=issued.state)


@router.post("/authorize/consent", response_model=AuthorizationCodeIssued)
async def authorize_consent(
    body: AuthorizeConsentRequest,
    current_user: UserModel = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    issued = await oauth_flow.complete_consent(
        db,
        user=current_user,
        client_id=body.client_id,
        redirect_uri=body.redirect_uri,
        scope=body.scope,
        state=body.state,
    )
    return AuthorizationCodeIssued(redirect_url=issued.redirect_url, code=issued.code, state=issued.state)


# --- Token endpoint ---
@router.post(
    "/token",
    response_model=OAuthTokenResponse,
    responses={400: {"model": OAuthErrorResponse}, 401: {"model": OAuthErrorResponse}},
)
@limiter.limit("30/minute")
async def token(request: Request, db: AsyncSession = Depends(get_db)) -> Any:
    params = await _read_params(request)
    client_id = params.get("client_id")
    client_secret = params.get("client_secret")
    basic_id, basic_secret = extract_basic_authorization(request.headers)
    if basic_id:
        if client_id and client_id != basic_id:
            raise InvalidRequestError(description="Conflicting client credentials")
        client_id, client_secret = basic_id, basic_secret

    pair = await oauth_flow.exchange(
        db,
        grant_type=params.get("grant_type"),
        code=params.get("code"),
        redirect_uri=params.get("redirect_uri"),
        client_id=client_id,
        client_secret=client_secret,
        refresh_token=params.get("refresh_token"),
    )
    body = OAuthTokenResponse(
        access_token=pair.access_token,
        expires_in=pair.expires_in,
        refresh_token=pair.refresh_token,
        scope=pair.scope,
    )
    return JSONResponse(content=body.model_dump(), headers=NO_STORE_HEADERS)


@router.get("/userinfo")
async def userinfo(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(optional_bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> Any:
    unauthorized = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or expired access token",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if creds is None or creds.scheme.lower() != "bearer":
        raise unauthorized
    info = await oauth_flow.userinfo(db, access_token=creds.credentials)
    if info is None:
        raise unauthorized
    return info


@router.post("/revoke")
async def revoke(request: Request, db: AsyncSession = Depends(get_db)) -> Any:
    """Sempre 200, com o mesmo corpo, mesmo para tokens desconhecidos ou já revogados."""
    params = await _read_params(request, strict=False)
    token_value = params.get("token")
    if token_value:
        await oauth_flow.revoke(db, token=token_value, token_type_hint=params.get("token_type_hint"))
    return {"message": "Token revoked"}


# --- Gestão de clientes ---
@router.get("/clients", response_model=List[ClientInfo])
async def list_clients(
    db: AsyncSession = Depends(get_db),
    _: UserModel = Depends(get_current_admin_user),
) -> Any:
    rows = await crud_oauth_client.list_with_token_counts(db)
    return [
        ClientInfo(
            id=client.id,
            client_id=client.client_id,
            name=client.client_name,
            description=client.description,
            logo_url=client.logo_url,
            homepage_url=client.homepage_url,
            redirect_uris=client.redirect_uris,
            scopes=client.scopes,
            status=client.status,
            created_at=client.created_at,
            active_tokens=active,
        )
        for client, active in rows
    ]


@router.post("/clients", response_model=ClientCreated, status_code=status.HTTP_201_CREATED)
async def create_client(
    client_in: ClientCreate,
    db: AsyncSession = Depends(get_db),
    current_user: UserModel = Depends(get_current_admin_user),
) -> Any:
    client, plain_secret = await crud_oauth_client.register(
        db,
        name=client_in.name,
        redirect_uris=client_in.redirect_uris,
        homepage_url=client_in.homepage_url,
        description=client_in.description,
        logo_url=client_in.logo_url,
        scopes=client_in.scopes,
        created_by=current_user.id,
    )
    audit_service.record(
        "oauth_client_created", "OAuthClient", client.client_id,
        f"OAuth client '{client.client_name}' created", user_id=current_user.id,
    )
    return ClientCreated(
        id=client.id,
        client_id=client.client_id,
        client_secret=plain_secret,
        name=client.client_name,
        redirect_uris=client.redirect_uris,
    )


@router.post("/clients/{client_id}/disable")
async def disable_client(
    client_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: UserModel = Depends(get_current_admin_user),
) -> Any:
    if not await crud_oauth_client.disable(db, client_id=client_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")
    audit_service.record(
        "oauth_client_disabled", "OAuthClient", client_id, "OAuth client disabled", user_id=current_user.id
    )
    return {"message": "Client disabled"}


@router.delete("/clients/{client_id}")
async def delete_client(
    client_id: str,
    revoke_tokens: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    current_user: UserModel = Depends(get_current_admin_user),
) -> Any:
    if not await crud_oauth_client.delete_client(db, client_id=client_id, revoke_tokens=revoke_tokens):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")
    audit_service.record(
        "oauth_client_deleted", "OAuthClient", client_id,
        f"OAuth client deleted (revoke_tokens={revoke_tokens})", user_id=current_user.id,
    )
    return {"message": "Client deleted"}


# --- Registo de permissões e roles de aplicação ---
@router.get("/permissions", response_model=PermissionRegistryInfo)
async def list_permissions(_: UserModel = Depends(get_current_active_user)) -> Any:
    return PermissionRegistryInfo(
        version=PERMISSION_REGISTRY_VERSION,
        permissions=sorted(ALL_PERMISSIONS),
        singleton_roles=sorted(SINGLETON_ROLES),
    )


@router.get("/roles/{role_name}/permissions", response_model=RolePermissionsInfo)
async def get_role_permissions(
    role_name: str,
    db: AsyncSession = Depends(get_db),
    _: UserModel = Depends(get_current_admin_user),
) -> Any:
    role = await crud_app_role.get_role(db, name=role_name)
    if role is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Role not found")
    return RolePermissionsInfo(
        role=role.name,
        is_singleton=role.is_singleton,
        permissions=await crud_app_role.get_role_permissions(db, role_name=role.name),
    )


@router.put("/roles/{role_name}/permissions", response_model=RolePermissionsInfo)
async def set_role_permissions(
    role_name: str,
    body: RolePermissionsUpdate,
    db: AsyncSession = Depends(get_db),
    _: UserModel = Depends(get_current_admin_user),
) -> Any:
    role = await crud_app_role.set_role_permissions(db, role_name=role_name, permissions=body.permissions)
    return RolePermissionsInfo(
        role=role.name,
        is_singleton=role.is_singleton,
        permissions=await crud_app_role.get_role_permissions(db, role_name=role.name),
    )


@router.get("/users/{user_id}/apps", response_model=List[AppRoleAssignmentInfo])
async def list_user_apps(
    user_id: int,
    db: AsyncSession = Depends(get_db),
    _: UserModel = Depends(get_current_admin_user),
) -> Any:
    rows = await crud_app_role.list_for_user(db, user_id=user_id)
    return [
        AppRoleAssignmentInfo(
            id=assignment.id,
            user_id=assignment.user_id,
            client_id=assignment.client_id,
            client_name=client_name,
            role=assignment.role,
            permissions=assignment.permissions,
            status=assignment.status,
            effective_permissions=await crud_app_role.effective_permissions_for(db, assignment),
            created_at=assignment.created_at,
        )
        for assignment, client_name in rows
    ]


@router.post("/users/{user_id}/apps", response_model=AppRoleAssignmentInfo)
async def assign_user_app(
    user_id: int,
    body: AppRoleAssignRequest,
    db: AsyncSession = Depends(get_db),
    current_user: UserModel = Depends(get_current_admin_user),
) -> Any:
    if await crud_user.get(db, user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    client = await crud_oauth_client.get_by_client_id(db, client_id=body.client_id)
    if client is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")

    assignment = await crud_app_role.assign(
        db, user_id=user_id, client_id=body.client_id, role=body.role, permissions=body.permissions
    )
    audit_service.record(
        "app_role_assigned", "User", user_id,
        f"Role '{assignment.role}' assigned for client {body.client_id}", user_id=current_user.id,
    )
    return AppRoleAssignmentInfo(
        id=assignment.id,
        user_id=assignment.user_id,
        client_id=assignment.client_id,
        client_name=client.client_name,
        role=assignment.role,
        permissions=assignment.permissions,
        status=assignment.status,
        effective_permissions=await crud_app_role.effective_permissions_for(db, assignment),
        created_at=assignment.created_at,
    )
