# auth_server/app/schemas/oauth.py
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator


# --- Clientes ---
class ClientCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=500)
    redirect_uris: List[str] = Field(..., min_length=1)
    homepage_url: Optional[str] = None
    logo_url: Optional[str] = None
    scopes: Optional[List[str]] = None

    @field_validator("redirect_uris")
    @classmethod
    def validate_redirect_uris(cls, value: List[str]) -> List[str]:
        for uri in value:
            if not uri.startswith(("http://", "https://")) or " " in uri:
                raise ValueError(f"Redirect URI inválido: {uri}")
        return value


class ClientCreated(BaseModel):
    """Resposta do registo; o client_secret não volta a ser mostrado."""
    id: int
    client_id: str
    client_secret: str
    name: str
    redirect_uris: List[str]
    message: str = "Save the client_secret - it won't be shown again"


class ClientInfo(BaseModel):
    id: int
    client_id: str
    name: str
    description: Optional[str] = None
    logo_url: Optional[str] = None
    homepage_url: Optional[str] = None
    redirect_uris: List[str]
    scopes: List[str]
    status: str
    created_at: Optional[datetime] = None
    active_tokens: int = 0


# --- Fluxo de autorização ---
class AuthorizeResponse(BaseModel):
    """Metadados para a página de login/consentimento."""
    client_id: str
    client_name: str
    client_description: Optional[str] = None
    client_logo: Optional[str] = None
    redirect_uri: str
    scope: str
    state: Optional[str] = None
    login_url: str = "/oauth/authorize/login"
    consent_url: str = "/oauth/authorize/consent"


class AuthorizeLoginRequest(BaseModel):
    email: EmailStr
    password: str
    client_id: str
    redirect_uri: str
    scope: Optional[str] = None
    state: Optional[str] = None
    otp_code: Optional[str] = None


class AuthorizeConsentRequest(BaseModel):
    client_id: str
    redirect_uri: str
    scope: Optional[str] = None
    state: Optional[str] = None


class AuthorizationCodeIssued(BaseModel):
    redirect_url: str
    code: str
    state: Optional[str] = None


class RevokeRequest(BaseModel):
    token: str
    token_type_hint: Optional[str] = None


# --- Roles de aplicação ---
class AppRoleAssignRequest(BaseModel):
    client_id: str
    role: str = Field(..., min_length=1, max_length=50)
    permissions: Optional[str] = None


class AppRoleAssignmentInfo(BaseModel):
    id: int
    user_id: int
    client_id: str
    client_name: Optional[str] = None
    role: str
    permissions: Optional[str] = None
    status: str
    effective_permissions: List[str] = []
    created_at: Optional[datetime] = None


class RolePermissionsUpdate(BaseModel):
    permissions: List[str]


class RolePermissionsInfo(BaseModel):
    role: str
    is_singleton: bool
    permissions: List[str]


class PermissionRegistryInfo(BaseModel):
    version: int
    permissions: List[str]
    singleton_roles: List[str]
