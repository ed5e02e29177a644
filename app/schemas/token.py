# auth_server/app/schemas/token.py
from pydantic import BaseModel
from typing import Literal


class Token(BaseModel):
    """Token de sessão primário (login direto nesta API)."""
    access_token: str
    token_type: str = "bearer"


# --- Schema: Resposta MFA Obrigatório ---
class MFARequiredResponse(BaseModel):
    """Resposta indicando que a verificação MFA é necessária."""
    detail: Literal["MFA verification required"] = "MFA verification required"
    mfa_challenge_token: str # Um token temporário para a próxima etapa


class OAuthTokenResponse(BaseModel):
    """Corpo da resposta do endpoint /oauth/token."""
    access_token: str
    token_type: Literal["Bearer"] = "Bearer"
    expires_in: int
    refresh_token: str
    scope: str


class OAuthErrorResponse(BaseModel):
    error: str
    error_description: str | None = None
