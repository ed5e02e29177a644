# auth_server/app/core/exceptions.py
from datetime import datetime
from typing import Optional

from authlib.oauth2.rfc6749.errors import (  # noqa: F401 - reexportados para os módulos do fluxo
    OAuth2Error,
    InvalidRequestError,
    InvalidClientError,
    InvalidGrantError,
    InvalidScopeError,
)

# Descrição única para qualquer falha de code/refresh token (não revelar qual verificação falhou)
INVALID_GRANT_DESCRIPTION = "Invalid, expired or already used grant"


# --- Erros OAuth2 que o Authlib não define ---
class UnsupportedResponseTypeError(OAuth2Error):
    error = "unsupported_response_type"
    description = "Only 'code' is supported"


class UnsupportedGrantTypeError(OAuth2Error):
    error = "unsupported_grant_type"
    description = "Only 'authorization_code' and 'refresh_token' are supported"


class InvalidRedirectURIError(OAuth2Error):
    error = "invalid_redirect_uri"
    description = "Redirect URI not registered"


class InvalidCredentialsError(OAuth2Error):
    error = "invalid_credentials"
    description = "Invalid email or password"
    status_code = 401


class MFARequiredError(OAuth2Error):
    error = "mfa_required"
    description = "Two-factor code required for this account"
    status_code = 401


def invalid_grant() -> InvalidGrantError:
    return InvalidGrantError(description=INVALID_GRANT_DESCRIPTION)


# --- Erros 2FA ---
class TwoFactorException(Exception):
    """Falha de uma operação 2FA; `error` é o código devolvido ao cliente."""

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int = 400,
        locked_until: Optional[datetime] = None,
    ):
        super().__init__(message)
        self.error = error
        self.message = message
        self.status_code = status_code
        self.locked_until = locked_until


# --- Erros de atribuição de roles ---
class RoleAssignmentException(Exception):
    def __init__(self, error: str, message: str, status_code: int = 400):
        super().__init__(message)
        self.error = error
        self.message = message
        self.status_code = status_code
