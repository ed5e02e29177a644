# auth_server/app/core/config.py
import logging
from pydantic_settings import BaseSettings
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent.parent
ENV_FILE_PATH = BASE_DIR / ".env"

class Settings(BaseSettings):

    # Core
    DATABASE_URL: str
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    BCRYPT_ROUNDS: int = 12
    LOG_LEVEL: str = "INFO"

    # Token de sessão primário (emitido por esta API)
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    JWT_ISSUER: str = "http://localhost:8001"
    JWT_AUDIENCE: str = "access-api"

    # OAuth2 (Authorization Code + Refresh Token)
    OAUTH_AUTHORIZATION_CODE_EXPIRE_MINUTES: int = 5
    OAUTH_ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    OAUTH_REFRESH_TOKEN_EXPIRE_DAYS: int = 30
    OAUTH_DEFAULT_SCOPE: str = "openid profile email"
    OAUTH_CLIENT_DEFAULT_SCOPES: str = "openid profile email roles"

    # 2FA / TOTP
    TOTP_ISSUER_NAME: str = "Access Auth"
    TWO_FACTOR_MAX_FAILED_ATTEMPTS: int = 5
    TWO_FACTOR_LOCKOUT_MINUTES: int = 15
    TWO_FACTOR_BACKUP_CODE_COUNT: int = 10
    MFA_CHALLENGE_EXPIRE_MINUTES: int = 5

    # Chave de API Interna (/mgmt)
    INTERNAL_API_KEY: str

    # Rate limiting (slowapi)
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_DEFAULT: str = "60/minute"
    RATE_LIMIT_TWO_FACTOR: str = "10/minute"

    class Config:
        case_sensitive = True
        env_file = ENV_FILE_PATH
        env_file_encoding = 'utf-8'

try:
    settings = Settings()

    if not settings.JWT_ISSUER.startswith("http"):
        logging.warning(
            f"JWT_ISSUER ('{settings.JWT_ISSUER}') não parece ser uma URL válida. "
            f"Os metadados do servidor OAuth usam este valor como base (ex: http://localhost:8001)"
        )

except Exception as e:
    logging.error(f"FATAL: Erro ao carregar 'settings' a partir do .env em {ENV_FILE_PATH}: {e}")
    raise e
