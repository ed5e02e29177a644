# auth_server/main.py
import sys

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from app.api.dependencies import api_key_scheme, bearer_scheme, get_api_key, oauth2_scheme
from app.api.endpoints import auth, mgmt, oauth, two_factor, users
from app.core.config import settings
from app.core.exceptions import OAuth2Error, RoleAssignmentException, TwoFactorException
from app.core.limiter import limiter
from app.db.session import dispose_engine
import app.models  # noqa: F401 - regista todas as tabelas em Base.metadata

# --- Logging (loguru) ---
logger.remove()
logger.add(sys.stderr, level=settings.LOG_LEVEL)

app = FastAPI(
    title="Access Auth Server",
    description="Servidor de autorização OAuth2 (Authorization Code + Refresh Token) com 2FA TOTP",
    version="1.0.0",
    openapi_components={
        "securitySchemes": {
            "OAuth2PasswordBearer": oauth2_scheme,
            "BearerAuth": bearer_scheme,
            "APIKeyHeader": api_key_scheme,
        }
    },
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

origins = [
    "http://localhost:5173",
    "http://localhost:3000",
    "http://localhost:8000",
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Tratamento de erros: corpo {"error", "error_description"} ---
@app.exception_handler(OAuth2Error)
async def oauth2_error_handler(request: Request, exc: OAuth2Error):
    headers = {"Cache-Control": "no-store", "Pragma": "no-cache"}
    if exc.status_code == 401:
        headers["WWW-Authenticate"] = "Basic" if exc.error == "invalid_client" else "Bearer"
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error, "error_description": exc.get_error_description()},
        headers=headers,
    )


@app.exception_handler(TwoFactorException)
async def two_factor_error_handler(request: Request, exc: TwoFactorException):
    content = {"error": exc.error, "error_description": exc.message}
    if exc.locked_until is not None:
        content["locked_until"] = exc.locked_until.isoformat()
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RoleAssignmentException)
async def role_assignment_error_handler(request: Request, exc: RoleAssignmentException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error, "error_description": exc.message},
    )


# --- Routers ---
api_prefix = "/api/v1"

app.include_router(auth.router, prefix=f"{api_prefix}/auth", tags=["Authentication"])
app.include_router(users.router, prefix=f"{api_prefix}/users", tags=["Users"])
app.include_router(
    mgmt.router,
    prefix=f"{api_prefix}/mgmt",
    tags=["Management"],
    dependencies=[Depends(get_api_key)],
)
app.include_router(oauth.router, prefix="/oauth", tags=["OAuth2"])
app.include_router(two_factor.router, prefix="/2fa", tags=["Two-Factor"])


@app.get("/.well-known/oauth-authorization-server")
async def authorization_server_metadata():
    """Metadados do servidor (subconjunto RFC 8414)."""
    issuer_url = settings.JWT_ISSUER.rstrip("/")
    return {
        "issuer": issuer_url,
        "authorization_endpoint": f"{issuer_url}/oauth/authorize",
        "token_endpoint": f"{issuer_url}/oauth/token",
        "userinfo_endpoint": f"{issuer_url}/oauth/userinfo",
        "revocation_endpoint": f"{issuer_url}/oauth/revoke",
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code", "refresh_token"],
        "token_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post", "none"],
        "revocation_endpoint_auth_methods_supported": ["none"],
        "scopes_supported": settings.OAUTH_CLIENT_DEFAULT_SCOPES.split(),
    }


# --- Evento de Shutdown e Rota Raiz ---
@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Shutting down: Disposing database engine...")
    await dispose_engine()


@app.get("/")
def read_root():
    return {"message": "Access Auth Server is running!"}
