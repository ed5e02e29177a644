import base64
import hashlib
import hmac
import io
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pyotp  # type: ignore
import qrcode  # type: ignore
from authlib.common.security import generate_token
from jose import jwt, JWTError  # type: ignore
from loguru import logger
from passlib.context import CryptContext  # type: ignore

from .config import settings
from app.core import clock
from app.models.user import User as UserModel

pwd_context = CryptContext(
    schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.BCRYPT_ROUNDS
)


# --- VERIFICAÇÃO E HASH ---
def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        # Limita o tamanho da senha ANTES de passar para o bcrypt (evita erros > 72 bytes)
        password_bytes = plain_password.encode("utf-8")[:72]
        return pwd_context.verify(password_bytes, hashed_password)
    except (ValueError, TypeError):
        return False


def get_password_hash(password: str) -> str:
    password_bytes = password.encode("utf-8")[:72]
    return pwd_context.hash(password_bytes)


def dummy_verify_password() -> None:
    """Gasta o mesmo tempo de um verify quando não há hash (email desconhecido)."""
    pwd_context.dummy_verify()


# --- Client secrets (mesmo contexto bcrypt das senhas) ---
def generate_client_id() -> str:
    return f"ta_{generate_token(21)}"


def generate_client_secret() -> str:
    return secrets.token_urlsafe(32)


def hash_client_secret(secret: str) -> str:
    return pwd_context.hash(secret)


def verify_client_secret(plain_secret: str, hashed_secret: Optional[str]) -> bool:
    # pwd_context.verify compara em tempo constante
    if not plain_secret or not hashed_secret:
        return False
    try:
        return pwd_context.verify(plain_secret, hashed_secret)
    except (ValueError, TypeError):
        return False


# --- Credenciais opacas (codes / refresh tokens) ---
def generate_opaque_token() -> str:
    """Valor aleatório de 256 bits, url-safe."""
    return secrets.token_urlsafe(32)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# --- Token de sessão primário (JWT) ---
def create_access_token(
    user: UserModel,
    *,
    epoch: int = 0,
    client_id: Optional[str] = None,
    scope: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Emite o bearer token JWT. Sem client_id é um token de sessão desta API
    (aud=JWT_AUDIENCE); com client_id é o valor de um access token OAuth
    (aud=client_id), que só é válido através da tabela oauth_access_tokens.
    """
    now = clock.now()
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode: Dict[str, Any] = {
        "iss": settings.JWT_ISSUER,
        "aud": client_id or settings.JWT_AUDIENCE,
        "iat": now,
        "nbf": now,
        "exp": now + expires_delta,
        "sub": str(user.id),
        "jti": generate_token(24),
        "token_type": "access",
        "epoch": epoch,
        "email": user.email,
        **({"name": user.full_name} if user.full_name else {}),
    }
    if client_id:
        to_encode["client_id"] = client_id
        to_encode["scope"] = scope or ""
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> Dict | None:
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
            options={"verify_iss": True, "verify_aud": True},
        )
        if payload.get("token_type") != "access":
            return None
        return payload
    except JWTError as e:
        logger.warning(f"Falha ao decodificar Access Token: {e}")
        return None


# --- Challenge token MFA (login em dois passos) ---
MFA_CHALLENGE_SECRET_KEY = settings.SECRET_KEY + "-mfa-challenge"


def create_mfa_challenge_token(user_id: int) -> str:
    expire = clock.now() + timedelta(minutes=settings.MFA_CHALLENGE_EXPIRE_MINUTES)
    to_encode = {
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "exp": expire,
        "sub": str(user_id),
        "token_type": "mfa_challenge",
    }
    return jwt.encode(to_encode, MFA_CHALLENGE_SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_mfa_challenge_token(token: str) -> Dict | None:
    try:
        payload = jwt.decode(
            token,
            MFA_CHALLENGE_SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
            options={"verify_iss": True, "verify_aud": True},
        )
        if payload.get("token_type") != "mfa_challenge":
            logger.warning("Tentativa de usar token com tipo incorreto como challenge token MFA.")
            return None
        return payload
    except JWTError as e:
        logger.warning(f"Erro ao decodificar challenge token MFA: {e}")
        return None


# --- TOTP ---
TOTP_DIGITS = 6
TOTP_INTERVAL = 30


def generate_otp_secret() -> str:
    """Gera um novo segredo OTP seguro (base32, 160 bits)."""
    return pyotp.random_base32(length=32)


def generate_otp_uri(secret: str, email: str, issuer_name: str) -> str:
    """
    Gera uma URI 'otpauth://' que pode ser usada por apps autenticadores.
    """
    safe_issuer_name = issuer_name.replace(":", "")
    return pyotp.totp.TOTP(
        secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL
    ).provisioning_uri(name=email, issuer_name=safe_issuer_name)


def generate_otp_code(secret: str, for_time: Optional[datetime] = None) -> str:
    return pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL).at(
        for_time or clock.now()
    )


def verify_otp_code(secret: Optional[str], code: Optional[str]) -> bool:
    """
    Verifica se um código OTP é válido para o segredo fornecido.
    Aceita o passo atual e um passo de cada lado (dessincronização do relógio).
    """
    if not secret or not code:
        return False
    code = code.strip().replace(" ", "")
    if len(code) != TOTP_DIGITS or not code.isdigit():
        return False
    totp = pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL)
    # for_time tem de ser aware: o pyotp trata datetimes naive como hora local
    return totp.verify(code, for_time=clock.now(), valid_window=1)


def generate_qr_code_base64(otp_uri: str) -> str:
    """Gera um QR Code a partir da URI OTP e retorna como imagem base64."""
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(otp_uri)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffered = io.BytesIO()
    img.save(buffered, format="PNG")
    img_str = base64.b64encode(buffered.getvalue()).decode("utf-8")
    return f"data:image/png;base64,{img_str}"


# --- Backup codes ---
BACKUP_CODE_HALF_BYTES = 3


def generate_backup_codes(count: Optional[int] = None) -> List[str]:
    """Gera códigos de recuperação legíveis no formato 'abc123-def456'."""
    count = count or settings.TWO_FACTOR_BACKUP_CODE_COUNT
    codes = set()
    while len(codes) < count:
        codes.add(
            f"{secrets.token_hex(BACKUP_CODE_HALF_BYTES)}-{secrets.token_hex(BACKUP_CODE_HALF_BYTES)}"
        )
    return list(codes)


def normalize_backup_code(code: str) -> str:
    return code.strip().lower()


def hash_backup_code(code: str) -> str:
    # HMAC com SECRET_KEY: o espaço de códigos é pequeno demais para um hash sem chave
    return hmac.new(
        settings.SECRET_KEY.encode("utf-8"),
        normalize_backup_code(code).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
