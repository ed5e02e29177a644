# auth_server/app/crud/crud_two_factor.py
from datetime import datetime, timedelta
from typing import List, NamedTuple, Optional

from sqlalchemy import case, delete, func, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from loguru import logger

from app.core import clock
from app.core.config import settings
from app.core.exceptions import TwoFactorException
from app.core.security import (
    generate_backup_codes,
    generate_otp_secret,
    generate_otp_uri,
    generate_qr_code_base64,
    hash_backup_code,
    verify_otp_code,
    verify_password,
)
from app.models.two_factor import TwoFactorBackupCode, TwoFactorSettings
from app.models.user import User
from app.services import audit_service


class TwoFactorSetup(NamedTuple):
    secret_key: str
    otp_uri: str
    qr_code_base64: str
    backup_codes: List[str]


# --- Erros ---
def _not_enabled() -> TwoFactorException:
    return TwoFactorException("not_enabled", "Two-factor authentication is not enabled")


def _invalid_code() -> TwoFactorException:
    return TwoFactorException("invalid_code", "Invalid verification code")


def _locked_out(until: Optional[datetime]) -> TwoFactorException:
    return TwoFactorException(
        "locked_out",
        "Too many failed attempts. Try again later.",
        status_code=429,
        locked_until=until,
    )


# --- Leitura ---
async def get_settings(db: AsyncSession, *, user_id: int) -> Optional[TwoFactorSettings]:
    result = await db.execute(
        select(TwoFactorSettings)
        .where(TwoFactorSettings.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def is_enabled(db: AsyncSession, *, user_id: int) -> bool:
    tf = await get_settings(db, user_id=user_id)
    return bool(tf and tf.is_enabled)


async def count_remaining_backup_codes(db: AsyncSession, *, user_id: int) -> int:
    result = await db.execute(
        select(func.count(TwoFactorBackupCode.id)).where(
            TwoFactorBackupCode.user_id == user_id,
            TwoFactorBackupCode.is_used.is_(False),
        )
    )
    return result.scalar_one()


async def _replace_backup_codes(db: AsyncSession, *, user_id: int) -> List[str]:
    """Apaga os códigos antigos e guarda os HMAC dos novos. Não faz commit."""
    await db.execute(delete(TwoFactorBackupCode).where(TwoFactorBackupCode.user_id == user_id))
    plain_codes = generate_backup_codes()
    db.add_all(
        TwoFactorBackupCode(user_id=user_id, code_hash=hash_backup_code(code), is_used=False)
        for code in plain_codes
    )
    return plain_codes


def _is_locked(tf: TwoFactorSettings, now: datetime) -> bool:
    return tf.lockout_until is not None and tf.lockout_until > now


# --- Setup / Enable ---
async def setup(db: AsyncSession, *, user: User) -> TwoFactorSetup:
    """
    Gera um novo segredo e códigos de recuperação. Substitui qualquer
    configuração ainda não ativada; falha se o 2FA já estiver ativo.
    """
    tf = await get_settings(db, user_id=user.id)
    if tf and tf.is_enabled:
        raise TwoFactorException(
            "already_enabled", "Two-factor authentication is already enabled. Disable it first."
        )

    secret = generate_otp_secret()
    if tf is None:
        tf = TwoFactorSettings(user_id=user.id)
        db.add(tf)
    tf.secret_key = secret
    tf.is_enabled = False
    tf.failed_attempts = 0
    tf.lockout_until = None
    tf.enabled_at = None

    try:
        backup_codes = await _replace_backup_codes(db, user_id=user.id)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    otp_uri = generate_otp_uri(secret, user.email, settings.TOTP_ISSUER_NAME)
    logger.info(f"Setup de 2FA iniciado para user ID {user.id}")
    return TwoFactorSetup(
        secret_key=secret,
        otp_uri=otp_uri,
        qr_code_base64=generate_qr_code_base64(otp_uri),
        backup_codes=backup_codes,
    )


async def enable(db: AsyncSession, *, user_id: int, code: str) -> TwoFactorSettings:
    """Ativa o 2FA; só um código TOTP válido muda is_enabled para True."""
    tf = await get_settings(db, user_id=user_id)
    if tf is None or not tf.secret_key:
        raise TwoFactorException("setup_required", "Please set up 2FA first")
    if tf.is_enabled:
        raise TwoFactorException("already_enabled", "Two-factor authentication is already enabled")
    if not verify_otp_code(tf.secret_key, code):
        logger.warning(f"Código inválido ao ativar 2FA para user ID {user_id}")
        raise _invalid_code()

    now = clock.utcnow()
    tf.is_enabled = True
    tf.enabled_at = now
    tf.last_verified_at = now
    tf.failed_attempts = 0
    tf.lockout_until = None
    await db.commit()
    await db.refresh(tf)
    logger.info(f"2FA ativado para user ID {user_id}")
    return tf


# --- Verify (com lockout) ---
async def _record_failure(db: AsyncSession, *, user_id: int, now: datetime) -> Optional[datetime]:
    """
    Incrementa failed_attempts num único UPDATE. Ao atingir o limite grava
    lockout_until e volta o contador a 0. Devolve lockout_until se bloqueou.
    """
    reached = TwoFactorSettings.failed_attempts + 1 >= settings.TWO_FACTOR_MAX_FAILED_ATTEMPTS
    lock_until = now + timedelta(minutes=settings.TWO_FACTOR_LOCKOUT_MINUTES)
    await db.execute(
        update(TwoFactorSettings)
        .where(
            TwoFactorSettings.user_id == user_id,
            or_(
                TwoFactorSettings.lockout_until.is_(None),
                TwoFactorSettings.lockout_until <= now,
            ),
        )
        .values(
            failed_attempts=case((reached, 0), else_=TwoFactorSettings.failed_attempts + 1),
            lockout_until=case((reached, lock_until), else_=None),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    result = await db.execute(
        select(TwoFactorSettings.lockout_until).where(TwoFactorSettings.user_id == user_id)
    )
    locked = result.scalar_one_or_none()
    return locked if locked is not None and locked > now else None


async def verify(db: AsyncSession, *, user_id: int, code: str) -> TwoFactorSettings:
    """
    Verifica um código TOTP. Durante o lockout falha logo, sem gastar tentativa.
    Cada falha conta para o limite; um sucesso repõe o contador e limpa o lockout.
    """
    tf = await get_settings(db, user_id=user_id)
    if tf is None or not tf.is_enabled or not tf.secret_key:
        raise _not_enabled()

    now = clock.utcnow()
    if _is_locked(tf, now):
        raise _locked_out(tf.lockout_until)

    if not verify_otp_code(tf.secret_key, code):
        locked_until = await _record_failure(db, user_id=user_id, now=now)
        if locked_until:
            logger.warning(f"2FA BLOQUEADO: user ID {user_id} até {locked_until}")
            audit_service.record(
                "2fa_locked_out", "User", user_id, "Two-factor verification locked after failed attempts"
            )
        else:
            logger.warning(f"Código 2FA inválido para user ID {user_id}")
        raise _invalid_code()

    await db.execute(
        update(TwoFactorSettings)
        .where(TwoFactorSettings.user_id == user_id)
        .values(failed_attempts=0, lockout_until=None, last_verified_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(tf)
    return tf


# --- Backup codes ---
async def consume_backup_code(db: AsyncSession, *, user_id: int, backup_code: str) -> int:
    """
    Usa um código de recuperação (uso único, UPDATE condicional).
    Não conta para o lockout. Devolve o número de códigos restantes.
    """
    tf = await get_settings(db, user_id=user_id)
    if tf is None or not tf.is_enabled or not backup_code:
        raise _invalid_code()

    now = clock.utcnow()
    result = await db.execute(
        update(TwoFactorBackupCode)
        .where(
            TwoFactorBackupCode.user_id == user_id,
            TwoFactorBackupCode.code_hash == hash_backup_code(backup_code),
            TwoFactorBackupCode.is_used.is_(False),
        )
        .values(is_used=True, used_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        logger.warning(f"Código de recuperação inválido para user ID {user_id}")
        raise TwoFactorException("invalid_code", "Invalid backup code")

    await db.execute(
        update(TwoFactorSettings)
        .where(TwoFactorSettings.user_id == user_id)
        .values(last_verified_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return await count_remaining_backup_codes(db, user_id=user_id)


async def _check_current_code(db: AsyncSession, tf: Optional[TwoFactorSettings], code: str) -> TwoFactorSettings:
    if tf is None or not tf.is_enabled or not tf.secret_key:
        raise _not_enabled()
    if _is_locked(tf, clock.utcnow()):
        raise _locked_out(tf.lockout_until)
    if not verify_otp_code(tf.secret_key, code):
        raise _invalid_code()
    return tf


async def regenerate_backup_codes(db: AsyncSession, *, user_id: int, code: str) -> List[str]:
    """Substitui o conjunto de códigos de recuperação; exige um código TOTP atual."""
    tf = await _check_current_code(db, await get_settings(db, user_id=user_id), code)
    try:
        plain_codes = await _replace_backup_codes(db, user_id=user_id)
        tf.last_verified_at = clock.utcnow()
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.info(f"Códigos de recuperação regenerados para user ID {user_id}")
    return plain_codes


async def disable(db: AsyncSession, *, user: User, password: str, code: str) -> None:
    """Desativa o 2FA: exige a senha da conta e um código TOTP atual."""
    if not user.hashed_password or not verify_password(password, user.hashed_password):
        logger.warning(f"Senha inválida ao desativar 2FA para user ID {user.id}")
        raise TwoFactorException("invalid_password", "Invalid password")

    tf = await _check_current_code(db, await get_settings(db, user_id=user.id), code)
    try:
        tf.is_enabled = False
        tf.secret_key = None
        tf.enabled_at = None
        tf.failed_attempts = 0
        tf.lockout_until = None
        await db.execute(delete(TwoFactorBackupCode).where(TwoFactorBackupCode.user_id == user.id))
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.info(f"2FA desativado para user ID {user.id}")
