# auth_server/app/api/endpoints/two_factor.py
from typing import Any, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from loguru import logger

from app.api.dependencies import get_current_active_user, get_optional_active_user
from app.api.endpoints.auth import issue_session_token
from app.core import security
from app.core.config import settings
from app.core.limiter import limiter
from app.crud import crud_two_factor
from app.crud.crud_user import user as crud_user
from app.db.session import get_db
from app.models.user import User as UserModel
from app.schemas.two_factor import (
    BackupCodesResponse,
    MessageResponse,
    TwoFactorBackupCodeRequest,
    TwoFactorCodeRequest,
    TwoFactorDisableRequest,
    TwoFactorSetupResponse,
    TwoFactorStatus,
    TwoFactorVerifyRequest,
    TwoFactorVerifyResponse,
)
from app.services import audit_service

router = APIRouter()


async def _resolve_user(
    db: AsyncSession,
    current_user: Optional[UserModel],
    mfa_challenge_token: Optional[str],
) -> Tuple[UserModel, bool]:
    """
    Utilizador alvo da verificação: o da sessão bearer ou o do challenge token
    emitido no login. O bool indica se veio do challenge (login a completar).
    """
    if mfa_challenge_token:
        payload = security.decode_mfa_challenge_token(mfa_challenge_token)
        user = None
        if payload is not None:
            try:
                user = await crud_user.get(db, int(payload.get("sub")))
            except (TypeError, ValueError):
                user = None
        if user is None or not user.is_active:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or expired MFA challenge token",
            )
        return user, True
    if current_user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return current_user, False


@router.get("/status", response_model=TwoFactorStatus)
async def two_factor_status(
    db: AsyncSession = Depends(get_db),
    current_user: UserModel = Depends(get_current_active_user),
) -> Any:
    tf = await crud_two_factor.get_settings(db, user_id=current_user.id)
    if tf is None:
        return TwoFactorStatus(is_enabled=False)
    return TwoFactorStatus(
        is_enabled=tf.is_enabled,
        enabled_at=tf.enabled_at,
        last_verified_at=tf.last_verified_at,
        remaining_backup_codes=(
            await crud_two_factor.count_remaining_backup_codes(db, user_id=current_user.id)
            if tf.is_enabled else 0
        ),
    )


@router.post("/setup", response_model=TwoFactorSetupResponse)
async def setup_two_factor(
    db: AsyncSession = Depends(get_db),
    current_user: UserModel = Depends(get_current_active_user),
) -> Any:
    result = await crud_two_factor.setup(db, user=current_user)
    return TwoFactorSetupResponse(
        secret_key=result.secret_key,
        otp_uri=result.otp_uri,
        qr_code_base64=result.qr_code_base64,
        backup_codes=result.backup_codes,
    )


@router.post("/enable", response_model=MessageResponse)
async def enable_two_factor(
    body: TwoFactorCodeRequest,
    db: AsyncSession = Depends(get_db),
    current_user: UserModel = Depends(get_current_active_user),
) -> Any:
    await crud_two_factor.enable(db, user_id=current_user.id, code=body.code)
    audit_service.record("2fa_enabled", "User", current_user.id, "Two-factor authentication enabled")
    return MessageResponse(message="Two-factor authentication enabled successfully")


@router.post("/verify", response_model=TwoFactorVerifyResponse)
@limiter.limit(settings.RATE_LIMIT_TWO_FACTOR)
async def verify_two_factor(
    request: Request,
    body: TwoFactorVerifyRequest,
    db: AsyncSession = Depends(get_db),
    current_user: Optional[UserModel] = Depends(get_optional_active_user),
) -> Any:
    user, from_challenge = await _resolve_user(db, current_user, body.mfa_challenge_token)
    await crud_two_factor.verify(db, user_id=user.id, code=body.code)

    if from_challenge:
        logger.info(f"Login MFA completo para user ID {user.id}")
        session = await issue_session_token(db, user)
        return TwoFactorVerifyResponse(access_token=session.access_token, token_type=session.token_type)
    return TwoFactorVerifyResponse()


@router.post("/backup-code", response_model=TwoFactorVerifyResponse)
@limiter.limit(settings.RATE_LIMIT_TWO_FACTOR)
async def use_backup_code(
    request: Request,
    body: TwoFactorBackupCodeRequest,
    db: AsyncSession = Depends(get_db),
    current_user: Optional[UserModel] = Depends(get_optional_active_user),
) -> Any:
    user, from_challenge = await _resolve_user(db, current_user, body.mfa_challenge_token)
    remaining = await crud_two_factor.consume_backup_code(db, user_id=user.id, backup_code=body.backup_code)
    audit_service.record("2fa_backup_used", "User", user.id, "Backup code used for 2FA verification")

    if from_challenge:
        session = await issue_session_token(db, user)
        return TwoFactorVerifyResponse(
            remaining_backup_codes=remaining,
            access_token=session.access_token,
            token_type=session.token_type,
        )
    return TwoFactorVerifyResponse(remaining_backup_codes=remaining)


@router.post("/disable", response_model=MessageResponse)
async def disable_two_factor(
    body: TwoFactorDisableRequest,
    db: AsyncSession = Depends(get_db),
    current_user: UserModel = Depends(get_current_active_user),
) -> Any:
    await crud_two_factor.disable(db, user=current_user, password=body.password, code=body.code)
    audit_service.record("2fa_disabled", "User", current_user.id, "Two-factor authentication disabled")
    return MessageResponse(message="Two-factor authentication disabled")


@router.post("/regenerate-backup-codes", response_model=BackupCodesResponse)
async def regenerate_backup_codes(
    body: TwoFactorCodeRequest,
    db: AsyncSession = Depends(get_db),
    current_user: UserModel = Depends(get_current_active_user),
) -> Any:
    codes = await crud_two_factor.regenerate_backup_codes(db, user_id=current_user.id, code=body.code)
    audit_service.record("2fa_backup_regenerated", "User", current_user.id, "Backup codes regenerated")
    return BackupCodesResponse(backup_codes=codes)
