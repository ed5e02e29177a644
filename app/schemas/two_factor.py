# auth_server/app/schemas/two_factor.py
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class TwoFactorSetupResponse(BaseModel):
    secret_key: str
    otp_uri: str
    qr_code_base64: str
    backup_codes: List[str]


class TwoFactorCodeRequest(BaseModel):
    code: str


class TwoFactorVerifyRequest(BaseModel):
    code: str
    # Obtido em /api/v1/auth/token quando a conta tem 2FA; sem ele é preciso um bearer de sessão
    mfa_challenge_token: Optional[str] = None


class TwoFactorBackupCodeRequest(BaseModel):
    backup_code: str
    mfa_challenge_token: Optional[str] = None


class TwoFactorDisableRequest(BaseModel):
    password: str
    code: str


class TwoFactorVerifyResponse(BaseModel):
    verified: bool = True
    remaining_backup_codes: Optional[int] = None
    # Só presente quando a verificação completa um login (challenge token)
    access_token: Optional[str] = None
    token_type: Optional[str] = None


class TwoFactorStatus(BaseModel):
    is_enabled: bool
    enabled_at: Optional[datetime] = None
    last_verified_at: Optional[datetime] = None
    remaining_backup_codes: int = 0


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]


class MessageResponse(BaseModel):
    message: str
