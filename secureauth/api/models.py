"""
Pydantic Models for SecureAuth API.

Request and response models for all API endpoints.
"""
from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, EmailStr, Field, ConfigDict, field_validator

from ..database.auth_db import PASSWORD_MAX_BYTES


# ============================================
# Authentication Models
# ============================================

class UserSignup(BaseModel):
    """
    Account signup request.

    Password must be at least 8 characters and at most 72 bytes once
    UTF-8 encoded (the bcrypt input limit).
    """
    email: EmailStr = Field(..., description="Valid email address")
    password: str = Field(..., min_length=8, description="Password (8 characters to 72 bytes)")
    full_name: Optional[str] = Field(None, max_length=255, description="Display name")

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        if len(value.encode("utf-8")) > PASSWORD_MAX_BYTES:
            raise ValueError(f"Password must be at most {PASSWORD_MAX_BYTES} bytes")
        return value

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "email": "ada@example.com",
                "password": "securepassword123",
                "full_name": "Ada Lovelace"
            }
        }
    )


class UserLogin(BaseModel):
    """Password step of the sign-in flow."""
    email: EmailStr = Field(..., description="Registered email address")
    password: str = Field(..., description="Account password")


class TokenResponse(BaseModel):
    """Authentication token response."""
    access_token: str
    token_type: str = "bearer"
    expires_in: int = Field(..., description="Token expiration in seconds")
    user_id: str
    email: str
    backup_codes: Optional[List[str]] = Field(
        None, description="One-time backup codes, only returned when 2FA setup completes"
    )


class FlowResponse(BaseModel):
    """
    Where a sign-in flow stands.

    Pass `flow_token` back in the X-Flow-Token header on the next step.
    `methods` is filled at method choice; `options` carries WebAuthn
    request options once passkey is chosen. `session` is set once the
    flow reaches authenticated; the flow token is then no longer valid.
    """
    flow_token: str
    state: str
    methods: List[str] = Field(default_factory=list)
    options: Optional[Dict[str, Any]] = None
    session: Optional[TokenResponse] = None


class MethodChoiceRequest(BaseModel):
    method: str = Field(..., pattern="^(code|passkey)$")


class CodeVerifyRequest(BaseModel):
    """
    Second-factor code.

    Provide either totp_code (6 digits from the authenticator app) or a
    one-time backup_code (format: XXXX-XXXX).
    """
    totp_code: Optional[str] = Field(None, max_length=16)
    backup_code: Optional[str] = Field(None, max_length=16)


class SetupResponse(BaseModel):
    """TOTP enrollment details with QR code."""
    flow_token: str
    state: str
    secret: str
    qr_code_base64: str
    provisioning_uri: str


class SetupConfirmRequest(BaseModel):
    totp_code: str = Field(..., min_length=6, max_length=6)


class CeremonyResult(BaseModel):
    """
    Browser result of a WebAuthn ceremony.

    On success `credential` holds the PublicKeyCredential JSON. When the
    browser call throws, send its DOMException name in `error` instead
    (e.g. "NotAllowedError").
    """
    credential: Optional[Dict[str, Any]] = None
    error: Optional[str] = Field(None, max_length=64)


class PasskeyOptionsRequest(BaseModel):
    device_name: str = Field(..., min_length=1, max_length=100)


# ============================================
# Dashboard Models
# ============================================

class ProfileResponse(BaseModel):
    """Account summary shown on the dashboard."""
    user_id: str
    email: str
    full_name: Optional[str]
    two_factor_enabled: bool
    created_at: Optional[datetime]


class PasskeyInfo(BaseModel):
    """Public info about a registered passkey."""
    id: str
    device_name: Optional[str]
    created_at: Optional[datetime]
    last_used_at: Optional[datetime]


class SettingsResponse(BaseModel):
    email: str
    two_factor_enabled: bool
    passkeys: List[PasskeyInfo]


class TwoFactorToggleRequest(BaseModel):
    enabled: bool


# ============================================
# Health Models
# ============================================

class HealthStatus(BaseModel):
    """System health status."""
    status: str = Field(..., description="Overall status: healthy, degraded, unhealthy")
    version: str
    services: Dict[str, str]
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Error response shown to the user as a notification."""
    error: str
    detail: Optional[str] = None
    code: Optional[str] = None
