"""
Typed records for the authentication tables.

Rows come back from SQLAlchemy text queries as tuples; these models give
them names and types. Timestamps are parsed by pydantic, which also covers
SQLite returning them as strings.
"""
from datetime import datetime
from typing import Optional, List

from pydantic import BaseModel, Field


class Account(BaseModel):
    """Identity provider record. Never returned to clients."""
    user_id: str
    email: str
    password_hash: str
    is_active: bool = True
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None


class Profile(BaseModel):
    """Public profile row, created alongside the account at signup."""
    id: str
    email: str
    full_name: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TwoFactorSecret(BaseModel):
    """
    TOTP enrollment for one account.

    At most one row exists per account. `backup_codes` holds bcrypt hashes,
    never the plain codes.
    """
    id: str
    user_id: str
    secret: str
    enabled: bool = True
    backup_codes: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PasskeyCredential(BaseModel):
    """
    A registered WebAuthn credential.

    `credential_id` and `public_key` are standard base64; the public key is
    the COSE-encoded key returned by the registration ceremony.
    """
    id: str
    user_id: str
    credential_id: str
    public_key: str
    counter: int = 0
    device_name: Optional[str] = None
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None


class AccountSession(BaseModel):
    """
    An authenticated account session.

    Created when a verification flow completes and cleared at sign-out.
    Handlers receive it explicitly through a dependency.
    """
    account_id: str
    email: str
    token: str
    expires_at: Optional[datetime] = None
