"""
Authentication and verification for SecureAuth.

This package provides:
- TOTP two-factor authentication and backup codes (mfa)
- WebAuthn passkey ceremonies (passkeys)
- The sign-in verification state machine (flow)
- The authentication error hierarchy (errors)
"""
from .mfa import (
    generate_totp_secret,
    get_totp_provisioning_uri,
    validate_totp,
    verify_totp,
    generate_backup_codes,
    generate_qr_code_base64,
)

__all__ = [
    "generate_totp_secret",
    "get_totp_provisioning_uri",
    "validate_totp",
    "verify_totp",
    "generate_backup_codes",
    "generate_qr_code_base64",
]
