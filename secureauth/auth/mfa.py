"""
TOTP and backup codes for SecureAuth.

Codes follow RFC 6238 as authenticator apps expect them: SHA1, a 30 second
period and 6 digits. Backup codes are a one-time fallback for users who
lose their authenticator; only bcrypt hashes of them are stored.
"""
import base64
import io
import secrets
import time
from datetime import datetime
from typing import Optional, List, Union

import bcrypt
import pyotp
import qrcode
from pyotp.utils import strings_equal

TOTP_DIGITS = 6
TOTP_PERIOD = 30
DEFAULT_ISSUER = "SecureAuth"

BACKUP_CODE_COUNT = 8
BACKUP_CODE_ROUNDS = 10


def _totp(secret: str) -> pyotp.TOTP:
    return pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_PERIOD)


def generate_totp_secret() -> str:
    """New 160-bit secret, base32 encoded (32 characters)."""
    return pyotp.random_base32()


def get_totp_provisioning_uri(
    secret: str,
    email: str,
    issuer: str = DEFAULT_ISSUER
) -> str:
    """
    otpauth:// URI that authenticator apps import.

    Args:
        secret: Base32 TOTP secret.
        email: Account label shown in the app.
        issuer: Service name shown in the app.
    """
    return _totp(secret).provisioning_uri(name=email, issuer_name=issuer)


def generate_qr_code(uri: str) -> bytes:
    """Render a provisioning URI as a PNG QR code."""
    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_M, box_size=8, border=4)
    qr.add_data(uri)
    qr.make(fit=True)

    buffer = io.BytesIO()
    qr.make_image(fill_color="black", back_color="white").save(buffer, format="PNG")
    return buffer.getvalue()


def generate_qr_code_base64(uri: str) -> str:
    """QR code as a data: URI, ready for an <img> src."""
    encoded = base64.b64encode(generate_qr_code(uri)).decode("ascii")
    return f"data:image/png;base64,{encoded}"


def normalize_code(code: Optional[str]) -> Optional[str]:
    """Strip whitespace from a submitted code; None if it is not 6 digits."""
    if not code:
        return None
    cleaned = "".join(code.split())
    if len(cleaned) != TOTP_DIGITS or not cleaned.isdigit():
        return None
    return cleaned


def validate_totp(
    secret: str,
    code: str,
    window: int = 1,
    for_time: Optional[Union[int, datetime]] = None,
) -> Optional[int]:
    """
    Check a code against the periods around `for_time`.

    With the default window, codes from the previous, current and next
    period are accepted.

    Args:
        secret: Base32 TOTP secret.
        code: Code as typed by the user; spaces are ignored.
        window: Adjacent periods accepted on each side.
        for_time: Unix timestamp or datetime to validate at (default now).

    Returns:
        Period offset of the match (-window..window), or None.
    """
    code = normalize_code(code)
    if not secret or code is None:
        return None

    at = int(time.time()) if for_time is None else for_time
    totp = _totp(secret)
    for offset in range(-window, window + 1):
        if strings_equal(code, totp.at(at, counter_offset=offset)):
            return offset
    return None


def verify_totp(secret: str, code: str, window: int = 1) -> bool:
    return validate_totp(secret, code, window=window) is not None


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> List[str]:
    """
    One-time recovery codes, shown to the user once at setup.

    Returns:
        Codes in XXXX-XXXX form (uppercase hex).
    """
    codes = []
    for _ in range(count):
        raw = secrets.token_hex(4).upper()
        codes.append(f"{raw[:4]}-{raw[4:]}")
    return codes


def _canonical_backup_code(code: str) -> bytes:
    # Users may type codes without the dash or in lowercase
    return code.replace("-", "").replace(" ", "").upper().encode("utf-8")


def hash_backup_code(code: str) -> str:
    hashed = bcrypt.hashpw(_canonical_backup_code(code), bcrypt.gensalt(rounds=BACKUP_CODE_ROUNDS))
    return hashed.decode("utf-8")


def hash_backup_codes(codes: List[str]) -> List[str]:
    return [hash_backup_code(code) for code in codes]


def verify_backup_code(code: str, hashed_code: str) -> bool:
    """Compare a submitted backup code with one stored hash."""
    try:
        return bcrypt.checkpw(_canonical_backup_code(code), hashed_code.encode("utf-8"))
    except ValueError:
        # Malformed hash
        return False


def find_matching_backup_code(code: str, hashed_codes: List[str]) -> Optional[int]:
    """
    Position of the stored hash that matches `code`.

    The caller removes that position so the code cannot be reused.
    """
    if not code:
        return None
    return next(
        (index for index, hashed in enumerate(hashed_codes) if verify_backup_code(code, hashed)),
        None,
    )
