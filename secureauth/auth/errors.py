"""
Authentication error hierarchy.

Every failure a user can hit while signing in or managing credentials is an
AuthFlowError. The API renders them as short notifications; none of them end
the flow, the user retries from the current step.

Usage:
    from secureauth.auth.errors import InvalidCode

    if not verify_totp(secret, code):
        raise InvalidCode()
"""
from typing import Optional


class AuthFlowError(Exception):
    """Base class for recoverable authentication errors."""

    code = "AUTH_ERROR"
    status_code = 400
    default_message = "Authentication failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidCredentials(AuthFlowError):
    code = "INVALID_CREDENTIALS"
    status_code = 401
    default_message = "Invalid email or password"


class InvalidCode(AuthFlowError):
    code = "INVALID_CODE"
    status_code = 400
    default_message = "Invalid code. Please try again."


class Cancelled(AuthFlowError):
    """The user aborted a passkey ceremony."""

    code = "CANCELLED"
    status_code = 400
    default_message = "Passkey ceremony was cancelled"


class Unsupported(AuthFlowError):
    """The browser or device cannot run WebAuthn ceremonies."""

    code = "UNSUPPORTED"
    status_code = 400
    default_message = "Passkeys are not supported on this device"


class NoPasskeys(AuthFlowError):
    code = "NO_PASSKEYS"
    status_code = 404
    default_message = "No passkeys found. Please use 2FA code."


class StoreError(AuthFlowError):
    """A credential store call failed; the message carries the cause."""

    code = "STORE_ERROR"
    status_code = 502
    default_message = "Credential store request failed"


class InvalidAssertion(AuthFlowError):
    """A passkey response did not verify against the stored credential."""

    code = "INVALID_ASSERTION"
    status_code = 401
    default_message = "Passkey verification failed"


class InvalidFlowState(AuthFlowError):
    code = "INVALID_FLOW_STATE"
    status_code = 409
    default_message = "This step is not available right now"


class FlowExpired(AuthFlowError):
    code = "FLOW_EXPIRED"
    status_code = 401
    default_message = "Sign-in session expired. Please log in again."


class AccountLocked(AuthFlowError):
    code = "ACCOUNT_LOCKED"
    status_code = 429
    default_message = "Account locked due to too many failed attempts"

    def __init__(self, message: Optional[str] = None, retry_after: int = 900):
        self.retry_after = retry_after
        super().__init__(message)
