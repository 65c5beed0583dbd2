"""
SecureAuth - account authentication service.

Password signup and login, TOTP two-factor authentication and WebAuthn
passkeys, served as a FastAPI application backed by a SQL database.
"""

__version__ = "0.1.0"
__author__ = "SecureAuth Team"
