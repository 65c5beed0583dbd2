"""
SecureAuth REST API.

FastAPI application serving the sign-in flow and the account dashboard.
"""
from .main import app, create_app

__all__ = ["app", "create_app"]
