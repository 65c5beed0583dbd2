"""
Secrets management utilities for SecureAuth.

Supports multiple secret sources:
1. {NAME}_FILE environment variable (Docker secrets, mounted files)
2. {NAME} environment variable (development)
3. /run/secrets/{name} (Docker secrets default path)

Usage:
    from secureauth.utils.secrets import get_secret

    db_password = get_secret("POSTGRES_PASSWORD", "")
"""
import os
import logging
from typing import Optional
from functools import lru_cache

logger = logging.getLogger(__name__)

DOCKER_SECRETS_DIR = "/run/secrets"


def _read_secret_file(path: str) -> Optional[str]:
    try:
        with open(path, 'r') as f:
            return f.read().strip()
    except OSError as e:
        logger.warning(f"Failed to read secret file {path}: {e}")
        return None


@lru_cache(maxsize=32)
def get_secret(name: str, default: Optional[str] = None) -> Optional[str]:
    """
    Get a secret value from the first source that has it.

    Args:
        name: Secret name (e.g., "POSTGRES_PASSWORD")
        default: Value returned when no source defines the secret

    Returns:
        Secret value or default
    """
    file_path = os.environ.get(f"{name}_FILE")
    if file_path and os.path.isfile(file_path):
        secret = _read_secret_file(file_path)
        if secret is not None:
            logger.debug(f"Loaded secret {name} from file")
            return secret

    env_value = os.environ.get(name)
    if env_value:
        return env_value

    docker_path = os.path.join(DOCKER_SECRETS_DIR, name.lower())
    if os.path.isfile(docker_path):
        secret = _read_secret_file(docker_path)
        if secret is not None:
            logger.debug(f"Loaded secret {name} from Docker secrets")
            return secret

    return default


def mask_secret(secret: Optional[str], visible_chars: int = 4) -> str:
    """
    Mask a secret for safe logging, e.g. "JBSW...XPK3".
    """
    if not secret or len(secret) <= visible_chars * 2:
        return "***"
    return f"{secret[:visible_chars]}...{secret[-visible_chars:]}"
