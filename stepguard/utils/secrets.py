"""
Secrets management utilities for StepGuard.

Supports multiple secret sources:
1. {NAME}_FILE environment variable pointing at a file (Docker/K8s secrets)
2. {NAME} environment variable (development)
3. /run/secrets/{name} default Docker secrets path

Usage:
    from stepguard.utils.secrets import get_secret

    signing_key = get_secret("TICKET_SIGNING_KEY")
"""
import os
import logging
from typing import Optional
from functools import lru_cache

logger = logging.getLogger(__name__)


def _read_secret_file(path: str, name: str) -> Optional[str]:
    try:
        with open(path, 'r') as f:
            secret = f.read().strip()
            logger.debug(f"Loaded secret {name} from {path}")
            return secret
    except OSError as e:
        logger.warning(f"Failed to read secret file {path}: {e}")
        return None


@lru_cache(maxsize=32)
def get_secret(name: str, default: Optional[str] = None) -> Optional[str]:
    """
    Get a secret value from the first source that has it.

    Args:
        name: Secret name (e.g., "TICKET_SIGNING_KEY")
        default: Default value if secret not found

    Returns:
        Secret value or default
    """
    file_path = os.environ.get(f"{name}_FILE")
    if file_path and os.path.isfile(file_path):
        secret = _read_secret_file(file_path, name)
        if secret:
            return secret

    env_value = os.environ.get(name)
    if env_value:
        logger.debug(f"Loaded secret {name} from environment")
        return env_value

    docker_secret_path = f"/run/secrets/{name.lower()}"
    if os.path.isfile(docker_secret_path):
        secret = _read_secret_file(docker_secret_path, name)
        if secret:
            return secret

    if default is None:
        logger.debug(f"Secret {name} not found, no default provided")
    return default


def get_smtp_password() -> Optional[str]:
    """Get the SMTP relay password (optional for unauthenticated relays)."""
    return get_secret("SMTP_PASS", default="")
