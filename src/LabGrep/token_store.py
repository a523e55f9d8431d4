"""Per-instance GitLab access tokens in the OS keychain.

Each GitLab host gets its own keychain entry, so switching ``GITLAB_ENDPOINT``
between gitlab.com and a self-hosted instance picks up the matching token.
"""

from __future__ import annotations

import logging
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

SERVICE_NAME = "LabGrep"
DEFAULT_ACCOUNT = "gitlab_token"

try:
    import keyring

    _AVAILABLE = True
except Exception:
    _AVAILABLE = False
    logger.warning("keyring not available; GitLab token will not be remembered")


def is_available() -> bool:
    return _AVAILABLE


def account_for(endpoint: str = "") -> str:
    """Keychain account name for the GitLab instance serving *endpoint*."""
    host = urlparse(endpoint).netloc if endpoint else ""
    return f"{DEFAULT_ACCOUNT}@{host}" if host else DEFAULT_ACCOUNT


def load_token(endpoint: str = "") -> str | None:
    """Return the token saved for *endpoint*, or None when there is none."""
    if not _AVAILABLE:
        return None
    account = account_for(endpoint)
    try:
        return keyring.get_password(SERVICE_NAME, account)
    except Exception as exc:
        logger.debug("could not read %s from keychain: %s", account, exc)
        return None


def save_token(token: str, endpoint: str = "") -> bool:
    """Remember *token* for *endpoint*. Returns False if nothing was saved."""
    token = token.strip()
    if not _AVAILABLE or not token:
        return False
    account = account_for(endpoint)
    try:
        keyring.set_password(SERVICE_NAME, account, token)
    except Exception as exc:
        logger.warning("could not save %s to keychain: %s", account, exc)
        return False
    return True


def delete_token(endpoint: str = "") -> bool:
    """Forget the token saved for *endpoint*."""
    if not _AVAILABLE:
        return False
    account = account_for(endpoint)
    try:
        keyring.delete_password(SERVICE_NAME, account)
    except Exception as exc:
        logger.warning("could not delete %s from keychain: %s", account, exc)
        return False
    return True
