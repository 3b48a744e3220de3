from __future__ import annotations

import hmac
import logging
import re
from functools import lru_cache

from app.core.config.settings import DEFAULT_ADMIN_PASSWORD, get_settings

logger = logging.getLogger(__name__)

_BEARER_PATTERN = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


@lru_cache(maxsize=1)
def _warn_default_secret() -> None:
    logger.warning("GATEWAY_ADMIN_PASSWORD is not set; using the default admin password")


def get_admin_secret() -> str:
    secret = get_settings().admin_password
    if secret == DEFAULT_ADMIN_PASSWORD:
        _warn_default_secret()
    return secret


def extract_api_key(authorization: str | None) -> str | None:
    """Accept ``Bearer <key>`` as well as a bare key in the Authorization header."""
    if not authorization:
        return None
    value = authorization.strip()
    match = _BEARER_PATTERN.match(value)
    if match:
        value = match.group(1).strip()
    return value or None


def verify_admin_secret(candidate: str | None) -> bool:
    if not candidate:
        return False
    return hmac.compare_digest(candidate.encode(), get_admin_secret().encode())
