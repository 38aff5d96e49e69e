"""Authentication helpers for the callback server.

Provides:
- Bearer token extraction (callback tokens travel in the Authorization header)
- Admin token check for the operator endpoints (/callbacks)

Per-request callback tokens are verified by the gateway itself.
"""

import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """Authentication error with error code and HTTP status."""

    def __init__(self, code: str, message: str, http_status: int):
        self.code = code
        self.message = message
        self.http_status = http_status
        super().__init__(f"{code}: {message}")


def extract_bearer_token(auth_header: str) -> Optional[str]:
    """Extract Bearer token from Authorization header.

    Args:
        auth_header: Authorization header value

    Returns:
        Token string, or None if not a Bearer token
    """
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def validate_admin_token(auth_header: str, expected_token: str) -> Optional[AuthError]:
    """Validate Bearer token for operator endpoints.

    Args:
        auth_header: Authorization header from request
        expected_token: Configured admin token

    Returns:
        None if auth is valid, or AuthError on failure
    """
    if not expected_token:
        # Token auth disabled (dev mode)
        return None

    token = extract_bearer_token(auth_header)
    if not token:
        return AuthError("E310", "Authorization required", 401)
    if not hmac.compare_digest(token, expected_token):
        logger.warning("Rejected operator request: invalid admin token")
        return AuthError("E311", "Invalid token", 403)

    return None
