"""Server package for the custom provider callback endpoint.

Custom providers POST their results to /callback; operators list pending
requests on /callbacks.
"""

from server.httpd import (
    Server,
    ServerManager,
    DEFAULT_PORT,
    DEFAULT_BIND,
)
from server.auth import (
    AuthError,
    extract_bearer_token,
    validate_admin_token,
)

__all__ = [
    # Server
    "Server",
    "ServerManager",
    "DEFAULT_PORT",
    "DEFAULT_BIND",
    # Auth
    "AuthError",
    "extract_bearer_token",
    "validate_admin_token",
]
