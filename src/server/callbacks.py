"""Callback endpoint handlers.

Custom providers answer a ProviderRequest by POSTing to /callback:

    POST /callback
    Authorization: Bearer <callbackToken>
    {"requestId": "...", "status": "SUCCESS", "physicalId": "...", "outputData": {...}}

Handlers return (response_dict, http_status) so they can be tested without
a socket.
"""

import json
import logging
from typing import Tuple

from engine.gateway import CustomProviderGateway
from server.auth import extract_bearer_token, validate_admin_token

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 1024 * 1024


def _error_response(code: str, message: str) -> dict:
    return {"error": {"code": code, "message": message}}


def handle_callback_request(
    body: bytes,
    auth_header: str,
    gateway: CustomProviderGateway,
) -> Tuple[dict, int]:
    """Handle a provider callback.

    Args:
        body: Raw request body
        auth_header: Authorization header (may be empty; body token is the fallback)
        gateway: Gateway holding the pending table

    Returns:
        Tuple of (response_dict, http_status)
    """
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        return _error_response("E320", f"Malformed JSON body: {e}"), 400

    token = extract_bearer_token(auth_header)
    ack = gateway.handle_callback(payload, token)
    if not ack.accepted:
        code = {400: "E320", 401: "E321", 404: "E322", 409: "E323"}.get(ack.http_status, "E320")
        return _error_response(code, ack.message), ack.http_status

    return {"status": "accepted", "requestId": payload["requestId"]}, 202


def handle_callbacks_list(
    auth_header: str,
    admin_token: str,
    gateway: CustomProviderGateway,
) -> Tuple[dict, int]:
    """List pending requests (tokens are never included)."""
    err = validate_admin_token(auth_header, admin_token)
    if err:
        return _error_response(err.code, err.message), err.http_status

    pending = gateway.pending()
    return {
        "pending": [cb.to_dict() for cb in sorted(pending, key=lambda c: c.issued_at)],
        "count": len(pending),
    }, 200
