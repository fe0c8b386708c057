import os
import hmac
from functools import wraps

from flask import request, jsonify


WORKER_INTERNAL_API_TOKEN_HEADER = "X-Worker-Internal-Token"


def _get_internal_token_from_header() -> str | None:
    value = request.headers.get(WORKER_INTERNAL_API_TOKEN_HEADER, "")
    value = value.strip()
    return value or None


def _is_valid_internal_token(provided_token: str | None) -> bool:
    expected_token = os.getenv("WORKER_INTERNAL_API_TOKEN", "").strip()
    if not expected_token or not provided_token:
        return False
    return hmac.compare_digest(provided_token, expected_token)


def require_internal_token(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        token = _get_internal_token_from_header()
        if not token:
            return jsonify({"error": "missing_internal_token"}), 401
        if not _is_valid_internal_token(token):
            return jsonify({"error": "invalid_internal_token"}), 401
        return fn(*args, **kwargs)

    return wrapper
