"""
Boundary errors. Raised by route handlers, rendered by the handlers in
api.middleware as {"success": false, "error": ..., "message": ...}.
"""
from __future__ import annotations


class APIError(Exception):
    status_code = 500
    error = "internal_server_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidRequest(APIError):
    status_code = 400
    error = "invalid_request"


class Forbidden(APIError):
    status_code = 403
    error = "forbidden"
