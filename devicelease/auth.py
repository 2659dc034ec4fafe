"""Authentication middleware for the device-farm service.

Accepts ``X-API-Key: <key>`` or ``Authorization: Bearer <key>`` when an API
key is configured, and HTTP Basic when a username/password pair is
configured. With neither configured every request is let through.
``/status`` is always public.
"""

from __future__ import annotations

import base64
import binascii
import secrets

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse

PUBLIC_PATHS = ("/status", "/docs", "/redoc", "/openapi.json")


class FarmAuthMiddleware(BaseHTTPMiddleware):
    """Validates farm credentials on every request except the public ones."""

    def __init__(
        self,
        app,  # noqa: ANN001
        api_key: str = "",
        username: str = "",
        password: str = "",
    ) -> None:
        super().__init__(app)
        self.api_key = api_key
        self.username = username
        self.password = password

    @property
    def open(self) -> bool:
        return not self.api_key and not (self.username and self.password)

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if self.open or request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        if self.api_key:
            if _matches(request.headers.get("X-API-Key", ""), self.api_key):
                return await call_next(request)
            auth_header = request.headers.get("Authorization", "")
            if auth_header.startswith("Bearer ") and _matches(auth_header[7:], self.api_key):
                return await call_next(request)

        if self.username and self.password and self._basic_ok(request.headers.get("Authorization", "")):
            return await call_next(request)

        return JSONResponse(
            status_code=401,
            content={"message": "Invalid or missing credentials"},
        )

    def _basic_ok(self, header: str) -> bool:
        if not header.startswith("Basic "):
            return False
        try:
            decoded = base64.b64decode(header[6:], validate=True).decode()
        except (binascii.Error, UnicodeDecodeError):
            return False
        username, sep, password = decoded.partition(":")
        return bool(sep) and _matches(username, self.username) and _matches(password, self.password)


def _matches(supplied: str, expected: str) -> bool:
    """Constant-time comparison that also accepts non-ASCII input."""
    return secrets.compare_digest(supplied.encode(), expected.encode())
