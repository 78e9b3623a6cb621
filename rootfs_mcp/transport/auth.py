"""Token authentication middleware for the HTTP transport."""

from __future__ import annotations

import logging
import os
import secrets
from typing import TYPE_CHECKING

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

if TYPE_CHECKING:
    from starlette.requests import Request
    from starlette.responses import Response

    from rootfs_mcp.config import AuthConfig

logger = logging.getLogger(__name__)

PUBLIC_PATHS = frozenset(["/", "/health", "/.well-known/oauth-protected-resource"])


class TokenAuthMiddleware(BaseHTTPMiddleware):
    """
    Shared-token validation for every non-public route.

    Only installed when ``auth.mode == "token"``. The token is read from the
    environment variable named by ``auth.token_env``; clients send it in the
    ``auth.header`` header. Health, resource metadata and CORS preflight
    requests pass without a token.
    """

    def __init__(self, app, config: AuthConfig, token: str | None = None):
        super().__init__(app)
        self.header = config.header
        self.token = token or os.getenv(config.token_env, "")
        if not self.token:
            raise ValueError(f"Token auth enabled but {config.token_env} is empty")
        logger.info(f"Token authentication enabled (header {self.header})")

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path in PUBLIC_PATHS or request.method == "OPTIONS":
            return await call_next(request)

        provided = request.headers.get(self.header)
        if not provided:
            return JSONResponse({"error": f"Missing token ({self.header} header)"}, status_code=401)

        # Constant-time comparison to prevent timing attacks
        if not secrets.compare_digest(provided, self.token):
            return JSONResponse({"error": "Invalid token"}, status_code=401)

        return await call_next(request)
