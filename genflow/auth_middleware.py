"""
Shared-secret authentication middleware for the generation API.

All /generation/* endpoints require a valid X-Worker-Secret header matching
WORKER_SHARED_SECRET (the web app attaches it when forwarding requests) and
an X-User-Id header naming the user the request acts for.
"""

import os
import secrets
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

WORKER_SECRET = os.environ.get("WORKER_SHARED_SECRET", "")
USER_HEADER = "X-User-Id"
SECRET_HEADER = "X-Worker-Secret"


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests to /generation/* endpoints."""

    PUBLIC_PATHS = {"/health", "/metrics", "/docs", "/openapi.json", "/redoc"}
    PROTECTED_PREFIX = "/generation"

    def __init__(self, app, secret: Optional[str] = None, environment: Optional[str] = None):
        super().__init__(app)
        self.secret = WORKER_SECRET if secret is None else secret
        self.environment = environment or os.environ.get("ENVIRONMENT", "development")

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if path in self.PUBLIC_PATHS or not path.startswith(self.PROTECTED_PREFIX):
            return await call_next(request)

        if not self.secret:
            # In development without the secret set, allow all traffic
            if self.environment != "development":
                return JSONResponse(status_code=500, content={"detail": "WORKER_SHARED_SECRET not configured"})
        else:
            provided = request.headers.get(SECRET_HEADER, "")
            if not secrets.compare_digest(provided, self.secret):
                return JSONResponse(status_code=401, content={"detail": "Invalid or missing worker secret"})

        user_id = request.headers.get(USER_HEADER, "").strip()
        if not user_id:
            return JSONResponse(status_code=401, content={"detail": f"Missing {USER_HEADER} header"})
        request.state.user_id = user_id

        return await call_next(request)
