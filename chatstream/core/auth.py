from __future__ import annotations
import time
from collections import deque, defaultdict
from typing import Deque, Dict, Optional
from fastapi import Header, HTTPException, Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
from chatstream.core.config import settings
from chatstream.core.tokens import InvalidToken, TokenSigner, SCOPE_READ, SCOPE_WRITE


# -------- API Key Dependency (admin surface) --------
async def require_api_key(
    x_api_key: str | None = Header(default=None), request: Request = None
):
    expected = settings.API_KEY
    if not expected:
        return
    provided = x_api_key or (request.query_params.get("api_key") if request else None)
    if not provided or provided != expected:
        raise HTTPException(
            status_code=401, detail="Unauthorized: invalid or missing API key"
        )


# -------- Bearer token dependencies --------
def token_signer() -> TokenSigner:
    return TokenSigner(settings.SECRET_KEY)


def _bearer(authorization: str | None) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value:
        return None
    return value.strip()


def identity_for(scope: str):
    """Build a dependency resolving the caller's identity for ``scope``.

    Tokens come from ``Authorization: Bearer`` or the ``token`` query param
    (EventSource cannot set headers). Without a token the identity is None
    unless AUTH_REQUIRED is set. A token that is present but invalid is
    always rejected.
    """

    async def dependency(
        request: Request, authorization: str | None = Header(default=None)
    ) -> Optional[str]:
        provided = _bearer(authorization) or request.query_params.get("token")
        if not provided:
            if settings.AUTH_REQUIRED:
                raise HTTPException(
                    status_code=401, detail="Unauthorized: missing token"
                )
            return None
        try:
            claims = token_signer().verify(provided, scope=scope)
        except InvalidToken as e:
            raise HTTPException(status_code=401, detail=f"Unauthorized: {e}")
        return claims.identity

    return dependency


read_identity = identity_for(SCOPE_READ)
write_identity = identity_for(SCOPE_WRITE)


# -------- Rate Limiting Middleware --------
class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-IP, per-path, sliding-window limiter.
    - Reads limits and window dynamically from settings on each request.
    - Applies only to paths that start with a prefix in settings.RATE_LIMIT_PATHS.
    - Keys buckets by (ip, matched_path_prefix) to avoid cross-path interference.
    """

    def __init__(self, app, max_per_minute: int):
        super().__init__(app)
        self._default = max_per_minute
        self.bucket: Dict[str, Deque[float]] = defaultdict(deque)

    async def dispatch(self, request: Request, call_next):
        max_requests = int(getattr(settings, "RATE_LIMIT_PER_MINUTE", self._default))
        window_seconds = int(getattr(settings, "RATE_LIMIT_WINDOW_SECONDS", 60))
        path_prefixes = getattr(settings, "RATE_LIMIT_PATHS", ["/auth"])

        if max_requests <= 0:
            return await call_next(request)
        path = request.url.path or "/"
        matched = next((p for p in path_prefixes if path.startswith(p)), None)
        if matched is None:
            return await call_next(request)

        client_ip = (
            request.client.host
            if request.client
            else request.headers.get("x-forwarded-for", "local")
        )
        key = f"{client_ip}|{matched}"

        now = time.time()
        window_start = now - float(window_seconds)

        dq = self.bucket[key]
        while dq and dq[0] < window_start:
            dq.popleft()

        if len(dq) >= max_requests:
            return JSONResponse({"detail": "Too Many Requests"}, status_code=429)

        dq.append(now)
        return await call_next(request)
