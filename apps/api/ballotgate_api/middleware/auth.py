"""Authentication and scope middleware for trusted callers.

Token issuance is called by the identity gateway and /admin by operators; both
authenticate with an API key. Ballot submission is authorized by the ballot
token itself and is not covered here.
"""

import logging
from typing import Optional

from fastapi import Request, status
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from ballotgate_api.auth.api_key import get_client_by_api_key
from ballotgate_api.auth.scopes import ADMIN, TOKENS_ISSUE, parse_scopes
from ballotgate_api.db.session import SessionLocal

logger = logging.getLogger(__name__)

# Path prefix -> required scope
PROTECTED_PREFIXES = (
    ("/v1/tokens", TOKENS_ISSUE),
    ("/admin", ADMIN),
)


def get_required_scope(path: str) -> Optional[str]:
    """Scope required for ``path``, or None for unauthenticated paths."""
    normalized_path = path.rstrip("/")
    for prefix, scope in PROTECTED_PREFIXES:
        if normalized_path == prefix or normalized_path.startswith(prefix + "/"):
            return scope
    return None


def _error(status_code: int, error_code: str, detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"status": "failed", "error_code": error_code, "detail": detail},
    )


def _lookup_client(api_key: str) -> Optional[dict]:
    db = SessionLocal()
    try:
        client = get_client_by_api_key(db, api_key)
        if client is None:
            return None
        return {"id": client.id, "label": client.label, "scopes": parse_scopes(client.scopes)}
    finally:
        db.close()


class AuthMiddleware(BaseHTTPMiddleware):
    """Authenticate API clients and enforce the scope of protected paths."""

    async def dispatch(self, request: Request, call_next):
        """Process request with client extraction."""
        required_scope = get_required_scope(request.url.path)
        if required_scope is None:
            return await call_next(request)

        api_key = request.headers.get("x-api-key")
        if not api_key:
            return _error(
                status.HTTP_401_UNAUTHORIZED,
                "UNAUTHENTICATED",
                "Missing API key. Provide x-api-key header.",
            )

        client = await run_in_threadpool(_lookup_client, api_key)
        if client is None:
            return _error(status.HTTP_401_UNAUTHORIZED, "UNAUTHENTICATED", "Invalid or revoked API key.")

        if required_scope not in client["scopes"]:
            return _error(
                status.HTTP_403_FORBIDDEN,
                "FORBIDDEN",
                f"Insufficient permissions. Required scope: {required_scope}",
            )

        request.state.api_client = client
        logger.info(
            "Authenticated request",
            extra={
                "client": client["label"],
                "correlation_id": getattr(request.state, "correlation_id", None),
                "path": request.url.path,
            },
        )
        return await call_next(request)
