"""Correlation ID middleware.

The id travels into log records and audit events, so a caller-supplied value
is only accepted when it is short and made of safe characters.
"""

import re
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

CORRELATION_HEADER = "x-correlation-id"

_VALID_CORRELATION_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def resolve_correlation_id(header_value) -> str:
    """Caller's id if acceptable, otherwise a fresh UUID."""
    if header_value and _VALID_CORRELATION_ID.match(header_value):
        return header_value
    return str(uuid.uuid4())


class CorrelationIDMiddleware(BaseHTTPMiddleware):
    """Tag each request and its response with a correlation id."""

    async def dispatch(self, request: Request, call_next):
        correlation_id = resolve_correlation_id(request.headers.get(CORRELATION_HEADER))
        request.state.correlation_id = correlation_id

        response: Response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response
