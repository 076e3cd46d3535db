"""Request ID middleware for the kpiscore API.

Every request gets a correlation ID, echoed in the X-Request-Id response
header and attached to audit events and error envelopes.
"""

import uuid
from collections.abc import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from kpiscore.api.error_model import REQUEST_ID_HEADER

MAX_REQUEST_ID_LENGTH = 128


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Middleware that attaches a request ID to every request.

    Behavior:
    - If the request carries a non-empty X-Request-Id (at most 128 chars) => use it.
    - Else generate uuid4.
    - Attach to request.state.request_id and add response header X-Request-Id.
    """

    def __init__(self, app: ASGIApp) -> None:
        super().__init__(app)

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        incoming_request_id = (request.headers.get(REQUEST_ID_HEADER) or "").strip()

        if incoming_request_id and len(incoming_request_id) <= MAX_REQUEST_ID_LENGTH:
            request_id = incoming_request_id
        else:
            request_id = str(uuid.uuid4())

        request.state.request_id = request_id

        response: Response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id

        return response
