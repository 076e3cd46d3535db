"""Request-scoped database transaction for /v1 routes.

When KPISCORE_DATABASE_URL is set, every /v1 request gets one connection with
one open transaction on ``request.state.db_conn``. Services hand it to the
repository factories; without it they use the in-memory stores.

The outcome follows the response status: below 500 commits, anything else
(including an exception escaping the app) rolls back. A connection that
cannot be opened answers 503 STORAGE_UNAVAILABLE before any route runs.

Pure ASGI rather than BaseHTTPMiddleware; psycopg2 calls run through
asyncio.to_thread().
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from starlette.requests import Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from kpiscore.api.error_model import make_error_response_no_request
from kpiscore.persistence.db import get_app_engine, is_postgres_configured

if TYPE_CHECKING:
    from sqlalchemy import Connection, RootTransaction

logger = logging.getLogger(__name__)


class _RequestTransaction:
    """One connection plus its root transaction; all methods are blocking."""

    def __init__(self) -> None:
        self.conn: Connection = get_app_engine().connect()
        self._trans: RootTransaction = self.conn.begin()

    def finish(self, commit: bool) -> None:
        try:
            if commit:
                self._trans.commit()
            else:
                self._trans.rollback()
        finally:
            self.conn.close()


class DBTransactionMiddleware:
    """Open, then commit or roll back, one transaction per /v1 request.

    Must run inside RequestIdMiddleware so error bodies carry the request id.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not is_postgres_configured():
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        if not request.url.path.startswith("/v1"):
            await self.app(scope, receive, send)
            return

        request_id: str | None = getattr(request.state, "request_id", None)

        try:
            tx = await asyncio.to_thread(_RequestTransaction)
        except Exception as e:
            logger.error(
                "Could not open request transaction: %s",
                type(e).__name__,
                extra={"request_id": request_id},
            )
            response = make_error_response_no_request(
                code="STORAGE_UNAVAILABLE",
                message="Storage is temporarily unavailable",
                http_status=503,
                request_id=request_id,
                details={"operation": "open_transaction"},
            )
            await response(scope, receive, send)
            return

        request.state.db_conn = tx.conn
        status: dict[str, Any] = {"code": None}

        async def send_with_status(message: Message) -> None:
            if message["type"] == "http.response.start":
                status["code"] = message.get("status", 500)
            await send(message)

        commit = False
        try:
            await self.app(scope, receive, send_with_status)
            commit = status["code"] is not None and status["code"] < 500
        finally:
            request.state.db_conn = None
            try:
                await asyncio.to_thread(tx.finish, commit)
            except Exception as e:
                # The response has already been sent at this point.
                logger.error(
                    "Request transaction %s failed: %s",
                    "commit" if commit else "rollback",
                    e,
                    extra={"request_id": request_id},
                )
            else:
                logger.debug(
                    "Request transaction %s (status=%s)",
                    "committed" if commit else "rolled back",
                    status["code"],
                    extra={"request_id": request_id},
                )
