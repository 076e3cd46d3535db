"""kpiscore API middleware."""

from kpiscore.api.middleware.db_tx import DBTransactionMiddleware
from kpiscore.api.middleware.request_id import RequestIdMiddleware

__all__ = ["DBTransactionMiddleware", "RequestIdMiddleware"]
