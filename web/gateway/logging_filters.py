"""Logging filters for enriching log records with request context.

This module provides a logging filter that injects the current request id
and acting user into log records using the ContextVars set by the gateway
middleware. Adding the filter to your logging configuration enables
per-request correlation in logs without modifying individual log statements.
"""

from logging import Filter, LogRecord
from .middleware import REQUEST_ID_CTX, USER_ID_CTX


class RequestIdFilter(Filter):
    """Attach ``request_id`` and ``user_id`` attributes to log records.

    Values come from ``REQUEST_ID_CTX`` and ``USER_ID_CTX``. Outside a
    request both default to a hyphen ("-") so formatters can reliably
    reference ``%(request_id)s``.
    """

    def filter(self, record: LogRecord) -> bool:
        record.request_id = REQUEST_ID_CTX.get()
        record.user_id = USER_ID_CTX.get()
        return True
