"""Logging filter that stamps records with the current request id.

Attach ``RequestIdFilter`` to a handler (see ``LOGGING`` in the settings)
and every JSON log line of the storefront, including the payment gateway
adapter's, carries the id set by ``RequestIdMiddleware``.
"""

from logging import Filter, LogRecord
from .middleware import REQUEST_ID_CTX


class RequestIdFilter(Filter):
    """Attach a ``request_id`` attribute to log records.

    Outside a request (management commands, startup) the value is "-", so
    formatters can always reference ``%(request_id)s``.
    """

    def filter(self, record: LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = REQUEST_ID_CTX.get()
        return True
