"""Logging filter enriching records with request context.

Adding ``RequestContextFilter`` to a handler lets formatters reference
``%(request_id)s`` and ``%(user_id)s`` for every record, including those
emitted by the queue worker where no request exists (both default to "-").
"""

from logging import Filter, LogRecord

from .middleware import REQUEST_ID_CTX, USER_ID_CTX


class RequestContextFilter(Filter):
    def filter(self, record: LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = REQUEST_ID_CTX.get()
        if not hasattr(record, "user_id"):
            record.user_id = USER_ID_CTX.get()
        return True
