from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class SearchEngineUnavailable(RuntimeError):
    """Transient engine failure (transport, timeout, 429/5xx); safe to retry."""

    retryable = True

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RelationalStoreUnavailable(RuntimeError):
    retryable = True


class SchemaVersionMismatch(RuntimeError):
    retryable = False

    def __init__(self, *, index: str, expected: int, found: int | None) -> None:
        super().__init__(f"index {index} has schema_version={found}, expected {expected}; reindex required")
        self.index = index
        self.expected = expected
        self.found = found


def is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))


class DocumentRejected(RuntimeError):
    """The engine refused a document (strict mapping, malformed field); retrying will not help."""

    retryable = False
