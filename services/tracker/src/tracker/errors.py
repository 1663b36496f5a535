from __future__ import annotations


class TrackerError(Exception):
    """Base class for failures raised by the corpus engine."""


class FetchError(TrackerError):
    def __init__(
        self,
        message: str,
        *,
        url: str,
        status_code: int | None = None,
        retryable: bool = False,
        attempts: int = 1,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.retryable = retryable
        self.attempts = attempts


class ExtractionError(TrackerError):
    def __init__(self, message: str, *, company_id: str | None = None) -> None:
        super().__init__(message)
        self.company_id = company_id


class NormalizationDiscard(TrackerError):
    """A single candidate could not be turned into a posting. Never fatal."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ParseError(TrackerError, ValueError):
    def __init__(self, message: str, position: int) -> None:
        super().__init__(f"{message} at position {position}")
        self.message = message
        self.position = position


class PersistenceError(TrackerError):
    pass


class PostingNotFound(TrackerError, KeyError):
    def __init__(self, posting_id: int) -> None:
        super().__init__(f"Unknown posting id: {posting_id}")
        self.posting_id = posting_id

    def __str__(self) -> str:
        return str(self.args[0])
