from __future__ import annotations


class IngestionError(Exception):
    pass


class TransientFetchError(IngestionError):
    def __init__(self, source: str, message: str, status: int | None = None) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source
        self.status = status


class SourceUnavailableError(TransientFetchError):
    """Raised when a source cannot be reached for the first page of a pass."""


class PersistenceError(IngestionError):
    def __init__(self, key: str, message: str) -> None:
        super().__init__(f"{key}: {message}")
        self.key = key


class VerificationError(IngestionError):
    pass
