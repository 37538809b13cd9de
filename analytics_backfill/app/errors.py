from __future__ import annotations


class BackfillError(Exception):
    pass


class AuthError(BackfillError):
    """Missing or unusable OAuth credential. Fatal for the whole run."""


class ApiError(BackfillError):
    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"Analytics API error status={status}: {_summarize(body)}")
        self.status = status
        self.body = body

    @property
    def is_server_error(self) -> bool:
        return self.status >= 500


class StorageError(BackfillError):
    pass


def _summarize(raw: str, *, max_length: int = 400) -> str:
    compact = " ".join(raw.split())
    if len(compact) <= max_length:
        return compact
    return f"{compact[: max_length - 3]}..."


class UnknownFamilyError(BackfillError, LookupError):
    pass
