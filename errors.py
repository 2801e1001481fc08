from typing import Optional


class LedgerError(Exception):
    pass


class ValidationError(LedgerError, ValueError):
    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field


class NotFoundError(LedgerError, ValueError):
    def __init__(self, resource: str, identifier: str) -> None:
        super().__init__(f"{resource} with id {identifier} not found")
        self.resource = resource
        self.identifier = identifier


class ConflictError(LedgerError):
    pass


class ReadOnlyError(LedgerError):
    def __init__(self, month: str) -> None:
        super().__init__(f"Month {month} is read-only. Unlock it to make changes.")
        self.month = month


class StorageError(LedgerError):
    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


GENERIC_SAVE_FAILURE = "Failed to save data. Please try again."


def format_error_for_user(exc: Exception) -> str:
    if isinstance(exc, StorageError):
        return GENERIC_SAVE_FAILURE
    if isinstance(exc, LedgerError):
        return str(exc)
    return "An unexpected error occurred"
