from __future__ import annotations


class MangaDexError(Exception):
    """Base error for MangaDex API access."""


class MangaDexClientValidationError(MangaDexError, ValueError):
    """MangaDex client inputs are invalid."""


class MangaDexParseError(MangaDexError, ValueError):
    """MangaDex API payload could not be parsed."""


class MangaDexHttpError(MangaDexError):
    def __init__(self, *, url: str, status_code: int, message: str | None = None) -> None:
        self.url = url
        self.status_code = int(status_code)
        super().__init__(message or f"MangaDex request failed: {self.status_code} ({url})")
