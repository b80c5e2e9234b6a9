from __future__ import annotations


class LongzangError(RuntimeError):
    """Base error carrying a short message that is safe to show to users."""

    status_code = 500

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class InvalidArgument(LongzangError):
    """Raised when a claim request is missing a field or has a malformed one."""

    status_code = 400


class NotFound(LongzangError):
    """Raised when a volume id does not exist in the catalog."""

    status_code = 400


class Conflict(LongzangError):
    """Raised when a volume already has a claim record."""

    status_code = 409


class Unavailable(LongzangError):
    """Raised when the claim store or the upstream scripture site is unreachable."""

    status_code = 500
