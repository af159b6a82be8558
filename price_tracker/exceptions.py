"""Error types surfaced by the monitoring core."""

from typing import Optional


class PriceTrackerError(Exception):
    """Base class for errors raised by price_tracker."""


class InvalidInput(PriceTrackerError, ValueError):
    """Validation failure for a URL, price or scraped record."""

    def __init__(self, errors: list[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "invalid input")


# SQLSTATE classes/codes worth retrying: connection exceptions, serialization
# failure, deadlock, lock not available, admin shutdown, too many connections.
RETRYABLE_SQLSTATE_PREFIXES = ("08",)
RETRYABLE_SQLSTATES = {"40001", "40P01", "55P03", "57P01", "57P02", "57P03", "53300"}

# Auth, missing db/table/column, syntax, constraint and data errors.
NON_RETRYABLE_SQLSTATES = {
    "28000", "28P01", "3D000", "42P01", "42703", "42601",
    "23505", "23503", "23502", "23514", "22P02", "22003",
}


class StorageError(PriceTrackerError):
    """Database failure wrapping the driver error and its SQLSTATE."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.retryable = retryable

    @classmethod
    def from_exception(cls, exc: BaseException) -> "StorageError":
        """Wrap a SQLAlchemy / driver exception.

        The SQLSTATE is read from the DBAPI error (asyncpg exposes ``sqlstate``,
        psycopg ``pgcode``). Without a code, operational and interface errors are
        treated as transient, everything else as permanent.
        """
        if isinstance(exc, StorageError):
            return exc

        # Imported lazily so the error module stays free of DB dependencies
        from sqlalchemy import exc as sa_exc

        orig = getattr(exc, "orig", None) or exc
        code = (
            getattr(orig, "sqlstate", None)
            or getattr(orig, "pgcode", None)
            or getattr(getattr(orig, "__cause__", None), "sqlstate", None)
        )

        if code in NON_RETRYABLE_SQLSTATES:
            retryable = False
        elif code in RETRYABLE_SQLSTATES or (code and code.startswith(RETRYABLE_SQLSTATE_PREFIXES)):
            retryable = True
        elif isinstance(exc, (sa_exc.IntegrityError, sa_exc.ProgrammingError, sa_exc.DataError)):
            retryable = False
        elif isinstance(exc, (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.TimeoutError, ConnectionError, OSError)):
            retryable = True
        else:
            retryable = False

        return cls(f"{type(exc).__name__}: {exc}", code=code, retryable=retryable)


class ScrapeError(PriceTrackerError):
    """Scrape failure tagged with an error category (see ErrorCategory)."""

    def __init__(
        self,
        message: str,
        category: str = "unknown",
        page_content: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.category = category
        self.page_content = page_content
        self.status_code = status_code


class AlertError(PriceTrackerError):
    """Failure of a single alert channel."""

    def __init__(self, channel: str, message: str):
        super().__init__(message)
        self.channel = channel
