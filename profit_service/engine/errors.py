"""Error taxonomy for the distribution engine.

Admission rejections are not errors: the coordinator reports them as a
"skipped" run result. Everything raised from here is either retryable
(transient storage trouble) or fatal for a single position (data integrity),
except RunAbortedError which ends the whole run.
"""

from sqlalchemy.exc import DataError, DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError


class DistributionError(Exception):
    """Base class for engine errors."""

    error_class = "unknown"


class TransientStorageError(DistributionError):
    """Storage unavailable or contended; the operation may be retried."""

    error_class = "transient"


class StorageTimeout(TransientStorageError):
    """A storage call exceeded its deadline; its outcome is unknown."""

    error_class = "timeout"


class ConcurrentCreditError(TransientStorageError):
    """The position changed between snapshot and write; retry with a fresh snapshot."""


class DataIntegrityError(DistributionError):
    """Unexpected constraint violation or missing row; fatal for one position only."""

    error_class = "data_integrity"

    def __init__(self, position_id: int | None, reason: str):
        self.position_id = position_id
        self.reason = reason
        super().__init__(f"position {position_id}: {reason}")


class PositionStateError(DistributionError):
    """A lifecycle transition was requested from a state that does not allow it."""

    error_class = "invalid_state"


class PositionNotFoundError(PositionStateError):
    error_class = "not_found"


class RunAbortedError(DistributionError):
    """A run-level failure; carries the partial result accumulated so far."""

    def __init__(self, message: str, result, transient: bool):
        self.result = result
        self.transient = transient
        self.error_class = "transient" if transient else "fatal"
        super().__init__(message)


def classify_storage_error(exc: Exception, position_id: int | None = None) -> DistributionError:
    """Map a raw storage exception onto the engine taxonomy."""
    if isinstance(exc, DistributionError):
        return exc
    if isinstance(exc, (IntegrityError, DataError)):
        return DataIntegrityError(position_id, f"{type(exc).__name__}: {exc.orig}")
    if isinstance(exc, (OperationalError, InterfaceError, PoolTimeoutError, ConnectionError)):
        return TransientStorageError(str(exc))
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return TransientStorageError(str(exc))
    if isinstance(exc, TimeoutError):
        return StorageTimeout(str(exc) or "storage call timed out")
    return DataIntegrityError(position_id, f"{type(exc).__name__}: {exc}")
