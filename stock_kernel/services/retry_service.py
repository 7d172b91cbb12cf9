"""
RetryService -- retry of units of work after transient infrastructure failures.

Responsibility:
    Runs one unit of work (typically one committed chunk of a reception or
    of a session initialization) and re-runs it when it fails for a
    transient reason: a dropped connection, a timeout, an expired session
    token.  Before each retry an optional re-authentication hook is called.

Architecture position:
    Kernel > Services -- imperative shell.
    Called by StockCore around each chunk transaction.

Invariants enforced:
    - Only TransientInfrastructureError is retried.  SQLAlchemy
      OperationalError and connection-invalidated DBAPIError are translated
      into it first.
    - Domain errors (NegativeQuantityError, LedgerIntegrityError,
      SessionClosedError, ...) propagate on the first occurrence.
    - The unit of work must be idempotent; chunk work is, because applied
      lines and seeded items are skipped on re-run.

Failure modes:
    - RetryExhaustedError: the failure persisted across max_attempts.

Usage:
    retry = RetryService(max_attempts=3, backoff_seconds=0.5)
    outcome = retry.run("reception_chunk", apply_chunk, reauthenticate=renew_token)
"""

from __future__ import annotations

import time
from typing import Callable, TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError

from stock_kernel.exceptions import RetryExhaustedError, TransientInfrastructureError
from stock_kernel.logging_config import get_logger

logger = get_logger("services.retry_service")

T = TypeVar("T")


def as_transient(operation: str, exc: Exception) -> TransientInfrastructureError | None:
    """Map a driver-level failure to TransientInfrastructureError, or None."""
    if isinstance(exc, TransientInfrastructureError):
        return exc
    if isinstance(exc, OperationalError):
        return TransientInfrastructureError(operation, str(exc.orig or exc))
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return TransientInfrastructureError(operation, "connection invalidated")
    return None


class RetryService:
    """Bounded retry with linear backoff.

    Non-goals:
        - Does NOT open or commit transactions; the operation does.
        - Does NOT retry domain errors.
    """

    # INVARIANT: hard cap regardless of configuration
    MAX_ATTEMPTS = 10

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = min(max_attempts, self.MAX_ATTEMPTS)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def run(
        self,
        operation: str,
        work: Callable[[], T],
        reauthenticate: Callable[[], None] | None = None,
    ) -> T:
        last_error: TransientInfrastructureError | None = None
        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                if reauthenticate is not None:
                    reauthenticate()
                self._sleep(self.backoff_seconds * (attempt - 1))
            try:
                return work()
            except Exception as exc:
                transient = as_transient(operation, exc)
                if transient is None:
                    raise
                last_error = transient
                logger.warning(
                    "transient_failure",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "max_attempts": self.max_attempts,
                        "reason": transient.reason,
                    },
                )

        logger.error(
            "retry_exhausted",
            extra={"operation": operation, "attempts": self.max_attempts},
        )
        raise RetryExhaustedError(
            operation, self.max_attempts, last_error.reason if last_error else ""
        )
