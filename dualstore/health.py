"""Readiness check against the active backend."""

import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from .errors import PersistenceError

LOGGER = logging.getLogger(__name__)

# Never assigned to a real record; looking it up is a read that always misses.
SENTINEL_ID = UUID(int=0)


class HealthStatus(str, Enum):
    AVAILABLE = "available"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"


class HealthReport(BaseModel):
    """Outcome of one check.

    Attributes:
        status: Overall verdict.
        provider: The backend the process was started with.
        latency_seconds: Wall time spent in the lookup.
        detail: Failure detail (error type and message) when not available.
    """

    status: HealthStatus
    provider: str
    latency_seconds: float
    detail: dict[str, Any] = {}

    @property
    def is_ready(self) -> bool:
        return self.status is not HealthStatus.UNAVAILABLE


class HealthMonitor:
    """Runs a cheap, representative call against the active backend.

    The lookup is normally a point lookup of a sentinel identifier, which
    exercises the same client, connection pool and error translation as
    real traffic without scanning anything. Only readiness checks should
    call this; it never sits on a request-serving path.

    Examples:
        >>> monitor = repositories.health
        >>> report = monitor.check()
        >>> report.status
        <HealthStatus.AVAILABLE: 'available'>
    """

    def __init__(
        self,
        provider: str,
        lookup: Callable[[], object],
        degraded_after_seconds: float = 1.0,
    ):
        self.provider = provider
        self.lookup = lookup
        self.degraded_after_seconds = degraded_after_seconds

    def check(self) -> HealthReport:
        """Run the lookup. Never raises."""
        started = time.monotonic()
        try:
            self.lookup()
        except PersistenceError as err:
            return self._failed(started, err)

        latency = time.monotonic() - started
        if latency > self.degraded_after_seconds:
            LOGGER.warning(
                "Persistence health check slow",
                extra={"provider": self.provider, "latency_seconds": latency},
            )
            return HealthReport(
                status=HealthStatus.DEGRADED,
                provider=self.provider,
                latency_seconds=latency,
                detail={"threshold_seconds": self.degraded_after_seconds},
            )
        return HealthReport(
            status=HealthStatus.AVAILABLE, provider=self.provider, latency_seconds=latency
        )

    def _failed(self, started: float, err: PersistenceError) -> HealthReport:
        latency = time.monotonic() - started
        LOGGER.error(
            "Persistence health check failed",
            extra={"provider": self.provider, "error_type": type(err).__name__},
        )
        return HealthReport(
            status=HealthStatus.UNAVAILABLE,
            provider=self.provider,
            latency_seconds=latency,
            detail={
                "error": str(err),
                "error_type": type(err).__name__,
                "retryable": err.retryable,
            },
        )
