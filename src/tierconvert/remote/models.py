"""Data models for remote conversion services."""

from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

from pydantic import ConfigDict

from tierconvert.config.constants import DEFAULT_FAILURE_THRESHOLD, DEGRADED_SUCCESS_RATE
from tierconvert.config.settings import ServiceConfig


class ConversionService(ServiceConfig):
    """A registered remote service. Immutable once the registry is built."""

    model_config = ConfigDict(frozen=True)

    category: str

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def request_url(self) -> str:
        base = self.url.rstrip("/")
        endpoint = self.endpoint.strip("/")
        return f"{base}/{endpoint}" if endpoint else base

    @property
    def health_url(self) -> str:
        return f"{self.url.rstrip('/')}/health"


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class ServiceHealth:
    """Rolling health statistics of one service.

    ``failure_count`` counts consecutive failures and resets on success;
    ``total_failures`` is cumulative and feeds ``success_rate``.
    """

    service_id: str
    status: HealthStatus = HealthStatus.HEALTHY
    success_count: int = 0
    failure_count: int = 0
    total_failures: int = 0
    success_rate: float = 1.0
    last_checked: float | None = None  # monotonic seconds
    response_time: float | None = None
    error: str | None = None

    def record(
        self,
        success: bool,
        now: float,
        response_time: float | None = None,
        error: str | None = None,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
    ) -> None:
        """Apply one attempt outcome and recompute rate and status."""
        if success:
            self.success_count += 1
            self.failure_count = 0
            self.error = None
        else:
            self.failure_count += 1
            self.total_failures += 1
            self.error = error

        total = self.success_count + self.total_failures
        self.success_rate = self.success_count / total if total else 1.0
        self.last_checked = now
        if response_time is not None:
            self.response_time = response_time

        if self.failure_count >= failure_threshold:
            self.status = HealthStatus.UNHEALTHY
        elif self.success_rate < DEGRADED_SUCCESS_RATE:
            self.status = HealthStatus.DEGRADED
        else:
            self.status = HealthStatus.HEALTHY

    def copy(self) -> "ServiceHealth":
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_id": self.service_id,
            "status": self.status.value,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "total_failures": self.total_failures,
            "success_rate": round(self.success_rate, 3),
            "response_time": self.response_time,
            "error": self.error,
        }


@dataclass
class RemoteConversion:
    """Normalized response of a remote service."""

    content: str
    mime_type: str
    service_id: str
    response_time: float
    attempts: int = 1
    metadata: dict[str, Any] = field(default_factory=dict)
