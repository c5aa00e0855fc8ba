"""Resilient client for remote HTML conversion services.

Services are grouped by category (``pdf``, ``image``, ``mhtml``). For each
conversion the client walks the category's healthy services in priority
order, retrying each one with exponential backoff before moving on, and keeps
a health record per service that excludes repeatedly failing services from
selection.
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import random
import time
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import httpx

from tierconvert.config.constants import CATEGORY_FORMATS, FORMAT_MIME_TYPES, USER_AGENT
from tierconvert.config.settings import RemoteConfig
from tierconvert.converters.base import Document, normalize_format
from tierconvert.exceptions import (
    OperationTimeoutError,
    RateLimitError,
    ServiceError,
    ServicesExhaustedError,
    ValidationError,
)
from tierconvert.remote.defaults import build_registry
from tierconvert.remote.models import (
    ConversionService,
    HealthStatus,
    RemoteConversion,
    ServiceHealth,
)
from tierconvert.utils.backoff import retry_delay
from tierconvert.utils.logging import get_logger
from tierconvert.utils.rate_limit import ServiceRateLimiter

log = get_logger(__name__)

# Content types that carry no format information
_GENERIC_MIME_TYPES = frozenset({"application/octet-stream", "binary/octet-stream"})


def _request_id() -> str:
    return f"rs_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class RemoteServiceClient:
    """HTTP client over a registry of remote conversion services.

    Health records are owned by this instance. Callers only ever receive
    copies via :meth:`get_health` and :meth:`health_report`.
    """

    def __init__(
        self,
        config: RemoteConfig | None = None,
        registry: dict[str, list[ConversionService]] | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ) -> None:
        """Initialize the client.

        Args:
            config: Remote configuration (defaults if None)
            registry: Pre-built service registry; built from ``config`` when omitted
            http_client: Shared httpx client; one is created (and owned) when omitted
            clock: Monotonic time source for health TTLs and rate limiting
            sleep: Awaitable sleep used for backoff and rate limiting
            rand: Jitter source for backoff
        """
        self.config = config or RemoteConfig()
        self._registry = registry if registry is not None else build_registry(self.config)
        self._services: dict[str, ConversionService] = {
            service.id: service for services in self._registry.values() for service in services
        }
        self._health: dict[str, ServiceHealth] = {
            service_id: ServiceHealth(service_id=service_id) for service_id in self._services
        }
        self._limiters: dict[str, ServiceRateLimiter] = {
            service.id: ServiceRateLimiter(
                service.id,
                requests_per_minute=service.rate_limit.requests_per_minute,
                max_concurrent=service.rate_limit.max_concurrent,
                clock=clock,
                sleep=sleep,
            )
            for service in self._services.values()
        }

        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=self.config.timeout, follow_redirects=True
        )
        self._clock = clock
        self._sleep = sleep
        self._rand = rand
        self._health_task: asyncio.Task[None] | None = None

    # -- registry ----------------------------------------------------------

    @property
    def categories(self) -> list[str]:
        return list(self._registry)

    def get_services(self, category: str) -> list[ConversionService]:
        """All registered services of a category, regardless of health."""
        return list(self._registry.get(category, []))

    def get_service(self, service_id: str) -> ConversionService | None:
        return self._services.get(service_id)

    def _is_selectable(self, service_id: str) -> bool:
        health = self._health[service_id]
        if health.status is not HealthStatus.UNHEALTHY:
            return True
        if health.last_checked is None:
            return True
        # Stale health is provisionally trusted as healthy
        return self._clock() - health.last_checked > self.config.fallback.health_cache_ttl

    def get_available_services(self, category: str) -> list[ConversionService]:
        """Selectable services of a category, best first.

        Unhealthy services are excluded unless their health record is older
        than the health-cache TTL. Order: ``priority`` ascending, then
        ``quality_score`` descending.
        """
        services = [s for s in self._registry.get(category, []) if self._is_selectable(s.id)]
        return sorted(services, key=lambda s: (s.priority, -s.quality_score))

    def has_available_services(self, category: str | None = None) -> bool:
        categories = [category] if category else self.categories
        return any(self.get_available_services(c) for c in categories)

    # -- health ------------------------------------------------------------

    def get_health(self, service_id: str) -> ServiceHealth:
        """Copy of the health record of one service."""
        return self._health[service_id].copy()

    def health_report(self) -> dict[str, dict[str, Any]]:
        """Health of every service, keyed by service id."""
        return {service_id: health.to_dict() for service_id, health in self._health.items()}

    def _update_service_health(
        self,
        service_id: str,
        success: bool,
        response_time: float | None = None,
        error: str | None = None,
    ) -> None:
        health = self._health[service_id]
        previous = health.status
        health.record(
            success,
            now=self._clock(),
            response_time=response_time,
            error=error,
            failure_threshold=self.config.health_check.failure_threshold,
        )
        if health.status is not previous:
            log.info(
                "Service health changed",
                service_id=service_id,
                previous=previous.value,
                status=health.status.value,
                failure_count=health.failure_count,
                success_rate=round(health.success_rate, 3),
            )

    async def health_check(self, service: ConversionService) -> bool:
        """Probe ``GET {base}/health`` once and record the outcome."""
        started = time.perf_counter()
        try:
            response = await self._client.get(
                service.health_url,
                headers={"User-Agent": USER_AGENT, **self._auth_headers(service)},
                timeout=self.config.health_check.timeout,
            )
            healthy = response.is_success
            error = None if healthy else f"HTTP {response.status_code}"
        except httpx.HTTPError as e:
            healthy = False
            error = str(e) or type(e).__name__
        self._update_service_health(
            service.id, healthy, response_time=time.perf_counter() - started, error=error
        )
        return healthy

    async def health_check_all(self) -> dict[str, ServiceHealth]:
        """Probe every registered service concurrently."""
        services = list(self._services.values())
        await asyncio.gather(*(self.health_check(s) for s in services))
        return {s.id: self.get_health(s.id) for s in services}

    def start_health_checks(self) -> None:
        """Start periodic health probes if enabled. Idempotent; ``convert`` calls it."""
        if not self.config.health_check.enabled or not self._services:
            return
        if self._health_task is None or self._health_task.done():
            self._health_task = asyncio.create_task(self._health_loop())

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.health_check.interval)
            try:
                await self.health_check_all()
            except Exception as e:
                log.warning("Periodic health check failed", error=str(e))

    # -- conversion --------------------------------------------------------

    async def convert(
        self,
        category: str,
        document: Document | str,
        target_format: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> RemoteConversion:
        """Convert a document with the best available service of ``category``.

        Args:
            category: Service category (``pdf``, ``image``, ``mhtml``)
            document: Document (or raw HTML) to convert
            target_format: Concrete output format; defaults to the category's format
            options: Extra options forwarded to the service

        Returns:
            RemoteConversion with normalized content and MIME type

        Raises:
            ValidationError: document exceeds ``max_file_size``
            RateLimitError: the service is saturated and multi-service fallback is off
            ServicesExhaustedError: every candidate service failed
        """
        html = document.html if isinstance(document, Document) else document
        size = len(html.encode("utf-8"))
        if size > self.config.max_file_size:
            raise ValidationError(
                [
                    f"Document size ({size} bytes) exceeds remote limit "
                    f"of {self.config.max_file_size} bytes"
                ]
            )

        self.start_health_checks()
        fmt = normalize_format(target_format) or CATEGORY_FORMATS.get(category, "pdf")
        services = self.get_available_services(category)
        if not services:
            raise ServicesExhaustedError(category, [])

        request_id = _request_id()
        errors: list[tuple[str, Exception]] = []
        for service in services:
            try:
                result = await self._convert_with_service(
                    service, html, fmt, options or {}, request_id
                )
            except RateLimitError as e:
                errors.append((service.id, e))
                if not self.config.fallback.try_multiple_services:
                    raise
                continue
            except (ServiceError, OperationTimeoutError) as e:
                errors.append((service.id, e))
                log.warning(
                    "Service failed",
                    service_id=service.id,
                    request_id=request_id,
                    error=str(e),
                )
                if not self.config.fallback.try_multiple_services:
                    break
                continue

            if errors:
                log.info(
                    "Converted after service fallback",
                    service_id=service.id,
                    failed=[sid for sid, _ in errors],
                )
            result.metadata["failed_services"] = [sid for sid, _ in errors]
            return result

        raise ServicesExhaustedError(category, errors)

    async def _convert_with_service(
        self,
        service: ConversionService,
        html: str,
        fmt: str,
        options: dict[str, Any],
        request_id: str,
    ) -> RemoteConversion:
        limiter = await self._check_rate_limit(service)
        started = time.perf_counter()
        try:
            response, attempts, elapsed = await self._request_with_retry(
                service, html, fmt, options, request_id
            )
            try:
                content, mime_type, metadata = self._normalize_response(service, response, fmt)
            except ServiceError as e:
                self._update_service_health(service.id, False, error=str(e))
                raise
            self._update_service_health(service.id, True, response_time=elapsed)
        finally:
            limiter.release()

        response_time = time.perf_counter() - started
        log.debug(
            "Service conversion succeeded",
            service_id=service.id,
            request_id=request_id,
            response_time=round(response_time, 3),
            attempts=attempts,
        )
        return RemoteConversion(
            content=content,
            mime_type=mime_type,
            service_id=service.id,
            response_time=response_time,
            attempts=attempts,
            metadata={
                **metadata,
                "service_id": service.id,
                "service_name": service.display_name,
                "request_id": request_id,
                "response_time": response_time,
                "quality_score": service.quality_score,
                "cost": service.cost_per_conversion,
            },
        )

    async def _check_rate_limit(self, service: ConversionService) -> ServiceRateLimiter:
        """Reserve a request slot, raising RateLimitError when saturated."""
        limiter = self._limiters[service.id]
        await limiter.acquire()
        return limiter

    async def _request_with_retry(
        self,
        service: ConversionService,
        html: str,
        fmt: str,
        options: dict[str, Any],
        request_id: str,
    ) -> tuple[httpx.Response, int, float]:
        """Issue the request, retrying the same service on retryable failures.

        Every failed try is recorded against the service health; the caller
        records the success once the response has been normalized.
        """
        last_error: Exception | None = None
        max_attempts = self.config.max_retries + 1

        for attempt in range(max_attempts):
            if attempt:
                # Retries hold the concurrency slot but still honour request spacing
                await self._limiters[service.id].wait_for_slot()
            started = time.perf_counter()
            try:
                response = await self._send(service, html, fmt, options, request_id)
            except httpx.TimeoutException as e:
                error: ServiceError | OperationTimeoutError = OperationTimeoutError(
                    f"request to {service.id}", self.config.timeout, backend="remote"
                )
                error.__cause__ = e
            except httpx.HTTPError as e:
                error = ServiceError(service.id, f"transport error: {e or type(e).__name__}")
                error.__cause__ = e
            else:
                if response.is_success:
                    return response, attempt + 1, time.perf_counter() - started
                error = self._error_from_response(service, response)

            last_error = error
            self._update_service_health(service.id, False, error=str(error))

            retryable = isinstance(error, OperationTimeoutError) or error.retryable
            if not retryable or attempt + 1 >= max_attempts:
                break

            delay = retry_delay(
                attempt,
                self.config.retry_base_delay,
                self.config.retry_max_delay,
                rand=self._rand,
            )
            log.debug(
                "Retrying service",
                service_id=service.id,
                attempt=attempt + 1,
                max_attempts=max_attempts,
                delay=round(delay, 3),
                error=str(error),
            )
            await self._sleep(delay)

        if last_error is None:
            raise ServiceError(service.id, "no request attempted")
        raise last_error

    async def _send(
        self,
        service: ConversionService,
        html: str,
        fmt: str,
        options: dict[str, Any],
        request_id: str,
    ) -> httpx.Response:
        headers = {"User-Agent": USER_AGENT, **service.headers, **self._auth_headers(service)}
        kwargs: dict[str, Any] = {"headers": headers, "timeout": self.config.timeout}

        if service.method == "GET":
            kwargs["params"] = {"format": fmt, "requestId": request_id}
        elif service.request_format == "json":
            kwargs["json"] = {
                "html": html,
                "format": fmt,
                "options": options,
                "timestamp": datetime.now(UTC).isoformat(),
                "requestId": request_id,
            }
        elif service.request_format == "form-data":
            fields = {"html": html, "format": fmt, "requestId": request_id}
            if options:
                fields["options"] = json.dumps(options)
            # Multipart (not urlencoded) so large markup is sent as a part
            kwargs["files"] = {key: (None, value) for key, value in fields.items()}
        else:
            headers["Content-Type"] = "text/html; charset=utf-8"
            kwargs["content"] = html.encode("utf-8")

        return await self._client.request(service.method, service.request_url, **kwargs)

    def _auth_headers(self, service: ConversionService) -> dict[str, str]:
        auth = self.config.authentication.get(service.id)
        if auth is None:
            return {}
        headers: dict[str, str] = {}
        api_key = auth.resolve_api_key()
        if api_key:
            headers["X-API-Key"] = api_key
        token = auth.resolve_bearer_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        headers.update(auth.headers)
        return headers

    def _error_from_response(
        self, service: ConversionService, response: httpx.Response
    ) -> ServiceError:
        code = None
        message = f"HTTP {response.status_code}: {response.reason_phrase}"
        details = None
        with contextlib.suppress(ValueError):
            body = response.json()
            if isinstance(body, dict) and isinstance(body.get("error"), dict):
                code = body["error"].get("code")
                message = body["error"].get("message") or message
                details = body["error"].get("details")
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            message = f"{message} (retry after {retry_after}s)" if retry_after else message
        return ServiceError(
            service.id, message, status_code=response.status_code, code=code, details=details
        )

    def _normalize_response(
        self, service: ConversionService, response: httpx.Response, fmt: str
    ) -> tuple[str, str, dict[str, Any]]:
        """Turn a successful response into ``(content, mime_type, metadata)``."""
        default_mime = FORMAT_MIME_TYPES.get(fmt, "application/octet-stream")
        header_mime = response.headers.get("content-type", "").split(";")[0].strip()

        if service.response_format == "json":
            try:
                body = response.json()
            except ValueError as e:
                raise ServiceError(
                    service.id, "response is not valid JSON", code="INVALID_RESPONSE"
                ) from e
            if not isinstance(body, dict):
                raise ServiceError(service.id, "unexpected response body", code="INVALID_RESPONSE")
            if not body.get("success", False):
                error = body.get("error") or {}
                if not isinstance(error, dict):
                    error = {"message": str(error)}
                raise ServiceError(
                    service.id,
                    error.get("message", "service reported failure"),
                    code=error.get("code", "INVALID_RESPONSE"),
                    details=error.get("details"),
                )
            data = body.get("data")
            if not isinstance(data, dict) or not data.get("content"):
                raise ServiceError(
                    service.id, "response missing data.content", code="INVALID_RESPONSE"
                )
            mime_type = self._check_mime_type(service, data.get("mimeType"), default_mime)
            return data["content"], mime_type, body.get("metadata") or {}

        if service.response_format == "base64":
            content = response.text.strip()
            if not content:
                raise ServiceError(service.id, "empty response body", code="INVALID_RESPONSE")
            return content, default_mime, {}

        if service.response_format == "binary":
            if not response.content:
                raise ServiceError(service.id, "empty response body", code="INVALID_RESPONSE")
            content = base64.b64encode(response.content).decode("ascii")
            return content, self._check_mime_type(service, header_mime, default_mime), {}

        if not response.text:
            raise ServiceError(service.id, "empty response body", code="INVALID_RESPONSE")
        if header_mime == "text/plain":
            header_mime = ""
        return response.text, self._check_mime_type(service, header_mime, default_mime), {}

    def _check_mime_type(
        self, service: ConversionService, reported: str | None, expected: str
    ) -> str:
        """Return ``expected`` unless the service reported a different concrete type."""
        reported = (reported or "").split(";")[0].strip().lower()
        if reported and reported not in _GENERIC_MIME_TYPES and reported != expected:
            raise ServiceError(
                service.id,
                f"service returned {reported}, expected {expected}",
                code="MIME_MISMATCH",
            )
        return expected

    # -- lifecycle ---------------------------------------------------------

    async def aclose(self) -> None:
        """Stop health checks and close the owned HTTP client."""
        if self._health_task is not None:
            self._health_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._health_task
            self._health_task = None
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> RemoteServiceClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
