"""Custom exceptions for TierConvert."""

from typing import Any


class TierConvertError(Exception):
    """Base exception class for TierConvert."""

    pass


class ConversionError(TierConvertError):
    """Error during document conversion."""

    def __init__(
        self, message: str, backend: str | None = None, cause: Exception | None = None
    ) -> None:
        self.backend = backend
        self.cause = cause
        prefix = f"[{backend}] " if backend else ""
        super().__init__(f"{prefix}{message}")


class ValidationError(TierConvertError):
    """The input document is defective; never triggers a fallback."""

    def __init__(self, errors: list[str], warnings: list[str] | None = None) -> None:
        self.errors = errors
        self.warnings = warnings or []
        first = errors[0] if errors else "Document failed validation"
        super().__init__(f"Validation failed: {first}")


class BackendUnavailableError(ConversionError):
    """Backend cannot run in the current runtime."""

    def __init__(self, backend: str, reason: str) -> None:
        super().__init__(f"Backend unavailable: {reason}", backend=backend)
        self.reason = reason


class OperationTimeoutError(ConversionError):
    """An operation exceeded its deadline."""

    def __init__(self, operation: str, timeout: float, backend: str | None = None) -> None:
        super().__init__(f"{operation} timed out after {timeout}s", backend=backend)
        self.operation = operation
        self.timeout = timeout


class EngineError(ConversionError):
    """Rendering-engine related error."""

    pass


class LaunchFailedError(EngineError):
    """The rendering-engine process could not be started."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(f"Engine launch failed: {message}", backend="engine", cause=cause)


class PoolExhaustedError(EngineError):
    """Every pool slot is in use and none could be reclaimed."""

    def __init__(self, max_instances: int) -> None:
        super().__init__(
            f"Process pool exhausted ({max_instances} instances in use)", backend="engine"
        )
        self.max_instances = max_instances


class EngineProtocolError(EngineError):
    """An engine command returned an error reply."""

    def __init__(self, method: str, message: str, code: int | None = None) -> None:
        super().__init__(f"{method} failed: {message}", backend="engine")
        self.method = method
        self.code = code


class ServiceError(ConversionError):
    """A remote conversion service returned an error or bad status."""

    def __init__(
        self,
        service_id: str,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(f"Service {service_id}: {message}", backend="remote")
        self.service_id = service_id
        self.status_code = status_code
        self.code = code
        self.details = details

    @property
    def retryable(self) -> bool:
        """Whether the same service may be retried after this error."""
        if self.status_code is None:
            return True
        return self.status_code >= 500 or self.status_code in (408, 429)


class RateLimitError(ServiceError):
    """Rate limit exceeded for a service."""

    def __init__(self, service_id: str, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        message = f"Rate limited, retry after {retry_after}s" if retry_after else "Rate limited"
        super().__init__(service_id, message)

    @property
    def retryable(self) -> bool:
        return False


class ServicesExhaustedError(ConversionError):
    """All remote services for a category failed."""

    def __init__(self, category: str, errors: list[tuple[str, Exception]]) -> None:
        self.category = category
        self.errors = errors
        detail = "; ".join(f"{sid}: {err}" for sid, err in errors) or "no services available"
        super().__init__(f"All {category} services failed: {detail}", backend="remote")

    @property
    def last_error(self) -> Exception | None:
        return self.errors[-1][1] if self.errors else None


class FallbackExhaustedError(ConversionError):
    """All fallback conversion attempts failed."""

    def __init__(
        self,
        attempts: list[Any],
        elapsed: float,
        last_error: Exception | None = None,
    ) -> None:
        self.attempts = attempts
        self.elapsed = elapsed
        self.last_error = last_error
        tiers = [getattr(a, "tier", str(a)) for a in attempts]
        super().__init__(
            f"All conversion attempts failed after {elapsed:.2f}s "
            f"(tried {', '.join(str(t) for t in tiers) or 'nothing'}): {last_error}",
            cause=last_error,
        )


class ConversionCancelledError(TierConvertError):
    """The caller cancelled the conversion."""

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason
        super().__init__(f"Conversion cancelled: {reason}" if reason else "Conversion cancelled")
