"""Runtime capability probing for conversion backends.

The probe asks a :class:`CapabilityProvider` which backends the host can run,
optionally times a small benchmark per backend, and folds the results into a
:class:`CapabilityAssessment` with an overall score and a recommended tier.
"""

from __future__ import annotations

import asyncio
import contextlib
import importlib.util
import io
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Protocol

from tierconvert.config.constants import (
    CANVAS_BENCHMARK_BUDGET,
    ENGINE_BENCHMARK_BUDGET,
    NETWORK_AVAILABLE_SCORE,
    NETWORK_UNAVAILABLE_SCORE,
    SKIPPED_BENCHMARK_SCORE,
)
from tierconvert.config.settings import CapabilityConfig, EngineConfig, RemoteConfig
from tierconvert.converters.base import BACKEND_PRIORITY, BackendId
from tierconvert.engine.launcher import find_engine_executable
from tierconvert.utils.logging import get_logger

log = get_logger(__name__)

# Baseline engine score when it is present but not benchmarked
ENGINE_BASE_SCORE = 0.9
DEFAULT_NETWORK_CONCURRENCY = 6


# =============================================================================
# Providers
# =============================================================================


class CapabilityProvider(Protocol):
    """Host description of which backends are linked for this platform."""

    def engine_executable(self) -> str | None: ...

    def has_drawing_surface(self) -> bool: ...

    def has_network(self) -> bool: ...

    def cors_enabled(self) -> bool: ...

    def network_concurrency(self) -> int: ...


class RuntimeCapabilityProvider:
    """Describes the local runtime: PATH, installed packages and configuration."""

    def __init__(
        self,
        engine_config: EngineConfig | None = None,
        remote_config: RemoteConfig | None = None,
    ) -> None:
        self.engine_config = engine_config or EngineConfig()
        self.remote_config = remote_config or RemoteConfig()

    def engine_executable(self) -> str | None:
        return find_engine_executable(self.engine_config.executable_path)

    def has_drawing_surface(self) -> bool:
        return importlib.util.find_spec("PIL") is not None

    def has_network(self) -> bool:
        if not self.remote_config.enabled:
            return False
        return self.remote_config.use_default_services or any(
            self.remote_config.services.values()
        )

    def cors_enabled(self) -> bool:
        return self.remote_config.cors_enabled

    def network_concurrency(self) -> int:
        return DEFAULT_NETWORK_CONCURRENCY


@dataclass
class StaticCapabilityProvider:
    """Fixed capability description, for embedded hosts and tests."""

    engine_path: str | None = None
    drawing_surface: bool = True
    network: bool = False
    cors: bool = True
    concurrency: int = DEFAULT_NETWORK_CONCURRENCY

    def engine_executable(self) -> str | None:
        return self.engine_path

    def has_drawing_surface(self) -> bool:
        return self.drawing_surface

    def has_network(self) -> bool:
        return self.network

    def cors_enabled(self) -> bool:
        return self.cors

    def network_concurrency(self) -> int:
        return self.concurrency


# =============================================================================
# Assessment model
# =============================================================================


@dataclass
class BackendCapability:
    backend: BackendId
    available: bool
    performance: float
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "available": self.available,
            "performance": round(self.performance, 3),
            "details": dict(self.details),
        }


@dataclass
class CapabilityAssessment:
    """Scored snapshot of which backends are usable right now."""

    backend_scores: dict[BackendId, BackendCapability]
    overall_score: float
    recommended_tier: BackendId
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def is_available(self, backend: BackendId) -> bool:
        capability = self.backend_scores.get(backend)
        return capability is not None and capability.available

    def available_backends(self) -> list[BackendId]:
        """Available backends in fixed priority order."""
        return [b for b in BACKEND_PRIORITY if self.is_available(b)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "backend_scores": {b.value: c.to_dict() for b, c in self.backend_scores.items()},
            "overall_score": self.overall_score,
            "recommended_tier": self.recommended_tier.value,
            "timestamp": self.timestamp.isoformat(),
        }


def _unavailable(backend: BackendId, reason: str) -> BackendCapability:
    return BackendCapability(backend, available=False, performance=0.0, details={"reason": reason})


def _duration_score(duration: float, budget: float) -> float:
    return max(0.0, min(1.0, 1.0 - duration / budget))


def _canvas_benchmark() -> float:
    """Draw and encode a small image; returns elapsed seconds."""
    from PIL import Image, ImageDraw

    started = time.perf_counter()
    image = Image.new("RGB", (100, 100), "white")
    draw = ImageDraw.Draw(image)
    for i in range(0, 100, 5):
        draw.rectangle((i, i, 100 - i, 100 - i), outline=(i * 2, 0, 255 - i * 2))
        draw.text((2, i), "Aa", fill="black")
    image.save(io.BytesIO(), format="PNG")
    return time.perf_counter() - started


async def _engine_benchmark(executable: str, timeout: float) -> float:
    """Time ``<engine> --version``; returns elapsed seconds."""
    started = time.perf_counter()
    process = await asyncio.create_subprocess_exec(
        executable,
        "--version",
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
    )
    try:
        await asyncio.wait_for(process.communicate(), timeout)
    except BaseException:
        # Also reached when an enclosing timeout cancels the benchmark
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()
        raise
    if process.returncode != 0:
        raise RuntimeError(f"{executable} --version exited with {process.returncode}")
    return time.perf_counter() - started


# =============================================================================
# CapabilityProbe
# =============================================================================


class CapabilityProbe:
    """Detects available backends and recommends a tier.

    Assessments are cached on the instance until :meth:`clear_cache`.
    """

    def __init__(
        self,
        provider: CapabilityProvider | None = None,
        config: CapabilityConfig | None = None,
        engine_benchmark: Callable[[str, float], Awaitable[float]] = _engine_benchmark,
        canvas_benchmark: Callable[[], float] = _canvas_benchmark,
    ) -> None:
        self.provider = provider or RuntimeCapabilityProvider()
        self.config = config or CapabilityConfig()
        self._engine_benchmark = engine_benchmark
        self._canvas_benchmark = canvas_benchmark
        self._cache: CapabilityAssessment | None = None
        self._lock = asyncio.Lock()

    # -- single backend ----------------------------------------------------

    async def detect(
        self,
        backend: BackendId,
        *,
        intensive: bool | None = None,
        timeout: float | None = None,
        skip_performance_tests: bool | None = None,
    ) -> BackendCapability:
        """Probe one backend. Never raises; failures report ``available=False``."""
        intensive = self.config.intensive if intensive is None else intensive
        timeout = self.config.probe_timeout if timeout is None else timeout
        skip = (
            self.config.skip_performance_tests
            if skip_performance_tests is None
            else skip_performance_tests
        )

        try:
            if backend is BackendId.ENGINE:
                coro = self._detect_engine(intensive, timeout)
            elif backend is BackendId.CANVAS:
                coro = self._detect_canvas(skip, timeout)
            elif backend is BackendId.REMOTE:
                coro = self._detect_network()
            else:
                coro = self._detect_markup()
            capability = await asyncio.wait_for(coro, timeout)
        except TimeoutError:
            log.warning("Capability probe timed out", backend=backend.value, timeout=timeout)
            capability = _unavailable(backend, f"probe timed out after {timeout}s")
        except Exception as e:
            log.warning("Capability probe failed", backend=backend.value, error=str(e))
            capability = _unavailable(backend, str(e) or type(e).__name__)

        return capability

    async def _detect_engine(self, intensive: bool, timeout: float) -> BackendCapability:
        executable = self.provider.engine_executable()
        if not executable:
            return _unavailable(BackendId.ENGINE, "no engine executable")

        performance = ENGINE_BASE_SCORE
        details: dict[str, Any] = {"executable": executable, "benchmarked": False}
        if intensive:
            duration = await self._engine_benchmark(executable, timeout)
            performance = min(performance, _duration_score(duration, ENGINE_BENCHMARK_BUDGET))
            details.update(benchmarked=True, benchmark_seconds=round(duration, 4))
        return BackendCapability(BackendId.ENGINE, True, performance, details)

    async def _detect_canvas(self, skip: bool, timeout: float) -> BackendCapability:
        if not self.provider.has_drawing_surface():
            return _unavailable(BackendId.CANVAS, "no drawing surface")

        if skip:
            return BackendCapability(
                BackendId.CANVAS, True, SKIPPED_BENCHMARK_SCORE, {"benchmarked": False}
            )

        loop = asyncio.get_running_loop()
        duration = await loop.run_in_executor(None, self._canvas_benchmark)
        return BackendCapability(
            BackendId.CANVAS,
            True,
            _duration_score(duration, CANVAS_BENCHMARK_BUDGET),
            {"benchmarked": True, "benchmark_seconds": round(duration, 4)},
        )

    async def _detect_network(self) -> BackendCapability:
        if not self.provider.has_network():
            return _unavailable(BackendId.REMOTE, "no outbound network services")
        return BackendCapability(
            BackendId.REMOTE,
            True,
            NETWORK_AVAILABLE_SCORE,
            {
                "cors_enabled": self.provider.cors_enabled(),
                "concurrent_limit": self.provider.network_concurrency(),
            },
        )

    async def _detect_markup(self) -> BackendCapability:
        return BackendCapability(BackendId.MARKUP, True, 1.0, {"always_available": True})

    # -- assessment --------------------------------------------------------

    def _gate(self, capability: BackendCapability) -> BackendCapability:
        """Apply selection thresholds; below-threshold backends become unavailable."""
        if not capability.available:
            return capability

        reason = None
        if capability.backend is BackendId.ENGINE:
            threshold = self.config.engine_threshold
            if capability.performance <= threshold:
                reason = f"performance {capability.performance:.2f} <= {threshold}"
        elif capability.backend is BackendId.CANVAS:
            threshold = self.config.canvas_threshold
            if capability.performance <= threshold:
                reason = f"performance {capability.performance:.2f} <= {threshold}"
        elif capability.backend is BackendId.REMOTE:
            if not capability.details.get("cors_enabled"):
                reason = "cross-origin requests disabled"

        if reason is None:
            return capability
        return replace(
            capability,
            available=False,
            details={**capability.details, "below_threshold": True, "reason": reason},
        )

    def _overall_score(self, scores: dict[BackendId, BackendCapability]) -> float:
        weights = self.config.weights
        network_available = BackendId.REMOTE in scores and (
            scores[BackendId.REMOTE].available
            or scores[BackendId.REMOTE].details.get("below_threshold", False)
        )
        network_score = NETWORK_AVAILABLE_SCORE if network_available else NETWORK_UNAVAILABLE_SCORE
        total = (
            scores[BackendId.ENGINE].performance * weights.engine
            + scores[BackendId.CANVAS].performance * weights.canvas
            + network_score * weights.network
        )
        return round(min(1.0, total), 2)

    @staticmethod
    def _recommend(scores: dict[BackendId, BackendCapability]) -> BackendId:
        for backend in BACKEND_PRIORITY:
            if scores[backend].available:
                return backend
        return BackendId.MARKUP

    def build_assessment(self, raw: dict[BackendId, BackendCapability]) -> CapabilityAssessment:
        """Gate raw capabilities and compute score and recommendation."""
        scores = {backend: self._gate(raw[backend]) for backend in BACKEND_PRIORITY}
        return CapabilityAssessment(
            backend_scores=scores,
            overall_score=self._overall_score(scores),
            recommended_tier=self._recommend(scores),
        )

    async def get_complete_assessment(
        self, *, cache: bool = True, timeout: float | None = None
    ) -> CapabilityAssessment:
        """Probe every backend concurrently and assess.

        Args:
            cache: Return the cached assessment when present, and store the new one
            timeout: Per-probe timeout in seconds
        """
        if cache and self._cache is not None:
            return self._cache

        async with self._lock:
            if cache and self._cache is not None:
                return self._cache

            started = time.perf_counter()
            results = await asyncio.gather(
                *(self.detect(backend, timeout=timeout) for backend in BACKEND_PRIORITY)
            )
            assessment = self.build_assessment(dict(zip(BACKEND_PRIORITY, results, strict=True)))
            log.info(
                "Capability assessment complete",
                recommended_tier=assessment.recommended_tier.value,
                overall_score=assessment.overall_score,
                available=[b.value for b in assessment.available_backends()],
                duration=round(time.perf_counter() - started, 3),
            )
            if cache:
                self._cache = assessment
            return assessment

    def _quick_available(self, backend: BackendId) -> bool:
        if backend is BackendId.ENGINE:
            return (
                self.provider.engine_executable() is not None
                and ENGINE_BASE_SCORE > self.config.engine_threshold
            )
        if backend is BackendId.CANVAS:
            return (
                self.provider.has_drawing_surface()
                and SKIPPED_BENCHMARK_SCORE > self.config.canvas_threshold
            )
        if backend is BackendId.REMOTE:
            return self.provider.has_network() and self.provider.cors_enabled()
        return True

    def get_recommended_tier(self, assessment: CapabilityAssessment | None = None) -> BackendId:
        """Recommended tier from an assessment, the cache, or a quick provider check."""
        assessment = assessment or self._cache
        if assessment is not None:
            return assessment.recommended_tier
        for backend in BACKEND_PRIORITY:
            try:
                if self._quick_available(backend):
                    return backend
            except Exception as e:
                log.debug("Quick capability check failed", backend=backend.value, error=str(e))
        return BackendId.MARKUP

    def has_capability(self, backend: BackendId) -> bool:
        """Whether ``backend`` is usable, from the cached assessment when present."""
        if backend is BackendId.MARKUP:
            return True
        if self._cache is not None:
            return self._cache.is_available(backend)
        try:
            return self._quick_available(backend)
        except Exception as e:
            log.debug("Quick capability check failed", backend=backend.value, error=str(e))
            return False

    @property
    def cached_assessment(self) -> CapabilityAssessment | None:
        return self._cache

    def clear_cache(self) -> None:
        """Drop the cached assessment."""
        self._cache = None
