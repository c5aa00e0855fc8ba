"""Tier orchestration with bounded fallback.

The orchestrator asks the :class:`CapabilityProbe` which backends are usable,
orders them into a candidate list, validates the document once against the
first candidate and then walks the list until a backend succeeds or the
fallback budget is spent.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from tierconvert.config.settings import OrchestratorConfig, TierConvertSettings, get_settings
from tierconvert.converters.base import (
    BACKEND_PRIORITY,
    BackendId,
    BaseConverter,
    ConversionPlugin,
    ConversionResult,
    Document,
    ValidationResult,
    normalize_format,
)
from tierconvert.converters.canvas import CanvasConverter
from tierconvert.converters.engine import EngineConverter
from tierconvert.converters.markup import MarkupConverter
from tierconvert.converters.remote import RemoteConverter
from tierconvert.core.capability import (
    BackendCapability,
    CapabilityAssessment,
    CapabilityProbe,
    CapabilityProvider,
    RuntimeCapabilityProvider,
)
from tierconvert.engine.launcher import EngineLauncher
from tierconvert.engine.pool import ProcessPool
from tierconvert.exceptions import (
    BackendUnavailableError,
    ConversionCancelledError,
    FallbackExhaustedError,
    ValidationError,
)
from tierconvert.remote.client import RemoteServiceClient
from tierconvert.utils.flow_control import CancelToken
from tierconvert.utils.logging import bind_conversion_context, clear_conversion_context, get_logger
from tierconvert.utils.memory import MemoryPressureMonitor

log = get_logger(__name__)


class OrchestratorState(StrEnum):
    IDLE = "idle"
    ASSESSMENT_READY = "assessment_ready"
    TIER_SELECTED = "tier_selected"
    VALIDATING = "validating"
    CONVERTING = "converting"
    FALLBACK_TRIGGERED = "fallback_triggered"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class FallbackTransition:
    from_tier: str
    to_tier: str
    reason: str


@dataclass
class ConversionProgress:
    percentage: int
    operation: str


@dataclass
class UserFeedback:
    """Best-effort notification delivered to feedback callbacks."""

    current_tier: str | None
    capability_limitations: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    progress: ConversionProgress | None = None
    fallback_transition: FallbackTransition | None = None


@dataclass
class AttemptRecord:
    """One conversion attempt in a cascade."""

    tier: str
    success: bool
    duration: float
    error: str | None = None
    error_type: str | None = None


FeedbackCallback = Callable[[UserFeedback], Any]
Candidate = BaseConverter | ConversionPlugin


def _tier_name(candidate: Candidate) -> str:
    if isinstance(candidate, ConversionPlugin):
        return f"plugin:{candidate.name}"
    return candidate.backend_id.value


def _backend_of(tier: str) -> BackendId | None:
    try:
        return BackendId(tier)
    except ValueError:
        return None


# Human-readable notes shown alongside the selected tier
_RECOMMENDATIONS: dict[BackendId, list[str]] = {
    BackendId.ENGINE: [
        "Keep the Chromium installation up to date for best compatibility",
        "Lower pool.max_instances if the host is short on memory",
    ],
    BackendId.CANVAS: [
        "Simplify complex layouts for better canvas rendering",
        "Avoid external resources; the canvas backend does not fetch them",
    ],
    BackendId.REMOTE: [
        "Check network connection stability",
        "Ensure outbound access to the configured conversion services",
    ],
    BackendId.MARKUP: [
        "Install Chromium to enable PDF and image output",
        "Configure a remote conversion service for high-fidelity output",
    ],
}


class TierOrchestrator:
    """Single ``convert`` entry point over every conversion backend.

    Example usage:
        ```python
        async with create_orchestrator() as orchestrator:
            result = await orchestrator.convert(Document.from_file("page.html"), "pdf")
        ```
    """

    def __init__(
        self,
        backends: dict[BackendId, BaseConverter],
        probe: CapabilityProbe,
        config: OrchestratorConfig | None = None,
        memory_monitor: MemoryPressureMonitor | None = None,
        plugins: list[ConversionPlugin] | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            backends: Converter per backend id; backends are closed by :meth:`aclose`
            probe: Capability probe deciding which backends are usable
            config: Tier selection and feedback configuration
            memory_monitor: Optional pressure signal reported as a limitation
            plugins: Initial plugins, which take precedence over every backend
        """
        self.backends = dict(backends)
        self.probe = probe
        self.config = config or OrchestratorConfig()
        self.memory_monitor = memory_monitor

        self._plugins: list[ConversionPlugin] = []
        for plugin in plugins or []:
            self.register_plugin(plugin)
        self._callbacks: list[FeedbackCallback] = []

        self.state = OrchestratorState.IDLE
        self.current_tier: str | None = None
        self._assessment: CapabilityAssessment | None = None

    # -- plugins and feedback ----------------------------------------------

    def register_plugin(self, plugin: ConversionPlugin) -> None:
        """Register a plugin; plugins are kept sorted by priority, highest first."""
        self._plugins.append(plugin)
        self._plugins.sort(key=lambda p: p.priority, reverse=True)
        log.info(
            "Conversion plugin registered",
            plugin=plugin.name,
            version=plugin.version,
            priority=plugin.priority,
            total=len(self._plugins),
        )

    def unregister_plugin(self, name: str) -> bool:
        for index, plugin in enumerate(self._plugins):
            if plugin.name == name:
                del self._plugins[index]
                log.info("Conversion plugin unregistered", plugin=name)
                return True
        return False

    @property
    def plugins(self) -> list[ConversionPlugin]:
        return list(self._plugins)

    def add_feedback_callback(self, callback: FeedbackCallback) -> None:
        self._callbacks.append(callback)

    def remove_feedback_callback(self, callback: FeedbackCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    async def _notify(self, feedback: UserFeedback) -> None:
        if not self.config.enable_user_feedback:
            return
        if not self.config.show_capability_limitations:
            feedback.capability_limitations = []
        if not self.config.show_recommendations:
            feedback.recommendations = []
        if not self.config.show_fallback_transitions:
            feedback.fallback_transition = None
        for callback in list(self._callbacks):
            try:
                outcome = callback(feedback)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                log.warning("Feedback callback failed", error=str(e))

    async def _notify_progress(self, operation: str, percentage: int) -> None:
        if not self.config.show_progress:
            return
        await self._notify(
            UserFeedback(
                current_tier=self.current_tier,
                progress=ConversionProgress(percentage=percentage, operation=operation),
            )
        )

    async def _notify_tier(
        self, tier: str, transition: FallbackTransition | None = None
    ) -> None:
        backend = _backend_of(tier)
        await self._notify(
            UserFeedback(
                current_tier=tier,
                capability_limitations=self.capability_limitations(backend) if backend else [],
                recommendations=list(_RECOMMENDATIONS.get(backend, [])) if backend else [],
                fallback_transition=transition,
            )
        )

    # -- capability --------------------------------------------------------

    async def refresh_assessment(self) -> CapabilityAssessment:
        """Obtain the capability assessment, bounded by ``tier_selection_timeout``.

        When probing times out, only the markup backend is considered usable.
        """
        try:
            assessment = await asyncio.wait_for(
                self.probe.get_complete_assessment(cache=self.config.cache_capability_assessment),
                self.config.tier_selection_timeout,
            )
        except TimeoutError:
            log.warning(
                "Capability assessment timed out, using markup only",
                timeout=self.config.tier_selection_timeout,
            )
            reason = f"assessment timed out after {self.config.tier_selection_timeout}s"
            raw = {
                backend: BackendCapability(backend, False, 0.0, {"reason": reason})
                for backend in BACKEND_PRIORITY
            }
            raw[BackendId.MARKUP] = BackendCapability(BackendId.MARKUP, True, 1.0)
            assessment = self.probe.build_assessment(raw)

        self._assessment = assessment
        self.state = OrchestratorState.ASSESSMENT_READY
        return assessment

    def get_current_assessment(self) -> CapabilityAssessment | None:
        return self._assessment

    def is_available(self, backend: BackendId) -> bool:
        if backend not in self.backends:
            return False
        if backend is BackendId.MARKUP:
            return True
        return self._assessment is not None and self._assessment.is_available(backend)

    def capability_limitations(self, backend: BackendId) -> list[str]:
        """Known limitations of ``backend`` under the current assessment."""
        limitations: list[str] = []
        capability = self._assessment.backend_scores.get(backend) if self._assessment else None
        if backend is BackendId.ENGINE and capability is not None:
            if not capability.available:
                limitations.append("Rendering engine not available")
            elif capability.performance <= self.probe.config.engine_threshold + 0.1:
                limitations.append("Rendering engine performance is limited")
        elif backend is BackendId.CANVAS:
            limitations.append("Canvas output is a text layout; images and CSS are not drawn")
            if capability is not None and capability.performance < 0.5:
                limitations.append("Drawing surface performance is limited")
        elif backend is BackendId.REMOTE and capability is not None:
            if not capability.details.get("cors_enabled", True):
                limitations.append("Cross-origin restrictions may affect remote conversion")
            if capability.details.get("concurrent_limit", 6) < 4:
                limitations.append("Network concurrency is limited")
        elif backend is BackendId.MARKUP:
            limitations.append("Limited to sanitized HTML export")
            limitations.append("No pagination or rasterization")
        if self.memory_monitor is not None and self.memory_monitor.under_pressure():
            limitations.append("System memory is under pressure")
        return limitations

    # -- candidate selection -----------------------------------------------

    def _candidates(
        self,
        document: Document,
        target_format: str | None,
        tier_priority: list[BackendId] | None = None,
    ) -> list[Candidate]:
        candidates: list[Candidate] = [
            p for p in self._plugins if self._plugin_can_handle(p, document, target_format)
        ]

        priority = tier_priority
        if priority is None and self.config.tier_priority:
            priority = [BackendId(name) for name in self.config.tier_priority]

        if priority:
            order = list(dict.fromkeys(priority))
        else:
            recommended = (
                self._assessment.recommended_tier if self._assessment else BackendId.MARKUP
            )
            order = [recommended] + [b for b in BACKEND_PRIORITY if b is not recommended]

        for backend in order:
            if not self.is_available(backend):
                continue
            converter = self.backends[backend]
            if converter.supports_format(target_format):
                candidates.append(converter)
        return candidates

    @staticmethod
    def _plugin_can_handle(
        plugin: ConversionPlugin, document: Document, target_format: str | None
    ) -> bool:
        try:
            return plugin.can_handle(document, target_format)
        except Exception as e:
            log.warning("Plugin can_handle failed", plugin=plugin.name, error=str(e))
            return False

    # -- conversion --------------------------------------------------------

    async def convert(
        self,
        document: Document,
        target_format: str | None = None,
        *,
        cancel: CancelToken | None = None,
        tier_priority: list[BackendId] | None = None,
    ) -> ConversionResult:
        """Convert ``document`` with the best usable backend, falling back on failure.

        Args:
            document: Document to convert
            target_format: Output format; each backend's default when None
            cancel: Optional cancellation token checked between attempts
            tier_priority: Explicit backend order for this call

        Returns:
            ConversionResult annotated with ``tier``, ``fallback_attempts``,
            ``execution_time`` and ``capability_score``

        Raises:
            ValidationError: the document is invalid; no backend was invoked
            BackendUnavailableError: no usable backend produces ``target_format``
            FallbackExhaustedError: every attempted backend failed
            ConversionCancelledError: ``cancel`` was signalled
        """
        started = time.perf_counter()
        fmt = normalize_format(target_format)
        attempts: list[AttemptRecord] = []
        bind_conversion_context(target_format=fmt or "auto")

        try:
            assessment = await self.refresh_assessment()
            candidates = self._candidates(document, fmt, tier_priority)
            if not candidates:
                self.state = OrchestratorState.FAILURE
                raise BackendUnavailableError(
                    "none", f"no available backend produces {fmt or 'the default format'}"
                )

            first = candidates[0]
            self.current_tier = _tier_name(first)
            self.state = OrchestratorState.TIER_SELECTED
            log.info(
                "Selected conversion tier",
                tier=self.current_tier,
                candidates=[_tier_name(c) for c in candidates],
                capability_score=assessment.overall_score,
            )
            await self._notify_tier(self.current_tier)

            self.state = OrchestratorState.VALIDATING
            await self._notify_progress("Validating input document", 10)
            validation = await first.validate(document)
            if not validation.is_valid:
                self.state = OrchestratorState.FAILURE
                log.warning("Document failed validation", errors=validation.errors)
                raise ValidationError(validation.errors, validation.warnings)
            if validation.warnings:
                log.warning("Document validation warnings", warnings=validation.warnings)

            self.state = OrchestratorState.CONVERTING
            await self._notify_progress("Converting document", 30)

            last_error: Exception | None = None
            failures = 0
            for index, candidate in enumerate(candidates):
                if cancel is not None:
                    cancel.raise_if_cancelled()
                tier = _tier_name(candidate)
                self.current_tier = tier
                attempt_started = time.perf_counter()
                try:
                    coro = candidate.convert(document, fmt)
                    result = await (cancel.run(coro) if cancel is not None else coro)
                except (ValidationError, ConversionCancelledError, asyncio.CancelledError):
                    self.state = OrchestratorState.FAILURE
                    raise
                except Exception as e:
                    last_error = e
                    failures += 1
                    attempts.append(
                        AttemptRecord(
                            tier=tier,
                            success=False,
                            duration=time.perf_counter() - attempt_started,
                            error=str(e),
                            error_type=type(e).__name__,
                        )
                    )
                    log.warning(
                        "Tier conversion failed",
                        tier=tier,
                        error=str(e),
                        attempt=failures,
                        max_fallback_attempts=self.config.max_fallback_attempts,
                    )
                    if failures > self.config.max_fallback_attempts:
                        break
                    if index + 1 < len(candidates):
                        next_tier = _tier_name(candidates[index + 1])
                        self.state = OrchestratorState.FALLBACK_TRIGGERED
                        await self._notify_tier(
                            next_tier, FallbackTransition(tier, next_tier, str(e))
                        )
                        await self._notify_progress(
                            f"Retrying with tier {next_tier}", min(90, 30 + failures * 10)
                        )
                    continue

                attempts.append(
                    AttemptRecord(
                        tier=tier, success=True, duration=time.perf_counter() - attempt_started
                    )
                )
                self.state = OrchestratorState.SUCCESS
                elapsed = time.perf_counter() - started
                result.metadata.update(
                    tier=tier,
                    fallback_attempts=failures,
                    execution_time=elapsed,
                    capability_score=assessment.overall_score,
                    attempted_tiers=[a.tier for a in attempts],
                )
                log.info(
                    "Conversion complete",
                    tier=tier,
                    fallback_attempts=failures,
                    mime_type=result.mime_type,
                    size=result.size,
                    duration=round(elapsed, 3),
                )
                await self._notify_progress("Conversion complete", 100)
                return result

            self.state = OrchestratorState.FAILURE
            elapsed = time.perf_counter() - started
            log.error(
                "All conversion attempts failed",
                attempts=[a.tier for a in attempts],
                duration=round(elapsed, 3),
                error=str(last_error),
            )
            raise FallbackExhaustedError(attempts, elapsed, last_error) from last_error
        finally:
            clear_conversion_context("target_format")

    async def validate(self, document: Document) -> ValidationResult:
        """Validate against the tier ``convert`` would pick first, with selection context."""
        try:
            assessment = await self.refresh_assessment()
            candidates = self._candidates(document, None)
            if not candidates:
                return ValidationResult(is_valid=False, errors=["No conversion backend available"])
            first = candidates[0]
            validation = await first.validate(document)
        except Exception as e:
            log.error("Validation failed", error=str(e))
            return ValidationResult(is_valid=False, errors=[f"Validation error: {e}"])

        validation.context.update(
            validation_tier=_tier_name(first),
            capability_score=assessment.overall_score,
            alternative_tiers=[_tier_name(c) for c in candidates[1:]],
        )
        return validation

    async def get_supported_formats(self) -> list[str]:
        """MIME types producible by available backends and registered plugins."""
        await self.refresh_assessment()
        formats: dict[str, None] = {}
        for backend in BACKEND_PRIORITY:
            if self.is_available(backend):
                formats.update(dict.fromkeys(self.backends[backend].get_output_formats()))
        for plugin in self._plugins:
            formats.update(dict.fromkeys(plugin.get_output_formats()))
        return list(formats)

    def reset(self) -> None:
        """Forget the assessment and current tier, and clear the probe cache."""
        self._assessment = None
        self.current_tier = None
        self.state = OrchestratorState.IDLE
        self.probe.clear_cache()
        log.debug("Orchestrator reset")

    # -- lifecycle ---------------------------------------------------------

    async def aclose(self) -> None:
        """Close every backend (and the pool or client a backend owns)."""
        for backend in self.backends.values():
            try:
                await backend.aclose()
            except Exception as e:
                log.warning(
                    "Failed to close backend", backend=backend.backend_id.value, error=str(e)
                )

    async def __aenter__(self) -> TierOrchestrator:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()


def create_orchestrator(
    settings: TierConvertSettings | None = None,
    provider: CapabilityProvider | None = None,
) -> TierOrchestrator:
    """Wire every backend from settings.

    The orchestrator owns the engine pool and the remote client it creates
    here; both are released by :meth:`TierOrchestrator.aclose`.
    """
    settings = settings or get_settings()
    memory_monitor = (
        MemoryPressureMonitor(threshold=settings.memory.threshold)
        if settings.memory.enabled
        else None
    )

    launcher = EngineLauncher(
        executable=settings.engine.executable_path,
        headless=settings.engine.headless,
        extra_args=settings.engine.extra_args,
        launch_timeout=settings.pool.launch_timeout,
        kill_timeout=settings.pool.kill_timeout,
        command_timeout=settings.engine.command_timeout,
    )
    pool = ProcessPool(
        launcher,
        max_instances=settings.pool.max_instances,
        idle_timeout=settings.pool.idle_timeout,
        reuse_instances=settings.pool.reuse_instances,
        sweep_interval=settings.pool.sweep_interval,
        memory_monitor=memory_monitor,
    )
    client = RemoteServiceClient(settings.remote)

    backends: dict[BackendId, BaseConverter] = {
        BackendId.ENGINE: EngineConverter(pool, settings.engine, owns_pool=True),
        BackendId.CANVAS: CanvasConverter(settings.canvas),
        BackendId.REMOTE: RemoteConverter(client, owns_client=True),
        BackendId.MARKUP: MarkupConverter(settings.markup),
    }
    probe = CapabilityProbe(
        provider or RuntimeCapabilityProvider(settings.engine, settings.remote),
        settings.capability,
    )
    return TierOrchestrator(backends, probe, settings.orchestrator, memory_monitor)
