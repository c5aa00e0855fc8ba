"""Tests for CapabilityProbe."""

import asyncio

import pytest

from tierconvert.config.settings import CapabilityConfig
from tierconvert.converters.base import BackendId
from tierconvert.core.capability import (
    CapabilityProbe,
    RuntimeCapabilityProvider,
    StaticCapabilityProvider,
    _engine_benchmark,
)


async def _fast_engine(executable: str, timeout: float) -> float:
    return 0.1


def _probe(provider: StaticCapabilityProvider, canvas_seconds: float = 0.1, **config):
    return CapabilityProbe(
        provider,
        CapabilityConfig(**config),
        engine_benchmark=_fast_engine,
        canvas_benchmark=lambda: canvas_seconds,
    )


class TestAssessment:
    """Tests for get_complete_assessment."""

    async def test_canvas_recommended_without_engine(self):
        provider = StaticCapabilityProvider(
            engine_path=None, drawing_surface=True, network=True, cors=True
        )
        probe = _probe(provider, canvas_seconds=0.4)

        assessment = await probe.get_complete_assessment()

        assert assessment.recommended_tier is BackendId.CANVAS
        canvas = assessment.backend_scores[BackendId.CANVAS]
        assert canvas.available
        assert abs(canvas.performance - 0.6) < 1e-9
        assert not assessment.is_available(BackendId.ENGINE)
        assert assessment.available_backends() == [
            BackendId.CANVAS,
            BackendId.REMOTE,
            BackendId.MARKUP,
        ]
        # 0.6 * 0.3 + 0.8 * 0.2
        assert assessment.overall_score == 0.34

    async def test_engine_recommended_when_present(self):
        provider = StaticCapabilityProvider(engine_path="/usr/bin/chromium", network=True)
        assessment = await _probe(provider).get_complete_assessment()

        assert assessment.recommended_tier is BackendId.ENGINE
        engine = assessment.backend_scores[BackendId.ENGINE]
        assert engine.performance == 0.9
        assert engine.details["benchmarked"] is False
        # 0.9 * 0.5 + 0.9 * 0.3 + 0.8 * 0.2
        assert assessment.overall_score == 0.88

    async def test_nothing_but_markup(self):
        provider = StaticCapabilityProvider(drawing_surface=False, network=False)
        assessment = await _probe(provider).get_complete_assessment()

        assert assessment.recommended_tier is BackendId.MARKUP
        assert assessment.available_backends() == [BackendId.MARKUP]
        assert assessment.overall_score == 0.04

    async def test_overall_score_is_capped(self):
        provider = StaticCapabilityProvider(engine_path="/usr/bin/chromium", network=True)
        probe = _probe(provider, weights={"engine": 1.0, "canvas": 1.0, "network": 1.0})

        assessment = await probe.get_complete_assessment()

        assert assessment.overall_score == 1.0

    async def test_to_dict(self):
        provider = StaticCapabilityProvider(network=False)
        data = (await _probe(provider).get_complete_assessment()).to_dict()

        assert data["recommended_tier"] == "canvas"
        assert set(data["backend_scores"]) == {"engine", "canvas", "remote", "markup"}
        assert data["backend_scores"]["engine"]["details"]["reason"] == "no engine executable"


class TestThresholds:
    async def test_slow_engine_is_gated(self):
        async def slow_engine(executable: str, timeout: float) -> float:
            return 1.6

        provider = StaticCapabilityProvider(engine_path="/usr/bin/chromium")
        probe = CapabilityProbe(
            provider,
            CapabilityConfig(intensive=True),
            engine_benchmark=slow_engine,
            canvas_benchmark=lambda: 0.1,
        )

        assessment = await probe.get_complete_assessment()

        engine = assessment.backend_scores[BackendId.ENGINE]
        assert not engine.available
        assert engine.details["below_threshold"] is True
        assert engine.details["benchmarked"] is True
        assert assessment.recommended_tier is BackendId.CANVAS

    async def test_canvas_at_threshold_is_unavailable(self):
        provider = StaticCapabilityProvider(network=False)
        probe = _probe(provider, canvas_threshold=0.5, skip_performance_tests=True)

        assessment = await probe.get_complete_assessment()

        canvas = assessment.backend_scores[BackendId.CANVAS]
        assert canvas.performance == 0.5
        assert not canvas.available
        assert assessment.recommended_tier is BackendId.MARKUP

    async def test_remote_requires_cors(self):
        provider = StaticCapabilityProvider(drawing_surface=False, network=True, cors=False)
        assessment = await _probe(provider).get_complete_assessment()

        remote = assessment.backend_scores[BackendId.REMOTE]
        assert not remote.available
        assert remote.details["reason"] == "cross-origin requests disabled"
        assert assessment.recommended_tier is BackendId.MARKUP
        # A reachable network counts toward the score even when gated
        assert assessment.overall_score == 0.16


class TestProbeFailures:
    """detect never raises."""

    async def test_benchmark_error_reports_unavailable(self):
        def broken():
            raise RuntimeError("surface lost")

        probe = CapabilityProbe(
            StaticCapabilityProvider(),
            CapabilityConfig(),
            engine_benchmark=_fast_engine,
            canvas_benchmark=broken,
        )

        capability = await probe.detect(BackendId.CANVAS)

        assert not capability.available
        assert capability.details["reason"] == "surface lost"

    async def test_probe_timeout(self):
        async def hanging(executable: str, timeout: float) -> float:
            await asyncio.sleep(5)
            return 0.0

        probe = CapabilityProbe(
            StaticCapabilityProvider(engine_path="/usr/bin/chromium"),
            engine_benchmark=hanging,
        )

        capability = await probe.detect(BackendId.ENGINE, intensive=True, timeout=0.01)

        assert not capability.available
        assert "timed out" in capability.details["reason"]

    async def test_provider_error_reports_unavailable(self):
        class BrokenProvider(StaticCapabilityProvider):
            def has_network(self) -> bool:
                raise OSError("no route")

        probe = _probe(BrokenProvider())

        assessment = await probe.get_complete_assessment()

        assert not assessment.is_available(BackendId.REMOTE)
        assert assessment.is_available(BackendId.MARKUP)


class TestCaching:
    async def test_assessment_is_cached(self):
        calls = []

        def counting() -> float:
            calls.append(1)
            return 0.1

        probe = CapabilityProbe(
            StaticCapabilityProvider(), engine_benchmark=_fast_engine, canvas_benchmark=counting
        )

        first = await probe.get_complete_assessment()
        second = await probe.get_complete_assessment()

        assert first is second
        assert probe.cached_assessment is first
        assert len(calls) == 1

        fresh = await probe.get_complete_assessment(cache=False)
        assert fresh is not first
        assert probe.cached_assessment is first

        probe.clear_cache()
        assert probe.cached_assessment is None

    async def test_concurrent_assessments_probe_once(self):
        calls = []

        def counting() -> float:
            calls.append(1)
            return 0.1

        probe = CapabilityProbe(
            StaticCapabilityProvider(), engine_benchmark=_fast_engine, canvas_benchmark=counting
        )

        results = await asyncio.gather(*(probe.get_complete_assessment() for _ in range(5)))

        assert all(r is results[0] for r in results)
        assert len(calls) == 1


class TestQuickChecks:
    def test_recommended_tier_without_assessment(self):
        probe = _probe(StaticCapabilityProvider(engine_path="/usr/bin/chromium"))
        assert probe.get_recommended_tier() is BackendId.ENGINE

    def test_has_capability_without_assessment(self):
        probe = _probe(StaticCapabilityProvider(drawing_surface=False, network=True, cors=False))

        assert probe.has_capability(BackendId.MARKUP)
        assert not probe.has_capability(BackendId.CANVAS)
        assert not probe.has_capability(BackendId.REMOTE)

    async def test_has_capability_uses_cached_assessment(self):
        probe = _probe(StaticCapabilityProvider(network=True), canvas_seconds=0.9)

        await probe.get_complete_assessment()

        # 1 - 0.9 falls below the canvas threshold
        assert not probe.has_capability(BackendId.CANVAS)
        assert probe.get_recommended_tier() is BackendId.REMOTE


class TestRuntimeProvider:
    def test_network_requires_services(self):
        provider = RuntimeCapabilityProvider()
        provider.remote_config = provider.remote_config.model_copy(
            update={"use_default_services": False, "services": {}}
        )
        assert provider.has_network() is False

    def test_drawing_surface_detected(self):
        assert RuntimeCapabilityProvider().has_drawing_surface() is True


class HangingProcess:
    """Subprocess stand-in whose output never arrives until killed."""

    returncode = None

    def __init__(self) -> None:
        self.killed = False
        self._exited = asyncio.Event()

    async def communicate(self):
        await self._exited.wait()
        return b"", b""

    def kill(self) -> None:
        self.killed = True
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return -9


class TestEngineBenchmark:
    async def test_child_killed_when_outer_timeout_fires(self, monkeypatch):
        process = HangingProcess()

        async def fake_exec(*args, **kwargs):
            return process

        monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)

        with pytest.raises(TimeoutError):
            await asyncio.wait_for(_engine_benchmark("/usr/bin/chromium", 5.0), 0.01)

        assert process.killed
