"""Tests for RemoteServiceClient."""

import asyncio
import base64
import json

import httpx
import pytest

from tierconvert.config.settings import AuthConfig, RemoteConfig, ServiceConfig
from tierconvert.converters.base import Document
from tierconvert.exceptions import (
    OperationTimeoutError,
    ServiceError,
    ServicesExhaustedError,
    ValidationError,
)
from tierconvert.remote.client import RemoteServiceClient
from tierconvert.remote.defaults import DEFAULT_SERVICES, build_registry
from tierconvert.remote.models import HealthStatus, ServiceHealth

PDF_BYTES = b"%PDF-1.7 fake"


def _success(content: str = "JVBERi0xLjc=", mime: str = "application/pdf") -> httpx.Response:
    return httpx.Response(
        200,
        json={"success": True, "data": {"content": content, "mimeType": mime}, "metadata": {}},
    )


def _config(*services: ServiceConfig, **overrides) -> RemoteConfig:
    values = {
        "use_default_services": False,
        "max_retries": 2,
        "retry_base_delay": 0.5,
        "retry_max_delay": 4.0,
        "services": {"pdf": list(services)},
    }
    values.update(overrides)
    return RemoteConfig(**values)


def _service(service_id: str, priority: int, **kwargs) -> ServiceConfig:
    return ServiceConfig(
        id=service_id,
        url=f"https://{service_id.lower()}.example.com",
        endpoint="convert",
        priority=priority,
        supported_formats=["pdf"],
        **kwargs,
    )


class Recorder:
    """MockTransport handler dispatching by host and recording requests."""

    def __init__(self, routes: dict) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes[request.url.host]
        return route(request) if callable(route) else route

    def hosts(self) -> list[str]:
        return [r.url.host for r in self.requests]


class FakeSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def sleep() -> FakeSleep:
    return FakeSleep()


class AdvancingSleep(FakeSleep):
    """Records sleeps and advances a fake clock by the same amount."""

    def __init__(self, clock) -> None:
        super().__init__()
        self.clock = clock

    async def __call__(self, seconds: float) -> None:
        await super().__call__(seconds)
        self.clock.advance(seconds)


def _client(config: RemoteConfig, handler, sleep, clock=None) -> RemoteServiceClient:
    kwargs = {"clock": clock} if clock is not None else {}
    return RemoteServiceClient(
        config,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        sleep=sleep,
        rand=lambda: 0.0,
        **kwargs,
    )


class TestServiceFallback:
    """Multi-service fallback with health tracking."""

    async def test_failing_primary_falls_back_and_becomes_unhealthy(self, sleep):
        """A fails three times (its failure threshold), then B succeeds."""
        recorder = Recorder(
            {
                "a.example.com": httpx.Response(500, text="internal error"),
                "b.example.com": _success(),
            }
        )
        client = _client(_config(_service("A", 1), _service("B", 2)), recorder, sleep)

        result = await client.convert("pdf", Document.from_string("<p>Invoice</p>"))

        assert result.service_id == "B"
        assert result.metadata["failed_services"] == ["A"]
        assert recorder.hosts() == ["a.example.com"] * 3 + ["b.example.com"]
        health = client.get_health("A")
        assert health.status is HealthStatus.UNHEALTHY
        assert health.failure_count == 3
        assert [s.id for s in client.get_available_services("pdf")] == ["B"]
        await client.aclose()

    async def test_backoff_delays_between_retries(self, sleep):
        recorder = Recorder(
            {
                "a.example.com": httpx.Response(503),
                "b.example.com": _success(),
            }
        )
        client = _client(_config(_service("A", 1), _service("B", 2)), recorder, sleep)

        await client.convert("pdf", "<p>x</p>")

        assert sleep.calls == [0.5, 1.0]
        await client.aclose()

    async def test_client_error_is_not_retried(self, sleep):
        recorder = Recorder(
            {
                "a.example.com": httpx.Response(
                    400, json={"error": {"code": "BAD_HTML", "message": "unparseable"}}
                ),
                "b.example.com": _success(),
            }
        )
        client = _client(_config(_service("A", 1), _service("B", 2)), recorder, sleep)

        result = await client.convert("pdf", "<p>x</p>")

        assert result.service_id == "B"
        assert recorder.hosts().count("a.example.com") == 1
        assert sleep.calls == []
        await client.aclose()

    async def test_all_services_fail(self, sleep):
        recorder = Recorder(
            {
                "a.example.com": httpx.Response(502),
                "b.example.com": httpx.Response(502),
            }
        )
        client = _client(_config(_service("A", 1), _service("B", 2)), recorder, sleep)

        with pytest.raises(ServicesExhaustedError) as exc_info:
            await client.convert("pdf", "<p>x</p>")

        assert [sid for sid, _ in exc_info.value.errors] == ["A", "B"]
        assert isinstance(exc_info.value.last_error, ServiceError)
        await client.aclose()

    async def test_single_service_mode_stops_after_first(self, sleep):
        recorder = Recorder(
            {
                "a.example.com": httpx.Response(500),
                "b.example.com": _success(),
            }
        )
        config = _config(
            _service("A", 1),
            _service("B", 2),
            fallback={"try_multiple_services": False},
        )
        client = _client(config, recorder, sleep)

        with pytest.raises(ServicesExhaustedError):
            await client.convert("pdf", "<p>x</p>")

        assert "b.example.com" not in recorder.hosts()
        await client.aclose()

    async def test_unhealthy_service_selectable_after_ttl(self, sleep, clock):
        recorder = Recorder({"a.example.com": httpx.Response(500)})
        config = _config(_service("A", 1), fallback={"health_cache_ttl": 60})
        client = _client(config, recorder, sleep, clock=clock)

        with pytest.raises(ServicesExhaustedError):
            await client.convert("pdf", "<p>x</p>")
        assert client.get_available_services("pdf") == []

        clock.advance(61)
        assert [s.id for s in client.get_available_services("pdf")] == ["A"]
        await client.aclose()

    async def test_timeout_is_retried(self, sleep):
        calls = {"n": 0}

        def flaky(request):
            calls["n"] += 1
            if calls["n"] == 1:
                raise httpx.ReadTimeout("slow", request=request)
            return _success()

        client = _client(_config(_service("A", 1)), Recorder({"a.example.com": flaky}), sleep)

        result = await client.convert("pdf", "<p>x</p>")

        assert result.attempts == 2
        assert client.get_health("A").failure_count == 0
        await client.aclose()

    async def test_timeout_error_type(self, sleep):
        def always_slow(request):
            raise httpx.ConnectTimeout("slow", request=request)

        client = _client(
            _config(_service("A", 1), max_retries=0),
            Recorder({"a.example.com": always_slow}),
            sleep,
        )

        with pytest.raises(ServicesExhaustedError) as exc_info:
            await client.convert("pdf", "<p>x</p>")

        assert isinstance(exc_info.value.last_error, OperationTimeoutError)
        await client.aclose()


class TestServiceOrdering:
    def test_priority_then_quality(self):
        config = _config(
            _service("low-quality", 1, quality_score=0.5),
            _service("high-quality", 1, quality_score=0.95),
            _service("second", 2, quality_score=1.0),
        )
        client = RemoteServiceClient(config)

        assert [s.id for s in client.get_available_services("pdf")] == [
            "high-quality",
            "low-quality",
            "second",
        ]

    def test_health_record_is_a_copy(self):
        client = RemoteServiceClient(_config(_service("A", 1)))
        health = client.get_health("A")
        health.failure_count = 99
        assert client.get_health("A").failure_count == 0


class TestRequestFormats:
    """Request body and response normalization per service format."""

    async def test_json_request_body(self, sleep):
        recorder = Recorder({"a.example.com": _success()})
        client = _client(_config(_service("A", 1)), recorder, sleep)

        await client.convert("pdf", "<h1>Hi</h1>", options={"landscape": True})

        body = json.loads(recorder.requests[0].content)
        assert body["html"] == "<h1>Hi</h1>"
        assert body["format"] == "pdf"
        assert body["options"] == {"landscape": True}
        assert body["requestId"].startswith("rs_")
        assert recorder.requests[0].url.path == "/convert"
        await client.aclose()

    async def test_form_data_request(self, sleep):
        recorder = Recorder({"a.example.com": _success()})
        client = _client(_config(_service("A", 1, request_format="form-data")), recorder, sleep)

        await client.convert("pdf", "<h1>Hi</h1>")

        request = recorder.requests[0]
        assert request.headers["content-type"].startswith("multipart/form-data")
        assert b"<h1>Hi</h1>" in request.content
        await client.aclose()

    async def test_raw_request(self, sleep):
        recorder = Recorder({"a.example.com": _success()})
        client = _client(_config(_service("A", 1, request_format="raw")), recorder, sleep)

        await client.convert("pdf", "<h1>Hi</h1>")

        request = recorder.requests[0]
        assert request.content == b"<h1>Hi</h1>"
        assert request.headers["content-type"].startswith("text/html")
        await client.aclose()

    async def test_binary_response_is_base64_encoded(self, sleep):
        recorder = Recorder(
            {
                "a.example.com": httpx.Response(
                    200, content=PDF_BYTES, headers={"content-type": "application/pdf"}
                )
            }
        )
        client = _client(_config(_service("A", 1, response_format="binary")), recorder, sleep)

        result = await client.convert("pdf", "<p>x</p>")

        assert base64.b64decode(result.content) == PDF_BYTES
        assert result.mime_type == "application/pdf"
        await client.aclose()

    async def test_base64_response(self, sleep):
        encoded = base64.b64encode(PDF_BYTES).decode()
        recorder = Recorder({"a.example.com": httpx.Response(200, text=encoded + "\n")})
        client = _client(_config(_service("A", 1, response_format="base64")), recorder, sleep)

        result = await client.convert("pdf", "<p>x</p>")

        assert result.content == encoded
        assert result.mime_type == "application/pdf"
        await client.aclose()

    async def test_json_failure_body_counts_as_service_failure(self, sleep):
        recorder = Recorder(
            {
                "a.example.com": httpx.Response(
                    200, json={"success": False, "error": {"code": "RENDER", "message": "crash"}}
                )
            }
        )
        client = _client(_config(_service("A", 1)), recorder, sleep)

        with pytest.raises(ServicesExhaustedError) as exc_info:
            await client.convert("pdf", "<p>x</p>")

        assert exc_info.value.last_error.code == "RENDER"
        assert client.get_health("A").failure_count == 1
        await client.aclose()

    async def test_plain_string_error_moves_to_next_service(self, sleep):
        recorder = Recorder(
            {
                "a.example.com": httpx.Response(
                    200, json={"success": False, "error": "quota exceeded"}
                ),
                "b.example.com": _success(),
            }
        )
        client = _client(_config(_service("A", 1), _service("B", 2)), recorder, sleep)

        result = await client.convert("pdf", "<p>x</p>")

        assert result.service_id == "B"
        health = client.get_health("A")
        assert health.failure_count == 1
        assert "quota exceeded" in health.error
        await client.aclose()

    async def test_mismatched_mime_type_is_a_service_failure(self, sleep):
        recorder = Recorder(
            {
                "a.example.com": _success(content="iVBORw0=", mime="image/png"),
                "b.example.com": _success(),
            }
        )
        client = _client(_config(_service("A", 1), _service("B", 2)), recorder, sleep)

        result = await client.convert("pdf", "<p>x</p>")

        assert result.service_id == "B"
        assert result.mime_type == "application/pdf"
        assert "expected application/pdf" in client.get_health("A").error
        await client.aclose()

    async def test_generic_binary_content_type_takes_declared_format(self, sleep):
        recorder = Recorder(
            {
                "a.example.com": httpx.Response(
                    200, content=PDF_BYTES, headers={"content-type": "application/octet-stream"}
                )
            }
        )
        client = _client(_config(_service("A", 1, response_format="binary")), recorder, sleep)

        result = await client.convert("pdf", "<p>x</p>")

        assert result.mime_type == "application/pdf"
        await client.aclose()


class TestAuthentication:
    async def test_api_key_and_bearer_headers(self, sleep, monkeypatch):
        monkeypatch.setenv("A_TOKEN", "tok-123")
        recorder = Recorder({"a.example.com": _success()})
        config = _config(
            _service("A", 1, headers={"X-Client": "tierconvert"}),
            authentication={
                "A": AuthConfig(api_key="key-1", bearer_token_env="A_TOKEN"),
            },
        )
        client = _client(config, recorder, sleep)

        await client.convert("pdf", "<p>x</p>")

        headers = recorder.requests[0].headers
        assert headers["x-api-key"] == "key-1"
        assert headers["authorization"] == "Bearer tok-123"
        assert headers["x-client"] == "tierconvert"
        assert headers["user-agent"].startswith("TierConvert/")
        await client.aclose()


class TestLimits:
    async def test_oversized_document_rejected(self, sleep):
        recorder = Recorder({"a.example.com": _success()})
        client = _client(_config(_service("A", 1), max_file_size=10), recorder, sleep)

        with pytest.raises(ValidationError):
            await client.convert("pdf", "<p>" + "x" * 100 + "</p>")
        assert recorder.requests == []
        await client.aclose()

    async def test_saturated_service_is_skipped(self, sleep):
        recorder = Recorder({"a.example.com": _success(), "b.example.com": _success()})
        config = _config(
            _service("A", 1, rate_limit={"max_concurrent": 1}),
            _service("B", 2),
        )
        client = _client(config, recorder, sleep)
        await client._limiters["A"].acquire()

        result = await client.convert("pdf", "<p>x</p>")

        assert result.service_id == "B"
        assert client.get_health("A").failure_count == 0
        await client.aclose()

    async def test_retries_keep_request_spacing(self, clock):
        sleep = AdvancingSleep(clock)
        sent_at: list[float] = []

        def route(request):
            sent_at.append(clock())
            return httpx.Response(503)

        recorder = Recorder({"a.example.com": route})
        config = _config(_service("A", 1, rate_limit={"requests_per_minute": 6}))
        client = _client(config, recorder, sleep, clock=clock)

        with pytest.raises(ServicesExhaustedError):
            await client.convert("pdf", "<p>x</p>")

        gaps = [later - earlier for earlier, later in zip(sent_at, sent_at[1:])]
        assert gaps == [pytest.approx(10.0), pytest.approx(10.0)]
        assert client._limiters["A"].in_flight == 0
        await client.aclose()


class TestHealthChecks:
    async def test_health_check_all(self, sleep):
        recorder = Recorder(
            {
                "a.example.com": httpx.Response(200, json={"status": "ok"}),
                "b.example.com": httpx.Response(503),
            }
        )
        client = _client(_config(_service("A", 1), _service("B", 2)), recorder, sleep)

        report = await client.health_check_all()

        assert report["A"].status is HealthStatus.HEALTHY
        assert report["B"].failure_count == 1
        assert report["B"].error == "HTTP 503"
        assert all(r.url.path == "/health" for r in recorder.requests)
        await client.aclose()

    async def test_periodic_checks_start_with_first_conversion(self, sleep):
        def route(request):
            if request.url.path == "/health":
                return httpx.Response(503)
            return _success()

        recorder = Recorder({"a.example.com": route})
        config = _config(_service("A", 1), health_check={"interval": 0.01})
        client = _client(config, recorder, sleep)

        await client.convert("pdf", "<p>x</p>")
        for _ in range(100):
            if client.get_health("A").error == "HTTP 503":
                break
            await asyncio.sleep(0.01)

        assert client.get_health("A").error == "HTTP 503"
        assert any(r.url.path == "/health" for r in recorder.requests)
        await client.aclose()

    async def test_periodic_checks_disabled(self, sleep):
        recorder = Recorder({"a.example.com": _success()})
        config = _config(_service("A", 1), health_check={"enabled": False})
        client = _client(config, recorder, sleep)

        await client.convert("pdf", "<p>x</p>")

        assert client._health_task is None
        await client.aclose()


class TestServiceHealth:
    """Status transitions of ServiceHealth.record."""

    def test_low_success_rate_degrades(self):
        health = ServiceHealth(service_id="A")

        health.record(True, now=1.0)
        health.record(True, now=2.0)
        health.record(False, now=3.0, error="HTTP 500")

        # 2 of 3 succeeded, below 0.7, with one consecutive failure
        assert health.status is HealthStatus.DEGRADED
        assert health.failure_count == 1
        assert health.success_rate == pytest.approx(2 / 3)

    def test_unhealthy_service_recovers_on_success(self):
        health = ServiceHealth(service_id="A")
        for i in range(7):
            health.record(True, now=float(i))
        for i in range(3):
            health.record(False, now=10.0 + i, error="HTTP 500")

        assert health.status is HealthStatus.UNHEALTHY
        assert health.failure_count == 3

        health.record(True, now=20.0, response_time=0.2)

        assert health.status is HealthStatus.HEALTHY
        assert health.failure_count == 0
        assert health.total_failures == 3
        assert health.error is None
        assert health.last_checked == 20.0


class TestRegistry:
    def test_defaults_included(self):
        registry = build_registry(RemoteConfig())
        assert set(registry) == set(DEFAULT_SERVICES)
        assert registry["pdf"][0].category == "pdf"

    def test_configured_service_overrides_default(self):
        config = RemoteConfig(
            services={"pdf": [ServiceConfig(id="html-pdf-service", url="https://mine.example")]}
        )
        registry = build_registry(config)

        service = next(s for s in registry["pdf"] if s.id == "html-pdf-service")
        assert service.url == "https://mine.example"
        assert service.quality_score == 0.9

    def test_duplicate_id_across_categories_skipped(self):
        config = _config(
            services={
                "pdf": [_service("A", 1)],
                "image": [_service("A", 1)],
            },
        )
        registry = build_registry(config)

        ids = [s.id for services in registry.values() for s in services]
        assert ids.count("A") == 1
