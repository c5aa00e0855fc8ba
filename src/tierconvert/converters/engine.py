"""Headless rendering-engine backend.

Each conversion borrows a pooled engine process, opens a fresh target,
loads the markup into it and asks the engine to print, screenshot or
snapshot the page.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import Any

from tierconvert.config.settings import EngineConfig
from tierconvert.converters.base import BackendId, BaseConverter, ConversionResult, Document
from tierconvert.engine.pool import ProcessPool
from tierconvert.engine.transport import PipeTransport
from tierconvert.exceptions import (
    ConversionError,
    EngineError,
    OperationTimeoutError,
    TierConvertError,
)
from tierconvert.utils.logging import get_logger

log = get_logger(__name__)

_TARGET_CLOSE_TIMEOUT = 5.0


class EngineConverter(BaseConverter):
    """Full-fidelity rendering through a pooled headless engine."""

    backend_id = BackendId.ENGINE
    name = "engine"
    description = "Headless Chromium rendering over the debugging pipe"
    output_formats = ("pdf", "png", "jpeg", "webp", "mhtml")
    default_format = "pdf"

    def __init__(
        self,
        pool: ProcessPool,
        config: EngineConfig | None = None,
        owns_pool: bool = False,
    ) -> None:
        self.pool = pool
        self.config = config or EngineConfig()
        self.max_file_size = self.config.max_file_size
        self._owns_pool = owns_pool

    async def convert(
        self, document: Document, target_format: str | None = None
    ) -> ConversionResult:
        started = time.perf_counter()
        fmt = self.resolve_format(target_format)
        if self.max_file_size and document.size > self.max_file_size:
            raise ConversionError(
                f"Input exceeds maximum file size: {document.size} > {self.max_file_size}",
                backend=self.backend_id.value,
            )

        try:
            content, handle_id = await asyncio.wait_for(
                self._render(document, fmt), self.config.timeout
            )
        except TimeoutError as e:
            raise OperationTimeoutError(
                "engine conversion", self.config.timeout, backend=self.backend_id.value
            ) from e
        except TierConvertError:
            raise
        except Exception as e:
            raise ConversionError(
                f"Engine conversion failed: {e}", backend=self.backend_id.value, cause=e
            ) from e

        return self.build_result(content, fmt, document, started, engine_handle=handle_id)

    async def _render(self, document: Document, fmt: str) -> tuple[str, str]:
        async with self.pool.lease() as handle:
            transport = handle.transport
            if transport is None or transport.closed:
                raise EngineError("Engine handle has no open transport", backend="engine")

            created = await transport.send("Target.createTarget", {"url": "about:blank"})
            target_id = created["targetId"]
            try:
                attached = await transport.send(
                    "Target.attachToTarget", {"targetId": target_id, "flatten": True}
                )
                session_id = attached["sessionId"]
                await self._load(transport, session_id, document)
                content = await self._capture(transport, session_id, fmt)
            finally:
                await self._close_target(transport, target_id)

            log.debug("Engine render complete", handle_id=handle.id, pid=handle.pid, format=fmt)
            return content, handle.id

    async def _load(self, transport: PipeTransport, session_id: str, document: Document) -> None:
        """Load the markup into the target and wait (bounded) for the load event."""
        await transport.send("Page.enable", session_id=session_id)
        with transport.subscribe("Page.loadEventFired", session_id=session_id) as loads:
            tree = await transport.send("Page.getFrameTree", session_id=session_id)
            frame_id = tree["frameTree"]["frame"]["id"]
            await transport.send(
                "Page.setDocumentContent",
                {"frameId": frame_id, "html": document.html},
                session_id=session_id,
            )
            try:
                await loads.get(timeout=self.config.page_load_timeout)
            except OperationTimeoutError:
                # Render what has loaded; slow subresources should not fail the page
                log.warning(
                    "Page load event not received, rendering current state",
                    timeout=self.config.page_load_timeout,
                )

    async def _capture(self, transport: PipeTransport, session_id: str, fmt: str) -> str:
        if fmt == "pdf":
            pdf = self.config.pdf
            result = await transport.send(
                "Page.printToPDF",
                {
                    "landscape": pdf.landscape,
                    "printBackground": pdf.print_background,
                    "scale": pdf.scale,
                    "paperWidth": pdf.paper_width,
                    "paperHeight": pdf.paper_height,
                    "marginTop": pdf.margin,
                    "marginBottom": pdf.margin,
                    "marginLeft": pdf.margin,
                    "marginRight": pdf.margin,
                },
                session_id=session_id,
            )
        elif fmt == "mhtml":
            result = await transport.send(
                "Page.captureSnapshot", {"format": "mhtml"}, session_id=session_id
            )
        else:
            params: dict[str, Any] = {
                "format": fmt,
                "captureBeyondViewport": self.config.image.full_page,
            }
            if fmt in ("jpeg", "webp"):
                params["quality"] = self.config.image.quality
            result = await transport.send(
                "Page.captureScreenshot", params, session_id=session_id
            )

        data = result.get("data")
        if not data:
            raise EngineError(f"Engine returned no data for {fmt}", backend="engine")
        return data

    async def _close_target(self, transport: PipeTransport, target_id: str) -> None:
        if transport.closed:
            return
        with contextlib.suppress(EngineError, OperationTimeoutError):
            await transport.send(
                "Target.closeTarget", {"targetId": target_id}, timeout=_TARGET_CLOSE_TIMEOUT
            )

    def estimate_time(self, size: int, external_resources: int) -> float:
        return 1.0 + size / (2 * 1024 * 1024) + external_resources * 0.1

    def _extend_validation(
        self,
        document: Document,
        errors: list[str],
        warnings: list[str],
        context: dict[str, Any],
    ) -> None:
        context["pool"] = self.pool.get_stats()

    async def aclose(self) -> None:
        if self._owns_pool:
            await self.pool.cleanup()
