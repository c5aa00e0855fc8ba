"""Remote-service backend delegating to :class:`RemoteServiceClient`."""

from __future__ import annotations

import time
from typing import Any

from tierconvert.config.constants import FORMAT_CATEGORIES
from tierconvert.converters.base import BackendId, BaseConverter, ConversionResult, Document
from tierconvert.exceptions import ConversionError, TierConvertError
from tierconvert.remote.client import RemoteServiceClient
from tierconvert.utils.logging import get_logger

log = get_logger(__name__)


class RemoteConverter(BaseConverter):
    """Converts through the best available remote service of the format's category."""

    backend_id = BackendId.REMOTE
    name = "remote"
    description = "Network conversion services with retry and health tracking"
    output_formats = ("pdf", "png", "jpeg", "webp", "mhtml")
    default_format = "pdf"

    def __init__(self, client: RemoteServiceClient, owns_client: bool = False) -> None:
        self.client = client
        self.max_file_size = client.config.max_file_size
        self._owns_client = owns_client

    async def convert(
        self, document: Document, target_format: str | None = None
    ) -> ConversionResult:
        started = time.perf_counter()
        fmt = self.resolve_format(target_format)
        category = FORMAT_CATEGORIES[fmt]

        try:
            remote = await self.client.convert(category, document, target_format=fmt)
        except TierConvertError:
            raise
        except Exception as e:
            raise ConversionError(
                f"Remote conversion failed: {e}", backend=self.backend_id.value, cause=e
            ) from e

        log.debug(
            "Remote conversion complete", service_id=remote.service_id, attempts=remote.attempts
        )
        return self.build_result(
            remote.content,
            fmt,
            document,
            started,
            mime_type=remote.mime_type,
            service_used=remote.service_id,
            service_attempts=remote.attempts,
            response_time=remote.response_time,
            failed_services=remote.metadata.get("failed_services", []),
            quality_score=remote.metadata.get("quality_score"),
        )

    def _extend_validation(
        self,
        document: Document,
        errors: list[str],
        warnings: list[str],
        context: dict[str, Any],
    ) -> None:
        available = {
            category: [s.id for s in self.client.get_available_services(category)]
            for category in self.client.categories
        }
        # Service health never invalidates the document
        unserved = [category for category, ids in available.items() if not ids]
        if unserved:
            warnings.append(f"No healthy remote services for: {', '.join(unserved)}")
        context["available_services"] = available

    def estimate_time(self, size: int, external_resources: int) -> float:
        """Upload plus per-resource fetch plus service processing, plus retry headroom."""
        base = 2.0 + (size / 1024) * 0.05 + external_resources * 0.2 + 3.0
        return base + self.client.config.max_retries * self.client.config.retry_base_delay

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

