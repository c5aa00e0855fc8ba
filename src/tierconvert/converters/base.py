"""Base converter interface and data classes."""

import base64
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from tierconvert.config.constants import FORMAT_ALIASES, FORMAT_MIME_TYPES
from tierconvert.exceptions import ConversionError
from tierconvert.utils.assets import scan_assets
from tierconvert.utils.flow_control import CancelToken, ChunkStream


class BackendId(StrEnum):
    """Conversion backends, declared in fixed priority order."""

    ENGINE = "engine"
    CANVAS = "canvas"
    REMOTE = "remote"
    MARKUP = "markup"


# Highest priority first
BACKEND_PRIORITY: tuple[BackendId, ...] = tuple(BackendId)

HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")

# More external references than this draws a validation warning
EXTERNAL_RESOURCE_WARNING = 20


def normalize_format(target_format: str | None) -> str | None:
    """Lower-case a format name and resolve aliases such as ``jpg``."""
    if target_format is None:
        return None
    fmt = target_format.strip().lower().lstrip(".")
    return FORMAT_ALIASES.get(fmt, fmt)


@dataclass
class Document:
    """An HTML document to convert."""

    html: str
    title: str | None = None
    source_type: str = "text/html"
    url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def size(self) -> int:
        """Size of the markup in bytes (UTF-8)."""
        return len(self.html.encode("utf-8"))

    @classmethod
    def from_string(cls, html: str, title: str | None = None) -> "Document":
        return cls(html=html, title=title)

    @classmethod
    def from_file(cls, path: Path | str) -> "Document":
        """Read an HTML file from disk."""
        file_path = Path(path)
        html = file_path.read_text(encoding="utf-8", errors="replace")
        return cls(html=html, title=file_path.stem, url=file_path.resolve().as_uri())


@dataclass
class ValidationResult:
    """Outcome of validating a document against a backend."""

    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)


@dataclass
class ConversionResult:
    """Result of a document conversion.

    Binary artifacts (PDF, images) are carried as base64 text in ``content``.
    """

    content: str
    mime_type: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def is_binary(self) -> bool:
        return not self.mime_type.startswith("text/") and self.mime_type != "multipart/related"

    def raw_bytes(self) -> bytes:
        """Decoded artifact bytes."""
        if self.is_binary:
            return base64.b64decode(self.content)
        return self.content.encode("utf-8")

    def iter_chunks(
        self,
        chunk_size: int = 64 * 1024,
        max_buffered: int = 4,
        cancel: CancelToken | None = None,
    ) -> ChunkStream:
        """Stream the decoded artifact with consumer-driven backpressure."""
        return ChunkStream(
            self.raw_bytes(), chunk_size=chunk_size, max_buffered=max_buffered, cancel=cancel
        )


class BaseConverter(ABC):
    """Abstract base class for conversion backends."""

    backend_id: BackendId
    name: str = "base"
    description: str = ""
    output_formats: tuple[str, ...] = ()
    default_format: str = "html"
    supported_content_types: tuple[str, ...] = HTML_CONTENT_TYPES
    max_file_size: int = 0  # 0 = unlimited

    @abstractmethod
    async def convert(
        self, document: Document, target_format: str | None = None
    ) -> ConversionResult:
        """Convert a document.

        Args:
            document: Document to convert
            target_format: Output format name (``pdf``, ``png``...), or None for the default

        Returns:
            ConversionResult with non-empty content
        """
        pass

    async def validate(self, document: Document) -> ValidationResult:
        """Validate that the document can be converted by this backend."""
        errors: list[str] = []
        warnings: list[str] = []

        if not document.html or not document.html.strip():
            errors.append("Document content is empty")

        size = document.size
        if self.max_file_size and size > self.max_file_size:
            errors.append(
                f"Document size ({size} bytes) exceeds {self.name} limit "
                f"of {self.max_file_size} bytes"
            )

        if document.html and "<html" not in document.html.lower():
            warnings.append("Document has no <html> element; it will be wrapped")

        assets = scan_assets(document.html or "")
        if assets.external_count > EXTERNAL_RESOURCE_WARNING:
            warnings.append(
                f"Document references {assets.external_count} external resources; "
                "conversion may be slow"
            )

        context: dict[str, Any] = {
            "backend": self.backend_id.value,
            "size": size,
            "assets": assets.to_dict(),
            "estimated_time": self.estimate_time(size, assets.external_count),
        }
        self._extend_validation(document, errors, warnings, context)

        return ValidationResult(
            is_valid=not errors, errors=errors, warnings=warnings, context=context
        )

    def _extend_validation(
        self,
        document: Document,
        errors: list[str],
        warnings: list[str],
        context: dict[str, Any],
    ) -> None:
        """Hook for backend-specific checks."""

    def estimate_time(self, size: int, external_resources: int) -> float:
        """Rough conversion time estimate in seconds."""
        return 0.1 + size / (1024 * 1024) + external_resources * 0.05

    def can_handle(self, mime_type: str) -> bool:
        """Check whether this backend accepts the given input content type."""
        return mime_type.split(";")[0].strip().lower() in self.supported_content_types

    def supports_format(self, target_format: str | None) -> bool:
        fmt = normalize_format(target_format)
        return fmt is None or fmt in self.output_formats

    def get_name(self) -> str:
        return self.name

    def get_description(self) -> str:
        return self.description

    def get_supported_content_types(self) -> list[str]:
        return list(self.supported_content_types)

    def get_output_format(self, target_format: str | None = None) -> str:
        """MIME type this backend produces for ``target_format``."""
        return FORMAT_MIME_TYPES[self.resolve_format(target_format)]

    def get_output_formats(self) -> list[str]:
        """MIME types of every output format this backend declares."""
        return [FORMAT_MIME_TYPES[fmt] for fmt in self.output_formats]

    def resolve_format(self, target_format: str | None) -> str:
        """Normalize ``target_format``, falling back to the default format."""
        fmt = normalize_format(target_format) or self.default_format
        if fmt not in self.output_formats:
            raise ConversionError(
                f"Unsupported output format: {fmt} (supports {', '.join(self.output_formats)})",
                backend=self.backend_id.value,
            )
        return fmt

    def build_result(
        self,
        content: str,
        target_format: str,
        document: Document,
        started: float,
        mime_type: str | None = None,
        **extra: Any,
    ) -> ConversionResult:
        """Assemble a ConversionResult with the standard metadata."""
        if not content:
            raise ConversionError("Backend produced empty output", backend=self.backend_id.value)
        metadata: dict[str, Any] = {
            "source_type": document.source_type,
            "target_format": target_format,
            "timestamp": datetime.now(UTC).isoformat(),
            "size": len(content),
            "execution_time": time.perf_counter() - started,
            "tier": self.backend_id.value,
            "conversion_method": self.name,
        }
        metadata.update(extra)
        return ConversionResult(
            content=content,
            mime_type=mime_type or FORMAT_MIME_TYPES[target_format],
            metadata=metadata,
        )

    async def aclose(self) -> None:
        """Release backend resources."""


class ConversionPlugin(ABC):
    """Externally registered converter that can claim documents before any backend."""

    name: str = "plugin"
    version: str = "0.0.0"
    priority: int = 0
    output_formats: tuple[str, ...] = ()

    @abstractmethod
    def can_handle(self, document: Document, target_format: str | None) -> bool:
        """Whether this plugin wants to convert the document."""
        pass

    @abstractmethod
    async def convert(
        self, document: Document, target_format: str | None = None
    ) -> ConversionResult:
        pass

    async def validate(self, document: Document) -> ValidationResult:
        if not document.html or not document.html.strip():
            return ValidationResult(is_valid=False, errors=["Document content is empty"])
        return ValidationResult(is_valid=True)

    def get_output_formats(self) -> list[str]:
        return [FORMAT_MIME_TYPES.get(fmt, fmt) for fmt in self.output_formats]
