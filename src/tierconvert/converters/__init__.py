"""Conversion backends."""

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

__all__ = [
    "BACKEND_PRIORITY",
    "BackendId",
    "BaseConverter",
    "ConversionPlugin",
    "ConversionResult",
    "Document",
    "ValidationResult",
    "normalize_format",
]
