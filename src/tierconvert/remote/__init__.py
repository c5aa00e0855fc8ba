"""Remote conversion service client."""

from tierconvert.remote.client import RemoteServiceClient
from tierconvert.remote.defaults import DEFAULT_SERVICES, build_registry
from tierconvert.remote.models import (
    ConversionService,
    HealthStatus,
    RemoteConversion,
    ServiceHealth,
)

__all__ = [
    "RemoteServiceClient",
    "DEFAULT_SERVICES",
    "build_registry",
    "ConversionService",
    "HealthStatus",
    "RemoteConversion",
    "ServiceHealth",
]
