"""Built-in remote service registry and merging with user configuration."""

from tierconvert.config.settings import RemoteConfig, ServiceConfig
from tierconvert.remote.models import ConversionService
from tierconvert.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_SERVICES: dict[str, list[ServiceConfig]] = {
    "pdf": [
        ServiceConfig(
            id="html-pdf-service",
            name="HTML to PDF Service",
            url="https://api.html2pdf-service.com",
            endpoint="v1/convert",
            request_format="json",
            response_format="json",
            supported_formats=["pdf"],
            priority=1,
            quality_score=0.9,
        ),
        ServiceConfig(
            id="pdf-generator-api",
            name="PDF Generator API",
            url="https://api.pdfgenerator.com",
            endpoint="generate",
            request_format="json",
            response_format="base64",
            supported_formats=["pdf"],
            priority=2,
            quality_score=0.85,
        ),
    ],
    "image": [
        ServiceConfig(
            id="html-image-service",
            name="HTML to Image Service",
            url="https://api.html2img-service.com",
            endpoint="v1/screenshot",
            request_format="json",
            response_format="base64",
            supported_formats=["png", "jpeg", "webp"],
            priority=1,
            quality_score=0.88,
        ),
    ],
    "mhtml": [
        ServiceConfig(
            id="mhtml-converter",
            name="MHTML Converter Service",
            url="https://api.mhtml-converter.com",
            endpoint="convert",
            request_format="json",
            response_format="json",
            supported_formats=["mhtml"],
            priority=1,
            quality_score=0.82,
        ),
    ],
}


def build_registry(config: RemoteConfig) -> dict[str, list[ConversionService]]:
    """Merge default and configured services into an immutable registry.

    A configured service whose id matches a default replaces its fields;
    other configured services are added. Service ids must be unique across
    categories.
    """
    registry: dict[str, list[ConversionService]] = {}
    seen: dict[str, str] = {}

    categories = set(config.services)
    if config.use_default_services:
        categories |= set(DEFAULT_SERVICES)

    for category in sorted(categories):
        merged: dict[str, dict] = {}
        if config.use_default_services:
            for service in DEFAULT_SERVICES.get(category, []):
                merged[service.id] = service.model_dump()
        for service in config.services.get(category, []):
            base = merged.get(service.id, {})
            merged[service.id] = {**base, **service.model_dump(exclude_unset=True)}

        services = []
        for service_id, fields in merged.items():
            if service_id in seen and seen[service_id] != category:
                log.warning(
                    "Duplicate service id across categories, skipping",
                    service_id=service_id,
                    category=category,
                    first_category=seen[service_id],
                )
                continue
            seen[service_id] = category
            services.append(ConversionService(**fields, category=category))
        registry[category] = services

    log.debug(
        "Remote service registry built",
        services={c: [s.id for s in svcs] for c, svcs in registry.items()},
    )
    return registry
