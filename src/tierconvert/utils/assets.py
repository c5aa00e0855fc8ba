"""Scan markup for referenced assets.

A light per-category regex pass, not a parser. Each reference is classified
as ``external`` (absolute or protocol-relative URL), ``data`` (inline data
URI) or ``relative``.
"""

import re
from collections import Counter
from dataclasses import dataclass, field

# Category -> pattern capturing the reference in group 1
_ASSET_PATTERNS: dict[str, re.Pattern[str]] = {
    "stylesheet": re.compile(
        r"<link\b[^>]*\brel=[\"']?stylesheet[\"']?[^>]*\bhref=[\"']([^\"']+)[\"']"
        r"|<link\b[^>]*\bhref=[\"']([^\"']+)[\"'][^>]*\brel=[\"']?stylesheet",
        re.IGNORECASE,
    ),
    "script": re.compile(r"<script\b[^>]*\bsrc=[\"']([^\"']+)[\"']", re.IGNORECASE),
    "image": re.compile(r"<img\b[^>]*\bsrc=[\"']([^\"']+)[\"']", re.IGNORECASE),
    "media": re.compile(
        r"<(?:video|audio|source|iframe|embed)\b[^>]*\bsrc=[\"']([^\"']+)[\"']", re.IGNORECASE
    ),
    "css_url": re.compile(r"url\(\s*[\"']?([^\"')]+)[\"']?\s*\)", re.IGNORECASE),
}

_EXTERNAL = re.compile(r"^(?:[a-z][a-z0-9+.-]*:)?//", re.IGNORECASE)


def classify_reference(ref: str) -> str:
    """Return ``external``, ``data`` or ``relative`` for one reference."""
    ref = ref.strip()
    if ref.lower().startswith("data:"):
        return "data"
    if _EXTERNAL.match(ref):
        return "external"
    return "relative"


@dataclass
class AssetReference:
    category: str
    url: str
    kind: str


@dataclass
class AssetReport:
    """All asset references found in a document."""

    references: list[AssetReference] = field(default_factory=list)

    @property
    def external_count(self) -> int:
        return sum(1 for ref in self.references if ref.kind == "external")

    def by_category(self, kind: str | None = None) -> dict[str, int]:
        """Count references per category, optionally only of one kind."""
        counts = Counter(
            ref.category for ref in self.references if kind is None or ref.kind == kind
        )
        return dict(counts)

    def to_dict(self) -> dict[str, object]:
        return {
            "total": len(self.references),
            "external": self.external_count,
            "by_category": self.by_category(),
            "external_by_category": self.by_category("external"),
        }


def scan_assets(html: str) -> AssetReport:
    """Collect stylesheet, script, image, media and CSS ``url()`` references."""
    report = AssetReport()
    for category, pattern in _ASSET_PATTERNS.items():
        for match in pattern.finditer(html):
            url = next((g for g in match.groups() if g), None)
            if not url:
                continue
            report.references.append(
                AssetReference(category=category, url=url, kind=classify_reference(url))
            )
    return report
