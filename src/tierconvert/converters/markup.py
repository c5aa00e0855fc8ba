"""Sanitized markup backend.

The last tier of the cascade: it needs nothing but the standard library, so it
is always available. Output is the input document, sanitized and made
self-contained enough to open offline.
"""

import html as html_lib
import re
import time
from datetime import UTC, datetime
from typing import Any

from tierconvert.config.settings import MarkupConfig
from tierconvert.converters.base import BackendId, BaseConverter, ConversionResult, Document
from tierconvert.exceptions import ConversionError
from tierconvert.utils.logging import get_logger

log = get_logger(__name__)

_SCRIPT_RE = re.compile(r"<script\b[^>]*>.*?</script\s*>", re.IGNORECASE | re.DOTALL)
_EVENT_HANDLER_RE = re.compile(
    r"""\s+on[a-z]+\s*=\s*(?:"[^"]*"|'[^']*'|[^\s>]+)""", re.IGNORECASE
)
_JS_URL_RE = re.compile(
    r"""(href|src|action)\s*=\s*(["']?)\s*javascript:[^"'>\s]*""", re.IGNORECASE
)
_TAG_RE = re.compile(r"<[a-zA-Z][^>]*>")
_STYLE_RE = re.compile(r"<style\b[^>]*>(.*?)</style\s*>", re.IGNORECASE | re.DOTALL)
_HEAD_OPEN_RE = re.compile(r"<head\b([^>]*)>", re.IGNORECASE)
_HEAD_CLOSE_RE = re.compile(r"</head\s*>", re.IGNORECASE)
_DOCTYPE_RE = re.compile(r"^\s*(<!DOCTYPE[^>]*>\n?)", re.IGNORECASE)
_BETWEEN_TAGS_RE = re.compile(r">\s+<")
_WHITESPACE_RE = re.compile(r"\s{2,}")
_COMMENT_RE = re.compile(r"<!--(?!\s*TierConvert).*?-->", re.DOTALL)


class MarkupConverter(BaseConverter):
    """Always-available fallback producing sanitized ``text/html``."""

    backend_id = BackendId.MARKUP
    name = "markup"
    description = "Sanitized, self-contained HTML export"
    output_formats = ("html",)
    default_format = "html"

    def __init__(self, config: MarkupConfig | None = None) -> None:
        self.config = config or MarkupConfig()
        self.max_file_size = self.config.max_file_size

    async def convert(
        self, document: Document, target_format: str | None = None
    ) -> ConversionResult:
        started = time.perf_counter()
        fmt = self.resolve_format(target_format)

        content = self.ensure_structure(document)
        if self.config.inline_styles:
            content = self.consolidate_styles(content)
        if not self.config.include_javascript:
            content = self.remove_scripts(content)
        if self.config.custom_css:
            content = self.add_custom_css(content, self.config.custom_css)
        if self.config.compress_html:
            content = self.compress(content)
        if self.config.include_metadata:
            content = self.add_metadata_comments(content)

        if self.max_file_size and len(content) > self.max_file_size:
            raise ConversionError(
                f"Markup export exceeds maximum size: {len(content)} > {self.max_file_size}",
                backend=self.backend_id.value,
            )

        log.debug("Markup conversion complete", size=len(content))
        return self.build_result(
            content,
            fmt,
            document,
            started,
            inlined_styles=self.config.inline_styles,
            javascript_removed=not self.config.include_javascript,
            compressed=self.config.compress_html,
        )

    def _extend_validation(
        self,
        document: Document,
        errors: list[str],
        warnings: list[str],
        context: dict[str, Any],
    ) -> None:
        if not self.config.include_javascript and "<script" in document.html.lower():
            warnings.append("JavaScript detected; it will be removed")

    def estimate_time(self, size: int, external_resources: int) -> float:
        return 0.01 + size / (10 * 1024 * 1024)

    # -- transforms --------------------------------------------------------

    @staticmethod
    def ensure_structure(document: Document) -> str:
        """Wrap fragments in a minimal html/head/body skeleton."""
        content = document.html
        if "<html" in content.lower():
            return content
        title = html_lib.escape(document.title or "Document")
        return (
            "<!DOCTYPE html>\n<html>\n<head>\n<meta charset=\"utf-8\">\n"
            f"<title>{title}</title>\n</head>\n<body>\n{content}\n</body>\n</html>\n"
        )

    @staticmethod
    def consolidate_styles(content: str) -> str:
        """Merge every ``<style>`` block into one block at the top of ``<head>``."""
        styles = [s.strip() for s in _STYLE_RE.findall(content) if s.strip()]
        if not styles:
            return content
        content = _STYLE_RE.sub("", content)
        block = '<style type="text/css">\n' + "\n".join(styles) + "\n</style>"
        if _HEAD_OPEN_RE.search(content):
            return _HEAD_OPEN_RE.sub(lambda m: f"<head{m.group(1)}>\n{block}", content, count=1)
        return block + "\n" + content

    @staticmethod
    def remove_scripts(content: str) -> str:
        """Strip scripts, inline event handlers and ``javascript:`` URLs."""
        content = _SCRIPT_RE.sub("", content)
        return _TAG_RE.sub(_strip_tag_scripts, content)

    @staticmethod
    def add_custom_css(content: str, css: str) -> str:
        block = f'<style type="text/css">\n{css}\n</style>\n'
        if _HEAD_CLOSE_RE.search(content):
            return _HEAD_CLOSE_RE.sub(lambda m: block + m.group(0), content, count=1)
        return block + content

    @staticmethod
    def compress(content: str) -> str:
        content = _COMMENT_RE.sub("", content)
        content = _BETWEEN_TAGS_RE.sub("><", content)
        return _WHITESPACE_RE.sub(" ", content).strip()

    def add_metadata_comments(self, content: str) -> str:
        comments = (
            f"<!-- TierConvert markup export generated at {datetime.now(UTC).isoformat()} -->\n"
            f"<!-- TierConvert options: inline_styles={self.config.inline_styles}, "
            f"javascript_removed={not self.config.include_javascript} -->\n"
        )
        match = _DOCTYPE_RE.match(content)
        if match:
            doctype = match.group(1)
            if not doctype.endswith("\n"):
                doctype += "\n"
            return doctype + comments + content[match.end():]
        return comments + content


def _strip_tag_scripts(match: re.Match[str]) -> str:
    tag = _EVENT_HANDLER_RE.sub("", match.group(0))
    return _JS_URL_RE.sub(lambda m: f"{m.group(1)}={m.group(2)}#", tag)
