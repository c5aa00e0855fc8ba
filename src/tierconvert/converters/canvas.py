"""Drawing-surface backend rendering text layout with Pillow.

Markup is reduced to styled text blocks (headings, paragraphs, list items)
which are word-wrapped and drawn onto fixed-width pages. Raster formats get a
single image clipped at ``max_height``; PDF gets one page per sheet.
"""

from __future__ import annotations

import base64
import io
import time
from dataclasses import dataclass
from html.parser import HTMLParser
from typing import Any

import anyio
from PIL import Image, ImageDraw, ImageFont

from tierconvert.config.settings import CanvasConfig
from tierconvert.converters.base import BackendId, BaseConverter, ConversionResult, Document
from tierconvert.exceptions import ConversionError
from tierconvert.utils.logging import get_logger

log = get_logger(__name__)

_BLOCK_TAGS = {
    "p", "div", "section", "article", "header", "footer", "main", "aside", "nav",
    "h1", "h2", "h3", "h4", "h5", "h6", "li", "tr", "blockquote", "pre", "table",
    "ul", "ol", "dl", "dt", "dd", "figure", "figcaption", "form",
}  # fmt: skip
_SKIP_TAGS = {"script", "style", "head", "title", "noscript", "template", "svg"}
_HEADING_SCALE = {"h1": 2.0, "h2": 1.6, "h3": 1.35, "h4": 1.2, "h5": 1.1, "h6": 1.0}

_PIL_FORMATS = {"png": "PNG", "jpeg": "JPEG", "webp": "WEBP", "pdf": "PDF"}


@dataclass
class TextBlock:
    text: str
    tag: str = "p"

    @property
    def scale(self) -> float:
        return _HEADING_SCALE.get(self.tag, 1.0)


class _BlockExtractor(HTMLParser):
    """Collect visible text grouped into block-level elements."""

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.blocks: list[TextBlock] = []
        self.title: str | None = None
        self._parts: list[str] = []
        self._tag = "p"
        self._skip_depth = 0
        self._in_title = False

    def _flush(self) -> None:
        text = " ".join("".join(self._parts).split())
        if text:
            prefix = "- " if self._tag == "li" else ""
            self.blocks.append(TextBlock(prefix + text, self._tag))
        self._parts = []

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag == "title":
            self._in_title = True
        if tag in _SKIP_TAGS:
            self._skip_depth += 1
            return
        if tag in _BLOCK_TAGS:
            self._flush()
            self._tag = tag
        elif tag == "br":
            self._flush()

    def handle_endtag(self, tag: str) -> None:
        if tag == "title":
            self._in_title = False
        if tag in _SKIP_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
            return
        if tag in _BLOCK_TAGS:
            self._flush()
            self._tag = "p"

    def handle_data(self, data: str) -> None:
        if self._in_title:
            self.title = (self.title or "") + data.strip()
        if self._skip_depth:
            return
        self._parts.append(data)

    def close(self) -> None:
        super().close()
        self._flush()


def extract_text_blocks(html: str) -> tuple[list[TextBlock], str | None]:
    """Reduce markup to ordered text blocks and the document title."""
    parser = _BlockExtractor()
    parser.feed(html)
    parser.close()
    return parser.blocks, parser.title


class CanvasConverter(BaseConverter):
    """Renders a text layout of the document with Pillow."""

    backend_id = BackendId.CANVAS
    name = "canvas"
    description = "Text layout drawn on a Pillow image surface"
    output_formats = ("png", "jpeg", "webp", "pdf")
    default_format = "png"

    def __init__(self, config: CanvasConfig | None = None) -> None:
        self.config = config or CanvasConfig()
        self.max_file_size = self.config.max_file_size
        self._fonts: dict[int, ImageFont.FreeTypeFont | ImageFont.ImageFont] = {}

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
            data, pages = await anyio.to_thread.run_sync(self._render, document, fmt)
        except ConversionError:
            raise
        except Exception as e:
            raise ConversionError(
                f"Canvas rendering failed: {e}", backend=self.backend_id.value, cause=e
            ) from e

        log.debug("Canvas conversion complete", format=fmt, pages=pages, bytes=len(data))
        return self.build_result(
            base64.b64encode(data).decode("ascii"),
            fmt,
            document,
            started,
            pages=pages,
            canvas_size=f"{self.config.width}x{self.config.page_height}",
        )

    def estimate_time(self, size: int, external_resources: int) -> float:
        return 0.2 + size / (512 * 1024)

    def _extend_validation(
        self,
        document: Document,
        errors: list[str],
        warnings: list[str],
        context: dict[str, Any],
    ) -> None:
        assets = context["assets"]
        if assets["by_category"].get("image"):
            warnings.append("Images are not rendered by the canvas backend")

    # -- rendering (worker thread) -----------------------------------------

    def _font(self, scale: float) -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
        size = max(6, round(self.config.font_size * scale))
        if size not in self._fonts:
            if self.config.font_path:
                self._fonts[size] = ImageFont.truetype(self.config.font_path, size)
            else:
                self._fonts[size] = ImageFont.load_default(size=size)
        return self._fonts[size]

    def _wrap(self, draw: ImageDraw.ImageDraw, text: str, font: Any, width: int) -> list[str]:
        lines: list[str] = []
        current = ""
        for word in text.split():
            candidate = f"{current} {word}" if current else word
            if draw.textlength(candidate, font=font) <= width or not current:
                current = candidate
            else:
                lines.append(current)
                current = word
        if current:
            lines.append(current)
        return lines

    def _layout(self, blocks: list[TextBlock]) -> list[tuple[str, Any, int]]:
        """Wrap every block into ``(line, font, line_height)`` rows."""
        probe = ImageDraw.Draw(Image.new("RGB", (1, 1)))
        usable = self.config.width - 2 * self.config.margin
        rows: list[tuple[str, Any, int]] = []
        for block in blocks:
            font = self._font(block.scale)
            line_height = round(self.config.font_size * block.scale * 1.4)
            for line in self._wrap(probe, block.text, font, usable):
                rows.append((line, font, line_height))
            rows.append(("", font, line_height // 2))
        return rows

    def _paginate(self, rows: list[tuple[str, Any, int]], page_height: int) -> list[Image.Image]:
        pages: list[Image.Image] = []
        margin = self.config.margin
        image = Image.new("RGB", (self.config.width, page_height), "white")
        draw = ImageDraw.Draw(image)
        y = margin
        for line, font, line_height in rows:
            if y + line_height > page_height - margin and y > margin:
                pages.append(image)
                image = Image.new("RGB", (self.config.width, page_height), "white")
                draw = ImageDraw.Draw(image)
                y = margin
            if line:
                draw.text((margin, y), line, font=font, fill="black")
            y += line_height
        pages.append(image)
        return pages

    def _render(self, document: Document, fmt: str) -> tuple[bytes, int]:
        blocks, title = extract_text_blocks(document.html)
        heading = document.title or title
        if heading and not (blocks and blocks[0].text == heading):
            blocks.insert(0, TextBlock(heading, "h1"))
        if not blocks:
            raise ConversionError("Document has no visible text", backend=self.backend_id.value)

        rows = self._layout(blocks)
        buffer = io.BytesIO()
        if fmt == "pdf":
            pages = self._paginate(rows, self.config.page_height)
            pages[0].save(buffer, format="PDF", save_all=True, append_images=pages[1:])
            return buffer.getvalue(), len(pages)

        content_height = sum(h for _, _, h in rows) + 2 * self.config.margin
        height = max(100, min(content_height, self.config.max_height))
        image = self._paginate(rows, height)[0]
        save_kwargs: dict[str, Any] = {}
        if fmt in ("jpeg", "webp"):
            save_kwargs["quality"] = self.config.image_quality
        image.save(buffer, format=_PIL_FORMATS[fmt], **save_kwargs)
        return buffer.getvalue(), 1
