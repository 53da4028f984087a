"""Post-processing of generated images into preview and HD artifacts."""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
from typing import Optional

import httpx
from PIL import Image, ImageDraw, ImageFont, ImageOps, UnidentifiedImageError


WATERMARK_SPACING = 260
WATERMARK_ANGLE = 30
WATERMARK_FONT_SIZE = 28
WATERMARK_ALPHA = 97
BRAND_BAR_HEIGHT = 40
BRAND_BAR_ALPHA = 140
BRAND_FONT_SIZE = 14
PREVIEW_JPEG_QUALITY = 80

_FONT_CANDIDATES = (
    "DejaVuSans-Bold.ttf",
    "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
    "Arial Bold.ttf",
)


class ArtifactProcessingError(RuntimeError):
    """Raised when a generated image cannot be fetched, decoded or encoded."""


@dataclass(frozen=True)
class ProcessedImage:
    content: bytes
    width: int
    height: int
    mime_type: str
    extension: str

    @property
    def size_bytes(self) -> int:
        return len(self.content)


def _load_font(size: int) -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
    for candidate in _FONT_CANDIDATES:
        try:
            return ImageFont.truetype(candidate, size=size)
        except OSError:
            continue
    return ImageFont.load_default()


def _decode(raw: bytes) -> Image.Image:
    if not raw:
        raise ArtifactProcessingError("artifact_empty_input")
    try:
        with Image.open(BytesIO(raw)) as opened:
            image = ImageOps.exif_transpose(opened)
            image.load()
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise ArtifactProcessingError(f"artifact_decode_failed detail={exc}") from exc
    return image


def _text_size(draw: ImageDraw.ImageDraw, text: str, font: ImageFont.ImageFont) -> tuple[int, int]:
    left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
    return right - left, bottom - top


def _watermark_tile(text: str) -> Image.Image:
    font = _load_font(WATERMARK_FONT_SIZE)
    measure = ImageDraw.Draw(Image.new("RGBA", (1, 1)))
    text_width, text_height = _text_size(measure, text, font)

    tile = Image.new("RGBA", (text_width + 8, text_height + 8), (0, 0, 0, 0))
    ImageDraw.Draw(tile).text((4, 4), text, font=font, fill=(255, 255, 255, WATERMARK_ALPHA))
    return tile.rotate(WATERMARK_ANGLE, expand=True, resample=Image.BICUBIC)


def _apply_watermark(image: Image.Image, watermark_text: str, brand_text: str) -> Image.Image:
    base = image.convert("RGBA")
    width, height = base.size
    overlay = Image.new("RGBA", base.size, (0, 0, 0, 0))

    tile = _watermark_tile(watermark_text)
    for y in range(0, height, WATERMARK_SPACING):
        for x in range(0, width, WATERMARK_SPACING):
            overlay.paste(tile, (x, y), tile)

    draw = ImageDraw.Draw(overlay)
    bar_top = max(height - BRAND_BAR_HEIGHT, 0)
    draw.rectangle((0, bar_top, width, height), fill=(0, 0, 0, BRAND_BAR_ALPHA))
    brand_font = _load_font(BRAND_FONT_SIZE)
    text_width, text_height = _text_size(draw, brand_text, brand_font)
    draw.text(
        ((width - text_width) / 2, bar_top + (BRAND_BAR_HEIGHT - text_height) / 2),
        brand_text,
        font=brand_font,
        fill=(255, 255, 255, 230),
    )
    return Image.alpha_composite(base, overlay)


def make_preview(
    raw: bytes,
    *,
    max_dimension: int = 1024,
    watermark_text: str = "PREVIEW - SnapStage.ai",
    brand_text: str = "PREVIEW ONLY - Purchase credits to download HD at SnapStage.ai",
) -> ProcessedImage:
    """Downscale (never upscale), watermark and JPEG-encode a generated image."""

    image = _decode(raw)
    if image.width > max_dimension or image.height > max_dimension:
        image.thumbnail((max_dimension, max_dimension), Image.LANCZOS)

    composed = _apply_watermark(image, watermark_text, brand_text).convert("RGB")
    buffer = BytesIO()
    composed.save(buffer, format="JPEG", quality=PREVIEW_JPEG_QUALITY, optimize=True)
    return ProcessedImage(
        content=buffer.getvalue(),
        width=composed.width,
        height=composed.height,
        mime_type="image/jpeg",
        extension="jpg",
    )


def make_hd(raw: bytes) -> ProcessedImage:
    image = _decode(raw)
    if image.mode not in {"RGB", "RGBA"}:
        image = image.convert("RGB")

    buffer = BytesIO()
    image.save(buffer, format="PNG", optimize=True)
    return ProcessedImage(
        content=buffer.getvalue(),
        width=image.width,
        height=image.height,
        mime_type="image/png",
        extension="png",
    )


def fetch_image_bytes(url: str, *, timeout_seconds: int = 30, client: Optional[httpx.Client] = None) -> bytes:
    try:
        if client is not None:
            response = client.get(url)
        else:
            with httpx.Client(timeout=max(1, timeout_seconds), follow_redirects=True) as owned:
                response = owned.get(url)
    except httpx.HTTPError as exc:
        raise ArtifactProcessingError(f"artifact_fetch_failed detail={exc}") from exc

    if response.status_code < 200 or response.status_code >= 300:
        raise ArtifactProcessingError(f"artifact_fetch_failed status={response.status_code}")
    return response.content
