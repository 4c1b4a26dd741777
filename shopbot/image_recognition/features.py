from __future__ import annotations

import logging
from io import BytesIO

from PIL import Image, ImageStat, UnidentifiedImageError
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

PALETTE_SIZE = 3
_SAMPLE_SIZE = (150, 150)


class ImageFeatureError(Exception):
    pass


class _FeatureModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RGBColor(_FeatureModel):
    r: int = Field(..., ge=0, le=255)
    g: int = Field(..., ge=0, le=255)
    b: int = Field(..., ge=0, le=255)


class VisualFeatures(_FeatureModel):
    aspect_ratio: float = Field(..., gt=0)
    dominant_colors: list[RGBColor] = Field(default_factory=list)


def _palette(image: Image.Image, size: int) -> list[RGBColor]:
    sample = image.copy()
    sample.thumbnail(_SAMPLE_SIZE)
    quantized = sample.quantize(colors=size, method=Image.Quantize.MEDIANCUT)
    palette = quantized.getpalette() or []
    counts = sorted(quantized.getcolors() or [], reverse=True)
    colors: list[RGBColor] = []
    for _, index in counts[:size]:
        r, g, b = palette[index * 3 : index * 3 + 3]
        colors.append(RGBColor(r=r, g=g, b=b))
    if not colors:
        raise ValueError("empty palette")
    return colors


def _mean_color_variations(image: Image.Image) -> list[RGBColor]:
    r, g, b = ImageStat.Stat(image).mean[:3]

    def scaled(factor: float) -> RGBColor:
        return RGBColor(
            r=round(min(255, r * factor)),
            g=round(min(255, g * factor)),
            b=round(min(255, b * factor)),
        )

    return [scaled(1.0), scaled(0.8), scaled(1.2)]


def extract_visual_features(image_bytes: bytes) -> VisualFeatures:
    """Aspect ratio plus up to three dominant colors, most frequent first."""
    try:
        with Image.open(BytesIO(image_bytes)) as image:
            image.load()
            width, height = image.size
            rgb = image.convert("RGB")
    except (UnidentifiedImageError, OSError) as exc:
        raise ImageFeatureError(f"unreadable image: {exc}") from exc

    aspect_ratio = (width or 1) / (height or 1)
    try:
        colors = _palette(rgb, PALETTE_SIZE)
    except (ValueError, OSError) as exc:
        logger.warning("Palette extraction failed, using mean color", extra={"error": str(exc)})
        colors = _mean_color_variations(rgb)

    return VisualFeatures(aspect_ratio=aspect_ratio, dominant_colors=colors)
