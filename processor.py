"""Image processing: decode, watermark, re-encode and thumbnail.

Raster formats go through Pillow. SVG documents are stored as XML, so the
watermark becomes a ``<text>`` element; only their thumbnail is rasterized
(cairosvg) before it takes the same WEBP path as every other thumbnail.
"""
import io
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Optional

import cairosvg
from defusedxml import DefusedXmlException
from defusedxml import ElementTree as SafeET
from PIL import Image as PILImage, ImageDraw, ImageFont, ImageOps, ImageSequence, UnidentifiedImageError

from errors import ProcessingFailure

SUPPORTED_FORMATS = {"PNG", "JPEG", "GIF", "WEBP", "AVIF"}
# Formats that are kept as-is even when WEBP compression is requested
PASSTHROUGH_FORMATS = {"GIF", "SVG"}
SVG_MIME = "image/svg+xml"
SVG_NS = "http://www.w3.org/2000/svg"
ORIENTATION_TAG = 0x0112
MIME_TYPES = {
    "PNG": "image/png",
    "JPEG": "image/jpeg",
    "GIF": "image/gif",
    "WEBP": "image/webp",
    "AVIF": "image/avif",
}
# EXIF orientation value -> transpose that restores the upright image
ORIENTATION_TRANSPOSE = {
    2: PILImage.Transpose.FLIP_LEFT_RIGHT,
    3: PILImage.Transpose.ROTATE_180,
    4: PILImage.Transpose.FLIP_TOP_BOTTOM,
    5: PILImage.Transpose.TRANSPOSE,
    6: PILImage.Transpose.ROTATE_270,
    7: PILImage.Transpose.TRANSVERSE,
    8: PILImage.Transpose.ROTATE_90,
}

ET.register_namespace("", SVG_NS)
ET.register_namespace("xlink", "http://www.w3.org/1999/xlink")

_DECODE_ERRORS = (
    UnidentifiedImageError,
    PILImage.DecompressionBombError,
    OSError,
    ValueError,
    SyntaxError,
    EOFError,
)


@dataclass
class ProcessOptions:
    compress_to_webp: bool = True
    quality: int = 90
    watermark_text: str = ""


@dataclass
class ProcessedImage:
    data: bytes
    mime: str
    ext: str
    width: int
    height: int

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class Thumbnail:
    data: bytes
    ext: str


def watermark_font_size(width: int) -> int:
    return max(16, round(width / 25))


def looks_like_svg(data: bytes) -> bool:
    head = data[:4096].lstrip(b"\xef\xbb\xbf \t\r\n")
    return head.startswith(b"<") and b"<svg" in head.lower()


def _load_font(size: int):
    for name in ("DejaVuSans-Bold.ttf", "Arial Bold.ttf", "arialbd.ttf", "arial.ttf"):
        try:
            return ImageFont.truetype(name, size=size)
        except OSError:
            continue
    return ImageFont.load_default(size=size)


def _has_alpha(image: PILImage.Image) -> bool:
    return "A" in image.getbands() or "transparency" in image.info


def _watermark_layer(size: tuple[int, int], text: str) -> PILImage.Image:
    """Transparent layer with ``text`` anchored to the bottom-right corner."""
    width, height = size
    font_size = watermark_font_size(width)
    padding = round(font_size * 0.6)
    font = _load_font(font_size)
    layer = PILImage.new("RGBA", size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(layer)
    _, _, right, bottom = draw.textbbox((0, 0), text, font=font, stroke_width=2)
    position = (width - padding - right, height - padding - bottom)
    draw.text(
        position,
        text,
        font=font,
        fill=(255, 255, 255, 178),
        stroke_width=2,
        stroke_fill=(0, 0, 0, 89),
    )
    return layer


def _apply_watermark(frame: PILImage.Image, layer: PILImage.Image) -> PILImage.Image:
    base = frame.convert("RGBA")
    return PILImage.alpha_composite(base, layer)


def _prepare_for(frame: PILImage.Image, fmt: str) -> PILImage.Image:
    """Convert a frame to a mode the target encoder accepts."""
    if fmt == "JPEG":
        if frame.mode in ("RGB", "L", "CMYK"):
            return frame
        return frame.convert("RGB")
    if fmt in ("WEBP", "AVIF"):
        if frame.mode in ("RGB", "RGBA"):
            return frame
        return frame.convert("RGBA" if _has_alpha(frame) else "RGB")
    return frame


def _encode(frames: list, fmt: str, info: dict, quality: Optional[int] = None) -> bytes:
    frames = [_prepare_for(f, fmt) for f in frames]
    params = {}
    if quality is not None and fmt in ("JPEG", "WEBP", "AVIF"):
        params["quality"] = quality
    if len(frames) > 1:
        params["save_all"] = True
        params["append_images"] = frames[1:]
        params["loop"] = info.get("loop", 0)
        durations = info.get("durations")
        if durations:
            params["duration"] = durations
    buf = io.BytesIO()
    frames[0].save(buf, format=fmt, **params)
    return buf.getvalue()


def _measure(data: bytes) -> tuple[int, int]:
    with PILImage.open(io.BytesIO(data)) as im:
        return im.size


def _parse_length(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    match = re.match(r"^\s*([0-9]*\.?[0-9]+)\s*(px)?\s*$", value)
    return float(match.group(1)) if match else None


def _fmt_number(value: float) -> str:
    return f"{value:.2f}".rstrip("0").rstrip(".")


class SvgDocument:
    """Parsed SVG with its display size and user coordinate box."""

    def __init__(self, data: bytes):
        try:
            self.root = SafeET.fromstring(data)
        except (SafeET.ParseError, DefusedXmlException) as e:
            raise ProcessingFailure(f"invalid SVG document: {e}") from e
        if not self.root.tag.endswith("svg"):
            raise ProcessingFailure("document root is not <svg>")
        self.view_box = self._parse_view_box(self.root.get("viewBox"))
        width = _parse_length(self.root.get("width"))
        height = _parse_length(self.root.get("height"))
        if self.view_box:
            _, _, vb_w, vb_h = self.view_box
            if width is None and height is None:
                width, height = vb_w, vb_h
            elif width is None:
                width = height * vb_w / vb_h
            elif height is None:
                height = width * vb_h / vb_w
        # Browser default size for an unsized SVG
        self.width = width or 300.0
        self.height = height or 150.0

    @staticmethod
    def _parse_view_box(value: Optional[str]):
        if not value:
            return None
        try:
            parts = [float(p) for p in re.split(r"[\s,]+", value.strip())]
        except ValueError:
            return None
        if len(parts) != 4 or parts[2] <= 0 or parts[3] <= 0:
            return None
        return tuple(parts)

    @property
    def pixel_size(self) -> tuple[int, int]:
        return max(1, round(self.width)), max(1, round(self.height))

    def add_watermark(self, text: str) -> None:
        min_x, min_y, box_w, box_h = self.view_box or (0.0, 0.0, self.width, self.height)
        font_size = watermark_font_size(round(box_w))
        padding = round(font_size * 0.6)
        node = ET.SubElement(self.root, f"{{{SVG_NS}}}text")
        node.set("x", _fmt_number(min_x + box_w - padding))
        node.set("y", _fmt_number(min_y + box_h - padding))
        node.set("text-anchor", "end")
        node.set(
            "style",
            f"fill:rgba(255,255,255,0.7);font-size:{font_size}px;"
            "font-family:'Helvetica Neue',Arial,sans-serif;font-weight:600;"
            "paint-order:stroke;stroke:rgba(0,0,0,0.35);stroke-width:2px",
        )
        node.text = text

    def fit_within(self, box: int) -> None:
        """Reduce the display size to fit in ``box`` x ``box``; never enlarge."""
        if self.view_box is None:
            self.view_box = (0.0, 0.0, self.width, self.height)
            self.root.set("viewBox", " ".join(_fmt_number(v) for v in self.view_box))
        scale = min(1.0, box / self.width, box / self.height)
        self.width *= scale
        self.height *= scale
        self.root.set("width", _fmt_number(self.width))
        self.root.set("height", _fmt_number(self.height))

    def to_bytes(self) -> bytes:
        return ET.tostring(self.root, encoding="utf-8", xml_declaration=True)


class ImageProcessor:
    """Turns uploaded bytes into the stored image and its thumbnail."""

    def __init__(self, thumb_size: int = 400, thumb_quality: int = 80):
        self.thumb_size = thumb_size
        self.thumb_quality = thumb_quality

    def process(self, raw: bytes, options: ProcessOptions) -> ProcessedImage:
        if not raw:
            raise ProcessingFailure("empty image payload")
        if looks_like_svg(raw):
            return self._process_svg(raw, options)
        try:
            return self._process_raster(raw, options)
        except ProcessingFailure:
            raise
        except _DECODE_ERRORS as e:
            raise ProcessingFailure(f"cannot process image: {e}") from e

    def _open(self, raw: bytes) -> PILImage.Image:
        image = PILImage.open(io.BytesIO(raw))
        if image.format not in SUPPORTED_FORMATS:
            raise ProcessingFailure(f"unsupported image format: {image.format}")
        image.load()
        return image

    def _process_raster(self, raw: bytes, options: ProcessOptions) -> ProcessedImage:
        image = self._open(raw)
        fmt = image.format
        info = {"loop": image.info.get("loop", 0)}

        frames = []
        durations = []
        for frame in ImageSequence.Iterator(image):
            frames.append(frame.copy())
            durations.append(frame.info.get("duration", 100))
        if len(frames) > 1:
            info["durations"] = durations

        transpose = ORIENTATION_TRANSPOSE.get(image.getexif().get(ORIENTATION_TAG, 1))
        rotated = transpose is not None
        if rotated:
            frames = [f.transpose(transpose) for f in frames]

        if options.watermark_text:
            layer = _watermark_layer(frames[0].size, options.watermark_text)
            frames = [_apply_watermark(f, layer) for f in frames]

        if options.compress_to_webp and fmt not in PASSTHROUGH_FORMATS:
            data = _encode(frames, "WEBP", info, quality=options.quality)
            out_fmt = "WEBP"
        elif rotated or options.watermark_text:
            data = _encode(frames, fmt, info, quality=95)
            out_fmt = fmt
        else:
            data = raw
            out_fmt = fmt

        width, height = _measure(data)
        return ProcessedImage(
            data=data,
            mime=MIME_TYPES[out_fmt],
            ext=out_fmt.lower(),
            width=width,
            height=height,
        )

    def _process_svg(self, raw: bytes, options: ProcessOptions) -> ProcessedImage:
        doc = SvgDocument(raw)
        data = raw
        if options.watermark_text:
            doc.add_watermark(options.watermark_text)
            data = doc.to_bytes()
        width, height = doc.pixel_size
        return ProcessedImage(data=data, mime=SVG_MIME, ext="svg", width=width, height=height)

    def thumbnail(self, data: bytes) -> Thumbnail:
        """Bounded WEBP preview of processed image bytes."""
        try:
            if looks_like_svg(data):
                image = self._rasterize_svg(data)
            else:
                image = self._open(data)
                image.seek(0)
            frame = ImageOps.exif_transpose(image)
            frame = frame.convert("RGBA" if _has_alpha(frame) else "RGB")
            frame.thumbnail((self.thumb_size, self.thumb_size), PILImage.LANCZOS)
            buf = io.BytesIO()
            frame.save(buf, format="WEBP", quality=self.thumb_quality)
        except ProcessingFailure:
            raise
        except _DECODE_ERRORS as e:
            raise ProcessingFailure(f"cannot create thumbnail: {e}") from e
        return Thumbnail(data=buf.getvalue(), ext="webp")

    def _rasterize_svg(self, data: bytes) -> PILImage.Image:
        # Rendered at thumbnail scale, not at the full display size
        doc = SvgDocument(data)
        doc.fit_within(self.thumb_size)
        png = cairosvg.svg2png(bytestring=doc.to_bytes())
        image = PILImage.open(io.BytesIO(png))
        image.load()
        return image
