import io

import pytest
from PIL import Image

from conftest import SVG_DOC, make_animated_gif, make_image
from errors import ProcessingFailure
from processor import ImageProcessor, ProcessOptions, looks_like_svg, watermark_font_size


@pytest.fixture
def processor():
    return ImageProcessor(thumb_size=400, thumb_quality=80)


def dims(data: bytes):
    with Image.open(io.BytesIO(data)) as im:
        return im.size


def test_png_is_reencoded_to_webp(processor):
    out = processor.process(make_image("PNG", (300, 200)), ProcessOptions(compress_to_webp=True, quality=70))
    assert out.ext == "webp"
    assert out.mime == "image/webp"
    assert (out.width, out.height) == (300, 200)
    assert dims(out.data) == (300, 200)
    assert out.size == len(out.data)


def test_avif_upload_is_decoded(processor):
    out = processor.process(make_image("AVIF", (64, 48)), ProcessOptions(compress_to_webp=True))
    assert out.ext == "webp"
    assert dims(out.data) == (64, 48)
    kept = processor.process(make_image("AVIF", (64, 48)), ProcessOptions(compress_to_webp=False))
    assert kept.ext == "avif"
    assert kept.mime == "image/avif"


def test_gif_keeps_its_format_when_compression_requested(processor):
    out = processor.process(make_image("GIF", (64, 64)), ProcessOptions(compress_to_webp=True))
    assert out.ext == "gif"
    assert out.mime == "image/gif"


def test_animated_gif_keeps_all_frames_with_watermark(processor):
    raw = make_animated_gif(frames=3)
    out = processor.process(raw, ProcessOptions(compress_to_webp=True, watermark_text="hello"))
    assert out.ext == "gif"
    with Image.open(io.BytesIO(out.data)) as im:
        assert im.n_frames == 3
        assert im.size == (60, 40)


def test_untouched_image_returns_original_bytes(processor):
    raw = make_image("PNG")
    out = processor.process(raw, ProcessOptions(compress_to_webp=False))
    assert out.data == raw
    assert out.ext == "png"


@pytest.mark.parametrize("compress", [True, False])
def test_watermark_changes_bytes_not_dimensions(processor, compress):
    raw = make_image("PNG", (500, 300))
    plain = processor.process(raw, ProcessOptions(compress_to_webp=compress, watermark_text=""))
    marked = processor.process(raw, ProcessOptions(compress_to_webp=compress, watermark_text="imgdrop"))
    assert plain.data != marked.data
    assert (plain.width, plain.height) == (marked.width, marked.height) == (500, 300)


def test_watermark_font_scales_with_width():
    assert watermark_font_size(100) == 16
    assert watermark_font_size(1000) == 40


def test_exif_orientation_is_applied(processor):
    exif = Image.Exif()
    exif[0x0112] = 6
    raw = make_image("JPEG", (40, 20), exif=exif.tobytes())
    out = processor.process(raw, ProcessOptions(compress_to_webp=False))
    assert out.ext == "jpeg"
    assert (out.width, out.height) == (20, 40)
    assert dims(out.data) == (20, 40)


def test_thumbnail_fits_box_and_is_webp(processor):
    thumb = processor.thumbnail(make_image("PNG", (1200, 600)))
    assert thumb.ext == "webp"
    assert dims(thumb.data) == (400, 200)


def test_thumbnail_never_upscales(processor):
    thumb = processor.thumbnail(make_image("JPEG", (50, 30)))
    assert dims(thumb.data) == (50, 30)


def test_garbage_input_fails(processor):
    with pytest.raises(ProcessingFailure):
        processor.process(b"definitely not an image", ProcessOptions())


def test_unsupported_format_fails(processor):
    with pytest.raises(ProcessingFailure):
        processor.process(make_image("BMP"), ProcessOptions())


def test_svg_passes_through_with_dimensions(processor):
    assert looks_like_svg(SVG_DOC)
    out = processor.process(SVG_DOC, ProcessOptions(compress_to_webp=True))
    assert out.ext == "svg"
    assert out.mime == "image/svg+xml"
    assert out.data == SVG_DOC
    assert (out.width, out.height) == (800, 600)


def test_svg_watermark_and_thumbnail(processor):
    out = processor.process(SVG_DOC, ProcessOptions(watermark_text="mark"))
    assert b"<text" in out.data and b"mark" in out.data
    assert (out.width, out.height) == (800, 600)

    thumb = processor.thumbnail(out.data)
    assert thumb.ext == "webp"
    with Image.open(io.BytesIO(thumb.data)) as im:
        assert im.format == "WEBP"
        assert im.size == (400, 300)


def test_broken_svg_fails(processor):
    with pytest.raises(ProcessingFailure):
        processor.process(b"<svg><rect></svg>", ProcessOptions())


def test_small_svg_thumbnail_is_not_enlarged(processor):
    doc = b'<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 100 50"><circle cx="25" cy="25" r="20"/></svg>'
    thumb = processor.thumbnail(doc)
    with Image.open(io.BytesIO(thumb.data)) as im:
        assert im.size == (100, 50)


def test_svg_entity_expansion_is_refused(processor):
    doc = (
        b'<?xml version="1.0"?>'
        b'<!DOCTYPE svg [<!ENTITY a "aaaaaaaaaa"><!ENTITY b "&a;&a;&a;&a;&a;&a;&a;&a;&a;&a;">]>'
        b'<svg xmlns="http://www.w3.org/2000/svg" width="10" height="10"><text>&b;</text></svg>'
    )
    with pytest.raises(ProcessingFailure):
        processor.process(doc, ProcessOptions())
