import base64
import io

from PIL import Image

from asklepios.services.image_preprocessor import compress, prepare_upload, to_base64


def _open(data):
    img = Image.open(io.BytesIO(data))
    img.load()
    return img


def test_large_image_is_scaled_to_1024(png_bytes):
    out = compress(png_bytes(3000, 2000))
    img = _open(out)
    assert img.format == "JPEG"
    assert max(img.size) <= 1024
    assert img.size[0] == 1024
    # aspect ratio preserved
    assert abs(img.size[1] - 683) <= 1


def test_tall_image_limits_height(png_bytes):
    img = _open(compress(png_bytes(900, 2400)))
    assert img.size[1] == 1024
    assert img.size[0] < 1024


def test_small_image_is_not_upscaled(png_bytes):
    img = _open(compress(png_bytes(200, 100)))
    assert img.format == "JPEG"
    assert img.size == (200, 100)


def test_alpha_channel_is_flattened(png_bytes):
    img = _open(compress(png_bytes(50, 50, mode="RGBA")))
    assert img.mode == "RGB"


def test_undecodable_input_is_returned_unchanged():
    data = b"definitely not an image"
    assert compress(data) is data


def test_prepare_upload_reports_jpeg_only_when_reencoded(png_bytes):
    data, mime = prepare_upload(png_bytes(10, 10), "image/png")
    assert mime == "image/jpeg"
    assert _open(data).format == "JPEG"

    raw = b"\x00\x01garbage"
    data, mime = prepare_upload(raw, "image/webp")
    assert data is raw
    assert mime == "image/webp"


def test_to_base64():
    assert to_base64(b"abc") == "YWJj"
    assert base64.b64decode(to_base64(b"\xff\x00")) == b"\xff\x00"
