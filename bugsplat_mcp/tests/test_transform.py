"""
Tests for the payload transformer (text truncation, image downscaling).
"""
import io
import mimetypes
import os

import pytest
from PIL import Image

from bugsplat_mcp.errors import ImageTooLargeToFitError, UnsupportedAttachmentTypeError
from bugsplat_mcp.transform import (
    DEFAULT_MEDIA_TYPE,
    ImageShrinker,
    ShrinkState,
    fit_payload,
    fit_payload_async,
    guess_media_type,
    shrink_image,
    truncate_text,
    truncation_notice,
)

MB = 1024 * 1024


def noise_image(width: int, height: int, fmt: str = "PNG") -> bytes:
    """Random pixels compress badly, so byte size tracks pixel count."""
    image = Image.frombytes("RGB", (width, height), os.urandom(width * height * 3))
    buf = io.BytesIO()
    image.save(buf, format=fmt)
    return buf.getvalue()


def image_size(data: bytes):
    with Image.open(io.BytesIO(data)) as image:
        return image.size, image.format


class TestMediaType:

    @pytest.mark.parametrize("name,expected", [
        ("log.txt", "text/plain"),
        ("app.log", "text/plain"),
        ("settings.ini", "text/plain"),
        ("screenshot.png", "image/png"),
        ("photo.jpg", "image/jpeg"),
        ("minidump.dmp", DEFAULT_MEDIA_TYPE),
        ("no_extension", DEFAULT_MEDIA_TYPE),
    ])
    def test_guess_media_type(self, name, expected):
        assert guess_media_type(name) == expected

    def test_ignores_host_mime_registry(self, monkeypatch):
        # Debian's /etc/mime.types maps .dmp to a packet capture type
        monkeypatch.setattr(mimetypes, "guess_type", lambda *a, **kw: ("application/vnd.tcpdump.pcap", None))

        assert guess_media_type("minidump.dmp") == DEFAULT_MEDIA_TYPE
        assert guess_media_type("app.log") == "text/plain"


class TestTextTruncation:

    def test_small_text_unchanged(self):
        assert truncate_text(b"hello world!", 100) == b"hello world!"

    def test_text_exactly_at_budget_unchanged(self):
        data = b"x" * 100
        assert truncate_text(data, 100) == data

    def test_large_text_keeps_tail_with_notice(self):
        """2 MB of text with a 1 MB budget keeps exactly the last 1 MB."""
        data = bytes(range(256)) * (2 * MB // 256)
        budget = MB

        result = truncate_text(data, budget)

        notice = truncation_notice(budget)
        assert result.startswith(notice)
        assert notice.startswith(b"... (file truncated to last 1048576 bytes)")
        assert result[len(notice):] == data[-budget:]
        # The notice is not counted against the budget
        assert len(result) == len(notice) + budget

    def test_fit_payload_routes_text(self):
        result = fit_payload(b"a" * 50, "text/plain", "log.txt", 10)
        assert result.endswith(b"a" * 10)


class TestImageShrinker:

    def test_small_image_unchanged(self):
        data = noise_image(16, 16)
        assert shrink_image(data, len(data)) is data

    def test_shrinks_until_it_fits(self):
        data = noise_image(256, 256)
        budget = 60_000
        assert len(data) > budget

        result = shrink_image(data, budget, "screenshot.png")

        assert len(result) <= budget
        assert len(result) < len(data)
        size, fmt = image_size(result)
        assert size == (128, 128)
        assert fmt == "PNG"

    def test_keeps_jpeg_format(self):
        data = noise_image(256, 256, "JPEG")

        result = shrink_image(data, len(data) // 2, "photo.jpg")

        assert image_size(result)[1] == "JPEG"
        assert len(result) <= len(data) // 2

    def test_state_transitions(self):
        data = noise_image(256, 256)
        shrinker = ImageShrinker(data, 60_000, "screenshot.png")

        assert shrinker.state == ShrinkState.MEASURING
        assert shrinker.step() == ShrinkState.SHRINKING
        assert shrinker.step() == ShrinkState.MEASURING
        assert (shrinker.width, shrinker.height) == (128, 128)
        assert shrinker.step() == ShrinkState.FITS
        assert shrinker.done
        assert shrinker.iterations == 1

    def test_exhausted_when_nothing_fits(self):
        data = noise_image(64, 64)

        with pytest.raises(ImageTooLargeToFitError):
            shrink_image(data, 10, "screenshot.png")

    def test_dimensions_strictly_decrease_and_terminate(self):
        data = noise_image(300, 37)
        shrinker = ImageShrinker(data, 10, "wide.png")
        seen = [(shrinker.width, shrinker.height)]

        while not shrinker.done:
            if shrinker.step() == ShrinkState.MEASURING:
                seen.append((shrinker.width, shrinker.height))

        assert shrinker.state == ShrinkState.EXHAUSTED
        assert seen == [(300, 37), (150, 18), (75, 9), (37, 4), (18, 2), (9, 1)]
        for before, after in zip(seen, seen[1:]):
            assert after[0] < before[0] and after[1] < before[1]

    def test_single_pixel_row_is_exhausted_immediately(self):
        data = noise_image(400, 1)
        shrinker = ImageShrinker(data, 10, "line.png")

        assert shrinker.step() == ShrinkState.EXHAUSTED
        assert shrinker.iterations == 0

    def test_undecodable_image(self):
        with pytest.raises(UnsupportedAttachmentTypeError):
            shrink_image(b"\x89PNG not really" * 10, 5, "broken.png")

    def test_decompression_bomb_is_unsupported(self, monkeypatch):
        data = noise_image(64, 64)
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)

        with pytest.raises(UnsupportedAttachmentTypeError, match="bomb.png"):
            shrink_image(data, 10, "bomb.png")


class TestFitPayload:

    def test_unsupported_type(self):
        with pytest.raises(UnsupportedAttachmentTypeError, match="application/octet-stream"):
            fit_payload(b"MDMP", "application/octet-stream", "crash.dmp", 100)

    def test_image_result_never_larger_than_input(self):
        data = noise_image(128, 128)
        for budget in (len(data) + 1, len(data), len(data) // 3):
            result = fit_payload(data, "image/png", "shot.png", budget)
            assert len(result) <= len(data)
            assert len(result) <= budget

    @pytest.mark.asyncio
    async def test_async_variant(self):
        data = noise_image(256, 256)

        result = await fit_payload_async(data, "image/png", "shot.png", 60_000)

        assert len(result) <= 60_000
