"""
Payload Transformer

Makes an attachment chunk fit the response budget:
- text/*  : keep the last `budget` bytes and prepend a truncation notice
            (the notice is not counted against the budget)
- image/* : halve both dimensions until the re-encoded image fits, failing
            with ImageTooLargeToFitError once a dimension reaches 1
- other   : UnsupportedAttachmentTypeError
"""
import asyncio
import io
import logging
import mimetypes
from enum import Enum

from PIL import Image, UnidentifiedImageError

from bugsplat_mcp.errors import ImageTooLargeToFitError, UnsupportedAttachmentTypeError

logger = logging.getLogger(__name__)

DEFAULT_MEDIA_TYPE = "application/octet-stream"

# Built-in tables only: host mime.types files map e.g. .dmp to pcap
_mime_types = mimetypes.MimeTypes()
# Plain-text extensions common in crash bundles that mimetypes doesn't know
for _ext in (".log", ".ini", ".conf", ".list", ".def", ".in", ".text"):
    _mime_types.add_type("text/plain", _ext)


def guess_media_type(file_name: str) -> str:
    media_type, _ = _mime_types.guess_type(file_name)
    return media_type or DEFAULT_MEDIA_TYPE


def truncation_notice(budget: int) -> bytes:
    return f"... (file truncated to last {budget} bytes)\n\n".encode("utf-8")


def truncate_text(data: bytes, budget: int) -> bytes:
    """Keep the tail of oversized text, prefixed with a truncation notice."""
    if len(data) <= budget:
        return data
    return truncation_notice(budget) + data[len(data) - budget:]


class ShrinkState(str, Enum):
    MEASURING = "measuring"
    SHRINKING = "shrinking"
    FITS = "fits"
    EXHAUSTED = "exhausted"


class ImageShrinker:
    """
    Iterative image downscaler.

    MEASURING -> FITS       size <= budget
    MEASURING -> EXHAUSTED  size > budget and width or height <= 1
    MEASURING -> SHRINKING  otherwise
    SHRINKING -> MEASURING  dimensions halved (floor, min 1) and re-encoded

    Dimensions strictly decrease on every SHRINKING step, so run()
    terminates after O(log(max(width, height))) iterations.
    """

    def __init__(self, data: bytes, budget: int, file_name: str = ""):
        self.budget = budget
        self.file_name = file_name
        self.data = data
        self.iterations = 0
        try:
            self._image = Image.open(io.BytesIO(data))
            self._image.load()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
            raise UnsupportedAttachmentTypeError(f"Could not decode image {file_name}: {e}") from e
        self.format = self._image.format or "PNG"
        self.width, self.height = self._image.size
        self.state = ShrinkState.MEASURING

    @property
    def done(self) -> bool:
        return self.state in (ShrinkState.FITS, ShrinkState.EXHAUSTED)

    def step(self) -> ShrinkState:
        if self.state == ShrinkState.MEASURING:
            if len(self.data) <= self.budget:
                self.state = ShrinkState.FITS
            elif self.width <= 1 or self.height <= 1:
                self.state = ShrinkState.EXHAUSTED
            else:
                self.state = ShrinkState.SHRINKING
        elif self.state == ShrinkState.SHRINKING:
            self._shrink()
            self.state = ShrinkState.MEASURING
        return self.state

    def _shrink(self) -> None:
        width = max(1, self.width // 2)
        height = max(1, self.height // 2)
        logger.info(f"Resizing {self.file_name} to {width}x{height}...")

        resized = self._image.resize((width, height), Image.LANCZOS)
        buf = io.BytesIO()
        image = resized
        if self.format == "JPEG" and image.mode not in ("RGB", "L", "CMYK"):
            image = image.convert("RGB")
        try:
            image.save(buf, format=self.format)
        except (KeyError, OSError) as e:
            raise UnsupportedAttachmentTypeError(
                f"Cannot re-encode {self.format} image {self.file_name}: {e}"
            ) from e

        self._image = resized
        self.data = buf.getvalue()
        self.width, self.height = resized.size
        self.iterations += 1

    def run(self) -> bytes:
        while not self.done:
            self.step()
        if self.state == ShrinkState.EXHAUSTED:
            raise ImageTooLargeToFitError(
                f"Image {self.file_name} could not be resized sufficiently to meet the size limit."
            )
        return self.data


def shrink_image(data: bytes, budget: int, file_name: str = "") -> bytes:
    """Downscale an image until it fits the budget."""
    if len(data) <= budget:
        return data
    logger.info(f"Image {file_name} ({len(data)} bytes) exceeds size limit {budget}. Resizing...")
    result = ImageShrinker(data, budget, file_name).run()
    logger.info(f"Resized {file_name} to {len(result)} bytes.")
    return result


def fit_payload(data: bytes, media_type: str, file_name: str, budget: int) -> bytes:
    """
    Reduce a chunk so the outgoing payload respects the budget.

    Raises:
        ImageTooLargeToFitError: Image still too large at 1px
        UnsupportedAttachmentTypeError: Neither text nor image
    """
    if media_type.startswith("text/"):
        return truncate_text(data, budget)
    if media_type.startswith("image/"):
        return shrink_image(data, budget, file_name)
    raise UnsupportedAttachmentTypeError(f"Unsupported attachment type: {media_type}")


async def fit_payload_async(
    data: bytes,
    media_type: str,
    file_name: str,
    budget: int,
) -> bytes:
    """fit_payload off the event loop (image re-encoding is CPU-bound)."""
    return await asyncio.to_thread(fit_payload, data, media_type, file_name, budget)
