"""
Image pipeline: decode -> resize? -> grayscale? -> encode.

All Pillow decode/encode work happens in worker threads (asyncio.to_thread)
behind an asyncio slot limit so a burst of requests cannot oversubscribe the
CPU. Requests waiting for a slot wait on the event loop, not in a thread.
Two encode strategies share the same stages:

- buffered: the whole output is encoded before the first byte is sent,
  so encode failures can still become an error response;
- streaming: chunks are handed to the event loop while Pillow writes them,
  which keeps peak memory lower but commits headers before encode ends.
"""

import asyncio
import logging
from dataclasses import dataclass
from io import BytesIO
from typing import AsyncIterator, Callable, Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from .config import Settings
from .errors import InternalError, InvalidImage, PayloadTooLarge, ProxyError, UnsupportedFormat
from .fetcher import FetchedImage
from .params import OutputFormat
from .planner import ImageMetadata, TransformPlan

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

PIL_FORMATS = {
    OutputFormat.JPEG: "JPEG",
    OutputFormat.PNG: "PNG",
    OutputFormat.WEBP: "WEBP",
    OutputFormat.AVIF: "AVIF",
}

# EXIF orientations that swap width and height
_TRANSPOSED_ORIENTATIONS = {5, 6, 7, 8}
_ORIENTATION_TAG = 0x0112

_DECODE_ERRORS = (UnidentifiedImageError, OSError, ValueError, SyntaxError, EOFError)


@dataclass
class PreparedImage:
    image: Image.Image

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height


@dataclass
class PipelineResult:
    original: ImageMetadata
    width: int
    height: int
    output_format: OutputFormat
    resize_applied: bool
    body: AsyncIterator[bytes]
    # Known up front only for buffered encodes
    size: Optional[int] = None


def _open(data: bytes) -> Image.Image:
    try:
        return Image.open(BytesIO(data))
    except Image.DecompressionBombError as exc:
        raise PayloadTooLarge("Image dimensions exceed the decoder pixel limit") from exc
    except _DECODE_ERRORS as exc:
        raise InvalidImage() from exc


def probe(data: bytes) -> ImageMetadata:
    """Read dimensions and source format from the header only."""
    with _open(data) as image:
        width, height = image.size
        try:
            orientation = image.getexif().get(_ORIENTATION_TAG)
        except _DECODE_ERRORS:
            orientation = None
        source_format = (image.format or "").lower() or None
    if orientation in _TRANSPOSED_ORIENTATIONS:
        width, height = height, width
    if width < 1 or height < 1:
        raise InvalidImage()
    return ImageMetadata(width=width, height=height, format=source_format)


def _normalize_mode(image: Image.Image) -> Image.Image:
    if image.mode in ("RGB", "RGBA", "L", "LA"):
        return image
    return image.convert("RGBA" if image.has_transparency_data else "RGB")


def _flatten(image: Image.Image) -> Image.Image:
    """JPEG has no alpha channel; composite onto white."""
    if image.mode in ("RGB", "L"):
        return image
    if image.mode == "LA":
        background = Image.new("L", image.size, 255)
        background.paste(image.getchannel("L"), mask=image.getchannel("A"))
        return background
    background = Image.new("RGB", image.size, (255, 255, 255))
    background.paste(image, mask=image.getchannel("A"))
    return background


def prepare(data: bytes, plan: TransformPlan) -> PreparedImage:
    """Decode and apply the pixel stages of the plan."""
    source = _open(data)
    try:
        # First frame only for animated inputs
        image = ImageOps.exif_transpose(source)
        image = _normalize_mode(image)
    except Image.DecompressionBombError as exc:
        raise PayloadTooLarge("Image dimensions exceed the decoder pixel limit") from exc
    except _DECODE_ERRORS as exc:
        raise InvalidImage() from exc
    finally:
        source.close()

    if plan.resize is not None:
        image = image.resize(
            (plan.resize.width, plan.resize.height),
            Image.Resampling.LANCZOS,
            reducing_gap=3.0,
        )

    if plan.grayscale:
        image = image.convert("LA" if image.mode in ("RGBA", "LA") else "L")

    if plan.output_format is OutputFormat.JPEG:
        image = _flatten(image)
    return PreparedImage(image=image)


def ensure_encoder(output_format: OutputFormat) -> None:
    Image.init()
    if PIL_FORMATS[output_format] not in Image.SAVE:
        raise UnsupportedFormat(f"Encoder for {output_format.value} is not available")


def encode_to(prepared: PreparedImage, plan: TransformPlan, fp) -> None:
    try:
        prepared.image.save(fp, format=PIL_FORMATS[plan.output_format], **plan.encode_options)
    except (OSError, ValueError, KeyError) as exc:
        raise InternalError(f"Failed to encode {plan.output_format.value}: {exc}") from exc


def encode(prepared: PreparedImage, plan: TransformPlan) -> bytes:
    buffer = BytesIO()
    encode_to(prepared, plan, buffer)
    return buffer.getvalue()


class _ChunkWriter:
    """File-like sink that forwards fixed-size chunks to a callback."""

    def __init__(self, emit: Callable[[bytes], None], chunk_size: int = CHUNK_SIZE):
        self._emit = emit
        self._chunk_size = chunk_size
        self._buffer = bytearray()
        self._position = 0

    def write(self, data) -> int:
        self._buffer.extend(data)
        self._position += len(data)
        if len(self._buffer) >= self._chunk_size:
            self.flush()
        return len(data)

    def tell(self) -> int:
        return self._position

    def flush(self) -> None:
        if self._buffer:
            self._emit(bytes(self._buffer))
            self._buffer.clear()


def _log_abandoned(future: asyncio.Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning("[pipeline] abandoned streaming encode failed: %s", exc)


async def _iter_buffer(data: bytes) -> AsyncIterator[bytes]:
    view = memoryview(data)
    for start in range(0, len(view), CHUNK_SIZE):
        yield bytes(view[start:start + CHUNK_SIZE])


def _prepare_and_encode(data: bytes, plan: TransformPlan) -> tuple[PreparedImage, bytes]:
    prepared = prepare(data, plan)
    return prepared, encode(prepared, plan)


def _encode_streaming(prepared: PreparedImage, plan: TransformPlan, emit) -> None:
    writer = _ChunkWriter(emit)
    try:
        encode_to(prepared, plan, writer)
        writer.flush()
    finally:
        emit(None)


class ImagePipeline:
    """Drives Pillow for one request at a time per worker slot."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.streaming = settings.streaming
        self._slots = asyncio.Semaphore(settings.processing_concurrency)

    async def _in_slot(self, func, *args):
        # Waiters queue on the semaphore, not on executor threads
        async with self._slots:
            return await asyncio.to_thread(func, *args)

    async def probe(self, fetched: FetchedImage) -> ImageMetadata:
        return await asyncio.to_thread(probe, fetched.data)

    async def run(
        self,
        fetched: FetchedImage,
        metadata: ImageMetadata,
        plan: TransformPlan,
    ) -> PipelineResult:
        """
        Execute the plan against the fetched payload.

        The fetched bytes are released once decoded. Errors carry the
        original image metadata so it can still be reported.
        """
        try:
            ensure_encoder(plan.output_format)
            if self.streaming:
                prepared = await self._in_slot(prepare, fetched.data, plan)
                fetched.release()
                body = self._stream(prepared, plan, metadata)
                size = None
            else:
                prepared, output = await self._in_slot(_prepare_and_encode, fetched.data, plan)
                fetched.release()
                body = _iter_buffer(output)
                size = len(output)
        except ProxyError as exc:
            raise exc.with_metadata(metadata)

        logger.debug(
            "[pipeline] %dx%d -> %dx%d %s",
            metadata.width, metadata.height, prepared.width, prepared.height, plan.output_format.value,
        )
        return PipelineResult(
            original=metadata,
            width=prepared.width,
            height=prepared.height,
            output_format=plan.output_format,
            resize_applied=plan.resize_applied,
            body=body,
            size=size,
        )

    async def _stream(
        self,
        prepared: PreparedImage,
        plan: TransformPlan,
        metadata: ImageMetadata,
    ) -> AsyncIterator[bytes]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        def emit(chunk: Optional[bytes]) -> None:
            if not loop.is_closed():
                loop.call_soon_threadsafe(queue.put_nowait, chunk)

        await self._slots.acquire()
        worker = asyncio.ensure_future(asyncio.to_thread(_encode_streaming, prepared, plan, emit))
        # The slot is held until Pillow returns, even if the client leaves
        worker.add_done_callback(lambda _: self._slots.release())
        finished = False
        try:
            while True:
                chunk = await queue.get()
                if chunk is None:
                    finished = True
                    break
                yield chunk
        finally:
            if not finished:
                # Client went away; the encode still runs to completion
                worker.add_done_callback(_log_abandoned)
        try:
            await worker
        except ProxyError as exc:
            # Headers are already committed; the connection is simply cut
            logger.error("[pipeline] streaming encode failed mid-response: %s", exc.message)
            raise exc.with_metadata(metadata)
