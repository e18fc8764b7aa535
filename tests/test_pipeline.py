import asyncio
import io
import os
import threading

import pytest
from PIL import Image, features

from imgproxy.core import pipeline as pipeline_module
from imgproxy.core.errors import InternalError, InvalidImage, PayloadTooLarge, UnsupportedFormat
from imgproxy.core.fetcher import FetchedImage
from imgproxy.core.params import OutputFormat, TransformRequest
from imgproxy.core.pipeline import ImagePipeline, ensure_encoder, prepare, probe
from imgproxy.core.planner import ImageMetadata, plan_transform

URL = "https://example.com/photo.png"


def _plan(settings, metadata, **kwargs):
    return plan_transform(TransformRequest(source_url=URL, **kwargs), metadata, settings)


def _fetched(data, content_type="image/png"):
    return FetchedImage(data=data, content_type=content_type, content_length=len(data), url=URL)


async def _run_and_collect(pipeline, fetched, plan):
    metadata = await pipeline.probe(fetched)
    result = await pipeline.run(fetched, metadata, plan)
    body = b"".join([chunk async for chunk in result.body])
    return result, body


def test_probe_reads_dimensions_and_format(image_bytes):
    metadata = probe(image_bytes(width=321, height=123, fmt="JPEG"))
    assert metadata == ImageMetadata(width=321, height=123, format="jpeg")


def test_probe_applies_exif_orientation(image_bytes):
    exif = Image.Exif()
    exif[0x0112] = 6
    data = image_bytes(width=200, height=100, fmt="JPEG", exif=exif)
    assert probe(data) == ImageMetadata(width=100, height=200, format="jpeg")


@pytest.mark.parametrize("data", [b"", b"not an image at all", b"\x89PNG\r\n\x1a\n" + b"\x00" * 20])
def test_probe_rejects_garbage(data):
    with pytest.raises(InvalidImage):
        probe(data)


def test_prepare_truncated_image_is_invalid(make_settings, image_bytes):
    data = image_bytes(width=400, height=400, fmt="JPEG")
    truncated = data[: len(data) // 2]
    metadata = probe(truncated)
    with pytest.raises(InvalidImage):
        prepare(truncated, _plan(make_settings(), metadata))


def test_prepare_skips_optional_stages(make_settings, image_bytes):
    data = image_bytes(width=50, height=40)
    plan = _plan(make_settings(), ImageMetadata(50, 40), format=OutputFormat.PNG)
    prepared = prepare(data, plan)
    assert (prepared.width, prepared.height) == (50, 40)
    assert prepared.image.mode == "RGB"


def test_prepare_resizes_and_grays(make_settings, image_bytes):
    data = image_bytes(width=300, height=200, color=(200, 100, 50))
    plan = _plan(make_settings(), ImageMetadata(300, 200), width=150, grayscale=True, format=OutputFormat.PNG)
    prepared = prepare(data, plan)
    assert (prepared.width, prepared.height) == (150, 100)
    assert prepared.image.mode == "L"


def test_grayscale_keeps_alpha_for_png(make_settings, image_bytes):
    data = image_bytes(width=20, height=20, mode="RGBA", color=(10, 200, 30, 128))
    plan = _plan(make_settings(), ImageMetadata(20, 20), grayscale=True, format=OutputFormat.PNG)
    assert prepare(data, plan).image.mode == "LA"


def test_jpeg_output_flattens_alpha_onto_white(make_settings, image_bytes):
    data = image_bytes(width=10, height=10, mode="RGBA", color=(0, 0, 0, 0))
    plan = _plan(make_settings(), ImageMetadata(10, 10), format=OutputFormat.JPEG)
    prepared = prepare(data, plan)
    assert prepared.image.mode == "RGB"
    assert prepared.image.getpixel((5, 5)) == (255, 255, 255)


def test_palette_image_is_normalised(make_settings):
    img = Image.new("P", (16, 16), 3)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    plan = _plan(make_settings(), ImageMetadata(16, 16), width=8, format=OutputFormat.WEBP)
    prepared = prepare(buf.getvalue(), plan)
    assert prepared.image.mode == "RGB"
    assert prepared.width == 8


def test_animated_input_uses_first_frame(make_settings):
    frames = [Image.new("RGB", (30, 20), color) for color in ((255, 0, 0), (0, 0, 255))]
    buf = io.BytesIO()
    frames[0].save(buf, format="GIF", save_all=True, append_images=frames[1:])
    data = buf.getvalue()
    plan = _plan(make_settings(), probe(data), format=OutputFormat.PNG)
    prepared = prepare(data, plan)
    assert prepared.image.convert("RGB").getpixel((0, 0)) == (255, 0, 0)


def test_buffered_run_produces_single_pass_body(make_settings, image_bytes):
    settings = make_settings()
    data = image_bytes(width=400, height=300)
    fetched = _fetched(data)
    plan = _plan(settings, ImageMetadata(400, 300), width=200, format=OutputFormat.PNG)

    result, body = asyncio.run(_run_and_collect(ImagePipeline(settings), fetched, plan))

    assert result.size == len(body)
    assert (result.width, result.height) == (200, 150)
    assert result.original == ImageMetadata(400, 300, "png")
    assert result.resize_applied is True
    assert fetched.data == b""
    with Image.open(io.BytesIO(body)) as out:
        assert out.format == "PNG"
        assert out.size == (200, 150)


def test_streaming_run_matches_buffered_output(make_settings, image_bytes):
    data = image_bytes(width=256, height=256, fmt="JPEG")
    buffered_settings = make_settings()
    streaming_settings = make_settings(ENCODE_STRATEGY="streaming")
    plan = _plan(buffered_settings, ImageMetadata(256, 256), height=64, format=OutputFormat.JPEG)

    _, buffered = asyncio.run(_run_and_collect(ImagePipeline(buffered_settings), _fetched(data), plan))
    result, streamed = asyncio.run(_run_and_collect(ImagePipeline(streaming_settings), _fetched(data), plan))

    assert result.size is None
    assert streamed == buffered
    with Image.open(io.BytesIO(streamed)) as out:
        assert out.size == (64, 64)


def test_streaming_body_arrives_in_chunks(make_settings):
    noise = Image.frombytes("RGB", (512, 512), os.urandom(512 * 512 * 3))
    buf = io.BytesIO()
    noise.save(buf, format="PNG")
    settings = make_settings(ENCODE_STRATEGY="streaming")
    plan = _plan(settings, ImageMetadata(512, 512), format=OutputFormat.PNG)

    async def runner():
        pipe = ImagePipeline(settings)
        fetched = _fetched(buf.getvalue())
        result = await pipe.run(fetched, await pipe.probe(fetched), plan)
        return [chunk async for chunk in result.body]

    chunks = asyncio.run(runner())
    assert len(chunks) > 1
    with Image.open(io.BytesIO(b"".join(chunks))) as out:
        assert out.size == (512, 512)


def test_encode_failure_carries_original_metadata(make_settings, image_bytes, monkeypatch):
    def broken_encode(prepared, plan):
        raise InternalError("encoder crashed")

    monkeypatch.setattr(pipeline_module, "encode", broken_encode)
    settings = make_settings()
    plan = _plan(settings, ImageMetadata(40, 30), format=OutputFormat.PNG)

    with pytest.raises(InternalError) as exc_info:
        asyncio.run(_run_and_collect(ImagePipeline(settings), _fetched(image_bytes(width=40, height=30)), plan))
    assert exc_info.value.metadata == ImageMetadata(40, 30, "png")


def test_missing_encoder_is_reported(monkeypatch):
    monkeypatch.delitem(Image.SAVE, "AVIF", raising=False)
    monkeypatch.setattr(Image, "init", lambda: None)
    with pytest.raises(UnsupportedFormat):
        ensure_encoder(OutputFormat.AVIF)


@pytest.mark.skipif(not features.check("avif"), reason="Pillow built without AVIF")
def test_avif_output(make_settings, image_bytes):
    settings = make_settings()
    plan = _plan(settings, ImageMetadata(64, 48), format=OutputFormat.AVIF, quality=50)
    _, body = asyncio.run(_run_and_collect(ImagePipeline(settings), _fetched(image_bytes(width=64, height=48)), plan))
    with Image.open(io.BytesIO(body)) as out:
        assert out.format == "AVIF"
        assert out.size == (64, 48)


def test_decompression_bomb_maps_to_payload_too_large(image_bytes, monkeypatch):
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)
    with pytest.raises(PayloadTooLarge):
        probe(image_bytes(width=100, height=100))


def test_requests_beyond_the_slot_limit_wait_without_a_thread(make_settings, image_bytes, monkeypatch):
    release = threading.Event()
    entered = []
    real_prepare = pipeline_module.prepare

    def slow_prepare(data, plan):
        entered.append(threading.get_ident())
        release.wait(5)
        return real_prepare(data, plan)

    monkeypatch.setattr(pipeline_module, "prepare", slow_prepare)
    settings = make_settings(PROCESSING_CONCURRENCY=1)
    data = image_bytes(width=20, height=20)
    plan = _plan(settings, ImageMetadata(20, 20), format=OutputFormat.PNG)

    async def runner():
        pipe = ImagePipeline(settings)
        tasks = [
            asyncio.create_task(pipe.run(_fetched(data), ImageMetadata(20, 20), plan))
            for _ in range(2)
        ]
        while not entered:
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)
        busy = (len(entered), pipe._slots.locked())
        # probing is not gated by the slot limit
        metadata = await asyncio.wait_for(pipe.probe(_fetched(data)), timeout=2)
        release.set()
        results = await asyncio.gather(*tasks)
        return busy, metadata, results

    busy, metadata, results = asyncio.run(runner())
    assert busy == (1, True)
    assert metadata == ImageMetadata(20, 20, "png")
    assert len(entered) == 2
    assert all((result.width, result.height) == (20, 20) for result in results)
