"""
End-to-end tests for BackgroundReplacementService on real files.
"""
from io import BytesIO
import os
import threading

import numpy as np
import pytest
from PIL import Image

from backdrop_service.compositor import CompositionOptions
from backdrop_service.errors import OperationCancelled
from backdrop_service.model_loader import ModelManager
from backdrop_service.pipeline import BackgroundReplacementService, calculate_mask_area_ratio

from conftest import make_fake_loader, subject_on_background, write_image


@pytest.fixture
def service(settings):
    svc = BackgroundReplacementService(settings, manager=ModelManager(loader=make_fake_loader()))
    yield svc
    svc.close()


@pytest.fixture
def photo(tmp_path):
    return write_image(tmp_path / "catch.jpg", subject_on_background(width=800, height=600), fmt="JPEG")


@pytest.fixture
def backdrop(tmp_path):
    gradient = np.zeros((1080, 1920, 3), dtype=np.uint8)
    gradient[..., 2] = np.linspace(0, 255, 1920, dtype=np.uint8)[None, :]
    gradient[..., 1] = 90
    return write_image(tmp_path / "lake.png", gradient, fmt="PNG")


def test_replace_background_without_model(service, photo, backdrop, tmp_path):
    output = tmp_path / "out" / "result.jpg"

    result = service.replace_background(photo, backdrop, output)

    assert result.success, result.message
    assert result.backend == "heuristic"
    assert result.output_path == output
    with Image.open(output) as image:
        assert image.format == "JPEG"
        assert image.mode == "RGB"
        assert image.size == (800, 600)
    assert os.listdir(output.parent) == ["result.jpg"]


def test_replace_background_returns_bytes(service, photo, backdrop):
    result = service.replace_background(photo, backdrop, options=CompositionOptions(background_blur=2.0))

    assert result.success
    assert result.output_path is None
    with Image.open(BytesIO(result.data)) as image:
        assert image.size == (800, 600)


def test_replace_background_uses_loaded_model(settings, model_file, photo, backdrop):
    manager = ModelManager(loader=make_fake_loader(), min_size_mb=0)
    manager.initialize(model_file)
    svc = BackgroundReplacementService(settings, manager=manager)
    try:
        result = svc.replace_background(photo, backdrop)
    finally:
        svc.close()

    assert result.success
    assert result.backend == "ai"


def test_missing_source_reports_failure(service, backdrop, tmp_path):
    output = tmp_path / "result.jpg"

    result = service.replace_background(tmp_path / "nope.jpg", backdrop, output)

    assert not result.success
    assert result.message == "Source images not found"
    assert not output.exists()


def test_corrupt_source_leaves_no_output(service, backdrop, tmp_path):
    broken = tmp_path / "broken.jpg"
    broken.write_bytes(b"\xff\xd8 truncated")
    output = tmp_path / "result.jpg"

    result = service.replace_background(broken, backdrop, output)

    assert not result.success
    assert "Error processing image" in result.message
    assert not output.exists()


def test_cancellation_propagates(service, photo, backdrop):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(OperationCancelled):
        service.replace_background(photo, backdrop, cancel_event=cancel)


def test_mask_png_matches_source(service, photo, tmp_path):
    data = service.generate_mask_png(photo)

    with Image.open(BytesIO(data)) as mask:
        assert mask.mode == "L"
        assert mask.size == (800, 600)
        assert np.asarray(mask)[300, 400] == 255

    assert service.save_mask(photo, tmp_path / "mask.png")
    assert (tmp_path / "mask.png").exists()


def test_mask_png_for_unreadable_file(service, tmp_path):
    assert service.generate_mask_png(tmp_path / "nope.jpg") is None


def test_compose_transparent(service, backdrop, tmp_path):
    cutout = np.zeros((100, 120, 4), dtype=np.uint8)
    cutout[20:80, 30:90] = (255, 255, 255, 255)
    subject = write_image(tmp_path / "cutout.png", cutout, fmt="PNG")

    result = service.compose_transparent(subject, backdrop, options=CompositionOptions(watermark_text="demo"))

    assert result.success
    with Image.open(BytesIO(result.data)) as image:
        assert image.size == (120, 100)


def test_watermark_image(service, photo, tmp_path):
    logo = np.zeros((30, 60, 4), dtype=np.uint8)
    logo[...] = (255, 0, 0, 255)
    logo_path = write_image(tmp_path / "logo.png", logo, fmt="PNG")

    data = service.watermark_image(photo, logo_path)

    with Image.open(BytesIO(data)) as image:
        assert image.size == (800, 600)
        assert image.getpixel((700, 40))[0] > 120


def test_watermark_without_logo_returns_image(service, photo, tmp_path):
    assert service.watermark_image(photo, tmp_path / "missing.png") is not None


def test_validate_image_recommendations(service, tmp_path):
    small = write_image(tmp_path / "small.png", subject_on_background(width=300, height=100), fmt="PNG")

    result = service.validate_image(small)

    assert result.is_valid
    assert any("400x400" in r for r in result.recommendations)
    assert any("aspect ratio" in r for r in result.recommendations)
    assert result.has_detected_subject
    assert result.confidence == pytest.approx(0.8)


def test_validate_image_without_subject(service, tmp_path):
    plain = write_image(tmp_path / "plain.png", np.full((500, 500, 3), 128, dtype=np.uint8), fmt="PNG")

    result = service.validate_image(plain)

    assert not result.has_detected_subject
    assert result.confidence == pytest.approx(0.3)


def test_validate_missing_image(service, tmp_path):
    result = service.validate_image(tmp_path / "nope.jpg")
    assert not result.is_valid
    assert result.message == "Image file not found"


def test_mask_area_ratio():
    mask = np.zeros((100, 100), dtype=np.uint8)
    mask[25:75, 25:75] = 255
    assert calculate_mask_area_ratio(mask) == pytest.approx(0.25)


@pytest.mark.asyncio
async def test_async_wrappers(service, photo, backdrop):
    result = await service.areplace_background(photo, backdrop)
    mask = await service.agenerate_mask_png(photo)

    assert result.success
    assert mask is not None
