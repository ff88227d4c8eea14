"""
Tests for the model-free segmentation fallback.
"""
from concurrent.futures import ThreadPoolExecutor
import threading

import numpy as np
import pytest

from backdrop_service.errors import OperationCancelled
from backdrop_service.heuristic import (
    ContrastClass,
    HeuristicMaskGenerator,
    classify_contrast,
    color_distance,
    find_dominant_colors,
    luminance,
    measure_contrast,
    sample_background,
    sobel_edge_map,
)

from conftest import subject_on_background


def test_luminance_and_distance_scales():
    """White is 1.0 luminance and sits 255 away from black."""
    white = np.array([[255, 255, 255]], dtype=np.uint8)
    assert luminance(white)[0] == pytest.approx(1.0)
    assert color_distance(white, np.array([0, 0, 0]))[0] == pytest.approx(255.0)


def test_uniform_image_is_standard():
    image = np.full((120, 160, 3), 90, dtype=np.uint8)
    assert measure_contrast(image) == pytest.approx(0.0)
    assert classify_contrast(image) is ContrastClass.STANDARD


def test_bright_center_on_dark_border_is_high_contrast():
    image = subject_on_background(bg=(0, 0, 0), fg=(255, 255, 255))
    assert classify_contrast(image) is ContrastClass.HIGH_CONTRAST


def test_dominant_colors_ordered_by_cluster_size():
    samples = np.array(
        [[200, 0, 0]] * 10 + [[0, 0, 200]] * 5 + [[0, 200, 0]] + [[205, 0, 0]] * 2,
        dtype=np.uint8,
    )
    palette = find_dominant_colors(samples, tolerance=30, max_colors=3)

    assert palette.shape == (3, 3)
    assert palette[0].tolist() == [200, 0, 0]  # truncated mean of 10x200 + 2x205
    assert palette[1].tolist() == [0, 0, 200]
    assert palette[2].tolist() == [0, 200, 0]


def test_background_samples_come_from_border_and_corners():
    image = subject_on_background(bg=(10, 20, 30), fg=(250, 250, 250))
    samples = sample_background(image)
    assert len(samples) > 0
    assert (samples == np.array([10, 20, 30])).all()


def test_sobel_edges_zero_on_frame():
    image = np.random.default_rng(0).integers(0, 256, (40, 50, 3), dtype=np.uint8)
    edges = sobel_edge_map(image)
    assert edges.shape == (40, 50)
    assert edges[0].max() == 0 and edges[-1].max() == 0
    assert edges[:, 0].max() == 0 and edges[:, -1].max() == 0
    assert edges.max() > 0


def test_mask_matches_image_dimensions():
    image = subject_on_background(width=150, height=90)
    mask = HeuristicMaskGenerator().generate(image)
    assert mask.shape == (90, 150)
    assert mask.dtype == np.uint8


def test_standard_path_separates_colored_subject():
    image = subject_on_background(bg=(120, 120, 120), fg=(200, 60, 160))
    assert classify_contrast(image) is ContrastClass.STANDARD

    mask = HeuristicMaskGenerator().generate(image)

    assert mask[100, 100] == 255
    assert mask[5, 5] == 0
    assert mask[195, 195] == 0


def test_high_contrast_path_marks_subject_as_foreground():
    image = subject_on_background(bg=(0, 0, 0), fg=(255, 255, 255))

    mask = HeuristicMaskGenerator().generate(image)

    assert mask[100, 100] == 255
    assert mask[5, 5] == 0


def test_uniform_image_has_no_subject():
    mask = HeuristicMaskGenerator().generate(np.full((64, 64, 3), 128, dtype=np.uint8))
    assert mask.max() == 0


def test_generation_is_deterministic_and_pool_independent():
    """Same pixels -> same mask, whether row blocks run inline or on a pool."""
    rng = np.random.default_rng(42)
    image = subject_on_background(width=130, height=170)
    image = np.clip(image.astype(int) + rng.integers(-8, 9, image.shape), 0, 255).astype(np.uint8)

    inline = HeuristicMaskGenerator(block_rows=16).generate(image)
    again = HeuristicMaskGenerator(block_rows=16).generate(image)
    with ThreadPoolExecutor(max_workers=3) as pool:
        pooled = HeuristicMaskGenerator(executor=pool, block_rows=16).generate(image)

    np.testing.assert_array_equal(inline, again)
    np.testing.assert_array_equal(inline, pooled)


def test_try_generate_never_returns_none():
    image = np.zeros((3, 3, 3), dtype=np.uint8)
    assert HeuristicMaskGenerator().try_generate(image) is not None


def test_cancelled_generation_raises():
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(OperationCancelled):
        HeuristicMaskGenerator().generate(subject_on_background(), cancel_event=cancel)


def test_rejects_non_rgb_input():
    with pytest.raises(ValueError):
        HeuristicMaskGenerator().generate(np.zeros((10, 10), dtype=np.uint8))
