import numpy as np
import pytest

from pixelart_lib import EdgeDetector, PixelBuffer
from conftest import solid, step_gray


def gray_map(rows):
    return np.array(rows, dtype=np.uint8)


def spike(value, size=5):
    g = np.zeros((size, size), dtype=np.uint8)
    g[size // 2, size // 2] = value
    return g


def test_to_grayscale_uses_luma():
    buf = PixelBuffer(np.array([[(100, 150, 200), (255, 255, 255), (0, 0, 0)]], dtype=np.uint8))
    assert list(EdgeDetector.to_grayscale(buf)[0]) == [141, 255, 0]


@pytest.mark.parametrize("method", ["sobel", "canny", "laplacian"])
@pytest.mark.parametrize("outline", [False, True])
def test_uniform_image_has_no_edges(method, outline):
    gray = EdgeDetector.to_grayscale(solid(9, 7, (90, 90, 90)))
    assert not EdgeDetector.detect(gray, method, outline=outline).any()


def test_simple_detector_on_uniform_image():
    gray = EdgeDetector.to_grayscale(solid(6, 6, (10, 200, 30)))
    assert not EdgeDetector.detect(gray, "simple", outline=True).any()


def test_sobel_vertical_step_edge():
    gray = EdgeDetector.to_grayscale(step_gray(8, 6))
    edges = EdgeDetector.sobel(gray)
    interior = edges[1:-1, :]
    assert np.all(interior[:, 3] == 255)
    assert np.all(interior[:, 4] == 255)
    for col in (0, 1, 2, 5, 6, 7):
        assert not interior[:, col].any()
    # border rows are never computed
    assert not edges[0].any() and not edges[-1].any()


def test_sobel_outline_threshold():
    g = np.zeros((3, 3), dtype=np.uint8)
    g[:, 2] = 5
    # gx = 4 * 5 = 20, below the outline threshold
    assert EdgeDetector.sobel(g)[1, 1] == 20
    assert EdgeDetector.sobel(g, outline=True)[1, 1] == 0


def test_simple_detector_doubles_large_differences():
    edges = EdgeDetector.simple(spike(100))
    assert edges[2, 2] == 200
    assert edges[0, 0] == 0


def test_simple_detector_ignores_small_differences():
    assert not EdgeDetector.simple(spike(20)).any()
    assert EdgeDetector.simple(spike(21))[2, 2] == 42


def test_laplacian_outline_and_edge_variants():
    g = spike(10)
    outline = EdgeDetector.laplacian(g, outline=True)
    edge = EdgeDetector.laplacian(g, outline=False)
    assert outline[2, 2] == 80
    assert edge[2, 2] == 40
    # direct neighbors see |-10|, below the outline threshold
    assert outline[1, 2] == 0
    assert edge[1, 2] == 10
    assert edge[0, 2] == 0


def test_laplacian_clamps():
    assert EdgeDetector.laplacian(spike(255))[2, 2] == 255


def test_canny_responds_to_step():
    gray = EdgeDetector.to_grayscale(step_gray(10, 8))
    edges = EdgeDetector.canny(gray)
    assert edges[1:-1, 1:-1].any()
    assert not edges[:, 0].any() and not edges[:, -1].any()


def test_blur_keeps_border_values():
    g = gray_map([[9, 9, 9, 9],
                  [9, 0, 0, 9],
                  [9, 0, 0, 9],
                  [9, 9, 9, 9]])
    blurred = EdgeDetector.blur(g)
    assert np.array_equal(blurred[0], g[0])
    # (5 * 9) / 9
    assert blurred[1, 1] == 5


def test_tiny_images_have_no_interior():
    g = np.full((2, 5), 200, dtype=np.uint8)
    for method in ("sobel", "canny", "laplacian"):
        assert EdgeDetector.detect(g, method).shape == (2, 5)
        assert not EdgeDetector.detect(g, method).any()
    assert not EdgeDetector.detect(g, "simple", outline=True).any()


def test_simple_is_outline_only():
    with pytest.raises(ValueError):
        EdgeDetector.detect(spike(100), "simple", outline=False)


def test_outline_with_zero_strength_is_noop():
    buf = step_gray(8, 6)
    assert EdgeDetector.apply_outline(buf, "sobel", 0) == buf


def test_full_strength_outline_blackens_boundary():
    buf = step_gray(8, 6)
    out = EdgeDetector.apply_outline(buf, "sobel", 100)
    assert not out.rgb[1:-1, 3:5].any()
    assert np.all(out.rgb[1:-1, 5:] == 255)
    assert np.array_equal(out.rgb[0], buf.rgb[0])


def test_edges_darken_with_half_strength():
    buf = step_gray(8, 6)
    out = EdgeDetector.apply_edges(buf, "sobel", 50)
    # factor 0.5 * 2 saturates at full darkening
    assert not out.rgb[1:-1, 4].any()
    assert np.all(out.rgb[:, 6] == 255)


def test_outline_then_edges_keep_alpha():
    arr = np.zeros((6, 8, 4), dtype=np.uint8)
    arr[:, 4:, :3] = 255
    arr[..., 3] = 77
    buf = PixelBuffer(arr)
    out = EdgeDetector.apply_edges(EdgeDetector.apply_outline(buf, "laplacian", 80), "canny", 80)
    assert np.all(out.pixels[..., 3] == 77)


@pytest.mark.parametrize("method", ["none", "simple", "bogus"])
def test_edges_noop_methods(noisy_buffer, method):
    assert EdgeDetector.apply_edges(noisy_buffer, method, 100) == noisy_buffer


def test_outline_unknown_method_is_noop(noisy_buffer):
    assert EdgeDetector.apply_outline(noisy_buffer, "prewitt", 100) == noisy_buffer
