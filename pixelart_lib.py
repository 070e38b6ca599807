"""
A Python library turning decoded images into stylized pixel art.
Provides tone adjustment, palette-swap presets, posterization, three
color-quantization strategies (median cut, k-means, octree), convolution
edge/outline detection and block pixelation, plus a pipeline that chains
them in a fixed order. Use this as a standalone library or import it from
the CLI.
"""

import heapq
import logging
import math
from dataclasses import dataclass, asdict, replace as dataclass_replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
from PIL import Image
from scipy import ndimage

logger = logging.getLogger(__name__)

Color = Tuple[int, int, int]

# ITU-R 601 luma weights, not gamma corrected
LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float64)


# -------------------- Enumerations --------------------

class QuantizationMethod(Enum):
    NONE = "none"
    MEDIAN_CUT = "median-cut"
    KMEANS = "k-means"
    OCTREE = "octree"


class PaletteSwap(Enum):
    NONE = "none"
    GRAYSCALE = "grayscale"
    SEPIA = "sepia"
    COOL = "cool"
    WARM = "warm"
    VINTAGE = "vintage"
    NEON = "neon"
    PASTEL = "pastel"


class OutlineMethod(Enum):
    NONE = "none"
    SIMPLE = "simple"
    SOBEL = "sobel"
    CANNY = "canny"
    LAPLACIAN = "laplacian"


class EdgeMethod(Enum):
    NONE = "none"
    SOBEL = "sobel"
    CANNY = "canny"
    LAPLACIAN = "laplacian"


_NAME_ALIASES = {
    "median_cut": "median-cut",
    "mediancut": "median-cut",
    "kmeans": "k-means",
    "k_means": "k-means",
    "gray": "grayscale",
    "greyscale": "grayscale",
}


def normalize_name(value: Any) -> str:
    """Lower-case a setting string and resolve the known spelling aliases."""
    if isinstance(value, Enum):
        value = value.value
    name = str(value).strip().lower()
    return _NAME_ALIASES.get(name, name)


def parse_choice(enum_cls, value: Any):
    """
    Resolve a setting string to a member of `enum_cls`.
    Returns None for unknown values so callers can skip the stage.
    """
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(normalize_name(value))
    except ValueError:
        return None


# -------------------- Pixel Buffer --------------------

def to_uint8(values: np.ndarray) -> np.ndarray:
    """
    Store floating point samples the way a clamped 8-bit array does:
    round to nearest (ties to even), then clamp into [0,255].
    """
    return np.clip(np.rint(values), 0, 255).astype(np.uint8)


class PixelBuffer:
    """
    Interleaved RGB or RGBA samples of shape (height, width, channels).
    Stages never change the dimensions; alpha is carried through untouched.
    """

    def __init__(self, pixels: np.ndarray):
        arr = np.asarray(pixels)
        if arr.ndim != 3 or arr.shape[2] not in (3, 4):
            raise ValueError(f"Expected an (H, W, 3|4) array, got shape {arr.shape}")
        if arr.dtype != np.uint8:
            arr = to_uint8(arr.astype(np.float64))
        self.pixels = np.ascontiguousarray(arr)

    @classmethod
    def from_flat(cls, width: int, height: int, samples, channels: int = 4) -> "PixelBuffer":
        """Build a buffer from a flat row-major sample sequence (canvas ImageData layout)."""
        arr = np.asarray(samples, dtype=np.float64).reshape((height, width, channels))
        return cls(arr)

    @classmethod
    def empty(cls, channels: int = 3) -> "PixelBuffer":
        return cls(np.zeros((0, 0, channels), dtype=np.uint8))

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    @property
    def channels(self) -> int:
        return self.pixels.shape[2]

    @property
    def has_alpha(self) -> bool:
        return self.channels == 4

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    @property
    def rgb(self) -> np.ndarray:
        return self.pixels[..., :3]

    def is_empty(self) -> bool:
        return self.width == 0 or self.height == 0

    def copy(self) -> "PixelBuffer":
        return PixelBuffer(self.pixels.copy())

    def with_rgb(self, rgb: np.ndarray) -> "PixelBuffer":
        """Return a new buffer with replaced color channels and this buffer's alpha."""
        out = self.pixels.copy()
        if rgb.dtype != np.uint8:
            rgb = to_uint8(rgb)
        out[..., :3] = rgb
        return PixelBuffer(out)

    def __eq__(self, other) -> bool:
        if not isinstance(other, PixelBuffer):
            return NotImplemented
        return self.pixels.shape == other.pixels.shape and np.array_equal(self.pixels, other.pixels)

    def __repr__(self) -> str:
        return f"PixelBuffer({self.width}x{self.height}, channels={self.channels})"


# -------------------- Settings --------------------

SETTING_KEY_ALIASES = {
    "pixelSize": "pixel_size",
    "colorCount": "color_count",
    "quantizationMethod": "quantization_method",
    "posterizationLevels": "posterization_levels",
    "paletteSwap": "palette_swap",
    "outlineDetection": "outline_detection",
    "outlineStrength": "outline_strength",
    "edgeDetection": "edge_detection",
    "edgeStrength": "edge_strength",
}


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _finite(value: Any, default: float, low: float, high: Optional[float] = None) -> float:
    """
    Coerce a numeric setting to a finite float inside [low, high].
    NaN falls back to `default`; infinities go to the nearest bound
    (or `default` when that side is unbounded).
    """
    value = float(value)
    if math.isnan(value):
        return float(default)
    if math.isinf(value):
        if value < 0:
            return float(low)
        return float(high) if high is not None else float(default)
    if high is None:
        return max(float(low), value)
    return _clamp(value, float(low), float(high))


@dataclass(frozen=True)
class PixelArtSettings:
    """Per-invocation pipeline configuration. Values are normalized on creation."""

    pixel_size: int = 10
    brightness: float = 100.0  # percent, 100 = unchanged
    contrast: float = 100.0
    saturation: float = 100.0
    quantization_method: str = QuantizationMethod.MEDIAN_CUT.value
    color_count: int = 32
    posterization_levels: float = 256.0
    palette_swap: str = PaletteSwap.NONE.value
    outline_detection: str = OutlineMethod.NONE.value
    outline_strength: float = 50.0  # percent
    edge_detection: str = EdgeMethod.NONE.value
    edge_strength: float = 50.0

    def __post_init__(self):
        # Invalid input is normalized to a safe value, never rejected
        object.__setattr__(self, "pixel_size", int(_finite(self.pixel_size, 10, 1)))
        object.__setattr__(self, "color_count", int(_finite(self.color_count, 32, 1, 256)))
        for name in ("brightness", "contrast", "saturation"):
            object.__setattr__(self, name, _finite(getattr(self, name), 100.0, 0.0, 200.0))
        for name in ("outline_strength", "edge_strength"):
            object.__setattr__(self, name, _finite(getattr(self, name), 50.0, 0.0, 100.0))
        levels = float(self.posterization_levels)
        # NaN and non-positive levels disable posterization
        if not levels > 0:
            levels = 256.0
        object.__setattr__(self, "posterization_levels", min(levels, 256.0))
        for name in ("quantization_method", "palette_swap", "outline_detection", "edge_detection"):
            object.__setattr__(self, name, normalize_name(getattr(self, name)))

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]] = None,
                  base: Optional["PixelArtSettings"] = None) -> "PixelArtSettings":
        """
        Build settings from a (possibly partial) dictionary.

        Args:
            data: snake_case or camelCase keys; unknown keys are ignored
            base: settings providing values for missing keys (defaults if None)

        Returns:
            A normalized PixelArtSettings
        """
        values = (base or cls()).to_dict()
        for key, value in (data or {}).items():
            field = SETTING_KEY_ALIASES.get(key, key)
            if field not in values:
                logger.debug("Ignoring unknown setting %r", key)
                continue
            default = values[field]
            if isinstance(default, str):
                values[field] = normalize_name(value)
                continue
            try:
                # normalized to the field type in __post_init__
                values[field] = float(value)
            except (TypeError, ValueError, OverflowError):
                logger.warning("Invalid value %r for setting %r, keeping %r", value, key, default)
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def replace(self, **changes) -> "PixelArtSettings":
        return dataclass_replace(self, **changes)


# -------------------- Tone Adjustment --------------------

class ToneAdjuster:
    """
    Brightness, contrast and saturation as percentages centered at 100.
    Applied in that fixed order, each step clamped before the next.
    """

    @staticmethod
    def apply(buffer: PixelBuffer, brightness: float = 100, contrast: float = 100,
              saturation: float = 100) -> PixelBuffer:
        if buffer.is_empty():
            return buffer.copy()
        rgb = buffer.rgb.astype(np.float64)

        brightness_offset = ((brightness - 100) / 100) * 255
        rgb = np.clip(rgb + brightness_offset, 0, 255)

        contrast_factor = 1 + (contrast - 100) / 100
        rgb = np.clip((rgb - 128) * contrast_factor + 128, 0, 255)

        # luma of the already adjusted color
        gray = (rgb @ LUMA_WEIGHTS)[..., np.newaxis]
        rgb = np.clip(gray + (saturation / 100) * (rgb - gray), 0, 255)

        return buffer.with_rgb(rgb)


# -------------------- Palette Swap Presets --------------------

def _swap_grayscale(r, g, b):
    gray = 0.299 * r + 0.587 * g + 0.114 * b
    return gray, gray, gray


def _swap_sepia(r, g, b):
    return (r * 0.393 + g * 0.769 + b * 0.189,
            r * 0.349 + g * 0.686 + b * 0.168,
            r * 0.272 + g * 0.534 + b * 0.131)


def _swap_cool(r, g, b):
    return r * 0.8, g * 0.9, b * 1.2


def _swap_warm(r, g, b):
    return r * 1.2, g * 1.1, b * 0.8


def _swap_vintage(r, g, b):
    return ((r * 0.567 + g * 0.769 + b * 0.189) * 1.1,
            (r * 0.349 + g * 0.686 + b * 0.168) * 0.9,
            (r * 0.272 + g * 0.534 + b * 0.131) * 0.8)


def _swap_neon(r, g, b):
    factor = ((r + g + b) / 3) / 255
    return (r + (255 - r) * factor * 0.5,
            g + (255 - g) * factor * 0.3,
            b + (255 - b) * factor * 0.8)


def _swap_pastel(r, g, b):
    return (r + 255) / 2, (g + 255) / 2, (b + 255) / 2


class PaletteSwapper:
    """
    Fixed per-pixel color mappings. Results above 255 are clipped.
    """

    PRESETS: Dict[PaletteSwap, Callable] = {
        PaletteSwap.GRAYSCALE: _swap_grayscale,
        PaletteSwap.SEPIA: _swap_sepia,
        PaletteSwap.COOL: _swap_cool,
        PaletteSwap.WARM: _swap_warm,
        PaletteSwap.VINTAGE: _swap_vintage,
        PaletteSwap.NEON: _swap_neon,
        PaletteSwap.PASTEL: _swap_pastel,
    }

    @staticmethod
    def available_presets() -> List[str]:
        return [preset.value for preset in PaletteSwap]

    @staticmethod
    def apply(buffer: PixelBuffer, preset) -> PixelBuffer:
        swap = parse_choice(PaletteSwap, preset)
        if swap is None:
            logger.warning("Unknown palette swap %r, skipping", preset)
            return buffer.copy()
        if swap == PaletteSwap.NONE or buffer.is_empty():
            return buffer.copy()
        rgb = buffer.rgb.astype(np.float64)
        channels = PaletteSwapper.PRESETS[swap](rgb[..., 0], rgb[..., 1], rgb[..., 2])
        return buffer.with_rgb(np.minimum(255, np.stack(channels, axis=-1)))


# -------------------- Posterization --------------------

class Posterizer:
    """Per-channel level quantization: v' = round(v/step)*step with step = 256/levels."""

    @staticmethod
    def apply(buffer: PixelBuffer, levels: float) -> PixelBuffer:
        try:
            levels = float(levels)
        except (TypeError, ValueError):
            logger.warning("Invalid posterization levels %r, skipping", levels)
            return buffer.copy()
        if not levels > 0:
            logger.warning("Posterization levels must be positive, got %r", levels)
            return buffer.copy()
        if levels >= 256 or buffer.is_empty():
            return buffer.copy()
        step = 256 / levels
        rgb = buffer.rgb.astype(np.float64)
        # half-up rounding as in Math.round, samples are never negative
        posterized = np.floor(rgb / step + 0.5) * step
        return buffer.with_rgb(posterized)


# -------------------- Color Quantization --------------------

def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def mean_color(colors: np.ndarray) -> Color:
    """Rounded arithmetic mean of an (N,3) color array."""
    mean = colors.mean(axis=0)
    return tuple(round_half_up(v) for v in mean)


def nearest_palette_index(points: np.ndarray, palette: np.ndarray,
                          chunk_size: int = 4096) -> np.ndarray:
    """
    Index of the nearest palette entry for every point (squared distance).
    Ties go to the first palette entry. Works in chunks to bound memory.
    """
    points = np.asarray(points, dtype=np.int64)
    palette = np.asarray(palette, dtype=np.int64)
    out = np.empty(len(points), dtype=np.int64)
    for start in range(0, len(points), chunk_size):
        block = points[start:start + chunk_size]
        diff = block[:, np.newaxis, :] - palette[np.newaxis, :, :]
        dist = (diff * diff).sum(axis=2)
        out[start:start + chunk_size] = np.argmin(dist, axis=1)
    return out


class BaseQuantizeStrategy:
    """
    Base class for palette builders.
    Each strategy implements .build_palette(colors, target) where `colors`
    is an (N,3) int array of distinct colors in first-occurrence order.
    """

    @staticmethod
    def get_parameter_info() -> dict:
        return {}

    def build_palette(self, colors: np.ndarray, target: int) -> List[Color]:
        raise NotImplementedError


class MedianCutStrategy(BaseQuantizeStrategy):
    """
    Recursive median cut over the distinct colors. Occurrence counts do not
    weight the split; every split bisects the widest channel at floor(n/2).
    """

    def build_palette(self, colors: np.ndarray, target: int) -> List[Color]:
        if len(colors) == 0:
            return []
        return self._median_cut(np.asarray(colors, dtype=np.int64), max(1, int(target)))

    def _median_cut(self, colors: np.ndarray, target: int) -> List[Color]:
        if len(colors) <= target:
            return [tuple(int(v) for v in c) for c in colors]
        if target <= 1:
            return [mean_color(colors)]

        ranges = colors.max(axis=0) - colors.min(axis=0)
        if not ranges.any():
            return [mean_color(colors)]

        # argmax keeps the first channel on ties: R before G before B
        channel = int(np.argmax(ranges))
        colors = colors[np.argsort(colors[:, channel], kind="stable")]
        mid = len(colors) // 2
        left, right = colors[:mid], colors[mid:]
        if len(left) == 0 or len(right) == 0:
            return [mean_color(colors)]

        left_target = max(1, target // 2)
        right_target = max(1, target - left_target)
        return self._median_cut(left, left_target) + self._median_cut(right, right_target)


class KMeansStrategy(BaseQuantizeStrategy):
    """
    Plain k-means over the distinct colors with a fixed iteration budget.
    Centroids are seeded by sampling colors uniformly (with replacement)
    from the injected random generator.
    """

    @staticmethod
    def get_parameter_info():
        return {
            'iterations': {
                'type': 'int',
                'default': 10,
                'min': 1,
                'max': 100,
                'label': 'Iterations',
                'description': 'Number of assign/update rounds (no convergence check)'
            }
        }

    def __init__(self, rng: Optional[np.random.Generator] = None, iterations: int = 10):
        self.rng = rng if rng is not None else np.random.default_rng()
        self.iterations = iterations

    def build_palette(self, colors: np.ndarray, target: int) -> List[Color]:
        if len(colors) == 0:
            return []
        colors = np.asarray(colors, dtype=np.int64)
        target = max(1, int(target))
        centroids = colors[self.rng.integers(0, len(colors), size=target)].copy()

        for _ in range(self.iterations):
            labels = nearest_palette_index(colors, centroids)
            counts = np.bincount(labels, minlength=target)
            assigned = counts > 0
            for channel in range(3):
                sums = np.bincount(labels, weights=colors[:, channel], minlength=target)
                means = sums[assigned] / counts[assigned]
                # empty clusters keep their previous centroid
                centroids[assigned, channel] = np.floor(means + 0.5).astype(np.int64)

        palette = []
        for c in centroids:
            color = tuple(int(v) for v in c)
            if color not in palette:
                palette.append(color)
        return palette


class OctreeNode:
    """One octree node: up to 8 children, or a leaf holding original colors."""

    __slots__ = ("children", "is_leaf", "colors", "parent", "level", "position")

    def __init__(self, parent: Optional["OctreeNode"] = None, level: int = 0):
        self.children: List[Optional[OctreeNode]] = [None] * 8
        self.is_leaf = False
        self.colors: List[Color] = []
        self.parent = parent
        self.level = level
        self.position = 0

    @staticmethod
    def child_index(color: Color, level: int) -> int:
        shift = 7 - level
        r = (color[0] >> shift) & 1
        g = (color[1] >> shift) & 1
        b = (color[2] >> shift) & 1
        return (r << 2) | (g << 1) | b

    def insert(self, color: Color):
        node = self
        while node.level < OctreeStrategy.MAX_DEPTH:
            index = OctreeNode.child_index(color, node.level)
            child = node.children[index]
            if child is None:
                child = OctreeNode(node, node.level + 1)
                node.children[index] = child
            node = child
        node.is_leaf = True
        node.colors.append(color)

    def iter_leaves(self):
        """Leaves in depth-first order, children visited by index."""
        stack = [self]
        while stack:
            node = stack.pop()
            if node.is_leaf:
                yield node
                continue
            for child in reversed(node.children):
                if child is not None:
                    stack.append(child)

    def fold(self) -> int:
        """
        Collapse this subtree into a single leaf holding every color below it.
        Returns the number of leaves absorbed.
        """
        absorbed = 0
        colors: List[Color] = []
        for leaf in self.iter_leaves():
            colors.extend(leaf.colors)
            if leaf is not self:
                leaf.is_leaf = False
                leaf.colors = []
            absorbed += 1
        self.children = [None] * 8
        self.colors = colors
        self.is_leaf = True
        return absorbed

    def average(self) -> Color:
        return mean_color(np.asarray(self.colors, dtype=np.int64))


class OctreeStrategy(BaseQuantizeStrategy):
    """
    Octree quantization. Every distinct color is inserted down to depth 8,
    then the tree is pruned bottom-up: among the nodes whose children are
    all leaves, the deepest one holding the fewest colors is folded into a
    single leaf, until no more than `target` leaves remain. Each remaining
    leaf contributes the mean of its colors.

    Merge order: depth first, color count second, traversal position last.
    Smallest-leaf-first would fold shallow branches holding distant colors
    before the near-identical colors sharing a deep branch.
    """

    MAX_DEPTH = 8

    def build_palette(self, colors: np.ndarray, target: int) -> List[Color]:
        if len(colors) == 0:
            return []
        root = self.build_tree(colors)
        self.reduce(root, max(1, int(target)))
        return [leaf.average() for leaf in root.iter_leaves() if leaf.colors]

    @staticmethod
    def build_tree(colors: np.ndarray) -> OctreeNode:
        root = OctreeNode()
        for c in np.asarray(colors, dtype=np.int64):
            root.insert((int(c[0]), int(c[1]), int(c[2])))
        return root

    @staticmethod
    def _push_reducible(heap: list, node: Optional[OctreeNode]):
        if node is None or node.is_leaf:
            return
        children = [c for c in node.children if c is not None]
        if not all(c.is_leaf for c in children):
            return
        # a node sits where its first leaf sits in the traversal
        node.position = min(c.position for c in children)
        color_count = sum(len(c.colors) for c in children)
        heapq.heappush(heap, (-node.level, color_count, node.position, id(node), node))

    @staticmethod
    def reduce(root: OctreeNode, target: int) -> int:
        """Reduce in place until at most `target` leaves remain; returns the leaf count."""
        leaf_count = 0
        parents = {}
        for position, leaf in enumerate(root.iter_leaves()):
            leaf.position = position
            leaf_count += 1
            if leaf.parent is not None:
                parents.setdefault(id(leaf.parent), leaf.parent)

        heap = []
        for node in parents.values():
            OctreeStrategy._push_reducible(heap, node)

        while leaf_count > target and heap:
            node = heapq.heappop(heap)[-1]
            if node.is_leaf:
                continue
            leaf_count -= node.fold() - 1
            OctreeStrategy._push_reducible(heap, node.parent)
        return leaf_count


class ColorQuantizer:
    """
    Builds a reduced palette with one of the strategies and remaps every
    pixel to its nearest palette color.
    """

    def __init__(self, method=QuantizationMethod.MEDIAN_CUT, target_count: int = 32,
                 rng: Optional[np.random.Generator] = None):
        self.method = method
        self.target_count = max(1, int(target_count))
        self.rng = rng

    @staticmethod
    def extract_colors(buffer: PixelBuffer) -> Tuple[np.ndarray, np.ndarray]:
        """
        Distinct RGB colors in first-occurrence (row-major) order and their counts.
        """
        if buffer.is_empty():
            return np.zeros((0, 3), dtype=np.int64), np.zeros(0, dtype=np.int64)
        flat = buffer.rgb.reshape(-1, 3)
        # pack to 24-bit keys so np.unique works on a 1-D array
        keys = (flat[:, 0].astype(np.int64) << 16) | (flat[:, 1].astype(np.int64) << 8) | flat[:, 2]
        unique_keys, first_index, counts = np.unique(keys, return_index=True, return_counts=True)
        order = np.argsort(first_index, kind="stable")
        unique_keys = unique_keys[order]
        colors = np.stack([(unique_keys >> 16) & 0xFF, (unique_keys >> 8) & 0xFF, unique_keys & 0xFF], axis=1)
        return colors, counts[order]

    def _get_strategy(self, method) -> BaseQuantizeStrategy:
        name = normalize_name(method)
        method = parse_choice(QuantizationMethod, name)
        if method == QuantizationMethod.MEDIAN_CUT:
            return MedianCutStrategy()
        elif method == QuantizationMethod.KMEANS:
            return KMeansStrategy(rng=self.rng)
        elif method == QuantizationMethod.OCTREE:
            return OctreeStrategy()
        else:
            raise ValueError(f"Unrecognized QuantizationMethod: {name!r}")

    def quantize(self, buffer: PixelBuffer) -> List[Color]:
        colors, _ = ColorQuantizer.extract_colors(buffer)
        if len(colors) == 0:
            return []
        strategy = self._get_strategy(self.method)
        palette = strategy.build_palette(colors, self.target_count)
        logger.debug("Quantized %d distinct colors to %d with %s",
                     len(colors), len(palette), type(strategy).__name__)
        return palette

    @staticmethod
    def remap(buffer: PixelBuffer, palette: List[Color]) -> PixelBuffer:
        if buffer.is_empty() or not palette:
            return buffer.copy()
        palette_arr = np.asarray(palette, dtype=np.int64)
        flat = buffer.rgb.reshape(-1, 3)
        idx = nearest_palette_index(flat, palette_arr)
        return buffer.with_rgb(palette_arr[idx].reshape(buffer.rgb.shape).astype(np.uint8))

    def apply(self, buffer: PixelBuffer) -> Tuple[PixelBuffer, List[Color]]:
        palette = self.quantize(buffer)
        return ColorQuantizer.remap(buffer, palette), palette


# -------------------- Edge Detection --------------------

SOBEL_X = np.array([[-1, 0, 1],
                    [-2, 0, 2],
                    [-1, 0, 1]], dtype=np.int64)

SOBEL_Y = np.array([[-1, -2, -1],
                    [0, 0, 0],
                    [1, 2, 1]], dtype=np.int64)

LAPLACIAN = np.array([[0, -1, 0],
                      [-1, 4, -1],
                      [0, -1, 0]], dtype=np.int64)

MEAN_3x3 = np.ones((3, 3), dtype=np.int64)


class EdgeDetector:
    """
    Grayscale conversion plus 3x3 kernels producing an edge-intensity map.
    Only interior pixels are computed; the 1-pixel border stays zero.

    The same maps drive two effects: "outline" (low threshold, strong
    darkening) and "edge" (higher threshold, softer darkening).
    """

    OUTLINE_THRESHOLD = 0.05
    OUTLINE_MULTIPLIER = 3
    EDGE_THRESHOLD = 0.1
    EDGE_MULTIPLIER = 2

    @staticmethod
    def to_grayscale(buffer: PixelBuffer) -> np.ndarray:
        return to_uint8(buffer.rgb.astype(np.float64) @ LUMA_WEIGHTS)

    @staticmethod
    def _has_interior(gray: np.ndarray) -> bool:
        return gray.shape[0] >= 3 and gray.shape[1] >= 3

    @staticmethod
    def _correlate_interior(gray: np.ndarray, kernel: np.ndarray) -> np.ndarray:
        """3x3 correlation; border entries of the result are zeroed."""
        result = ndimage.correlate(gray.astype(np.int64), kernel, mode="constant", cval=0)
        result[0, :] = 0
        result[-1, :] = 0
        result[:, 0] = 0
        result[:, -1] = 0
        return result

    @staticmethod
    def simple(gray: np.ndarray) -> np.ndarray:
        """Max absolute difference to the 8 neighbors, doubled above 20."""
        h, w = gray.shape
        if not EdgeDetector._has_interior(gray):
            return np.zeros((h, w), dtype=np.uint8)
        g = gray.astype(np.int64)
        center = g[1:-1, 1:-1]
        max_diff = np.zeros_like(center)
        for dy in (-1, 0, 1):
            for dx in (-1, 0, 1):
                if dy == 0 and dx == 0:
                    continue
                neighbor = g[1 + dy:h - 1 + dy, 1 + dx:w - 1 + dx]
                max_diff = np.maximum(max_diff, np.abs(center - neighbor))
        out = np.zeros((h, w), dtype=np.uint8)
        out[1:-1, 1:-1] = to_uint8(np.where(max_diff > 20, max_diff * 2, 0))
        return out

    @staticmethod
    def sobel(gray: np.ndarray, outline: bool = False) -> np.ndarray:
        if not EdgeDetector._has_interior(gray):
            return np.zeros(gray.shape, dtype=np.uint8)
        gx = EdgeDetector._correlate_interior(gray, SOBEL_X)
        gy = EdgeDetector._correlate_interior(gray, SOBEL_Y)
        magnitude = np.sqrt((gx * gx + gy * gy).astype(np.float64))
        if outline:
            magnitude = np.where(magnitude > 30, np.minimum(255, magnitude * 1.5), 0)
        return to_uint8(magnitude)

    @staticmethod
    def blur(gray: np.ndarray) -> np.ndarray:
        """3x3 mean over the interior; border pixels keep their gray value."""
        if not EdgeDetector._has_interior(gray):
            return gray.copy()
        sums = ndimage.correlate(gray.astype(np.int64), MEAN_3x3, mode="constant", cval=0)
        blurred = gray.copy()
        blurred[1:-1, 1:-1] = to_uint8(sums[1:-1, 1:-1] / 9)
        return blurred

    @staticmethod
    def canny(gray: np.ndarray, outline: bool = False) -> np.ndarray:
        """
        Simplified Canny: mean blur then Sobel then a threshold.
        There is no non-maximum suppression or hysteresis.
        """
        edges = EdgeDetector.sobel(EdgeDetector.blur(gray), outline=outline).astype(np.float64)
        if outline:
            return to_uint8(np.where(edges > 25, edges * 2, 0))
        return to_uint8(np.where(edges > 30, edges, 0))

    @staticmethod
    def laplacian(gray: np.ndarray, outline: bool = False) -> np.ndarray:
        if not EdgeDetector._has_interior(gray):
            return np.zeros(gray.shape, dtype=np.uint8)
        response = np.abs(EdgeDetector._correlate_interior(gray, LAPLACIAN))
        if outline:
            response = np.where(response > 15, response * 2, 0)
        return to_uint8(np.minimum(255, response))

    @staticmethod
    def detect(gray: np.ndarray, method, outline: bool = False) -> np.ndarray:
        """
        Edge map for `method`. The simple detector only exists as an outline.

        Raises:
            ValueError: for a method not available in the requested mode
        """
        name = normalize_name(method)
        if name == OutlineMethod.SIMPLE.value and outline:
            return EdgeDetector.simple(gray)
        elif name == EdgeMethod.SOBEL.value:
            return EdgeDetector.sobel(gray, outline=outline)
        elif name == EdgeMethod.CANNY.value:
            return EdgeDetector.canny(gray, outline=outline)
        elif name == EdgeMethod.LAPLACIAN.value:
            return EdgeDetector.laplacian(gray, outline=outline)
        raise ValueError(f"Unsupported edge method {method!r} (outline={outline})")

    @staticmethod
    def darken(buffer: PixelBuffer, edge_map: np.ndarray, strength: float,
               threshold: float, multiplier: float) -> PixelBuffer:
        """Subtract min(1, factor*multiplier)*255 wherever factor exceeds the threshold."""
        factor = (edge_map.astype(np.float64) / 255) * strength
        mask = factor > threshold
        if not mask.any():
            return buffer.copy()
        intensity = np.minimum(1, factor * multiplier)[..., np.newaxis]
        rgb = buffer.rgb.astype(np.float64)
        darkened = np.where(mask[..., np.newaxis], np.maximum(0, rgb - intensity * 255), rgb)
        return buffer.with_rgb(darkened)

    @staticmethod
    def apply_outline(buffer: PixelBuffer, method, strength: float) -> PixelBuffer:
        """Darken silhouette edges. `strength` is a percentage."""
        choice = parse_choice(OutlineMethod, method)
        if choice is None:
            logger.warning("Unknown outline detection %r, skipping", method)
            return buffer.copy()
        if choice == OutlineMethod.NONE or buffer.is_empty():
            return buffer.copy()
        edge_map = EdgeDetector.detect(EdgeDetector.to_grayscale(buffer), choice, outline=True)
        return EdgeDetector.darken(buffer, edge_map, strength / 100,
                                   EdgeDetector.OUTLINE_THRESHOLD, EdgeDetector.OUTLINE_MULTIPLIER)

    @staticmethod
    def apply_edges(buffer: PixelBuffer, method, strength: float) -> PixelBuffer:
        """Darken every detected edge. `strength` is a percentage."""
        choice = parse_choice(EdgeMethod, method)
        if choice is None:
            logger.warning("Unknown edge detection %r, skipping", method)
            return buffer.copy()
        if choice == EdgeMethod.NONE or buffer.is_empty():
            return buffer.copy()
        edge_map = EdgeDetector.detect(EdgeDetector.to_grayscale(buffer), choice, outline=False)
        return EdgeDetector.darken(buffer, edge_map, strength / 100,
                                   EdgeDetector.EDGE_THRESHOLD, EdgeDetector.EDGE_MULTIPLIER)


# -------------------- Pixelation --------------------

class Pixelator:
    """
    Block mosaic: box-filter downsample by `pixel_size`, then nearest-neighbor
    upsample back to the original size with no smoothing.
    """

    @staticmethod
    def small_size(width: int, height: int, pixel_size: int) -> Tuple[int, int]:
        return max(1, width // pixel_size), max(1, height // pixel_size)

    @staticmethod
    def apply(buffer: PixelBuffer, pixel_size: int) -> PixelBuffer:
        pixel_size = int(pixel_size)
        if pixel_size <= 1 or buffer.is_empty():
            return buffer.copy()
        w, h = buffer.size
        small_w, small_h = Pixelator.small_size(w, h, pixel_size)
        image = Image.fromarray(buffer.pixels)
        small = image.resize((small_w, small_h), Image.Resampling.BOX)
        blocky = small.resize((w, h), Image.Resampling.NEAREST)
        return PixelBuffer(np.array(blocky, dtype=np.uint8))


# -------------------- Pipeline --------------------

class PixelArtPipeline:
    """
    Orchestrates the stages in their fixed order:
    tone -> posterize -> palette swap -> outline -> edge -> quantize -> pixelate.
    The source buffer is never modified.
    """

    def __init__(self, settings: Optional[PixelArtSettings] = None,
                 rng: Optional[np.random.Generator] = None):
        self.settings = settings or PixelArtSettings()
        self.rng = rng
        self.last_palette: List[Color] = []

    def _run_stage(self, name: str, stage: Callable[..., PixelBuffer],
                   buffer: PixelBuffer, *args) -> PixelBuffer:
        """Run one stage; on failure or a size change the input passes through."""
        try:
            result = stage(buffer, *args)
        except Exception:
            logger.exception("Stage '%s' failed, passing its input through", name)
            return buffer
        if result.pixels.shape != buffer.pixels.shape:
            logger.error("Stage '%s' changed the buffer shape %s -> %s, discarding",
                         name, buffer.pixels.shape, result.pixels.shape)
            return buffer
        logger.debug("Stage '%s' done", name)
        return result

    def _quantize(self, buffer: PixelBuffer) -> PixelBuffer:
        quantizer = ColorQuantizer(self.settings.quantization_method,
                                   self.settings.color_count, rng=self.rng)
        result, self.last_palette = quantizer.apply(buffer)
        return result

    def process(self, source: PixelBuffer) -> PixelBuffer:
        s = self.settings
        self.last_palette = []
        if source.is_empty():
            return source.copy()

        buffer = self._run_stage("tone", ToneAdjuster.apply, source,
                                 s.brightness, s.contrast, s.saturation)
        if s.posterization_levels < 256:
            buffer = self._run_stage("posterize", Posterizer.apply, buffer, s.posterization_levels)
        buffer = self._run_stage("palette_swap", PaletteSwapper.apply, buffer, s.palette_swap)
        buffer = self._run_stage("outline", EdgeDetector.apply_outline, buffer,
                                 s.outline_detection, s.outline_strength)
        buffer = self._run_stage("edge", EdgeDetector.apply_edges, buffer,
                                 s.edge_detection, s.edge_strength)

        method = parse_choice(QuantizationMethod, s.quantization_method)
        if method is None:
            logger.warning("Unknown quantization method %r, skipping", s.quantization_method)
        elif method != QuantizationMethod.NONE:
            buffer = self._run_stage("quantize", self._quantize, buffer)

        buffer = self._run_stage("pixelate", Pixelator.apply, buffer, s.pixel_size)
        return buffer if buffer is not source else source.copy()


def process(source: PixelBuffer, settings: Optional[PixelArtSettings] = None,
            rng: Optional[np.random.Generator] = None) -> PixelBuffer:
    """Run the full pixel-art pipeline on `source` and return a new buffer."""
    return PixelArtPipeline(settings, rng=rng).process(source)
