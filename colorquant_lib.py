"""
A Python library for palette reduction by median cut and palette rendering by
error-diffusion dithering.

The library works on an abstract pixel source (width, height, RGBA read access)
and writes to an abstract pixel sink (RGBA or palette-index write access), so it
can be used with any decoded-image representation. See pixel_io.py for numpy and
Pillow adapters.

Channel values are 16-bit (0..0xFFFF) throughout.
"""

import heapq
import logging
import math
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

__all__ = [
    'MAX_CHANNEL',
    'ERROR_GAIN',
    'LUMA_WEIGHTS',
    'ColorQuantError',
    'InvalidParameterError',
    'InvalidInputError',
    'InternalInvariantError',
    'Palette',
    'Kernel',
    'KERNELS',
    'LOSSY_KERNELS',
    'build_registry',
    'get_kernel',
    'RGBASink',
    'IndexedSink',
    'Cluster',
    'MedianCutQuantizer',
    'quantize',
    'color_distance',
    'nearest',
    'NearestColorMatcher',
    'ErrorAccumulator',
    'PixelDecision',
    'DitherPass',
    'DitherConfig',
    'BaseDitherStrategy',
    'NearestColorStrategy',
    'ErrorDiffusionStrategy',
    'ErrorDiffusionDitherer',
    'dither',
]

Color = Tuple[int, int, int, int]

MAX_CHANNEL = 0xFFFF

# Empirical gain applied to accumulated error before it is added back to a pixel.
ERROR_GAIN = 1.12

# Rec. 709 luma coefficients for R, G, B; alpha is weighted fully.
LUMA_WEIGHTS = (0.2126, 0.7152, 0.0722, 1.0)


# -------------------- Errors --------------------

class ColorQuantError(Exception):
    """Base class for all errors raised by this library."""
    pass


class InvalidParameterError(ColorQuantError, ValueError):
    """Raised for rejected configuration: bad level, kernel, gain or palette."""
    pass


class InvalidInputError(ColorQuantError, ValueError):
    """Raised for a malformed pixel source."""
    pass


class InternalInvariantError(ColorQuantError, AssertionError):
    """Raised when an internal invariant breaks. Indicates a defect, never caught here."""
    pass


# -------------------- Palette --------------------

def _check_color(color: Sequence[int]) -> Color:
    if len(color) != 4:
        raise InvalidParameterError(f"Palette colors need 4 channels, got {len(color)}: {color!r}")
    out = []
    for value in color:
        if isinstance(value, (bool, np.bool_)) or not isinstance(value, (int, np.integer)):
            raise InvalidParameterError(f"Channel values must be integers, got {value!r}")
        if not 0 <= value <= MAX_CHANNEL:
            raise InvalidParameterError(f"Channel value {value} outside [0, {MAX_CHANNEL:#x}]")
        out.append(int(value))
    return tuple(out)


@dataclass(frozen=True)
class Palette:
    """
    Ordered, index-stable, immutable sequence of 16-bit RGBA colors.
    The index of an entry is its only identity downstream (indexed images).
    """
    colors: Tuple[Color, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'colors', tuple(_check_color(c) for c in self.colors))

    def __len__(self) -> int:
        return len(self.colors)

    def __iter__(self):
        return iter(self.colors)

    def __getitem__(self, index: int) -> Color:
        return self.colors[index]

    def index(self, color: Sequence[int]) -> int:
        return self.colors.index(tuple(int(c) for c in color))

    def as_array(self) -> np.ndarray:
        return np.array(self.colors, dtype=np.float64).reshape(-1, 4)

    def to_rgba8(self) -> List[Tuple[int, int, int, int]]:
        return [tuple(c >> 8 for c in color) for color in self.colors]

    def to_rgb8(self) -> List[Tuple[int, int, int]]:
        return [color[:3] for color in self.to_rgba8()]

    @classmethod
    def from_rgba8(cls, colors: Iterable[Sequence[int]]) -> 'Palette':
        return cls(tuple(tuple(int(v) * 0x101 for v in c) for c in colors))

    @classmethod
    def from_rgb8(cls, colors: Iterable[Sequence[int]]) -> 'Palette':
        return cls.from_rgba8((c[0], c[1], c[2], 0xFF) for c in colors)


# -------------------- Kernel Registry --------------------

@dataclass(frozen=True)
class Kernel:
    """
    Error-diffusion kernel as (weight, dx, dy) taps relative to the current pixel.
    Taps may only point forward in raster order: dy > 0, or dy == 0 with dx > 0.
    """
    name: str
    taps: Tuple[Tuple[float, int, int], ...]

    def __post_init__(self):
        taps = []
        for weight, dx, dy in self.taps:
            dx, dy = int(dx), int(dy)
            if dy < 0 or (dy == 0 and dx <= 0):
                raise InvalidParameterError(
                    f"Kernel '{self.name}' tap ({dx}, {dy}) points at an already finalized pixel")
            taps.append((float(weight), dx, dy))
        object.__setattr__(self, 'taps', tuple(taps))

    @classmethod
    def from_grid(cls, name: str, rows: Sequence[Sequence[float]], origin: int) -> 'Kernel':
        """
        Build a kernel from a row-based grid, filter[row][col].
        Row 0 is the current row and column `origin` is the current pixel;
        zero cells are skipped.
        """
        taps = []
        for dy, row in enumerate(rows):
            for col, weight in enumerate(row):
                if weight == 0:
                    continue
                taps.append((weight, col - origin, dy))
        return cls(name, tuple(taps))

    @property
    def energy(self) -> float:
        return math.fsum(weight for weight, _, _ in self.taps)

    def conserves_energy(self, eps: float = 1e-3) -> bool:
        return abs(self.energy - 1.0) <= eps


def _normalize_name(name: str) -> str:
    return re.sub(r'[^a-z0-9]', '', name.lower())


# Registered kernels that deliberately diffuse less than the full error.
LOSSY_KERNELS = frozenset({"atkinson"})


def build_registry(kernels: Iterable[Kernel],
                   known_lossy: Iterable[str] = ()) -> Mapping[str, Kernel]:
    """
    Build an immutable name -> Kernel mapping.
    Kernels that do not conserve energy are kept as published; unless listed
    in `known_lossy` they are logged as suspect tables.
    """
    known_lossy = frozenset(known_lossy)
    registry: Dict[str, Kernel] = {}
    for kernel in kernels:
        if kernel.name in registry:
            raise InvalidParameterError(f"Duplicate kernel name: {kernel.name}")
        if not kernel.conserves_energy() and kernel.name not in known_lossy:
            logger.warning("Kernel %s diffuses %.4f of the error (not 1.0)", kernel.name, kernel.energy)
        registry[kernel.name] = kernel
    return MappingProxyType(registry)


KERNELS: Mapping[str, Kernel] = build_registry([
    Kernel.from_grid("floyd_steinberg", [
        [0.0, 0.0, 7.0 / 16.0],
        [3.0 / 16.0, 5.0 / 16.0, 1.0 / 16.0],
    ], origin=1),
    Kernel.from_grid("jarvis_judice_ninke", [
        [0.0, 0.0, 0.0, 7.0 / 48.0, 5.0 / 48.0],
        [3.0 / 48.0, 5.0 / 48.0, 7.0 / 48.0, 5.0 / 48.0, 3.0 / 48.0],
        [1.0 / 48.0, 3.0 / 48.0, 5.0 / 48.0, 3.0 / 48.0, 1.0 / 48.0],
    ], origin=2),
    Kernel.from_grid("stucki", [
        [0.0, 0.0, 0.0, 8.0 / 42.0, 4.0 / 42.0],
        [2.0 / 42.0, 4.0 / 42.0, 8.0 / 42.0, 4.0 / 42.0, 2.0 / 42.0],
        [1.0 / 42.0, 2.0 / 42.0, 4.0 / 42.0, 2.0 / 42.0, 1.0 / 42.0],
    ], origin=2),
    Kernel.from_grid("burkes", [
        [0.0, 0.0, 0.0, 8.0 / 32.0, 4.0 / 32.0],
        [2.0 / 32.0, 4.0 / 32.0, 8.0 / 32.0, 4.0 / 32.0, 2.0 / 32.0],
    ], origin=2),
    Kernel.from_grid("sierra_3", [
        [0.0, 0.0, 0.0, 5.0 / 32.0, 3.0 / 32.0],
        [2.0 / 32.0, 4.0 / 32.0, 5.0 / 32.0, 4.0 / 32.0, 2.0 / 32.0],
        [0.0, 2.0 / 32.0, 3.0 / 32.0, 2.0 / 32.0, 0.0],
    ], origin=2),
    Kernel.from_grid("sierra_2", [
        [0.0, 0.0, 0.0, 4.0 / 16.0, 3.0 / 16.0],
        [1.0 / 16.0, 2.0 / 16.0, 3.0 / 16.0, 2.0 / 16.0, 1.0 / 16.0],
    ], origin=2),
    Kernel.from_grid("sierra_lite", [
        [0.0, 0.0, 2.0 / 4.0],
        [1.0 / 4.0, 1.0 / 4.0, 0.0],
    ], origin=1),
    Kernel("atkinson", (
        (1.0 / 8.0, 1, 0),
        (1.0 / 8.0, 2, 0),
        (1.0 / 8.0, -1, 1),
        (1.0 / 8.0, 0, 1),
        (1.0 / 8.0, 1, 1),
        (1.0 / 8.0, 0, 2),
    )),
], known_lossy=LOSSY_KERNELS)


def get_kernel(name: str, registry: Mapping[str, Kernel] = KERNELS) -> Optional[Kernel]:
    """
    Look up a kernel by name, ignoring case and punctuation.
    Returns None for "none" (diffusion disabled).
    """
    if name is None or _normalize_name(name) == "none":
        return None
    wanted = _normalize_name(name)
    for key, kernel in registry.items():
        if _normalize_name(key) == wanted:
            return kernel
    raise InvalidParameterError(
        f"Unknown kernel '{name}'. Registered kernels: {', '.join(sorted(registry))}")


# -------------------- Pixel Source Access --------------------

def _source_size(source) -> Tuple[int, int]:
    try:
        width, height = int(source.width), int(source.height)
    except (AttributeError, TypeError, ValueError) as e:
        raise InvalidInputError(f"Pixel source has no usable width/height: {e}") from e
    if width < 0 or height < 0:
        raise InvalidInputError(f"Pixel source has negative size {width}x{height}")
    if not callable(getattr(source, 'get_rgba', None)):
        raise InvalidInputError("Pixel source has no get_rgba(x, y) method")
    return width, height


def _check_pixel(color, x: int, y: int) -> Tuple[int, ...]:
    try:
        channels = tuple(color)
    except TypeError:
        raise InvalidInputError(f"get_rgba({x}, {y}) returned {color!r}, not a color") from None
    if len(channels) != 4:
        raise InvalidInputError(f"get_rgba({x}, {y}) returned {len(channels)} channels, expected 4")
    for value in channels:
        if isinstance(value, (bool, np.bool_)) or not isinstance(value, (int, np.integer)):
            raise InvalidInputError(f"get_rgba({x}, {y}) returned non-integer channel {value!r}")
    return channels


def _read_pixels(source) -> np.ndarray:
    """Read every pixel of a source into a (h, w, 4) int64 array."""
    width, height = _source_size(source)
    to_array = getattr(source, 'to_array', None)
    if callable(to_array):
        arr = np.asarray(to_array())
        if arr.shape != (height, width, 4):
            raise InvalidInputError(f"Source array shape {arr.shape} does not match {height}x{width}x4")
        if not np.issubdtype(arr.dtype, np.integer):
            raise InvalidInputError(f"Source array must hold integer channels, got {arr.dtype}")
        arr = arr.astype(np.int64)
    else:
        arr = np.empty((height, width, 4), dtype=np.int64)
        for y in range(height):
            for x in range(width):
                arr[y, x] = _check_pixel(source.get_rgba(x, y), x, y)
    if arr.size and (arr.min() < 0 or arr.max() > MAX_CHANNEL):
        raise InvalidInputError(f"Source channel values must lie in [0, {MAX_CHANNEL:#x}]")
    return arr


# -------------------- Pixel Sinks --------------------

class RGBASink:
    """Destination holding 16-bit RGBA colors. Also readable as a pixel source."""

    def __init__(self, width: int, height: int):
        self.width = width
        self.height = height
        self.buffer = np.zeros((height, width, 4), dtype=np.uint16)

    def set_rgba(self, x: int, y: int, color: Sequence[int]):
        self.buffer[y, x] = color

    def get_rgba(self, x: int, y: int) -> Color:
        return tuple(int(v) for v in self.buffer[y, x])

    def to_array(self) -> np.ndarray:
        return self.buffer


class IndexedSink:
    """Destination holding palette indices; colors come only from `palette`."""

    def __init__(self, width: int, height: int, palette: Palette):
        self.width = width
        self.height = height
        self.palette = palette
        dtype = np.uint8 if len(palette) <= 256 else np.uint16
        self.indices = np.zeros((height, width), dtype=dtype)

    def set_index(self, x: int, y: int, index: int):
        if not 0 <= index < len(self.palette):
            raise IndexError(f"Palette index {index} out of range for {len(self.palette)} colors")
        self.indices[y, x] = index

    def get_rgba(self, x: int, y: int) -> Color:
        return self.palette[int(self.indices[y, x])]

    def to_array(self) -> np.ndarray:
        if len(self.palette) == 0:
            return np.zeros((self.height, self.width, 4), dtype=np.uint16)
        colors = np.array(self.palette.colors, dtype=np.uint16)
        return colors[self.indices]


# -------------------- Median-Cut Quantizer --------------------

@dataclass
class Cluster:
    """Member point indices plus the per-channel bounding box of their colors."""
    indices: np.ndarray
    mins: np.ndarray
    maxs: np.ndarray

    @classmethod
    def of(cls, indices: np.ndarray, colors: np.ndarray) -> 'Cluster':
        members = colors[indices]
        return cls(indices, members.min(axis=0), members.max(axis=0))

    @property
    def extent(self) -> int:
        return int((self.maxs - self.mins).max())

    @property
    def widest_channel(self) -> int:
        return int(np.argmax(self.maxs - self.mins))

    def __len__(self) -> int:
        return len(self.indices)


class MedianCutQuantizer:
    """
    Builds a palette of at most `level` colors by median cut.

    Points (one per pixel) start in a single cluster. The cluster with the
    widest single-channel range is split at the median of that channel until
    there are `level` clusters or every cluster holds one distinct color.
    Each final cluster contributes one palette entry, in cluster slot order.
    """

    STATISTICS = ("median", "mean")

    def __init__(self, level: int, statistic: str = "median"):
        if isinstance(level, bool) or not isinstance(level, (int, np.integer)) or level < 1:
            raise InvalidParameterError(f"Quantization level must be an integer >= 1, got {level!r}")
        if statistic not in self.STATISTICS:
            raise InvalidParameterError(f"Unknown statistic '{statistic}', expected one of {self.STATISTICS}")
        self.level = int(level)
        self.statistic = statistic
        self.colors = np.empty((0, 4), dtype=np.int64)
        self.coords = np.empty((0, 2), dtype=np.int64)
        self.clusters: List[Cluster] = []

    def _load_points(self, pixels: np.ndarray):
        height, width = pixels.shape[:2]
        ys, xs = np.mgrid[0:height, 0:width]
        self.colors = pixels.reshape(-1, 4)
        self.coords = np.stack([xs.ravel(), ys.ravel()], axis=1)

    def _cut_index(self, values: np.ndarray) -> int:
        """
        Median index of sorted `values`, moved to the nearest place where the
        value changes so equal values stay together.
        """
        n = len(values)
        mid = n // 2
        median = values[mid]
        lo = int(np.searchsorted(values, median, side='left'))
        hi = int(np.searchsorted(values, median, side='right'))
        candidates = [i for i in (lo, hi) if 0 < i < n]
        if not candidates:
            raise InternalInvariantError(f"No cut point in a cluster of {n} points with nonzero extent")
        return min(candidates, key=lambda i: (abs(i - mid), i))

    def _split(self, cluster: Cluster) -> Tuple[Cluster, Cluster]:
        channel = cluster.widest_channel
        members = cluster.indices
        order = np.argsort(self.colors[members, channel], kind='stable')
        members = members[order]
        cut = self._cut_index(self.colors[members, channel])
        lower, upper = members[:cut], members[cut:]
        if len(lower) == 0 or len(upper) == 0:
            raise InternalInvariantError(f"Split produced an empty partition ({len(lower)}, {len(upper)})")
        return Cluster.of(lower, self.colors), Cluster.of(upper, self.colors)

    def cluster(self) -> List[Cluster]:
        """Split clusters from a worklist ordered by widest channel range."""
        if len(self.colors) == 0:
            self.clusters = []
            return self.clusters
        self.clusters = [Cluster.of(np.arange(len(self.colors)), self.colors)]
        worklist: List[Tuple[int, int]] = []

        def push(slot: int):
            extent = self.clusters[slot].extent
            if extent > 0:
                heapq.heappush(worklist, (-extent, slot))

        push(0)
        while len(self.clusters) < self.level and worklist:
            _, slot = heapq.heappop(worklist)
            lower, upper = self._split(self.clusters[slot])
            self.clusters[slot] = lower
            self.clusters.append(upper)
            push(slot)
            push(len(self.clusters) - 1)
        return self.clusters

    def representative(self, cluster: Cluster) -> Color:
        members = self.colors[cluster.indices]
        if self.statistic == "mean":
            rep = np.floor(members.mean(axis=0) + 0.5).astype(np.int64)
        else:
            rep = np.sort(members, axis=0)[(len(members) - 1) // 2]
        rep = np.clip(rep, cluster.mins, cluster.maxs)
        return tuple(int(v) for v in rep)

    def quantize(self, source) -> Palette:
        return self.quantize_pixels(_read_pixels(source))

    def quantize_pixels(self, pixels: np.ndarray) -> Palette:
        """Same as quantize() for an already read (h, w, 4) pixel array."""
        self._load_points(pixels)
        self.cluster()
        palette = Palette(tuple(self.representative(c) for c in self.clusters))
        logger.debug("Median cut built %d colors from %d pixels (level %d)",
                     len(palette), len(self.colors), self.level)
        return palette


def quantize(source, level: int) -> Palette:
    """Build a palette of at most `level` colors from a pixel source."""
    return MedianCutQuantizer(level).quantize(source)


# -------------------- Nearest-Color Matcher --------------------

_WEIGHTS = np.array(LUMA_WEIGHTS, dtype=np.float64)
_MAX_DISTANCE = math.sqrt(sum(LUMA_WEIGHTS)) * MAX_CHANNEL


def color_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """Luma-weighted Euclidean distance between two RGBA colors, normalized to [0, 1]."""
    total = 0.0
    for weight, ca, cb in zip(LUMA_WEIGHTS, a, b):
        d = float(ca) - float(cb)
        total += weight * (d * d)
    return math.sqrt(total) / _MAX_DISTANCE


def nearest(color: Sequence[float], palette: Palette) -> Tuple[int, Color]:
    """
    Closest palette entry to `color`, scanning in index order.
    The first entry seen at the minimum distance wins; an exact match stops the scan.
    """
    if len(palette) == 0:
        raise InvalidParameterError("Cannot match against an empty palette")
    best_index, best = 0, math.inf
    for index, entry in enumerate(palette):
        dist = color_distance(color, entry)
        if dist < best:
            best_index, best = index, dist
            if dist == 0.0:
                break
    return best_index, palette[best_index]


class NearestColorMatcher:
    """
    Vectorized form of nearest() bound to one palette.
    np.argmin returns the first minimum, which keeps the first-seen tie rule.
    """

    def __init__(self, palette: Palette):
        if len(palette) == 0:
            raise InvalidParameterError("Cannot match against an empty palette")
        self.palette = palette
        self._colors = palette.as_array()

    def _distances(self, pixels: np.ndarray) -> np.ndarray:
        diff = pixels[:, None, :] - self._colors[None, :, :]
        sq = diff * diff
        total = (_WEIGHTS[0] * sq[..., 0] + _WEIGHTS[1] * sq[..., 1]
                 + _WEIGHTS[2] * sq[..., 2] + _WEIGHTS[3] * sq[..., 3])
        return np.sqrt(total) / _MAX_DISTANCE

    def nearest(self, color: Sequence[float]) -> Tuple[int, Color]:
        pixel = np.asarray(color, dtype=np.float64).reshape(1, 4)
        index = int(np.argmin(self._distances(pixel)[0]))
        return index, self.palette[index]

    def nearest_indices(self, pixels: np.ndarray, chunk_size: int = 4096) -> np.ndarray:
        """Palette index of every row of an (N, 4) array."""
        pixels = np.asarray(pixels, dtype=np.float64).reshape(-1, 4)
        out = np.empty(len(pixels), dtype=np.int64)
        for start in range(0, len(pixels), chunk_size):
            chunk = pixels[start:start + chunk_size]
            out[start:start + len(chunk)] = np.argmin(self._distances(chunk), axis=1)
        return out


# -------------------- Error Accumulator --------------------

class ErrorAccumulator:
    """
    Per-pixel, per-channel diffusion error for one pass.
    Each pixel's error is consumed once, when the raster scan reaches it;
    after that nothing may be added to it.
    """

    def __init__(self, width: int, height: int):
        self.width = width
        self.height = height
        self.buffer = np.zeros((height, width, 4), dtype=np.float64)
        self._cursor = -1  # raster position of the last consumed pixel

    def in_bounds(self, x: int, y: int) -> bool:
        return 0 <= x < self.width and 0 <= y < self.height

    def add(self, x: int, y: int, error: np.ndarray):
        if y * self.width + x <= self._cursor:
            raise InternalInvariantError(f"Error diffused into finalized pixel ({x}, {y})")
        self.buffer[y, x] += error

    def consume(self, x: int, y: int) -> np.ndarray:
        position = y * self.width + x
        if position != self._cursor + 1:
            raise InternalInvariantError(
                f"Pixel ({x}, {y}) consumed out of raster order (cursor at {self._cursor})")
        self._cursor = position
        error = self.buffer[y, x].copy()
        self.buffer[y, x] = 0.0
        return error


# -------------------- Dither Pass --------------------

class PixelDecision(NamedTuple):
    index: int
    color: Color
    residual: np.ndarray


class DitherPass:
    """
    One raster pass: reads each pixel, adds its diffused error, matches it to
    the palette and pushes the residual forward through the kernel.
    With kernel=None no error is diffused.
    """

    def __init__(self, pixels: np.ndarray, palette: Palette,
                 kernel: Optional[Kernel] = None, gain: float = ERROR_GAIN):
        self.pixels = pixels
        self.height, self.width = pixels.shape[:2]
        self.palette = palette
        self.kernel = kernel
        self.gain = gain
        self.matcher = NearestColorMatcher(palette)
        self.errors = ErrorAccumulator(self.width, self.height)

    def visit(self, x: int, y: int) -> PixelDecision:
        source = self.pixels[y, x].astype(np.float64)
        error = self.errors.consume(x, y)
        if self.kernel is not None:
            source = np.clip(source + error * self.gain, 0, MAX_CHANNEL)
        index, color = self.matcher.nearest(source)
        residual = source - np.asarray(color, dtype=np.float64)
        if self.kernel is not None:
            for weight, dx, dy in self.kernel.taps:
                tx, ty = x + dx, y + dy
                if self.errors.in_bounds(tx, ty):
                    self.errors.add(tx, ty, residual * weight)
        return PixelDecision(index, color, residual)

    def run(self, sink):
        write_index = getattr(sink, 'set_index', None)
        for y in range(self.height):
            for x in range(self.width):
                decision = self.visit(x, y)
                if write_index is not None:
                    write_index(x, y, decision.index)
                else:
                    sink.set_rgba(x, y, decision.color)
        return sink


# -------------------- Strategies --------------------

class BaseDitherStrategy:
    """
    Base class for palette rendering strategies.
    Each strategy implements .render(pixels, palette, sink) and returns the sink.
    """
    def render(self, pixels: np.ndarray, palette: Palette, sink):
        raise NotImplementedError


class NearestColorStrategy(BaseDitherStrategy):
    """
    No dithering at all; simply assign each pixel to its nearest palette color.
    """
    def render(self, pixels: np.ndarray, palette: Palette, sink):
        height, width = pixels.shape[:2]
        indices = NearestColorMatcher(palette).nearest_indices(pixels.reshape(-1, 4))
        indices = indices.reshape(height, width)
        write_index = getattr(sink, 'set_index', None)
        for y in range(height):
            for x in range(width):
                index = int(indices[y, x])
                if write_index is not None:
                    write_index(x, y, index)
                else:
                    sink.set_rgba(x, y, palette[index])
        return sink


class ErrorDiffusionStrategy(BaseDitherStrategy):
    """
    Error diffusion through a kernel, in a single raster pass.
    """
    def __init__(self, kernel: Kernel, gain: float = ERROR_GAIN):
        self.kernel = kernel
        self.gain = gain

    def render(self, pixels: np.ndarray, palette: Palette, sink):
        return DitherPass(pixels, palette, self.kernel, self.gain).run(sink)


# -------------------- Error-Diffusion Ditherer --------------------

@dataclass(frozen=True)
class DitherConfig:
    """
    Settings for one dithering invocation.

    kernel:   registered kernel name, or "none" for no diffusion
    level:    palette size for the median-cut quantizer
    dither:   whether to diffuse error at all
    quantize: build the palette by median cut (True) or use `palette` (False)
    gain:     multiplier on accumulated error before it is added to a pixel
    palette:  caller-supplied palette, only with quantize=False
    indexed:  write palette indices instead of RGBA colors
    """
    kernel: str = "floyd_steinberg"
    level: int = 256
    dither: bool = True
    quantize: bool = True
    gain: float = ERROR_GAIN
    palette: Optional[Palette] = field(default=None, compare=False)
    indexed: bool = False

    def resolve(self, registry: Mapping[str, Kernel] = KERNELS) -> Optional[Kernel]:
        """Validate the whole config and return the active kernel (None when not diffusing)."""
        kernel = get_kernel(self.kernel, registry)
        if isinstance(self.level, bool) or not isinstance(self.level, (int, np.integer)) or self.level < 1:
            raise InvalidParameterError(f"Quantization level must be an integer >= 1, got {self.level!r}")
        if not isinstance(self.gain, (int, float)) or not math.isfinite(self.gain) or self.gain < 0:
            raise InvalidParameterError(f"Error gain must be a finite number >= 0, got {self.gain!r}")
        if self.quantize:
            if self.palette is not None:
                raise InvalidParameterError("A palette was supplied but quantize=True would replace it")
        else:
            if self.palette is None:
                raise InvalidParameterError("quantize=False requires a palette")
            if len(self.palette) == 0:
                raise InvalidParameterError("The supplied palette is empty")
        return kernel if self.dither else None


class ErrorDiffusionDitherer:
    """
    Orchestrates palette building (median cut, or a supplied palette) plus
    rendering with the configured strategy.
    """

    def __init__(self, config: Optional[DitherConfig] = None,
                 kernels: Mapping[str, Kernel] = KERNELS):
        self.config = config or DitherConfig()
        self.kernel = self.config.resolve(kernels)
        logger.debug("Ditherer ready: kernel=%s level=%d quantize=%s",
                     self.kernel.name if self.kernel else "none", self.config.level, self.config.quantize)

    def _get_strategy(self) -> BaseDitherStrategy:
        if self.kernel is None:
            return NearestColorStrategy()
        return ErrorDiffusionStrategy(self.kernel, self.config.gain)

    def _new_sink(self, width: int, height: int, palette: Palette):
        if self.config.indexed:
            return IndexedSink(width, height, palette)
        return RGBASink(width, height)

    def build_palette(self, source) -> Palette:
        return self._build_palette(_read_pixels(source))

    def _build_palette(self, pixels: np.ndarray) -> Palette:
        if self.config.quantize:
            return MedianCutQuantizer(self.config.level).quantize_pixels(pixels)
        return self.config.palette

    def dither(self, source, sink=None):
        """
        Render `source` onto the palette. Returns the sink (a new RGBASink or
        IndexedSink unless one is given).
        """
        width, height = _source_size(source)
        pixels = _read_pixels(source)
        if width == 0 or height == 0:
            palette = self.config.palette or Palette()
            return sink if sink is not None else self._new_sink(width, height, palette)

        palette = self._build_palette(pixels)
        if sink is None:
            sink = self._new_sink(width, height, palette)
        elif (sink.width, sink.height) != (width, height):
            raise InvalidInputError(
                f"Sink size {sink.width}x{sink.height} does not match source {width}x{height}")
        elif getattr(sink, 'palette', None) is not None and sink.palette != palette:
            # indices are only meaningful against the palette they were matched to
            raise InvalidParameterError("Sink palette differs from the palette used for matching")
        return self._get_strategy().render(pixels, palette, sink)


def dither(source, config: Optional[DitherConfig] = None,
           kernels: Mapping[str, Kernel] = KERNELS):
    """Dither a pixel source with `config`; returns the destination sink."""
    return ErrorDiffusionDitherer(config, kernels).dither(source)
