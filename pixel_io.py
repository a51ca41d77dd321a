"""
Pixel source and sink adapters between numpy / Pillow images and colorquant_lib.
"""

import os
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from PIL import Image

from colorquant_lib import (
    ERROR_GAIN,
    DitherConfig,
    ErrorDiffusionDitherer,
    IndexedSink,
    InvalidInputError,
    Palette,
    RGBASink,
)

__all__ = [
    # Functions
    'widen_channels',
    'narrow_channels',
    'sink_to_image',
    'validate_image_file',
    'get_image_info',
    'ensure_rgba',
    # Classes
    'ArraySource',
    'ImageSource',
    'ImageDitherer',
]

IMAGE_EXTENSIONS = {'.png', '.jpg', '.jpeg', '.gif', '.bmp', '.tiff', '.webp'}


def widen_channels(arr: np.ndarray) -> np.ndarray:
    """8-bit channel values to 16-bit (0xAB -> 0xABAB)."""
    return arr.astype(np.uint16) * np.uint16(0x101)


def narrow_channels(arr: np.ndarray) -> np.ndarray:
    """16-bit channel values to 8-bit (high byte)."""
    return (np.asarray(arr, dtype=np.uint16) >> 8).astype(np.uint8)


class ArraySource:
    """
    Pixel source over a numpy array of shape (h, w, 3) or (h, w, 4).
    uint8 arrays are widened to 16 bits; uint16 arrays are used as-is.
    A missing alpha channel reads as opaque.
    """

    def __init__(self, array: np.ndarray):
        array = np.asarray(array)
        if array.ndim != 3 or array.shape[2] not in (3, 4):
            raise InvalidInputError(f"Expected an (h, w, 3|4) array, got shape {array.shape}")
        if array.dtype == np.uint8:
            array = widen_channels(array)
        elif array.dtype != np.uint16:
            raise InvalidInputError(f"Expected uint8 or uint16 pixels, got {array.dtype}")
        if array.shape[2] == 3:
            alpha = np.full(array.shape[:2] + (1,), 0xFFFF, dtype=np.uint16)
            array = np.concatenate([array, alpha], axis=2)
        self.array = array
        self.height, self.width = array.shape[:2]

    def get_rgba(self, x: int, y: int) -> Tuple[int, int, int, int]:
        return tuple(int(v) for v in self.array[y, x])

    def to_array(self) -> np.ndarray:
        return self.array


class ImageSource(ArraySource):
    """Pixel source over a Pillow image (converted to RGBA, 16-bit widened)."""

    def __init__(self, image: Image.Image):
        self.image = ensure_rgba(image)
        super().__init__(np.array(self.image, dtype=np.uint8))


def sink_to_image(sink) -> Image.Image:
    """
    Convert a destination sink to a Pillow image.
    IndexedSink becomes a "P" image carrying its palette (when it fits in
    256 entries); anything else RGBA.
    """
    size = (sink.width, sink.height)
    if isinstance(sink, IndexedSink) and len(sink.palette) <= 256:
        image = Image.frombytes('P', size, sink.indices.astype(np.uint8).tobytes())
        colors = sink.palette.to_rgba8()
        if not colors:
            return image
        if any(a != 0xFF for _, _, _, a in colors):
            image.putpalette([v for c in colors for v in c], 'RGBA')
        else:
            image.putpalette([v for c in colors for v in c[:3]], 'RGB')
        return image
    return Image.frombytes('RGBA', size, narrow_channels(sink.to_array()).tobytes())


def validate_image_file(filepath: str) -> bool:
    """
    Check if file is a valid image file.

    Args:
        filepath: Path to image file

    Returns:
        True if valid image file
    """
    ext = os.path.splitext(filepath)[1].lower()
    return ext in IMAGE_EXTENSIONS and os.path.isfile(filepath)


def get_image_info(filepath: str) -> Optional[Dict]:
    """
    Get basic image information.

    Args:
        filepath: Path to image file

    Returns:
        Dictionary with width, height, mode, format
    """
    with Image.open(filepath) as img:
        return {
            'width': img.width,
            'height': img.height,
            'mode': img.mode,
            'format': img.format
        }


def ensure_rgba(image: Image.Image) -> Image.Image:
    """
    Ensure image is in RGBA mode.

    Args:
        image: PIL Image

    Returns:
        Image in RGBA mode
    """
    if image.mode != 'RGBA':
        return image.convert('RGBA')
    return image


class ImageDitherer:
    """
    Orchestrates color reduction (palette building) plus dithering for Pillow images.
    """
    def __init__(self,
                 num_colors: int = 256,
                 kernel: str = "floyd_steinberg",
                 palette: Optional[Sequence[Sequence[int]]] = None,
                 dither: bool = True,
                 gain: float = ERROR_GAIN,
                 indexed: bool = False):
        self.num_colors = num_colors
        self.kernel = kernel
        self.palette = palette
        self.dither = dither
        self.gain = gain
        self.indexed = indexed
        self.last_palette: Optional[Palette] = None

    def _config(self) -> DitherConfig:
        palette = None
        if self.palette is not None:
            palette = self.palette if isinstance(self.palette, Palette) else Palette.from_rgb8(self.palette)
        return DitherConfig(
            kernel=self.kernel,
            level=self.num_colors,
            dither=self.dither,
            quantize=palette is None,
            gain=self.gain,
            palette=palette,
            indexed=self.indexed,
        )

    def apply_dithering(self, image: Image.Image) -> Image.Image:
        ditherer = ErrorDiffusionDitherer(self._config())
        sink = ditherer.dither(ImageSource(image))
        if isinstance(sink, IndexedSink):
            self.last_palette = sink.palette
        return sink_to_image(sink)

    def palette_rgb(self) -> List[Tuple[int, int, int]]:
        """RGB palette of the last indexed render, empty before one."""
        return self.last_palette.to_rgb8() if self.last_palette is not None else []
