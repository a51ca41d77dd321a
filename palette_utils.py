"""
Caller-supplied palette sources: hex helpers, the palette.json library,
Lospec import, k-means and uniform palettes.
"""

import json
import logging
import math
import os
from typing import Dict, List, Optional, Tuple

import numpy as np
import requests
from PIL import Image
from sklearn.cluster import KMeans

from colorquant_lib import InvalidParameterError, Palette, quantize
from pixel_io import ImageSource, ensure_rgba

logger = logging.getLogger(__name__)

__all__ = [
    # Functions
    'load_palettes_from_file',
    'save_palettes_to_file',
    'hex_to_rgb',
    'rgb_to_hex',
    'palette_from_hex_list',
    'import_lospec_palette',
    'generate_kmeans_palette',
    'generate_uniform_palette',
    'resolve_palette_source',
    # Classes
    'PaletteManager',
]

PALETTE_SOURCES = ["median_cut", "kmeans", "uniform"]


def load_palettes_from_file(filepath: str = "palette.json") -> List[Dict]:
    """
    Load custom palettes from JSON file.

    Args:
        filepath: Path to palette JSON file

    Returns:
        List of palette dictionaries with 'name' and 'colors' keys
    """
    if not os.path.exists(filepath):
        return []

    try:
        with open(filepath, 'r', encoding='utf-8') as f:
            palettes = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Error loading palettes from {filepath}: {e}")
        return []
    return palettes if isinstance(palettes, list) else []


def save_palettes_to_file(palettes: List[Dict], filepath: str = "palette.json"):
    """
    Save palettes to JSON file.

    Args:
        palettes: List of palette dictionaries
        filepath: Path to save JSON file
    """
    with open(filepath, 'w', encoding='utf-8') as f:
        json.dump(palettes, f, indent=4)


def hex_to_rgb(hex_color: str) -> Tuple[int, int, int]:
    """
    Convert hex color string to RGB tuple.

    Args:
        hex_color: Hex string like "#FF0000" or "FF0000"

    Returns:
        RGB tuple (r, g, b)
    """
    hex_color = hex_color.strip().lstrip('#')
    if len(hex_color) != 6:
        raise InvalidParameterError(f"Invalid hex color: '{hex_color}'")
    try:
        return tuple(int(hex_color[i:i+2], 16) for i in (0, 2, 4))
    except ValueError:
        raise InvalidParameterError(f"Invalid hex color: '{hex_color}'") from None


def rgb_to_hex(rgb: Tuple[int, int, int]) -> str:
    """
    Convert RGB tuple to hex color string.

    Args:
        rgb: RGB tuple (r, g, b)

    Returns:
        Hex string like "#ff0000"
    """
    return f'#{rgb[0]:02x}{rgb[1]:02x}{rgb[2]:02x}'


def palette_from_hex_list(hex_list: List[str]) -> Palette:
    """
    Convert list of hex colors to an opaque Palette.

    Args:
        hex_list: List of hex color strings

    Returns:
        Palette with one entry per hex color, in order
    """
    return Palette.from_rgb8([hex_to_rgb(h) for h in hex_list])


def import_lospec_palette(url: str) -> Optional[Dict]:
    """
    Import a palette from lospec.com URL.

    Args:
        url: Lospec palette URL

    Returns:
        Dictionary with 'name' and 'colors' keys, or None if failed
    """
    # e.g., https://lospec.com/palette-list/my-palette -> my-palette
    slug = url.rstrip('/').split('/')[-1]
    if slug.endswith('.json'):
        slug = slug[:-5]
    api_url = f"https://lospec.com/palette-list/{slug}.json"

    try:
        response = requests.get(api_url, timeout=10)
        response.raise_for_status()
        data = response.json()
    except (requests.RequestException, ValueError) as e:
        logger.warning(f"Error importing from Lospec: {e}")
        return None

    colors = [f"#{c.lower()}" for c in data.get('colors', [])]
    if not colors:
        return None

    return {
        'name': data.get('name', slug),
        'colors': colors
    }


def generate_kmeans_palette(img: Image.Image, num_colors: int,
                            random_state: int = 42, max_samples: int = 10000) -> Palette:
    """
    k-means palette of an image (RGB only, opaque), from a fixed-seed pixel sample.
    """
    if num_colors < 1:
        raise InvalidParameterError(f"num_colors must be >= 1, got {num_colors}")
    pix = np.array(ensure_rgba(img).convert('RGB')).reshape(-1, 3)
    if len(pix) == 0:
        return Palette()
    if len(pix) > max_samples:
        rng = np.random.default_rng(random_state)
        pix = pix[rng.choice(len(pix), max_samples, replace=False)]
    n_clusters = min(num_colors, len(np.unique(pix, axis=0)))
    km = KMeans(n_clusters=n_clusters, random_state=random_state, n_init=10)
    km.fit(pix.astype(np.float64))
    centers = np.clip(np.rint(km.cluster_centers_), 0, 255).astype(int)
    return Palette.from_rgb8([tuple(c) for c in centers])


def generate_uniform_palette(num_colors: int) -> Palette:
    """
    Evenly spaced RGB cube palette, truncated to `num_colors`.
    """
    if num_colors < 1:
        raise InvalidParameterError(f"num_colors must be >= 1, got {num_colors}")
    c = []
    cube = int(math.ceil(num_colors ** (1 / 3)))
    for r in range(cube):
        for g in range(cube):
            for b in range(cube):
                if len(c) >= num_colors:
                    break
                rr = int(r * 255 / (cube - 1)) if cube > 1 else 128
                gg = int(g * 255 / (cube - 1)) if cube > 1 else 128
                bb = int(b * 255 / (cube - 1)) if cube > 1 else 128
                c.append((rr, gg, bb))
    return Palette.from_rgb8(c[:num_colors])


class PaletteManager:
    """
    Manages custom palettes with loading, saving, and validation.
    """

    def __init__(self, filepath: str = "palette.json"):
        self.filepath = filepath
        self.palettes = []
        self.load()

    def load(self):
        """Load palettes from file."""
        self.palettes = load_palettes_from_file(self.filepath)

    def save(self):
        """Save palettes to file."""
        save_palettes_to_file(self.palettes, self.filepath)

    def add_palette(self, name: str, colors: List[str]):
        """Add a new palette, or replace the colors of an existing one."""
        for hex_color in colors:
            hex_to_rgb(hex_color)
        for pal in self.palettes:
            if pal['name'] == name:
                pal['colors'] = colors
                self.save()
                return

        self.palettes.append({'name': name, 'colors': colors})
        self.save()

    def remove_palette(self, name: str):
        """Remove a palette by name."""
        self.palettes = [p for p in self.palettes if p['name'] != name]
        self.save()

    def get_palette(self, name: str) -> Optional[Dict]:
        """Get palette by name."""
        for pal in self.palettes:
            if pal['name'] == name:
                return pal
        return None

    def get_palette_colors(self, name: str) -> Optional[Palette]:
        """Get a stored palette as a Palette."""
        pal = self.get_palette(name)
        if pal:
            return palette_from_hex_list(pal['colors'])
        return None

    def list_palette_names(self) -> List[str]:
        """Get list of all palette names."""
        return [p['name'] for p in self.palettes]


def resolve_palette_source(source: str, image: Image.Image, num_colors: int,
                           manager: Optional[PaletteManager] = None) -> Optional[Palette]:
    """
    Turn a palette source string into a Palette.

    Args:
        source: "median_cut", "kmeans", "uniform", "custom:<name>", "file:<path>",
                "lospec:<url>", or a bare palette name from palette.json
        image: Source image (used by "kmeans")
        num_colors: Palette size for generated palettes
        manager: PaletteManager for named palettes

    Returns:
        The Palette, or None for "median_cut" (the ditherer builds it from the image itself)
    """
    if source == "median_cut":
        return None
    if source == "kmeans":
        logger.info(f"Generating palette: [cyan]{source}[/] ({num_colors} colors)")
        return generate_kmeans_palette(image, num_colors)
    if source == "uniform":
        logger.info(f"Generating palette: [cyan]{source}[/] ({num_colors} colors)")
        return generate_uniform_palette(num_colors)

    if source.startswith("file:"):
        file_path = source[5:]
        if not os.path.isfile(file_path):
            raise InvalidParameterError(f"Palette source image not found: {file_path}")
        logger.info(f"Extracting palette from: [cyan]{file_path}[/] ({num_colors} colors)")
        with Image.open(file_path) as ref_image:
            return quantize(ImageSource(ref_image), num_colors)

    if source.startswith("lospec:"):
        data = import_lospec_palette(source[7:])
        if data is None:
            raise InvalidParameterError(f"Could not import Lospec palette: {source[7:]}")
        logger.info(f"Imported Lospec palette: [cyan]{data['name']}[/] ({len(data['colors'])} colors)")
        return palette_from_hex_list(data['colors'])

    name = source[7:] if source.startswith("custom:") else source
    manager = manager or PaletteManager()
    palette = manager.get_palette_colors(name)
    if palette is None:
        raise InvalidParameterError(f"Unknown palette source: {source}")
    logger.info(f"Loading custom palette: [cyan]{name}[/] ({len(palette)} colors)")
    return palette
