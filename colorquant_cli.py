#!/usr/bin/env python3
"""
CLI module for colorquant - Command-Line Interface

Reduces images to a median-cut palette and renders them with error-diffusion
dithering. Uses Rich for terminal output.
"""

import sys
import json
import math
import logging
import argparse
import time
from pathlib import Path
from typing import Optional, List, Dict, Any

# Rich imports for terminal output
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.panel import Panel
from rich.table import Table

# Local imports
from colorquant_lib import ColorQuantError, KERNELS, LOSSY_KERNELS, get_kernel
from pixel_io import ImageDitherer, get_image_info, validate_image_file, IMAGE_EXTENSIONS
from palette_utils import PALETTE_SOURCES, PaletteManager, resolve_palette_source
from config_manager import ConfigManager
from PIL import Image


# Initialize Rich console
console = Console()

# Logger instance
logger = logging.getLogger('colorquant')


def setup_logging(verbose: bool = False, quiet: bool = False, log_file: Optional[str] = None):
    """
    Setup logging with Rich handler for terminal output.

    Args:
        verbose: Enable verbose (DEBUG) logging
        quiet: Suppress all but ERROR messages
        log_file: Optional path to log file
    """
    global logger

    # Determine logging level
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    handlers = []

    # Rich handler for console output
    rich_handler = RichHandler(
        console=console,
        show_time=True,
        show_path=False,
        markup=True,
        rich_tracebacks=True
    )
    handlers.append(rich_handler)

    # File handler if specified
    if log_file:
        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setFormatter(
            logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        )
        handlers.append(file_handler)

    # Setup root logger
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers,
        force=True
    )

    logger = logging.getLogger('colorquant')
    logger.setLevel(level)

    return logger


# ==================== Settings & Validation ====================

VALID_OUTPUT_TYPES = ["png", "jpg"]


class ConfigValidationError(Exception):
    """Raised when settings validation fails."""
    pass


def build_settings(args: argparse.Namespace, config: ConfigManager) -> Dict[str, Any]:
    """
    Merge command-line arguments over config-file defaults and validate the result.

    Args:
        args: Parsed arguments (None values fall back to the config file)
        config: Loaded ConfigManager

    Returns:
        Validated settings dictionary

    Raises:
        ConfigValidationError: If validation fails
    """
    def pick(value, *keys):
        return value if value is not None else config.get(*keys)

    settings = {
        "input": args.input,
        "output_dir": pick(args.output, "output", "directory"),
        "output_type": pick(args.type, "output", "type"),
        "compression": pick(args.compression, "output", "compression"),
        "kernel": pick(args.dither, "defaults", "kernel"),
        "dither": (args.dither is not None or bool(config.get("defaults", "dither"))) and not args.no_dither,
        "palette_size": pick(args.palette, "defaults", "palette_size"),
        "palette_source": pick(args.palette_source, "defaults", "palette_source"),
        "gain": pick(args.gain, "defaults", "gain"),
        "indexed": args.indexed or config.get("defaults", "indexed"),
        "palettes_file": config.get("palettes_file"),
    }

    errors = []

    if settings["output_type"] not in VALID_OUTPUT_TYPES:
        errors.append(f"Invalid output type: '{settings['output_type']}'. Must be one of: {VALID_OUTPUT_TYPES}")

    try:
        compression = int(settings["compression"])
        if not 1 <= compression <= 100:
            errors.append("'compression' must be between 1 and 100")
    except (ValueError, TypeError):
        errors.append("'compression' must be an integer")

    try:
        palette_size = int(settings["palette_size"])
        if palette_size <= 0:
            errors.append("'palette' must be positive")
    except (ValueError, TypeError):
        errors.append("'palette' must be an integer")

    try:
        gain = float(settings["gain"])
        if not math.isfinite(gain) or gain < 0:
            errors.append("'gain' must be a finite number >= 0")
    except (ValueError, TypeError):
        errors.append("'gain' must be a number")

    try:
        if get_kernel(settings["kernel"]) is None:
            settings["dither"] = False
    except ColorQuantError as e:
        errors.append(str(e))

    source = settings["palette_source"]
    if not isinstance(source, str) or not source:
        errors.append("'palette_source' must be a non-empty string")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  • {e}" for e in errors)
        raise ConfigValidationError(error_msg)

    settings["compression"] = int(settings["compression"])
    settings["palette_size"] = int(settings["palette_size"])
    settings["gain"] = float(settings["gain"])
    return settings


def collect_inputs(input_path: Path) -> List[Path]:
    """
    Images to process: the file itself, or every supported image in a directory.

    Raises:
        ConfigValidationError: If nothing usable is found
    """
    if input_path.is_dir():
        files = sorted(p for p in input_path.iterdir() if validate_image_file(str(p)))
        if not files:
            raise ConfigValidationError(f"No supported images found in: {input_path}")
        return files
    if not input_path.exists():
        raise ConfigValidationError(f"Input file not found: {input_path}")
    if input_path.suffix.lower() not in IMAGE_EXTENSIONS:
        raise ConfigValidationError(f"Unsupported image extension: {input_path.suffix}")
    return [input_path]


def output_path_for(input_path: Path, settings: Dict[str, Any]) -> Path:
    """<output_dir>/<stem>_<kernel>.<type>, or <stem>_nodither.<type> without diffusion."""
    suffix = get_kernel(settings["kernel"]).name if settings["dither"] else "nodither"
    return Path(settings["output_dir"]) / f"{input_path.stem}_{suffix}.{settings['output_type']}"


# Settings keys and the config paths they are stored under
SAVED_SETTINGS = {
    "palette_size": ("defaults", "palette_size"),
    "kernel": ("defaults", "kernel"),
    "dither": ("defaults", "dither"),
    "gain": ("defaults", "gain"),
    "indexed": ("defaults", "indexed"),
    "palette_source": ("defaults", "palette_source"),
    "output_dir": ("output", "directory"),
    "output_type": ("output", "type"),
    "compression": ("output", "compression"),
}


def save_defaults(config: ConfigManager, settings: Dict[str, Any]):
    """Write validated settings back to the config file as the new defaults."""
    for name, keys in SAVED_SETTINGS.items():
        config.set(*keys, value=settings[name])
    config.save()


# ==================== Image Processing ====================

def process_single_image(input_path: Path, settings: Dict[str, Any],
                         palette_mgr: Optional[PaletteManager] = None) -> bool:
    """
    Quantize and dither a single image and save it.

    Args:
        input_path: Image to process
        settings: Validated settings dictionary
        palette_mgr: PaletteManager for named palettes

    Returns:
        True if successful, False otherwise
    """
    try:
        info = get_image_info(str(input_path))
        logger.info(f"Loading image: [cyan]{input_path.name}[/] ({info['width']}x{info['height']}, {info['mode']})")

        with Image.open(input_path) as img:
            image = img.convert('RGBA')

        palette = resolve_palette_source(
            settings["palette_source"], image, settings["palette_size"], palette_mgr)

        ditherer = ImageDitherer(
            num_colors=settings["palette_size"],
            kernel=settings["kernel"] if settings["dither"] else "none",
            palette=palette,
            dither=settings["dither"],
            gain=settings["gain"],
            indexed=settings["indexed"] and settings["output_type"] == "png"
        )

        start = time.perf_counter()
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            TimeElapsedColumn(),
            console=console,
            transient=True
        ) as progress:
            progress.add_task("Rendering image...", total=None)
            result = ditherer.apply_dithering(image)
        elapsed = time.perf_counter() - start
        logger.info(f"[green]✓[/] Rendered in: {elapsed:.2f}s")

        output_path = output_path_for(input_path, settings)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Saving to: [cyan]{output_path}[/]")
        if settings["output_type"] == "jpg":
            result.convert('RGB').save(output_path, format='JPEG', quality=settings["compression"])
        else:
            result.save(output_path, format='PNG')

        size_kb = output_path.stat().st_size / 1024
        logger.info(f"[bold green]✓ Image saved successfully![/] ({size_kb:.1f} KB)")
        return True

    except (ColorQuantError, OSError) as e:
        logger.error(f"Failed to process {input_path.name}: {e}", exc_info=logger.isEnabledFor(logging.DEBUG))
        return False


def show_banner():
    """Display application banner."""
    banner = """
[bold cyan]╔═══════════════════════════════════════╗[/]
[bold cyan]║[/]      [bold white]colorquant CLI[/] [dim]- v1.0[/]           [bold cyan]║[/]
[bold cyan]║[/]  Median-cut palettes & dithering      [bold cyan]║[/]
[bold cyan]╚═══════════════════════════════════════╝[/]
"""
    console.print(banner)


def show_kernels():
    """List registered diffusion kernels."""
    table = Table(title="Diffusion kernels")
    table.add_column("Name", style="cyan")
    table.add_column("Taps", justify="right")
    table.add_column("Energy", justify="right")
    for name, kernel in KERNELS.items():
        energy = f"{kernel.energy:.4f}"
        if name in LOSSY_KERNELS:
            energy += " [dim](lossy)[/]"
        table.add_row(name, str(len(kernel.taps)), energy)
    table.add_row("none", "0", "[dim]no diffusion[/]")
    console.print(table)


def generate_example_config():
    """Print an example configuration file."""
    example = json.dumps(ConfigManager.DEFAULT_CONFIG, indent=4)

    console.print("\n[bold cyan]Example Configuration:[/]\n")
    console.print(Panel(example, title="colorquant.json", border_style="cyan"))
    console.print(f"\n[dim]Palette sources: {', '.join(PALETTE_SOURCES)}, "
                  "custom:<name>, file:<path>, lospec:<url>[/]\n")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="colorquant",
        description="colorquant CLI - median-cut palette reduction with error-diffusion dithering"
    )

    parser.add_argument('input', nargs='?', help='Image file or directory of images')
    parser.add_argument('--output', '-o', type=str, help='Output directory (default: output)')
    parser.add_argument('--dither', '-d', type=str, help='Dithering kernel (default: floyd_steinberg)')
    parser.add_argument('--no-dither', action='store_true', help='Use the quantizer without dithering')
    parser.add_argument('--palette', '-p', type=int, help='Number of palette colors (default: 256)')
    parser.add_argument('--palette-source', type=str,
                        help='median_cut, kmeans, uniform, custom:<name>, file:<path>, lospec:<url>')
    parser.add_argument('--type', type=str, help='Output image type: png or jpg (default: png)')
    parser.add_argument('--compression', type=int, help='JPEG quality 1-100 (default: 100)')
    parser.add_argument('--gain', type=float, help='Error gain factor (default: 1.12)')
    parser.add_argument('--indexed', action='store_true', help='Write palette-indexed PNG output')
    parser.add_argument('--config', type=str, default='colorquant.json', help='Defaults file')
    parser.add_argument('--save-config', action='store_true',
                        help='Store the effective options as defaults in the config file')
    parser.add_argument('--list-kernels', action='store_true', help='List diffusion kernels')
    parser.add_argument('--example-config', action='store_true', help='Print an example config')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose output')
    parser.add_argument('--quiet', '-q', action='store_true', help='Quiet mode (errors only)')
    parser.add_argument('--log-file', type=str, help='Log to file')
    return parser


def main(argv: Optional[List[str]] = None):
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)

    # Handle special commands first (before logging setup)
    if args.list_kernels:
        show_kernels()
        sys.exit(0)

    if args.example_config:
        show_banner()
        generate_example_config()
        sys.exit(0)

    setup_logging(verbose=args.verbose, quiet=args.quiet, log_file=args.log_file)

    if not args.quiet:
        show_banner()

    if not args.input and not args.save_config:
        console.print("[bold red]Error:[/] No input image specified.\n")
        console.print("Usage: colorquant <image|directory> [options]")
        console.print("       colorquant --help\n")
        sys.exit(1)

    config = ConfigManager(args.config)

    try:
        settings = build_settings(args, config)
        if args.save_config:
            save_defaults(config, settings)
            logger.info(f"Saved defaults to: [cyan]{config.config_file}[/]")
            if not args.input:
                sys.exit(0)
        inputs = collect_inputs(Path(settings["input"]))
    except ConfigValidationError as e:
        logger.error(f"[bold red]{e}[/]")
        sys.exit(1)
    except OSError as e:
        logger.error(f"[bold red]Could not write {config.config_file}: {e}[/]")
        sys.exit(1)

    logger.info(f"Input:  [cyan]{settings['input']}[/] ({len(inputs)} image(s))")
    logger.info(f"Output: [cyan]{settings['output_dir']}[/] ({settings['output_type']})")
    if settings["dither"]:
        logger.info(f"Dithering: [yellow]{settings['kernel']}[/] (gain {settings['gain']})")
    else:
        logger.info("Dithering: [dim]disabled[/]")
    logger.info(f"Palette: [yellow]{settings['palette_source']}[/] ({settings['palette_size']} colors)")

    palette_mgr = PaletteManager(settings["palettes_file"])
    failures = 0
    for path in inputs:
        if not process_single_image(path, settings, palette_mgr):
            failures += 1

    if failures == 0:
        logger.info("[bold green]✓ Processing complete![/]")
        sys.exit(0)
    else:
        logger.error(f"[bold red]✗ {failures} of {len(inputs)} image(s) failed![/]")
        sys.exit(1)


if __name__ == "__main__":
    main()
