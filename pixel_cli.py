#!/usr/bin/env python3
"""
CLI module for Pixel Pie - Command-Line Interface

Provides command-line interface for turning single images or whole folders
into pixel art. Uses Rich for beautiful terminal output.
"""

import sys
import logging
import argparse
import json
import math
from pathlib import Path
from typing import Optional, List, Dict, Any

import numpy as np

# Rich imports for beautiful terminal output
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn
from rich.panel import Panel

# Local imports
from pixelart_lib import (
    EdgeMethod,
    OutlineMethod,
    PaletteSwap,
    PixelArtPipeline,
    PixelArtSettings,
    QuantizationMethod,
    KMeansStrategy,
    SETTING_KEY_ALIASES,
    normalize_name,
)
from config_manager import ConfigManager, DEFAULT_CONFIG_FILE
from utils import (
    DEFAULT_MAX_SIZE,
    IMAGE_EXTENSIONS,
    get_image_info,
    load_image,
    save_image,
    save_palette_to_file,
    validate_image_file,
)


# Initialize Rich console
console = Console()

logger = logging.getLogger('pixel_pie')


def setup_logging(verbose: bool = False, quiet: bool = False, log_file: Optional[str] = None):
    """
    Setup logging with Rich handler for beautiful terminal output.

    Args:
        verbose: Enable verbose (DEBUG) logging
        quiet: Suppress all but ERROR messages
        log_file: Optional path to log file
    """
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    handlers = []

    rich_handler = RichHandler(
        console=console,
        show_time=True,
        show_path=False,
        markup=True,
        rich_tracebacks=True
    )
    handlers.append(rich_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setFormatter(
            logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers
    )

    logger.setLevel(level)
    return logger


class CLIProgressCallback:
    """
    Progress callback for folder processing that uses Rich progress bars.
    """

    def __init__(self, total_items: int = 100):
        """
        Initialize progress tracker.

        Args:
            total_items: Total number of images
        """
        self.total_items = total_items
        self.progress = None
        self.task = None

    def __enter__(self):
        """Setup progress bar."""
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console
        )
        self.progress.__enter__()
        self.task = self.progress.add_task("Processing images...", total=self.total_items)
        return self

    def __exit__(self, *args):
        """Cleanup progress bar."""
        if self.progress:
            self.progress.__exit__(*args)

    def update(self, completed: int, message: str):
        """
        Update progress bar.

        Args:
            completed: Number of finished items
            message: Status message
        """
        if self.progress and self.task is not None:
            self.progress.update(self.task, completed=completed, description=message)

    def finish(self):
        """Mark as complete."""
        if self.progress and self.task is not None:
            self.progress.update(self.task, completed=self.total_items, description="Complete!")


# ==================== Config Schema & Validation ====================

VALID_MODES = ["image", "folder"]
VALID_QUANTIZATION_METHODS = [m.value for m in QuantizationMethod]
VALID_PALETTE_SWAPS = [p.value for p in PaletteSwap]
VALID_OUTLINE_METHODS = [m.value for m in OutlineMethod]
VALID_EDGE_METHODS = [m.value for m in EdgeMethod]

CHOICE_SETTINGS = {
    "quantization_method": VALID_QUANTIZATION_METHODS,
    "palette_swap": VALID_PALETTE_SWAPS,
    "outline_detection": VALID_OUTLINE_METHODS,
    "edge_detection": VALID_EDGE_METHODS,
}

NUMERIC_SETTINGS = [
    "pixel_size", "brightness", "contrast", "saturation", "color_count",
    "posterization_levels", "outline_strength", "edge_strength",
]


class ConfigValidationError(Exception):
    """Raised when config validation fails."""
    pass


def _canonical_key(key: str) -> str:
    # accept the editor's camelCase names as well
    return SETTING_KEY_ALIASES.get(key, key)


def validate_settings(settings: Dict[str, Any]) -> List[str]:
    """
    Check a 'settings' section. Returns the list of problems found.
    """
    errors = []
    for key, value in settings.items():
        field = _canonical_key(key)
        if field in CHOICE_SETTINGS:
            if normalize_name(value) not in CHOICE_SETTINGS[field]:
                errors.append(f"Invalid {key}: '{value}'. Must be one of: {CHOICE_SETTINGS[field]}")
        elif field in NUMERIC_SETTINGS:
            try:
                number = float(value)
            except (ValueError, TypeError, OverflowError):
                errors.append(f"'settings.{key}' must be a number")
                continue
            if not math.isfinite(number):
                errors.append(f"'settings.{key}' must be a finite number")
        else:
            errors.append(f"Unknown setting: '{key}'")
    return errors


def validate_config(config: Dict[str, Any], config_path: Path,
                    default_output_dir: Optional[str] = None) -> Dict[str, Any]:
    """
    Validate configuration and return normalized config.

    Args:
        config: Raw config dictionary
        config_path: Path to config file (for resolving relative paths)
        default_output_dir: Directory used when 'output' is omitted
            (the last save directory from the user preferences)

    Returns:
        Validated and normalized config

    Raises:
        ConfigValidationError: If validation fails
    """
    errors = []

    if not isinstance(config, dict):
        raise ConfigValidationError("Configuration must be a JSON object")

    # Required fields
    if "input" not in config:
        errors.append("Missing required field: 'input'")

    if "output" not in config and not default_output_dir:
        errors.append("Missing required field: 'output'")

    # Validate mode (optional, can be auto-detected)
    mode = config.get("mode")
    if mode and mode not in VALID_MODES:
        errors.append(f"Invalid mode: '{mode}'. Must be one of: {VALID_MODES}")

    # Validate settings section
    if "settings" in config:
        settings = config["settings"]
        if not isinstance(settings, dict):
            errors.append("'settings' must be an object/dictionary")
        else:
            errors.extend(validate_settings(settings))

    if "max_size" in config and config["max_size"] is not None:
        try:
            max_size = int(config["max_size"])
            if max_size <= 0:
                errors.append("'max_size' must be positive")
        except (ValueError, TypeError):
            errors.append("'max_size' must be an integer")

    if "seed" in config and config["seed"] is not None:
        try:
            int(config["seed"])
        except (ValueError, TypeError):
            errors.append("'seed' must be an integer")

    # Validate final_resize section
    if "final_resize" in config:
        resize = config["final_resize"]
        if not isinstance(resize, dict):
            errors.append("'final_resize' must be an object/dictionary")
        else:
            if "multiplier" in resize:
                try:
                    mult = int(resize["multiplier"])
                    if mult <= 0:
                        errors.append("'final_resize.multiplier' must be positive")
                except (ValueError, TypeError):
                    errors.append("'final_resize.multiplier' must be an integer")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  • {e}" for e in errors)
        raise ConfigValidationError(error_msg)

    # Normalize paths (resolve relative to config file)
    config_dir = config_path.parent

    input_path = Path(config["input"])
    if not input_path.is_absolute():
        input_path = (config_dir / input_path).resolve()
    config["input"] = str(input_path)

    if "output" not in config:
        # '<stem>_pixel.png' for an image, '<stem>_pixel' folder for a folder
        suffix = "" if input_path.is_dir() else ".png"
        config["output"] = str(Path(default_output_dir) / f"{input_path.stem}_pixel{suffix}")
        logger.info(f"No output given, using: [cyan]{config['output']}[/]")

    output_path = Path(config["output"])
    if not output_path.is_absolute():
        output_path = (config_dir / output_path).resolve()
    config["output"] = str(output_path)

    if config.get("palette_output"):
        palette_path = Path(config["palette_output"])
        if not palette_path.is_absolute():
            palette_path = (config_dir / palette_path).resolve()
        config["palette_output"] = str(palette_path)

    if not Path(config["input"]).exists():
        raise ConfigValidationError(f"Input file/directory not found: {config['input']}")

    # Set defaults for optional fields
    config.setdefault("mode", None)  # Will be auto-detected
    config.setdefault("settings", {})
    config.setdefault("max_size", DEFAULT_MAX_SIZE)
    config.setdefault("seed", None)
    config.setdefault("palette_output", None)
    config.setdefault("final_resize", {"enabled": False, "multiplier": 2})

    config["final_resize"].setdefault("enabled", False)
    config["final_resize"].setdefault("multiplier", 2)

    return config


def load_config(config_path: Path, default_output_dir: Optional[str] = None) -> Dict[str, Any]:
    """
    Load and validate configuration from JSON file.

    Args:
        config_path: Path to JSON config file
        default_output_dir: Directory used when the job omits 'output'

    Returns:
        Validated config dictionary

    Raises:
        ConfigValidationError: If validation fails
    """
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigValidationError(f"Invalid JSON in config file:\n  Line {e.lineno}: {e.msg}")
    except OSError as e:
        raise ConfigValidationError(f"Failed to load config file: {e}")

    return validate_config(config, config_path, default_output_dir)


def detect_mode(input_path: Path) -> str:
    """
    Auto-detect processing mode based on input path.

    Args:
        input_path: Input file or directory path

    Returns:
        Mode string: "image" or "folder"
    """
    if input_path.is_dir():
        return "folder"

    ext = input_path.suffix.lower()
    if ext in IMAGE_EXTENSIONS:
        return "image"
    raise ConfigValidationError(f"Cannot determine mode for file extension: {ext}")


def build_settings(config: Dict[str, Any], defaults: Optional[PixelArtSettings] = None) -> PixelArtSettings:
    """Merge the job's 'settings' section over the stored defaults."""
    return PixelArtSettings.from_dict(config.get("settings", {}), base=defaults)


def make_rng(seed: Optional[int]) -> Optional[np.random.Generator]:
    """Seeded generator for k-means, or None for a fresh random seed."""
    if seed is None:
        return None
    return np.random.default_rng(int(seed))


# ==================== Image Processing ====================

def process_single_image(config: Dict[str, Any], settings: Optional[PixelArtSettings] = None,
                         input_path: Optional[Path] = None,
                         output_path: Optional[Path] = None) -> bool:
    """
    Process a single image through the pixel art pipeline.

    Args:
        config: Validated configuration dictionary
        settings: Pipeline settings (built from config when omitted)
        input_path: Override for config["input"] (folder mode)
        output_path: Override for config["output"] (folder mode)

    Returns:
        True if successful, False otherwise
    """
    try:
        input_path = Path(input_path or config["input"])
        output_path = Path(output_path or config["output"])
        settings = settings or build_settings(config)

        logger.info(f"Loading image: [cyan]{input_path.name}[/]")
        info = get_image_info(str(input_path))
        if info:
            logger.debug(f"Source: {info['width']}x{info['height']} {info['mode']} ({info['format']})")
        buffer = load_image(str(input_path), config.get("max_size"))
        logger.info(f"Processing size: [cyan]{buffer.width}x{buffer.height}[/]")

        pipeline = PixelArtPipeline(settings, rng=make_rng(config.get("seed")))
        result = pipeline.process(buffer)

        if pipeline.last_palette:
            logger.info(f"[green]✓[/] Palette ready with {len(pipeline.last_palette)} colors "
                        f"([cyan]{settings.quantization_method}[/])")
            if config.get("palette_output"):
                save_palette_to_file(pipeline.last_palette, config["palette_output"],
                                     name=input_path.stem)
                logger.info(f"Palette written to: [cyan]{config['palette_output']}[/]")

        multiplier = 1
        if config["final_resize"]["enabled"]:
            multiplier = int(config["final_resize"]["multiplier"])
            logger.info(f"Applying final resize (×{multiplier})...")

        logger.info(f"Saving to: [cyan]{output_path}[/]")
        save_image(result, str(output_path), multiplier=multiplier)

        size_kb = output_path.stat().st_size / 1024
        logger.info(f"[bold green]✓ Image saved successfully![/] ({size_kb:.1f} KB)")
        return True

    except Exception as e:
        logger.error(f"Failed to process image: {e}", exc_info=True)
        return False


def collect_folder_images(folder: Path) -> List[Path]:
    """Supported image files directly inside `folder`, sorted by name."""
    return sorted(p for p in folder.iterdir() if validate_image_file(str(p)))


def process_folder(config: Dict[str, Any], settings: Optional[PixelArtSettings] = None) -> bool:
    """
    Process every image in the input folder into the output folder.
    Outputs are named '<stem>_pixel.png'.

    Returns:
        True if every image succeeded, False otherwise
    """
    input_dir = Path(config["input"])
    output_dir = Path(config["output"])
    settings = settings or build_settings(config)

    images = collect_folder_images(input_dir)
    if not images:
        logger.error(f"No supported images found in: {input_dir}")
        return False

    output_dir.mkdir(parents=True, exist_ok=True)
    logger.info(f"Found [cyan]{len(images)}[/] images")

    # palette export only makes sense for a single image
    folder_config = dict(config, palette_output=None)
    failures = 0
    with CLIProgressCallback(total_items=len(images)) as progress:
        for index, image_path in enumerate(images):
            progress.update(index, f"Processing {image_path.name}")
            out_path = output_dir / f"{image_path.stem}_pixel.png"
            if not process_single_image(folder_config, settings, image_path, out_path):
                failures += 1
        progress.finish()

    if failures:
        logger.error(f"{failures} of {len(images)} images failed")
        return False
    return True


def show_banner():
    """Display application banner."""
    banner = """
[bold cyan]╔═══════════════════════════════════════╗[/]
[bold cyan]║[/]      [bold white]Pixel Pie CLI[/] [dim]- v1.0[/]         [bold cyan]║[/]
[bold cyan]║[/]     Image to Pixel Art Converter      [bold cyan]║[/]
[bold cyan]╚═══════════════════════════════════════╝[/]
"""
    console.print(banner)


def show_help():
    """Display detailed help information."""
    help_text = """
[bold cyan]Pixel Pie CLI - Usage[/]

[bold]Basic Usage:[/]
  pixel-pie <config.json>        Process with JSON config
  pixel-pie --help               Show this help
  pixel-pie --example-config     Generate example config

[bold]Options:[/]
  --verbose, -v     Enable verbose output
  --quiet, -q       Suppress all but error messages
  --log-file FILE   Write log to file
  --seed N          Seed k-means for reproducible palettes
  --prefs FILE      User preferences file (default: pixel_pie_config.json)
  --remember        Store this job's settings as the new defaults
  --recent          List recently processed inputs
  --clear-recent    Forget recently processed inputs

[bold]Config File Format:[/]
  JSON file specifying input, output, and pipeline settings.
  Use --example-config to generate a template.
"""

    console.print(help_text)

    console.print("  [bold]Quantization Methods:[/]")
    for method in QuantizationMethod:
        console.print(f"    • [cyan]{method.value}[/]")
    for name, info in KMeansStrategy.get_parameter_info().items():
        console.print(f"      [dim]k-means {name}: {info['description']} (default {info['default']})[/]")

    console.print("  [bold]Palette Swaps:[/]")
    for swap in PaletteSwap:
        console.print(f"    • [cyan]{swap.value}[/]")

    console.print("  [bold]Outline / Edge Detection:[/]")
    for method in OutlineMethod:
        console.print(f"    • [cyan]{method.value}[/]")
    console.print()


def show_recent_files(prefs: ConfigManager):
    """Print the recently processed inputs that still exist."""
    recent = prefs.get_recent_files()
    if not recent:
        console.print("[dim]No recent files.[/]")
        return
    console.print("[bold]Recent files:[/]")
    for index, path in enumerate(recent, 1):
        console.print(f"  {index}. [cyan]{path}[/]")


def generate_example_config():
    """Generate and print an example configuration file."""
    example = {
        "_comment": "Pixel Pie CLI Configuration",
        "input": "path/to/input.png",
        "output": "path/to/output.png",
        "mode": "image",
        "max_size": DEFAULT_MAX_SIZE,
        "seed": None,
        "settings": PixelArtSettings().to_dict(),
        "palette_output": None,
        "final_resize": {
            "enabled": False,
            "multiplier": 2
        }
    }

    example_json = json.dumps(example, indent=4)

    console.print("\n[bold cyan]Example Configuration:[/]\n")
    console.print(Panel(example_json, title="config.json", border_style="cyan"))
    console.print("\n[dim]Save this to a .json file and modify as needed.[/]\n")


def main(argv: Optional[List[str]] = None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Pixel Pie CLI - Image to Pixel Art Converter",
        add_help=False  # We'll handle help ourselves
    )

    parser.add_argument('config', nargs='?', help='Path to JSON configuration file')
    parser.add_argument('--help', '-h', action='store_true', help='Show help')
    parser.add_argument('--example-config', action='store_true', help='Generate example config')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose output')
    parser.add_argument('--quiet', '-q', action='store_true', help='Quiet mode (errors only)')
    parser.add_argument('--log-file', type=str, help='Log to file')
    parser.add_argument('--seed', type=int, help='Seed for k-means centroid sampling')
    parser.add_argument('--prefs', type=str, default=DEFAULT_CONFIG_FILE, help='User preferences file')
    parser.add_argument('--remember', action='store_true', help='Save settings as defaults')
    parser.add_argument('--recent', action='store_true', help='List recently processed inputs')
    parser.add_argument('--clear-recent', action='store_true', help='Forget recently processed inputs')

    args = parser.parse_args(argv)

    # Handle special commands first (before logging setup)
    if args.help:
        show_banner()
        show_help()
        sys.exit(0)

    if args.example_config:
        show_banner()
        generate_example_config()
        sys.exit(0)

    if args.recent:
        show_recent_files(ConfigManager(args.prefs, create=False))
        sys.exit(0)

    if args.clear_recent:
        prefs = ConfigManager(args.prefs, create=False)
        prefs.clear_recent_files()
        prefs.save()
        console.print("[green]✓[/] Recent files cleared")
        sys.exit(0)

    setup_logging(verbose=args.verbose, quiet=args.quiet, log_file=args.log_file)

    if not args.quiet:
        show_banner()

    if not args.config:
        console.print("[bold red]Error:[/] No configuration file specified.\n")
        console.print("Usage: pixel-pie <config.json>")
        console.print("       pixel-pie --help\n")
        sys.exit(1)

    config_path = Path(args.config)
    if not config_path.exists():
        logger.error(f"Configuration file not found: {config_path}")
        sys.exit(1)

    logger.info(f"Loading configuration from: [cyan]{config_path}[/]")

    prefs = ConfigManager(args.prefs, create=args.remember)

    try:
        config = load_config(config_path, default_output_dir=prefs.get_last_path("save"))
    except ConfigValidationError as e:
        logger.error(f"[bold red]{e}[/]")
        sys.exit(1)

    logger.info("[green]✓[/] Configuration validated")

    if args.seed is not None:
        config["seed"] = args.seed

    if not config["mode"]:
        try:
            config["mode"] = detect_mode(Path(config["input"]))
            logger.info(f"Auto-detected mode: [cyan]{config['mode']}[/]")
        except ConfigValidationError as e:
            logger.error(f"{e}")
            sys.exit(1)

    settings = build_settings(config, prefs.get_default_settings())

    logger.info(f"Input:  [cyan]{config['input']}[/]")
    logger.info(f"Output: [cyan]{config['output']}[/]")
    logger.info(f"Mode:   [cyan]{config['mode']}[/]")
    logger.info(f"Pixel size: [yellow]{settings.pixel_size}[/]")
    if settings.quantization_method != QuantizationMethod.NONE.value:
        logger.info(f"Quantization: [yellow]{settings.quantization_method}[/] ({settings.color_count} colors)")
    else:
        logger.info("Quantization: [dim]disabled[/]")
    logger.info(f"Palette swap: [yellow]{settings.palette_swap}[/]")

    logger.info("")  # Empty line for readability

    mode = config["mode"]
    success = False

    if mode == "image":
        success = process_single_image(config, settings)
    elif mode == "folder":
        success = process_folder(config, settings)

    if args.remember:
        prefs.save_default_settings(settings)
        prefs.update_last_path("image", config["input"])
        prefs.update_last_path("save", config["output"])
        prefs.add_recent_file(config["input"])
        prefs.save()

    if success:
        logger.info("")
        logger.info("[bold green]✓ Processing complete![/]")
        sys.exit(0)
    else:
        logger.error("")
        logger.error("[bold red]✗ Processing failed![/]")
        sys.exit(1)


if __name__ == "__main__":
    main()
