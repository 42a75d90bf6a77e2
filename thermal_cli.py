#!/usr/bin/env python3
"""
CLI module for Thermal Studio - Command-Line Interface

Renders labels for a 384 px thermal printer from a JSON job file: a single
image (optionally with text), a saved project, or a whole folder of images.
Uses Rich for terminal output.
"""

import sys
import math
import logging
import argparse
import copy
import json
from pathlib import Path
from typing import Optional, Dict, Any

from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn
from rich.panel import Panel
from rich.table import Table

from compositor import MAX_CANVAS_HEIGHT, compose, render_preview
from config_manager import ConfigManager
from dithering_lib import DitherMethod, DitherParams, MonoDitherer, PARAMETER_RANGES
from errors import ConfigValidationError, ThermalStudioError
from layer_store import CANVAS_WIDTH, TEXT_ALIGNMENTS, LayerStore
from printer_interface import DEFAULT_INTENSITY, FilePrinterClient, PrintOptions, print_canvas
from project_io import DEFAULT_CANVAS_HEIGHT, load_project, save_project
from utils import IMAGE_EXTENSIONS, load_image


console = Console()

logger = logging.getLogger('thermal_studio.cli')


def setup_logging(verbose: bool = False, quiet: bool = False, log_file: Optional[str] = None):
    """
    Setup logging with Rich handler for terminal output.

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
        handlers=handlers,
        force=True
    )

    studio_logger = logging.getLogger('thermal_studio')
    studio_logger.setLevel(level)
    return studio_logger


# ==================== Job Schema & Validation ====================

VALID_MODES = ["image", "project", "folder"]
VALID_DITHER_METHODS = [method.value for method in DitherMethod]
DITHER_KEYS = ["method", "threshold", "brightness", "contrast", "invert",
               "bayer_matrix_size", "halftone_cell_size"]


def _check_int(errors, section: str, key: str, value, lo=None, hi=None):
    if isinstance(value, bool):
        errors.append(f"'{section}.{key}' must be a number")
        return
    try:
        number = float(value)
    except (ValueError, TypeError):
        errors.append(f"'{section}.{key}' must be a number")
        return
    if (lo is not None and number < lo) or (hi is not None and number > hi):
        errors.append(f"'{section}.{key}' must be between {lo} and {hi}, got {value}")


def _resolve(path_value: str, base: Path) -> str:
    path = Path(path_value)
    if not path.is_absolute():
        path = (base / path).resolve()
    return str(path)


def detect_mode(input_path: Path) -> str:
    """
    Auto-detect processing mode based on input path.

    Returns:
        "folder" for directories, "project" for .json files, "image" for images
    """
    if input_path.is_dir():
        return "folder"

    ext = input_path.suffix.lower()
    if ext == ".json":
        return "project"
    elif ext in IMAGE_EXTENSIONS:
        return "image"
    else:
        raise ConfigValidationError(f"Cannot determine mode for file extension: {ext}")


def validate_job(job: Dict[str, Any], job_path: Path) -> Dict[str, Any]:
    """
    Validate a job and return it normalized (paths resolved, defaults filled).

    Args:
        job: Raw job dictionary
        job_path: Path to the job file (relative paths resolve against its folder)

    Returns:
        Validated job

    Raises:
        ConfigValidationError: If validation fails
    """
    if not isinstance(job, dict):
        raise ConfigValidationError("Job file must contain a JSON object")

    errors = []

    if "input" not in job:
        errors.append("Missing required field: 'input'")
    if "output" not in job:
        errors.append("Missing required field: 'output'")

    mode = job.get("mode")
    if mode and mode not in VALID_MODES:
        errors.append(f"Invalid mode: '{mode}'. Must be one of: {VALID_MODES}")

    if "dithering" in job:
        dith = job["dithering"]
        if not isinstance(dith, dict):
            errors.append("'dithering' must be an object/dictionary")
        else:
            for key in dith:
                if key not in DITHER_KEYS and not key.startswith("_"):
                    errors.append(f"Unknown dithering option: '{key}'")
            if "method" in dith:
                try:
                    DitherMethod.parse(dith["method"])
                except ValueError:
                    errors.append(f"Invalid dither method: '{dith['method']}'. "
                                  f"Must be one of: {VALID_DITHER_METHODS}")
            for key, (lo, hi) in PARAMETER_RANGES.items():
                if key in dith:
                    _check_int(errors, "dithering", key, dith[key], lo, hi)

    if "layout" in job:
        layout = job["layout"]
        if not isinstance(layout, dict):
            errors.append("'layout' must be an object/dictionary")
        else:
            if "width" in layout:
                _check_int(errors, "layout", "width", layout["width"], 1, CANVAS_WIDTH)
            for key in ("x", "y"):
                if key in layout:
                    _check_int(errors, "layout", key, layout[key])

    if "text" in job:
        texts = job["text"]
        if not isinstance(texts, list):
            errors.append("'text' must be a list of text layers")
        else:
            for i, item in enumerate(texts):
                if not isinstance(item, dict) or not isinstance(item.get("text"), str):
                    errors.append(f"'text[{i}]' must be an object with a 'text' string")
                    continue
                if "align" in item and item["align"] not in TEXT_ALIGNMENTS:
                    errors.append(f"'text[{i}].align' must be one of: {list(TEXT_ALIGNMENTS)}")
                if "font_size" in item:
                    _check_int(errors, f"text[{i}]", "font_size", item["font_size"], 1, 400)

    canvas = job.get("canvas", {})
    if not isinstance(canvas, dict):
        errors.append("'canvas' must be an object/dictionary")
    elif canvas.get("height") is not None:
        _check_int(errors, "canvas", "height", canvas["height"], 1, MAX_CANVAS_HEIGHT)

    if "printer" in job:
        printer = job["printer"]
        if not isinstance(printer, dict):
            errors.append("'printer' must be an object/dictionary")
        else:
            if "intensity" in printer:
                _check_int(errors, "printer", "intensity", printer["intensity"], 0, 255)
            if "copies" in printer:
                _check_int(errors, "printer", "copies", printer["copies"], 1, 99)

    if errors:
        error_msg = "Job validation failed:\n" + "\n".join(f"  • {e}" for e in errors)
        raise ConfigValidationError(error_msg)

    # Normalize paths (resolve relative to job file)
    job_dir = job_path.parent
    job["input"] = _resolve(job["input"], job_dir)
    job["output"] = _resolve(job["output"], job_dir)
    for key in ("save_project", "printer_dump"):
        if job.get(key):
            job[key] = _resolve(job[key], job_dir)

    if not Path(job["input"]).exists():
        raise ConfigValidationError(f"Input file/directory not found: {job['input']}")

    job.setdefault("mode", None)
    job.setdefault("dithering", {})
    job.setdefault("layout", {})
    job.setdefault("text", [])
    job.setdefault("canvas", {})
    job.setdefault("printer", {})
    job.setdefault("preview", False)
    job.setdefault("save_project", None)
    job.setdefault("printer_dump", None)

    job["canvas"].setdefault("height", None)
    job["layout"].setdefault("x", 0)
    job["layout"].setdefault("y", 0)
    job["layout"].setdefault("width", None)

    return job


def load_job(job_path: Path) -> Dict[str, Any]:
    """
    Load and validate a job from a JSON file.

    Raises:
        ConfigValidationError: If the file cannot be read or validation fails
    """
    try:
        with open(job_path, 'r', encoding='utf-8') as f:
            job = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigValidationError(f"Invalid JSON in job file:\n  Line {e.lineno}: {e.msg}")
    except OSError as e:
        raise ConfigValidationError(f"Failed to load job file: {e}")

    return validate_job(job, job_path)


# ==================== Rendering ====================

def job_dither_params(job: Dict[str, Any], settings: ConfigManager) -> DitherParams:
    """Dither parameters from the settings defaults overlaid with the job's."""
    overrides = {k: v for k, v in job["dithering"].items() if k in DITHER_KEYS}
    return settings.default_dither_params().replace(**overrides)


def fit_canvas_height(store: LayerStore, minimum: int = 1) -> int:
    """Smallest canvas height that shows the bottom edge of every visible layer."""
    bottom = minimum
    for layer in store:
        if layer.visible:
            bottom = max(bottom, int(math.ceil(layer.y + layer.height)))
    return min(bottom, MAX_CANVAS_HEIGHT)


def build_image_store(job: Dict[str, Any], params: DitherParams, image_path: str) -> LayerStore:
    store = LayerStore()
    image = load_image(image_path)
    logger.info(f"Image size: [cyan]{image.width}x{image.height}[/]")

    layout = job["layout"]
    width = height = None
    if layout["width"]:
        width = float(layout["width"])
        height = max(1.0, round(image.height * width / image.width))
    store.add_image_layer(image, name=Path(image_path).stem, params=params,
                          x=layout["x"], y=layout["y"], width=width, height=height)

    for item in job["text"]:
        options = {k: item[k] for k in ("font_size", "font_family", "bold", "italic", "align")
                   if k in item}
        store.add_text_layer(item["text"], x=item.get("x", 0), y=item.get("y", 0),
                             width=item.get("width"), height=item.get("height"), **options)
    return store


def write_outputs(job: Dict[str, Any], store: LayerStore, height: int, output_path: Path,
                  settings: ConfigManager):
    """Save the rendered canvas, plus the optional project and printer dump."""
    output_path.parent.mkdir(parents=True, exist_ok=True)

    if job["preview"]:
        image = render_preview(store, height)
    else:
        image = compose(store, height).to_image()
    image.save(output_path)
    size_kb = output_path.stat().st_size / 1024
    logger.info(f"[bold green]✓ Saved[/] {output_path} ({CANVAS_WIDTH}x{height}, {size_kb:.1f} KB)")

    if job["save_project"]:
        save_project(store, height, job["save_project"])
        settings.add_recent_project(job["save_project"])
        logger.info(f"[green]✓[/] Project written to [cyan]{job['save_project']}[/]")

    if job["printer_dump"]:
        printer = job["printer"]
        default_intensity = settings.get("printer", "intensity", default=DEFAULT_INTENSITY)
        options = PrintOptions(intensity=int(printer.get("intensity", default_intensity)),
                               copies=int(printer.get("copies", 1)))
        client = FilePrinterClient(job["printer_dump"])
        client.connect()
        try:
            print_canvas(client, store, height, options)
        finally:
            client.dispose()
        logger.info(f"[green]✓[/] Printer data written to [cyan]{job['printer_dump']}[/]")


def process_image_job(job: Dict[str, Any], settings: ConfigManager) -> bool:
    """
    Dither one image onto the canvas (with optional text layers) and save it.

    Returns:
        True if successful, False otherwise
    """
    try:
        params = job_dither_params(job, settings)
        logger.info(f"Loading image: [cyan]{Path(job['input']).name}[/]")
        logger.info(f"Dithering: [yellow]{params.method.value}[/] "
                    f"(threshold={params.threshold}, brightness={params.brightness}, "
                    f"contrast={params.contrast}, invert={params.invert})")
        store = build_image_store(job, params, job["input"])
        height = int(job["canvas"]["height"] or fit_canvas_height(store))
        write_outputs(job, store, height, Path(job["output"]), settings)
        return True
    except (ThermalStudioError, OSError, ValueError) as e:
        logger.error(f"Failed to process image: {e}")
        return False


def process_project_job(job: Dict[str, Any], settings: ConfigManager) -> bool:
    """
    Render a saved project file.

    Returns:
        True if successful, False otherwise
    """
    try:
        store = LayerStore()
        logger.info(f"Loading project: [cyan]{Path(job['input']).name}[/]")
        default_height = settings.get("canvas", "height", default=DEFAULT_CANVAS_HEIGHT)
        project_height = load_project(store, job["input"], default_height=default_height)
        settings.add_recent_project(job["input"])
        height = int(job["canvas"]["height"] or project_height)
        logger.info(f"[green]✓[/] {len(store)} layer(s) ready")
        write_outputs(job, store, height, Path(job["output"]), settings)
        return True
    except (ThermalStudioError, OSError, ValueError) as e:
        logger.error(f"Failed to render project: {e}")
        return False


def process_folder_job(job: Dict[str, Any], settings: ConfigManager) -> bool:
    """
    Dither every image in a folder; each becomes <output>/<name>.png.

    Returns:
        True if every image succeeded
    """
    input_dir = Path(job["input"])
    output_dir = Path(job["output"])
    images = sorted(p for p in input_dir.iterdir()
                    if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS)
    if not images:
        logger.error(f"No images found in {input_dir}")
        return False

    params = job_dither_params(job, settings)
    failures = 0
    item_job = dict(job, save_project=None, printer_dump=None)

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console
    ) as progress:
        task = progress.add_task("Dithering images...", total=len(images))
        for image_path in images:
            progress.update(task, description=f"Dithering {image_path.name}")
            try:
                store = build_image_store(item_job, params, str(image_path))
                height = int(job["canvas"]["height"] or fit_canvas_height(store))
                write_outputs(item_job, store, height, output_dir / f"{image_path.stem}.png", settings)
            except (ThermalStudioError, OSError, ValueError) as e:
                failures += 1
                logger.error(f"Failed: {image_path.name}: {e}")
            progress.advance(task)

    logger.info(f"Processed {len(images) - failures}/{len(images)} image(s)")
    return failures == 0


def show_banner():
    """Display application banner."""
    banner = """
[bold cyan]╔═══════════════════════════════════════╗[/]
[bold cyan]║[/]    [bold white]Thermal Studio CLI[/] [dim]- v1.0[/]       [bold cyan]║[/]
[bold cyan]║[/]  384px 1-bit Label Renderer         [bold cyan]║[/]
[bold cyan]╚═══════════════════════════════════════╝[/]
"""
    console.print(banner)


def show_help():
    """Display detailed help information."""
    help_text = """
[bold cyan]Thermal Studio CLI - Usage[/]

[bold]Basic Usage:[/]
  python thermal_cli.py <job.json>          Render with a JSON job file
  python thermal_cli.py --help              Show this help
  python thermal_cli.py --example-config    Generate example job

[bold]Options:[/]
  --verbose, -v      Enable verbose output
  --quiet, -q        Suppress all but error messages
  --log-file FILE    Write log to file
  --settings FILE    Preferences file (default dither settings, printer,
                     recent projects); updated after a run that changes it
  --save-defaults    Store the job's dither settings as the new defaults
  --recent           List recently saved or rendered projects
  --clear-recent     Forget the recent projects list

[bold]Modes:[/]
  image      One image (plus optional text) on a 384px canvas
  project    Render a saved project file
  folder     Dither every image in a folder
"""
    console.print(help_text)

    table = Table(title="Dither Methods", show_header=True, header_style="bold cyan")
    table.add_column("Method")
    table.add_column("Parameters")
    for method in DitherMethod:
        names = ", ".join(MonoDitherer.get_method_parameters(method).keys())
        table.add_row(method.value, names or "-")
    console.print(table)
    console.print()


def show_recent_projects(settings: ConfigManager):
    """List recent projects that still exist, most recent first."""
    recent = settings.get_recent_projects()
    if not recent:
        console.print("[dim]No recent projects.[/]\n")
        return
    table = Table(title="Recent Projects", show_header=True, header_style="bold cyan")
    table.add_column("#", justify="right")
    table.add_column("Project")
    for i, path in enumerate(recent, start=1):
        table.add_row(str(i), path)
    console.print(table)
    console.print()


def generate_example_config():
    """Generate and print an example job file."""
    example = {
        "_comment": "Thermal Studio CLI job",
        "input": "path/to/photo.png",
        "output": "path/to/label.png",
        "mode": "image",
        "dithering": {
            "_comment_method": f"Options: {', '.join(VALID_DITHER_METHODS)}",
            "method": "floyd-steinberg",
            "threshold": 128,
            "brightness": 128,
            "contrast": 100,
            "invert": False,
            "bayer_matrix_size": 4,
            "halftone_cell_size": 4
        },
        "layout": {
            "x": 0,
            "y": 0,
            "width": 384
        },
        "text": [
            {"text": "HELLO", "x": 0, "y": 10, "font_size": 32, "align": "center", "width": 384}
        ],
        "canvas": {
            "_comment_height": "null fits the canvas to its layers",
            "height": None
        },
        "preview": False,
        "save_project": None,
        "printer_dump": None,
        "printer": {
            "intensity": 93,
            "copies": 1
        }
    }

    example_json = json.dumps(example, indent=4)
    console.print("\n[bold cyan]Example Job:[/]\n")
    console.print(Panel(example_json, title="job.json", border_style="cyan"))
    console.print("\n[dim]Save this to a .json file and modify as needed.[/]\n")


def main(argv=None):
    """Main CLI entry point. Returns the process exit code."""
    parser = argparse.ArgumentParser(
        description="Thermal Studio CLI - 1-bit label renderer",
        add_help=False
    )
    parser.add_argument('config', nargs='?', help='Path to JSON job file')
    parser.add_argument('--help', '-h', action='store_true', help='Show help')
    parser.add_argument('--example-config', action='store_true', help='Generate example job')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose output')
    parser.add_argument('--quiet', '-q', action='store_true', help='Quiet mode (errors only)')
    parser.add_argument('--log-file', type=str, help='Log to file')
    parser.add_argument('--settings', type=str, help='Preferences JSON file')
    parser.add_argument('--save-defaults', action='store_true',
                        help="Store the job's dither settings as defaults")
    parser.add_argument('--recent', action='store_true', help='List recent projects')
    parser.add_argument('--clear-recent', action='store_true', help='Forget recent projects')

    args = parser.parse_args(argv)

    if args.help:
        show_banner()
        show_help()
        return 0

    if args.example_config:
        show_banner()
        generate_example_config()
        return 0

    setup_logging(verbose=args.verbose, quiet=args.quiet, log_file=args.log_file)

    settings = ConfigManager(args.settings) if args.settings else ConfigManager()

    if args.recent:
        show_recent_projects(settings)
        return 0

    if args.clear_recent:
        settings.clear_recent_projects()
        if not settings.save():
            return 1
        logger.info("[green]✓[/] Recent projects cleared")
        return 0

    if not args.quiet:
        show_banner()

    if not args.config:
        console.print("[bold red]Error:[/] No job file specified.\n")
        console.print("Usage: python thermal_cli.py <job.json>")
        console.print("       python thermal_cli.py --help\n")
        return 1

    job_path = Path(args.config)
    if not job_path.exists():
        logger.error(f"Job file not found: {job_path}")
        return 1

    logger.info(f"Loading job from: [cyan]{job_path}[/]")
    try:
        job = load_job(job_path)
    except ConfigValidationError as e:
        logger.error(f"[bold red]{e}[/]")
        return 1

    logger.info("[green]✓[/] Job validated")

    if not job["mode"]:
        try:
            job["mode"] = detect_mode(Path(job["input"]))
            logger.info(f"Auto-detected mode: [cyan]{job['mode']}[/]")
        except ConfigValidationError as e:
            logger.error(f"{e}")
            return 1

    logger.info(f"Input:  [cyan]{job['input']}[/]")
    logger.info(f"Output: [cyan]{job['output']}[/]")
    logger.info(f"Mode:   [cyan]{job['mode']}[/]")

    before = copy.deepcopy(settings.config)
    mode = job["mode"]
    if mode == "image":
        success = process_image_job(job, settings)
    elif mode == "project":
        success = process_project_job(job, settings)
    else:
        success = process_folder_job(job, settings)

    if success and args.save_defaults:
        if mode == "project":
            logger.warning("--save-defaults ignored: project layers carry their own settings")
        else:
            settings.save_dither_defaults(job_dither_params(job, settings))
            logger.info("[green]✓[/] Dither settings saved as defaults")

    if settings.config != before:
        settings.save()

    if success:
        logger.info("[bold green]✓ Processing complete![/]")
        return 0
    logger.error("[bold red]✗ Processing failed![/]")
    return 1


if __name__ == "__main__":
    sys.exit(main())
