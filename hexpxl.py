"""
hexpxl, a non-square pixelisation tool

A single-file Python CLI tool that pixelises a raster image. Every output pixel
takes the colour found at the centre of the square or hexagonal tile that
contains it. Hexagons have two edges parallel to the Y axis and are laid out on
a pair of interleaved rectangular lattices. Image decoding and encoding go
through Pillow.

Usage:
    python hexpxl.py photo.jpg mosaic.png
    python hexpxl.py photo.jpg mosaic.png 12 --mode sqr
    python hexpxl.py photo.jpg mosaic.png 30 --workers 4 --debug
    python hexpxl.py photo.jpg mosaic.png --import_settings settings.json
    python hexpxl.py photo.jpg mosaic.png 16 --export_settings settings.json
"""

import argparse
import enum
import json
import math
import os
import re
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Tuple

from PIL import Image, UnidentifiedImageError


Coordinate = Tuple[int, int]
Color = Tuple[int, int, int, int]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class HexpxlError(Exception):
    """Base class for every failure raised by the pixelisation pipeline."""


class InvalidRadiusError(HexpxlError, ValueError):
    """Tile radius is zero, negative, or collapses to zero after truncation."""


class DecodeError(HexpxlError):
    """Source image is missing, unreadable, corrupt or in an unsupported format."""


class EncodeError(HexpxlError):
    """Destination image cannot be written."""


class OutOfBoundsError(HexpxlError, IndexError):
    """A tiler produced a sample coordinate outside the source raster.

    Clamping makes this unreachable; raising it means the tiling logic is
    broken.
    """


# ---------------------------------------------------------------------------
# PixelMode
# ---------------------------------------------------------------------------
class PixelMode(str, enum.Enum):
    """Tile shape used for pixelisation."""

    SQUARE = "sqr"
    HEX = "hex"


# ---------------------------------------------------------------------------
# SquareTiler
# ---------------------------------------------------------------------------
class SquareTiler:
    """Maps a pixel to the top-left corner of its square tile.

    Attributes:
        radius: Tile edge length in pixels.
    """

    def __init__(self, radius: int) -> None:
        """Initialise the tiler.

        Args:
            radius: Tile edge length in pixels (>= 1).

        Raises:
            InvalidRadiusError: If radius is below 1.
        """
        if radius < 1:
            raise InvalidRadiusError(f"Tile size must be at least 1, got {radius}")
        self._radius: int = radius

    @property
    def radius(self) -> int:
        """Return the tile edge length."""
        return self._radius

    def map(self, x: int, y: int) -> Coordinate:
        """Return the largest multiples of the radius not exceeding (x, y)."""
        R = self._radius
        return (x // R * R, y // R * R)


# ---------------------------------------------------------------------------
# HexTiler
# ---------------------------------------------------------------------------
class HexTiler:
    """Nearest hexagon centre lookup on a regular hexagonal tiling.

    Hexagons have circumradius R and two edges parallel to the Y axis. Their
    centres sit on a lattice with horizontal unit r = R cos(30 deg) (the
    inradius) and vertical unit g = 3R/2 (the gap). Lattice column c and row
    k hold a centre at (c*r, k*g) only when c and k have the same parity.

    A point lies between columns x//r and x//r + 1 and between rows y//g and
    y//g + 1. Of the four corners of that cell, exactly two obey the parity
    rule, so the nearest centre is one of those two.

    Both units are truncated to whole pixels, so centres always land on
    pixel coordinates.

    Attributes:
        outer_radius: Circumradius R in pixels.
        inner_radius: Truncated inradius r in pixels.
        gap: Truncated vertical row spacing g in pixels.
    """

    def __init__(self, outer_radius: int) -> None:
        """Initialise the tiler and derive the lattice units.

        Args:
            outer_radius: Hexagon circumradius R in pixels.

        Raises:
            InvalidRadiusError: If R < 1, or if the truncated inradius or gap
                is zero (R = 1 truncates the inradius to 0).
        """
        if outer_radius < 1:
            raise InvalidRadiusError(f"Hexagon size must be at least 1, got {outer_radius}")
        inner_radius = int(outer_radius * math.cos(math.pi / 6.0))
        gap = int(3.0 * outer_radius / 2.0)
        if inner_radius == 0 or gap == 0:
            raise InvalidRadiusError(
                f"Hexagon size {outer_radius} is too small: inner radius {inner_radius}, "
                f"gap {gap} (hex mode needs a size of at least 2)"
            )
        self._outer_radius: int = outer_radius
        self._inner_radius: int = inner_radius
        self._gap: int = gap

    @property
    def outer_radius(self) -> int:
        """Return the circumradius R."""
        return self._outer_radius

    @property
    def inner_radius(self) -> int:
        """Return the truncated inradius r = int(R * cos(pi/6))."""
        return self._inner_radius

    @property
    def gap(self) -> int:
        """Return the truncated row spacing g = int(3R/2)."""
        return self._gap

    def candidates(self, x: int, y: int) -> Tuple[Coordinate, Coordinate]:
        """Return the two lattice indices that may hold the centre nearest (x, y).

        Args:
            x: Pixel column (>= 0).
            y: Pixel row (>= 0).

        Returns:
            Two (col, row) tuples. Each has matching column and row parity.
        """
        col_low = x // self._inner_radius
        row_low = y // self._gap
        if col_low % 2 == row_low % 2:
            return (col_low, row_low), (col_low + 1, row_low + 1)
        return (col_low, row_low + 1), (col_low + 1, row_low)

    def centre(self, x: int, y: int) -> Coordinate:
        """Return the pixel coordinate of the hexagon centre nearest (x, y).

        The result is not clamped and may lie past the right or bottom edge
        of the image. On equal distances the second candidate wins.

        Args:
            x: Pixel column (>= 0).
            y: Pixel row (>= 0).

        Returns:
            The (cx, cy) centre in pixel space.
        """
        (col1, row1), (col2, row2) = self.candidates(x, y)
        hx1, hy1 = col1 * self._inner_radius, row1 * self._gap
        hx2, hy2 = col2 * self._inner_radius, row2 * self._gap

        # Candidate coordinates can exceed the pixel's; deltas are signed.
        d1 = (hx1 - x) ** 2 + (hy1 - y) ** 2
        d2 = (hx2 - x) ** 2 + (hy2 - y) ** 2
        if d1 < d2:
            return (hx1, hy1)
        return (hx2, hy2)

    def map(self, x: int, y: int, width: int, height: int) -> Coordinate:
        """Return the nearest hexagon centre clamped to a width x height raster."""
        cx, cy = self.centre(x, y)
        return (min(cx, width - 1), min(cy, height - 1))


# ---------------------------------------------------------------------------
# Pixeliser
# ---------------------------------------------------------------------------
class Pixeliser:
    """Builds the pixelised copy of an image.

    Rows are split into contiguous bands that are mapped on a thread pool.
    Each band returns its own list of colours and the bands are written to
    the output in order.
    """

    _TILERS: Dict[PixelMode, type] = {
        PixelMode.SQUARE: SquareTiler,
        PixelMode.HEX: HexTiler,
    }

    # Row bands queued per worker.
    _BANDS_PER_WORKER: int = 4

    def __init__(self, mode: PixelMode, radius: int, workers: Optional[int] = None) -> None:
        """Initialise the pixeliser and its tiler.

        Args:
            mode: Tile shape.
            radius: Tile size in pixels (square edge or hexagon circumradius).
            workers: Thread pool size, None for the executor default.

        Raises:
            InvalidRadiusError: If the radius is invalid for the mode.
            ValueError: If workers is given and below 1.
        """
        if workers is not None and workers < 1:
            raise ValueError(f"Worker count must be at least 1, got {workers}")
        self._mode: PixelMode = PixelMode(mode)
        self._tiler = self._TILERS[self._mode](radius)
        self._workers: Optional[int] = workers

    @property
    def mode(self) -> PixelMode:
        """Return the tile shape."""
        return self._mode

    @property
    def tiler(self):
        """Return the SquareTiler or HexTiler in use."""
        return self._tiler

    def pixelise(self, image: Image.Image) -> Image.Image:
        """Return a new RGBA image of the same size with every tile flattened.

        Args:
            image: Source image, any mode. It is not modified.

        Returns:
            The pixelised image.

        Raises:
            OutOfBoundsError: If a tiler returns a coordinate off the raster.
        """
        source = image if image.mode == "RGBA" else image.convert("RGBA")
        width, height = source.size
        pixels = source.load()
        mapper = self._mapper(width, height)

        def map_band(rows: range) -> List[Color]:
            colors: List[Color] = []
            for y in rows:
                for x in range(width):
                    sx, sy = mapper(x, y)
                    if not (0 <= sx < width and 0 <= sy < height):
                        raise OutOfBoundsError(
                            f"Pixel ({x}, {y}) mapped to ({sx}, {sy}) outside {width}x{height}"
                        )
                    colors.append(pixels[sx, sy])
            return colors

        data: List[Color] = []
        with ThreadPoolExecutor(max_workers=self._workers) as executor:
            for colors in executor.map(map_band, self._bands(height)):
                data.extend(colors)

        output = Image.new("RGBA", (width, height))
        output.putdata(data)
        return output

    def _mapper(self, width: int, height: int) -> Callable[[int, int], Coordinate]:
        """Adapt the tiler to a (x, y) -> (x', y') callable for one raster size."""
        tiler = self._tiler
        if self._mode is PixelMode.HEX:
            return lambda x, y: tiler.map(x, y, width, height)
        return tiler.map

    def _bands(self, height: int) -> List[range]:
        """Split [0, height) into contiguous row ranges."""
        workers = self._workers or os.cpu_count() or 1
        count = max(1, min(height, workers * self._BANDS_PER_WORKER))
        step = math.ceil(height / count) if height else 1
        return [range(start, min(start + step, height)) for start in range(0, height, step)]


# ---------------------------------------------------------------------------
# ImageStore
# ---------------------------------------------------------------------------
class ImageStore:
    """Pillow-backed decoding and encoding of raster files.

    The output format is chosen from the destination file extension.
    """

    # Formats Pillow refuses to write with an alpha channel.
    _OPAQUE_FORMATS = {"JPEG", "PPM"}

    def open(self, path: str) -> Image.Image:
        """Decode an image file into an RGBA image.

        Args:
            path: Source image path.

        Returns:
            The decoded image in RGBA mode.

        Raises:
            DecodeError: If the file is missing, unreadable or not an image.
        """
        try:
            with Image.open(path) as img:
                img.load()
                return img.convert("RGBA")
        except FileNotFoundError as e:
            raise DecodeError(f"Source image not found: '{path}'") from e
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            raise DecodeError(f"Cannot decode source image '{path}': {e}") from e

    def save(self, image: Image.Image, path: str) -> None:
        """Encode an image to disk.

        Args:
            image: Image to write.
            path: Destination path; its extension selects the format.

        Raises:
            EncodeError: If the extension is unknown or the file cannot be written.
        """
        ext = os.path.splitext(path)[1].lower()
        fmt = Image.registered_extensions().get(ext)
        if fmt is None or fmt not in Image.SAVE:
            raise EncodeError(f"Unsupported output format for destination '{path}'")
        if fmt in self._OPAQUE_FORMATS and image.mode != "RGB":
            image = image.convert("RGB")
        try:
            image.save(path, fmt)
        except (OSError, ValueError) as e:
            raise EncodeError(f"Cannot write destination image '{path}': {e}") from e


# ---------------------------------------------------------------------------
# SettingsManager
# ---------------------------------------------------------------------------
class SettingsManager:
    """JSON import/export of parameter sets with CLI-precedence logic.

    JSON values override argparse defaults; explicit CLI arguments override
    JSON values.
    """

    # Keys that are persisted to JSON.
    _PERSISTED_KEYS: List[str] = ["size", "mode", "workers", "debug"]

    def export_settings(self, params: argparse.Namespace, path: str) -> None:
        """Export current parameters to a JSON file.

        Args:
            params: The resolved argparse Namespace.
            path: Output JSON file path.

        Raises:
            IOError: If the file cannot be written.
        """
        data: Dict = {key: getattr(params, key, None) for key in self._PERSISTED_KEYS}
        with open(path, "w") as f:
            json.dump(data, f, indent=2)

    def import_settings(self, path: str) -> Dict:
        """Import settings from a JSON file.

        Raises:
            FileNotFoundError: If the file does not exist.
            json.JSONDecodeError: If the file is not valid JSON.
            ValueError: If the file does not hold a JSON object.
        """
        with open(path, "r") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Settings file must contain a JSON object: '{path}'")
        return data

    def merge_settings(
        self,
        defaults: argparse.Namespace,
        json_settings: Dict,
        explicit_keys: set,
    ) -> argparse.Namespace:
        """Merge JSON settings with CLI args, respecting precedence.

        Args:
            defaults: The argparse Namespace with default/CLI values.
            json_settings: Dictionary loaded from JSON.
            explicit_keys: Set of parameter names explicitly provided on CLI.

        Returns:
            The merged Namespace.
        """
        for key in self._PERSISTED_KEYS:
            if key in json_settings and key not in explicit_keys:
                setattr(defaults, key, json_settings[key])
        return defaults

    def validate(self, params: argparse.Namespace) -> None:
        """Check persisted values with the rules the CLI applies.

        Raises:
            ValueError: If any persisted value is out of range or mistyped.
        """
        size = params.size
        if isinstance(size, bool) or not isinstance(size, int) or size < 1:
            raise ValueError(f"Tile size must be a positive integer, got {size!r}")
        valid_modes = [m.value for m in PixelMode]
        if params.mode not in valid_modes:
            raise ValueError(f"Invalid mode {params.mode!r}. Must be one of: {', '.join(valid_modes)}")
        workers = params.workers
        if workers is not None and (isinstance(workers, bool) or not isinstance(workers, int) or workers < 1):
            raise ValueError(f"Worker count must be a positive integer, got {workers!r}")
        if not isinstance(params.debug, bool):
            raise ValueError(f"Debug flag must be a boolean, got {params.debug!r}")


# ---------------------------------------------------------------------------
# Version helper
# ---------------------------------------------------------------------------
def _changelog_version(fallback: str = "0.0.0") -> str:
    """Read the highest version from CHANGELOG.md next to this script.

    Scans for ``## [X.Y.Z]`` headings (skipping ``[Unreleased]``) and returns
    the first match. Returns *fallback* when the file is missing or holds no
    versioned headings (e.g. an installed wheel).
    """
    changelog = os.path.join(os.path.dirname(os.path.abspath(__file__)), "CHANGELOG.md")
    try:
        with open(changelog, "r", encoding="utf-8") as fh:
            for line in fh:
                m = re.match(r"^##\s+\[(\d+\.\d+\.\d+)\]", line)
                if m:
                    return m.group(1)
    except OSError:
        pass
    return fallback


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------
class Application:
    """Top-level entry point for hexpxl.

    Orchestrates CLI argument parsing, settings loading, decoding,
    pixelisation, encoding and debug reporting.
    """

    VERSION:      str = _changelog_version("0.2.0")
    TITLE:        str = "hexpxl"
    BANNER_WIDTH: int = 60

    def run(self, argv: Optional[List[str]] = None) -> None:
        """Execute the full application pipeline.

        Args:
            argv: Command-line arguments, sys.argv[1:] when None.

        Raises:
            SystemExit: Status 2 for invalid arguments, 1 for any failure
                after parsing.
        """
        # Step 1: Parse CLI arguments and detect explicit keys
        args, explicit_keys = self._parse_args(argv)
        manager = SettingsManager()

        # Step 2: Import settings if requested
        if args.import_settings:
            import_path = self._json_path(args.import_settings)
            try:
                json_data = manager.import_settings(import_path)
                args = manager.merge_settings(args, json_data, explicit_keys)
                manager.validate(args)
            except FileNotFoundError:
                self._fail(f"Settings file not found: '{import_path}'")
            except json.JSONDecodeError as e:
                self._fail(f"Malformed JSON in settings file: {e}")
            except ValueError as e:
                self._fail(f"Invalid settings in '{import_path}': {e}")

        # Step 3: Export settings if requested
        export_path = None
        if args.export_settings:
            export_path = self._json_path(args.export_settings)
            try:
                manager.export_settings(args, export_path)
            except IOError as e:
                self._fail(f"Cannot write settings file: {e}")

        # Step 4: Validate the radius before touching any image
        mode = PixelMode(args.mode)
        try:
            pixeliser = Pixeliser(mode, args.size, workers=args.workers)
        except InvalidRadiusError as e:
            self._fail(f"Invalid tile size: {e}")

        # Step 5-7: Decode, pixelise, encode
        store = ImageStore()
        timings: List[Tuple[str, float]] = []
        try:
            start = time.perf_counter()
            source = store.open(args.source)
            timings.append(("Decode", time.perf_counter() - start))

            start = time.perf_counter()
            output = pixeliser.pixelise(source)
            timings.append(("Pixelise", time.perf_counter() - start))

            start = time.perf_counter()
            store.save(output, args.destination)
            timings.append(("Encode", time.perf_counter() - start))
        except DecodeError as e:
            self._fail(f"Decode failed: {e}")
        except EncodeError as e:
            self._fail(f"Encode failed: {e}")
        except OutOfBoundsError as e:
            self._fail(f"Pixelisation failed: {e}")

        self._print_banner()
        print(f"  Saved: {args.destination} ({self._format_file_size(os.path.getsize(args.destination))})")
        if export_path:
            print(f"  Saved: {export_path} ({self._format_file_size(os.path.getsize(export_path))})")

        if args.debug:
            self._print_debug(args, pixeliser, source.size, timings)
        print()

    def _parse_args(self, argv: Optional[List[str]] = None) -> Tuple[argparse.Namespace, set]:
        """Parse CLI arguments and detect which were explicitly provided.

        Returns:
            A tuple of (parsed Namespace, set of explicitly-provided key names).
        """
        parser = self._build_parser()
        args = parser.parse_args(argv)

        # Second parse with SUPPRESS defaults to detect explicit keys
        suppress_parser = self._build_parser(suppress_defaults=True)
        explicit_args = suppress_parser.parse_args(argv)
        explicit_keys = {k for k, v in vars(explicit_args).items() if v is not None}

        return args, explicit_keys

    def _build_parser(self, suppress_defaults: bool = False) -> argparse.ArgumentParser:
        """Build the argparse ArgumentParser.

        Args:
            suppress_defaults: If True, drop all defaults to detect
                explicitly-provided CLI args. The optional positional gets
                None instead of SUPPRESS, since argparse would run SUPPRESS
                through the type converter.
        """
        d = argparse.SUPPRESS if suppress_defaults else None

        parser = argparse.ArgumentParser(
            prog="hexpxl",
            description="hexpxl, a non-square pixelisation tool. "
                        "Pixelises an image using a hexagonal or square pattern.",
        )
        parser.add_argument("source", help="Input image path")
        parser.add_argument("destination", help="Output image path (format from extension)")
        parser.add_argument("size", nargs="?", type=self._parse_positive_int,
                            default=None if suppress_defaults else 20,
                            help="The size of the pixels, in pixels (default: 20)")
        parser.add_argument("-m", "--mode", choices=[m.value for m in PixelMode],
                            default=d if d else PixelMode.HEX.value,
                            help="The pixelisation mode (default: hex)")
        parser.add_argument("--workers", type=self._parse_positive_int, default=d,
                            help="Worker threads (default: executor default)")
        parser.add_argument("--debug", nargs="?", const=True, default=d if d else False,
                            type=self._parse_bool_flag,
                            help="Enable debug output")
        parser.add_argument("--export_settings", type=str, default=None,
                            help="Export parameters to a JSON file")
        parser.add_argument("--import_settings", type=str, default=None,
                            help="Import parameters from a JSON file")
        parser.add_argument("--version", action="version",
                            version=f"{self.TITLE} {self.VERSION}")

        return parser

    def _parse_positive_int(self, value: str) -> int:
        """Parse a strictly positive integer argument."""
        try:
            number = int(value)
        except ValueError:
            raise argparse.ArgumentTypeError(f"Positive integer expected, got '{value}'")
        if number < 1:
            raise argparse.ArgumentTypeError(f"Positive integer expected, got {number}")
        return number

    def _parse_bool_flag(self, value: str) -> bool:
        """Parse a boolean flag value ('true'/'false' or bare flag)."""
        if isinstance(value, bool):
            return value
        if value.lower() in ("true", "1", "yes"):
            return True
        if value.lower() in ("false", "0", "no"):
            return False
        raise argparse.ArgumentTypeError(f"Boolean value expected, got '{value}'")

    def _json_path(self, path: str) -> str:
        """Append .json unless the path already ends with it."""
        if not path.lower().endswith(".json"):
            path += ".json"
        return path

    def _fail(self, message: str) -> None:
        """Report an error on stderr and exit with status 1."""
        print(f"Error: {message}", file=sys.stderr)
        sys.exit(1)

    def _banner_text(self) -> str:
        """Build the application banner as a string."""
        inner = self.BANNER_WIDTH - 2
        lines = [
            "┌" + "─" * inner + "┐",
            f"│{'  Program:    ' + self.TITLE:<{inner}}│",
            f"│{'  Version:    ' + self.VERSION:<{inner}}│",
            "└" + "─" * inner + "┘",
        ]
        return "\n".join(lines)

    def _print_banner(self) -> None:
        """Print the application banner to stdout."""
        print(self._banner_text())

    def _print_debug(
        self,
        args: argparse.Namespace,
        pixeliser: Pixeliser,
        image_size: Tuple[int, int],
        timings: List[Tuple[str, float]],
    ) -> None:
        """Print resolved parameters and stage timings to stdout."""
        print(f"\n  Source:           {args.source}")
        print(f"  Image size:       {image_size[0]} x {image_size[1]}")
        print(f"  Mode:             {pixeliser.mode.value}")
        print(f"  Tile size:        {args.size}")
        if pixeliser.mode is PixelMode.HEX:
            print(f"  Inner radius:     {pixeliser.tiler.inner_radius}")
            print(f"  Gap:              {pixeliser.tiler.gap}")
        workers = args.workers if args.workers is not None else "default"
        print(f"  Workers:          {workers}")
        for stage, seconds in timings:
            print(f"  {stage + ':':<18}{seconds * 1000:.1f} ms")

    def _format_file_size(self, size_bytes: int) -> str:
        """Format a file size in human-readable form (e.g. '1.23 MB')."""
        if size_bytes < 1024:
            return f"{size_bytes} B"
        elif size_bytes < 1024 * 1024:
            return f"{size_bytes / 1024:.2f} KB"
        else:
            return f"{size_bytes / (1024 * 1024):.2f} MB"


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def main() -> None:
    """Main entry point for hexpxl."""
    if sys.stdout and hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    app = Application()
    app.run()


if __name__ == "__main__":
    main()
