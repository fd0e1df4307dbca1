#!/usr/bin/env python3
"""macpackager - package a compiled executable as a macOS .app and .dmg.

This module turns one compiled executable and one source image into a
distributable macOS application bundle plus a compressed disk image:

1. Resolve an immutable PackageConfig (defaults, TOML file, CLI overrides)
2. Generate the icon renditions and compile them into AppIcon.icns
3. Render the Info.plist descriptor
4. Assemble the .app directory tree from empty
5. Wrap the finished bundle in a compressed, read-only .dmg

The executable is treated as an opaque artifact. Image resizing, icon
compilation and disk image creation are delegated to small capability
classes: the macOS tools (sips, iconutil, hdiutil) or portable
Pillow-based implementations.

Usage (CLI):
    # Full build: target/release/log-rocket -> Log Rocket.app + LogRocket.dmg
    macpackager build

    # Build an icon container only
    macpackager icons logo.png -o AppIcon.icns

Usage (API):
    from macpackager import Pipeline, Toolchain, resolve_config

    config = resolve_config({"icon": "src/icons/logo.png"})
    result = Pipeline(config, "target/release/log-rocket").run()
"""

import argparse
import datetime
import enum
import itertools
import logging
import os
import re
import shutil
import stat
import struct
import subprocess
import sys
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from xml.sax.saxutils import escape

from macholib.MachO import MachO
from macholib.mach_o import CPU_TYPE_NAMES
from PIL import Image

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str

DEFAULT_APP_NAME = "Log Rocket"
DEFAULT_EXECUTABLE_NAME = "log-rocket"
DEFAULT_BUNDLE_ID = "com.jose.log-rocket"
DEFAULT_VERSION = "0.1.0"
DEFAULT_ICON_SOURCE = "src/icons/logo.png"
DEFAULT_MIN_SYSTEM_VERSION = "10.13"
DEFAULT_BUILD_DIR = "target/release"
DEFAULT_ICON_NAME = "AppIcon"

# Bundle extension and compiled icon container extension
BUNDLE_EXT = ".app"
ICON_EXT = ".icns"

# hdiutil compressed read-only format (zlib)
DMG_FORMAT = "UDZO"

# Environment variable names
ENV_BUNDLE_VERSION = "BUNDLE_VERSION"

# Reverse-domain bundle identifier, e.g. com.example.my-app
BUNDLE_ID_PATTERN = re.compile(r"^[A-Za-z0-9-]+(\.[A-Za-z0-9-]+)+$")

INFO_PLIST_TMPL = """\
<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
<dict>
    <key>CFBundleExecutable</key>
    <string>{executable}</string>
    <key>CFBundleIdentifier</key>
    <string>{bundle_identifier}</string>
    <key>CFBundleName</key>
    <string>{bundle_name}</string>
    <key>CFBundleIconFile</key>
    <string>{icon_file}</string>
    <key>CFBundleShortVersionString</key>
    <string>{bundle_version}</string>
    <key>CFBundleInfoDictionaryVersion</key>
    <string>6.0</string>
    <key>CFBundlePackageType</key>
    <string>APPL</string>
    <key>LSMinimumSystemVersion</key>
    <string>{min_system_version}</string>
    <key>NSHighResolutionCapable</key>
    <true/>
    <key>CFBundleDocumentTypes</key>
    <array>
{document_types}    </array>
</dict>
</plist>
"""

DOCUMENT_TYPE_TMPL = """\
        <dict>
            <key>CFBundleTypeExtensions</key>
            <array>
{extensions}            </array>
            <key>CFBundleTypeName</key>
            <string>{type_name}</string>
            <key>CFBundleTypeRole</key>
            <string>{role}</string>
            <key>LSHandlerRank</key>
            <string>{rank}</string>
            <key>LSItemContentTypes</key>
            <array>
{content_types}            </array>
        </dict>
"""

ARRAY_ITEM_TMPL = "                <string>{}</string>\n"

# ----------------------------------------------------------------------------
# Optional dotenv support


def _load_dotenv() -> None:
    """Attempt to load .env file if python-dotenv is available."""
    try:
        from dotenv import load_dotenv

        load_dotenv()
    except ImportError:
        pass


_load_dotenv()

# ----------------------------------------------------------------------------
# Error handling


class PackagerError(Exception):
    """Base exception class for macpackager errors."""


class CommandError(PackagerError):
    """Exception raised when an external command fails."""

    def __init__(
        self, command: str, returncode: int, output: str | None = None
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        message = f"Command '{command}' failed with return code {returncode}"
        if output:
            message = f"{message}: {output.strip()}"
        super().__init__(message)


class ConfigError(PackagerError):
    """Exception raised when the packaging configuration is invalid."""


class ResizeError(PackagerError):
    """Exception raised when an icon rendition cannot be produced."""


class IconCompileError(PackagerError):
    """Exception raised when the icon container cannot be compiled."""


class FileError(PackagerError):
    """Exception raised when a filesystem operation fails."""


class PackagingError(PackagerError):
    """Exception raised when disk image creation fails."""


# ----------------------------------------------------------------------------
# Configuration


class Role(str, enum.Enum):
    """CFBundleTypeRole of a document type association."""

    VIEWER = "Viewer"
    EDITOR = "Editor"


@dataclass(frozen=True)
class DocumentType:
    """A file type the application declares it can open."""

    extensions: tuple[str, ...]
    name: str
    role: Role = Role.VIEWER
    content_types: tuple[str, ...] = ()
    rank: str = "Default"


@dataclass(frozen=True)
class PackageConfig:
    """Immutable packaging parameters threaded through every stage."""

    app_name: str
    executable_name: str
    bundle_identifier: str
    version: str
    icon_source: Path
    min_system_version: str = DEFAULT_MIN_SYSTEM_VERSION
    document_types: tuple[DocumentType, ...] = ()
    icon_name: str = DEFAULT_ICON_NAME
    dmg_name: str = ""
    volume_name: str = ""

    @property
    def bundle_name(self) -> str:
        return self.app_name + BUNDLE_EXT

    @property
    def icon_filename(self) -> str:
        return self.icon_name + ICON_EXT

    @property
    def disk_image_name(self) -> str:
        return self.dmg_name or self.app_name.replace(" ", "") + ".dmg"

    @property
    def disk_image_volume(self) -> str:
        return self.volume_name or self.app_name


DEFAULT_DOCUMENT_TYPES = (
    DocumentType(
        extensions=("log", "txt"),
        name="Log File",
        role=Role.VIEWER,
        content_types=("public.plain-text", "public.log"),
    ),
)


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .macpackager.toml in current directory
    3. macpackager.toml in current directory

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Raises:
        ConfigError: If an explicit path is missing or a file is malformed

    Example .macpackager.toml:
        [package]
        name = "Log Rocket"
        executable = "log-rocket"
        identifier = "com.jose.log-rocket"
        version = "0.1.0"
        icon = "src/icons/logo.png"

        [[package.document_types]]
        name = "Log File"
        role = "Viewer"
        extensions = ["log", "txt"]
        content_types = ["public.plain-text", "public.log"]

        [build]
        build_dir = "target/release"
        output_dir = "dist"
    """
    if sys.version_info >= (3, 11):
        import tomllib
    else:
        import tomli as tomllib

    if config_path is not None:
        config_path = Path(config_path)
        if not config_path.exists():
            raise ConfigError(f"Config file does not exist: {config_path}")
        paths_to_try = [config_path]
    else:
        cwd = Path.cwd()
        paths_to_try = [
            cwd / ".macpackager.toml",
            cwd / "macpackager.toml",
        ]

    for path in paths_to_try:
        if path.exists():
            try:
                with open(path, "rb") as f:
                    data: dict[str, object] = tomllib.load(f)
            except (OSError, tomllib.TOMLDecodeError) as e:
                raise ConfigError(f"Cannot read config {path}: {e}") from e
            return data

    return {}


def get_config_value(
    config: dict[str, object],
    section: str,
    key: str,
    default: str | None = None,
) -> str | None:
    """Get a string value from config with section.key lookup.

    Args:
        config: Configuration dictionary
        section: Section name (e.g., "package", "build")
        key: Key name within section
        default: Default value if not found

    Returns:
        Configuration value or default
    """
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return default
    value = section_config.get(key, default)
    if value is None or isinstance(value, str):
        return value
    return default


def _unique(values: object, what: str) -> tuple[str, ...]:
    """Return values as a tuple of strings, dropping repeats in order."""
    if isinstance(values, str) or not isinstance(values, (list, tuple)):
        raise ConfigError(f"{what} must be a list of strings")
    if not all(isinstance(v, str) and v for v in values):
        raise ConfigError(f"{what} must contain non-empty strings")
    return tuple(dict.fromkeys(values))


def parse_document_type(entry: object) -> DocumentType:
    """Build a DocumentType from a config table.

    Args:
        entry: A DocumentType or a mapping with name, role, extensions,
            content_types and rank keys

    Raises:
        ConfigError: If the entry is incomplete or the role is unknown
    """
    if isinstance(entry, DocumentType):
        entry = {
            "name": entry.name,
            "role": entry.role.value,
            "extensions": list(entry.extensions),
            "content_types": list(entry.content_types),
            "rank": entry.rank,
        }
    if not isinstance(entry, dict):
        raise ConfigError(f"Document type must be a table: {entry!r}")

    name = entry.get("name")
    if not isinstance(name, str) or not name:
        raise ConfigError(f"Document type has no name: {entry!r}")

    role_value = entry.get("role", Role.VIEWER.value)
    try:
        role = Role(role_value)
    except ValueError as e:
        choices = ", ".join(r.value for r in Role)
        raise ConfigError(
            f"Unknown role '{role_value}' for {name} (expected: {choices})"
        ) from e

    extensions = _unique(entry.get("extensions", []), f"{name} extensions")
    if not extensions:
        raise ConfigError(f"Document type {name} declares no extensions")
    content_types = _unique(
        entry.get("content_types", []), f"{name} content_types"
    )
    rank = entry.get("rank", "Default")
    if not isinstance(rank, str) or not rank:
        raise ConfigError(f"Document type {name} has an invalid rank")

    return DocumentType(
        extensions=extensions,
        name=name,
        role=role,
        content_types=content_types,
        rank=rank,
    )


def resolve_config(
    overrides: dict[str, object] | None = None,
    config: dict[str, object] | None = None,
    require_icon: bool = True,
) -> PackageConfig:
    """Resolve and validate the packaging configuration.

    Values are taken from, in increasing order of precedence: built-in
    defaults, the [package] table of the config file, the BUNDLE_VERSION
    environment variable (version only) and explicit overrides. Overrides
    set to None are ignored.

    Args:
        overrides: Explicit values (name, executable, identifier, version,
            icon, min_system_version, document_types, icon_name, dmg_name,
            volume_name)
        config: Parsed config file (see load_config)
        require_icon: If False, skip the icon existence check

    Returns:
        A fully populated PackageConfig

    Raises:
        ConfigError: If the icon source is missing or a value is invalid
    """
    section = (config or {}).get("package", {})
    if not isinstance(section, dict):
        raise ConfigError("[package] must be a table")
    values: dict[str, object] = dict(section)
    for key, value in (overrides or {}).items():
        if value is not None:
            values[key] = value
    if not (overrides or {}).get("version") and os.getenv(ENV_BUNDLE_VERSION):
        values["version"] = os.getenv(ENV_BUNDLE_VERSION)

    def text(key: str, default: str) -> str:
        value = values.get(key, default)
        if not isinstance(value, str):
            raise ConfigError(f"'{key}' must be a string, got {value!r}")
        return value.strip()

    app_name = text("name", DEFAULT_APP_NAME)
    if not app_name:
        raise ConfigError("Application name cannot be empty")
    executable_name = text("executable", DEFAULT_EXECUTABLE_NAME)
    if not executable_name or "/" in executable_name:
        raise ConfigError(f"Invalid executable name: '{executable_name}'")

    bundle_identifier = text("identifier", DEFAULT_BUNDLE_ID)
    if not bundle_identifier:
        raise ConfigError("Bundle identifier cannot be empty")
    if not BUNDLE_ID_PATTERN.match(bundle_identifier):
        raise ConfigError(
            f"Bundle identifier has invalid format: '{bundle_identifier}'. "
            "Expected reverse-domain form, e.g. 'com.example.app'"
        )

    icon_source = Path(str(values.get("icon", DEFAULT_ICON_SOURCE)))
    if require_icon and not icon_source.is_file():
        raise ConfigError(f"Icon source does not exist: {icon_source}")

    raw_types = values.get("document_types", DEFAULT_DOCUMENT_TYPES)
    if not isinstance(raw_types, (list, tuple)):
        raise ConfigError("document_types must be a list of tables")
    document_types = tuple(parse_document_type(t) for t in raw_types)

    return PackageConfig(
        app_name=app_name,
        executable_name=executable_name,
        bundle_identifier=bundle_identifier,
        version=text("version", DEFAULT_VERSION),
        icon_source=icon_source,
        min_system_version=text(
            "min_system_version", DEFAULT_MIN_SYSTEM_VERSION
        ),
        document_types=document_types,
        icon_name=text("icon_name", DEFAULT_ICON_NAME),
        dmg_name=text("dmg_name", ""),
        volume_name=text("volume_name", ""),
    )


# ----------------------------------------------------------------------------
# File validation

# Mach-O magic numbers for binary validation
MACHO_MAGIC_NUMBERS = {
    b"\xfe\xed\xfa\xce",  # MH_MAGIC (32-bit)
    b"\xce\xfa\xed\xfe",  # MH_CIGAM (32-bit, reverse byte order)
    b"\xfe\xed\xfa\xcf",  # MH_MAGIC_64 (64-bit)
    b"\xcf\xfa\xed\xfe",  # MH_CIGAM_64 (64-bit, reverse byte order)
    b"\xca\xfe\xba\xbe",  # FAT_MAGIC (universal binary)
    b"\xbe\xba\xfe\xca",  # FAT_CIGAM (universal binary, reverse byte order)
}


def validate_file(path: Pathlike, check_executable: bool = False) -> None:
    """Validate a file before copying it into the bundle.

    Args:
        path: Path to the file to validate
        check_executable: If True, verify the file is executable

    Raises:
        FileError: If the file is missing, not a regular file, empty,
            unreadable or (optionally) not executable
    """
    path = Path(path)

    if not path.exists():
        raise FileError(f"File does not exist: {path}")

    if not path.is_file():
        raise FileError(f"Path is not a regular file: {path}")

    if not os.access(path, os.R_OK):
        raise FileError(f"File is not readable: {path}")

    if path.stat().st_size == 0:
        raise FileError(f"File is empty (zero bytes): {path}")

    if check_executable and not os.access(path, os.X_OK):
        raise FileError(f"File is not executable: {path}")


def is_valid_macho(path: Pathlike) -> bool:
    """Check if a file starts with a Mach-O magic number."""
    path = Path(path)
    if not path.is_file():
        return False
    try:
        with open(path, "rb") as f:
            magic = f.read(4)
        return magic in MACHO_MAGIC_NUMBERS
    except OSError:
        return False


def get_binary_architectures(binary_path: Pathlike) -> list[str]:
    """Get the architectures of a Mach-O binary.

    Args:
        binary_path: Path to the binary file

    Returns:
        List of architecture strings (e.g., ["x86_64", "arm64"]).
        Empty list if not a readable Mach-O binary
    """
    if not is_valid_macho(binary_path):
        return []
    try:
        macho = MachO(str(binary_path))
    except (OSError, ValueError, struct.error):
        return []
    archs = []
    for header in macho.headers:
        cputype = int(header.header.cputype)
        archs.append(str(CPU_TYPE_NAMES.get(cputype, cputype)).lower())
    return archs


# ----------------------------------------------------------------------------
# Progress indicator


class ProgressSpinner:
    """A simple terminal spinner for long-running tool invocations.

    Example:
        with ProgressSpinner("Creating disk image"):
            time.sleep(5)
    """

    SPINNER_CHARS = ["|", "/", "-", "\\"]

    def __init__(self, message: str = "", enabled: bool = True):
        self.message = message
        self.enabled = enabled
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def _spin(self) -> None:
        spinner = itertools.cycle(self.SPINNER_CHARS)
        while not self._stop_event.is_set():
            sys.stdout.write(f"\r{self.message} {next(spinner)} ")
            sys.stdout.flush()
            time.sleep(0.1)
        sys.stdout.write(f"\r{self.message} done\n")
        sys.stdout.flush()

    def start(self) -> None:
        if not self.enabled:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._spin, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=1.0)
            self._thread = None

    def __enter__(self) -> "ProgressSpinner":
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()


# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Custom logging formatting class with color support."""

    class color:
        """Text colors for terminal output."""

        white = "\x1b[97;20m"
        grey = "\x1b[38;20m"
        green = "\x1b[32;20m"
        yellow = "\x1b[33;20m"
        red = "\x1b[31;20m"
        bold_red = "\x1b[31;1m"
        reset = "\x1b[0m"

    cfmt = (
        f"{color.white}%(delta)s{color.reset} - "
        f"{{}}%(levelname)s{color.reset} - "
        f"{color.white}%(name)s.%(funcName)s{color.reset} - "
        f"{color.grey}%(message)s{color.reset}"
    )

    FORMATS = {
        logging.DEBUG: cfmt.format(color.grey),
        logging.INFO: cfmt.format(color.green),
        logging.WARNING: cfmt.format(color.yellow),
        logging.ERROR: cfmt.format(color.red),
        logging.CRITICAL: cfmt.format(color.bold_red),
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color
        self.fmt = (
            "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with color if enabled."""
        log_fmt = self.FORMATS[record.levelno] if self.use_color else self.fmt
        duration = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = duration.strftime("%H:%M:%S")
        return logging.Formatter(log_fmt).format(record)


def setup_logging(debug: bool = False, use_color: bool = True) -> None:
    """Configure logging for the command-line interface.

    Args:
        debug: Whether to enable debug logging
        use_color: Whether to use colored output
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(CustomFormatter(use_color))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
        force=True,
    )


# ----------------------------------------------------------------------------
# Command execution


def run_command(
    command: list[str],
    log: logging.Logger | None = None,
) -> str:
    """Run an external tool and return its output.

    Args:
        command: The command as a list of arguments
        log: Optional logger for debug output

    Returns:
        The command stdout output

    Raises:
        CommandError: If the command fails or cannot be started
    """
    cmd_str = " ".join(command)
    if log:
        log.debug("%s", cmd_str)
    try:
        result = subprocess.run(
            command, shell=False, check=True, text=True, capture_output=True
        )
        return result.stdout
    except subprocess.CalledProcessError as e:
        raise CommandError(cmd_str, e.returncode, e.stderr or e.output) from e
    except FileNotFoundError as e:
        raise CommandError(cmd_str, 127, f"{command[0]}: not found") from e


# ----------------------------------------------------------------------------
# Capabilities: resize, icon compilation, disk image creation


class Resizer:
    """Produces a square PNG of an exact pixel size from a source image."""

    def resize(self, source: Path, pixel_size: int, output: Path) -> Path:
        raise NotImplementedError


class IconCompiler:
    """Compiles a directory of renditions into one icon container."""

    def compile(
        self,
        iconset: Path,
        renditions: "list[IconRendition]",
        output: Path,
    ) -> Path:
        raise NotImplementedError


class DiskImager:
    """Wraps a directory in a compressed, read-only disk image."""

    def create(self, source: Path, output: Path, volume_name: str) -> Path:
        raise NotImplementedError


class SipsResizer(Resizer):
    """Resize with the macOS ``sips`` tool."""

    def __init__(self) -> None:
        self.log = logging.getLogger(self.__class__.__name__)

    def resize(self, source: Path, pixel_size: int, output: Path) -> Path:
        size = str(pixel_size)
        run_command(
            ["sips", "-z", size, size, str(source), "--out", str(output)],
            log=self.log,
        )
        return output


class PillowResizer(Resizer):
    """Resize with Pillow using Lanczos resampling."""

    def resize(self, source: Path, pixel_size: int, output: Path) -> Path:
        with Image.open(source) as img:
            resized = img.convert("RGBA").resize(
                (pixel_size, pixel_size), Image.LANCZOS
            )
        resized.save(output, "PNG")
        return output


class IconutilCompiler(IconCompiler):
    """Compile an .iconset directory with the macOS ``iconutil`` tool."""

    def __init__(self) -> None:
        self.log = logging.getLogger(self.__class__.__name__)

    def compile(
        self,
        iconset: Path,
        renditions: "list[IconRendition]",
        output: Path,
    ) -> Path:
        run_command(
            ["iconutil", "-c", "icns", str(iconset), "-o", str(output)],
            log=self.log,
        )
        return output


class IcnsCompiler(IconCompiler):
    """Write an .icns container directly from the rendition PNG files.

    Each element is a 4-byte OSType, a 4-byte big-endian length that
    includes the 8-byte element header, and the PNG data. The file header
    is 'icns' followed by the total file length.
    """

    def compile(
        self,
        iconset: Path,
        renditions: "list[IconRendition]",
        output: Path,
    ) -> Path:
        elements = []
        for rendition in renditions:
            data = (iconset / rendition.filename).read_bytes()
            elements.append(
                rendition.ostype + struct.pack(">I", len(data) + 8) + data
            )
        body = b"".join(elements)
        output.write_bytes(b"icns" + struct.pack(">I", len(body) + 8) + body)
        return output


class HdiutilImager(DiskImager):
    """Create a disk image with the macOS ``hdiutil`` tool."""

    def __init__(self, image_format: str = DMG_FORMAT) -> None:
        self.image_format = image_format
        self.log = logging.getLogger(self.__class__.__name__)

    def create(self, source: Path, output: Path, volume_name: str) -> Path:
        command = [
            "hdiutil",
            "create",
            "-volname",
            volume_name,
            "-srcfolder",
            str(source),
            "-ov",
            "-format",
            self.image_format,
            str(output),
        ]
        run_command(command, log=self.log)
        return output


BACKENDS = ("auto", "macos", "portable")


@dataclass
class Toolchain:
    """The set of capabilities a pipeline run delegates to."""

    resizer: Resizer = field(default_factory=PillowResizer)
    compiler: IconCompiler = field(default_factory=IcnsCompiler)
    imager: DiskImager = field(default_factory=HdiutilImager)

    @classmethod
    def for_backend(cls, backend: str = "auto") -> "Toolchain":
        """Select the resize and icon backends.

        Args:
            backend: "macos" (sips, iconutil), "portable" (Pillow and the
                built-in icns writer) or "auto" (macos on Darwin)

        Raises:
            ConfigError: If the backend name is unknown
        """
        if backend not in BACKENDS:
            raise ConfigError(
                f"Unknown backend '{backend}' (expected: {', '.join(BACKENDS)})"
            )
        if backend == "auto":
            backend = "macos" if sys.platform == "darwin" else "portable"
        if backend == "macos":
            return cls(resizer=SipsResizer(), compiler=IconutilCompiler())
        return cls()


# ----------------------------------------------------------------------------
# Icon set generation


@dataclass(frozen=True)
class IconRendition:
    """One bitmap variant of the application icon.

    Source and output paths are not stored on the rendition: the generator
    passes the squared source image and `iconset / filename` to the resizer.
    """

    size: int
    scale: int
    ostype: bytes

    @property
    def pixel_size(self) -> int:
        return self.size * self.scale

    @property
    def filename(self) -> str:
        suffix = "@2x" if self.scale == 2 else ""
        return f"icon_{self.size}x{self.size}{suffix}.png"


# Ordered as iconutil writes them
REQUIRED_RENDITIONS = (
    IconRendition(16, 1, b"icp4"),
    IconRendition(16, 2, b"ic11"),
    IconRendition(32, 1, b"icp5"),
    IconRendition(32, 2, b"ic12"),
    IconRendition(128, 1, b"ic07"),
    IconRendition(128, 2, b"ic13"),
    IconRendition(256, 1, b"ic08"),
    IconRendition(256, 2, b"ic14"),
    IconRendition(512, 1, b"ic09"),
    IconRendition(512, 2, b"ic10"),
)


class IconSetGenerator:
    """Derives the required renditions and compiles the icon container.

    Args:
        config: The resolved package configuration
        resizer: Capability used to produce each rendition
        compiler: Capability used to build the container

    Example:
        generator = IconSetGenerator(config, PillowResizer(), IcnsCompiler())
        icns = generator.generate(Path("build/AppIcon.icns"))
    """

    def __init__(
        self,
        config: PackageConfig,
        resizer: Resizer | None = None,
        compiler: IconCompiler | None = None,
        renditions: tuple[IconRendition, ...] = REQUIRED_RENDITIONS,
    ):
        self.config = config
        self.resizer = resizer or PillowResizer()
        self.compiler = compiler or IcnsCompiler()
        self.renditions = list(renditions)
        self.log = logging.getLogger(self.__class__.__name__)

    def square_source(self, scratch: Path) -> Path:
        """Center-crop a non-square source image to its shorter side.

        Square sources are returned unchanged.

        Raises:
            ResizeError: If the source cannot be read as an image
        """
        source = self.config.icon_source
        try:
            with Image.open(source) as img:
                width, height = img.size
                if width == height:
                    return source
                side = min(width, height)
                left = (width - side) // 2
                top = (height - side) // 2
                cropped = img.crop((left, top, left + side, top + side))
                cropped = cropped.convert("RGBA")
                self.log.info(
                    "Cropped %dx%d icon source to %dx%d", width, height,
                    side, side,
                )
                output = scratch / "source_square.png"
                cropped.save(output, "PNG")
                return output
        except OSError as e:
            raise ResizeError(f"Cannot read icon source {source}: {e}") from e

    def render(self, source: Path, iconset: Path) -> None:
        """Produce every rendition into the iconset directory.

        Raises:
            ResizeError: If any rendition fails or has the wrong dimensions
        """
        for rendition in self.renditions:
            output = iconset / rendition.filename
            expected = (rendition.pixel_size, rendition.pixel_size)
            try:
                self.resizer.resize(source, rendition.pixel_size, output)
                with Image.open(output) as img:
                    actual = img.size
            except (CommandError, OSError) as e:
                raise ResizeError(
                    f"Failed to create {rendition.filename}: {e}"
                ) from e
            if actual != expected:
                raise ResizeError(
                    f"{rendition.filename} is {actual[0]}x{actual[1]}, "
                    f"expected {expected[0]}x{expected[1]}"
                )
            self.log.debug("Created %s", rendition.filename)

    def generate(self, output: Pathlike) -> Path:
        """Build the icon container.

        Renditions are written to a scratch directory that is removed on
        every exit path.

        Args:
            output: Path of the icon container to write

        Returns:
            Path to the icon container

        Raises:
            ResizeError: If any rendition cannot be produced
            IconCompileError: If the container cannot be compiled
        """
        output = Path(output)
        self.log.info("Creating %s from %s", output.name, self.config.icon_source)
        with tempfile.TemporaryDirectory(prefix="macpackager-icons-") as tmp:
            scratch = Path(tmp)
            iconset = scratch / f"{self.config.icon_name}.iconset"
            iconset.mkdir()
            self.render(self.square_source(scratch), iconset)
            try:
                self.compiler.compile(iconset, self.renditions, output)
            except (CommandError, OSError) as e:
                raise IconCompileError(
                    f"Failed to compile {output.name}: {e}"
                ) from e
        if not output.is_file():
            raise IconCompileError(f"Icon container was not created: {output}")
        return output


# ----------------------------------------------------------------------------
# Manifest generation


def _array_items(values: tuple[str, ...]) -> str:
    return "".join(ARRAY_ITEM_TMPL.format(escape(v)) for v in values)


def render_info_plist(config: PackageConfig) -> str:
    """Render the Info.plist descriptor for a package configuration."""
    document_types = "".join(
        DOCUMENT_TYPE_TMPL.format(
            extensions=_array_items(doc.extensions),
            type_name=escape(doc.name),
            role=doc.role.value,
            rank=escape(doc.rank),
            content_types=_array_items(doc.content_types),
        )
        for doc in config.document_types
    )
    return INFO_PLIST_TMPL.format(
        executable=escape(config.executable_name),
        bundle_identifier=escape(config.bundle_identifier),
        bundle_name=escape(config.app_name),
        icon_file=escape(config.icon_name),
        bundle_version=escape(config.version),
        min_system_version=escape(config.min_system_version),
        document_types=document_types,
    )


# ----------------------------------------------------------------------------
# Bundle assembly


class BundleFolder:
    """Manages a folder within the bundle structure."""

    def __init__(self, path: Pathlike):
        self.path = Path(path)

    def create(self) -> None:
        """Create the bundle folder if it doesn't exist."""
        if not self.path.exists():
            self.path.mkdir(exist_ok=True, parents=True)
        if not self.path.is_dir():
            raise FileError(f"{self.path} is not a directory")

    def copy(self, src: Pathlike, name: str | None = None) -> Path:
        """Copy a file into the folder, preserving its mode bits.

        Args:
            src: Source file
            name: Destination file name (default: the source name)
        """
        src = Path(src)
        dest = self.path / (name or src.name)
        shutil.copy2(src, dest)
        return dest


class BundleAssembler:
    """Creates the .app directory tree and populates it.

    Any previous bundle of the same name is removed first; the tree is
    always rebuilt from empty. A failure part way through may leave a
    partial tree behind.

    Args:
        config: The resolved package configuration
        executable: Path to the compiled executable
        output_dir: Directory in which the bundle is created

    Example:
        assembler = BundleAssembler(config, "target/release/log-rocket")
        assembler.assemble(icns, render_info_plist(config))
    """

    def __init__(
        self,
        config: PackageConfig,
        executable: Pathlike,
        output_dir: Pathlike = ".",
    ):
        self.config = config
        self.executable = Path(executable)
        self.log = logging.getLogger(self.__class__.__name__)

        # Bundle structure paths
        self.bundle = Path(output_dir) / config.bundle_name
        self.contents = self.bundle / "Contents"
        self.macos = BundleFolder(self.contents / "MacOS")
        self.resources = BundleFolder(self.contents / "Resources")

        # Files
        self.info_plist = self.contents / "Info.plist"
        self.bundled_executable = self.macos.path / config.executable_name
        self.bundled_icon = self.resources.path / config.icon_filename

    def clean(self) -> None:
        """Remove any existing bundle at the target path."""
        if self.bundle.is_symlink() or self.bundle.is_file():
            self.log.info("Removing existing %s", self.bundle)
            self.bundle.unlink()
        elif self.bundle.exists():
            self.log.info("Removing existing %s", self.bundle)
            shutil.rmtree(self.bundle)

    def create_layout(self) -> None:
        self.macos.create()
        self.resources.create()

    def write_info_plist(self, content: str) -> None:
        with open(self.info_plist, "w", encoding="utf-8", newline="\n") as f:
            f.write(content)

    def copy_icon(self, icon: Pathlike) -> None:
        self.resources.copy(icon, self.config.icon_filename)
        self.log.info("Added icon: %s", self.config.icon_filename)

    def copy_executable(self) -> None:
        """Copy the executable, keeping its permission bits."""
        archs = get_binary_architectures(self.executable)
        if len(archs) > 1:
            self.log.info("Target is universal binary: %s", ", ".join(archs))
        elif archs:
            self.log.info("Target architecture: %s", archs[0])
        self.macos.copy(self.executable, self.config.executable_name)
        mode = stat.S_IMODE(os.stat(self.bundled_executable).st_mode)
        self.log.debug("Copied executable with mode %o", mode)

    def assemble(self, icon: Pathlike, info_plist: str) -> Path:
        """Build the complete bundle.

        Args:
            icon: Path to the compiled icon container
            info_plist: Rendered Info.plist text

        Returns:
            Path to the created bundle

        Raises:
            FileError: If the executable is invalid or any filesystem
                operation fails
        """
        validate_file(self.executable, check_executable=True)
        validate_file(icon)

        self.log.info("Creating bundle at %s", self.bundle)
        try:
            self.clean()
            self.create_layout()
            self.write_info_plist(info_plist)
            self.copy_icon(icon)
            self.copy_executable()
        except OSError as e:
            raise FileError(f"Failed to assemble {self.bundle}: {e}") from e

        self.log.info("Bundle created successfully: %s", self.bundle)
        return self.bundle


# ----------------------------------------------------------------------------
# Disk image


class DiskImageWriter:
    """Wraps a finished bundle in a compressed, read-only disk image.

    The output file is replaced on every run, so exactly one image exists
    at the fixed name afterwards.

    Args:
        source: The bundle (or folder) to wrap
        output: Path of the disk image
        volume_name: Name shown when the image is mounted
        imager: Disk image capability (default: hdiutil)
    """

    def __init__(
        self,
        source: Pathlike,
        output: Pathlike,
        volume_name: str | None = None,
        imager: DiskImager | None = None,
    ):
        self.source = Path(source)
        self.output = Path(output)
        self.volume_name = volume_name or self.source.stem
        self.imager = imager or HdiutilImager()
        self.log = logging.getLogger(self.__class__.__name__)

    def write(self) -> Path:
        """Create the disk image.

        Returns:
            Path to the created disk image

        Raises:
            PackagingError: If the source is missing or the tool fails
        """
        if not self.source.is_dir():
            raise PackagingError(f"Source does not exist: {self.source}")

        self.log.info("Creating disk image: %s", self.output)
        try:
            if self.output.exists():
                self.output.unlink()
            with ProgressSpinner(
                "Creating disk image", enabled=sys.stdout.isatty()
            ):
                self.imager.create(self.source, self.output, self.volume_name)
        except (CommandError, OSError) as e:
            raise PackagingError(
                f"Failed to create disk image {self.output}: {e}"
            ) from e

        if not self.output.exists():
            raise PackagingError(f"Failed to create disk image: {self.output}")
        return self.output


# ----------------------------------------------------------------------------
# Pipeline


class Stage(enum.Enum):
    """Pipeline states; each is reached only when its stage succeeds."""

    RESOLVED = "Resolved"
    ICONS_BUILT = "IconsBuilt"
    MANIFEST_BUILT = "ManifestBuilt"
    ASSEMBLED = "Assembled"
    IMAGED = "Imaged"
    DONE = "Done"
    FAILED = "Failed"


# Error category of the stage that runs after the given one
STAGE_ERRORS: dict[Stage, type[PackagerError]] = {
    Stage.RESOLVED: ResizeError,
    Stage.MANIFEST_BUILT: FileError,
    Stage.ASSEMBLED: PackagingError,
}


@dataclass
class PipelineResult:
    """Artifacts of a successful pipeline run."""

    bundle: Path
    disk_image: Path | None
    stage: Stage


class Pipeline:
    """Runs the packaging stages in order, stopping at the first failure.

    No stage is retried and earlier stages are not rolled back. The work
    directory holding the compiled icon is released on every exit path.

    Args:
        config: The resolved package configuration
        executable: Path to the compiled executable
        output_dir: Directory receiving the bundle and the disk image
        toolchain: Capabilities to delegate to (default: auto backend)
        create_image: If False, stop after assembling the bundle

    Example:
        result = Pipeline(config, "target/release/log-rocket").run()
        print(result.bundle, result.disk_image)
    """

    def __init__(
        self,
        config: PackageConfig,
        executable: Pathlike,
        output_dir: Pathlike = ".",
        toolchain: Toolchain | None = None,
        create_image: bool = True,
    ):
        self.config = config
        self.executable = Path(executable)
        self.output_dir = Path(output_dir)
        self.toolchain = toolchain or Toolchain.for_backend("auto")
        self.create_image = create_image
        self.stage = Stage.RESOLVED
        self.failed_after: Stage | None = None
        self.log = logging.getLogger(self.__class__.__name__)

    def _advance(self, stage: Stage) -> None:
        self.log.debug("%s -> %s", self.stage.value, stage.value)
        self.stage = stage

    def _fail(self) -> None:
        self.failed_after = self.stage
        self.stage = Stage.FAILED
        self.log.error("Packaging halted after stage %s", self.failed_after.value)

    def build_icons(self, work_dir: Path) -> Path:
        generator = IconSetGenerator(
            self.config, self.toolchain.resizer, self.toolchain.compiler
        )
        icon = generator.generate(work_dir / self.config.icon_filename)
        self._advance(Stage.ICONS_BUILT)
        return icon

    def build_manifest(self) -> str:
        info_plist = render_info_plist(self.config)
        self._advance(Stage.MANIFEST_BUILT)
        return info_plist

    def assemble(self, icon: Path, info_plist: str) -> Path:
        assembler = BundleAssembler(
            self.config, self.executable, self.output_dir
        )
        bundle = assembler.assemble(icon, info_plist)
        self._advance(Stage.ASSEMBLED)
        return bundle

    def write_image(self, bundle: Path) -> Path:
        writer = DiskImageWriter(
            bundle,
            self.output_dir / self.config.disk_image_name,
            self.config.disk_image_volume,
            self.toolchain.imager,
        )
        disk_image = writer.write()
        self._advance(Stage.IMAGED)
        return disk_image

    def run(self) -> PipelineResult:
        """Execute every stage.

        Returns:
            The created artifacts

        Raises:
            PackagerError: From the failing stage; the pipeline is left in
                Stage.FAILED
        """
        if self.stage is not Stage.RESOLVED:
            raise PackagerError(f"Pipeline already ran ({self.stage.value})")

        self.log.info(
            "Packaging %s %s", self.config.app_name, self.config.version
        )
        disk_image = None
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            with tempfile.TemporaryDirectory(prefix="macpackager-") as tmp:
                icon = self.build_icons(Path(tmp))
                info_plist = self.build_manifest()
                bundle = self.assemble(icon, info_plist)
            if self.create_image:
                disk_image = self.write_image(bundle)
            else:
                self.log.info("Skipping disk image creation")
        except PackagerError:
            self._fail()
            raise
        except OSError as e:
            self._fail()
            raise FileError(str(e)) from e
        except Exception as e:
            self._fail()
            error = STAGE_ERRORS.get(self.failed_after, PackagerError)
            raise error(
                f"Unexpected error after stage {self.failed_after.value}: {e}"
            ) from e

        self._advance(Stage.DONE)
        self.log.info("Done: %s", disk_image or bundle)
        return PipelineResult(bundle, disk_image, self.stage)


# ----------------------------------------------------------------------------
# Command-line interface


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    """Add common options to a parser."""
    parser.add_argument(
        "-c",
        "--config",
        metavar="FILE",
        help="path to TOML config (default: ./.macpackager.toml)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="enable verbose/debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="disable colored output",
    )


def _add_package_options(parser: argparse.ArgumentParser) -> None:
    """Add options overriding [package] config values."""
    parser.add_argument("-n", "--name", help="application display name")
    parser.add_argument(
        "-x", "--executable-name", help="executable file name in the bundle"
    )
    parser.add_argument(
        "-i", "--id", help=f"bundle identifier (default: {DEFAULT_BUNDLE_ID})"
    )
    parser.add_argument(
        "-v", "--version", help=f"bundle version (default: {DEFAULT_VERSION})"
    )
    parser.add_argument(
        "--min-system-version",
        metavar="VERSION",
        help=f"minimum macOS version (default: {DEFAULT_MIN_SYSTEM_VERSION})",
    )


def _overrides(args: argparse.Namespace) -> dict[str, object]:
    return {
        "name": args.name,
        "executable": args.executable_name,
        "identifier": args.id,
        "version": args.version,
        "min_system_version": args.min_system_version,
        "icon": getattr(args, "icon", None),
    }


def _setup(args: argparse.Namespace) -> dict[str, object]:
    setup_logging(args.verbose, not args.no_color)
    return load_config(Path(args.config) if args.config else None)


def _cmd_build(args: argparse.Namespace) -> None:
    """Handle 'build' subcommand."""
    file_config = _setup(args)
    log = logging.getLogger("macpackager")

    config = resolve_config(_overrides(args), file_config)
    executable = args.executable
    if executable is None:
        build_dir = get_config_value(
            file_config, "build", "build_dir", DEFAULT_BUILD_DIR
        )
        executable = Path(build_dir) / config.executable_name
    output_dir = args.output_dir or get_config_value(
        file_config, "build", "output_dir", "."
    )

    pipeline = Pipeline(
        config,
        executable,
        output_dir,
        toolchain=Toolchain.for_backend(args.backend),
        create_image=not args.no_dmg,
    )
    result = pipeline.run()
    log.info("Created: %s", result.bundle)
    if result.disk_image:
        log.info("Created: %s", result.disk_image)


def _cmd_icons(args: argparse.Namespace) -> None:
    """Handle 'icons' subcommand."""
    file_config = _setup(args)
    log = logging.getLogger("macpackager")

    config = resolve_config({"icon": args.source}, file_config)
    toolchain = Toolchain.for_backend(args.backend)
    output = Path(args.output or config.icon_filename)
    generator = IconSetGenerator(config, toolchain.resizer, toolchain.compiler)
    log.info("Created: %s", generator.generate(output))


def _cmd_plist(args: argparse.Namespace) -> None:
    """Handle 'plist' subcommand."""
    file_config = _setup(args)
    config = resolve_config(_overrides(args), file_config, require_icon=False)
    sys.stdout.write(render_info_plist(config))


def _cmd_dmg(args: argparse.Namespace) -> None:
    """Handle 'dmg' subcommand."""
    _setup(args)
    log = logging.getLogger("macpackager")

    source = Path(args.bundle)
    output = Path(args.output) if args.output else source.with_suffix(".dmg")
    writer = DiskImageWriter(source, output, args.volume_name)
    log.info("Created: %s", writer.write())


def main(argv: list[str] | None = None) -> None:
    """Command line interface for macpackager."""
    try:
        parser = argparse.ArgumentParser(
            prog="macpackager",
            description="Package a compiled executable as a macOS app and disk image.",
            epilog=(
                "Examples:\n"
                "  macpackager build\n"
                "  macpackager build target/release/log-rocket --icon logo.png\n"
                "  macpackager icons logo.png -o AppIcon.icns\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument(
            "--about", action="version", version=f"%(prog)s {__version__}"
        )

        subparsers = parser.add_subparsers(
            title="commands",
            dest="command",
            required=True,
        )

        # --- build subcommand ---
        build_parser = subparsers.add_parser(
            "build",
            help="build the .app bundle and disk image",
            description="Build the .app bundle and the compressed disk image.",
            epilog=(
                "Examples:\n"
                "  macpackager build\n"
                "  macpackager build target/release/log-rocket -o dist\n"
                "  macpackager build --backend portable --no-dmg\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        build_parser.add_argument(
            "executable",
            nargs="?",
            help=f"compiled executable (default: {DEFAULT_BUILD_DIR}/<executable-name>)",
        )
        build_parser.add_argument(
            "--icon",
            metavar="FILE",
            help=f"icon source image (default: {DEFAULT_ICON_SOURCE})",
        )
        build_parser.add_argument(
            "-o",
            "--output-dir",
            metavar="DIR",
            help="directory for the bundle and disk image (default: .)",
        )
        build_parser.add_argument(
            "--backend",
            choices=BACKENDS,
            default="auto",
            help="resize/icon backend (default: auto)",
        )
        build_parser.add_argument(
            "--no-dmg",
            action="store_true",
            help="stop after assembling the bundle",
        )
        _add_package_options(build_parser)
        _add_common_options(build_parser)
        build_parser.set_defaults(func=_cmd_build)

        # --- icons subcommand ---
        icons_parser = subparsers.add_parser(
            "icons",
            help="build the icon container only",
            description="Generate all renditions and compile an .icns file.",
        )
        icons_parser.add_argument("source", help="icon source image")
        icons_parser.add_argument(
            "-o",
            "--output",
            metavar="FILE",
            help=f"output .icns path (default: {DEFAULT_ICON_NAME}{ICON_EXT})",
        )
        icons_parser.add_argument(
            "--backend",
            choices=BACKENDS,
            default="auto",
            help="resize/icon backend (default: auto)",
        )
        _add_common_options(icons_parser)
        icons_parser.set_defaults(func=_cmd_icons)

        # --- plist subcommand ---
        plist_parser = subparsers.add_parser(
            "plist",
            help="print the Info.plist descriptor",
            description="Render the Info.plist descriptor to standard output.",
        )
        _add_package_options(plist_parser)
        _add_common_options(plist_parser)
        plist_parser.set_defaults(func=_cmd_plist)

        # --- dmg subcommand ---
        dmg_parser = subparsers.add_parser(
            "dmg",
            help="create a disk image from an existing bundle",
            description="Wrap an existing bundle in a compressed disk image.",
        )
        dmg_parser.add_argument("bundle", help="path to the .app bundle")
        dmg_parser.add_argument(
            "-o",
            "--output",
            metavar="FILE",
            help="output .dmg path (default: <bundle>.dmg)",
        )
        dmg_parser.add_argument(
            "--volume-name",
            metavar="NAME",
            help="volume name (default: bundle name)",
        )
        _add_common_options(dmg_parser)
        dmg_parser.set_defaults(func=_cmd_dmg)

        args = parser.parse_args(argv)
        args.func(args)

    except PackagerError as e:
        logging.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(130)
    except Exception as e:
        logging.error("Unexpected error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
