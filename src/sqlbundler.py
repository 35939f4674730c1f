#!/usr/bin/env python3
"""
sqlbundler: concatenate a tree of SQL fragments into a single script.

Every file with the requested extension found under the input directory is
appended to the output file, wrapped in begin/end banners so the origin of
each fragment stays visible in the bundle. Folders can be skipped either by
name (``--ignore=temp`` skips every folder called ``temp``) or by path
(``--ignore=db/legacy`` skips that folder only), and ``--flat`` restricts the
scan to the top-level directory.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass, field
import logging
import os
from pathlib import Path
import re
import sys
from typing import Callable, Iterable, Optional, TextIO, Union


DEFAULT_EXTENSION = ".sql"
DEFAULT_CONFIG_FILENAME = ".sqlbundler.config"
BANNER = "-- " + "=" * 60

# Characters that turn an ignore token into a path rather than a folder name.
_SEPARATORS = ("/", "\\")
_DRIVE_RE = re.compile(r"^[A-Za-z]:")

logger = logging.getLogger(__name__)


class ColorFormatter(logging.Formatter):
    """
    Custom logging formatter that adds ANSI color codes to log messages.

    This formatter applies color coding based on log levels for better
    readability in terminal output.
    """

    COLORS = {
        logging.DEBUG: "\033[36m",  # Cyan
        logging.INFO: "\033[32m",  # Green
        logging.WARNING: "\033[33m",  # Yellow
        logging.ERROR: "\033[31m",  # Red
        logging.CRITICAL: "\033[41m",  # Red background
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelno, "")
        message = super().format(record)
        if color:
            message = f"{color}{message}{self.RESET}"
        return message


class BundlerError(Exception):
    """Base class for failures that stop a bundling run."""


class ValidationError(BundlerError):
    """The input directory is missing or is not a directory."""


class EmptyResultError(BundlerError):
    """No file survived collection and filtering."""


# -- Ignore rules ------------------------------------------------------------


@dataclass(frozen=True)
class PathPrefixRule:
    """Ignore everything below a specific folder.

    Attributes:
        raw (str):
            The token as supplied by the user.
        prefix (str):
            Absolute, casefolded path of the folder to skip.
    """

    raw: str
    prefix: str

    def matches(self, directory: str, segments: tuple[str, ...]) -> bool:
        folded = directory.casefold()
        if folded == self.prefix:
            return True
        return folded.startswith(self.prefix.rstrip(os.sep) + os.sep)


@dataclass(frozen=True)
class NameRule:
    """Ignore every folder with the given name, at any depth.

    Attributes:
        raw (str):
            The token as supplied by the user.
        name (str):
            Casefolded folder name.
    """

    raw: str
    name: str

    def matches(self, directory: str, segments: tuple[str, ...]) -> bool:
        return any(segment.casefold() == self.name for segment in segments)


IgnoreRule = Union[PathPrefixRule, NameRule]


def _normalize_token(token: str) -> str:
    """Strip whitespace and surrounding separators from an ignore token.

    A leading "/" is kept on POSIX so absolute paths stay absolute.
    """
    text = token.strip()
    if os.sep == "/":
        text = text.lstrip("\\")
    else:
        text = text.lstrip("/\\")
    stripped = text.rstrip("/\\")
    # A bare "/" must stay a (root) path.
    return stripped if stripped else text[:1]


def _is_path_like(text: str) -> bool:
    return any(sep in text for sep in _SEPARATORS) or bool(_DRIVE_RE.match(text))


def _resolve_prefix(text: str) -> str:
    """Resolve a path-like ignore token to an absolute, casefolded path.

    Raises:
        ValueError: If the token cannot be a filesystem path.
    """
    if "\x00" in text:
        raise ValueError("embedded null byte")
    expanded = os.path.expanduser(text.replace("\\", os.sep))
    return os.path.abspath(expanded).casefold()


def parse_ignore_rules(tokens: Iterable[str]) -> tuple[IgnoreRule, ...]:
    """
    Parse user supplied ignore tokens into classified rules.

    Each token may hold several comma-separated entries. Entries containing a
    path separator or a drive letter become :class:`PathPrefixRule`, the
    others :class:`NameRule`. Surrounding separators are trimmed first,
    except a leading "/" on POSIX, so ``\\temp\\`` is the folder name
    ``temp``. Entries that cannot be resolved to a path are skipped with a
    warning.

    Args:
        tokens (Iterable[str]):
            Raw tokens, e.g. the values of every ``--ignore`` option.

    Returns:
        tuple[IgnoreRule, ...]:
            The parsed rules, in the order they were given.

    Examples:
        >>> parse_ignore_rules(["temp, Backup"])
        (NameRule(raw='temp', name='temp'), NameRule(raw='Backup', name='backup'))

    """
    rules: list[IgnoreRule] = []
    for token in tokens:
        for entry in token.split(","):
            text = _normalize_token(entry)
            if not text:
                continue
            if _is_path_like(text):
                try:
                    prefix = _resolve_prefix(text)
                except (ValueError, OSError) as e:
                    logger.warning("Skipping invalid ignore path '%s': %s", entry, e)
                    continue
                rules.append(PathPrefixRule(raw=entry.strip(), prefix=prefix))
            else:
                rules.append(NameRule(raw=entry.strip(), name=text.casefold()))
    return tuple(rules)


def matches(
    file_path: Union[str, Path],
    rules: Iterable[IgnoreRule],
    root: Optional[Path] = None,
) -> bool:
    """
    Check whether a file lies in a folder covered by any ignore rule.

    Args:
        file_path (str | Path):
            Path of the candidate file; relative paths are made absolute.
        rules (Iterable[IgnoreRule]):
            Rules returned by :func:`parse_ignore_rules`.
        root (Path | None):
            When given, name rules only look at the folders below ``root``,
            so the folders holding the input tree itself never match.
            Without it every segment of the containing directory is checked.

    Returns:
        bool:
            True if the file must be skipped.
    """
    directory = Path(os.path.abspath(file_path)).parent
    segments = directory.parts
    if root is not None:
        try:
            segments = directory.relative_to(os.path.abspath(root)).parts
        except ValueError:
            pass
    return any(rule.matches(str(directory), segments) for rule in rules)


# -- Collection --------------------------------------------------------------


@dataclass(frozen=True)
class CandidateFile:
    """A file found under the input directory."""

    path: Path

    @property
    def directory(self) -> Path:
        return self.path.parent

    @property
    def name(self) -> str:
        return self.path.name


def collect(
    root: Path,
    extension: str = DEFAULT_EXTENSION,
    recursive: bool = True,
    rules: Iterable[IgnoreRule] = (),
    exclude: Iterable[Path] = (),
) -> list[CandidateFile]:
    """
    Collect the files to bundle under ``root``.

    Args:
        root (Path):
            Existing directory to scan.
        extension (str):
            File name suffix to match, case-insensitive.
        recursive (bool):
            Descend into subdirectories. Ignore rules only apply in this mode.
        rules (Iterable[IgnoreRule]):
            Folder ignore rules.
        exclude (Iterable[Path]):
            Specific files never to collect (e.g. the bundle itself).

    Returns:
        list[CandidateFile]:
            Matching files sorted by path; empty when nothing matches.
    """
    root = Path(os.path.abspath(root))
    suffix = extension.casefold()
    if not suffix.startswith("."):
        suffix = "." + suffix
    rules = tuple(rules) if recursive else ()
    excluded = {Path(os.path.abspath(p)) for p in exclude}

    logger.debug("Collecting '*%s' files from root: %s", extension, root)
    logger.debug("Recursive: %s", recursive)
    logger.debug("Ignore rules: %s", [rule.raw for rule in rules])

    walker = root.rglob("*") if recursive else root.glob("*")
    candidates: list[CandidateFile] = []
    for path in walker:
        if not path.name.casefold().endswith(suffix) or not path.is_file():
            continue
        if path in excluded:
            logger.debug("  Skipping output file %s", path)
            continue
        if rules and matches(path, rules, root):
            logger.debug("  Ignoring %s", path)
            continue
        candidates.append(CandidateFile(path))

    candidates.sort(key=lambda c: str(c.path))
    for candidate in candidates:
        logger.debug("    - %s", candidate.path)
    return candidates


# -- Bundling ----------------------------------------------------------------


@dataclass
class BundleResult:
    """Summary of a bundling run."""

    count: int
    ignore: list[str]
    flat: bool
    output: Path
    files: list[CandidateFile] = field(default_factory=list)


ProgressCallback = Callable[[int, int, CandidateFile], None]


class ProgressBar:
    """Single-line progress bar redrawn in place on a terminal stream."""

    def __init__(self, stream: Optional[TextIO] = None, width: int = 30):
        self.stream = stream if stream is not None else sys.stderr
        self.width = width
        self._drawn = False

    def render(self, done: int, total: int, name: str = "") -> str:
        filled = self.width * done // total if total else self.width
        bar = "#" * filled + "-" * (self.width - filled)
        line = f"[{bar}] {done}/{total}"
        return f"{line} {name}" if name else line

    def __call__(self, done: int, total: int, candidate: CandidateFile) -> None:
        print(
            f"\r{self.render(done, total, candidate.name)}\033[K",
            end="",
            file=self.stream,
            flush=True,
        )
        self._drawn = True

    def close(self) -> None:
        if self._drawn:
            print(file=self.stream)
            self._drawn = False


class SourceReadError(BundlerError):
    """A file selected for bundling could not be read as UTF-8 text."""


def read_source(candidate: CandidateFile) -> str:
    """Read a file exactly as stored, line endings included, minus any BOM."""
    try:
        with open(candidate.path, "r", encoding="utf-8-sig", newline="") as f:
            return f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise SourceReadError(f"Failed to read '{candidate.path}': {e}") from e


def write_entry(out: TextIO, candidate: CandidateFile) -> None:
    """Append one file, wrapped in its banners, to an open bundle."""
    content = read_source(candidate)
    out.write(f"{BANNER}\n-- Begin: {candidate.name}\n{BANNER}\n\n")
    out.write(content)
    if not content.endswith(("\n", "\r")):
        out.write("\n")
    out.write("\n")
    out.write(f"{BANNER}\n-- End: {candidate.name}\n{BANNER}\n\n")


def bundle(
    input_dir: Union[str, Path],
    output: Union[str, Path],
    ignore: Iterable[str] = (),
    flat: bool = False,
    extension: str = DEFAULT_EXTENSION,
    progress: Optional[ProgressCallback] = None,
    dry_run: bool = False,
) -> BundleResult:
    """
    Bundle every matching file under ``input_dir`` into ``output``.

    Args:
        input_dir (str | Path):
            Directory to scan.
        output (str | Path):
            Bundle to write; its parent directories are created if needed.
        ignore (Iterable[str]):
            Raw ignore tokens (folder names or folder paths).
        flat (bool):
            Only scan the top-level directory; ignore tokens have no effect.
        extension (str):
            Suffix of the files to bundle.
        progress (ProgressCallback | None):
            Called with ``(done, total, file)`` after each file is written.
        dry_run (bool):
            Collect and report, but write nothing.

    Returns:
        BundleResult:
            What was bundled.

    Raises:
        ValidationError: If ``input_dir`` is not an existing directory.
        EmptyResultError: If there is nothing to bundle.
        SourceReadError: If a collected file cannot be read as UTF-8.
        OSError: If the output cannot be created or written.
    """
    root = Path(input_dir)
    if not root.is_dir():
        raise ValidationError(f"Input directory '{root}' does not exist.")

    output = Path(os.path.abspath(output))
    raw = [token for token in ignore if token.strip()]
    rules = parse_ignore_rules(raw)
    if flat and rules:
        logger.info("Flat mode is active, ignore rules have no effect.")

    files = collect(
        root,
        extension=extension,
        recursive=not flat,
        rules=rules,
        exclude=[output],
    )
    if not files:
        raise EmptyResultError(f"No '{extension}' files found in '{root}'.")

    result = BundleResult(
        count=len(files),
        ignore=[rule.raw for rule in rules],
        flat=flat,
        output=output,
        files=files,
    )
    if dry_run:
        return result

    output.parent.mkdir(parents=True, exist_ok=True)
    with open(output, "w", encoding="utf-8", newline="") as out:
        for done, candidate in enumerate(files, 1):
            write_entry(out, candidate)
            if progress:
                progress(done, len(files), candidate)
    return result


def report(result: BundleResult, dry_run: bool = False) -> None:
    """Log the summary of a finished run."""
    if dry_run:
        logger.info("Would bundle %d files into: %s", result.count, result.output)
        for candidate in result.files:
            logger.info("  - %s", candidate.path)
        return
    logger.info("Combined %d files into: %s", result.count, result.output)
    if result.ignore and not result.flat:
        logger.info("Ignored folders: %s", ", ".join(result.ignore))
    if result.flat:
        logger.info("Flat mode: only top-level files were bundled.")


def run(
    input_dir: Union[str, Path],
    output: Union[str, Path],
    ignore: Iterable[str] = (),
    flat: bool = False,
    extension: str = DEFAULT_EXTENSION,
    progress: Optional[ProgressCallback] = None,
    dry_run: bool = False,
) -> int:
    """Run :func:`bundle` and turn its outcome into an exit code.

    Returns:
        int:
            0 on success, 1 on any validation, empty result or I/O failure.
    """
    try:
        result = bundle(
            input_dir,
            output,
            ignore=ignore,
            flat=flat,
            extension=extension,
            progress=progress,
            dry_run=dry_run,
        )
    except BundlerError as e:
        logger.error("%s", e)
        return 1
    except OSError as e:
        logger.error("Failed to write bundle '%s': %s", output, e)
        return 1
    finally:
        if isinstance(progress, ProgressBar):
            progress.close()

    report(result, dry_run)
    return 0


# -- Configuration -----------------------------------------------------------


@dataclass
class Config:
    """Defaults read from a ``.sqlbundler.config`` file."""

    ignore: list[str] = field(default_factory=list)
    extension: Optional[str] = None
    flat: bool = False


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"Invalid boolean value: '{value}'")


def load_config_from_file(path: Path) -> Config | None:
    """Load configuration from a config file.

    The file holds an ``ignore:`` section with ``- token`` entries and a
    ``settings:`` section with ``key: value`` pairs (``extension``, ``flat``).

    Args:
        path (Path): Path to the config file.

    Returns:
        Config | None: Loaded configuration or None if it cannot be read.
    """
    if not path.is_file():
        return None

    config = Config()
    try:
        with open(path, "r", encoding="utf-8") as f:
            current_section = None
            for line in f:
                original_line = line
                line = line.strip()
                if not line or line.startswith("#"):
                    continue

                # Section headers are not indented.
                if line.endswith(":") and not original_line.startswith((" ", "\t")):
                    section = line[:-1].lower()
                    if section not in ("ignore", "settings"):
                        logger.warning(
                            "Unknown section '%s' in config file %s. Ignoring.",
                            section,
                            path,
                        )
                        current_section = None
                    else:
                        current_section = section
                    continue

                if current_section == "ignore":
                    if not line.startswith("- "):
                        logger.error(
                            "Invalid line in 'ignore' section of %s: '%s'. Expected format: '- folder'",
                            path,
                            line,
                        )
                        continue
                    token = line[2:].strip()
                    if token:
                        config.ignore.append(token)

                elif current_section == "settings":
                    if ":" not in line:
                        logger.error(
                            "Invalid line in 'settings' section of %s: '%s'. Expected format: 'key: value'",
                            path,
                            line,
                        )
                        continue
                    key, value = (part.strip() for part in line.split(":", 1))
                    key = key.lower()
                    if key == "extension":
                        config.extension = value or None
                    elif key == "flat":
                        try:
                            config.flat = _parse_bool(value)
                        except ValueError as e:
                            logger.warning("%s in %s", e, path)
                    else:
                        logger.warning(
                            "Unknown setting '%s' in %s. Ignoring.", key, path
                        )
                else:
                    logger.warning(
                        "Line outside any section in %s: '%s'. Ignoring.",
                        path,
                        line,
                    )
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Could not read %s file: %s", path, e)
        return None

    return config


# -- Command line ------------------------------------------------------------


class _ArgumentParser(argparse.ArgumentParser):
    """Argument parser that reports usage errors with exit code 1."""

    def error(self, message: str):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv (list[str] | None):
            List of command-line arguments. If None, uses sys.argv.

    Returns:
        argparse.Namespace:
            Parsed arguments.
    """
    parser = _ArgumentParser(
        prog="sqlbundler",
        description="Concatenate all SQL files of a directory tree into one file.",
    )
    parser.add_argument("input", help="Directory to scan for files")
    parser.add_argument("output", help="Bundle file to write")
    parser.add_argument(
        "--ignore",
        action="append",
        default=[],
        metavar="FOLDERS",
        help="Comma-separated folder names or folder paths to skip (repeatable)",
    )
    parser.add_argument(
        "--flat",
        action="store_true",
        help="Only bundle files directly inside the input directory",
    )
    parser.add_argument(
        "--extension",
        type=str,
        default=None,
        help=f"Suffix of the files to bundle (default: {DEFAULT_EXTENSION})",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=DEFAULT_CONFIG_FILENAME,
        help=f"Config file, relative to the input directory (default: {DEFAULT_CONFIG_FILENAME})",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List the files that would be bundled without writing anything",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the sqlbundler command-line tool.

    Args:
        argv (list[str] | None):
            Command-line arguments. If None, uses sys.argv.

    Returns:
        int:
            Exit code (0 for success).
    """
    args = parse_args(argv)

    # Set up logging.
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(ColorFormatter("%(levelname)s: %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if args.verbose else logging.INFO)

    input_dir = Path(args.input)
    ignore: list[str] = list(args.ignore)
    extension = args.extension
    flat = args.flat

    config_path = Path(args.config)
    if not config_path.is_absolute():
        config_path = input_dir / config_path
    config = load_config_from_file(config_path)
    if config is not None:
        logger.debug("Loaded config from %s", config_path)
        ignore.extend(config.ignore)
        extension = extension or config.extension
        flat = flat or config.flat

    progress = ProgressBar() if sys.stderr.isatty() and not args.dry_run else None

    return run(
        input_dir,
        args.output,
        ignore=ignore,
        flat=flat,
        extension=extension or DEFAULT_EXTENSION,
        progress=progress,
        dry_run=args.dry_run,
    )


if __name__ == "__main__":
    raise SystemExit(main())
