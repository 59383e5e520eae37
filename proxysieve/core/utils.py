"""
Core utilities and helper functions.

This module contains common utility functions used throughout
the sieve pipeline: base64 helpers, line-oriented file I/O,
URI deduplication, hardware-aware sizing and logging setup.
"""

import base64
import binascii
import logging
import os
import shutil
import sys
from typing import Iterable, List, Optional, Set

import psutil
from colorama import Fore, Style, init


def decode_base64_auto(data: str) -> bytes:
    """Strictly decode base64, detecting the alphabet and padding.

    '-' or '_' selects the URL-safe alphabet; a trailing '=' means the
    input must already be padded, otherwise it is treated as raw.
    """
    url_safe = "-" in data or "_" in data
    if not data.endswith("="):
        if len(data) % 4 == 1:
            raise binascii.Error("invalid raw base64 length")
        data += "=" * (-len(data) % 4)
    altchars = b"-_" if url_safe else None
    return base64.b64decode(data, altchars=altchars, validate=True)


def decode_subscription_body(text: str) -> str:
    """Decode a base64 subscription body, falling back to the raw text."""
    stripped = "".join(text.split())
    if not stripped:
        return text
    try:
        decoded = base64.b64decode(stripped + "=" * (-len(stripped) % 4), validate=True)
        return decoded.decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return text


def strip_remark(uri: str) -> str:
    """Drop the '#remark' suffix when the URI carries exactly one '#'."""
    if uri.count("#") == 1:
        return uri.split("#", 1)[0]
    return uri


def dedupe_uris(uris: Iterable[str], ignore_remark: bool = False) -> List[str]:
    """Remove duplicate URIs while preserving first-seen order.

    By default the identity key is the full string, remark included, so
    two links that differ only in their label are both kept. With
    ignore_remark the label is stripped before comparison.
    """
    seen: Set[str] = set()
    unique: List[str] = []
    for uri in uris:
        key = strip_remark(uri) if ignore_remark else uri
        if key in seen:
            continue
        seen.add(key)
        unique.append(uri)
    return unique


def read_lines(path: str) -> List[str]:
    """Read non-empty lines from file, stripping whitespace."""
    with open(path, "r", encoding="utf-8") as f:
        return [line.strip() for line in f if line.strip()]


def write_lines(filepath: str, lines: Iterable[str]) -> int:
    """Write lines to file. Returns the number of lines written."""
    count = 0
    with open(filepath, "w", encoding="utf-8") as f:
        for line in lines:
            if line:
                f.write(line + "\n")
                count += 1
    return count


def resolve_executable_path(name: str, primary: Optional[str], fallbacks: List[str]) -> Optional[str]:
    """Resolve executable path with fallbacks."""
    candidates: List[str] = []
    if primary:
        candidates.append(primary)
    candidates.extend(fallbacks)
    candidates.append(name)

    seen = set()
    for path in candidates:
        if not path:
            continue

        normalized = os.path.expandvars(os.path.expanduser(path))
        if normalized in seen:
            continue
        seen.add(normalized)

        if os.path.isabs(normalized):
            if os.path.isfile(normalized):
                return normalized
            continue
        if os.path.isfile(normalized):
            return os.path.abspath(normalized)
        resolved = shutil.which(normalized)
        if resolved:
            return resolved

    return None


def default_worker_ceiling() -> int:
    """Pick a probe concurrency ceiling from available memory and CPUs."""
    cpu_count = os.cpu_count() or 4
    mem_percent = psutil.virtual_memory().percent
    base = max(4, cpu_count)
    if mem_percent >= 90:
        return max(8, base * 2)
    if mem_percent >= 80:
        return max(16, base * 4)
    return max(32, base * 16)


class ColoredFormatter(logging.Formatter):
    """Formatter with colors for different log levels."""

    FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
    DATEFMT = "%Y-%m-%d %H:%M:%S"
    FORMATS = {
        logging.DEBUG: Fore.CYAN + FORMAT + Style.RESET_ALL,
        logging.INFO: Fore.GREEN + FORMAT + Style.RESET_ALL,
        logging.WARNING: Fore.YELLOW + FORMAT + Style.RESET_ALL,
        logging.ERROR: Fore.RED + FORMAT + Style.RESET_ALL,
        logging.CRITICAL: Fore.RED + Style.BRIGHT + FORMAT + Style.RESET_ALL,
    }

    def format(self, record):
        log_fmt = self.FORMATS.get(record.levelno, self.FORMAT)
        formatter = logging.Formatter(log_fmt, datefmt=self.DATEFMT)
        return formatter.format(record)


def setup_logging(level: int = logging.INFO, log_file: Optional[str] = None):
    """Setup colored logging for the application."""
    init(autoreset=True)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(ColoredFormatter())
    handlers: List[logging.Handler] = [console_handler]

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8", mode="a")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-7s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))
        handlers.append(file_handler)

    logging.basicConfig(level=logging.DEBUG, handlers=handlers, force=True)

    # Reduce noise from external libraries
    logging.getLogger("urllib3.connectionpool").setLevel(logging.ERROR)
