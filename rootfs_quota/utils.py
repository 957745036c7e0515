"""Logging and small parsing helpers shared across the package."""

import logging
import re
import sys

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# xfs_quota accepts a bare number of bytes or a number with a k/m/g/t/p/e suffix.
_SIZE_RE = re.compile(r"^(\d+)([kmgtpe]?)$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "k": 1024, "m": 1024**2, "g": 1024**3, "t": 1024**4, "p": 1024**5, "e": 1024**6}


def get_logger(name: str) -> logging.Logger:
    """Return a module logger under the rootfs_quota hierarchy."""
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger. Safe to call more than once."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_rootfs_quota", False):
            root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler._rootfs_quota = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(level.upper())


def parse_size(value: str) -> int:
    """Parse a size-with-unit string ("10g", "512m", "0") into bytes. Raises ValueError if malformed."""
    match = _SIZE_RE.match(value.strip())
    if not match:
        raise ValueError(f"invalid size: {value!r}")
    number, unit = match.groups()
    return int(number) * _SIZE_UNITS[unit.lower()]
