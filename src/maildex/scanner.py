"""Walk the on-disk archive for message files."""

import logging
import os
from pathlib import Path
from typing import Iterator

from .layout import EML_SUFFIX, split_location


logger = logging.getLogger(__name__)

__all__ = ["scan", "count", "split_location"]


def scan(root: Path) -> Iterator[Path]:
    """Yield every .eml file under root, lazily and in a stable order.

    Matching is case-insensitive on the suffix. Hidden directories (such as
    the .maildex control directory) are not descended into. Each call starts
    a fresh walk over the directory contents at that time.
    """
    root = Path(root)
    if not root.is_dir():
        logger.warning("Archive path %s does not exist", root)
        return

    suffix = EML_SUFFIX.lower()
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        for fname in sorted(filenames):
            if fname.lower().endswith(suffix):
                yield Path(dirpath) / fname


def count(root: Path) -> int:
    """Number of files scan(root) would yield."""
    return sum(1 for _ in scan(root))
