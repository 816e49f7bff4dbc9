"""Storage usage accounting.

Usage is recomputed from the filesystem on every call; there is no running
counter that could drift from what is actually on disk.
"""

import os
import stat
from pathlib import Path
from typing import Optional

from blob_server import config


def current_usage(root: Path, exclude: Optional[Path] = None) -> int:
    """Return the total size in bytes of the stored objects under `root`.

    The quota file, the staging directory and `exclude` are not counted.
    Blocking; run it off the event loop.
    """
    root = os.path.abspath(root)
    excluded = os.path.abspath(exclude) if exclude is not None else None

    def raise_error(exc):
        raise exc

    total = 0
    for folder, subfolders, files in os.walk(root, onerror=raise_error):
        if folder == root and config.STAGING_DIRNAME in subfolders:
            subfolders.remove(config.STAGING_DIRNAME)
        for name in files:
            if name == config.CONFIG_FILENAME:
                continue
            path = os.path.join(folder, name)
            if path == excluded:
                continue
            try:
                st = os.stat(path, follow_symlinks=False)
            except FileNotFoundError:
                # Removed by someone else since the directory was listed.
                continue
            if stat.S_ISREG(st.st_mode):
                total += st.st_size
    return total


def would_exceed(used: int, incoming: int, ceiling: int) -> bool:
    return used + incoming > ceiling
