"""File-system helpers."""

from __future__ import annotations

import os
import shutil
from typing import List, Union

PathLike = Union[str, "os.PathLike[str]"]


def check_file_exists(path: PathLike) -> bool:
    """Tell whether something exists at the path."""
    try:
        os.stat(path)
    except FileNotFoundError:
        return False
    except OSError:
        return True
    return True


def copy_file_to_new_path(old_path: PathLike, new_path: PathLike) -> None:
    """Move a file to a new path; raises FileNotFoundError if it is missing."""
    if not check_file_exists(old_path):
        raise FileNotFoundError(f"unable to copy file {old_path}, it doesn't exist")
    os.replace(old_path, new_path)


def remove_folder_or_file(target: PathLike) -> None:
    """Remove a file or a whole directory tree; a missing target is not an error."""
    try:
        if os.path.isdir(target) and not os.path.islink(target):
            shutil.rmtree(target)
        else:
            os.remove(target)
    except FileNotFoundError:
        pass


def read_file_per_rows(file_path: PathLike, delimiter: str) -> List[str]:
    """Read a file's lines, trimming the delimiter characters from both ends of each."""
    with open(file_path, "r", encoding="utf-8", errors="surrogateescape", newline="") as handle:
        data = handle.read()
    if not data:
        return []
    lines = data.split("\n")
    if lines[-1] == "":
        lines.pop()
    rows = []
    for line in lines:
        if line.endswith("\r"):
            line = line[:-1]
        rows.append(line.strip(delimiter))
    return rows