"""
execguard — filesystem utilities

File: src/execguard/utils/fs.py

Purpose
- Per-execution scratch areas, atomic payload writes and guarded deletion.

Functional requirements
- Scratch areas are private (mode 0700) and always removed on exit.
- Deletion refuses paths outside the owning root.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

PathLike = str | os.PathLike[str]

_SCRATCH_MODE = 0o700

__all__ = [
    "ScratchLayout",
    "atomic_write",
    "is_within",
    "safe_delete",
    "scratch_directory",
]


@dataclass(frozen=True, slots=True)
class ScratchLayout:
    """Private directory tree created for a single sandboxed execution."""

    root: Path
    tmp: Path
    work: Path
    output: Path


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically write ``data`` to ``path``.

    The write strategy is:
    1. create temp file in the same directory,
    2. write + flush + fsync file data,
    3. replace target via ``os.replace``.
    """

    target = Path(path)
    target_parent = target.parent.resolve(strict=True)
    if not target_parent.is_dir():
        raise NotADirectoryError(f"{target_parent!s} is not a directory")

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)

    try:
        payload = data.encode(encoding) if isinstance(data, str) else data
        with os.fdopen(fd, "wb") as file_handle:
            file_handle.write(payload)
            file_handle.flush()
            os.fsync(file_handle.fileno())
        os.replace(temp_path, target)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def is_within(child: PathLike, parent: PathLike) -> bool:
    """Return ``True`` if resolved ``child`` is within resolved ``parent``."""

    try:
        resolved_parent = Path(parent).resolve(strict=True)
    except FileNotFoundError:
        return False
    if not resolved_parent.is_dir():
        return False

    resolved_child = Path(child).resolve(strict=False)
    return _is_relative_to(resolved_child, resolved_parent)


def safe_delete(path: PathLike, root: PathLike) -> None:
    """
    Delete ``path`` only if it is contained within ``root``.

    Symlinks are unlinked without traversing into their targets.
    """

    workspace = Path(root).resolve(strict=True)
    target = Path(path)
    candidate = target.parent.resolve(strict=True) / target.name
    if not _is_relative_to(candidate, workspace):
        raise ValueError(f"refusing to delete path outside root: {target!s}")

    if target.is_symlink():
        target.unlink()
        return
    if not target.exists():
        return
    if target.is_dir():
        shutil.rmtree(target)
        return
    target.unlink()


@contextmanager
def scratch_directory(
    prefix: str = "execguard-", *, base_dir: PathLike | None = None
) -> Iterator[ScratchLayout]:
    """Yield a private ``tmp/ work/ output/`` tree and remove it on exit."""

    root = Path(tempfile.mkdtemp(prefix=prefix, dir=None if base_dir is None else str(base_dir)))
    try:
        os.chmod(root, _SCRATCH_MODE)
        layout = ScratchLayout(
            root=root,
            tmp=root / "tmp",
            work=root / "work",
            output=root / "output",
        )
        for directory in (layout.tmp, layout.work, layout.output):
            directory.mkdir(mode=_SCRATCH_MODE)
        yield layout
    finally:
        shutil.rmtree(root, ignore_errors=True)


def _is_relative_to(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
    except ValueError:
        return False
    return True
