"""Unit tests for scratch areas, atomic writes and guarded deletion."""

from __future__ import annotations

import os
import stat
from pathlib import Path

import pytest

from execguard.utils.fs import atomic_write, is_within, safe_delete, scratch_directory


def test_scratch_directory_is_private_and_removed(tmp_path: Path) -> None:
    with scratch_directory(base_dir=tmp_path) as layout:
        assert layout.root.parent == tmp_path
        assert layout.root.name.startswith("execguard-")
        assert stat.S_IMODE(os.stat(layout.root).st_mode) == 0o700
        for directory in (layout.tmp, layout.work, layout.output):
            assert directory.is_dir()
        (layout.work / "payload.py").write_text("print(1)\n", encoding="utf-8")
        root = layout.root

    assert not root.exists()


def test_scratch_directory_is_removed_on_error(tmp_path: Path) -> None:
    with pytest.raises(RuntimeError):
        with scratch_directory(base_dir=tmp_path) as layout:
            root = layout.root
            raise RuntimeError("boom")

    assert not root.exists()


def test_atomic_write_replaces_content_without_leftovers(tmp_path: Path) -> None:
    target = tmp_path / "payload.py"
    atomic_write(target, "first")
    atomic_write(target, b"second")

    assert target.read_text(encoding="utf-8") == "second"
    assert sorted(path.name for path in tmp_path.iterdir()) == ["payload.py"]


def test_atomic_write_requires_existing_parent(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        atomic_write(tmp_path / "missing" / "payload.py", "x")


def test_is_within_resolves_traversal(tmp_path: Path) -> None:
    inner = tmp_path / "work"
    inner.mkdir()

    assert is_within(inner / "file.txt", tmp_path)
    assert not is_within(inner / ".." / ".." / "etc", tmp_path)
    assert not is_within(inner, tmp_path / "absent")


def test_safe_delete_stays_inside_root(tmp_path: Path) -> None:
    root = tmp_path / "root"
    tree = root / "tree"
    tree.mkdir(parents=True)
    (tree / "file.txt").write_text("x", encoding="utf-8")
    outside = tmp_path / "outside.txt"
    outside.write_text("keep", encoding="utf-8")

    with pytest.raises(ValueError, match="outside root"):
        safe_delete(outside, root)

    safe_delete(tree, root)
    safe_delete(tree, root)

    assert not tree.exists()
    assert outside.exists()


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unavailable")
def test_safe_delete_unlinks_symlink_without_following(tmp_path: Path) -> None:
    root = tmp_path / "root"
    root.mkdir()
    target = tmp_path / "precious"
    target.mkdir()
    (target / "data.txt").write_text("keep", encoding="utf-8")
    link = root / "link"
    link.symlink_to(target, target_is_directory=True)

    safe_delete(link, root)

    assert not link.exists()
    assert (target / "data.txt").exists()
