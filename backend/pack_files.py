from __future__ import annotations

import hashlib
import logging
import os
from pathlib import Path
from typing import Iterator, Optional

from config import PACK_META_FILENAME
from errors import PackValidationError, check_cancelled

logger = logging.getLogger(__name__)

IGNORED_NAMES = {PACK_META_FILENAME.lower(), ".ds_store", "thumbs.db"}

_CHUNK = 1024 * 128


def normalize_rel(rel: str) -> str:
    return (rel or "").replace("\\", "/")


def is_safe_relative(rel: str) -> bool:
    """True for a non-empty relative path without parent-traversal segments."""
    if not rel or not rel.strip():
        return False
    norm = normalize_rel(rel)
    if norm.startswith("/"):
        return False
    # drive-qualified paths (C:/..., C:foo) are absolute on Windows
    if len(norm) >= 2 and norm[1] == ":":
        return False
    if any(seg == ".." for seg in norm.split("/")):
        return False
    return True


def is_within(base: Path, target: Path, strict: bool = True) -> bool:
    """Absolute-path prefix check. ``strict`` rejects ``target == base``."""
    base_abs = os.path.abspath(base)
    target_abs = os.path.abspath(target)
    if target_abs == base_abs:
        return not strict
    return target_abs.startswith(base_abs.rstrip(os.sep) + os.sep)


def safe_join(base: Path, rel: str) -> Path:
    if not is_safe_relative(rel):
        raise PackValidationError(f"Unsafe path: {rel!r}")
    target = Path(os.path.abspath(Path(base) / normalize_rel(rel)))
    if not is_within(base, target):
        raise PackValidationError(f"Path escapes its root: {rel!r}")
    return target


def is_symlink(path: Path) -> bool:
    try:
        return path.is_symlink()
    except OSError:
        return False


def has_symlink_ancestor(base: Path, path: Path) -> bool:
    """Walk from ``path``'s parent up to ``base`` looking for a symlinked directory."""
    base_abs = Path(os.path.abspath(base))
    current = Path(os.path.abspath(path)).parent
    try:
        while current != base_abs:
            if not is_within(base_abs, current):
                return False
            if current.is_symlink():
                return True
            current = current.parent
        return False
    except OSError:
        return False


def hash_file(path: Path, algorithm: str = "sha256", cancel=None) -> str:
    h = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            check_cancelled(cancel)
            h.update(chunk)
    return h.hexdigest()


def sha256_file(path: Path, cancel=None) -> str:
    return hash_file(path, "sha256", cancel)


def relative_posix(root: Path, path: Path) -> str:
    return Path(os.path.relpath(path, root)).as_posix()


def should_ignore(rel: str) -> bool:
    segments = normalize_rel(rel).split("/")
    if segments[-1].lower() in IGNORED_NAMES:
        return True
    return any(seg.startswith(".") for seg in segments)


def iter_pack_files(root: Path, cancel=None) -> Iterator[tuple[Path, str]]:
    """Yield (absolute path, forward-slash relative path) for every eligible file.

    Symlinked files and anything reached through a symlinked directory are
    skipped, as are dot-paths, OS junk and the sidecar metadata file.
    """
    root = Path(os.path.abspath(root))
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        check_cancelled(cancel)
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        for fn in sorted(filenames):
            full = Path(dirpath) / fn
            rel = relative_posix(root, full)
            if should_ignore(rel):
                continue
            if is_symlink(full) or has_symlink_ancestor(root, full):
                continue
            if not full.is_file():
                continue
            yield full, rel


def resolve_pack_file(pack_dir: Path, rel: str) -> Optional[Path]:
    """Resolve ``rel`` under ``pack_dir`` for serving; None when unsafe or missing."""
    try:
        full = safe_join(pack_dir, rel)
    except PackValidationError as e:
        logger.debug(f"Rejected file path {rel!r}: {e}")
        return None
    if not full.is_file():
        return None
    if is_symlink(full) or has_symlink_ancestor(pack_dir, full):
        return None
    return full
