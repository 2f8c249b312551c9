"""
Pack Archive Import
===================
Turns an uploaded ``.zip`` / ``.mrpack`` / ``.mcpack`` into a pack directory
under the packs root:

1. Identity is read from an embedded descriptor (``manifest.json`` first,
   then ``modrinth.index.json``), falling back to the archive file name.
2. Entries are extracted either from the descriptor's overrides folder or
   with the shared top-level folder stripped. Unsafe entries are skipped.
3. Remote files listed by a Modrinth index are optionally downloaded and
   verified (see ``download_manager``).
4. A ``pack.json`` sidecar is written with the display metadata.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import zipfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

from config import PACKS_ROOT
from download_manager import RemoteFile, download_remote_files
from errors import (
    DescriptorParseError,
    OperationCancelled,
    Outcome,
    PackError,
    PackIOError,
    PackValidationError,
    check_cancelled,
)
from pack_files import is_safe_relative, is_within, normalize_rel
from pack_meta_store import write_pack_meta
from pack_models import PackMeta

logger = logging.getLogger(__name__)

ARCHIVE_EXTENSIONS = (".zip", ".mrpack", ".mcpack")
DEFAULT_PACK_ID = "pack"
DEFAULT_VERSION = "1.0.0"
DEFAULT_OVERRIDES = "overrides"

_INVALID_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_DASH_RUNS = re.compile(r"-{2,}")
_LOADER_KEYS = ("fabric-loader", "quilt-loader", "forge", "neoforge")


@dataclass(frozen=True)
class ArchiveMeta:
    pack_id: Optional[str] = None
    version: Optional[str] = None
    display_name: Optional[str] = None
    mc_version: Optional[str] = None
    loader_name: Optional[str] = None
    loader_version: Optional[str] = None
    channel: Optional[str] = None
    description: Optional[str] = None
    overrides_dir: Optional[str] = None
    remote_files: tuple[RemoteFile, ...] = ()

    def is_empty(self) -> bool:
        return self.pack_id is None and self.version is None and self.overrides_dir is None

    def to_pack_meta(self, fallback_name: str) -> PackMeta:
        return PackMeta(
            display_name=self.display_name or fallback_name,
            mc_version=self.mc_version,
            loader_name=self.loader_name,
            loader_version=self.loader_version,
            channel=self.channel,
            description=self.description,
        )


@dataclass
class ImportReport:
    pack_id: str
    version: str
    target_dir: Path
    extracted: int = 0
    downloaded: list[str] = field(default_factory=list)
    skipped_downloads: list[str] = field(default_factory=list)
    failed_downloads: dict[str, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


# ═══════════════════════════════════════════════════════════════
#  Metadata builders
# ═══════════════════════════════════════════════════════════════

def with_values(meta: ArchiveMeta, **changes: Any) -> ArchiveMeta:
    """New ArchiveMeta with ``changes`` applied; ``None`` values are ignored."""
    update = {k: v for k, v in changes.items() if v is not None}
    return replace(meta, **update) if update else meta


def with_defaults(meta: ArchiveMeta, **changes: Any) -> ArchiveMeta:
    """Like ``with_values`` but only fills fields that are still unset."""
    update = {k: v for k, v in changes.items() if v is not None and getattr(meta, k) is None}
    return replace(meta, **update) if update else meta


def sanitize_id(raw: Optional[str]) -> str:
    s = _INVALID_CHARS.sub("-", (raw or "").strip())
    s = _DASH_RUNS.sub("-", s).strip("-").strip()
    return s or DEFAULT_PACK_ID


def sanitize_version(raw: Optional[str]) -> str:
    s = _INVALID_CHARS.sub("-", (raw or "").strip())
    s = _DASH_RUNS.sub("-", s).strip("-").strip()
    return s or DEFAULT_VERSION


def _text(obj: Any, key: str) -> Optional[str]:
    if not isinstance(obj, dict):
        return None
    value = obj.get(key)
    if isinstance(value, str) and value.strip():
        return value
    return None


def infer_from_filename(archive_path: Path) -> tuple[Optional[str], Optional[str]]:
    """``my-pack-1.2.3.mrpack`` -> (``my-pack``, ``1.2.3``); split on the last hyphen."""
    stem = Path(archive_path).stem
    idx = stem.rfind("-")
    if 0 < idx < len(stem) - 1:
        return stem[:idx], stem[idx + 1:]
    return None, None


# ═══════════════════════════════════════════════════════════════
#  Descriptor parsing
# ═══════════════════════════════════════════════════════════════

def _find_entry(zf: zipfile.ZipFile, filename: str) -> Optional[zipfile.ZipInfo]:
    target = filename.lower()
    for info in zf.infolist():
        if normalize_rel(info.filename).rsplit("/", 1)[-1].lower() == target:
            return info
    return None


def _load_json(zf: zipfile.ZipFile, info: zipfile.ZipInfo) -> dict:
    try:
        data = json.loads(zf.read(info).decode("utf-8-sig"))
    except (ValueError, UnicodeDecodeError) as e:
        raise DescriptorParseError(f"{info.filename}: {e}") from e
    if not isinstance(data, dict):
        raise DescriptorParseError(f"{info.filename}: expected a JSON object")
    return data


def apply_platform_manifest(meta: ArchiveMeta, data: dict) -> ArchiveMeta:
    """Bedrock-style ``header`` block plus CurseForge top-level fields."""
    header = data.get("header")
    if isinstance(header, dict):
        name = _text(header, "name")
        if name:
            meta = with_values(meta, pack_id=sanitize_id(name), display_name=name)
        parts = header.get("version")
        if isinstance(parts, list):
            joined = ".".join(str(p) if isinstance(p, (int, str)) else "0" for p in parts)
            meta = with_values(meta, version=sanitize_version(joined))
        meta = with_values(meta, description=_text(header, "description"))

    name = _text(data, "name")
    if name:
        meta = with_defaults(meta, pack_id=sanitize_id(name), display_name=name)
    version = _text(data, "version")
    if version:
        meta = with_defaults(meta, version=sanitize_version(version))
    meta = with_values(meta, overrides_dir=_text(data, "overrides"))

    minecraft = data.get("minecraft")
    if isinstance(minecraft, dict):
        meta = with_values(meta, mc_version=_text(minecraft, "version"))
        loaders = minecraft.get("modLoaders")
        for loader in loaders if isinstance(loaders, list) else []:
            loader_id = _text(loader, "id")
            if loader_id and "-" in loader_id:
                loader_name, loader_version = loader_id.split("-", 1)
                meta = with_values(meta, loader_name=loader_name, loader_version=loader_version)
    return meta


def apply_modrinth_index(meta: ArchiveMeta, data: dict) -> ArchiveMeta:
    name = _text(data, "name")
    if name:
        meta = with_defaults(meta, pack_id=sanitize_id(name), display_name=name)
    for key in ("version", "versionId", "version_id", "version_number", "versionNumber"):
        version = _text(data, key)
        if version:
            meta = with_defaults(meta, version=sanitize_version(version))
            break
    meta = replace(meta, overrides_dir=_text(data, "overrides") or DEFAULT_OVERRIDES)

    deps = data.get("dependencies")
    if isinstance(deps, dict):
        meta = with_values(meta, mc_version=_text(deps, "minecraft"))
        for key in _LOADER_KEYS:
            loader_version = _text(deps, key)
            if loader_version:
                meta = with_values(meta, loader_name=key.replace("-loader", ""), loader_version=loader_version)
                break

    files = data.get("files")
    if isinstance(files, list):
        remote = [r for r in (RemoteFile.from_index_entry(f) for f in files) if r is not None]
        meta = replace(meta, remote_files=tuple(remote))
    return meta


def read_archive_meta(zf: zipfile.ZipFile) -> ArchiveMeta:
    """Parse whichever descriptors the archive carries. Raises ``DescriptorParseError``."""
    meta = ArchiveMeta()
    manifest = _find_entry(zf, "manifest.json")
    if manifest is not None:
        meta = apply_platform_manifest(meta, _load_json(zf, manifest))
    index = _find_entry(zf, "modrinth.index.json")
    if index is not None:
        meta = apply_modrinth_index(meta, _load_json(zf, index))
    return meta


# ═══════════════════════════════════════════════════════════════
#  Extraction
# ═══════════════════════════════════════════════════════════════

def common_prefix_depth(paths: list[list[str]]) -> int:
    """Number of leading folder segments shared by every path. File names are never stripped."""
    if not paths:
        return 0
    depth = 0
    for i in range(min(len(p) for p in paths) - 1):
        segment = paths[0][i]
        if any(p[i] != segment for p in paths):
            break
        depth += 1
    return depth


def _segment_index(path: str, prefix: str) -> int:
    """Index of ``prefix`` where it starts a path segment, or -1."""
    idx = path.find(prefix)
    while idx > 0 and path[idx - 1] != "/":
        idx = path.find(prefix, idx + 1)
    return idx


def plan_entries(entries: list[zipfile.ZipInfo], overrides_dir: Optional[str]) -> list[tuple[zipfile.ZipInfo, str]]:
    """Map archive entries to their relative destination path (before safety checks)."""
    prefix = None
    if overrides_dir:
        norm = normalize_rel(overrides_dir).strip("/")
        if norm:
            prefix = norm.lower() + "/"

    planned = []
    if prefix is not None:
        for info in entries:
            full = normalize_rel(info.filename)
            idx = _segment_index(full.lower(), prefix)
            if idx < 0:
                continue
            planned.append((info, full[idx + len(prefix):]))
        return planned

    split = [[s for s in normalize_rel(i.filename).split("/") if s] for i in entries]
    depth = common_prefix_depth(split)
    for info, segments in zip(entries, split):
        planned.append((info, "/".join(segments[depth:])))
    return planned


def extract_entries(zf: zipfile.ZipFile, planned, target_dir: Path, warnings: list[str], cancel=None) -> int:
    extracted = 0
    for info, rel in planned:
        check_cancelled(cancel)
        if not rel or not rel.strip():
            continue
        if not is_safe_relative(rel):
            logger.warning(f"Skipping unsafe entry: {info.filename}")
            warnings.append(f"skipped unsafe entry {info.filename}")
            continue
        dest = target_dir / rel
        if not is_within(target_dir, dest):
            logger.warning(f"Skipping out-of-root entry: {info.filename}")
            warnings.append(f"skipped out-of-root entry {info.filename}")
            continue
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info) as src, open(dest, "wb") as dst:
                shutil.copyfileobj(src, dst)
            extracted += 1
        except (OSError, zipfile.BadZipFile, RuntimeError) as e:
            logger.warning(f"Failed to extract {info.filename}: {e}")
            warnings.append(f"failed to extract {info.filename}: {e}")
    return extracted


# ═══════════════════════════════════════════════════════════════
#  Entry point
# ═══════════════════════════════════════════════════════════════

def _validate_archive_path(archive_path: Path) -> None:
    if not archive_path.name.lower().endswith(ARCHIVE_EXTENSIONS):
        raise PackValidationError(
            f"Unsupported archive type: {archive_path.name} (expected {', '.join(ARCHIVE_EXTENSIONS)})",
            code="bad_extension",
        )
    if not archive_path.is_file():
        raise PackIOError(f"Archive not found: {archive_path}", code="missing_archive")


def _resolve_target(root: Path, pack_id: str) -> Path:
    root = Path(root).resolve()
    target = Path(os.path.abspath(root / pack_id))
    if not is_within(root, target):
        raise PackValidationError(f"Target directory for {pack_id!r} is outside {root}", code="outside_root")
    return target


def _run_import(
    archive_path: Path,
    root: Path,
    pack_id: Optional[str],
    version: Optional[str],
    overwrite: bool,
    auto_download: bool,
    cancel,
    session,
) -> ImportReport:
    _validate_archive_path(archive_path)
    warnings: list[str] = []

    try:
        zf = zipfile.ZipFile(archive_path, "r")
    except (zipfile.BadZipFile, OSError) as e:
        raise PackIOError(f"Cannot open archive {archive_path.name}: {e}", code="bad_archive") from e

    with zf:
        try:
            meta = read_archive_meta(zf)
        except (DescriptorParseError, KeyError, OSError, zipfile.BadZipFile) as e:
            logger.warning(f"Import warning: could not read pack descriptor: {e}")
            warnings.append(f"descriptor unreadable: {e}")
            meta = ArchiveMeta()

        file_id, file_version = infer_from_filename(archive_path)
        resolved_id = pack_id or meta.pack_id or file_id
        if not resolved_id or not resolved_id.strip():
            raise PackValidationError(
                "Could not determine pack id from archive metadata; pass one explicitly",
                code="unresolved_id",
            )
        resolved_id = sanitize_id(resolved_id)
        resolved_version = sanitize_version(meta.version or file_version)
        if version:
            # only one snapshot is kept per pack
            logger.info(f"Requested version {version!r} is advisory; importing as latest")

        entries = [i for i in zf.infolist() if not i.is_dir()]
        if not entries:
            raise PackIOError("archive is empty", code="empty_archive")

        root = Path(root)
        root.mkdir(parents=True, exist_ok=True)
        target_dir = _resolve_target(root, resolved_id)
        if target_dir.exists() and overwrite:
            shutil.rmtree(target_dir)
        target_dir.mkdir(parents=True, exist_ok=True)

        logger.info(f"Importing {archive_path} -> {target_dir} (id={resolved_id})")
        planned = plan_entries(entries, meta.overrides_dir)
        extracted = extract_entries(zf, planned, target_dir, warnings, cancel)

    report = ImportReport(pack_id=resolved_id, version=resolved_version, target_dir=target_dir, extracted=extracted)

    if meta.remote_files:
        if auto_download:
            result = download_remote_files(target_dir, list(meta.remote_files), session=session, cancel=cancel)
            report.downloaded = result.downloaded + result.unchanged
            report.skipped_downloads = result.skipped
            report.failed_downloads = result.failed
            for path, reason in result.failed.items():
                warnings.append(f"download failed for {path}: {reason}")
            logger.info(
                f"Remote files: {len(result.downloaded)} downloaded, {len(result.unchanged)} already present, "
                f"{len(result.skipped)} skipped, {len(result.failed)} failed"
            )
        else:
            warnings.append(f"{len(meta.remote_files)} remote files listed but not downloaded")

    if extracted == 0 and not meta.remote_files:
        logger.warning("Import warning: no files extracted")
        warnings.append("no files extracted")

    try:
        write_pack_meta(target_dir, meta.to_pack_meta(resolved_id))
    except PackIOError as e:
        logger.warning(f"Import warning: {e}")
        warnings.append(str(e))

    report.warnings = warnings
    return report


def import_archive(
    archive_path,
    root: Optional[Path] = None,
    pack_id: Optional[str] = None,
    version: Optional[str] = None,
    overwrite: bool = False,
    auto_download: bool = True,
    cancel=None,
    session=None,
) -> Outcome:
    """Import one archive into ``root`` (defaults to ``PACKS_ROOT``).

    Returns ``Outcome`` whose value is an ``ImportReport`` on success.
    """
    try:
        report = _run_import(
            Path(archive_path),
            Path(root) if root is not None else PACKS_ROOT,
            pack_id,
            version,
            overwrite,
            auto_download,
            cancel,
            session,
        )
    except OperationCancelled as e:
        logger.info(f"Import of {archive_path} cancelled")
        return Outcome.from_exception(e)
    except PackError as e:
        logger.error(f"Import error: {e}")
        return Outcome.from_exception(e)
    except Exception as e:
        logger.exception(f"Import of {archive_path} failed")
        return Outcome.from_exception(e)
    return Outcome.success(report, report.warnings)
