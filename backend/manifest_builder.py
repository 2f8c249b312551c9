from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Optional

from config import HASH_CONCURRENCY, MOD_EXTRACT_CONCURRENCY
from errors import OperationCancelled, PackNotFoundError, check_cancelled
from mod_metadata import extract_package_descriptor
from pack_files import iter_pack_files, sha256_file
from pack_meta_store import read_pack_meta
from pack_models import LATEST, FileEntry, LoaderInfo, Manifest, PackageDescriptor, with_overrides

logger = logging.getLogger(__name__)

MODS_DIR = "mods"


def _sort_key(item) -> str:
    return item.path.lower()


def is_mod_archive(rel: str) -> bool:
    """Any ``.jar`` below the ``mods`` directory, at any depth, is inspected for metadata."""
    parts = rel.split("/")
    return len(parts) >= 2 and parts[0].lower() == MODS_DIR and parts[-1].lower().endswith(".jar")


def _hash_entry(full: Path, rel: str, cancel) -> FileEntry:
    check_cancelled(cancel)
    digest = sha256_file(full, cancel)
    return FileEntry(path=rel, sha256=digest, size=full.stat().st_size)


def _describe(full: Path, rel: str, cancel) -> Optional[PackageDescriptor]:
    check_cancelled(cancel)
    return extract_package_descriptor(full, rel)


def build_manifest(
    pack_id: str,
    pack_dir: Path,
    hash_workers: Optional[int] = None,
    extract_workers: Optional[int] = None,
    cancel=None,
    warnings: Optional[list[str]] = None,
) -> Manifest:
    """Hash every eligible file of a pack and collect mod metadata.

    Unreadable files are left out of the result and noted in ``warnings``.
    Raises ``PackNotFoundError`` when the pack directory is missing and
    ``OperationCancelled`` when ``cancel`` is set.
    """
    pack_dir = Path(pack_dir)
    if not pack_dir.is_dir():
        raise PackNotFoundError(f"Pack '{pack_id}' not found", code="pack_missing")
    if warnings is None:
        warnings = []

    eligible = list(iter_pack_files(pack_dir, cancel))
    mod_files = [(full, rel) for full, rel in eligible if is_mod_archive(rel)]

    files: list[FileEntry] = []
    mods: list[PackageDescriptor] = []
    cancelled = False

    with ThreadPoolExecutor(max_workers=max(1, hash_workers or HASH_CONCURRENCY), thread_name_prefix="hash") as hash_pool, \
            ThreadPoolExecutor(max_workers=max(1, extract_workers or MOD_EXTRACT_CONCURRENCY), thread_name_prefix="modmeta") as mod_pool:
        hash_futures = {hash_pool.submit(_hash_entry, full, rel, cancel): rel for full, rel in eligible}
        mod_futures = {mod_pool.submit(_describe, full, rel, cancel): rel for full, rel in mod_files}

        for future in as_completed(hash_futures):
            rel = hash_futures[future]
            try:
                files.append(future.result())
            except OperationCancelled:
                cancelled = True
            except OSError as e:
                logger.debug(f"Skipping unreadable file {rel}: {e}")
                warnings.append(f"unreadable file {rel}: {e}")

        for future in as_completed(mod_futures):
            rel = mod_futures[future]
            try:
                descriptor = future.result()
            except OperationCancelled:
                cancelled = True
                continue
            except Exception as e:
                logger.debug(f"Metadata extraction failed for {rel}: {e}")
                warnings.append(f"metadata extraction failed for {rel}: {e}")
                continue
            if descriptor is not None:
                mods.append(descriptor)

    if cancelled:
        raise OperationCancelled(f"manifest build for '{pack_id}' cancelled")

    files.sort(key=_sort_key)
    mods.sort(key=_sort_key)

    manifest = Manifest(
        pack_id=pack_id,
        version=LATEST,
        display_name=pack_id,
        files=tuple(files),
        mods=tuple(mods) if mods else None,
    )
    meta = read_pack_meta(pack_dir)
    if meta is not None:
        loader = None
        if meta.loader_name or meta.loader_version:
            loader = LoaderInfo(name=meta.loader_name or "", version=meta.loader_version or "")
        manifest = with_overrides(
            manifest,
            display_name=meta.display_name,
            mc_version=meta.mc_version,
            loader=loader,
            channel=meta.channel,
            description=meta.description,
        )
    logger.info(f"Built manifest for {pack_id}: {len(files)} files, {len(mods)} mods")
    return manifest
