from __future__ import annotations

import logging
import os
import tempfile
import zipfile
from pathlib import Path
from typing import IO, Callable, Iterable, Iterator, Optional

from config import PACKS_ROOT
from errors import Outcome, PackError, PackNotFoundError, check_cancelled
from manifest_builder import build_manifest
from manifest_cache import ManifestCache
from pack_diff import compute_diff
from pack_files import is_within, resolve_pack_file
from pack_models import LATEST, ClientFileState, DiffResponse, Manifest, PackSummary
from pack_watcher import create_pack_watcher

logger = logging.getLogger(__name__)

BUNDLE_CHUNK = 64 * 1024
BUNDLE_SPOOL_LIMIT = 16 * 1024 * 1024


def iter_chunks(fh: IO[bytes], chunk_size: int = BUNDLE_CHUNK) -> Iterator[bytes]:
    """Yield ``fh`` in chunks and close it afterwards."""
    try:
        fh.seek(0)
        while True:
            chunk = fh.read(chunk_size)
            if not chunk:
                break
            yield chunk
    finally:
        fh.close()


class PackService:
    """The operations the HTTP and CLI layers use: listing, manifests, diffs, files and bundles."""

    def __init__(
        self,
        root: Optional[Path] = None,
        watcher=None,
        build: Optional[Callable[[str, object], Manifest]] = None,
        **cache_options,
    ):
        self.root = Path(root or PACKS_ROOT).resolve()
        self._build_fn = build or self._build
        self.cache = ManifestCache(
            build=self._build_fn,
            pack_dir=self._pack_path,
            watcher=watcher if watcher is not None else create_pack_watcher(),
            **cache_options,
        )

    # ── packs ────────────────────────────────────────────────

    def _pack_path(self, pack_id: str) -> Path:
        return Path(os.path.abspath(self.root / pack_id))

    def pack_dir(self, pack_id: str) -> Optional[Path]:
        """Directory of ``pack_id``, or None if the id is unsafe or unknown."""
        if not pack_id or "/" in pack_id or "\\" in pack_id or pack_id.startswith("."):
            return None
        path = self._pack_path(pack_id)
        if not is_within(self.root, path) or not path.is_dir():
            return None
        return path

    def _require_pack(self, pack_id: str) -> Path:
        path = self.pack_dir(pack_id)
        if path is None:
            raise PackNotFoundError(f"Pack '{pack_id}' not found")
        return path

    def list_pack_ids(self) -> list[str]:
        if not self.root.is_dir():
            return []
        ids = [p.name for p in self.root.iterdir() if p.is_dir() and not p.name.startswith(".")]
        return sorted(ids, key=str.lower)

    def get_summary(self, pack_id: str) -> Optional[PackSummary]:
        if self.pack_dir(pack_id) is None:
            return None
        return PackSummary(pack_id=pack_id, latest_version=LATEST, versions=(LATEST,))

    # ── manifests ────────────────────────────────────────────

    def _build(self, pack_id: str, cancel=None) -> Manifest:
        warnings: list[str] = []
        manifest = build_manifest(pack_id, self._require_pack(pack_id), cancel=cancel, warnings=warnings)
        if warnings:
            logger.warning(f"Manifest for {pack_id} built with {len(warnings)} skipped item(s)")
        return manifest

    def _manifest(self, pack_id: str, cancel=None) -> Manifest:
        self._require_pack(pack_id)
        return self.cache.get(pack_id, LATEST, cancel)

    def get_manifest(self, pack_id: str, version: Optional[str] = None, cancel=None) -> Outcome:
        """Latest manifest of a pack. Only one snapshot exists, so ``version`` is not used for lookup."""
        if version and version != LATEST:
            logger.debug(f"Version {version!r} requested for {pack_id}; serving latest")
        try:
            return Outcome.success(self._manifest(pack_id, cancel))
        except PackError as e:
            return Outcome.from_exception(e)
        except Exception as e:
            logger.exception(f"Manifest for {pack_id} failed")
            return Outcome.from_exception(e)

    def get_mods(self, pack_id: str, cancel=None) -> Outcome:
        outcome = self.get_manifest(pack_id, cancel=cancel)
        if not outcome.ok:
            return outcome
        return Outcome.success(list(outcome.value.mods or ()))

    def diff(self, pack_id: str, client_files: Optional[Iterable[ClientFileState]], cancel=None) -> Outcome:
        outcome = self.get_manifest(pack_id, cancel=cancel)
        if not outcome.ok:
            return outcome
        manifest: Manifest = outcome.value
        try:
            operations = compute_diff(manifest.files, client_files or [])
        except Exception as e:
            logger.exception(f"Diff for {pack_id} failed")
            return Outcome.from_exception(e)
        return Outcome.success(DiffResponse(pack_id=pack_id, version=manifest.version, operations=tuple(operations)))

    # ── files ────────────────────────────────────────────────

    def resolve_file(self, pack_id: str, rel: str) -> Optional[Path]:
        pack = self.pack_dir(pack_id)
        if pack is None:
            return None
        return resolve_pack_file(pack, rel)

    def open_bundle(self, pack_id: str, paths: Optional[list[str]] = None, cancel=None) -> IO[bytes]:
        """Zip the requested files (all manifest files when ``paths`` is empty) into a spooled temp file."""
        pack = self._require_pack(pack_id)
        if not paths:
            paths = [f.path for f in self._manifest(pack_id, cancel).files]

        spool = tempfile.SpooledTemporaryFile(max_size=BUNDLE_SPOOL_LIMIT)
        added = 0
        try:
            with zipfile.ZipFile(spool, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                seen = set()
                for rel in paths:
                    check_cancelled(cancel)
                    full = resolve_pack_file(pack, rel)
                    if full is None:
                        logger.debug(f"Bundle for {pack_id}: skipping {rel!r}")
                        continue
                    arcname = full.relative_to(pack).as_posix()
                    if arcname.lower() in seen:
                        continue
                    seen.add(arcname.lower())
                    zf.write(full, arcname)
                    added += 1
        except BaseException:
            spool.close()
            raise
        logger.info(f"Bundle for {pack_id}: {added} file(s)")
        spool.seek(0)
        return spool

    def iter_bundle(self, pack_id: str, paths: Optional[list[str]] = None, cancel=None) -> Iterator[bytes]:
        return iter_chunks(self.open_bundle(pack_id, paths, cancel))

    def close(self) -> None:
        self.cache.close()
