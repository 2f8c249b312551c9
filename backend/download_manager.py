from __future__ import annotations
import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import requests

from config import DOWNLOAD_ATTEMPTS, DOWNLOAD_BACKOFF, DOWNLOAD_CONCURRENCY, DOWNLOAD_TIMEOUT, USER_AGENT
from errors import DownloadError, IntegrityError, OperationCancelled, PackError, check_cancelled
from pack_files import hash_file, safe_join

logger = logging.getLogger(__name__)

# Strongest first
HASH_PREFERENCE = ("sha512", "sha256", "sha1")

_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "application/java-archive, application/octet-stream, */*",
}


@dataclass
class RemoteFile:
    """One externally-hosted file listed by a modrinth.index.json."""

    path: str
    downloads: list[str]
    hashes: dict[str, str] = field(default_factory=dict)
    env_client: Optional[str] = None
    env_server: Optional[str] = None

    def applicable(self) -> bool:
        return (self.env_client or "").strip().lower() != "unsupported"

    @classmethod
    def from_index_entry(cls, entry: Any) -> Optional["RemoteFile"]:
        if not isinstance(entry, dict):
            return None
        path = entry.get("path")
        if not isinstance(path, str) or not path.strip():
            return None
        downloads = [u for u in (entry.get("downloads") or []) if isinstance(u, str) and u.strip()]
        if not downloads:
            return None
        hashes = {}
        raw_hashes = entry.get("hashes") or {}
        if isinstance(raw_hashes, dict):
            for k, v in raw_hashes.items():
                if isinstance(v, str) and v.strip():
                    hashes[str(k).lower()] = v.strip()
        env = entry.get("env") or {}
        env_client = env.get("client") if isinstance(env, dict) else None
        env_server = env.get("server") if isinstance(env, dict) else None
        return cls(
            path=path,
            downloads=downloads,
            hashes=hashes,
            env_client=env_client if isinstance(env_client, str) else None,
            env_server=env_server if isinstance(env_server, str) else None,
        )


@dataclass
class DownloadReport:
    downloaded: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


def preferred_hash(hashes: dict[str, str]) -> Optional[tuple[str, str]]:
    for algo in HASH_PREFERENCE:
        expected = hashes.get(algo)
        if expected:
            return algo, expected.lower()
    return None


def verify_file(path: Path, hashes: dict[str, str], cancel=None) -> bool:
    """Check ``path`` against the strongest known hash. No known hash means unverifiable."""
    chosen = preferred_hash(hashes)
    if chosen is None:
        return False
    algo, expected = chosen
    return hash_file(path, algo, cancel) == expected


def stream_download(session, url: str, dest_file: Path, cancel=None, timeout: int = DOWNLOAD_TIMEOUT) -> int:
    """Stream ``url`` into ``dest_file``. Returns bytes written."""
    written = 0
    with session.get(url, headers=_HEADERS, stream=True, timeout=timeout, allow_redirects=True) as r:
        if r.status_code >= 400:
            raise DownloadError(f"HTTP {r.status_code} for {url}")
        with open(dest_file, "wb") as f:
            for chunk in r.iter_content(chunk_size=1024 * 128):
                check_cancelled(cancel)
                if not chunk:
                    continue
                f.write(chunk)
                written += len(chunk)
    return written


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.debug(f"Could not remove {path}: {e}")


def download_remote_file(
    session,
    target_dir: Path,
    remote: RemoteFile,
    cancel=None,
    attempts: int = DOWNLOAD_ATTEMPTS,
    backoff: float = DOWNLOAD_BACKOFF,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Fetch one remote file into ``target_dir``.

    Returns ``"downloaded"`` or ``"unchanged"`` (existing file already matched).
    Raises ``DownloadError`` / ``IntegrityError`` once every mirror and attempt
    is exhausted.
    """
    dest = safe_join(target_dir, remote.path)
    dest.parent.mkdir(parents=True, exist_ok=True)

    if dest.exists() and remote.hashes:
        if verify_file(dest, remote.hashes, cancel):
            return "unchanged"

    tmp = dest.with_name(dest.name + ".part")
    last: Optional[Exception] = None
    for url in remote.downloads:
        for attempt in range(1, attempts + 1):
            check_cancelled(cancel)
            try:
                stream_download(session, url, tmp, cancel)
                if remote.hashes and not verify_file(tmp, remote.hashes, cancel):
                    algo = (preferred_hash(remote.hashes) or ("?", ""))[0]
                    raise IntegrityError(f"{algo} mismatch for {remote.path} from {url}")
                os.replace(tmp, dest)
                return "downloaded"
            except OperationCancelled:
                _discard(tmp)
                raise
            except (requests.RequestException, OSError, PackError) as e:
                _discard(tmp)
                last = e
                logger.debug(f"Attempt {attempt}/{attempts} for {remote.path} via {url} failed: {e}")
                if attempt < attempts:
                    sleep(backoff * attempt)
    if isinstance(last, PackError):
        raise last
    raise DownloadError(f"Download failed for {remote.path}: {last}")


def download_remote_files(
    target_dir: Path,
    files: list[RemoteFile],
    concurrency: Optional[int] = None,
    session=None,
    cancel=None,
    sleep: Callable[[float], None] = time.sleep,
) -> DownloadReport:
    """Resolve many remote files with bounded concurrency.

    A failed file is recorded in the report and never aborts its siblings.
    Cancellation stops the batch and is re-raised.
    """
    report = DownloadReport()
    pending = []
    for remote in files:
        if remote.applicable():
            pending.append(remote)
        else:
            report.skipped.append(remote.path)
    if not pending:
        return report

    workers = max(2, min(8, concurrency or DOWNLOAD_CONCURRENCY))
    own_session = session is None
    session = session or requests.Session()
    cancelled = False
    try:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(download_remote_file, session, target_dir, remote, cancel, sleep=sleep): remote
                for remote in pending
            }
            done = 0
            for future in as_completed(futures):
                remote = futures[future]
                try:
                    status = future.result()
                    if status == "unchanged":
                        report.unchanged.append(remote.path)
                    else:
                        report.downloaded.append(remote.path)
                except OperationCancelled:
                    cancelled = True
                    report.failed[remote.path] = "cancelled"
                except Exception as e:
                    logger.warning(f"Failed to download {remote.path}: {e}")
                    report.failed[remote.path] = str(e)
                done += 1
                if done % 5 == 0 or done == len(pending):
                    logger.info(f"Resolved {done}/{len(pending)} remote files")
    finally:
        if own_session:
            session.close()
    if cancelled:
        raise OperationCancelled("remote file download cancelled")
    return report
