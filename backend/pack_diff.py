from __future__ import annotations

from typing import Iterable

from pack_models import ClientFileState, DiffOperation, FileEntry, FileOp


def _same_hash(server: FileEntry, client: ClientFileState) -> bool:
    # a client that omits its hash gets the server copy again
    if not client.sha256:
        return False
    return client.sha256.strip().lower() == server.sha256.lower()


def compute_diff(server_files: Iterable[FileEntry], client_files: Iterable[ClientFileState]) -> list[DiffOperation]:
    """Operations that bring ``client_files`` in line with ``server_files``.

    Paths match case-insensitively. Adds and updates come first in server
    order, then deletes in client order. Unchanged files produce nothing.
    """
    client_by_path: dict[str, ClientFileState] = {}
    for state in client_files:
        if state.path:
            client_by_path.setdefault(state.path.replace("\\", "/").lower(), state)

    ops: list[DiffOperation] = []
    server_paths = set()
    for entry in server_files:
        key = entry.path.lower()
        server_paths.add(key)
        client = client_by_path.get(key)
        if client is None:
            ops.append(DiffOperation(path=entry.path, op=FileOp.ADD, sha256=entry.sha256, size=entry.size))
        elif not _same_hash(entry, client):
            ops.append(DiffOperation(path=entry.path, op=FileOp.UPDATE, sha256=entry.sha256, size=entry.size))

    for key, client in client_by_path.items():
        if key not in server_paths:
            ops.append(DiffOperation(path=client.path, op=FileOp.DELETE))
    return ops
