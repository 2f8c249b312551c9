from pack_diff import compute_diff
from pack_models import ClientFileState, FileEntry, FileOp

SERVER = [
    FileEntry(path='config/a.cfg', sha256='a' * 64, size=1),
    FileEntry(path='mods/B.jar', sha256='b' * 64, size=2),
    FileEntry(path='options.txt', sha256='c' * 64, size=3),
]


def _states(entries):
    return [ClientFileState(path=e.path, sha256=e.sha256, size=e.size) for e in entries]


def test_identical_state_yields_nothing():
    assert compute_diff(SERVER, _states(SERVER)) == []


def test_empty_client_gets_adds_in_server_order():
    ops = compute_diff(SERVER, [])
    assert [(o.path, o.op) for o in ops] == [(e.path, FileOp.ADD) for e in SERVER]
    assert ops[1].sha256 == 'b' * 64
    assert ops[1].size == 2


def test_add_update_delete_mix():
    client = [
        ClientFileState(path='CONFIG/A.CFG', sha256='A' * 64),
        ClientFileState(path='mods/B.jar', sha256='0' * 64),
        ClientFileState(path='mods/old.jar', sha256='d' * 64),
    ]
    ops = compute_diff(SERVER, client)
    by_path = {o.path: o.op for o in ops}
    assert by_path == {
        'mods/B.jar': FileOp.UPDATE,
        'options.txt': FileOp.ADD,
        'mods/old.jar': FileOp.DELETE,
    }
    assert ops[-1].op == FileOp.DELETE


def test_unknown_client_hash_counts_as_changed():
    client = [ClientFileState(path='options.txt', size=3)]
    ops = compute_diff(SERVER, client)
    assert (ops[-1].path, ops[-1].op) == ('options.txt', FileOp.UPDATE)


def test_deletes_come_after_adds_and_updates():
    client = [ClientFileState(path='zzz.txt', sha256='e' * 64), ClientFileState(path='options.txt', sha256='f' * 64)]
    kinds = [o.op for o in compute_diff(SERVER, client)]
    assert kinds.index(FileOp.DELETE) == len(kinds) - 1
    assert kinds.count(FileOp.DELETE) == 1
