import threading
from pathlib import Path

import pytest

from conftest import FakeSession, sha
from download_manager import RemoteFile, download_remote_files, preferred_hash
from errors import OperationCancelled

GOOD = b'real jar bytes'
BAD = b'tampered'


def _remote(path, urls, data=GOOD, **kw):
    hashes = kw.pop('hashes', {'sha512': sha(data, 'sha512'), 'sha1': sha(data, 'sha1')})
    return RemoteFile(path=path, downloads=list(urls), hashes=hashes, **kw)


def _no_sleep(_):
    pass


def test_preferred_hash_order():
    assert preferred_hash({'sha1': 'AA', 'sha512': 'BB'}) == ('sha512', 'bb')
    assert preferred_hash({'sha1': 'aa', 'sha256': 'cc'}) == ('sha256', 'cc')
    assert preferred_hash({}) is None


def test_downloads_and_verifies(tmp_path: Path):
    session = FakeSession({'https://cdn/a.jar': GOOD})
    report = download_remote_files(tmp_path, [_remote('mods/a.jar', ['https://cdn/a.jar'])], session=session, sleep=_no_sleep)
    assert report.downloaded == ['mods/a.jar']
    assert (tmp_path / 'mods' / 'a.jar').read_bytes() == GOOD
    assert not (tmp_path / 'mods' / 'a.jar.part').exists()


def test_mismatch_retries_then_next_mirror(tmp_path: Path):
    session = FakeSession({'https://bad/a.jar': BAD, 'https://good/a.jar': GOOD})
    remote = _remote('mods/a.jar', ['https://bad/a.jar', 'https://good/a.jar'])
    report = download_remote_files(tmp_path, [remote], session=session, sleep=_no_sleep)
    assert report.downloaded == ['mods/a.jar']
    assert session.calls.count('https://bad/a.jar') == 3
    assert session.calls.count('https://good/a.jar') == 1


def test_failure_does_not_abort_siblings(tmp_path: Path):
    session = FakeSession({'https://cdn/ok.jar': GOOD, 'https://cdn/gone.jar': 500})
    files = [
        _remote('mods/gone.jar', ['https://cdn/gone.jar']),
        _remote('mods/ok.jar', ['https://cdn/ok.jar']),
    ]
    report = download_remote_files(tmp_path, files, session=session, sleep=_no_sleep)
    assert report.downloaded == ['mods/ok.jar']
    assert list(report.failed) == ['mods/gone.jar']
    assert not (tmp_path / 'mods' / 'gone.jar').exists()
    assert not (tmp_path / 'mods' / 'gone.jar.part').exists()


def test_client_unsupported_is_skipped(tmp_path: Path):
    session = FakeSession({'https://cdn/s.jar': GOOD})
    remote = _remote('mods/s.jar', ['https://cdn/s.jar'], env_client='unsupported', env_server='required')
    report = download_remote_files(tmp_path, [remote], session=session)
    assert report.skipped == ['mods/s.jar']
    assert session.calls == []


def test_existing_matching_file_is_kept(tmp_path: Path):
    (tmp_path / 'mods').mkdir()
    (tmp_path / 'mods' / 'a.jar').write_bytes(GOOD)
    session = FakeSession()
    report = download_remote_files(tmp_path, [_remote('mods/a.jar', ['https://cdn/a.jar'])], session=session)
    assert report.unchanged == ['mods/a.jar']
    assert session.calls == []


def test_unsafe_remote_path_fails(tmp_path: Path):
    session = FakeSession({'https://cdn/e.jar': GOOD})
    report = download_remote_files(tmp_path / 'pack', [_remote('../evil.jar', ['https://cdn/e.jar'])], session=session)
    assert '../evil.jar' in report.failed
    assert not (tmp_path / 'evil.jar').exists()


def test_file_without_hash_is_accepted(tmp_path: Path):
    session = FakeSession({'https://cdn/n.jar': GOOD})
    report = download_remote_files(tmp_path, [_remote('n.jar', ['https://cdn/n.jar'], hashes={})], session=session)
    assert report.downloaded == ['n.jar']


def test_cancel_raises(tmp_path: Path):
    cancel = threading.Event()
    cancel.set()
    session = FakeSession({'https://cdn/a.jar': GOOD})
    with pytest.raises(OperationCancelled):
        download_remote_files(tmp_path, [_remote('a.jar', ['https://cdn/a.jar'])], session=session, cancel=cancel)
    assert not (tmp_path / 'a.jar').exists()


def test_from_index_entry():
    remote = RemoteFile.from_index_entry({
        'path': 'mods/x.jar',
        'hashes': {'SHA1': 'abc', 'sha512': ''},
        'downloads': ['https://cdn/x.jar', ''],
        'env': {'client': 'required', 'server': 'optional'},
    })
    assert remote.downloads == ['https://cdn/x.jar']
    assert remote.hashes == {'sha1': 'abc'}
    assert remote.applicable()
    assert RemoteFile.from_index_entry({'path': 'x', 'downloads': []}) is None
