import io
import logging
import zipfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from app import app
from conftest import FakeWatcher
from pack_service import PackService
from packs_routes import get_pack_service, set_pack_service


@pytest.fixture
def client(sample_pack: Path):
    service = PackService(root=sample_pack, watcher=FakeWatcher())
    app.dependency_overrides[get_pack_service] = lambda: service
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        service.close()


def test_list_and_summary(client):
    assert client.get('/packs/').json() == ['demo']
    body = client.get('/packs/demo').json()
    assert body == {'packId': 'demo', 'latestVersion': 'latest', 'versions': ['latest']}
    assert client.get('/packs/nope').status_code == 404


def test_manifest_and_correlation_header(client):
    r = client.get('/packs/demo/manifest', headers={'X-Correlation-ID': 'abc123'})
    assert r.status_code == 200
    assert r.headers['X-Correlation-ID'] == 'abc123'
    body = r.json()
    assert body['packId'] == 'demo'
    assert body['displayName'] == 'Demo Pack'
    assert body['loader'] == {'name': 'fabric', 'version': '0.15.7'}
    assert [f['path'] for f in body['files']] == ['config/a.cfg', 'mods/sodium-fabric-0.5.8+mc1.20.1.jar', 'Readme.txt']
    assert 'X-Correlation-ID' in client.get('/packs/demo/manifest').headers
    assert client.get('/packs/nope/manifest').status_code == 404


def test_mods(client):
    mods = client.get('/packs/demo/mods').json()
    assert [(m['id'], m['version']) for m in mods] == [('sodium', '0.5.8')]


def test_file_download(client):
    r = client.get('/packs/demo/file', params={'path': 'config/a.cfg'})
    assert r.status_code == 200
    assert r.content == b'alpha=1\n'
    assert client.get('/packs/demo/file', params={'path': '../demo/pack.json'}).status_code == 404
    assert client.get('/packs/demo/file', params={'path': 'missing.txt'}).status_code == 404


def test_diff(client):
    manifest = client.get('/packs/demo/manifest').json()
    r = client.post('/packs/demo/diff', json={'files': []})
    assert r.status_code == 200
    assert [op['op'] for op in r.json()['operations']] == ['add', 'add', 'add']

    same = [{'path': f['path'], 'sha256': f['sha256'], 'size': f['size']} for f in manifest['files']]
    assert client.post('/packs/demo/diff', json={'files': same}).json()['operations'] == []

    extra = same + [{'path': 'mods/old.jar', 'sha256': '0' * 64}]
    ops = client.post('/packs/demo/diff', json={'files': extra}).json()['operations']
    assert ops == [{'path': 'mods/old.jar', 'op': 'delete', 'sha256': None, 'size': None}]

    assert client.post('/packs/nope/diff', json={'files': []}).status_code == 404


def test_bundle(client):
    r = client.post('/packs/demo/bundle', json={'paths': ['config/a.cfg', '../escape.txt']})
    assert r.status_code == 200
    assert r.headers['content-type'] == 'application/zip'
    with zipfile.ZipFile(io.BytesIO(r.content)) as zf:
        assert zf.namelist() == ['config/a.cfg']
        assert zf.read('config/a.cfg') == b'alpha=1\n'

    full = client.post('/packs/demo/bundle', json={})
    with zipfile.ZipFile(io.BytesIO(full.content)) as zf:
        assert sorted(zf.namelist()) == sorted(['config/a.cfg', 'mods/sodium-fabric-0.5.8+mc1.20.1.jar', 'Readme.txt'])

    assert client.post('/packs/nope/bundle', json={}).status_code == 404


def test_health(client):
    assert client.get('/health').json()['status'] == 'ok'


def test_access_line_logged_per_request(client, caplog):
    caplog.set_level(logging.INFO, logger='app')
    client.get('/packs/nope')
    lines = [r.getMessage() for r in caplog.records if r.name == 'app']
    assert any(line.startswith('HTTP GET /packs/nope responded 404 in ') for line in lines)


def test_startup_creates_configured_root(tmp_path: Path):
    root = tmp_path / 'elsewhere'
    set_pack_service(PackService(root=root, watcher=FakeWatcher()))
    with TestClient(app) as c:
        assert root.is_dir()
        assert c.get('/packs/').json() == []
