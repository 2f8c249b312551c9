import hashlib
import io
import json
import sys
import threading
import zipfile
from pathlib import Path

import pytest

backend_dir = Path(__file__).resolve().parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))


def write_zip(path: Path, entries: dict) -> Path:
    """Write a zip with ``{name: str | bytes}`` entries."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, 'w') as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return path


def sha(data: bytes, algo: str = 'sha256') -> str:
    return hashlib.new(algo, data).hexdigest()


class FakeWatcher:
    """Records watches and lets a test fire change notifications by hand."""

    def __init__(self):
        self.callbacks = {}
        self.gone_callbacks = {}
        self.watched = []
        self.unwatched = []
        self.closed = False

    def watch(self, directory, on_change, on_gone=None):
        self.callbacks[str(directory)] = on_change
        self.gone_callbacks[str(directory)] = on_gone
        self.watched.append(str(directory))
        return str(directory)

    def unwatch(self, handle):
        self.unwatched.append(handle)
        self.callbacks.pop(handle, None)
        self.gone_callbacks.pop(handle, None)

    def close(self):
        self.closed = True

    def fire(self, directory):
        self.callbacks[str(directory)]()

    def remove(self, directory):
        """Simulate the watched directory itself being deleted."""
        self.callbacks[str(directory)]()
        self.gone_callbacks[str(directory)]()


class FakeResponse:
    def __init__(self, status_code=200, body=b''):
        self.status_code = status_code
        self._body = body

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self._body), chunk_size):
            yield self._body[i:i + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    """requests.Session stand-in serving canned bodies by URL."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []
        self._lock = threading.Lock()

    def get(self, url, **kwargs):
        with self._lock:
            self.calls.append(url)
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(404)
        if isinstance(route, int):
            return FakeResponse(route)
        return FakeResponse(200, route)

    def close(self):
        pass


@pytest.fixture
def fake_watcher():
    return FakeWatcher()


@pytest.fixture
def fabric_jar_bytes():
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, 'w') as zf:
        zf.writestr('fabric.mod.json', json.dumps({'id': 'sodium', 'version': '0.5.8', 'name': 'Sodium'}))
    return buf.getvalue()


@pytest.fixture
def sample_pack(tmp_path, fabric_jar_bytes):
    """A packs root holding one pack ``demo`` with config, a mod and a sidecar."""
    root = tmp_path / 'packs'
    pack = root / 'demo'
    (pack / 'config').mkdir(parents=True)
    (pack / 'mods').mkdir()
    (pack / 'config' / 'a.cfg').write_text('alpha=1\n', encoding='utf-8')
    (pack / 'Readme.txt').write_text('hello', encoding='utf-8')
    (pack / 'mods' / 'sodium-fabric-0.5.8+mc1.20.1.jar').write_bytes(fabric_jar_bytes)
    (pack / '.git').mkdir()
    (pack / '.git' / 'HEAD').write_text('ref', encoding='utf-8')
    (pack / 'Thumbs.db').write_bytes(b'junk')
    (pack / 'pack.json').write_text(json.dumps({
        'displayName': 'Demo Pack',
        'mcVersion': '1.20.1',
        'loaderName': 'fabric',
        'loaderVersion': '0.15.7',
    }), encoding='utf-8')
    return root
