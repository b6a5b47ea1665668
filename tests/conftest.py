import io
import json
import zipfile
from pathlib import Path

import pytest
import requests

from modman_core.state import ManagerState

REGISTRY_URL = "https://registry.test/mods.json"


class FakeResponse:
    def __init__(self, status_code=200, body=b"", headers=None, url=""):
        self.status_code = status_code
        if isinstance(body, (dict, list)):
            body = json.dumps(body).encode()
        self.content = body
        self.headers = headers or {}
        self.url = url

    def json(self):
        return json.loads(self.content)

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i:i + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    """Stands in for requests.Session; routes map URL -> response, exception or callable."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.headers = {}
        self.calls = []

    def get(self, url, headers=None, timeout=None, stream=False):
        self.calls.append({"url": url, "headers": headers or {}, "timeout": timeout})
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(404, url=url)
        if isinstance(route, Exception):
            raise route
        if callable(route):
            return route(url, headers or {})
        route.url = url
        return route


def write_manifest(mods_dir: Path, dirname: str, data) -> Path:
    """Create mods_dir/dirname/manifest.json; data may be a dict or raw text."""
    mod_dir = mods_dir / dirname
    mod_dir.mkdir(parents=True, exist_ok=True)
    text = data if isinstance(data, str) else json.dumps(data)
    (mod_dir / "manifest.json").write_text(text, encoding="utf-8")
    return mod_dir


def manifest(identity, version="1.0.0", dependencies=(), conflicts=(), **extra):
    data = {
        "identity": identity,
        "name": extra.pop("name", identity.split("/")[-1]),
        "author": extra.pop("author", "tester"),
        "version": version,
        "dependencies": list(dependencies),
        "conflicts": list(conflicts),
    }
    data.update(extra)
    return data


def registry_entry(identity, version="1.0.0", dependencies=(), conflicts=(), **extra):
    data = manifest(identity, version, dependencies, conflicts, **extra)
    data.setdefault("downloadUrl", f"https://cdn.test/{identity.replace('/', '-')}-{version}.zip")
    return data


def make_zip(manifest_data=None, files=None, prefix="") -> bytes:
    """Build a zip archive in memory, optionally nesting everything under prefix."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        if manifest_data is not None:
            zf.writestr(prefix + "manifest.json", json.dumps(manifest_data))
        for name, content in (files or {}).items():
            zf.writestr(prefix + name, content)
    return buffer.getvalue()


@pytest.fixture
def mods_dir(tmp_path):
    path = tmp_path / "mods"
    path.mkdir()
    return path


@pytest.fixture
def state(tmp_path):
    return ManagerState(tmp_path / "state" / "state.json")


@pytest.fixture
def session():
    return FakeSession()


def serve_registry(session: FakeSession, entries, etag="v1", version="2024.1"):
    """Register a registry document plus a zip download for each entry."""
    session.routes[REGISTRY_URL] = FakeResponse(
        200, {"version": version, "mods": entries}, headers={"ETag": etag}
    )
    for entry in entries:
        data = {k: v for k, v in entry.items() if k not in ("downloadUrl", "fileSize", "downloadCount")}
        session.routes[entry["downloadUrl"]] = FakeResponse(200, make_zip(data, {"mod.dll": b"\x00" * 10}))
