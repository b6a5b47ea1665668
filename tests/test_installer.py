import threading
from types import SimpleNamespace

import pytest
import requests

from modman_core.downloader import Downloader
from modman_core.errors import BusyError, ModManagerError, ModNotFoundError, NetworkError, ResolutionError
from modman_core.events import INSTALL_COMPLETE, INSTALL_PROGRESS, EventEmitter
from modman_core.installer import InstallPhase, InstallPipeline, OutcomeStatus, safe_dirname
from modman_core.local_db import LocalDatabase
from modman_core.models import ErrorKind
from modman_core.remote_db import RemoteDatabase, parse_registry
from modman_core.resolver import DependencyResolver
from modman_core.validate import validate_mods

from tests.conftest import FakeResponse, make_zip, manifest, registry_entry, serve_registry, write_manifest


@pytest.fixture
def env(mods_dir, state, session):
    local = LocalDatabase(mods_dir, state, validator=validate_mods)
    local.refresh()
    remote = RemoteDatabase()
    events = EventEmitter()
    seen = []
    events.subscribe(lambda event, payload: seen.append((event, payload)))
    pipeline = InstallPipeline(local, Downloader(session=session, timeout=5), events, max_workers=2)
    return SimpleNamespace(
        local=local,
        remote=remote,
        resolver=DependencyResolver(local, remote),
        pipeline=pipeline,
        session=session,
        events=seen,
        mods_dir=mods_dir,
    )


def publish(env, *entries):
    serve_registry(env.session, list(entries))
    env.remote.load(parse_registry({"mods": list(entries)}))


def leftovers(mods_dir):
    staging = mods_dir / ".staging"
    hidden = [p.name for p in mods_dir.iterdir() if p.name.startswith(".") and p.name != ".staging"]
    staged = list(staging.iterdir()) if staging.exists() else []
    return hidden + staged


def test_install_single_mod(env):
    publish(env, registry_entry("alice/core", "1.2"))
    report = env.pipeline.execute(env.resolver.plan_install("alice/core"))

    outcome = report.get("alice/core")
    assert outcome.status == OutcomeStatus.INSTALLED
    assert outcome.version == "1.2"

    installed = env.local.get("alice/core")
    assert installed.enabled
    assert installed.install_path == env.mods_dir / "alice.core"
    assert (installed.install_path / "manifest.json").is_file()
    assert (installed.install_path / "mod.dll").is_file()
    assert env.local.state.get_mod("alice/core").version == "1.2"
    assert leftovers(env.mods_dir) == []


def test_events_are_emitted(env):
    publish(env, registry_entry("alice/core"))
    env.pipeline.execute(env.resolver.plan_install("alice/core"))

    phases = [p["phase"] for e, p in env.events if e == INSTALL_PROGRESS and "downloaded" not in p]
    assert phases == [
        InstallPhase.DOWNLOAD,
        InstallPhase.VERIFY,
        InstallPhase.EXTRACT,
        InstallPhase.REGISTER,
        InstallPhase.DONE,
    ]
    completes = [p for e, p in env.events if e == INSTALL_COMPLETE]
    assert completes[0]["outcome"].status == OutcomeStatus.INSTALLED


def test_dependencies_installed_with_target(env):
    publish(
        env,
        registry_entry("alice/app", dependencies=["bob/lib"]),
        registry_entry("bob/lib"),
    )
    report = env.pipeline.execute(env.resolver.plan_install("alice/app"))
    assert [o.identity for o in report.outcomes] == ["bob/lib", "alice/app"]
    assert report.ok
    assert not env.local.get("alice/app").errors


def test_failed_download_does_not_block_others(env):
    publish(
        env,
        registry_entry("alice/app", dependencies=["bob/lib", "carol/util"]),
        registry_entry("bob/lib"),
        registry_entry("carol/util"),
    )
    env.session.routes[env.remote.get("bob/lib").download_url] = FakeResponse(500)

    report = env.pipeline.execute(env.resolver.plan_install("alice/app"))
    assert report.get("bob/lib").status == OutcomeStatus.FAILED
    assert report.get("bob/lib").error_kind == ErrorKind.NETWORK
    assert report.get("carol/util").status == OutcomeStatus.INSTALLED
    assert report.get("alice/app").status == OutcomeStatus.INSTALLED
    assert ErrorKind.MISSING_DEPENDENCY in env.local.get("alice/app").errors
    assert leftovers(env.mods_dir) == []


def test_failed_update_keeps_old_version_and_flag(env):
    write_manifest(env.mods_dir, "alice.core", manifest("alice/core", "1.0"))
    env.local.state.set_enabled("alice/core", False)
    env.local.refresh()
    publish(env, registry_entry("alice/core", "2.0"))
    env.session.routes[env.remote.get("alice/core").download_url] = FakeResponse(503)

    report = env.pipeline.execute(env.resolver.plan_update("alice/core"))
    assert report.get("alice/core").status == OutcomeStatus.FAILED

    current = env.local.get("alice/core")
    assert str(current.version) == "1.0"
    assert not current.enabled
    assert (env.mods_dir / "alice.core" / "manifest.json").is_file()
    assert leftovers(env.mods_dir) == []


def test_update_replaces_directory_and_keeps_flag(env):
    old_dir = write_manifest(env.mods_dir, "custom-dir", manifest("alice/core", "1.0"))
    (old_dir / "stale.txt").write_text("old")
    env.local.state.set_enabled("alice/core", False)
    env.local.refresh()
    publish(env, registry_entry("alice/core", "2.0"))

    report = env.pipeline.execute(env.resolver.plan_update("alice/core"))
    assert report.get("alice/core").status == OutcomeStatus.UPDATED

    current = env.local.get("alice/core")
    assert str(current.version) == "2.0"
    assert current.install_path == old_dir
    assert not current.enabled
    assert not (old_dir / "stale.txt").exists()
    assert leftovers(env.mods_dir) == []


def test_corrupt_archive(env):
    publish(env, registry_entry("alice/core"))
    good = make_zip(manifest("alice/core"), {"big.bin": b"x" * 4096})
    env.session.routes[env.remote.get("alice/core").download_url] = FakeResponse(200, good[:200])

    report = env.pipeline.execute(env.resolver.plan_install("alice/core"))
    assert report.get("alice/core").error_kind == ErrorKind.CORRUPT_ARCHIVE
    assert env.local.get("alice/core") is None
    assert not (env.mods_dir / "alice.core").exists()
    assert leftovers(env.mods_dir) == []


def test_identity_mismatch(env):
    publish(env, registry_entry("alice/core"))
    env.session.routes[env.remote.get("alice/core").download_url] = FakeResponse(
        200, make_zip(manifest("mallory/fake"))
    )
    report = env.pipeline.execute(env.resolver.plan_install("alice/core"))
    assert report.get("alice/core").error_kind == ErrorKind.IDENTITY_MISMATCH
    assert env.local.get("mallory/fake") is None


def test_archive_without_manifest(env):
    publish(env, registry_entry("alice/core"))
    env.session.routes[env.remote.get("alice/core").download_url] = FakeResponse(
        200, make_zip(files={"readme.txt": "hi"})
    )
    report = env.pipeline.execute(env.resolver.plan_install("alice/core"))
    assert report.get("alice/core").error_kind == ErrorKind.PARSE


def test_nested_archive_folder(env):
    publish(env, registry_entry("alice/core"))
    env.session.routes[env.remote.get("alice/core").download_url] = FakeResponse(
        200, make_zip(manifest("alice/core"), {"plugin.dll": b"1"}, prefix="AliceCore-1.0/")
    )
    env.pipeline.execute(env.resolver.plan_install("alice/core"))
    assert (env.mods_dir / "alice.core" / "plugin.dll").is_file()


def test_busy_identity(env):
    publish(env, registry_entry("alice/core"))
    plan = env.resolver.plan_install("alice/core")

    with env.pipeline.claim("alice/core"):
        assert env.pipeline.is_busy("alice/core")
        with pytest.raises(BusyError):
            with env.pipeline.claim("alice/core"):
                pass
        report = env.pipeline.execute(plan)

    assert report.get("alice/core").error_kind == ErrorKind.BUSY
    assert not env.pipeline.is_busy("alice/core")


def test_cancelled_install_leaves_nothing(env):
    publish(env, registry_entry("alice/core"))
    cancel = threading.Event()
    cancel.set()

    report = env.pipeline.execute(env.resolver.plan_install("alice/core"), cancel_event=cancel)
    outcome = report.get("alice/core")
    assert outcome.status == OutcomeStatus.CANCELLED
    assert outcome.error_kind == ErrorKind.CANCELLED
    assert not (env.mods_dir / "alice.core").exists()
    assert leftovers(env.mods_dir) == []


def test_cancel_during_download_keeps_previous_version(env):
    write_manifest(env.mods_dir, "alice.core", manifest("alice/core", "1.0"))
    env.local.refresh()
    publish(env, registry_entry("alice/core", "2.0"))
    cancel = threading.Event()
    env.events.clear()

    def cancel_on_progress(event, payload):
        if event == INSTALL_PROGRESS and payload["phase"] == InstallPhase.DOWNLOAD:
            cancel.set()

    env.pipeline.events.subscribe(cancel_on_progress)
    report = env.pipeline.execute(env.resolver.plan_update("alice/core"), cancel_event=cancel)

    assert report.get("alice/core").status == OutcomeStatus.CANCELLED
    assert str(env.local.get("alice/core").version) == "1.0"
    assert leftovers(env.mods_dir) == []


def test_execute_refuses_plan_with_errors(env):
    publish(env, registry_entry("alice/app", dependencies=["ghost/dep"]))
    plan = env.resolver.plan_install("alice/app")
    with pytest.raises(ResolutionError):
        env.pipeline.execute(plan)

    report = env.pipeline.execute(plan, force=True)
    assert report.get("alice/app").status == OutcomeStatus.INSTALLED
    assert ErrorKind.MISSING_DEPENDENCY in env.local.get("alice/app").errors


def test_satisfied_entries(env):
    write_manifest(env.mods_dir, "bob.lib", manifest("bob/lib"))
    env.local.refresh()
    publish(env, registry_entry("alice/app", dependencies=["bob/lib"]), registry_entry("bob/lib"))

    report = env.pipeline.execute(env.resolver.plan_install("alice/app"))
    assert report.get("bob/lib").status == OutcomeStatus.ALREADY_SATISFIED
    assert report.get("alice/app").status == OutcomeStatus.INSTALLED


def test_install_archive(env, tmp_path):
    archive = tmp_path / "download.zip"
    archive.write_bytes(make_zip(manifest("alice/local", "0.3")))

    outcome = env.pipeline.install_archive(archive)
    assert outcome.status == OutcomeStatus.INSTALLED
    assert env.local.get("alice/local").enabled
    assert archive.exists()
    assert leftovers(env.mods_dir) == []


def test_install_archive_corrupt(env, tmp_path):
    archive = tmp_path / "download.zip"
    archive.write_bytes(b"PK\x03\x04 not really a zip")
    outcome = env.pipeline.install_archive(archive)
    assert outcome.error_kind == ErrorKind.CORRUPT_ARCHIVE


def test_uninstall_flags_dependents(env):
    write_manifest(env.mods_dir, "d", manifest("x/d"))
    write_manifest(env.mods_dir, "e", manifest("x/e", dependencies=["x/d"]))
    env.local.refresh()

    dependents = env.pipeline.uninstall("x/d")
    assert dependents == ["x/e"]
    assert not (env.mods_dir / "d").exists()
    assert env.local.get("x/d") is None

    survivor = env.local.get("x/e")
    assert survivor is not None
    assert survivor.errors[ErrorKind.MISSING_DEPENDENCY] == ("x/d",)
    assert (env.mods_dir / "e").is_dir()


def test_uninstall_unknown(env):
    with pytest.raises(ModNotFoundError):
        env.pipeline.uninstall("nobody/nothing")


def test_uninstall_path_removes_broken_entry(env):
    broken = write_manifest(env.mods_dir, "broken", "{oops")
    valid = write_manifest(env.mods_dir, "good", manifest("alice/core"))
    env.local.refresh()

    with pytest.raises(ModManagerError):
        env.pipeline.uninstall_path(valid)

    env.pipeline.uninstall_path(broken)
    assert not broken.exists()
    assert env.local.get_by_path(broken) is None
    assert len(env.local) == 1


def test_safe_dirname():
    assert safe_dirname("alice/core") == "alice.core"
    assert safe_dirname("../evil") == "evil"
    assert safe_dirname("a b:c") == "a.b.c"


def test_install_does_not_replace_directory_of_another_mod(env):
    other = write_manifest(env.mods_dir, "alice.core", manifest("bob/other"))
    (other / "precious.dat").write_text("keep me")
    env.local.refresh()
    publish(env, registry_entry("alice/core"))

    report = env.pipeline.execute(env.resolver.plan_install("alice/core"))
    assert report.get("alice/core").status == OutcomeStatus.INSTALLED

    assert (other / "precious.dat").read_text() == "keep me"
    assert env.local.get("bob/other").install_path == other
    assert env.local.get("alice/core").install_path == env.mods_dir / "alice.core-2"

    env.local.refresh()
    assert env.local.get("bob/other").install_path == other
    assert (env.local.get("alice/core").install_path / "mod.dll").is_file()
    assert leftovers(env.mods_dir) == []


def test_install_skips_unmanaged_folder(env):
    folder = env.mods_dir / "alice.core"
    folder.mkdir()
    (folder / "notes.txt").write_text("hand installed")
    env.local.refresh()
    publish(env, registry_entry("alice/core"))

    report = env.pipeline.execute(env.resolver.plan_install("alice/core"))
    assert report.get("alice/core").ok
    assert (folder / "notes.txt").read_text() == "hand installed"
    assert env.local.get("alice/core").install_path == env.mods_dir / "alice.core-2"


def test_identities_with_same_dirname_get_separate_folders(env):
    publish(env, registry_entry("a/b"), registry_entry("a.b"))

    env.pipeline.execute(env.resolver.plan_install("a/b"))
    env.pipeline.execute(env.resolver.plan_install("a.b"))

    first = env.local.get("a/b").install_path
    second = env.local.get("a.b").install_path
    assert first != second
    assert {first.name, second.name} == {"a.b", "a.b-2"}


class BrokenStream(FakeResponse):
    """Sends one chunk of the body and then fails."""

    def __init__(self, body, error):
        super().__init__(200, body, headers={"content-length": str(len(body))})
        self.error = error

    def iter_content(self, chunk_size=1):
        yield self.content[: len(self.content) // 2]
        raise self.error


@pytest.mark.parametrize(
    "error",
    [requests.Timeout("read timed out"), requests.ConnectionError("connection reset")],
)
def test_interrupted_download_keeps_previous_version(env, error):
    write_manifest(env.mods_dir, "alice.core", manifest("alice/core", "1.0"))
    env.local.refresh()
    publish(env, registry_entry("alice/core", "2.0"))
    url = env.remote.get("alice/core").download_url
    env.session.routes[url] = BrokenStream(env.session.routes[url].content, error)

    report = env.pipeline.execute(env.resolver.plan_update("alice/core"))
    outcome = report.get("alice/core")
    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.error_kind == ErrorKind.NETWORK

    current = env.local.get("alice/core")
    assert str(current.version) == "1.0"
    assert (env.mods_dir / "alice.core" / "manifest.json").is_file()
    assert leftovers(env.mods_dir) == []


def test_interrupted_download_removes_partial_file(tmp_path, session):
    url = "https://cdn.test/big.zip"
    session.routes[url] = BrokenStream(b"x" * 4096, requests.Timeout("read timed out"))
    downloader = Downloader(session=session, timeout=1)

    with pytest.raises(NetworkError):
        downloader.download(url, tmp_path, "big.zip")
    assert list(tmp_path.iterdir()) == []
