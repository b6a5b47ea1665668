import json

import pytest
from click.testing import CliRunner

from modman_core.cli import main
from modman_core.state import ManagerState

from tests.conftest import manifest, write_manifest


@pytest.fixture
def run(tmp_path, mods_dir):
    runner = CliRunner()
    state_file = tmp_path / "state.json"

    def invoke(*args):
        return runner.invoke(
            main,
            ["--state-file", str(state_file), "--mods-dir", str(mods_dir), *args],
            catch_exceptions=False,
        )

    invoke.state_file = state_file
    return invoke


def test_list_offline(run, mods_dir):
    write_manifest(mods_dir, "core", manifest("alice/core", "1.0"))
    result = run("list", "--offline")
    assert result.exit_code == 0
    assert "alice/core" in result.output


def test_list_empty(run):
    result = run("list", "--offline")
    assert result.exit_code == 0
    assert "No mods installed" in result.output


def test_disable_then_enable(run, mods_dir):
    write_manifest(mods_dir, "app", manifest("alice/app", dependencies=["bob/lib"]))
    write_manifest(mods_dir, "lib", manifest("bob/lib"))

    result = run("disable", "bob/lib")
    assert result.exit_code == 0
    assert "alice/app" in result.output
    assert not ManagerState.open(run.state_file).is_enabled("bob/lib")

    result = run("enable", "alice/app")
    assert result.exit_code == 0
    assert ManagerState.open(run.state_file).is_enabled("bob/lib")


def test_enable_unknown_mod_fails(run):
    result = run("enable", "nobody/nothing")
    assert result.exit_code == 1


def test_mods_dir_is_persisted(run, mods_dir):
    run("list", "--offline")
    assert ManagerState.open(run.state_file).install_root == str(mods_dir)


def test_export(run, mods_dir, tmp_path):
    write_manifest(mods_dir, "core", manifest("alice/core"))
    out = tmp_path / "export.json"
    result = run("export", str(out))
    assert result.exit_code == 0
    assert json.loads(out.read_text()) == ["alice/core"]
