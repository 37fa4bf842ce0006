"""Tests for the versioned snapshot store."""

import shutil
import subprocess

import pytest

from drift_agent.config import GitConfig
from drift_agent.store import (
    GENERIC_MESSAGE,
    MISSING,
    MODIFIED,
    UNTRACKED,
    SnapshotStore,
    StoreError,
    commit_message,
    parse_status,
)

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git executable not available")


class TestCommitMessage:

    def test_snapshot_added(self):
        message = commit_message("snapshot/prod/host1/AppX.json", UNTRACKED)
        assert message == "AppX, deployed to prod env (host1)."

    def test_snapshot_modified(self):
        assert commit_message("snapshot/prod/host1/AppX.json", MODIFIED).endswith("deployed to prod env (host1).")

    def test_snapshot_removed(self):
        message = commit_message("snapshot/prod/host1/AppX.json", MISSING)
        assert message == "AppX, removed from prod env (host1)."

    @pytest.mark.parametrize("kind,expected", [
        (UNTRACKED, "Search path added."),
        (MODIFIED, "Search path modified."),
        (MISSING, "Search path removed."),
    ])
    def test_search_path(self, kind, expected):
        assert commit_message("config/path/host1.prod.web.json", kind) == expected

    def test_other_paths(self):
        assert commit_message("infrastructure/site/host1.corp.local.1.json", MODIFIED) == GENERIC_MESSAGE
        assert commit_message("config/default/assembly.startswith.json", UNTRACKED) == GENERIC_MESSAGE


def test_parse_status():
    output = "?? snapshot/a.json\0 M config/path/b.json\0 D c.json\0R  new.json\0old.json\0"

    changes = parse_status(output)

    assert changes.untracked == ["snapshot/a.json"]
    assert changes.modified == ["config/path/b.json", "new.json"]
    assert changes.missing == ["c.json"]
    assert not parse_status("")


def test_parse_status_staged_additions_are_new():
    changes = parse_status("A  config/path/host1.prod.web.json\0AM snapshot/b.json\0AD snapshot/c.json\0")

    assert changes.untracked == ["config/path/host1.prod.web.json", "snapshot/b.json"]
    assert changes.modified == []
    assert changes.missing == ["snapshot/c.json"]
    assert commit_message(changes.untracked[0], UNTRACKED) == "Search path added."


def _git(cwd, *args):
    return subprocess.run(["git", *args], cwd=str(cwd), capture_output=True, text=True, check=True).stdout


def _git_config(remote=None):
    return GitConfig(remote=remote, name="Drift Agent", email="agent@example.com")


def _write(root, relative, text):
    file = root / relative
    file.parent.mkdir(parents=True, exist_ok=True)
    file.write_text(text)
    return file


@pytest.fixture
def remote(tmp_path):
    path = tmp_path / "remote.git"
    _git(tmp_path, "init", "--bare", str(path))
    return path


@requires_git
class TestLocalStore:

    def test_init_and_commit_each_path(self, tmp_path):
        store = SnapshotStore(tmp_path / "data", _git_config())
        store.ensure_initialized()
        _write(store.data_dir, "snapshot/prod/host1/AppX.json", "{}\n")
        _write(store.data_dir, "config/path/host1.prod.web.json", "{}\n")

        assert store.commit_pending_changes() == 2

        log = _git(store.data_dir, "log", "--format=%s").splitlines()
        assert sorted(log) == ["AppX, deployed to prod env (host1).", "Search path added."]
        assert not store.pending_changes()
        assert store.pull() is False

    def test_removal_commit(self, tmp_path):
        store = SnapshotStore(tmp_path / "data", _git_config())
        store.ensure_initialized()
        file = _write(store.data_dir, "snapshot/prod/host1/AppX.json", "{}\n")
        store.commit_pending_changes()
        file.unlink()

        assert store.pending_changes().missing == ["snapshot/prod/host1/AppX.json"]
        assert store.commit_pending_changes() == 1
        assert _git(store.data_dir, "log", "-1", "--format=%s").strip() == "AppX, removed from prod env (host1)."

    def test_nothing_to_commit(self, tmp_path):
        store = SnapshotStore(tmp_path / "data", _git_config())
        store.ensure_initialized()

        assert store.commit_pending_changes() == 0


@requires_git
class TestRemoteStore:

    def test_clone_failure_is_fatal(self, tmp_path):
        store = SnapshotStore(tmp_path / "data", _git_config(str(tmp_path / "missing.git")))

        with pytest.raises(StoreError):
            store.ensure_initialized()

    def test_push_and_pull(self, tmp_path, remote):
        first = SnapshotStore(tmp_path / "first", _git_config(str(remote)))
        first.ensure_initialized()
        _write(first.data_dir, "snapshot/prod/host1/AppX.json", '{"v": 1}\n')
        first.commit_pending_changes()

        second = SnapshotStore(tmp_path / "second", _git_config(str(remote)))
        second.ensure_initialized()
        assert (second.data_dir / "snapshot/prod/host1/AppX.json").read_text() == '{"v": 1}\n'

        _write(first.data_dir, "snapshot/prod/host1/AppX.json", '{"v": 2}\n')
        first.commit_pending_changes()

        assert second.pull() is True
        assert (second.data_dir / "snapshot/prod/host1/AppX.json").read_text() == '{"v": 2}\n'
        assert second.pull() is False

    def test_diverged_push_is_recovered_by_pull(self, tmp_path, remote):
        first = SnapshotStore(tmp_path / "first", _git_config(str(remote)))
        first.ensure_initialized()
        _write(first.data_dir, "config/default/assembly.startswith.json", '["Contoso."]\n')
        first.commit_pending_changes()
        second = SnapshotStore(tmp_path / "second", _git_config(str(remote)))
        second.ensure_initialized()

        _write(first.data_dir, "snapshot/prod/host1/AppA.json", "{}\n")
        first.commit_pending_changes()
        _write(second.data_dir, "snapshot/prod/host2/AppB.json", "{}\n")

        # rejected as non-fast-forward, the local commit stays
        assert second.commit_pending_changes() == 1
        assert "AppB" in _git(second.data_dir, "log", "-1", "--format=%s")

        assert second.pull() is True
        assert (second.data_dir / "snapshot/prod/host1/AppA.json").exists()
        second.push()

        assert first.pull() is True
        assert (first.data_dir / "snapshot/prod/host2/AppB.json").exists()
