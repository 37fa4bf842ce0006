"""
Versioned Snapshot Store

Keeps the data directory as a git working copy synchronised with a remote
history. Every discovered change becomes its own commit, so drift between two
discovery passes is visible as a diff.
"""

import logging
import os
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .config import GitConfig

logger = logging.getLogger(__name__)

UNTRACKED = "untracked"
MODIFIED = "modified"
MISSING = "missing"

GENERIC_MESSAGE = "Configuration change detected."
SEARCH_PATH_MESSAGES = {
    UNTRACKED: "Search path added.",
    MODIFIED: "Search path modified.",
    MISSING: "Search path removed.",
}


class StoreError(Exception):
    """The working copy can no longer be trusted (clone, pull, commit or push failed)."""


class NonFastForwardError(StoreError):
    """The remote rejected a push because local and remote histories diverged."""


@dataclass
class PendingChanges:
    untracked: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.untracked or self.modified or self.missing)

    def by_kind(self) -> Dict[str, List[str]]:
        return {UNTRACKED: self.untracked, MODIFIED: self.modified, MISSING: self.missing}


def commit_message(path: str, kind: str) -> str:
    """
    Commit message for one changed path.

    ``snapshot/<env>/<host>/<app>.json`` -> ``"<app>, deployed to <env> env (<host>)."``
    (``removed from`` when the file is missing); search path records get
    added/modified/removed messages; anything else is a generic change.
    """
    parts = path.replace("\\", "/").split("/")
    if parts[0] == "snapshot" and len(parts) >= 4:
        app = os.path.splitext(parts[-1])[0]
        action = "removed from" if kind == MISSING else "deployed to"
        return f"{app}, {action} {parts[-3]} env ({parts[-2]})."
    if parts[0] == "config" and len(parts) >= 2 and parts[1] == "path":
        return SEARCH_PATH_MESSAGES[kind]
    return GENERIC_MESSAGE


def parse_status(output: str) -> PendingChanges:
    """Parse ``git status --porcelain=v1 -z`` output."""
    changes = PendingChanges()
    entries = output.split("\0")
    i = 0
    while i < len(entries):
        entry = entries[i]
        i += 1
        if len(entry) < 4:
            continue
        code, path = entry[:2], entry[3:]
        if code[0] in "RC":
            # the rename source follows as its own field
            i += 1
        if code == "??" or (code[0] == "A" and "D" not in code):
            # staged but never committed counts as new
            changes.untracked.append(path)
        elif "D" in code:
            changes.missing.append(path)
        else:
            changes.modified.append(path)
    return changes


class SnapshotStore:
    """
    Git-backed working directory.

    All operations run under one lock; concurrent git operations on a single
    working tree are unsafe.
    """

    def __init__(self, data_dir: Path, config: GitConfig, git: str = "git"):
        self.data_dir = Path(data_dir)
        self.config = config
        self.git_executable = git
        self._lock = threading.RLock()

    def _identity(self) -> List[str]:
        args = []
        if self.config.name:
            args += ["-c", f"user.name={self.config.name}"]
        if self.config.email:
            args += ["-c", f"user.email={self.config.email}"]
        return args

    def _git(self, *args: str, check: bool = True, cwd: Optional[Path] = None) -> subprocess.CompletedProcess:
        command = [self.git_executable, *self._identity(), *args]
        logger.debug(f"git {' '.join(args)}")
        try:
            result = subprocess.run(
                command,
                cwd=str(cwd or self.data_dir),
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as e:
            raise StoreError(f"Failed to run git: {e}") from e
        if check and result.returncode != 0:
            raise StoreError(f"git {' '.join(args)} failed ({result.returncode}): {result.stderr.strip()}")
        return result

    @property
    def is_initialized(self) -> bool:
        return (self.data_dir / ".git" / "HEAD").exists()

    def ensure_initialized(self) -> None:
        """Clone the remote into the data directory, or pull if it is already a working copy."""
        with self._lock:
            if self.is_initialized:
                self.pull()
                return
            self.data_dir.mkdir(parents=True, exist_ok=True)
            try:
                if self.config.remote:
                    logger.info(f"Cloning {self.config.remote} into {self.data_dir}")
                    self._git("clone", self.config.remote, ".")
                else:
                    logger.info(f"No remote configured, initialising local repository at {self.data_dir}")
                    self._git("init")
            except StoreError as e:
                logger.error(f"Failed to initialise data directory: {e}")
                raise

    def _branch(self) -> str:
        result = self._git("symbolic-ref", "--short", "HEAD", check=False)
        if result.returncode == 0 and result.stdout.strip():
            return result.stdout.strip()
        return self.config.branch

    def _has_remote(self) -> bool:
        remotes = self._git("remote").stdout.split()
        return "origin" in remotes

    def _rev(self, ref: str) -> Optional[str]:
        result = self._git("rev-parse", "--verify", "--quiet", ref, check=False)
        return result.stdout.strip() if result.returncode == 0 else None

    def pull(self) -> bool:
        """
        Fetch and merge the remote branch.

        Returns:
            True if the remote tip was not yet part of local history and has
            been merged.

        Raises:
            StoreError: fetch or merge failed.
        """
        with self._lock:
            if not self.config.remote or not self._has_remote():
                logger.debug("No remote repository configured, nothing to pull.")
                return False
            try:
                self._git("fetch", "origin")
                branch = self._branch()
                remote_ref = f"refs/remotes/origin/{branch}"
                remote_tip = self._rev(remote_ref)
                if remote_tip is None:
                    logger.info("Remote branch is empty, nothing to pull.")
                    return False
                local_tip = self._rev("HEAD")
                if local_tip is not None:
                    ancestor = self._git("merge-base", "--is-ancestor", remote_tip, local_tip, check=False)
                    if ancestor.returncode == 0:
                        logger.info("DataDir is up to date.")
                        return False
                    if ancestor.returncode != 1:
                        raise StoreError(f"git merge-base failed: {ancestor.stderr.strip()}")
                merge = self._git("merge", "--no-edit", remote_ref)
                status = merge.stdout.strip().splitlines()
                logger.info(
                    f"DataDir updated to: {self._rev('HEAD')[:7]}, with merge status: "
                    f"{status[-1] if status else 'merged'}."
                )
                return True
            except StoreError as e:
                logger.error(f"Pull failed: {e}")
                raise

    def pending_changes(self) -> PendingChanges:
        with self._lock:
            result = self._git("status", "--porcelain=v1", "-z", "--untracked-files=all")
            return parse_status(result.stdout)

    def commit_pending_changes(self) -> int:
        """
        Commit each changed path on its own, then push if a remote is configured.

        A push rejected as non-fast-forward is logged and left for the next
        successful pull to resolve; any other failure raises ``StoreError``.

        Returns:
            Number of commits created.
        """
        with self._lock:
            changes = self.pending_changes()
            if not changes:
                return 0
            commits = 0
            for kind, paths in changes.by_kind().items():
                if not paths:
                    continue
                logger.info(f"{len(paths)} configuration changes discovered ({kind}).")
                for path in paths:
                    self._git("add", "--all", "--", path)
                    self._git("commit", "--quiet", "-m", commit_message(path, kind))
                    commits += 1
                logger.info("Configuration changes committed to local git repository.")

            if self.config.remote:
                try:
                    self.push()
                except NonFastForwardError as e:
                    logger.warning(
                        "The remote repository is out of sync with the local repository. "
                        "Changes have not been synced to remote."
                    )
                    logger.error(f"Push rejected: {e}")
            return commits

    def push(self) -> None:
        with self._lock:
            if not self._has_remote():
                self._git("remote", "add", "origin", self.config.remote)
            branch = self._branch()
            result = self._git("push", "--porcelain", "--set-upstream", "origin", f"{branch}:{branch}", check=False)
            if result.returncode != 0:
                output = f"{result.stdout}\n{result.stderr}"
                if "[rejected]" in output or "non-fast-forward" in output or "fetch first" in output:
                    raise NonFastForwardError(output.strip())
                raise StoreError(f"git push failed ({result.returncode}): {result.stderr.strip()}")
            logger.info("Configuration pushed to remote git repository.")
