"""
Version control capability.

The engine only needs six things from version control, captured by the
VersionControl protocol. GitVCS implements them with the ``git`` command
line; tests use an in-memory fake.
"""

import hashlib
import logging
import subprocess
from pathlib import Path
from typing import Optional, Protocol

from .workspace import resolve_context_path


logger = logging.getLogger("phaserun.vcs")


class VersionControlError(RuntimeError):
    """A version control command failed."""


class VersionControl(Protocol):
    def is_repository(self) -> bool: ...

    def changed_files(self) -> set[str]:
        """Modified, staged and untracked (non-ignored) paths, relative to the root."""
        ...

    def commit(self, message: str, files: list[str]) -> str:
        """Commit ``files`` and return the new commit id."""
        ...

    def head(self) -> str: ...

    def hard_reset(self, ref: str) -> None:
        """Restore the tree to ``ref`` and remove untracked files."""
        ...

    def revert_files(self, files: list[str]) -> None:
        """Discard working tree changes to ``files``: restore tracked ones, delete untracked ones."""
        ...


class GitVCS:
    """VersionControl backed by the git CLI, rooted at one project directory."""

    def __init__(self, root: Path, binary: str = "git", timeout: float = 60.0):
        self.root = Path(root)
        self.binary = binary
        self.timeout = timeout

    def _run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        try:
            result = subprocess.run(
                [self.binary, *args],
                cwd=str(self.root),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise VersionControlError(f"{self.binary} not found") from e
        except subprocess.TimeoutExpired as e:
            raise VersionControlError(f"git {' '.join(args)} timed out after {self.timeout}s") from e

        if check and result.returncode != 0:
            raise VersionControlError(
                f"git {' '.join(args)} failed (exit {result.returncode}): {result.stderr.strip()}"
            )
        return result

    def is_repository(self) -> bool:
        try:
            result = self._run("rev-parse", "--is-inside-work-tree", check=False)
        except VersionControlError:
            return False
        return result.returncode == 0 and result.stdout.strip() == "true"

    def changed_files(self) -> set[str]:
        files: set[str] = set()
        for args in (
            ("diff", "--name-only", "--relative"),
            ("diff", "--name-only", "--relative", "--staged"),
            ("ls-files", "--others", "--exclude-standard"),
        ):
            output = self._run(*args).stdout
            files.update(line.strip() for line in output.splitlines() if line.strip())
        return files

    def commit(self, message: str, files: list[str]) -> str:
        # -A picks up deletions as well as edits
        self._run("add", "-A", "--", *files)
        self._run("commit", "-m", message, "--", *files)
        return self._run("rev-parse", "--short", "HEAD").stdout.strip()

    def head(self) -> str:
        return self._run("rev-parse", "HEAD").stdout.strip()

    def hard_reset(self, ref: str) -> None:
        self._run("reset", "--hard", ref)
        self._run("clean", "-fd")

    def revert_files(self, files: list[str]) -> None:
        if not files:
            return
        in_head = set(self._run("ls-tree", "-r", "--name-only", "HEAD", "--", *files).stdout.splitlines())
        tracked = [f for f in files if f in in_head]
        created = [f for f in files if f not in in_head]
        if tracked:
            # HEAD as the source also drops anything staged
            self._run("checkout", "HEAD", "--", *tracked)
        if created:
            self._run("reset", "-q", "--", *created)
            self._run("clean", "-f", "--", *created)


def hash_file_content(path: Path) -> Optional[str]:
    """First 16 hex chars of the SHA-256 of a file, or None if it is gone."""
    try:
        data = Path(path).read_bytes()
    except (FileNotFoundError, IsADirectoryError):
        return None
    return hashlib.sha256(data).hexdigest()[:16]


def fingerprint_changes(vcs, root: Path) -> dict[str, str]:
    """
    Changed files mapped to their content hash ("deleted" when gone).

    Comparing two fingerprints catches edits to files that were already
    dirty, which a plain set difference of changed paths would miss.
    """
    return {path: hash_file_content(Path(root) / path) or "deleted" for path in vcs.changed_files()}


def changed_between(before: dict[str, str], after: dict[str, str]) -> list[str]:
    """Paths whose fingerprint differs between two snapshots."""
    changed = {path for path, digest in after.items() if before.get(path) != digest}
    changed |= {path for path in before if path not in after}
    return sorted(changed)


def save_dirty_files(root: Path, changes: dict[str, str]) -> dict[str, Optional[bytes]]:
    """Contents of uncommitted files (None for deletions), for restore_dirty_files()."""
    saved: dict[str, Optional[bytes]] = {}
    for path, digest in changes.items():
        if digest == "deleted":
            saved[path] = None
            continue
        try:
            saved[path] = (Path(root) / path).read_bytes()
        except FileNotFoundError:
            saved[path] = None
    return saved


def restore_dirty_files(root: Path, saved: dict[str, Optional[bytes]]) -> None:
    """
    Put back uncommitted work after a hard reset.

    Raises:
        OSError: If a file cannot be written or removed
    """
    for path, data in saved.items():
        target = Path(root) / path
        if data is None:
            target.unlink(missing_ok=True)
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)


def hash_modified_files(files: list[str], project_root: Path, workspace_root: Path) -> dict[str, str]:
    """
    Fingerprint each modified file at failure time.

    Deleted files are recorded as "deleted". Paths that resolve outside the
    permitted roots are left out.
    """
    hashes: dict[str, str] = {}
    for file_path in files:
        try:
            resolved = resolve_context_path(file_path, project_root, workspace_root)
        except ValueError as e:
            logger.warning(f"Not fingerprinting {file_path}: {e}")
            continue
        hashes[file_path] = hash_file_content(resolved) or "deleted"
    return hashes
