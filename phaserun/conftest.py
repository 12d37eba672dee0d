"""
Shared fixtures and fakes for the phaserun tests.

FakeRuntime plays scripted agent runs; FakeVCS is an in-memory version
control over a real temporary directory, so commits, diffs and hard resets
behave like git without needing git.
"""

from pathlib import Path
from typing import Callable, Union

import pytest

from .schemas import EngineEvent
from .store import PhaseStore
from .vcs import VersionControlError


SAMPLE_PLAN = """# Plan: Add a token bucket rate limiter
**ID:** plan-007

## Objective
Throttle outgoing API calls with a token bucket so bursts stop tripping 429s.

## Changes
- `src/client/http.py`: wrap every request in `limiter.acquire()`
- `src/client/retry.py`: back off on 429 responses
- **`src/limiter.py`**: new TokenBucket class
  - `acquire()` blocks until a token is free
  - refill rate comes from `RATE_LIMIT_PER_SEC`
- `tests/test_limiter.py`: unit tests for TokenBucket

## Risks
- The limiter may slow the test suite down.
"""

NO_FILES_PLAN = """# Plan: Tidy the docs
**ID:** plan-008

## Objective
Make the README easier to follow.

## Changes
Rewrite the introduction and shorten the install section.
"""


# =============================================================================
# FAKE AGENT RUNTIME
# =============================================================================

Script = Union[str, list[EngineEvent], Callable]


class FakeRuntime:
    """
    AgentRuntime that replays scripts, one per invoke().

    A script is final text, a list of EngineEvents, or a callable taking the
    InvokeRequest and returning either (it may also touch files, like a real
    agent would). With no scripts left every run returns "ok".
    """

    def __init__(self, *scripts: Script):
        self.scripts = list(scripts)
        self.requests = []

    def add(self, *scripts: Script) -> None:
        self.scripts.extend(scripts)

    async def invoke(self, request):
        self.requests.append(request)
        script = self.scripts.pop(0) if self.scripts else "ok"
        if callable(script):
            script = script(request)
        if isinstance(script, str):
            script = [EngineEvent(type="text_final", text=script)]
        for event in script:
            yield event


def final(text: str) -> list[EngineEvent]:
    return [EngineEvent(type="text_final", text=text)]


def error(message: str) -> list[EngineEvent]:
    return [EngineEvent(type="error", message=message)]


def writes(root: Path, files: dict[str, str], text: str = "done", fail: str = "") -> Callable:
    """Script that writes files under ``root`` and then succeeds (or fails)."""
    def run(request):
        for rel, content in files.items():
            path = Path(root) / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
        return error(fail) if fail else final(text)
    return run


# =============================================================================
# FAKE VERSION CONTROL
# =============================================================================

class FakeVCS:
    """In-memory commits over the files under ``root``."""

    def __init__(self, root: Path, repository: bool = True):
        self.root = Path(root)
        self.repository = repository
        self.commits: list[tuple[str, str, list[str]]] = []
        self.resets: list[str] = []
        self.reverts: list[list[str]] = []
        self.fail_reset = False
        self.fail_commit = False
        self._snapshots = {"c0": self._scan()}
        self._head = "c0"

    def _scan(self) -> dict[str, bytes]:
        if not self.root.exists():
            return {}
        return {
            path.relative_to(self.root).as_posix(): path.read_bytes()
            for path in self.root.rglob("*")
            if path.is_file()
        }

    def is_repository(self) -> bool:
        return self.repository

    def changed_files(self) -> set[str]:
        base = self._snapshots[self._head]
        current = self._scan()
        changed = {p for p, data in current.items() if base.get(p) != data}
        changed |= {p for p in base if p not in current}
        return changed

    def commit(self, message: str, files: list[str]) -> str:
        if self.fail_commit:
            raise VersionControlError("commit refused")
        snapshot = dict(self._snapshots[self._head])
        for rel in files:
            path = self.root / rel
            if path.exists():
                snapshot[rel] = path.read_bytes()
            else:
                snapshot.pop(rel, None)
        commit_id = f"c{len(self._snapshots)}"
        self._snapshots[commit_id] = snapshot
        self._head = commit_id
        self.commits.append((commit_id, message, list(files)))
        return commit_id

    def head(self) -> str:
        return self._head

    def hard_reset(self, ref: str) -> None:
        if self.fail_reset:
            raise VersionControlError("reset refused")
        snapshot = self._snapshots[ref]
        for rel in self._scan():
            if rel not in snapshot:
                (self.root / rel).unlink()
        for rel, data in snapshot.items():
            path = self.root / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        self._head = ref
        self.resets.append(ref)

    def revert_files(self, files: list[str]) -> None:
        snapshot = self._snapshots[self._head]
        for rel in files:
            path = self.root / rel
            if rel in snapshot:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(snapshot[rel])
            else:
                path.unlink(missing_ok=True)
        self.reverts.append(list(files))


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def project_root(tmp_path):
    root = tmp_path / "project"
    (root / "src" / "client").mkdir(parents=True)
    (root / "src" / "client" / "http.py").write_text("def get(url):\n    pass\n")
    (root / "src" / "client" / "retry.py").write_text("RETRIES = 3\n")
    return root


@pytest.fixture
def workspace_root(tmp_path):
    root = tmp_path / "workspace"
    (root / "plans").mkdir(parents=True)
    (root / "TOOLS.md").write_text("# Tools\n- git\n")
    return root


@pytest.fixture
def plan_path(workspace_root):
    path = workspace_root / "plans" / "plan-007-rate-limiter.md"
    path.write_text(SAMPLE_PLAN)
    return path


@pytest.fixture
def store(tmp_path):
    return PhaseStore(tmp_path / "state")


@pytest.fixture
def fake_vcs(project_root):
    return FakeVCS(project_root)
