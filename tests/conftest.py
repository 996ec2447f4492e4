from __future__ import annotations

import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Sequence

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from brir.sinks import MemorySink  # noqa: E402
from brir.tools.vcs import CommandOutcome, RepositoryProbe  # noqa: E402


@dataclass(slots=True)
class FakeRunner:
    """Command runner double that records calls and returns a canned outcome."""

    outcome: CommandOutcome | None = None
    error: BaseException | None = None
    calls: List[tuple[str, ...]] = field(default_factory=list)

    async def __call__(self, command: Sequence[str], cwd: Path, timeout: float) -> CommandOutcome:
        self.calls.append(tuple(command))
        if self.error is not None:
            raise self.error
        return self.outcome or CommandOutcome(returncode=0, stdout="true\n")


@pytest.fixture()
def fake_runner() -> type[FakeRunner]:
    return FakeRunner


@pytest.fixture()
def sink() -> MemorySink:
    return MemorySink()


@pytest.fixture()
def git_probe() -> RepositoryProbe:
    return RepositoryProbe(runner=FakeRunner(outcome=CommandOutcome(returncode=0, stdout="true\n")))


@pytest.fixture()
def no_git_probe() -> RepositoryProbe:
    return RepositoryProbe(
        runner=FakeRunner(outcome=CommandOutcome(returncode=128, stderr="fatal: not a git repository"))
    )


@pytest.fixture()
def git_worktree(tmp_path: Path) -> Path:
    """Create an empty git work tree under ``tmp_path``."""

    repo_root = tmp_path / "worktree"
    repo_root.mkdir()
    subprocess.run(["git", "init"], cwd=repo_root, check=True, capture_output=True)
    return repo_root
