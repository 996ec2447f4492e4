"""Version-control detection for the review prerequisites.

The probe answers a single question, whether a directory sits inside a git
work tree, and never raises: timeouts, missing binaries, and non-zero exits
are all reported as :attr:`RepoStatus.NO`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Sequence

from ..memory.schema import PipelineState, RepoStatus

DEFAULT_PROBE_TIMEOUT = 5.0
LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class CommandOutcome:
    """Exit status and decoded output of an external command."""

    returncode: int
    stdout: str = ""
    stderr: str = ""


CommandRunner = Callable[[Sequence[str], Path, float], Awaitable[CommandOutcome]]


async def run_command(command: Sequence[str], cwd: Path, timeout: float) -> CommandOutcome:
    """Run ``command`` in ``cwd``; raise :class:`asyncio.TimeoutError` past ``timeout``."""
    process = await asyncio.create_subprocess_exec(
        *command,
        cwd=str(cwd),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise
    return CommandOutcome(
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace") if stdout else "",
        stderr=stderr.decode("utf-8", errors="replace") if stderr else "",
    )


class RepositoryProbe:
    """Lazily determine whether a directory is under git control."""

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_PROBE_TIMEOUT,
        runner: CommandRunner = run_command,
    ) -> None:
        self.timeout = timeout
        self._runner = runner

    async def is_repo(self, directory: Path | str) -> RepoStatus:
        """Return :attr:`RepoStatus.YES` when ``directory`` is inside a work tree."""
        root = Path(directory)
        try:
            outcome = await self._runner(
                ["git", "rev-parse", "--is-inside-work-tree"],
                root,
                self.timeout,
            )
        except asyncio.TimeoutError:
            LOGGER.warning("git probe timed out after %.1fs in %s", self.timeout, root)
            return RepoStatus.NO
        except OSError as error:
            LOGGER.info("git probe unavailable in %s: %s", root, error)
            return RepoStatus.NO
        if outcome.returncode == 0 and outcome.stdout.strip() == "true":
            return RepoStatus.YES
        return RepoStatus.NO

    async def ensure(self, state: PipelineState, directory: Path | str) -> RepoStatus:
        """Probe once per pipeline, memoising the answer on ``state``."""
        if state.is_git_repo is RepoStatus.UNKNOWN:
            state.is_git_repo = await self.is_repo(directory)
        return state.is_git_repo


__all__ = ["CommandOutcome", "CommandRunner", "DEFAULT_PROBE_TIMEOUT", "RepositoryProbe", "run_command"]
