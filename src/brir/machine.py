"""Phase state machine for orchestrator sessions.

The machine validates requested transitions against the per-phase alias table,
checks prerequisites, keeps the retry counters, and performs the automatic
``dispatching -> reviewing`` step when a dispatched task finishes. Every rule
violation is reported as an ``ERROR:`` string; nothing here raises for a
business-rule failure.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Callable

from .memory.schema import DispatchResult, PipelineState, RepoStatus, utc_now
from .phases import ITERATE, REPORT, VALID_ALIASES, Phase, resolve_alias, valid_aliases
from .prompts import PHASE_GUIDANCE, format_status, guidance_for, render_aliases
from .sinks import LoggingNotifier, LoggingSink, LogSink, NotificationSink, safe_log, safe_notify
from .tools.vcs import RepositoryProbe

DEFAULT_MAX_ITERATIONS = 3
DEFAULT_SERVICE = "pipeline-enforcer"
GIT_DIFF_PREFIX = "git diff"


class PhaseStateMachine:
    """Applies transitions and prerequisite checks to :class:`PipelineState` records."""

    def __init__(
        self,
        *,
        directory: Path | str = ".",
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        probe: RepositoryProbe | None = None,
        log_sink: LogSink | None = None,
        notifier: NotificationSink | None = None,
        service: str = DEFAULT_SERVICE,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.directory = Path(directory)
        self.max_iterations = max_iterations
        self.probe = probe or RepositoryProbe()
        self.log_sink = log_sink or LoggingSink()
        self.notifier = notifier or LoggingNotifier()
        self.service = service
        self._clock = clock

    # ------------------------------------------------------------- lifecycle
    def fresh_state(self, previous: PipelineState | None = None) -> PipelineState:
        """Return initial state; a known repository status survives a reset."""
        state = PipelineState(started_at=self._clock())
        if previous is not None:
            state.is_git_repo = previous.is_git_repo
        return state

    # ------------------------------------------------------------ transitions
    async def advance(self, session_id: str, state: PipelineState, target: str) -> str:
        """Move ``state`` along the transition named by ``target``.

        Returns ``Advanced to <PHASE>. <guidance>`` or an ``ERROR:`` message;
        an error leaves the phase and every counter untouched.
        """
        alias = (target or "").strip().lower()
        if alias not in VALID_ALIASES:
            return f"ERROR: Unknown target '{target}'. Valid targets: {', '.join(VALID_ALIASES)}"

        current = state.phase
        destination = resolve_alias(current, alias)
        if destination is None:
            return (
                f"ERROR: Cannot transition from '{current.value}' to '{alias}'. "
                f"Valid transitions from '{current.value}': {render_aliases(valid_aliases(current))}"
            )

        if alias == ITERATE:
            return await self._iterate(session_id, state)

        if alias == REPORT:
            repo_status = await self.probe.ensure(state, self.directory)
            if not state.git_diff_called and repo_status is not RepoStatus.NO:
                return (
                    "ERROR: You must run `git diff` before advancing to report. "
                    "This ensures you have reviewed all changes."
                )

        state.phase = destination
        if destination is Phase.DISPATCHING:
            state.dispatches += 1

        await safe_log(
            self.log_sink,
            self.service,
            "info",
            f"Phase: {current.value} -> {destination.value}",
            {"sessionID": session_id, "iteration": state.iterations},
        )

        if destination is Phase.COMPLETE:
            elapsed = state.elapsed_seconds(self._clock())
            await safe_notify(
                self.notifier,
                f"Pipeline complete: {state.dispatches} dispatch(es), "
                f"{state.iterations} review cycle(s), {elapsed}s",
                "success",
            )

        return f"Advanced to {destination.value.upper()}. {guidance_for(state)}"

    async def _iterate(self, session_id: str, state: PipelineState) -> str:
        if state.iterations >= self.max_iterations:
            return (
                f"ERROR: Maximum iterations ({self.max_iterations}) reached. You must proceed to "
                "'report' instead. Note any remaining issues as caveats."
            )

        state.git_diff_called = False
        state.iterations += 1
        state.dispatches += 1
        state.phase = Phase.DISPATCHING

        await safe_log(
            self.log_sink,
            self.service,
            "info",
            f"Phase: reviewing -> dispatching (iterate #{state.iterations})",
            {"sessionID": session_id, "iteration": state.iterations},
        )
        return (
            f"Advanced to DISPATCHING (iteration {state.iterations}/{self.max_iterations}). "
            f"{PHASE_GUIDANCE[Phase.DISPATCHING]}"
        )

    def status(self, state: PipelineState) -> str:
        """Render the current status without touching ``state``."""
        return format_status(state, max_iterations=self.max_iterations)

    # ------------------------------------------------------- observed events
    async def observe_shell_command(self, session_id: str, state: PipelineState, command: str) -> bool:
        """Record a ``git diff`` run during review; return True when it counted."""
        if state.phase is not Phase.REVIEWING:
            return False
        if not isinstance(command, str) or not command.lstrip().startswith(GIT_DIFF_PREFIX):
            return False
        state.git_diff_called = True
        await safe_log(
            self.log_sink,
            self.service,
            "info",
            "git diff detected during review",
            {"sessionID": session_id, "command": command},
        )
        return True

    async def observe_dispatch(self, session_id: str, state: PipelineState, result: DispatchResult) -> bool:
        """Auto-advance to reviewing after a successful dispatch; return True if advanced."""
        if state.phase is not Phase.DISPATCHING:
            return False

        if not result.succeeded:
            await safe_log(
                self.log_sink,
                self.service,
                "warn",
                "Task tool returned possible failure; staying in dispatching phase",
                {
                    "sessionID": session_id,
                    "diagnostic": result.diagnostic,
                    "outputPreview": result.output[:200],
                },
            )
            return False

        state.phase = Phase.REVIEWING
        await self.probe.ensure(state, self.directory)
        await safe_log(
            self.log_sink,
            self.service,
            "info",
            "Phase: dispatching -> reviewing (auto-advance on task completion)",
            {"sessionID": session_id, "gitRepo": state.is_git_repo.value},
        )
        return True


__all__ = ["DEFAULT_MAX_ITERATIONS", "GIT_DIFF_PREFIX", "PhaseStateMachine"]
