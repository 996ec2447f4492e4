"""Phase guidance and status text injected into the orchestrator's prompts."""

from __future__ import annotations

from datetime import datetime
from typing import Mapping, Sequence

from .memory.schema import PipelineState, RepoStatus
from .phases import ITERATE, Phase, valid_aliases

PHASE_GUIDANCE: Mapping[Phase, str] = {
    Phase.BRAINSTORMING: (
        "New request received. Load the brainstorming skill and explore context with the user. "
        "Ask clarifying questions, propose approaches, and get design approval before advancing. "
        "Call pipeline_advance('refine') when the user approves the design."
    ),
    Phase.REFINING: (
        "Transform the approved design into a precise implementation spec for the implementer. "
        "Include: files to modify/create (absolute paths), code patterns, expected behavior, "
        "test expectations, what NOT to change, and validation commands. Show the spec to the user "
        "and ask for approval. Call pipeline_advance('dispatch') when approved."
    ),
    Phase.DISPATCHING: (
        "Dispatch the refined spec to the implementer via the Task tool. Include the full spec, "
        "relevant file contents, success criteria, and validation commands. The pipeline will "
        "auto-advance to reviewing when the task completes."
    ),
    Phase.REVIEWING: (
        "Review the implementation. You MUST run `git diff` to see all changes. Read modified files "
        "and evaluate against the approved design. Check for bugs, logic errors, missed edge cases, "
        "convention violations, and security concerns. Call pipeline_advance('report') when "
        "satisfied, or pipeline_advance('iterate') to re-dispatch with fixes."
    ),
    Phase.REPORTING: (
        "Provide a concise summary: what changed and why, files modified (with line references), "
        "review status (approved / approved with caveats), and any remaining concerns or follow-ups. "
        "Call pipeline_advance('complete') when done."
    ),
    Phase.COMPLETE: "Pipeline complete. Waiting for next user request.",
}

REVIEWING_NO_GIT_GUIDANCE = (
    "Review the implementation. This directory is not a git repository, so `git diff` is not "
    "available and not required: verify the changes by reading every file the implementer reports "
    "as created or modified. Evaluate them against the approved design. Check for bugs, logic errors, "
    "missed edge cases, convention violations, and security concerns. Call pipeline_advance('report') "
    "when satisfied, or pipeline_advance('iterate') to re-dispatch with fixes."
)

STANDING_INSTRUCTIONS = (
    "You MUST call pipeline_advance() to transition between phases. "
    "You MUST call pipeline_status() if you are unsure where you are. "
    "The Task tool is ONLY available during the dispatching phase."
)

NO_AUTOMATIC_TRANSITIONS = "(none, transitions are automatic)"


def guidance_for(state: PipelineState) -> str:
    """Return the guidance for ``state.phase``, using the no-git review variant when needed."""
    if state.phase is Phase.REVIEWING and state.is_git_repo is RepoStatus.NO:
        return REVIEWING_NO_GIT_GUIDANCE
    return PHASE_GUIDANCE[state.phase]


def available_aliases(state: PipelineState, *, max_iterations: int) -> tuple[str, ...]:
    """Aliases the agent can use right now; `iterate` disappears once the cap is reached."""
    aliases = valid_aliases(state.phase)
    if state.iterations >= max_iterations:
        aliases = tuple(alias for alias in aliases if alias != ITERATE)
    return aliases


def render_aliases(aliases: Sequence[str], *, empty: str = NO_AUTOMATIC_TRANSITIONS) -> str:
    return ", ".join(aliases) if aliases else empty


def format_status(state: PipelineState, *, max_iterations: int) -> str:
    """Render the ``|``-joined status line followed by the current guidance."""
    parts = [
        f"Phase: {state.phase.value}",
        f"Iteration: {state.iterations}/{max_iterations}",
        f"git diff called: {state.git_diff_label()}",
        f"Dispatches: {state.dispatches}",
        f"Valid transitions: {render_aliases(available_aliases(state, max_iterations=max_iterations))}",
    ]
    return " | ".join(parts) + f"\n\nCurrent phase guidance: {guidance_for(state)}"


def status_banner(state: PipelineState, *, max_iterations: int) -> str:
    """Render the one-line banner injected into the system prompt every turn."""
    if state.is_git_repo is RepoStatus.NO:
        diff_state = "n/a"
    else:
        diff_state = "done" if state.git_diff_called else "needed"
    upcoming = render_aliases(available_aliases(state, max_iterations=max_iterations), empty="auto")
    banner = (
        f"[Pipeline: {state.phase.value} | iter {state.iterations}/{max_iterations} "
        f"| git diff: {diff_state} | next: {upcoming}]"
    )
    return f"\n{banner}\n{STANDING_INSTRUCTIONS}"


def compaction_context(
    state: PipelineState,
    *,
    max_iterations: int,
    now: datetime | None = None,
) -> str:
    """Render the pipeline block that must survive context compaction."""
    return (
        "PIPELINE STATE (preserve this):\n"
        f"- Phase: {state.phase.value}\n"
        f"- Iteration: {state.iterations}/{max_iterations}\n"
        f"- git diff called this cycle: {state.git_diff_label()}\n"
        f"- Total dispatches: {state.dispatches}\n"
        f"- Elapsed: {state.elapsed_seconds(now)}s\n"
        f"- Current guidance: {guidance_for(state)}"
    )


__all__ = [
    "NO_AUTOMATIC_TRANSITIONS",
    "PHASE_GUIDANCE",
    "REVIEWING_NO_GIT_GUIDANCE",
    "STANDING_INSTRUCTIONS",
    "available_aliases",
    "compaction_context",
    "format_status",
    "guidance_for",
    "render_aliases",
    "status_banner",
]
