from __future__ import annotations

from datetime import datetime, timedelta, timezone

from brir.memory.schema import DispatchResult, PipelineState, RepoStatus
from brir.phases import ALIAS_TARGETS, TRANSITIONS, Phase, resolve_alias, valid_aliases
from brir.prompts import PHASE_GUIDANCE, STANDING_INSTRUCTIONS, compaction_context, status_banner


def test_transition_table_is_per_phase() -> None:
    assert valid_aliases(Phase.REVIEWING) == ("iterate", "report")
    assert resolve_alias(Phase.REVIEWING, "iterate") is Phase.DISPATCHING
    assert resolve_alias(Phase.REVIEWING, "dispatch") is None
    assert resolve_alias(Phase.REFINING, "iterate") is None
    assert TRANSITIONS[Phase.COMPLETE] == {}
    assert set(ALIAS_TARGETS) == {"refine", "dispatch", "iterate", "report", "complete"}


def test_status_banner_reflects_diff_prerequisite() -> None:
    state = PipelineState(phase=Phase.REVIEWING, iterations=1, is_git_repo=RepoStatus.YES)

    banner = status_banner(state, max_iterations=3)

    assert banner == (
        "\n[Pipeline: reviewing | iter 1/3 | git diff: needed | next: iterate, report]\n" + STANDING_INSTRUCTIONS
    )
    state.git_diff_called = True
    assert "git diff: done" in status_banner(state, max_iterations=3)
    state.is_git_repo = RepoStatus.NO
    assert "git diff: n/a" in status_banner(state, max_iterations=3)


def test_status_banner_marks_automatic_phases() -> None:
    banner = status_banner(PipelineState(phase=Phase.DISPATCHING), max_iterations=3)

    assert "| next: auto]" in banner


def test_compaction_context_lists_progress() -> None:
    started = datetime(2025, 1, 1, tzinfo=timezone.utc)
    state = PipelineState(phase=Phase.REPORTING, iterations=2, dispatches=3, started_at=started)

    block = compaction_context(state, max_iterations=3, now=started + timedelta(seconds=90))

    assert block.splitlines() == [
        "PIPELINE STATE (preserve this):",
        "- Phase: reporting",
        "- Iteration: 2/3",
        "- git diff called this cycle: false",
        "- Total dispatches: 3",
        "- Elapsed: 90s",
        f"- Current guidance: {PHASE_GUIDANCE[Phase.REPORTING]}",
    ]


def test_dispatch_result_prefers_explicit_metadata() -> None:
    assert DispatchResult.from_tool_output("Task failed", {"success": True}).succeeded is True
    failed = DispatchResult.from_tool_output("all good", {"status": "error", "error": "agent exited"})
    assert failed.succeeded is False
    assert failed.diagnostic == "agent exited"


def test_dispatch_result_falls_back_to_markers() -> None:
    assert DispatchResult.from_tool_output("Fixed the error handling; tests pass.").succeeded is True
    crashed = DispatchResult.from_tool_output("the agent crashed while editing")
    assert crashed.succeeded is False
    assert crashed.diagnostic == "output contains 'agent crashed'"
    assert DispatchResult.from_tool_output(None).output == ""
