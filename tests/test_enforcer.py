from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from brir.config import EnforcerConfig
from brir.enforcer import NO_STATE_MESSAGE, PipelineEnforcer, ToolCall, ToolOutput, ToolRejectedError
from brir.phases import Phase


def _enforcer(probe, sink, directory: Path | str = ".", config: EnforcerConfig | None = None) -> PipelineEnforcer:
    return PipelineEnforcer(config, directory=directory, log_sink=sink, notifier=sink, probe=probe)


def _tool(enforcer: PipelineEnforcer, session: str, tool: str, output: str = "", **args) -> None:
    call = ToolCall(session_id=session, tool=tool, args=args)
    asyncio.run(enforcer.before_tool(call))
    asyncio.run(enforcer.after_tool(call, ToolOutput(output=output)))


def test_orchestrator_turn_creates_pipeline(git_probe, sink) -> None:
    enforcer = _enforcer(git_probe, sink)

    state = asyncio.run(enforcer.on_chat_message("main", "orchestrator"))

    assert state is not None and state.phase is Phase.BRAINSTORMING
    assert enforcer.state_for("main") is state
    assert sink.messages("info") == ["Pipeline initialized: brainstorming"]


def test_other_agents_get_no_pipeline(git_probe, sink) -> None:
    enforcer = _enforcer(git_probe, sink)

    assert asyncio.run(enforcer.on_chat_message("side", "general")) is None
    assert asyncio.run(enforcer.pipeline_status("side")) == NO_STATE_MESSAGE
    assert asyncio.run(enforcer.pipeline_advance("side", "refine")) == f"ERROR: {NO_STATE_MESSAGE}"
    assert asyncio.run(enforcer.system_transform("side")) is None


def test_task_blocked_until_dispatching(git_probe, sink) -> None:
    enforcer = _enforcer(git_probe, sink)
    asyncio.run(enforcer.on_chat_message("main", "orchestrator"))
    asyncio.run(enforcer.pipeline_advance("main", "refine"))

    with pytest.raises(ToolRejectedError) as excinfo:
        asyncio.run(enforcer.before_tool(ToolCall("main", "task")))

    assert "'dispatching' phase" in excinfo.value.reason
    blocked = [record for record in sink.records if record.message == "Tool call blocked"]
    assert blocked[0].extra["phase"] == "refining"
    assert blocked[0].level == "warn"


def test_unregistered_sessions_use_subagent_allow_list(git_probe, sink) -> None:
    enforcer = _enforcer(git_probe, sink)

    asyncio.run(enforcer.before_tool(ToolCall("child", "read")))
    with pytest.raises(ToolRejectedError):
        asyncio.run(enforcer.before_tool(ToolCall("child", "task")))


def test_full_cycle_with_auto_advance_and_diff_detection(git_probe, sink) -> None:
    enforcer = _enforcer(git_probe, sink)
    asyncio.run(enforcer.on_chat_message("main", "orchestrator"))
    asyncio.run(enforcer.pipeline_advance("main", "refine"))
    asyncio.run(enforcer.pipeline_advance("main", "dispatch"))

    _tool(enforcer, "main", "task", output="Implemented the feature.")
    assert enforcer.state_for("main").phase is Phase.REVIEWING

    _tool(enforcer, "main", "bash", command="git diff")
    assert enforcer.state_for("main").git_diff_called is True

    assert asyncio.run(enforcer.pipeline_advance("main", "report")).startswith("Advanced to REPORTING.")
    assert asyncio.run(enforcer.pipeline_advance("main", "complete")).startswith("Advanced to COMPLETE.")
    assert len(sink.notifications) == 1
    assert sink.notifications[0][1] == "success"

    reset = asyncio.run(enforcer.on_chat_message("main", "orchestrator"))
    assert reset.phase is Phase.BRAINSTORMING
    assert reset.dispatches == 0
    assert "Pipeline reset: complete -> brainstorming (new user message)" in sink.messages("info")


def test_failure_marker_keeps_dispatching(git_probe, sink) -> None:
    enforcer = _enforcer(git_probe, sink)
    asyncio.run(enforcer.on_chat_message("main", "orchestrator"))
    asyncio.run(enforcer.pipeline_advance("main", "refine"))
    asyncio.run(enforcer.pipeline_advance("main", "dispatch"))

    _tool(enforcer, "main", "task", output="TASK_FAILED: could not compile")

    assert enforcer.state_for("main").phase is Phase.DISPATCHING


def test_metadata_status_overrides_output_text(git_probe, sink) -> None:
    enforcer = _enforcer(git_probe, sink)
    asyncio.run(enforcer.on_chat_message("main", "orchestrator"))
    asyncio.run(enforcer.pipeline_advance("main", "refine"))
    asyncio.run(enforcer.pipeline_advance("main", "dispatch"))
    call = ToolCall("main", "task")

    asyncio.run(enforcer.after_tool(call, ToolOutput(output="looks fine", metadata={"status": "aborted"})))

    assert enforcer.state_for("main").phase is Phase.DISPATCHING


def test_shell_command_accepts_cmd_argument(git_probe, sink) -> None:
    enforcer = _enforcer(git_probe, sink)
    state = asyncio.run(enforcer.on_chat_message("main", "orchestrator"))
    state.phase = Phase.REVIEWING

    asyncio.run(enforcer.after_tool(ToolCall("main", "bash", args={"cmd": "git diff --cached"})))

    assert state.git_diff_called is True


def test_system_transform_and_compaction(git_probe, sink) -> None:
    enforcer = _enforcer(git_probe, sink)
    asyncio.run(enforcer.on_chat_message("main", "orchestrator"))

    banner = asyncio.run(enforcer.system_transform("main"))
    context = asyncio.run(enforcer.session_compacting("main"))

    assert banner.startswith("\n[Pipeline: brainstorming | iter 0/3 | git diff: needed | next: refine]\n")
    assert context.startswith("PIPELINE STATE (preserve this):\n- Phase: brainstorming")
    assert asyncio.run(enforcer.system_transform(None)) is None


def test_child_session_events_count_dispatches(git_probe, sink) -> None:
    enforcer = _enforcer(git_probe, sink)
    asyncio.run(enforcer.on_chat_message("main", "orchestrator"))

    asyncio.run(enforcer.on_event("session.created", {"id": "child-1", "parentID": "main"}))
    asyncio.run(enforcer.on_event("session.created", {"id": "child-2", "parentID": "main"}))
    asyncio.run(enforcer.on_event("session.created", {"id": "root-2"}))

    assert "Implementation dispatched" in sink.messages("info")
    assert "Review cycle #1 - re-dispatching" in sink.messages("info")
    assert "root-2" not in enforcer.sessions
    with pytest.raises(ToolRejectedError):
        asyncio.run(enforcer.before_tool(ToolCall("child-1", "webfetch")))


def test_child_dispatch_count_restarts_with_new_pipeline(git_probe, sink) -> None:
    enforcer = _enforcer(git_probe, sink)
    state = asyncio.run(enforcer.on_chat_message("main", "orchestrator"))
    asyncio.run(enforcer.on_event("session.created", {"id": "child-1", "parentID": "main"}))
    state.phase = Phase.COMPLETE

    asyncio.run(enforcer.on_chat_message("main", "orchestrator"))
    asyncio.run(enforcer.on_event("session.created", {"id": "child-2", "parentID": "main"}))

    assert sink.messages("info").count("Implementation dispatched") == 2
    assert not any(message.startswith("Review cycle") for message in sink.messages("info"))
    assert enforcer.sessions.get("main").child_dispatches == 1


def test_session_error_and_deletion_events(git_probe, sink) -> None:
    enforcer = _enforcer(git_probe, sink)
    asyncio.run(enforcer.on_chat_message("main", "orchestrator"))

    asyncio.run(enforcer.on_event("session.error", {"sessionID": "main", "error": "boom"}))
    asyncio.run(enforcer.on_event("session.deleted", {"id": "main"}))

    assert sink.messages("error") == ["Session error in pipeline"]
    assert "Pipeline session evicted" in sink.messages("info")
    assert enforcer.state_for("main") is None


def test_apply_patch_tool_uses_worktree(tmp_path: Path, git_probe, sink) -> None:
    enforcer = _enforcer(git_probe, sink, directory=tmp_path)
    patch = "--- /dev/null\n+++ b/notes/todo.md\n@@ -0,0 +1,2 @@\n+a\n+b\n"

    result = asyncio.run(enforcer.apply_patch("main", patch))

    assert result == "Patch applied successfully:\nCreated: notes/todo.md"
    assert (tmp_path / "notes" / "todo.md").read_text(encoding="utf-8") == "a\nb"
    assert sink.messages("info") == ["Patch applied"]
    assert set(enforcer.tools) == {"pipeline_advance", "pipeline_status", "apply_patch"}


def test_custom_configuration_changes_rules(git_probe, sink) -> None:
    config = EnforcerConfig.model_validate(
        {"pipeline": {"orchestrator_agent": "lead", "max_iterations": 0, "mutation_tools": ["Write"]}}
    )
    enforcer = _enforcer(git_probe, sink, config=config)

    assert asyncio.run(enforcer.on_chat_message("main", "orchestrator")) is None
    state = asyncio.run(enforcer.on_chat_message("main", "lead"))
    assert state is not None

    asyncio.run(enforcer.before_tool(ToolCall("main", "edit")))
    state.phase = Phase.REVIEWING
    assert asyncio.run(enforcer.pipeline_advance("main", "iterate")).startswith(
        "ERROR: Maximum iterations (0) reached."
    )


class ExplodingSink:
    async def log(self, service, level, message, extra=None) -> None:
        raise RuntimeError("sink down")

    async def notify(self, message, variant="info") -> None:
        raise RuntimeError("sink down")


def test_sink_failures_do_not_escape(git_probe) -> None:
    sink = ExplodingSink()
    enforcer = PipelineEnforcer(directory=".", log_sink=sink, notifier=sink, probe=git_probe)

    state = asyncio.run(enforcer.on_chat_message("main", "orchestrator"))

    assert state is not None
    assert asyncio.run(enforcer.pipeline_advance("main", "refine")).startswith("Advanced to REFINING.")
