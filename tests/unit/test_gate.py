from __future__ import annotations

import pytest

from brir.gate import ToolGate, ToolRejectedError
from brir.memory.schema import PipelineState, SessionKind
from brir.phases import Phase


def test_dispatch_tool_blocked_outside_dispatching() -> None:
    gate = ToolGate()
    state = PipelineState(phase=Phase.REFINING)

    with pytest.raises(ToolRejectedError) as excinfo:
        gate.check("Task", SessionKind.PRIMARY, state)

    assert excinfo.value.tool == "Task"
    assert excinfo.value.reason.startswith("BLOCKED: The Task tool can only be used during the 'dispatching' phase.")
    assert "Current phase: 'refining'" in excinfo.value.reason


def test_dispatch_tool_allowed_while_dispatching() -> None:
    gate = ToolGate()

    gate.check("task", SessionKind.PRIMARY, PipelineState(phase=Phase.DISPATCHING))


@pytest.mark.parametrize("tool", ["write", "Edit"])
def test_orchestrator_never_mutates_files(tool: str) -> None:
    gate = ToolGate()

    with pytest.raises(ToolRejectedError) as excinfo:
        gate.check(tool, SessionKind.PRIMARY, PipelineState(phase=Phase.DISPATCHING))

    assert excinfo.value.reason.startswith(f"BLOCKED: The orchestrator must not {tool.lower()} files directly.")


def test_primary_without_pipeline_is_unrestricted() -> None:
    gate = ToolGate()

    gate.check("write", SessionKind.PRIMARY, None)
    gate.check("task", SessionKind.PRIMARY, None)


def test_subagent_allow_list_is_case_insensitive() -> None:
    gate = ToolGate(subagent_tools={"Read", "BASH"})

    gate.check("read", SessionKind.SUBAGENT, None)
    gate.check("Bash", SessionKind.SUBAGENT, None)
    with pytest.raises(ToolRejectedError) as excinfo:
        gate.check("webfetch", SessionKind.SUBAGENT, None)

    assert excinfo.value.reason == (
        "BLOCKED: The 'webfetch' tool is not available to implementation sessions. Allowed tools: bash, read."
    )


def test_default_subagent_tools_exclude_dispatch() -> None:
    gate = ToolGate()

    gate.check("apply_patch", SessionKind.SUBAGENT, None)
    gate.check("write", SessionKind.SUBAGENT, None)
    with pytest.raises(ToolRejectedError):
        gate.check("task", SessionKind.SUBAGENT, None)
