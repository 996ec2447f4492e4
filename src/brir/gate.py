"""Pre-execution tool gating for primary and subagent sessions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import AbstractSet, Iterable

from .config import DEFAULT_SUBAGENT_TOOLS
from .memory.schema import PipelineState, SessionKind
from .phases import Phase


class ToolRejectedError(RuntimeError):
    """Raised to abort a tool call that the current session may not make."""

    def __init__(self, tool: str, reason: str) -> None:
        super().__init__(reason)
        self.tool = tool
        self.reason = reason


def _normalise(names: Iterable[str]) -> frozenset[str]:
    return frozenset(name.strip().lower() for name in names if name and name.strip())


@dataclass(slots=True)
class ToolGate:
    """Decides whether a tool call may proceed.

    Subagent sessions may only use the allow-listed tools. Orchestrator
    sessions may use the dispatch tool only while dispatching and may never
    mutate files directly. All comparisons ignore case.
    """

    subagent_tools: AbstractSet[str] = field(default_factory=lambda: _normalise(DEFAULT_SUBAGENT_TOOLS))
    dispatch_tool: str = "task"
    mutation_tools: AbstractSet[str] = field(default_factory=lambda: frozenset({"write", "edit"}))

    def __post_init__(self) -> None:
        self.subagent_tools = _normalise(self.subagent_tools)
        self.mutation_tools = _normalise(self.mutation_tools)
        self.dispatch_tool = self.dispatch_tool.strip().lower()

    def is_dispatch(self, tool: str) -> bool:
        return tool.strip().lower() == self.dispatch_tool

    def check(self, tool: str, kind: SessionKind, state: PipelineState | None) -> None:
        """Raise :class:`ToolRejectedError` when ``tool`` may not run."""
        name = tool.strip().lower()

        if kind is SessionKind.SUBAGENT:
            if name not in self.subagent_tools:
                allowed = ", ".join(sorted(self.subagent_tools))
                raise ToolRejectedError(
                    tool,
                    f"BLOCKED: The '{tool}' tool is not available to implementation sessions. "
                    f"Allowed tools: {allowed}.",
                )
            return

        if state is None:
            return

        if name == self.dispatch_tool and state.phase is not Phase.DISPATCHING:
            raise ToolRejectedError(
                tool,
                f"BLOCKED: The Task tool can only be used during the 'dispatching' phase. "
                f"Current phase: '{state.phase.value}'. "
                "Call pipeline_advance() to reach the dispatching phase first.",
            )

        if name in self.mutation_tools:
            raise ToolRejectedError(
                tool,
                f"BLOCKED: The orchestrator must not {name} files directly. All code changes go "
                "through the implementer via the Task tool or through apply_patch.",
            )


__all__ = ["ToolGate", "ToolRejectedError"]
