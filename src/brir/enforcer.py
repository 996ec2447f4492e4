"""Host-facing plugin object: hook entry points and the pipeline tools.

A host wires :class:`PipelineEnforcer` into its event loop. User turns go to
:meth:`PipelineEnforcer.on_chat_message`, every tool call passes through
:meth:`PipelineEnforcer.before_tool` and :meth:`PipelineEnforcer.after_tool`,
and the three tools (``pipeline_advance``, ``pipeline_status``,
``apply_patch``) are exposed through :attr:`PipelineEnforcer.tools`.
Only :meth:`before_tool` raises (:class:`ToolRejectedError`); everything else
reports problems as strings or log records.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Mapping

from .config import EnforcerConfig, load_config
from .gate import ToolGate, ToolRejectedError
from .machine import PhaseStateMachine
from .memory.schema import DispatchResult, PipelineState, SessionKind, utc_now
from .memory.store import SessionStore
from .phases import Phase
from .prompts import compaction_context, status_banner
from .sinks import LoggingNotifier, LoggingSink, LogSink, NotificationSink, safe_log
from .tools.patch import apply_patch_tool
from .tools.vcs import RepositoryProbe

NO_STATE_MESSAGE = (
    "No pipeline state for this session. This tool is only available to the orchestrator agent."
)

ToolHandler = Callable[..., Awaitable[str]]


@dataclass(slots=True)
class ToolCall:
    """Tool invocation as reported by the host."""

    session_id: str
    tool: str
    args: Mapping[str, Any] = field(default_factory=dict)
    call_id: str | None = None


@dataclass(slots=True)
class ToolOutput:
    """Result of an executed tool call as reported by the host."""

    output: Any = ""
    metadata: Mapping[str, Any] = field(default_factory=dict)
    title: str | None = None


class PipelineEnforcer:
    """Tracks orchestrator sessions and enforces the phase discipline."""

    def __init__(
        self,
        config: EnforcerConfig | None = None,
        *,
        directory: Path | str = ".",
        log_sink: LogSink | None = None,
        notifier: NotificationSink | None = None,
        probe: RepositoryProbe | None = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or EnforcerConfig()
        self.directory = Path(directory)
        self.log_sink = log_sink or LoggingSink()
        self.notifier = notifier or LoggingNotifier()
        self.service = self.config.logging.service
        self._clock = clock

        pipeline = self.config.pipeline
        self.sessions = SessionStore(
            max_sessions=self.config.sessions.max_sessions,
            idle_ttl_seconds=self.config.sessions.idle_ttl_seconds,
            clock=monotonic,
        )
        self.machine = PhaseStateMachine(
            directory=self.directory,
            max_iterations=pipeline.max_iterations,
            probe=probe or RepositoryProbe(timeout=self.config.probe.timeout_seconds),
            log_sink=self.log_sink,
            notifier=self.notifier,
            service=self.service,
            clock=clock,
        )
        self.gate = ToolGate(
            subagent_tools=frozenset(self.config.subagents.allowed_tools),
            dispatch_tool=pipeline.dispatch_tool,
            mutation_tools=frozenset(pipeline.mutation_tools),
        )
        self._shell_tools = frozenset(pipeline.shell_tools)

    @classmethod
    def from_config_file(cls, path: Path | str | None, **kwargs: Any) -> "PipelineEnforcer":
        """Build an enforcer from a YAML configuration file (defaults when missing)."""
        return cls(load_config(path), **kwargs)

    @property
    def tools(self) -> Dict[str, ToolHandler]:
        """Custom tools the host should register, keyed by tool name."""
        return {
            "pipeline_advance": self.pipeline_advance,
            "pipeline_status": self.pipeline_status,
            "apply_patch": self.apply_patch,
        }

    def state_for(self, session_id: str) -> PipelineState | None:
        return self.sessions.pipeline(session_id)

    # ------------------------------------------------------------------ hooks
    async def on_chat_message(self, session_id: str, agent: str | None) -> PipelineState | None:
        """Register a user-authored turn; create or reset orchestrator state."""
        record = self.sessions.register_turn(session_id, agent)
        await self._flush_evictions()
        if agent != self.config.pipeline.orchestrator_agent:
            return None

        existing = record.pipeline
        if existing is None:
            record.pipeline = self.machine.fresh_state()
            await safe_log(
                self.log_sink,
                self.service,
                "info",
                "Pipeline initialized: brainstorming",
                {"sessionID": session_id},
            )
        elif existing.phase is Phase.COMPLETE:
            record.pipeline = self.machine.fresh_state(existing)
            record.child_dispatches = 0
            await safe_log(
                self.log_sink,
                self.service,
                "info",
                "Pipeline reset: complete -> brainstorming (new user message)",
                {"sessionID": session_id},
            )
        return record.pipeline

    async def before_tool(self, call: ToolCall) -> None:
        """Raise :class:`ToolRejectedError` when the call is not allowed right now."""
        kind = self.sessions.classify(call.session_id)
        state = self.sessions.pipeline(call.session_id) if kind is SessionKind.PRIMARY else None
        try:
            self.gate.check(call.tool, kind, state)
        except ToolRejectedError as error:
            await safe_log(
                self.log_sink,
                self.service,
                "warn",
                "Tool call blocked",
                {
                    "sessionID": call.session_id,
                    "tool": call.tool,
                    "sessionKind": kind.value,
                    "phase": state.phase.value if state else None,
                    "reason": error.reason,
                },
            )
            raise

    async def after_tool(self, call: ToolCall, output: ToolOutput | None = None) -> None:
        """Feed completed tool calls back into the state machine."""
        state = self.sessions.pipeline(call.session_id)
        if state is None:
            return

        name = call.tool.strip().lower()
        if name in self._shell_tools:
            command = call.args.get("command") or call.args.get("cmd") or ""
            await self.machine.observe_shell_command(call.session_id, state, command)
            return

        if self.gate.is_dispatch(name):
            result_payload = output or ToolOutput()
            result = DispatchResult.from_tool_output(
                result_payload.output,
                result_payload.metadata,
                failure_markers=self.config.pipeline.failure_markers,
            )
            await self.machine.observe_dispatch(call.session_id, state, result)

    async def system_transform(self, session_id: str | None) -> str | None:
        """Return the status banner to append to the system prompt, if any."""
        if not session_id:
            return None
        state = self.sessions.pipeline(session_id)
        if state is None:
            return None
        return status_banner(state, max_iterations=self.machine.max_iterations)

    async def session_compacting(self, session_id: str) -> str | None:
        """Return the pipeline block to preserve across context compaction."""
        state = self.sessions.pipeline(session_id)
        if state is None:
            return None
        return compaction_context(
            state,
            max_iterations=self.machine.max_iterations,
            now=self._clock(),
        )

    async def on_event(self, event_type: str, properties: Mapping[str, Any] | None = None) -> None:
        """Handle host lifecycle events (errors, child sessions, deletions)."""
        props = properties or {}

        if event_type == "session.error":
            session_id = str(props.get("id") or props.get("sessionID") or "unknown")
            await safe_log(
                self.log_sink,
                self.service,
                "error",
                "Session error in pipeline",
                {"sessionID": session_id, "error": props.get("error")},
            )
            return

        if event_type == "session.created":
            parent_id = props.get("parentID")
            session_id = props.get("id") or props.get("sessionID")
            if not parent_id or not session_id:
                return
            self.sessions.register_child(str(session_id), str(parent_id))
            parent = self.sessions.get(str(parent_id))
            if parent is not None:
                parent.child_dispatches += 1
                count = parent.child_dispatches
            else:
                count = 1
            label = (
                "Implementation dispatched"
                if count == 1
                else f"Review cycle #{count - 1} - re-dispatching"
            )
            await safe_log(
                self.log_sink,
                self.service,
                "info",
                label,
                {"parentSession": str(parent_id), "childSession": str(session_id), "dispatchCount": count},
            )
            await self._flush_evictions()
            return

        if event_type == "session.deleted":
            session_id = props.get("id") or props.get("sessionID")
            if session_id:
                self.sessions.evict(str(session_id))
                await self._flush_evictions()

    # ------------------------------------------------------------------ tools
    async def pipeline_advance(self, session_id: str, target: str) -> str:
        """Tool: request a phase transition."""
        state = self.sessions.pipeline(session_id)
        if state is None:
            return f"ERROR: {NO_STATE_MESSAGE}"
        return await self.machine.advance(session_id, state, target)

    async def pipeline_status(self, session_id: str) -> str:
        """Tool: report the current phase, prerequisites, and valid transitions."""
        state = self.sessions.pipeline(session_id)
        if state is None:
            return NO_STATE_MESSAGE
        return self.machine.status(state)

    async def apply_patch(self, session_id: str, patch: str, directory: Path | str | None = None) -> str:
        """Tool: apply a unified diff relative to ``directory`` (defaults to the worktree)."""
        cwd = Path(directory) if directory is not None else self.directory
        result = await asyncio.to_thread(apply_patch_tool, patch, cwd=cwd)
        failed = result.startswith("ERROR")
        await safe_log(
            self.log_sink,
            self.service,
            "warn" if failed else "info",
            "Patch rejected" if failed else "Patch applied",
            {"sessionID": session_id, "result": result.splitlines()[:20]},
        )
        return result

    # ---------------------------------------------------------------- helpers
    async def _flush_evictions(self) -> None:
        for record in self.sessions.drain_evicted():
            if record.pipeline is None:
                continue
            await safe_log(
                self.log_sink,
                self.service,
                "info",
                "Pipeline session evicted",
                {"sessionID": record.session_id, "phase": record.pipeline.phase.value},
            )


__all__ = ["NO_STATE_MESSAGE", "PipelineEnforcer", "ToolCall", "ToolOutput", "ToolRejectedError"]
