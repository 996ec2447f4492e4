"""Typed records tracked for each pipeline session."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from ..phases import Phase

DEFAULT_FAILURE_MARKERS = (
    "Task failed",
    "TASK_FAILED",
    "task was aborted",
    "agent crashed",
)

_SUCCESS_STATUSES = {"success", "succeeded", "completed", "complete", "ok", "done"}
_FAILURE_STATUSES = {"error", "failed", "failure", "aborted", "cancelled", "canceled", "crashed"}


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class RepoStatus(str, Enum):
    """Tri-state outcome of the version-control probe."""

    UNKNOWN = "unknown"
    YES = "yes"
    NO = "no"


class SessionKind(str, Enum):
    """Classification of a host session."""

    PRIMARY = "primary"
    SUBAGENT = "subagent"


class PipelineState(RecordModel):
    """Progress of one orchestrator conversation through the pipeline."""

    phase: Phase = Phase.BRAINSTORMING
    iterations: int = 0
    dispatches: int = 0
    git_diff_called: bool = False
    is_git_repo: RepoStatus = RepoStatus.UNKNOWN
    started_at: datetime = Field(default_factory=utc_now)

    def elapsed_seconds(self, now: datetime | None = None) -> int:
        """Return whole seconds since the pipeline was (re)started."""
        current = now or utc_now()
        return max(0, round((current - self.started_at).total_seconds()))

    def git_diff_label(self) -> str:
        """Render the git-diff prerequisite as ``true``/``false``/``n/a``."""
        if self.is_git_repo is RepoStatus.NO:
            return "n/a"
        return "true" if self.git_diff_called else "false"


class SessionRecord(RecordModel):
    """Registry entry for a host session."""

    session_id: str
    kind: SessionKind
    agent: Optional[str] = None
    parent_id: Optional[str] = None
    pipeline: Optional[PipelineState] = None
    child_dispatches: int = 0
    last_seen: float = 0.0


class DispatchResult(RecordModel):
    """Completion record for a dispatched implementation task."""

    succeeded: bool
    output: str = ""
    diagnostic: Optional[str] = None

    @classmethod
    def from_tool_output(
        cls,
        output: Any,
        metadata: Mapping[str, Any] | None = None,
        *,
        failure_markers: Sequence[str] = DEFAULT_FAILURE_MARKERS,
    ) -> "DispatchResult":
        """Classify a finished dispatch.

        An explicit discriminant in ``metadata`` (``success``, ``status`` or
        ``error``) wins. Without one, the textual output is scanned for the
        fixed failure markers; incidental words such as "error" in a normal
        summary do not count as failure.
        """
        text = output if isinstance(output, str) else ("" if output is None else str(output))
        explicit = _explicit_outcome(metadata or {})
        if explicit is not None:
            succeeded, diagnostic = explicit
            return cls(succeeded=succeeded, output=text, diagnostic=diagnostic)

        for marker in failure_markers:
            if marker and marker in text:
                return cls(succeeded=False, output=text, diagnostic=f"output contains '{marker}'")
        return cls(succeeded=True, output=text)


def _explicit_outcome(metadata: Mapping[str, Any]) -> tuple[bool, str | None] | None:
    """Extract a success/failure discriminant from host metadata, if any."""
    success = metadata.get("success")
    if isinstance(success, bool):
        error = metadata.get("error")
        return success, (str(error) if error and not success else None)

    status = metadata.get("status")
    if isinstance(status, str):
        normalised = status.strip().lower()
        if normalised in _SUCCESS_STATUSES:
            return True, None
        if normalised in _FAILURE_STATUSES:
            error = metadata.get("error")
            return False, str(error) if error else f"status '{status}'"

    error = metadata.get("error")
    if error:
        return False, str(error)
    return None


__all__ = [
    "DEFAULT_FAILURE_MARKERS",
    "DispatchResult",
    "PipelineState",
    "RecordModel",
    "RepoStatus",
    "SessionKind",
    "SessionRecord",
    "utc_now",
]
