"""Tool integrations exposed to orchestrator and implementer sessions."""

from .patch import PatchError, PatchResult, apply_patch, apply_patch_tool, parse_patch
from .vcs import CommandOutcome, RepositoryProbe, run_command

__all__ = [
    "CommandOutcome",
    "PatchError",
    "PatchResult",
    "RepositoryProbe",
    "apply_patch",
    "apply_patch_tool",
    "parse_patch",
    "run_command",
]
