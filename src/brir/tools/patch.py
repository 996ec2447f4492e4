"""Unified diff parsing and application without an external ``patch`` binary.

Patches are applied in two stages: every file's new content is computed in
memory first, then the files are written one at a time. Parse errors, hunks
that do not match the target, and missing modify targets therefore never leave
a batch half applied. Each individual write is atomic; there is no rollback
across files if the filesystem fails during the write stage.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, List, Literal, Mapping, Sequence, Tuple

DEV_NULL = "/dev/null"
FALLBACK_HINT = "Fall back to the write/edit tools (or a dispatched task) to make this change directly."

EditTag = Literal["context", "add", "remove"]
ChangeKind = Literal["created", "modified", "deleted", "skipped"]

LOGGER = logging.getLogger(__name__)

_HUNK_HEADER = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? "
    r"\+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@"
)
_TAGS: Mapping[str, EditTag] = {" ": "context", "+": "add", "-": "remove"}
_CHANGE_LABELS: Mapping[str, str] = {
    "created": "Created",
    "modified": "Modified",
    "deleted": "Deleted",
    "skipped": "Skipped (already gone)",
}


class PatchError(RuntimeError):
    """Raised when a patch fails to parse or cannot be applied."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


@dataclass(slots=True)
class Hunk:
    """Contiguous line-range edit within a single file."""

    old_start: int
    old_count: int = 1
    new_start: int = 1
    new_count: int = 1
    lines: List[Tuple[EditTag, str]] = field(default_factory=list)

    @property
    def old_lines(self) -> List[str]:
        """Context and removed lines in order: the span the hunk replaces."""
        return [text for tag, text in self.lines if tag != "add"]

    @property
    def added_lines(self) -> List[str]:
        return [text for tag, text in self.lines if tag == "add"]

    def _pending(self) -> bool:
        """Return True while the header counts still expect more body lines."""
        seen_old = sum(1 for tag, _ in self.lines if tag != "add")
        seen_new = sum(1 for tag, _ in self.lines if tag != "remove")
        return seen_old < self.old_count or seen_new < self.new_count


@dataclass(slots=True)
class PatchFile:
    """All hunks targeting one file, with the paths from its ``---``/``+++`` headers."""

    old_path: str
    new_path: str = ""
    hunks: List[Hunk] = field(default_factory=list)
    crlf: bool = False

    @property
    def is_creation(self) -> bool:
        return self.old_path == DEV_NULL

    @property
    def is_deletion(self) -> bool:
        return self.new_path == DEV_NULL

    @property
    def target_path(self) -> str:
        """Path operand naming the affected file, prefix included."""
        return self.old_path if self.is_deletion else self.new_path


@dataclass(slots=True)
class FileChange:
    """Outcome for one file of an applied patch."""

    kind: ChangeKind
    path: Path
    display: str

    def render(self) -> str:
        return f"{_CHANGE_LABELS[self.kind]}: {self.display}"


@dataclass(slots=True)
class PatchResult:
    """Outcome of applying a patch to the filesystem."""

    changes: Tuple[FileChange, ...]

    @property
    def touched_paths(self) -> Tuple[Path, ...]:
        return tuple(change.path for change in self.changes if change.kind != "skipped")

    def render(self) -> str:
        body = "\n".join(change.render() for change in self.changes)
        return f"Patch applied successfully:\n{body}"


@dataclass(slots=True)
class _PlannedWrite:
    """File operation computed before anything touches the disk."""

    change: FileChange
    content: str | None = None


# ---------------------------------------------------------------- parsing
def _header_path(raw: str) -> str:
    """Return the path operand of a ``---``/``+++`` line without its timestamp."""
    operand = raw.split("\t", 1)[0]
    return operand.strip()


def _default_count(value: str | None) -> int:
    """Return the number of lines represented in a hunk header."""
    return int(value) if value is not None else 1


def _split_patch_lines(text: str) -> Tuple[List[str], List[bool]]:
    """Split on ``\\n`` only; return the lines without ``\\r`` and which ones had it."""
    raw_lines = text.split("\n")
    if raw_lines and raw_lines[-1] == "":
        raw_lines.pop()
    lines: List[str] = []
    carriage: List[bool] = []
    for raw in raw_lines:
        has_cr = raw.endswith("\r")
        lines.append(raw[:-1] if has_cr else raw)
        carriage.append(has_cr)
    return lines, carriage


def _starts_file(lines: Sequence[str], index: int) -> bool:
    """True when ``lines[index]`` opens a ``---``/``+++``/``@@`` file block."""
    if index + 2 >= len(lines):
        return False
    return (
        lines[index].startswith("--- ")
        and lines[index + 1].startswith("+++ ")
        and lines[index + 2].startswith("@@")
    )


def parse_patch(text: str) -> List[PatchFile]:
    """Parse unified diff ``text`` into per-file records.

    ``--- `` opens a file and ``+++ `` completes it; ``@@`` headers open hunks
    whose body lines are tagged by their first character. While a hunk still
    expects lines according to its header counts, a lone line that looks like
    a file header is treated as body (a removed line reading ``-- x`` renders
    as ``--- x``); a complete ``---``/``+++``/``@@`` block always starts a new
    file, so overstated counts never swallow the next file. Git extended
    headers and other noise between files are ignored.
    """
    files: List[PatchFile] = []
    pending: PatchFile | None = None
    current_file: PatchFile | None = None
    hunk: Hunk | None = None
    lines, carriage = _split_patch_lines(text)

    for index, line in enumerate(lines):
        line_number = index + 1
        in_body = hunk is not None and hunk._pending() and not _starts_file(lines, index)

        if in_body:
            if line.startswith("\\"):
                continue
            tag = _TAGS.get(line[:1])
            if tag is not None:
                hunk.lines.append((tag, line[1:]))
                current_file.crlf = current_file.crlf or carriage[index]
                continue
            if line == "":
                hunk.lines.append(("context", ""))
                continue

        if line.startswith("--- "):
            pending = PatchFile(old_path=_header_path(line[4:]))
            hunk = None
            continue

        if line.startswith("+++ ") and pending is not None:
            pending.new_path = _header_path(line[4:])
            files.append(pending)
            current_file, pending, hunk = pending, None, None
            continue

        if line.startswith("@@"):
            match = _HUNK_HEADER.match(line)
            if not match:
                raise PatchError(
                    f"Malformed hunk header on line {line_number}: {line}",
                    details={"line": line_number},
                )
            if current_file is None:
                raise PatchError(
                    f"Hunk header on line {line_number} appears before any '---'/'+++' file header.",
                    details={"line": line_number},
                )
            hunk = Hunk(
                old_start=int(match.group("old_start")),
                old_count=_default_count(match.group("old_count")),
                new_start=int(match.group("new_start")),
                new_count=_default_count(match.group("new_count")),
            )
            current_file.hunks.append(hunk)
            continue

        if hunk is not None:
            if line.startswith("\\"):
                continue
            tag = _TAGS.get(line[:1])
            if tag is not None:
                # Body lines past the header counts; producers often miscount.
                hunk.lines.append((tag, line[1:]))
                current_file.crlf = current_file.crlf or carriage[index]
                continue
            hunk = None

    return files


# ------------------------------------------------------------ application
def _strip_cr(line: str) -> str:
    return line[:-1] if line.endswith("\r") else line


def _matches(actual: Sequence[str], expected: Sequence[str]) -> bool:
    if [_strip_cr(item) for item in actual] == list(expected):
        return True
    return [item.rstrip() for item in actual] == [item.rstrip() for item in expected]


def _uses_crlf(content: str) -> bool:
    """True when the first line break in ``content`` is ``\\r\\n``."""
    first = content.find("\n")
    return first > 0 and content[first - 1] == "\r"


def _replacement(hunk: Hunk, actual: Sequence[str], carriage: str) -> List[str]:
    """New span for ``hunk``: context lines keep the file's text, added lines get its line ending."""
    replaced: List[str] = []
    position = 0
    for tag, text in hunk.lines:
        if tag == "add":
            replaced.append(text + carriage)
            continue
        if tag == "context":
            replaced.append(actual[position])
        position += 1
    return replaced


def _splice_index(hunk: Hunk) -> int:
    """Zero-based index of the first line the hunk replaces.

    A hunk without context or removed lines describes an empty old range,
    which unified diff numbers by the line *before* the insertion point.
    """
    if hunk.old_lines:
        return max(hunk.old_start - 1, 0)
    return max(hunk.old_start, 0)


def apply_hunks(content: str, hunks: Iterable[Hunk], *, path: str | None = None) -> str:
    """Apply ``hunks`` to ``content`` and return the new text.

    Hunks are applied from the bottom of the file upwards so earlier splices
    never shift the line numbers of hunks still waiting to be applied; the
    result does not depend on the order the hunks were supplied in. Line
    endings are preserved: untouched and context lines keep their own, added
    lines use the file's (``\\r\\n`` when its first line ends that way).
    """
    lines = content.split("\n")
    carriage = "\r" if _uses_crlf(content) else ""
    tail_had_cr = lines[-1].endswith("\r")
    ordered = sorted(hunks, key=lambda item: item.old_start, reverse=True)
    location = path or "<content>"

    for hunk in ordered:
        index = _splice_index(hunk)
        expected = hunk.old_lines
        if index > len(lines) or index + len(expected) > len(lines):
            raise PatchError(
                f"{location}: hunk @@ -{hunk.old_start},{hunk.old_count} @@ extends past end of file "
                f"({len(lines)} line(s)).",
                details={"path": location, "old_start": hunk.old_start},
            )
        actual = lines[index : index + len(expected)]
        if not _matches(actual, expected):
            raise PatchError(
                f"{location}: hunk @@ -{hunk.old_start},{hunk.old_count} @@ does not match the file contents.",
                details={"path": location, "old_start": hunk.old_start, "expected": expected, "actual": actual},
            )
        lines[index : index + len(expected)] = _replacement(hunk, actual, carriage)

    # The last element has no line break after it; a bare trailing CR would be new.
    if carriage and not tail_had_cr and lines[-1].endswith("\r"):
        lines[-1] = lines[-1][:-1]
    return "\n".join(lines)


def created_content(patch_file: PatchFile) -> str:
    """Content of a file introduced by a ``/dev/null`` patch: every added line."""
    added: List[str] = []
    for hunk in patch_file.hunks:
        added.extend(hunk.added_lines)
    return ("\r\n" if patch_file.crlf else "\n").join(added)


def _read_text(path: Path) -> str:
    """Read ``path`` without newline translation."""
    with path.open("r", encoding="utf-8", newline="") as handle:
        return handle.read()


def resolve_patch_path(raw: str, cwd: Path | str) -> Path:
    """Strip the conventional ``a/``/``b/`` prefix and anchor relative paths at ``cwd``."""
    entry = raw
    if entry.startswith("a/") or entry.startswith("b/"):
        entry = entry[2:]
    candidate = Path(entry)
    if candidate.is_absolute():
        return candidate
    return Path(cwd) / candidate


def _display_path(raw: str) -> str:
    if raw.startswith("a/") or raw.startswith("b/"):
        return raw[2:]
    return raw


def _atomic_write(path: Path, content: str) -> None:
    """Write ``content`` to ``path`` via a sibling temporary file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(content)
        if path.exists():
            os.chmod(temp_name, path.stat().st_mode & 0o7777)
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


def _plan_file(patch_file: PatchFile, cwd: Path, staged: dict[Path, str | None]) -> _PlannedWrite:
    """Compute the operation for one file; ``staged`` holds earlier results in the batch."""
    raw = patch_file.target_path
    if not raw or raw == DEV_NULL:
        raise PatchError("Patch file header is missing a target path.")
    target = resolve_patch_path(raw, cwd)
    display = _display_path(raw)

    if patch_file.is_creation:
        content = created_content(patch_file)
        staged[target] = content
        return _PlannedWrite(FileChange("created", target, display), content)

    exists = staged[target] is not None if target in staged else target.exists()

    if patch_file.is_deletion:
        if exists and target not in staged and not target.is_file():
            raise PatchError(
                f"Cannot delete {display}: not a regular file.",
                details={"path": target.as_posix()},
            )
        kind: ChangeKind = "deleted" if exists else "skipped"
        staged[target] = None
        return _PlannedWrite(FileChange(kind, target, display))

    if not exists or (target not in staged and not target.is_file()):
        raise PatchError(
            f"File not found: {display}. To create a new file use '--- /dev/null' as the old path.",
            details={"path": target.as_posix()},
        )
    original = staged.get(target)
    if original is None:
        original = _read_text(target)
    updated = apply_hunks(original, patch_file.hunks, path=display)
    staged[target] = updated
    return _PlannedWrite(FileChange("modified", target, display), updated)


def apply_patch(patch: str, *, cwd: Path | str = ".") -> PatchResult:
    """Apply unified diff ``patch`` relative to ``cwd``; raise :class:`PatchError` on failure."""
    files = parse_patch(patch)
    if not files:
        raise PatchError("No valid file headers ('--- '/'+++ ') found in patch.")

    root = Path(cwd)
    staged: dict[Path, str | None] = {}
    planned = [_plan_file(patch_file, root, staged) for patch_file in files]

    for item in planned:
        change = item.change
        if change.kind == "deleted":
            change.path.unlink(missing_ok=True)
        elif change.kind in ("created", "modified"):
            _atomic_write(change.path, item.content or "")
        LOGGER.debug("patch %s %s", change.kind, change.path)

    return PatchResult(changes=tuple(item.change for item in planned))


def apply_patch_tool(patch: str, *, cwd: Path | str = ".") -> str:
    """Tool boundary for :func:`apply_patch`: always returns a string."""
    try:
        result = apply_patch(patch, cwd=cwd)
    except PatchError as error:
        return f"ERROR: {error}\n{FALLBACK_HINT}"
    except (OSError, UnicodeDecodeError) as error:
        return f"ERROR applying patch: {error}\n{FALLBACK_HINT}"
    return result.render()


__all__ = [
    "DEV_NULL",
    "FileChange",
    "Hunk",
    "PatchError",
    "PatchFile",
    "PatchResult",
    "apply_hunks",
    "apply_patch",
    "apply_patch_tool",
    "created_content",
    "parse_patch",
    "resolve_patch_path",
]
