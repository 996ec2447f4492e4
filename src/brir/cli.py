"""CLI commands for configuring the pipeline enforcer and exercising it offline."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import yaml

from .config import DEFAULT_CONFIG_NAME, ConfigError, EnforcerConfig, load_config, save_config
from .enforcer import PipelineEnforcer, ToolCall, ToolOutput, ToolRejectedError
from .phases import AUTO_TRANSITIONS, PHASE_SEQUENCE, TRANSITIONS
from .sinks import MemorySink
from .tools.patch import apply_patch_tool

APP_HELP = "Pipeline enforcer for brainstorm/refine/implement/review agent workflows."

app = typer.Typer(help=APP_HELP)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_or_exit(config_path: Path) -> EnforcerConfig:
    try:
        return load_config(config_path)
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error


@app.command()
def init(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path of the configuration file to create.",
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write the default configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Config already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=1)
    save_config(config_path, EnforcerConfig())
    typer.echo(f"Wrote default configuration to {config_path}.")


@app.command("apply-patch")
def apply_patch_command(
    patch_file: str = typer.Argument(..., help="Unified diff to apply, or '-' to read stdin."),
    cwd: Path = typer.Option(Path("."), "--cwd", help="Directory relative paths are resolved against."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Apply a unified diff without git or the patch binary."""
    _configure_logging(verbose)
    if patch_file == "-":
        patch_text = sys.stdin.read()
    else:
        patch_path = Path(patch_file)
        if not patch_path.exists():
            raise typer.BadParameter(f"Patch file not found: {patch_path}")
        patch_text = patch_path.read_text(encoding="utf-8")

    result = apply_patch_tool(patch_text, cwd=cwd)
    typer.echo(result)
    if result.startswith("ERROR"):
        raise typer.Exit(code=1)


@app.command()
def transitions() -> None:
    """Print the phase transition table."""
    for phase in PHASE_SEQUENCE:
        edges = TRANSITIONS[phase]
        for alias, target in edges.items():
            typer.echo(f"{phase.value:<14} --{alias}--> {target.value}")
        automatic = AUTO_TRANSITIONS.get(phase)
        if automatic is not None:
            typer.echo(f"{phase.value:<14} --(auto)--> {automatic.value}")


def _step_payload(step: Any, index: int) -> tuple[str, Dict[str, Any]]:
    if not isinstance(step, dict) or len(step) != 1:
        raise typer.BadParameter(f"Step {index} must be a mapping with exactly one key.")
    kind, payload = next(iter(step.items()))
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise typer.BadParameter(f"Step {index} ({kind}) must map to a mapping.")
    return str(kind), payload


async def _run_script(enforcer: PipelineEnforcer, steps: List[Any]) -> List[str]:
    lines: List[str] = []
    for index, step in enumerate(steps, start=1):
        kind, payload = _step_payload(step, index)
        session = str(payload.get("session", "session-1"))

        if kind == "chat":
            state = await enforcer.on_chat_message(session, payload.get("agent"))
            phase = state.phase.value if state else "-"
            lines.append(f"[{index}] chat {session}: phase={phase}")
        elif kind == "advance":
            result = await enforcer.pipeline_advance(session, str(payload.get("target", "")))
            lines.append(f"[{index}] advance {payload.get('target')}: {result}")
        elif kind == "status":
            result = await enforcer.pipeline_status(session)
            lines.append(f"[{index}] status: {result}")
        elif kind == "tool":
            call = ToolCall(
                session_id=session,
                tool=str(payload.get("tool", "")),
                args=payload.get("args") or {},
            )
            try:
                await enforcer.before_tool(call)
            except ToolRejectedError as error:
                lines.append(f"[{index}] tool {call.tool}: {error.reason}")
                continue
            output = ToolOutput(
                output=payload.get("output", ""),
                metadata=payload.get("metadata") or {},
            )
            await enforcer.after_tool(call, output)
            state = enforcer.state_for(session)
            phase = state.phase.value if state else "-"
            lines.append(f"[{index}] tool {call.tool}: allowed (phase={phase})")
        elif kind == "patch":
            result = await enforcer.apply_patch(session, str(payload.get("patch", "")))
            lines.append(f"[{index}] patch: {result}")
        elif kind == "event":
            await enforcer.on_event(str(payload.get("type", "")), payload.get("properties") or {})
            lines.append(f"[{index}] event {payload.get('type')}")
        else:
            raise typer.BadParameter(f"Unknown step type '{kind}' at step {index}.")
    return lines


@app.command()
def replay(
    script: Path = typer.Argument(..., help="YAML file with a list of host events under 'steps'."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the enforcer configuration file.",
    ),
    cwd: Optional[Path] = typer.Option(None, "--cwd", help="Worktree directory for the session."),
    show_logs: bool = typer.Option(False, "--show-logs", help="Print structured log records after the run."),
) -> None:
    """Drive a pipeline enforcer with a scripted sequence of host events."""
    if not script.exists():
        raise typer.BadParameter(f"Script not found: {script}")
    try:
        document = yaml.safe_load(script.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as error:
        typer.echo(f"Failed to parse script: {error}")
        raise typer.Exit(code=1) from error

    steps = document.get("steps") if isinstance(document, dict) else document
    if not isinstance(steps, list):
        typer.echo("Script must be a list of steps or a mapping with a 'steps' list.")
        raise typer.Exit(code=1)

    directory = cwd
    if directory is None and isinstance(document, dict) and document.get("directory"):
        directory = (script.parent / str(document["directory"])).resolve()
    sink = MemorySink()
    enforcer = PipelineEnforcer(
        _load_or_exit(Path(config)),
        directory=directory or Path.cwd(),
        log_sink=sink,
        notifier=sink,
    )

    for line in asyncio.run(_run_script(enforcer, steps)):
        typer.echo(line)

    for message, variant in sink.notifications:
        typer.echo(f"notification [{variant}]: {message}")
    if show_logs:
        for record in sink.records:
            typer.echo(f"log [{record.level}] {record.message}")


if __name__ == "__main__":
    app()
