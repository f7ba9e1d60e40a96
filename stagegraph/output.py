"""Terminal output: ANSI colors and the stage tree printer."""

from __future__ import annotations

import os
import re
import sys

from stagegraph.graph import CompiledPipeline
from stagegraph.models import Agent, Stage, Step


# ── ANSI color constants ────────────────────────────────────

GRAY = "\033[90m"
GREEN = "\033[32m"
CYAN = "\033[36m"
YELLOW = "\033[33m"
BLUE = "\033[34m"
MAGENTA = "\033[35m"
RED = "\033[31m"
BOLD = "\033[1m"
DIM = "\033[2m"
RESET = "\033[0m"


def _color_enabled() -> bool:
    """Check whether colored output should be used."""
    if os.environ.get("NO_COLOR") or os.environ.get("STAGEGRAPH_NO_COLOR"):
        return False
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def colorize(text: str, color: str) -> str:
    """Wrap text in ANSI color codes."""
    return f"{color}{text}{RESET}"


# Patterns for auto-detecting line color
_COLOR_RULES: list[tuple[re.Pattern, str]] = [
    (re.compile(r"^\s*✓"), GREEN),
    (re.compile(r"^\s*⇉"), MAGENTA),               # parallel block
    (re.compile(r"^\s*↳"), BLUE),                  # sequential block
    (re.compile(r"^\s*↻"), YELLOW),                # loop
    (re.compile(r"^\s*▸"), GREEN),                 # stage with steps
    (re.compile(r"^\s*·"), CYAN),                  # single step
    (re.compile(r"runAfter|from:"), DIM),
]


def _detect_color(line: str) -> str | None:
    """Return the ANSI color for a line based on pattern matching."""
    for pattern, color in _COLOR_RULES:
        if pattern.search(line):
            return color
    return None


def _emit(line: str, use_color: bool) -> None:
    color = _detect_color(line) if use_color else None
    print(colorize(line, color) if color else line)


def _agent_text(agent: Agent | None) -> str:
    if Agent.is_unset(agent):
        return ""
    if agent.image:
        return f" [image {agent.image}]"
    return f" [label {agent.label}]"


def _step_lines(steps: list[Step], indent: int) -> list[str]:
    prefix = "  " * indent
    lines = []
    for step in steps:
        if step.loop is not None:
            values = ", ".join(step.loop.values)
            lines.append(f"{prefix}↻ loop {step.loop.variable} in [{values}]")
            lines.extend(_step_lines(step.loop.steps, indent + 1))
        elif step.step:
            lines.append(f"{prefix}· {step.name or step.step} (step {step.step})")
        else:
            label = f"{step.name}: " if step.name else ""
            lines.append(f"{prefix}· {label}{step.full_command()}")
    return lines


def stage_tree_lines(stages: list[Stage], indent: int = 0, show_steps: bool = False) -> list[str]:
    """Render the stage tree as plain text lines."""
    prefix = "  " * indent
    lines = []
    for stage in stages:
        if stage.parallel:
            lines.append(f"{prefix}⇉ {stage.name} (parallel){_agent_text(stage.agent)}")
            lines.extend(stage_tree_lines(stage.parallel, indent + 1, show_steps))
        elif stage.stages:
            lines.append(f"{prefix}↳ {stage.name} (stages){_agent_text(stage.agent)}")
            lines.extend(stage_tree_lines(stage.stages, indent + 1, show_steps))
        else:
            count = len(stage.steps)
            lines.append(f"{prefix}▸ {stage.name} ({count} step{'s' if count != 1 else ''})"
                         f"{_agent_text(stage.agent)}")
            if show_steps:
                lines.extend(_step_lines(stage.steps, indent + 1))
    return lines


def print_stage_tree(stages: list[Stage], show_steps: bool = False) -> None:
    use_color = _color_enabled()
    for line in stage_tree_lines(stages, show_steps=show_steps):
        _emit(line, use_color)


def print_task_graph(compiled: CompiledPipeline) -> None:
    """One line per pipeline task with its workspace source and predecessors."""
    use_color = _color_enabled()
    _emit(f"✓ {compiled.name}: {len(compiled.pipeline_tasks)} tasks", use_color)
    for ptask in compiled.pipeline_tasks:
        _emit(f"  ▸ {ptask.name} -> {ptask.task_ref}", use_color)
        if ptask.from_tasks:
            _emit(f"      from: {', '.join(ptask.from_tasks)}", use_color)
        if ptask.run_after:
            _emit(f"      runAfter: {', '.join(ptask.run_after)}", use_color)
